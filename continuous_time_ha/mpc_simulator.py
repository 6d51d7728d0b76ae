"""Monte-Carlo MPCs, a cross-check on the Feynman-Kac statistics.

A panel of households is drawn from the stationary distribution and simulated
forward in small time steps with interpolated policy functions. Each household
is simulated once without a shock and once per shock, with common income and
death draws, so that the consumption difference isolates the shock.

For MPCs out of news, households learn at time zero that a shock arrives after
``shock_period`` quarters. Until then they follow policies blended between
saved snapshots indexed by the time remaining until the shock.
"""

from dataclasses import dataclass
import logging
from pathlib import Path
import re
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
from scipy.interpolate import RegularGridInterpolator
from tqdm import tqdm

from .config.exceptions import InputValidationError
from .config.model import ModelParams
from .config.solver import SimulationOptions
from .feynman_kac import MPCResult, MPCResults
from .grids import Grid
from .income import IncomeProcess
from .policies import PolicyBundle
from .utility import AdjustmentCost
from .variants import DeathRegime, ModelVariant

logger = logging.getLogger(__name__)

POLICY_FIELDS = ("c", "s", "d")
_SNAPSHOT_KEY = re.compile(r"^t(\d+)_s(\d+)_(\w+)$")


@dataclass
class PolicySnapshots:
    """Policies saved at several times before an anticipated shock.

    Attributes:
        times: Time until the shock at each snapshot, in quarters, ascending.
        policies: Policy arrays keyed by (time index, shock index).
    """

    times: np.ndarray
    policies: Dict[Tuple[int, int], Dict[str, np.ndarray]]

    def __post_init__(self):
        self.times = np.asarray(self.times, dtype=float).ravel()
        if self.times.size == 0 or np.any(np.diff(self.times) <= 0):
            raise ValueError("Snapshot times must be non-empty and strictly increasing")

    def save(self, path: Union[str, Path]) -> Path:
        """Write all snapshots to one compressed ``.npz`` archive."""
        path = Path(path)
        arrays = {"times": self.times}
        for (t_idx, s_idx), fields in self.policies.items():
            for name, values in fields.items():
                arrays[f"t{t_idx}_s{s_idx}_{name}"] = values
        np.savez_compressed(path, **arrays)
        logger.info(f"Saved {len(self.policies)} policy snapshots to {path}")
        return path

    @classmethod
    def load(cls, path: Union[str, Path]) -> "PolicySnapshots":
        """Read snapshots written by :meth:`save`."""
        policies: Dict[Tuple[int, int], Dict[str, np.ndarray]] = {}
        with np.load(Path(path)) as archive:
            times = archive["times"]
            for key in archive.files:
                match = _SNAPSHOT_KEY.match(key)
                if match is None:
                    continue
                t_idx, s_idx, name = int(match.group(1)), int(match.group(2)), match.group(3)
                policies.setdefault((t_idx, s_idx), {})[name] = archive[key]
        return cls(times=times, policies=policies)

    def bracket(self, time_until_shock: float) -> Tuple[int, int, float]:
        """Snapshots around ``time_until_shock`` and the weight on the first.

        Returns:
            Tuple (i1, i2, w1) such that the blended policy is
            ``w1 * P[i1] + (1 - w1) * P[i2]``. Outside the saved range the
            nearest snapshot gets all the weight.
        """
        times = self.times
        i1 = int(np.searchsorted(times, time_until_shock, side="right")) - 1
        i1 = min(max(i1, 0), times.size - 1)
        i2 = min(i1 + 1, times.size - 1)
        if i2 == i1:
            return i1, i2, 1.0
        w2 = (time_until_shock - times[i1]) / (times[i2] - times[i1])
        w2 = float(np.clip(w2, 0.0, 1.0))
        return i1, i2, 1.0 - w2


class _PolicyInterpolant:
    """Linear interpolation of c, s, d over the non-singleton state dimensions."""

    def __init__(self, grid: Grid, ny: int, fields: Dict[str, np.ndarray]):
        shape = grid.shape(ny)
        axes = [grid.b_grid.nodes, grid.a_grid.nodes, np.arange(grid.nz), np.arange(ny)]
        self.dims = [i for i, n in enumerate(shape) if n > 1]
        singletons = tuple(i for i, n in enumerate(shape) if n == 1)
        points = tuple(np.asarray(axes[i], dtype=float) for i in self.dims)

        self._interpolants = {}
        for name in POLICY_FIELDS:
            values = np.squeeze(np.asarray(fields[name]).reshape(shape), axis=singletons)
            self._interpolants[name] = RegularGridInterpolator(
                points, values, method="linear", bounds_error=False, fill_value=None
            )

    def __call__(self, name: str, coords: Sequence[np.ndarray]) -> np.ndarray:
        query = np.column_stack([coords[i] for i in self.dims])
        return self._interpolants[name](query)


class MPCSimulator:
    """Simulates MPCs out of immediate shocks or out of news.

    Args:
        params: Model parameters.
        grid: KFE grid on which the policies and distribution live.
        income: Income process.
        policies: Baseline policies on ``grid``.
        options: Simulation settings.
        shocks: Shock sizes; defaults to ``params.mpc_shocks``.
        snapshots: Policies before an anticipated shock, indexed by position in
            ``shocks``. Required when ``options.shock_period > 0``.
        variant: Resolved model variant; resolved from ``params`` when omitted.

    Raises:
        InputValidationError: If a news shock is simulated without snapshots.
    """

    def __init__(
        self,
        params: ModelParams,
        grid: Grid,
        income: IncomeProcess,
        policies: PolicyBundle,
        options: Optional[SimulationOptions] = None,
        shocks: Optional[Sequence[float]] = None,
        snapshots: Optional[PolicySnapshots] = None,
        variant: Optional[ModelVariant] = None,
    ):
        self.params = params
        self.grid = grid
        self.income = income
        self.options = options or SimulationOptions()
        self.shocks = list(params.mpc_shocks if shocks is None else shocks)
        self.snapshots = snapshots
        self.variant = variant or ModelVariant.resolve(params, grid)

        if self.options.shock_period > 0 and snapshots is None:
            raise InputValidationError(
                ["MPCs out of news require policy snapshots before the shock"]
            )

        self.shape = grid.shape(income.ny)
        self.delta = 1.0 / self.options.subperiods_per_quarter
        self.death_probability = 1.0 - np.exp(-params.deathrate * self.delta)
        self.nperiods = 1 if self.options.shock_period == 1 else 4
        self.adjustment_cost = AdjustmentCost.from_params(params)
        self.illiquid_return = params.r_a + params.deathrate * float(params.perfect_annuities)

        self._baseline = _PolicyInterpolant(grid, income.ny, policies.as_arrays())
        self._snapshot_cache: Dict[Tuple[int, int], _PolicyInterpolant] = {}
        self.rng = np.random.default_rng(self.options.random_seed)

    # ------------------------------------------------------------------ #
    #  Sampling
    # ------------------------------------------------------------------ #

    def _inverse_cdf(self, cdf: np.ndarray, draws: np.ndarray) -> np.ndarray:
        """Index of the first CDF entry at or above each draw, in chunks."""
        chunk = self.options.chunk_size
        index = np.empty(draws.size, dtype=int)
        for start in range(0, draws.size, chunk):
            stop = min(start + chunk, draws.size)
            index[start:stop] = np.argmax(draws[start:stop, None] <= cdf[None, :], axis=1)
        return index

    def draw_initial_states(self, mass: np.ndarray) -> Tuple[np.ndarray, ...]:
        """Sample household states from the stationary mass.

        Returns:
            Tuple of (b index, a index, z index, y index) arrays.
        """
        pmf = np.asarray(mass, dtype=float).ravel(order="F")
        cdf = np.cumsum(pmf / pmf.sum())
        cdf[-1] = 1.0
        draws = self.rng.random(self.options.n_households)
        index = self._inverse_cdf(cdf, draws)
        return np.unravel_index(index, self.shape, order="F")

    # ------------------------------------------------------------------ #
    #  Policies
    # ------------------------------------------------------------------ #

    def _snapshot(self, t_idx: int, s_idx: int) -> _PolicyInterpolant:
        key = (t_idx, s_idx)
        if key not in self._snapshot_cache:
            self._snapshot_cache[key] = _PolicyInterpolant(
                self.grid, self.income.ny, self.snapshots.policies[key]
            )
        return self._snapshot_cache[key]

    def _policy(
        self, name: str, column: int, coords: List[np.ndarray], time: float, shocked: bool
    ) -> np.ndarray:
        """Policy ``name`` for simulation column ``column`` at elapsed ``time``."""
        news = column > 0 and self.options.shock_period > 0 and not shocked
        if not news:
            return self._baseline(name, coords)
        i1, i2, w1 = self.snapshots.bracket(self.options.shock_period - time)
        value = w1 * self._snapshot(i1, column - 1)(name, coords)
        if w1 < 1.0:
            value = value + (1.0 - w1) * self._snapshot(i2, column - 1)(name, coords)
        return value

    # ------------------------------------------------------------------ #
    #  Simulation
    # ------------------------------------------------------------------ #

    def solve(self, mass: np.ndarray) -> MPCResults:
        """Simulate the panel and compute MPCs.

        Args:
            mass: Stationary probability mass per state on the KFE grid.

        Returns:
            Results keyed by shock. ``mpcs`` holds household-level MPCs per
            quarter; statistics that are undefined for news shocks are NaN.
        """
        grid = self.grid
        n = self.options.n_households
        n_cols = len(self.shocks) + 1
        b_nodes = grid.b_grid.nodes
        a_nodes = grid.a_grid.nodes
        bmin, bmax = b_nodes[0], b_nodes[-1]

        if self.options.shock_period > 0:
            logger.info(
                f"Simulating MPCs out of news of a shock in {self.options.shock_period} quarter(s)"
            )
        ib, ia, iz, iy = self.draw_initial_states(mass)
        b = np.repeat(b_nodes[ib][:, None], n_cols, axis=1)
        a = np.repeat(a_nodes[ia][:, None], n_cols, axis=1)
        z_idx = iz.astype(float)
        y_idx = iy.copy()

        cum_ytrans = np.cumsum(np.eye(self.income.ny) + self.delta * self.income.ytrans, axis=1)
        cum_ytrans[:, -1] = 1.0
        ydist_cdf = np.cumsum(self.income.ydist)
        ydist_cdf[-1] = 1.0

        shocks = np.asarray(self.shocks, dtype=float)
        shocked = self.options.shock_period == 0
        shortfall = np.zeros((n, n_cols))
        if shocked:
            b, shortfall = self._apply_shock(b, shocks, bmin)

        consumption = np.zeros((n, n_cols, self.nperiods))
        steps = self.options.subperiods_per_quarter
        for period in range(self.nperiods):
            consumption[:, :, period] += shortfall
            shortfall = np.zeros((n, n_cols))

            for subperiod in tqdm(
                range(steps),
                desc=f"Simulating quarter {period + 1}",
                disable=not self.options.show_progress,
            ):
                time = period + subperiod / steps
                if not shocked and time >= self.options.shock_period:
                    b, applied = self._apply_shock(b, shocks, bmin)
                    consumption[:, :, period] += applied
                    shocked = True

                y = self.income.y[y_idx]
                for col in range(n_cols):
                    coords = [b[:, col], a[:, col], z_idx, y_idx.astype(float)]
                    c = self._policy("c", col, coords, time, shocked)
                    s = self._policy("s", col, coords, time, shocked)
                    d = self._policy("d", col, coords, time, shocked)
                    consumption[:, col, period] += self.delta * c

                    cost = self.adjustment_cost.cost(d, a[:, col])
                    b[:, col] = np.clip(b[:, col] + self.delta * (s - d - cost), bmin, bmax)
                    adot = d + self.illiquid_return * a[:, col] + self.params.direct_deposit * y
                    a[:, col] = np.clip(a[:, col] + self.delta * adot, a_nodes[0], a_nodes[-1])

                y_idx = self._inverse_cdf_rows(cum_ytrans[y_idx], self.rng.random(n))
                b, a, y_idx = self._simulate_death(b, a, y_idx, ydist_cdf)

        return self._mpcs(consumption, shocks)

    def _inverse_cdf_rows(self, cdf_rows: np.ndarray, draws: np.ndarray) -> np.ndarray:
        return np.argmax(draws[:, None] <= cdf_rows, axis=1)

    def _apply_shock(self, b: np.ndarray, shocks: np.ndarray, bmin: float):
        """Shift shocked columns by their shock, clamping at the grid minimum.

        Returns:
            Tuple of (new b, shortfall below the minimum as negative consumption).
        """
        b = b.copy()
        b[:, 1:] = b[:, 1:] + shocks[None, :]
        shortfall = np.minimum(b - bmin, 0.0)
        return np.maximum(b, bmin), shortfall

    def _simulate_death(self, b, a, y_idx, ydist_cdf):
        if self.params.deathrate == 0:
            return b, a, y_idx
        died = self.rng.random(y_idx.size) < self.death_probability
        if not np.any(died):
            return b, a, y_idx

        regime = self.variant.death
        if regime in (DeathRegime.NEWBORN_RESET, DeathRegime.NEWBORN_KEEP):
            b[died, :] = self.grid.b_grid.nodes[self.grid.loc_b0]
            a[died, :] = self.grid.a_grid.nodes[self.grid.loc_a0]
        if regime in (DeathRegime.BEQUESTS_RESET, DeathRegime.NEWBORN_RESET):
            y_idx = y_idx.copy()
            y_idx[died] = np.searchsorted(ydist_cdf, self.rng.random(int(died.sum())))
        return b, a, y_idx

    def _mpcs(self, consumption: np.ndarray, shocks: np.ndarray) -> MPCResults:
        baseline = consumption[:, 0, :]
        shock_period = self.options.shock_period
        results = {}
        for i, shock in enumerate(shocks):
            con_diff = consumption[:, i + 1, :] - baseline
            mpcs = con_diff / shock

            quarterly = np.full(self.nperiods, np.nan)
            if shock > 0 or shock_period in (0, 1):
                quarterly = con_diff.mean(axis=0) / shock

            annual = None
            if (shock > 0 or shock_period == 4) and self.nperiods >= 4:
                annual = float(np.mean(con_diff.sum(axis=1)) / shock)

            results[float(shock)] = MPCResult(
                shock=float(shock), mpcs=mpcs, quarterly=quarterly, annual=annual
            )
        logger.info(f"Simulated MPCs for {len(shocks)} shocks")
        return MPCResults(results)
