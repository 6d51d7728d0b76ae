"""Marginal propensities to consume from the Feynman-Kac representation.

Expected cumulative consumption over the next ``t`` quarters solves a linear
backward equation driven by the stationary generator. Stepping it backward in
increments of ``delta`` with one fixed factorization gives baseline
consumption for every quarter; consumption after a one-off liquid shock is read
off the baseline at the shifted liquid position.
"""

from collections.abc import Mapping
from dataclasses import dataclass
import logging
from typing import Dict, Iterator, List, Optional, Sequence

import numpy as np
import pandas as pd
from scipy import sparse
from scipy.interpolate import interp1d
from scipy.sparse.linalg import splu

from .config.model import ModelParams
from .config.solver import MPCOptions
from .grids import Grid
from .income import IncomeProcess
from .kfe_solver import death_redistribution
from .variants import ModelVariant

logger = logging.getLogger(__name__)


@dataclass
class MPCResult:
    """MPC statistics for one shock.

    Attributes:
        shock: Signed liquid-asset shock.
        mpcs: State-level MPCs, shape (N, quarters), quarter-by-quarter.
        quarterly: Population MPC in each quarter.
        annual: Population MPC over the first four quarters, or None when
            fewer quarters were computed.
    """

    shock: float
    mpcs: np.ndarray
    quarterly: np.ndarray
    annual: Optional[float]


class MPCResults(Mapping):
    """MPC results keyed by shock size."""

    def __init__(self, results: Dict[float, MPCResult]):
        self._results = dict(results)

    def __getitem__(self, shock: float) -> MPCResult:
        return self._results[shock]

    def __iter__(self) -> Iterator[float]:
        return iter(self._results)

    def __len__(self) -> int:
        return len(self._results)

    def to_dataframe(self) -> pd.DataFrame:
        """One row per shock: quarterly MPCs and the annual MPC."""
        rows = []
        for shock, result in self._results.items():
            row = {"shock": shock}
            for q, value in enumerate(result.quarterly, start=1):
                row[f"quarter_{q}"] = float(value)
            row["annual"] = np.nan if result.annual is None else result.annual
            rows.append(row)
        return pd.DataFrame(rows).set_index("shock")


class FeynmanKacMPC:
    """Computes MPCs by propagating consumption backward through the generator.

    Args:
        params: Model parameters (death rate, shocks).
        grid: KFE grid.
        income: Income process.
        options: Step size, horizon and interpolation settings.
        variant: Resolved model variant; resolved from ``params`` when omitted.
    """

    def __init__(
        self,
        params: ModelParams,
        grid: Grid,
        income: IncomeProcess,
        options: Optional[MPCOptions] = None,
        variant: Optional[ModelVariant] = None,
    ):
        self.params = params
        self.grid = grid
        self.income = income
        self.options = options or MPCOptions()
        self.variant = variant or ModelVariant.resolve(params, grid)

        self.shape = grid.shape(income.ny)
        self.n_states = int(np.prod(self.shape))

    def divisor(self, A: sparse.spmatrix) -> sparse.csc_matrix:
        """Operator ``(1/delta + deathrate) I - (A + Y)`` of one backward step."""
        n = self.n_states
        generator = sparse.csr_matrix(A) + self.income.full_generator(
            self.grid.states_per_income
        )
        scale = 1.0 / self.options.delta + self.params.deathrate
        return sparse.csc_matrix(scale * sparse.identity(n) - generator)

    def baseline_consumption(self, c: np.ndarray, A: sparse.spmatrix) -> np.ndarray:
        """Expected consumption in each of the coming quarters, without a shock.

        One backward pass of ``quarters / delta`` steps. The running value after
        ``q`` quarters of steps is expected consumption over the next ``q``
        quarters; per-quarter consumption is its first difference.

        Args:
            c: Consumption policy on the KFE grid.
            A: KFE-mode asset generator.

        Returns:
            Array of shape (N, quarters).
        """
        delta = self.options.delta
        quarters = self.options.quarters
        steps = self.options.steps_per_quarter
        deathrate = self.params.deathrate

        factor = splu(self.divisor(A))
        rebirth = None
        if deathrate > 0:
            rebirth = death_redistribution(self.grid, self.income, self.variant.death).T.tocsr()

        c = np.asarray(c, dtype=float).ravel(order="F")
        cumulative = np.zeros(self.n_states)
        snapshots: List[np.ndarray] = []
        for quarter in range(1, quarters + 1):
            for _ in range(steps):
                rhs = c + cumulative / delta
                if rebirth is not None:
                    rhs = rhs + deathrate * (rebirth @ cumulative)
                cumulative = factor.solve(rhs)
            snapshots.append(cumulative.copy())
            logger.info(f"Updated baseline cumulative consumption through quarter {quarter}")

        cumulative = np.column_stack(snapshots)
        return np.diff(cumulative, axis=1, prepend=0.0)

    def shocked_consumption(self, baseline: np.ndarray, shock: float) -> np.ndarray:
        """Per-quarter consumption after a liquid shock at time zero.

        Baseline consumption is interpolated along the liquid grid at
        ``b + shock``. Positions pushed below the grid minimum are evaluated at
        the minimum, and in the first quarter the shortfall below the minimum
        is subtracted from consumption.

        Args:
            baseline: Output of :meth:`baseline_consumption`.
            shock: Signed liquid-asset shock.

        Returns:
            Array of shape (N, quarters).
        """
        nb = self.grid.nb
        nodes = self.grid.b_grid.nodes
        quarters = baseline.shape[1]
        bmin = nodes[0]

        shifted = nodes + shock
        below = shifted < bmin
        shifted = np.maximum(shifted, bmin)

        by_b = baseline.reshape(nb, -1, quarters, order="F")
        interpolant = interp1d(
            nodes,
            by_b,
            axis=0,
            kind=self.options.interp_method,
            fill_value="extrapolate",
            assume_sorted=True,
        )
        shocked = interpolant(shifted)

        if np.any(below):
            shortfall = nodes[below] + shock - bmin
            shocked[below, :, 0] = by_b[0, :, 0] + shortfall[:, None]

        return shocked.reshape(-1, quarters, order="F")

    def solve(
        self,
        c: np.ndarray,
        mass: np.ndarray,
        A: sparse.spmatrix,
        shocks: Optional[Sequence[float]] = None,
    ) -> MPCResults:
        """MPC statistics for every shock.

        Args:
            c: Consumption policy on the KFE grid.
            mass: Stationary probability mass per state on the KFE grid.
            A: KFE-mode asset generator.
            shocks: Shock sizes; defaults to ``params.mpc_shocks``.

        Returns:
            Results keyed by shock.
        """
        shocks = list(self.params.mpc_shocks if shocks is None else shocks)
        pmf = np.asarray(mass, dtype=float).ravel(order="F")

        logger.info("Computing Feynman-Kac MPCs")
        baseline = self.baseline_consumption(c, A)

        results = {}
        for shock in shocks:
            mpcs = (self.shocked_consumption(baseline, shock) - baseline) / shock
            quarterly = mpcs.T @ pmf
            annual = float(quarterly[:4].sum()) if quarterly.size >= 4 else None
            results[shock] = MPCResult(shock=shock, mpcs=mpcs, quarterly=quarterly, annual=annual)
            logger.debug(f"Shock {shock}: quarterly MPCs {np.round(quarterly, 4)}")
        return MPCResults(results)
