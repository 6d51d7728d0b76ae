"""Stationary cross-sectional distribution from the Kolmogorov forward equation.

The solver works with probability mass per state, ``m = g * w`` where ``w`` are
the trapezoidal integration weights, so that the forward operator is simply the
transposed generator of the discretized Markov chain. Densities are recovered
by dividing by the weights at the end.

Death removes mass at rate ``deathrate`` and re-injects it according to the
death regime: with bequests the newborn inherits the asset position, without
them it starts at the (b = 0, a = 0) cell; income is either redrawn from the
stationary income distribution or inherited.
"""

from dataclasses import dataclass
import logging
from typing import Optional
import warnings

import numpy as np
from scipy import sparse
from scipy.sparse.linalg import splu, spsolve

from ._warnings import DataQualityWarning
from .config.model import ModelParams
from .config.solver import KFEOptions
from .exceptions import ConvergenceError, DivergenceError
from .grids import Grid
from .income import IncomeProcess
from .variants import DeathRegime, ModelVariant

logger = logging.getLogger(__name__)

_NEGATIVE_MASS_TOLERANCE = 1e-10


def death_redistribution(
    grid: Grid, income: IncomeProcess, regime: DeathRegime
) -> sparse.csr_matrix:
    """Column-stochastic matrix sending each dying household to its replacement.

    Column ``j`` holds the distribution of the newborn that replaces a
    household dying in state ``j``.

    Args:
        grid: Asset grid.
        income: Income process.
        regime: Death regime.

    Returns:
        Sparse matrix of shape (N, N).
    """
    ny = income.ny
    spi = grid.states_per_income
    cells = grid.nb * grid.na

    if regime is DeathRegime.BEQUESTS_KEEP:
        return sparse.identity(spi * ny, format="csr")
    redraw = sparse.csr_matrix(np.outer(income.ydist, np.ones(ny)))
    if regime is DeathRegime.BEQUESTS_RESET:
        return sparse.kron(redraw, sparse.identity(spi), format="csr")

    # Newborns start at the (b = 0, a = 0) cell of their own z
    origin = grid.loc_b0 + grid.nb * grid.loc_a0
    to_origin = sparse.csr_matrix(
        (np.ones(cells), (np.full(cells, origin), np.arange(cells))), shape=(cells, cells)
    )
    per_income = sparse.kron(sparse.identity(grid.nz), to_origin)
    if regime is DeathRegime.NEWBORN_RESET:
        return sparse.kron(redraw, per_income, format="csr")
    return sparse.kron(sparse.identity(ny), per_income, format="csr")


@dataclass
class StationaryDistribution:
    """Density over the KFE grid.

    Attributes:
        g: Density of shape (nb, na, nz, ny); ``sum(g * w) == 1``.
        grid: Grid on which ``g`` is defined.
        iterations: Sweeps used (zero for the direct solve).
        distance: Sup-norm change in the last sweep (zero for the direct solve).
    """

    g: np.ndarray
    grid: Grid
    iterations: int = 0
    distance: float = 0.0

    @property
    def mass(self) -> np.ndarray:
        """Probability mass per state."""
        return self.g * self.grid.trapezoidal

    def total_mass(self) -> float:
        return float(np.sum(self.mass))

    def expected_liquid_wealth(self) -> float:
        """Mean liquid holdings."""
        return float(np.sum(self.mass * self.grid.b))

    def expected_illiquid_wealth(self) -> float:
        """Mean illiquid holdings."""
        return float(np.sum(self.mass * self.grid.a))

    def expected_total_wealth(self) -> float:
        return self.expected_liquid_wealth() + self.expected_illiquid_wealth()

    def income_marginal(self) -> np.ndarray:
        """Mass in each income state."""
        return self.mass.sum(axis=(0, 1, 2))


class KFESolver:
    """Solves for the stationary distribution given a KFE-mode asset generator.

    Args:
        params: Model parameters.
        grid: KFE grid.
        income: Income process.
        options: Solver settings.
        variant: Resolved model variant; resolved from ``params`` when omitted.
    """

    def __init__(
        self,
        params: ModelParams,
        grid: Grid,
        income: IncomeProcess,
        options: Optional[KFEOptions] = None,
        variant: Optional[ModelVariant] = None,
    ):
        self.params = params
        self.grid = grid
        self.income = income
        self.options = options or KFEOptions()
        self.variant = variant or ModelVariant.resolve(params, grid)

        self.shape = grid.shape(income.ny)
        self.n_states = int(np.prod(self.shape))
        self.states_per_income = grid.states_per_income
        self.weights = grid.flat_weights(income.ny)

    def death_redistribution(self) -> sparse.csr_matrix:
        """Rebirth matrix for this solver's grid and death regime."""
        return death_redistribution(self.grid, self.income, self.variant.death)

    def initial_guess(self) -> np.ndarray:
        """Density spreading mass evenly over assets, by the stationary income shares."""
        mass = np.ones(self.shape) * self.income.ydist.reshape(1, 1, 1, -1)
        mass = mass / mass.sum()
        return mass / self.grid.trapezoidal

    def solve(
        self, A: sparse.spmatrix, g0: Optional[np.ndarray] = None
    ) -> StationaryDistribution:
        """Stationary distribution implied by the asset generator ``A``.

        Args:
            A: KFE-mode asset generator on the KFE grid.
            g0: Initial density for the iterative mode.

        Returns:
            Stationary distribution with unit total mass.

        Raises:
            DivergenceError: If the iterative mode stops converging.
            ConvergenceError: If the iterative mode exhausts its sweep budget.
        """
        A = sparse.csr_matrix(A)
        if self.options.iterative:
            return self._solve_iterative(A, g0)
        return self._solve_direct(A)

    def _solve_direct(self, A: sparse.csr_matrix) -> StationaryDistribution:
        n = self.n_states
        deathrate = self.params.deathrate
        forward = (A + self.income.full_generator(self.states_per_income)).T
        if deathrate > 0:
            forward = forward + deathrate * (
                self.death_redistribution() - sparse.identity(n, format="csr")
            )
        forward = sparse.csr_matrix(forward)

        # Replace the first balance equation by the normalization
        lhs = sparse.vstack([sparse.csr_matrix(np.ones((1, n))), forward[1:]], format="csc")
        rhs = np.zeros(n)
        rhs[0] = 1.0
        mass = np.asarray(spsolve(lhs, rhs))

        negative = mass < 0
        if np.any(negative):
            lost = -float(mass[negative].sum())
            if lost > _NEGATIVE_MASS_TOLERANCE:
                warnings.warn(
                    f"Direct KFE solve produced negative mass ({lost:.3e}); clipped to zero",
                    DataQualityWarning,
                    stacklevel=3,
                )
            mass = np.maximum(mass, 0.0)
        mass = mass / mass.sum()

        logger.info("Solved KFE directly")
        g = (mass / self.weights).reshape(self.shape, order="F")
        return StationaryDistribution(g=g, grid=self.grid)

    def _solve_iterative(
        self, A: sparse.csr_matrix, g0: Optional[np.ndarray]
    ) -> StationaryDistribution:
        ny = self.income.ny
        spi = self.states_per_income
        delta = self.options.delta
        deathrate = self.params.deathrate
        ytrans = self.income.ytrans

        if g0 is None:
            g0 = self.initial_guess()
        g = np.asarray(g0, dtype=float).ravel(order="F")
        mass = (g * self.weights).reshape(spi, ny, order="F")

        identity = sparse.identity(spi, format="csr")
        divisors = []
        for k in range(ny):
            block = slice(k * spi, (k + 1) * spi)
            lhs = (
                identity
                - delta * A[block, block].T
                - delta * (ytrans[k, k] - deathrate) * identity
            )
            divisors.append(splu(sparse.csc_matrix(lhs)))

        redistribution = self.death_redistribution() if deathrate > 0 else None

        logger.info("Iterating over KFE")
        distance = np.inf
        iteration = 0
        while distance >= self.options.tol:
            if iteration >= self.options.maxiter:
                raise ConvergenceError("KFE", iteration, distance)
            iteration += 1

            # Income jumps and rebirths use the previous sweep's mass
            income_inflow = mass @ self.income.ytrans_offdiag
            if redistribution is not None:
                death_inflow = (redistribution @ mass.ravel(order="F")).reshape(
                    spi, ny, order="F"
                )
            else:
                death_inflow = np.zeros_like(mass)

            new_mass = np.empty_like(mass)
            for k, divisor in enumerate(divisors):
                rhs = mass[:, k] + delta * (income_inflow[:, k] + deathrate * death_inflow[:, k])
                new_mass[:, k] = divisor.solve(rhs)
            new_mass = new_mass / new_mass.sum()

            g_new = new_mass.ravel(order="F") / self.weights
            distance = float(np.max(np.abs(g_new - g)))
            g, mass = g_new, new_mass

            if not np.isfinite(distance) or (
                distance > self.options.divergence_threshold
                and iteration > self.options.divergence_min_iter
            ):
                raise DivergenceError("KFE", iteration, distance)
            if iteration == 1 or iteration % 100 == 0:
                logger.info(f"KFE iteration {iteration}: distance = {distance:.6e}")

        logger.info(f"KFE converged after {iteration} iterations")
        return StationaryDistribution(
            g=g.reshape(self.shape, order="F"),
            grid=self.grid,
            iterations=iteration,
            distance=distance,
        )
