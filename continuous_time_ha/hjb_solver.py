"""Value-function iteration for the household HJB equation.

Each iteration computes upwind policies at the current value function, builds
the asset generator, and solves one implicit linear update. The iteration is an
explicit state machine: :meth:`HJBSolver.step` maps an :class:`HJBState` to the
next one, and :meth:`HJBSolver.solve` drives it until the state leaves
``ITERATING``.

Two update modes are available:

* fully implicit, one solve over the whole state space (no death);
* implicit-explicit, one solve per income state with transitions between
  income states treated explicitly. Its factorizations are reused by Howard
  improvement sweeps.
"""

from dataclasses import dataclass, replace
from enum import Enum
import logging
from typing import List, Optional

import numpy as np
from scipy import sparse
from scipy.sparse.linalg import splu, spsolve

from .config.constants import CONSUMPTION_GUESS_FLOOR, RETURN_GUESS_FLOOR
from .config.model import ModelParams
from .config.solver import HJBOptions
from .exceptions import ConvergenceError, DivergenceError
from .grids import Grid
from .income import IncomeProcess
from .policies import PolicyBundle, PolicyEngine
from .transition_matrix import DriftMode, TransitionMatrixBuilder
from .utility import make_utility
from .variants import ModelVariant, validate_model_inputs

logger = logging.getLogger(__name__)


class HJBStatus(Enum):
    """Lifecycle of a value-function iteration."""

    ITERATING = "iterating"
    CONVERGED = "converged"
    FAILED = "failed"


@dataclass(frozen=True)
class HJBState:
    """Value function and bookkeeping between two iterations.

    Attributes:
        V: Current value function, shape (nb, na, nz, ny).
        iteration: Number of completed updates.
        distance: Sup-norm change in the last update.
        status: Lifecycle status.
        policies: Policies used for the last update.
        A: Asset generator used for the last update.
    """

    V: np.ndarray
    iteration: int = 0
    distance: float = np.inf
    status: HJBStatus = HJBStatus.ITERATING
    policies: Optional[PolicyBundle] = None
    A: Optional[sparse.csr_matrix] = None


@dataclass
class HJBResult:
    """Converged value function with the policies and generator it implies."""

    V: np.ndarray
    policies: PolicyBundle
    A: sparse.csr_matrix
    iterations: int
    distance: float


def _discount_rates(params: ModelParams, grid: Grid, ny: int) -> np.ndarray:
    """Discount rate at every state, flattened with liquid fastest."""
    rho = np.asarray(params.discount_rates(grid.nz), dtype=float).reshape(1, 1, -1, 1)
    return np.broadcast_to(rho, grid.shape(ny)).ravel(order="F")


def initial_value_guess(
    params: ModelParams,
    grid: Grid,
    income: IncomeProcess,
    variant: Optional[ModelVariant] = None,
) -> np.ndarray:
    """Value of consuming current income forever, holding the state fixed.

    Consumption is labor income plus capital income at returns floored at a
    small positive rate, and the guess solves
    ``(rho I - Y - D) V = u(c)`` where ``Y`` is the income generator and ``D``
    the return-risk diffusion.

    Args:
        params: Model parameters.
        grid: HJB grid.
        income: Income process.
        variant: Resolved model variant.

    Returns:
        Value function guess of shape (nb, na, nz, ny).
    """
    variant = variant or ModelVariant.resolve(params, grid)
    shape = grid.shape(income.ny)
    y = income.y.reshape(1, 1, 1, -1)

    annuity = params.deathrate * float(params.perfect_annuities)
    r_b = np.where(grid.b >= 0, params.r_b, params.r_b_borr)
    r_b = np.maximum(r_b, RETURN_GUESS_FLOOR)
    r_a = max(params.r_a, RETURN_GUESS_FLOOR)
    c0 = (
        (1.0 - params.direct_deposit - params.wage_tax) * y
        + (r_a + annuity) * grid.a
        + (r_b + annuity) * grid.b
        + params.transfer
    )
    c0 = np.maximum(np.broadcast_to(c0, shape), CONSUMPTION_GUESS_FLOOR)
    u = np.broadcast_to(make_utility(params, grid.nz).evaluate(c0), shape)

    spi = grid.states_per_income
    if variant.sdu:
        adj = income.sdu_adjustment(u, params.riskaver, params.invies)
        Y = income.sdu_generator(adj)
    else:
        Y = income.full_generator(spi)

    lhs = sparse.diags(_discount_rates(params, grid, income.ny)) - Y
    if variant.has_return_risk:
        builder = TransitionMatrixBuilder(params, grid, income, variant, DriftMode.HJB)
        lhs = lhs - builder.diffusion_operator()

    V = spsolve(lhs.tocsc(), u.ravel(order="F"))
    return np.asarray(V).reshape(shape, order="F")


class HJBSolver:
    """Solves the HJB equation by implicit value-function iteration.

    Args:
        params: Model parameters.
        grid: HJB grid.
        income: Income process.
        options: Iteration settings.
        variant: Resolved model variant; resolved from ``params`` when omitted.

    Raises:
        InputValidationError: If the inputs are inconsistent, including a
            fully implicit update requested with a positive death rate.
    """

    def __init__(
        self,
        params: ModelParams,
        grid: Grid,
        income: IncomeProcess,
        options: Optional[HJBOptions] = None,
        variant: Optional[ModelVariant] = None,
    ):
        self.options = options or HJBOptions()
        validate_model_inputs(params, grid, income, self.options)

        self.params = params
        self.grid = grid
        self.income = income
        self.variant = variant or ModelVariant.resolve(params, grid)

        self.engine = PolicyEngine(params, grid, income, self.variant)
        self.builder = TransitionMatrixBuilder(
            params, grid, income, self.variant, DriftMode.HJB
        )

        self.shape = grid.shape(income.ny)
        self.n_states = int(np.prod(self.shape))
        self.states_per_income = grid.states_per_income
        self._rho = _discount_rates(params, grid, income.ny)
        self._income_generator = income.full_generator(self.states_per_income)

        logger.info(
            f"Initialized HJB solver with {self.n_states} states "
            f"({'implicit' if self.options.implicit else 'implicit-explicit'} update)"
        )

    # ------------------------------------------------------------------ #
    #  State machine
    # ------------------------------------------------------------------ #

    def initial_state(self, V0: Optional[np.ndarray] = None) -> HJBState:
        """Iteration state at a given guess, or at the heuristic guess."""
        if V0 is None:
            V0 = initial_value_guess(self.params, self.grid, self.income, self.variant)
        V0 = np.array(V0, dtype=float).reshape(self.shape)
        return HJBState(V=V0)

    def step(self, state: HJBState) -> HJBState:
        """Perform one policy update and value-function update.

        Args:
            state: Current iteration state.

        Returns:
            The next state. Its status is ``CONVERGED`` once the distance falls
            below tolerance, and ``FAILED`` if the update produced non-finite
            values or diverged past the configured threshold.
        """
        iteration = state.iteration + 1
        V = state.V

        policies = self.engine.compute(V)
        A, stationary = self.builder.build(policies, V)
        risk_adj = self.risk_adjustment(policies, V, stationary)

        if self.options.implicit:
            V_new = self._solve_implicit(A, policies.u, V, risk_adj)
        else:
            V_new = self._solve_implicit_explicit(A, policies.u, V, risk_adj, iteration)

        if not np.all(np.isfinite(V_new)):
            distance = np.inf
        else:
            distance = float(np.max(np.abs(V_new - V)))

        if distance < self.options.tol:
            status = HJBStatus.CONVERGED
        elif not np.isfinite(distance) or (
            distance > self.options.divergence_threshold
            and iteration > self.options.divergence_min_iter
        ):
            status = HJBStatus.FAILED
        else:
            status = HJBStatus.ITERATING

        return replace(
            state,
            V=V_new,
            iteration=iteration,
            distance=distance,
            status=status,
            policies=policies,
            A=A,
        )

    def solve(self, V0: Optional[np.ndarray] = None) -> HJBResult:
        """Iterate to convergence.

        Args:
            V0: Initial value function. The heuristic guess is used when omitted.

        Returns:
            Converged value function with its policies and generator.

        Raises:
            DivergenceError: If the distance becomes non-finite, or exceeds the
                divergence threshold after the grace period.
            ConvergenceError: If the iteration budget is exhausted.
            InvariantViolationError: If an upwind regime selection fails.
        """
        state = self.initial_state(V0)
        logger.info("Iterating over HJB")

        while state.status is HJBStatus.ITERATING:
            if state.iteration >= self.options.maxiter:
                raise ConvergenceError("HJB", state.iteration, state.distance)

            state = self.step(state)
            if state.iteration == 1 or state.iteration % self.options.verbose_every == 0:
                logger.info(f"HJB iteration {state.iteration}: distance = {state.distance:.6e}")

        if state.status is HJBStatus.FAILED:
            raise DivergenceError("HJB", state.iteration, state.distance)

        logger.info(f"HJB converged after {state.iteration} iterations")
        policies = self.engine.compute(state.V)
        A, _ = self.builder.build(policies, state.V)
        return HJBResult(
            V=state.V,
            policies=policies,
            A=A,
            iterations=state.iteration,
            distance=state.distance,
        )

    # ------------------------------------------------------------------ #
    #  Update pieces
    # ------------------------------------------------------------------ #

    def income_generator(self, V: np.ndarray) -> sparse.csr_matrix:
        """Income generator on the joint state space, risk-adjusted under SDU."""
        if not self.variant.sdu:
            return self._income_generator
        adj = self.income.sdu_adjustment(V, self.params.riskaver, self.params.invies)
        return self.income.sdu_generator(adj)

    def risk_adjustment(
        self, policies: PolicyBundle, V: np.ndarray, stationary: Optional[np.ndarray]
    ) -> Optional[np.ndarray]:
        """Return-risk term for states with no drift in the risky asset.

        Only present under SDU with return risk. The marginal value comes from
        the consumption first-order condition since the derivative of V cannot
        be upwinded at those states.
        """
        if stationary is None:
            return None
        gamma = self.params.riskaver
        psi = self.params.invies
        v1 = policies.v_deriv_risky_nodrift

        with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
            if psi == 1.0:
                risk_adj = (1.0 - gamma) * v1**2
            else:
                risk_adj = v1**2 / V * (psi - gamma) / (1.0 - psi)
            risk_adj = risk_adj * self.builder.risk_term / 2.0
        return np.where(stationary, risk_adj, 0.0)

    def _solve_implicit(
        self,
        A: sparse.csr_matrix,
        u: np.ndarray,
        V: np.ndarray,
        risk_adj: Optional[np.ndarray],
    ) -> np.ndarray:
        delta = self.options.delta
        B = A + self.income_generator(V)
        B = (sparse.diags(self._rho) - B) * delta + sparse.identity(self.n_states)

        rhs = u if risk_adj is None else u + risk_adj
        rhs = delta * rhs.ravel(order="F") + V.ravel(order="F")

        V_new = splu(B.tocsc()).solve(rhs)
        return V_new.reshape(self.shape, order="F")

    def _income_inflow(
        self, V_k: np.ndarray, k: int, ez_adj: Optional[np.ndarray]
    ) -> np.ndarray:
        """Off-diagonal income transitions into state k, valued at ``V_k``."""
        if ez_adj is None:
            return V_k @ self.income.ytrans_offdiag[k]
        rates = ez_adj[:, k, :].copy()
        rates[:, k] = 0.0
        return np.sum(rates * V_k, axis=1)

    def _solve_implicit_explicit(
        self,
        A: sparse.csr_matrix,
        u: np.ndarray,
        V: np.ndarray,
        risk_adj: Optional[np.ndarray],
        iteration: int,
    ) -> np.ndarray:
        ny = self.income.ny
        spi = self.states_per_income
        delta = self.options.delta
        deathrate = self.params.deathrate

        u_k = u.reshape(spi, ny, order="F")
        V_k = V.reshape(spi, ny, order="F")
        risk_k = None if risk_adj is None else risk_adj.reshape(spi, ny, order="F")

        ez_adj = None
        if self.variant.sdu:
            ez_adj = self.income.sdu_adjustment(V, self.params.riskaver, self.params.invies)

        identity = sparse.identity(spi, format="csr")
        rho_block = sparse.diags(self._rho[:spi])

        factors = []
        V_new = np.empty_like(V_k)
        for k in range(ny):
            block = slice(k * spi, (k + 1) * spi)
            if ez_adj is None:
                own = self.income.ytrans[k, k] * identity
            else:
                own = sparse.diags(ez_adj[:, k, k])

            Bk = (
                delta * rho_block
                + (1.0 + delta * deathrate) * identity
                - delta * A[block, block]
                - delta * own
            )
            factors.append(splu(Bk.tocsc()))

            qk = delta * u_k[:, k] + V_k[:, k] + delta * self._income_inflow(V_k, k, ez_adj)
            if risk_k is not None:
                qk = qk + delta * risk_k[:, k]
            V_new[:, k] = factors[k].solve(qk)

        if (
            iteration >= self.options.howard_start
            and not self.variant.sdu
            and self.options.howard_maxiter > 0
        ):
            V_new = self._howard_improvement(V_new, u_k, factors)

        return V_new.reshape(self.shape, order="F")

    def _howard_improvement(self, V_k: np.ndarray, u_k: np.ndarray, factors: List) -> np.ndarray:
        """Re-apply the frozen per-income factorizations to accelerate convergence."""
        delta = self.options.delta
        for sweep in range(self.options.howard_maxiter):
            V_next = np.empty_like(V_k)
            for k, factor in enumerate(factors):
                qk = delta * u_k[:, k] + V_k[:, k] + delta * self._income_inflow(V_k, k, None)
                V_next[:, k] = factor.solve(qk)

            distance = np.max(np.abs(V_next - V_k))
            V_k = V_next
            if distance < self.options.howard_tol:
                logger.debug(f"Howard improvement stopped after {sweep + 1} sweeps")
                break
        return V_k
