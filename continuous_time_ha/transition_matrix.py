"""Sparse generator of the joint asset process.

The builder turns policy drifts into an upwind finite-difference generator on
the ``(nb, na, nz, ny)`` state space. Each asset dimension contributes three
diagonal bands offset by its stride in the Fortran-ordered state vector (1 for
the liquid asset, ``nb`` for the illiquid asset). The income dimension is not
included; callers add it as a direct sum.

Two drift modes are supported. In HJB mode each drift component is split into
its negative and positive parts separately, so that a withdrawal and positive
capital income at the same state both enter the operator. In KFE mode the net
drift is split once, which keeps the forward operator mass-preserving with a
single direction of flow per state.
"""

from enum import Enum
import logging
from typing import NamedTuple, Optional, Tuple

import numpy as np
from scipy import sparse

from .config.model import ModelParams
from .grids import Grid
from .income import IncomeProcess
from .policies import PolicyBundle
from .variants import ModelVariant, ReturnRisk

logger = logging.getLogger(__name__)


class DriftMode(Enum):
    """How policy drifts are split into upwind directions."""

    HJB = "hjb"
    KFE = "kfe"


class AssetDrifts(NamedTuple):
    """Backward (non-positive) and forward (non-negative) drifts per asset."""

    liquid_backward: np.ndarray
    liquid_forward: np.ndarray
    illiquid_backward: np.ndarray
    illiquid_forward: np.ndarray


class TransitionMatrixBuilder:
    """Builds the asset generator ``A`` from a policy bundle.

    The diffusion operator for return risk does not depend on policies, so it
    is assembled once at construction and added to every generator.

    Args:
        params: Model parameters.
        grid: Asset grid on which the policies live.
        income: Income process (only its size is used).
        variant: Resolved model variant; resolved from ``params`` when omitted.
        mode: Drift splitting mode.
    """

    def __init__(
        self,
        params: ModelParams,
        grid: Grid,
        income: IncomeProcess,
        variant: Optional[ModelVariant] = None,
        mode: DriftMode = DriftMode.HJB,
    ):
        self.params = params
        self.grid = grid
        self.variant = variant or ModelVariant.resolve(params, grid)
        self.mode = mode

        self.shape = grid.shape(income.ny)
        self.n_states = int(np.prod(self.shape))
        self._index = (
            np.arange(grid.nb).reshape(-1, 1, 1, 1),
            np.arange(grid.na).reshape(1, -1, 1, 1),
        )
        self._strides = (1, grid.nb)

        self.with_diffusion = self.variant.has_return_risk and (
            mode is DriftMode.HJB or params.retrisk_kfe
        )
        self.with_sdu_correction = (
            self.with_diffusion and self.variant.sdu and mode is DriftMode.HJB
        )

        if self.variant.has_return_risk:
            if self.variant.return_risk is ReturnRisk.LIQUID:
                self.risky_axis = 0
                x, dB, dF = grid.b, grid.dbB, grid.dbF
            else:
                self.risky_axis = 1
                x, dB, dF = grid.a, grid.daB, grid.daF
            self.risk_term = np.broadcast_to((x * params.sigma_r) ** 2, self.shape)
            self._risk_dB = np.broadcast_to(dB, self.shape)
            self._risk_dF = np.broadcast_to(dF, self.shape)

        self._diffusion: Optional[sparse.csr_matrix] = None
        if self.with_diffusion:
            self._diffusion = self.diffusion_operator()

    def _assemble(
        self, low: np.ndarray, center: np.ndarray, up: np.ndarray, stride: int
    ) -> sparse.csr_matrix:
        """Place three state-shaped coefficient arrays on diagonals 0 and +-stride."""
        n = self.n_states
        low = np.broadcast_to(low, self.shape).ravel(order="F")
        center = np.broadcast_to(center, self.shape).ravel(order="F")
        up = np.broadcast_to(up, self.shape).ravel(order="F")
        if stride >= n:
            return sparse.diags(center, 0, shape=(n, n), format="csr")
        return sparse.diags(
            [center, up[:-stride], low[stride:]],
            [0, stride, -stride],
            shape=(n, n),
            format="csr",
        )

    def _bottom(self, axis: int) -> np.ndarray:
        return self._index[axis] == 0

    def _top(self, axis: int) -> np.ndarray:
        return self._index[axis] == self.shape[axis] - 1

    def drifts(self, policies: PolicyBundle) -> AssetDrifts:
        """Split policy drifts into backward and forward parts.

        Args:
            policies: Policies on this builder's grid.

        Returns:
            Drift components for both assets, each of full state shape.
        """
        if self.mode is DriftMode.KFE:
            return AssetDrifts(
                np.minimum(policies.bdot, 0.0),
                np.maximum(policies.bdot, 0.0),
                np.minimum(policies.adot, 0.0),
                np.maximum(policies.adot, 0.0),
            )

        # Deposits and costs versus saving out of income, split separately
        deposit_flow = policies.bdot - policies.s
        illiquid_income = policies.adot - policies.d
        return AssetDrifts(
            np.minimum(deposit_flow, 0.0) + np.minimum(policies.s, 0.0),
            np.maximum(deposit_flow, 0.0) + np.maximum(policies.s, 0.0),
            np.minimum(policies.d, 0.0) + np.minimum(illiquid_income, 0.0),
            np.maximum(policies.d, 0.0) + np.maximum(illiquid_income, 0.0),
        )

    def _advection(
        self, driftB: np.ndarray, driftF: np.ndarray, dB: np.ndarray, dF: np.ndarray, axis: int
    ) -> Optional[sparse.csr_matrix]:
        if self.shape[axis] == 1:
            return None
        low = np.where(self._bottom(axis), 0.0, -driftB / dB)
        up = np.where(self._top(axis), 0.0, driftF / dF)
        return self._assemble(low, -low - up, up, self._strides[axis])

    def diffusion_operator(self) -> sparse.csr_matrix:
        """Second-derivative operator ``(1/2) (x sigma_r)^2 V_xx`` on the risky asset.

        Uses the three-point stencil for non-uniform grids. The top boundary is
        reflecting (``V_x = 0``), so its outward coefficient is folded into the
        diagonal; the bottom coefficient pointing off the grid is dropped.

        Returns:
            Sparse operator whose rows sum to zero.

        Raises:
            ValueError: If the model has no return risk.
        """
        if not self.variant.has_return_risk:
            raise ValueError("Diffusion operator requires sigma_r > 0")

        axis = self.risky_axis
        dB, dF = self._risk_dB, self._risk_dF
        d_sum = dB + dF
        up = np.where(self._top(axis), 0.0, self.risk_term / (dF * d_sum))
        low = np.where(self._bottom(axis), 0.0, self.risk_term / (dB * d_sum))
        return self._assemble(low, -(low + up), up, self._strides[axis])

    def _sdu_correction(
        self, V: np.ndarray, driftB: np.ndarray, driftF: np.ndarray
    ) -> Tuple[sparse.csr_matrix, np.ndarray]:
        """First-order term ``(1/2) (x sigma_r)^2 k(V) V_x`` from return risk under SDU.

        The coefficient is built from the current V and the derivative is
        upwinded with the risky-asset drift. States with no drift in either
        direction cannot be upwinded; they are returned in the stationary mask
        and handled on the right-hand side of the HJB update.
        """
        axis = self.risky_axis
        dB, dF = self._risk_dB, self._risk_dF
        n = self.shape[axis]

        V1B = np.zeros(self.shape)
        V1F = np.zeros(self.shape)
        if n > 1:
            diff = np.diff(V, axis=axis)
            upper = [slice(None)] * 4
            lower = [slice(None)] * 4
            upper[axis] = slice(1, n)
            lower[axis] = slice(0, n - 1)
            upper, lower = tuple(upper), tuple(lower)
            V1B[upper] = diff / dB[upper]
            V1F[lower] = diff / dF[lower]

        backward = driftB < 0
        forward = driftF > 0
        V1 = np.where(backward, V1B, 0.0) + np.where(forward, V1F, 0.0)
        stationary = ~backward & ~forward

        gamma = self.params.riskaver
        psi = self.params.invies
        half_risk = 0.5 * self.risk_term
        if psi == 1.0:
            coef = half_risk * V1 * (1.0 - gamma)
        else:
            with np.errstate(divide="ignore", invalid="ignore"):
                coef = half_risk * V1 / V * (psi - gamma) / (1.0 - psi)
            coef = np.where(np.isfinite(coef), coef, 0.0)

        low = np.where(backward & ~self._bottom(axis), -coef / dB, 0.0)
        up = np.where(forward & ~self._top(axis), coef / dF, 0.0)
        return self._assemble(low, -low - up, up, self._strides[axis]), stationary

    def build(
        self, policies: PolicyBundle, V: Optional[np.ndarray] = None
    ) -> Tuple[sparse.csr_matrix, Optional[np.ndarray]]:
        """Assemble the asset generator for ``policies``.

        Args:
            policies: Policies on this builder's grid.
            V: Current value function; required for the SDU return-risk correction.

        Returns:
            Tuple of (A, stationary). ``stationary`` flags states with no drift
            in the risky asset when the SDU correction is active, else None.

        Raises:
            ValueError: If the SDU correction is active and ``V`` is missing.
        """
        grid = self.grid
        drifts = self.drifts(policies)

        A = sparse.csr_matrix((self.n_states, self.n_states))
        for term in (
            self._advection(
                drifts.liquid_backward, drifts.liquid_forward, grid.dbB, grid.dbF, axis=0
            ),
            self._advection(
                drifts.illiquid_backward, drifts.illiquid_forward, grid.daB, grid.daF, axis=1
            ),
            self._diffusion,
        ):
            if term is not None:
                A = A + term

        stationary = None
        if self.with_sdu_correction:
            if V is None:
                raise ValueError("The SDU return-risk correction requires the value function")
            V = np.asarray(V, dtype=float).reshape(self.shape)
            if self.risky_axis == 0:
                driftB, driftF = drifts.liquid_backward, drifts.liquid_forward
            else:
                driftB, driftF = drifts.illiquid_backward, drifts.illiquid_forward
            correction, stationary = self._sdu_correction(V, driftB, driftF)
            A = A + correction
            logger.debug(f"SDU correction: {int(stationary.sum())} stationary states")

        return A.tocsr(), stationary
