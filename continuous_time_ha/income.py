"""Exogenous Markov income process.

The income generator enters the joint generator as a direct sum: with income
varying slowest, block ``(k, k')`` of the joint operator is
``ytrans[k, k'] * I``.
"""

import logging
from typing import List, Optional

import numpy as np
from scipy import sparse

from .config.exceptions import InputValidationError
from .config.model import IncomeConfig

logger = logging.getLogger(__name__)

_GENERATOR_ATOL = 1e-10
_RATIO_TOLERANCE = 1e-8


class IncomeProcess:
    """Income levels, generator and stationary distribution.

    Args:
        y: Income level in each state.
        ytrans: Continuous-time generator; off-diagonals non-negative, rows sum to zero.
        ydist: Stationary distribution. Computed from ``ytrans`` when omitted.

    Raises:
        InputValidationError: If the levels, generator or distribution are malformed.
    """

    def __init__(self, y, ytrans, ydist: Optional[np.ndarray] = None):
        self.y = np.asarray(y, dtype=float).ravel()
        self.ytrans = np.atleast_2d(np.asarray(ytrans, dtype=float))

        issues = self._validate()
        if issues:
            raise InputValidationError(issues)

        if ydist is None:
            self.ydist = self._stationary_distribution(self.ytrans)
        else:
            self.ydist = np.asarray(ydist, dtype=float).ravel()
            if self.ydist.size != self.ny or not np.isclose(self.ydist.sum(), 1.0):
                raise InputValidationError(
                    [f"ydist must hold {self.ny} probabilities summing to one"]
                )

        self.ytrans_offdiag = self.ytrans - np.diag(np.diag(self.ytrans))

    @classmethod
    def from_config(cls, config: IncomeConfig) -> "IncomeProcess":
        """Build from an :class:`IncomeConfig`."""
        return cls(config.y, config.ytrans, config.ydist)

    def _validate(self) -> List[str]:
        issues = []
        if self.y.size == 0:
            issues.append("Income process needs at least one state")
        if self.ytrans.shape != (self.y.size, self.y.size):
            issues.append(
                f"ytrans has shape {self.ytrans.shape}, expected ({self.y.size}, {self.y.size})"
            )
            return issues
        if np.any(self.y <= 0):
            issues.append("Income levels must be positive")
        offdiag = self.ytrans - np.diag(np.diag(self.ytrans))
        if np.any(offdiag < 0):
            issues.append("ytrans has negative off-diagonal intensities")
        row_sums = self.ytrans.sum(axis=1)
        if np.any(np.abs(row_sums) > _GENERATOR_ATOL):
            issues.append(
                f"ytrans rows must sum to zero, max deviation {np.abs(row_sums).max():.3e}"
            )
        return issues

    @staticmethod
    def _stationary_distribution(ytrans: np.ndarray) -> np.ndarray:
        ny = ytrans.shape[0]
        if ny == 1:
            return np.ones(1)
        lhs = ytrans.T.copy()
        lhs[0, :] = 1.0
        rhs = np.zeros(ny)
        rhs[0] = 1.0
        dist = np.linalg.solve(lhs, rhs)
        return dist / dist.sum()

    @property
    def ny(self) -> int:
        """Number of income states."""
        return int(self.y.size)

    def full_generator(self, states_per_income: int) -> sparse.csr_matrix:
        """Income generator on the joint state space, ``kron(ytrans, I)``."""
        return sparse.kron(self.ytrans, sparse.identity(states_per_income), format="csr")

    def sdu_adjustment(self, V: np.ndarray, riskaver: float, invies: float) -> np.ndarray:
        """Risk-adjusted income intensities under stochastic differential utility.

        The income-jump term ``lambda * (1 - psi) / (1 - gamma) * V_k * ((V_k'/V_k)**e - 1)``
        with ``e = (1 - gamma) / (1 - psi)`` is written as
        ``adj[k, k'] * (V_k' - V_k)``, which keeps the generator form. With
        ``psi == 1`` the value function is in log units and the term becomes
        ``lambda * (exp((1 - gamma) * (V_k' - V_k)) - 1) / (1 - gamma)``.

        Args:
            V: Value function, shape (nb, na, nz, ny).
            riskaver: Relative risk aversion (gamma).
            invies: Inverse IES (psi).

        Returns:
            Array of shape (states_per_income, ny, ny) whose off-diagonals are
            the adjusted intensities and whose diagonal makes each row sum to zero.

        Raises:
            InputValidationError: If the adjustment is undefined, which happens
                when values in linked income states differ in sign or are not finite.
        """
        ny = self.ny
        Vk = V.reshape(-1, ny, order="F")
        adj = np.zeros((Vk.shape[0], ny, ny))

        for k in range(ny):
            for kp in range(ny):
                if kp == k or self.ytrans[k, kp] == 0:
                    continue
                adj[:, k, kp] = self.ytrans[k, kp] * self._risk_factor(
                    Vk[:, k], Vk[:, kp], riskaver, invies
                )
            adj[:, k, k] = -adj[:, k, :].sum(axis=1)
        return adj

    @staticmethod
    def _risk_factor(v_own, v_other, riskaver, invies):
        with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
            if invies == 1.0:
                x = v_other - v_own
                if riskaver == 1.0:
                    return np.ones_like(x)
                scaled = (1.0 - riskaver) * x
                factor = np.expm1(scaled) / scaled
                return np.where(np.abs(scaled) < _RATIO_TOLERANCE, 1.0, factor)

            ratio = v_other / v_own
            if riskaver == 1.0:
                factor = np.log(ratio) / (ratio - 1.0)
            else:
                e = (1.0 - riskaver) / (1.0 - invies)
                factor = (ratio**e - 1.0) / (e * (ratio - 1.0))
            near_one = np.abs(ratio - 1.0) < _RATIO_TOLERANCE
            bad = (~np.isfinite(factor) | (ratio <= 0)) & ~near_one
            if np.any(bad):
                raise InputValidationError(
                    [
                        f"SDU income adjustment is undefined at {int(np.sum(bad))} states: "
                        f"values across income states must be finite and share a sign"
                    ]
                )
            return np.where(near_one, 1.0, factor)

    def sdu_generator(self, adj: np.ndarray) -> sparse.csr_matrix:
        """Joint-state income generator built from :meth:`sdu_adjustment` output."""
        ny = self.ny
        blocks = [[sparse.diags(adj[:, k, kp]) for kp in range(ny)] for k in range(ny)]
        return sparse.bmat(blocks, format="csr")
