"""Flow utility, labor disutility and the illiquid adjustment cost.

Utility functions expose the same three operations the upwind scheme needs:
the level, the marginal utility, and the inverse of the marginal utility.
"""

from abc import ABC, abstractmethod
from typing import Union

import numpy as np

from .config.model import ModelParams

ArrayLike = Union[float, np.ndarray]


def crra(c: ArrayLike, gamma: float) -> np.ndarray:
    """CRRA utility normalized so that u(1) = 0.

    ``log(c)`` for ``gamma == 1``, otherwise ``(c**(1 - gamma) - 1) / (1 - gamma)``.
    """
    c = np.asarray(c, dtype=float)
    if gamma == 1.0:
        return np.log(c)
    return (np.power(c, 1.0 - gamma) - 1.0) / (1.0 - gamma)


class UtilityFunction(ABC):
    """Abstract base class for flow utility over consumption."""

    @abstractmethod
    def evaluate(self, c: ArrayLike) -> np.ndarray:
        """Utility of consumption ``c``."""

    @abstractmethod
    def derivative(self, c: ArrayLike) -> np.ndarray:
        """Marginal utility of consumption ``c``."""

    @abstractmethod
    def inverse_derivative(self, marginal_utility: ArrayLike) -> np.ndarray:
        """Consumption at which marginal utility equals ``marginal_utility``."""


class CRRAUtility(UtilityFunction):
    """Expected-utility CRRA preferences.

    u(c) = (c^(1-γ) - 1)/(1-γ), or log(c) when γ = 1.
    """

    def __init__(self, risk_aversion: float):
        self.gamma = risk_aversion

    def evaluate(self, c: ArrayLike) -> np.ndarray:
        return crra(c, self.gamma)

    def derivative(self, c: ArrayLike) -> np.ndarray:
        """U'(c) = c^(-γ)."""
        return np.power(np.asarray(c, dtype=float), -self.gamma)

    def inverse_derivative(self, marginal_utility: ArrayLike) -> np.ndarray:
        """(U')^(-1)(m) = m^(-1/γ)."""
        return np.power(np.asarray(marginal_utility, dtype=float), -1.0 / self.gamma)


class SDUUtility(UtilityFunction):
    """Flow utility under stochastic differential utility.

    The aggregator's flow term is CRRA in the inverse IES, scaled by the
    effective discount rate ``rho + deathrate`` (which may vary over z).
    """

    def __init__(self, invies: float, rho_adj: ArrayLike):
        self.invies = invies
        self.rho_adj = np.asarray(rho_adj, dtype=float)

    def evaluate(self, c: ArrayLike) -> np.ndarray:
        return self.rho_adj * crra(c, self.invies)

    def derivative(self, c: ArrayLike) -> np.ndarray:
        return self.rho_adj * np.power(np.asarray(c, dtype=float), -self.invies)

    def inverse_derivative(self, marginal_utility: ArrayLike) -> np.ndarray:
        m = np.asarray(marginal_utility, dtype=float)
        return np.power(m / self.rho_adj, -1.0 / self.invies)


def make_utility(params: ModelParams, nz: int) -> UtilityFunction:
    """Utility implied by the preference toggle in ``params``.

    Args:
        params: Model parameters.
        nz: Points of the heterogeneity dimension, used to shape ``rhos``.

    Returns:
        CRRA utility, or SDU utility with a rho array of shape (1, 1, nz, 1).
    """
    if not params.sdu:
        return CRRAUtility(params.riskaver)
    rho = np.asarray(params.discount_rates(nz), dtype=float).reshape(1, 1, -1, 1)
    return SDUUtility(params.invies, rho + params.deathrate)


class LaborDisutility:
    """Disutility of hours, ld * h^(1 + 1/frisch) / (1 + 1/frisch)."""

    def __init__(self, scale: float, frisch: float):
        self.scale = scale
        self.frisch = frisch

    def evaluate(self, h: ArrayLike) -> np.ndarray:
        power = 1.0 + 1.0 / self.frisch
        return self.scale * np.power(np.asarray(h, dtype=float), power) / power

    def derivative(self, h: ArrayLike) -> np.ndarray:
        return self.scale * np.power(np.asarray(h, dtype=float), 1.0 / self.frisch)

    def inverse_derivative(self, v: ArrayLike) -> np.ndarray:
        v = np.maximum(np.asarray(v, dtype=float), 0.0)
        return np.power(v / self.scale, self.frisch)


class AdjustmentCost:
    """Cost of moving funds into or out of the illiquid account.

    cost(d, a) = chi0 |d| + chi1 |d / max(a, a_lb)|^chi2 max(a, a_lb)

    Attributes:
        chi0: Linear component.
        chi1: Scale of the convex component.
        chi2: Curvature of the convex component, greater than one.
        a_lb: Floor on illiquid holdings used for scaling.
    """

    def __init__(self, chi0: float, chi1: float, chi2: float, a_lb: float):
        self.chi0 = chi0
        self.chi1 = chi1
        self.chi2 = chi2
        self.a_lb = a_lb

    @classmethod
    def from_params(cls, params: ModelParams) -> "AdjustmentCost":
        return cls(params.chi0, params.chi1, params.chi2, params.a_lb)

    def _scale(self, a: ArrayLike) -> np.ndarray:
        return np.maximum(np.asarray(a, dtype=float), self.a_lb)

    def cost(self, d: ArrayLike, a: ArrayLike) -> np.ndarray:
        """Adjustment cost of deposit rate ``d`` at illiquid holdings ``a``."""
        d = np.asarray(d, dtype=float)
        a_scaled = self._scale(a)
        convex = self.chi1 * np.power(np.abs(d / a_scaled), self.chi2) * a_scaled
        return self.chi0 * np.abs(d) + convex

    def derivative(self, d: ArrayLike, a: ArrayLike) -> np.ndarray:
        """Derivative of :meth:`cost` with respect to ``d``."""
        d = np.asarray(d, dtype=float)
        a_scaled = self._scale(a)
        slope = self.chi0 + self.chi1 * self.chi2 * np.power(
            np.abs(d / a_scaled), self.chi2 - 1.0
        )
        return np.sign(d) * slope

    def optimal_deposit(self, Va: ArrayLike, Vb: ArrayLike, a: ArrayLike) -> np.ndarray:
        """Deposit rate maximizing ``Va * d - Vb * (d + cost(d))``.

        Positive when ``Va / Vb`` exceeds ``1 + chi0``, negative when it falls
        below ``1 - chi0``, zero in between.
        """
        Va = np.asarray(Va, dtype=float)
        Vb = np.asarray(Vb, dtype=float)
        a_scaled = self._scale(a)
        ratio = Va / Vb
        exponent = 1.0 / (self.chi2 - 1.0)
        denom = self.chi1 * self.chi2

        deposit_gap = np.maximum(ratio - 1.0 - self.chi0, 0.0)
        withdraw_gap = np.maximum(1.0 - self.chi0 - ratio, 0.0)
        deposit = np.power(deposit_gap / denom, exponent) * a_scaled
        withdraw = -np.power(withdraw_gap / denom, exponent) * a_scaled

        return np.where(
            ratio - 1.0 - self.chi0 > 0,
            deposit,
            np.where(ratio - 1.0 + self.chi0 < 0, withdraw, 0.0),
        )
