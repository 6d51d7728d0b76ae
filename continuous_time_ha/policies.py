"""Upwind consumption, saving and deposit policies.

Given a value function on the ``(nb, na, nz, ny)`` state space, the
:class:`PolicyEngine` picks, state by state, among candidate regimes built from
forward and backward differences of V:

* consumption: forward-financed (F), backward-financed (B) or zero drift (0);
* deposits: forward-illiquid/backward-liquid (FB), backward/forward (BF),
  backward/backward (BB), no adjustment (00), and optionally the
  consumption-financed withdrawal at the liquid minimum.

Each selection is verified to partition the state space exactly; a failure
raises :class:`~continuous_time_ha.exceptions.InvariantViolationError`.
"""

from dataclasses import dataclass, field
import logging
from typing import Dict, Optional, Tuple

import numpy as np

from .config.constants import BISECTION_ITERATIONS, PENALTY_HAMILTONIAN, VA_MIN, VB_MIN
from .config.model import ModelParams
from .exceptions import InvariantViolationError
from .grids import Grid
from .income import IncomeProcess
from .utility import AdjustmentCost, LaborDisutility, make_utility
from .variants import ModelVariant, ReturnRisk

logger = logging.getLogger(__name__)


@dataclass
class PolicyBundle:
    """Policies at every state, each of shape (nb, na, nz, ny).

    Attributes:
        c: Consumption.
        s: Liquid drift before deposits and adjustment costs.
        d: Deposit rate into the illiquid account (negative for withdrawals).
        u: Flow payoff, utility of consumption net of any labor disutility.
        hours: Hours worked (ones when labor is exogenous).
        bmin_consume_withdrawals: States in the consumption-financed withdrawal regime.
        bdot: Liquid drift, ``s - d - cost(d)``.
        adot: Illiquid drift.
        v_deriv_risky_nodrift: Marginal value of the risky asset implied by the
            consumption first-order condition, used at states with no drift in
            that asset. None without return risk.
        regimes: Regime indicator arrays keyed by regime name.
    """

    c: np.ndarray
    s: np.ndarray
    d: np.ndarray
    u: np.ndarray
    hours: np.ndarray
    bmin_consume_withdrawals: np.ndarray
    bdot: np.ndarray
    adot: np.ndarray
    v_deriv_risky_nodrift: Optional[np.ndarray] = None
    regimes: Dict[str, np.ndarray] = field(default_factory=dict, repr=False)

    def as_arrays(self) -> Dict[str, np.ndarray]:
        """Consumption, saving and deposits, the fields a snapshot persists."""
        return {"c": self.c, "s": self.s, "d": self.d}


def upwind_derivatives(
    V: np.ndarray, dB: np.ndarray, dF: np.ndarray, axis: int, floor: float
) -> Tuple[np.ndarray, np.ndarray]:
    """Backward and forward divided differences of V along ``axis``.

    Interior differences are floored at ``floor``. The backward difference at
    the first node copies the forward one, and the forward difference at the
    last node copies the backward one; the upwind scheme pins or penalizes
    both edges.

    Args:
        V: Array of values.
        dB: Backward spacings, broadcastable along ``axis``.
        dF: Forward spacings, broadcastable along ``axis``.
        axis: Differencing axis.
        floor: Lower bound on the differences.

    Returns:
        Tuple of (backward, forward) differences with the shape of V.
    """
    VB = np.zeros_like(V)
    VF = np.zeros_like(V)
    n = V.shape[axis]
    if n == 1:
        return VB, VF

    def take(sl):
        index = [slice(None)] * V.ndim
        index[axis] = sl
        return tuple(index)

    lower = take(slice(0, n - 1))
    upper = take(slice(1, n))
    diff = np.diff(V, axis=axis)

    VF[lower] = np.maximum(diff / dF[lower], floor)
    VB[upper] = np.maximum(diff / dB[upper], floor)
    VF[take(slice(n - 1, n))] = VB[take(slice(n - 1, n))]
    VB[take(slice(0, 1))] = VF[take(slice(0, 1))]
    return VB, VF


def _check_partition(scheme: str, *indicators: np.ndarray) -> None:
    total = np.zeros(indicators[0].shape, dtype=np.int8)
    for indicator in indicators:
        total += indicator.astype(np.int8)
    bad = total != 1
    if np.any(bad):
        raise InvariantViolationError(scheme, int(bad.sum()))


class PolicyEngine:
    """Computes policies from a value function by upwind finite differences.

    Args:
        params: Model parameters.
        grid: Asset grid (HJB or KFE resolution).
        income: Income process.
        variant: Resolved model variant; resolved from ``params`` when omitted.
    """

    def __init__(
        self,
        params: ModelParams,
        grid: Grid,
        income: IncomeProcess,
        variant: Optional[ModelVariant] = None,
    ):
        self.params = params
        self.grid = grid
        self.income = income
        self.variant = variant or ModelVariant.resolve(params, grid)

        self.utility = make_utility(params, grid.nz)
        self.adjustment_cost = AdjustmentCost.from_params(params)
        self.labor = (
            LaborDisutility(params.labor_disutility, params.frisch)
            if self.variant.endogenous_labor
            else None
        )

        self.shape = grid.shape(income.ny)
        self.y = np.broadcast_to(income.y.reshape(1, 1, 1, -1), self.shape)
        self.a = np.broadcast_to(grid.a, self.shape)

        annuity = params.deathrate * float(params.perfect_annuities)
        r_b = np.where(grid.b >= 0, params.r_b, params.r_b_borr)
        self.net_wage_share = 1.0 - params.direct_deposit - params.wage_tax
        self.liquid_capital_income = np.broadcast_to(
            grid.b * (r_b + annuity) + params.transfer, self.shape
        )
        self.illiquid_return = params.r_a + annuity

        ib = np.arange(grid.nb).reshape(-1, 1, 1, 1)
        ia = np.arange(grid.na).reshape(1, -1, 1, 1)
        self.bottom_b = np.broadcast_to(ib == 0, self.shape)
        self.top_b = np.broadcast_to(ib == grid.nb - 1, self.shape)
        self.bottom_a = np.broadcast_to(ia == 0, self.shape)
        self.top_a = np.broadcast_to(ia == grid.na - 1, self.shape)

        self._hours0: Optional[np.ndarray] = None

    # ------------------------------------------------------------------ #
    #  Budget pieces
    # ------------------------------------------------------------------ #

    def liquid_income(self, hours: np.ndarray) -> np.ndarray:
        """Liquid drift before consumption and deposits."""
        return self.net_wage_share * hours * self.y + self.liquid_capital_income

    def illiquid_income(self, hours: np.ndarray) -> np.ndarray:
        """Illiquid drift before deposits."""
        return self.illiquid_return * self.a + self.params.direct_deposit * hours * self.y

    def _hours(self, Vb: np.ndarray) -> np.ndarray:
        if self.labor is None:
            return np.ones(self.shape)
        wage = self.net_wage_share * self.y
        return np.minimum(self.labor.inverse_derivative(wage * Vb), 1.0)

    def _labor_cost(self, hours: np.ndarray) -> np.ndarray:
        if self.labor is None:
            return np.zeros(self.shape)
        return self.labor.evaluate(hours)

    def zero_drift_hours(self) -> np.ndarray:
        """Hours that maximize flow payoff when all income is consumed.

        Solves ``u'(c(h)) * wage = v'(h)`` by vectorised bisection on [0, 1].
        Independent of V, so computed once.
        """
        if self.labor is None:
            return np.ones(self.shape)
        if self._hours0 is not None:
            return self._hours0

        wage = self.net_wage_share * self.y

        def foc(h):
            c = wage * h + self.liquid_capital_income
            with np.errstate(divide="ignore", invalid="ignore"):
                marginal = np.where(c > 0, self.utility.derivative(np.maximum(c, 1e-300)), np.inf)
            return marginal * wage - self.labor.derivative(h)

        lo = np.zeros(self.shape)
        hi = np.ones(self.shape)
        corner = foc(hi) >= 0
        for _ in range(BISECTION_ITERATIONS):
            mid = 0.5 * (lo + hi)
            rising = foc(mid) > 0
            lo = np.where(rising, mid, lo)
            hi = np.where(rising, hi, mid)
        self._hours0 = np.where(corner, 1.0, 0.5 * (lo + hi))
        return self._hours0

    # ------------------------------------------------------------------ #
    #  Policies
    # ------------------------------------------------------------------ #

    def compute(self, V: np.ndarray) -> PolicyBundle:
        """Policies implied by value function ``V``.

        Args:
            V: Value function, shape (nb, na, nz, ny).

        Returns:
            Policy bundle on this engine's grid.

        Raises:
            InvariantViolationError: If a regime selection fails to partition
                the state space.
        """
        V = np.asarray(V, dtype=float).reshape(self.shape)
        grid = self.grid

        VbB, VbF = upwind_derivatives(V, grid.dbB, grid.dbF, axis=0, floor=VB_MIN)
        VaB, VaF = upwind_derivatives(V, grid.daB, grid.daF, axis=1, floor=VA_MIN)

        with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
            c, s, hours, Hc, regimes = self._consumption(VbB, VbF)
            d, special, c, s, deposit_regimes = self._deposits(
                VaB, VaF, VbB, VbF, c, s, hours, Hc
            )
            u = self.utility.evaluate(c) - self._labor_cost(hours)

        regimes.update(deposit_regimes)
        if special.any():
            logger.debug(f"Consumption-financed withdrawals at {int(special.sum())} states")
        cost = self.adjustment_cost.cost(d, self.a)
        bdot = s - d - cost
        adot = self.illiquid_income(hours) + d

        v_deriv = None
        if self.variant.return_risk is ReturnRisk.LIQUID:
            v_deriv = self.utility.derivative(c)
        elif self.variant.return_risk is ReturnRisk.ILLIQUID:
            v_deriv = self.utility.derivative(c) * (
                1.0 + self.adjustment_cost.derivative(d, self.a)
            )

        return PolicyBundle(
            c=c,
            s=s,
            d=d,
            u=u,
            hours=hours,
            bmin_consume_withdrawals=special,
            bdot=bdot,
            adot=adot,
            v_deriv_risky_nodrift=v_deriv,
            regimes=regimes,
        )

    def _consumption(self, VbB: np.ndarray, VbF: np.ndarray):
        utility = self.utility
        top, bottom = self.top_b, self.bottom_b

        # Forward-financed: no saving past the top of the grid
        hF = self._hours(VbF)
        cF = utility.inverse_derivative(VbF)
        cF[top] = 0.0
        sF = self.liquid_income(hF) - cF
        sF[top] = 0.0
        HcF = utility.evaluate(cF) + VbF * sF - self._labor_cost(hF)
        HcF[top] = PENALTY_HAMILTONIAN
        validF = cF > 0

        # Backward-financed: consume all inflows at the bottom of the grid
        hB = self._hours(VbB)
        incomeB = self.liquid_income(hB)
        cB = utility.inverse_derivative(VbB)
        cB[bottom] = incomeB[bottom]
        sB = incomeB - cB
        sB[bottom] = 0.0
        HcB = utility.evaluate(cB) + VbB * sB - self._labor_cost(hB)
        validB = cB > 0

        h0 = self.zero_drift_hours()
        c0 = self.liquid_income(h0)
        Hc0 = utility.evaluate(c0) - self._labor_cost(h0)
        valid0 = c0 > 0

        IcF = validF & (sF > 0) & ((sB >= 0) | (HcF >= HcB) | ~validB) & ((HcF >= Hc0) | ~valid0)
        IcB = validB & (sB < 0) & ((sF <= 0) | (HcB >= HcF) | ~validF) & ((HcB >= Hc0) | ~valid0)
        Ic0 = valid0 & ~(IcF | IcB)
        _check_partition("Consumption", IcF, IcB, Ic0)

        c = np.where(IcF, cF, np.where(IcB, cB, c0))
        s = np.where(IcF, sF, np.where(IcB, sB, 0.0))
        hours = np.where(IcF, hF, np.where(IcB, hB, h0))
        Hc = np.where(IcF, HcF, np.where(IcB, HcB, Hc0))
        return c, s, hours, Hc, {"cF": IcF, "cB": IcB, "c0": Ic0}

    def _deposits(self, VaB, VaF, VbB, VbF, c, s, hours, Hc):
        a = self.a
        cost = self.adjustment_cost.cost
        optimal = self.adjustment_cost.optimal_deposit

        # FB: no deposits from the top illiquid point or the bottom liquid point
        closedFB = self.top_a | self.bottom_b
        dFB = optimal(VaF, VbB, a)
        dFB[closedFB] = 0.0
        HdFB = VaF * dFB - VbB * (dFB + cost(dFB, a))
        HdFB[closedFB] = PENALTY_HAMILTONIAN
        validFB = (dFB > 0) & (HdFB > 0)

        # BF: no withdrawals from the bottom illiquid point or into the top liquid point
        closedBF = self.bottom_a | self.top_b
        dBF = optimal(VaB, VbF, a)
        dBF[closedBF] = 0.0
        HdBF = VaB * dBF - VbF * (dBF + cost(dBF, a))
        HdBF[closedBF] = PENALTY_HAMILTONIAN
        validBF = (dBF <= -cost(dBF, a)) & (HdBF > 0)

        # BB: liquid holdings cannot fall below the bottom liquid point
        closedBB = self.bottom_a | self.bottom_b
        dBB = optimal(VaB, VbB, a)
        dBB[closedBB] = 0.0
        HdBB = VaB * dBB - VbB * (dBB + cost(dBB, a))
        HdBB[closedBB] = PENALTY_HAMILTONIAN
        validBB = (dBB > -cost(dBB, a)) & (dBB <= 0) & (HdBB > 0)

        if self.variant.special_case:
            d_special, c_special = self._special_case(VaB, hours)
            H_special = self.utility.evaluate(c_special) + VaB * d_special - Hc
            special = (
                self.bottom_b
                & ~self.bottom_a
                & (d_special < 0)
                & (H_special > 0)
                & ((H_special > HdFB) | ~validFB)
                & ((H_special > HdBF) | ~validBF)
                & ((H_special > HdBB) | ~validBB)
            )
            c = np.where(special, c_special, c)
            s = np.where(special, self.liquid_income(hours) - c_special, s)
        else:
            special = np.zeros(self.shape, dtype=bool)
            d_special = np.zeros(self.shape)

        IcFB = (
            validFB & (~validBF | (HdFB >= HdBF)) & (~validBB | (HdFB >= HdBB)) & ~special
        )
        IcBF = (
            validBF & (~validFB | (HdBF >= HdFB)) & (~validBB | (HdBF >= HdBB)) & ~special
        )
        IcBB = (
            validBB & (~validFB | (HdBB >= HdFB)) & (~validBF | (HdBB >= HdBF)) & ~special
        )
        Ic00 = ~validFB & ~validBF & ~validBB & ~special
        _check_partition("Deposit", IcFB, IcBF, IcBB, Ic00, special)

        d = np.where(
            IcFB,
            dFB,
            np.where(IcBF, dBF, np.where(IcBB, dBB, np.where(special, d_special, 0.0))),
        )
        regimes = {"FB": IcFB, "BF": IcBF, "BB": IcBB, "00": Ic00, "special": special}
        return d, special, c, s, regimes

    def _special_case(self, VaB: np.ndarray, hours: np.ndarray):
        """Withdrawal that exactly finances consumption, leaving bdot = 0.

        Maximizes ``u(c(d)) + VaB * d`` with ``c(d) = income - d - cost(d)`` over
        withdrawals between zero and the one that maximizes net proceeds.
        """
        cost = self.adjustment_cost
        income = self.liquid_income(hours)
        a_scaled = np.maximum(self.a, cost.a_lb)
        proceeds_cap = a_scaled * np.power(
            (1.0 - cost.chi0) / (cost.chi1 * cost.chi2), 1.0 / (cost.chi2 - 1.0)
        )

        def consumption(d):
            return income - d - cost.cost(d, self.a)

        def marginal_hamiltonian(d):
            c = consumption(d)
            slope = -1.0 - cost.derivative(d, self.a)
            gain = self.utility.derivative(np.maximum(c, 1e-300)) * slope + VaB
            return np.where(c > 0, gain, -np.inf)

        worthwhile = (
            np.where(
                income > 0,
                self.utility.derivative(np.maximum(income, 1e-300)) * (cost.chi0 - 1.0) + VaB,
                -np.inf,
            )
            < 0
        )

        lo = -proceeds_cap
        hi = np.zeros(self.shape)
        for _ in range(BISECTION_ITERATIONS):
            mid = 0.5 * (lo + hi)
            go_left = marginal_hamiltonian(mid) < 0
            hi = np.where(go_left, mid, hi)
            lo = np.where(go_left, lo, mid)

        d_special = 0.5 * (lo + hi)
        c_special = consumption(d_special)
        feasible = worthwhile & (c_special > 0)
        d_special = np.where(feasible, d_special, 0.0)
        c_special = np.where(feasible, c_special, income)
        return d_special, c_special
