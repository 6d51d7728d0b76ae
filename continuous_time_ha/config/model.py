"""Economic parameters, grid layout and income process configuration.

Contains the pydantic models describing *what* is solved: household
preferences and budget constants, the liquid/illiquid asset grids on both
the HJB and KFE resolutions, and the exogenous income process.
"""

import logging
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from .constants import DEFAULT_MPC_SHOCKS

logger = logging.getLogger(__name__)


class ModelParams(BaseModel):
    """Household problem parameters.

    Rates are per unit of model time; one unit of model time is one quarter.

    Attributes:
        r_b: Return on non-negative liquid holdings.
        r_b_borr: Interest rate paid on liquid borrowing (b < 0).
        r_a: Return on the illiquid asset.
        rho: Common discount rate.
        rhos: Optional discount rate per point of the heterogeneity dimension z.
        riskaver: Coefficient of relative risk aversion.
        invies: Inverse of the intertemporal elasticity of substitution, used
            only under stochastic differential utility.
        sdu: Use stochastic differential utility instead of CRRA expected utility.
        deathrate: Poisson rate of death.
        perfect_annuities: Pay ``deathrate`` on top of asset returns.
        direct_deposit: Share of labor income paid into the illiquid account.
        wage_tax: Proportional tax on labor income.
        transfer: Lump-sum transfer paid into the liquid account.
        chi0: Linear component of the adjustment cost.
        chi1: Scale of the convex component of the adjustment cost.
        chi2: Curvature of the convex component of the adjustment cost.
        a_lb: Lower bound on illiquid holdings used to scale adjustment costs.
        sigma_r: Volatility of returns on the risky asset.
        retrisk_kfe: Apply return risk in the forward equation as well.
        endogenous_labor: Let households choose hours worked.
        labor_disutility: Scale of the disutility of hours.
        frisch: Frisch elasticity of labor supply.
        bequests: Assets of the deceased pass to their newborn replacement.
        reset_income_upon_death: Newborns draw income from the stationary distribution.
        deal_with_special_case: Enable the consumption-financed withdrawal
            regime at the bottom of the liquid grid.
        mpc_shocks: Signed liquid-asset shocks for MPC statistics.
    """

    r_b: float = Field(default=0.005, description="Liquid return")
    r_b_borr: float = Field(default=0.02, description="Liquid borrowing rate")
    r_a: float = Field(default=0.015, description="Illiquid return")
    rho: float = Field(default=0.015, gt=0, description="Discount rate")
    rhos: Optional[List[float]] = Field(
        default=None, description="Discount rate per heterogeneity point (overrides rho)"
    )
    riskaver: float = Field(default=1.0, gt=0, description="Relative risk aversion")
    invies: float = Field(default=1.0, gt=0, description="Inverse IES (SDU only)")
    sdu: bool = Field(default=False, description="Stochastic differential utility")
    deathrate: float = Field(default=1.0 / 200.0, ge=0, description="Poisson death rate")
    perfect_annuities: bool = Field(default=False, description="Annuitized returns")
    direct_deposit: float = Field(
        default=0.0, ge=0, le=1, description="Labor income share paid into illiquid account"
    )
    wage_tax: float = Field(default=0.0, ge=0, lt=1, description="Labor income tax")
    transfer: float = Field(default=0.0, description="Lump-sum transfer")
    chi0: float = Field(default=0.1, ge=0, lt=1, description="Linear adjustment cost")
    chi1: float = Field(default=0.5, gt=0, description="Convex adjustment cost scale")
    chi2: float = Field(default=2.0, gt=1, description="Convex adjustment cost curvature")
    a_lb: float = Field(default=0.25, gt=0, description="Adjustment cost scaling floor")
    sigma_r: float = Field(default=0.0, ge=0, description="Return volatility")
    retrisk_kfe: bool = Field(default=True, description="Return risk in the forward equation")
    endogenous_labor: bool = Field(default=False, description="Choose hours worked")
    labor_disutility: float = Field(default=1.0, gt=0, description="Hours disutility scale")
    frisch: float = Field(default=0.5, gt=0, description="Frisch elasticity")
    bequests: bool = Field(default=True, description="Assets pass to newborns")
    reset_income_upon_death: bool = Field(default=True, description="Newborns redraw income")
    deal_with_special_case: bool = Field(
        default=False, description="Consumption-financed withdrawals at the liquid minimum"
    )
    mpc_shocks: List[float] = Field(
        default_factory=lambda: list(DEFAULT_MPC_SHOCKS), description="MPC shock sizes"
    )

    @field_validator("rhos")
    @classmethod
    def validate_rhos(cls, v: Optional[List[float]]) -> Optional[List[float]]:
        """Require strictly positive heterogeneous discount rates.

        Args:
            v: Discount rates, one per heterogeneity point.

        Returns:
            The validated list.

        Raises:
            ValueError: If the list is empty or holds a non-positive rate.
        """
        if v is None:
            return v
        if len(v) == 0:
            raise ValueError("rhos must be omitted or hold at least one rate")
        if min(v) <= 0:
            raise ValueError(f"All discount rates must be positive, got min {min(v)}")
        return v

    @field_validator("mpc_shocks")
    @classmethod
    def validate_mpc_shocks(cls, v: List[float]) -> List[float]:
        """Reject zero-sized shocks, which leave the MPC undefined."""
        if any(shock == 0 for shock in v):
            raise ValueError("MPC shocks must be non-zero")
        return v

    @model_validator(mode="after")
    def validate_preference_toggles(self):
        """Validate combinations of preference toggles.

        Returns:
            Validated parameters.

        Raises:
            ValueError: If the boundary special case is requested under
                stochastic differential utility.
        """
        if self.sdu and self.deal_with_special_case:
            raise ValueError(
                "The consumption-financed withdrawal regime is not available "
                "under stochastic differential utility"
            )
        if self.sdu and self.sigma_r == 0:
            logger.debug("SDU without return risk: only income risk is risk-adjusted")
        return self

    def discount_rates(self, nz: int) -> List[float]:
        """Discount rate at each point of the heterogeneity dimension."""
        if self.rhos is not None:
            return list(self.rhos)
        return [self.rho] * nz


class GridConfig(BaseModel):
    """Asset grid layout on the HJB and KFE resolutions.

    The non-negative part of each grid is curved, ``lo + (hi - lo) * t ** curv``
    on ``t`` uniform in [0, 1], which concentrates points near the lower bound.
    Liquid borrowing adds ``nb_neg`` evenly spaced points below zero.
    """

    nb: int = Field(default=40, ge=2, description="Liquid points, HJB grid")
    na: int = Field(default=30, ge=1, description="Illiquid points, HJB grid (1=one asset)")
    nb_kfe: int = Field(default=40, ge=2, description="Liquid points, KFE grid")
    na_kfe: int = Field(default=30, ge=1, description="Illiquid points, KFE grid")
    nb_neg: int = Field(default=0, ge=0, description="Liquid points below zero")
    nz: int = Field(default=1, ge=1, description="Points of the heterogeneity dimension")
    b_min: float = Field(default=0.0, le=0, description="Borrowing limit")
    b_max: float = Field(default=50.0, gt=0, description="Liquid grid upper bound")
    a_max: float = Field(default=100.0, gt=0, description="Illiquid grid upper bound")
    b_curvature: float = Field(default=2.0, ge=1, description="Liquid grid curvature")
    a_curvature: float = Field(default=2.0, ge=1, description="Illiquid grid curvature")

    @model_validator(mode="after")
    def validate_borrowing(self):
        """Require negative points exactly when borrowing is allowed.

        Raises:
            ValueError: If ``b_min < 0`` without negative points, or the reverse.
        """
        if (self.b_min < 0) != (self.nb_neg > 0):
            raise ValueError("nb_neg must be positive exactly when b_min is negative")
        if self.nb_neg >= min(self.nb, self.nb_kfe) - 1:
            raise ValueError("nb_neg must leave at least two non-negative liquid points")
        if (self.na == 1) != (self.na_kfe == 1):
            raise ValueError("HJB and KFE grids must agree on the number of assets")
        return self


class IncomeConfig(BaseModel):
    """Exogenous income process: levels and a continuous-time generator."""

    y: List[float] = Field(default_factory=lambda: [0.8, 1.2], description="Income levels")
    ytrans: List[List[float]] = Field(
        default_factory=lambda: [[-0.1, 0.1], [0.1, -0.1]],
        description="Income generator, rows sum to zero",
    )
    ydist: Optional[List[float]] = Field(
        default=None, description="Stationary distribution (computed when omitted)"
    )
