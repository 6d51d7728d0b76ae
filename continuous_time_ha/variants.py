"""Model variants resolved once from the parameter toggles.

Solvers branch on these tags instead of re-reading boolean flags every
iteration.
"""

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional
import warnings

from ._warnings import ConfigurationWarning
from .config.exceptions import InputValidationError
from .config.model import ModelParams
from .config.solver import HJBOptions
from .grids import Grid
from .income import IncomeProcess


class Preferences(Enum):
    """Preference specification."""

    CRRA = "crra"
    SDU = "sdu"  # Stochastic differential utility


class ReturnRisk(Enum):
    """Which asset, if any, carries return risk."""

    NONE = "none"
    LIQUID = "liquid"  # One-asset model
    ILLIQUID = "illiquid"


class LaborSupply(Enum):
    """Whether hours are a choice."""

    EXOGENOUS = "exogenous"
    ENDOGENOUS = "endogenous"


class DeathRegime(Enum):
    """Where the deceased's replacement starts.

    Bequests keep the asset position; without them the newborn starts at the
    (b = 0, a = 0) cell. A reset draws income from the stationary
    distribution; otherwise the newborn inherits the income state.
    """

    BEQUESTS_RESET = "bequests_reset"
    BEQUESTS_KEEP = "bequests_keep"
    NEWBORN_RESET = "newborn_reset"
    NEWBORN_KEEP = "newborn_keep"


@dataclass(frozen=True)
class ModelVariant:
    """Tagged combination of the model's optional features."""

    preferences: Preferences
    return_risk: ReturnRisk
    labor: LaborSupply
    death: DeathRegime
    special_case: bool
    two_asset: bool

    @classmethod
    def resolve(cls, params: ModelParams, grid: Grid) -> "ModelVariant":
        """Resolve the variant implied by ``params`` on ``grid``."""
        if params.sigma_r > 0:
            return_risk = ReturnRisk.LIQUID if grid.one_asset else ReturnRisk.ILLIQUID
        else:
            return_risk = ReturnRisk.NONE

        if params.bequests:
            death = DeathRegime.BEQUESTS_RESET if params.reset_income_upon_death else (
                DeathRegime.BEQUESTS_KEEP
            )
        else:
            death = DeathRegime.NEWBORN_RESET if params.reset_income_upon_death else (
                DeathRegime.NEWBORN_KEEP
            )

        return cls(
            preferences=Preferences.SDU if params.sdu else Preferences.CRRA,
            return_risk=return_risk,
            labor=LaborSupply.ENDOGENOUS if params.endogenous_labor else LaborSupply.EXOGENOUS,
            death=death,
            special_case=params.deal_with_special_case and not grid.one_asset,
            two_asset=not grid.one_asset,
        )

    @property
    def sdu(self) -> bool:
        return self.preferences is Preferences.SDU

    @property
    def has_return_risk(self) -> bool:
        return self.return_risk is not ReturnRisk.NONE

    @property
    def endogenous_labor(self) -> bool:
        return self.labor is LaborSupply.ENDOGENOUS


def validate_model_inputs(
    params: ModelParams,
    grid: Grid,
    income: IncomeProcess,
    hjb_options: Optional[HJBOptions] = None,
) -> None:
    """Check parameters, grid and income for mutual consistency.

    Args:
        params: Model parameters.
        grid: Asset grid.
        income: Income process.
        hjb_options: HJB options, checked against the death rate when given.

    Raises:
        InputValidationError: Listing every inconsistency found.
    """
    issues: List[str] = []

    for attr in ("y", "ytrans", "ydist"):
        if getattr(income, attr, None) is None:
            issues.append(f"Income process is missing required attribute {attr!r}")
    if params.rhos is not None and len(params.rhos) != grid.nz:
        issues.append(f"rhos has {len(params.rhos)} entries but the grid has nz={grid.nz}")
    if grid.b_grid.n < 2:
        issues.append("The liquid grid needs at least two points")
    if grid.a_grid.lower < 0:
        issues.append("The illiquid grid must start at a non-negative value")
    if params.deal_with_special_case and grid.one_asset:
        issues.append("The consumption-financed withdrawal regime needs an illiquid asset")
    if hjb_options is not None and hjb_options.implicit and params.deathrate > 0:
        issues.append(
            f"The fully implicit HJB update assumes no death, got deathrate={params.deathrate}"
        )

    if issues:
        raise InputValidationError(issues)

    risky_nodes = grid.b_grid.n if grid.one_asset else grid.a_grid.n
    if params.sigma_r > 0 and risky_nodes < 3:
        warnings.warn(
            "Return risk on a risky-asset grid with fewer than three points has no interior",
            ConfigurationWarning,
            stacklevel=2,
        )
