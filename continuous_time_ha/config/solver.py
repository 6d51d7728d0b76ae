"""Numerical options for the HJB, KFE, Feynman-Kac and Monte-Carlo solvers."""

from typing import Literal, Optional

from pydantic import BaseModel, Field, model_validator


class HJBOptions(BaseModel):
    """Value-function iteration settings.

    Attributes:
        delta: Step size of each implicit update.
        implicit: Solve one full system per iteration instead of one system per
            income state. Requires a zero death rate.
        tol: Sup-norm tolerance between consecutive value functions.
        maxiter: Iteration budget.
        howard_start: Iteration at which Howard improvement sweeps begin.
        howard_maxiter: Maximum sweeps per iteration.
        howard_tol: Sup-norm tolerance that ends the sweeps early.
        divergence_threshold: Distance treated as divergence once
            ``divergence_min_iter`` iterations have run.
        divergence_min_iter: Grace period before divergence is checked.
        verbose_every: Log the distance every this many iterations.
    """

    delta: float = Field(default=1e6, gt=0, description="Implicit step size")
    implicit: bool = Field(default=False, description="Fully implicit update")
    tol: float = Field(default=1e-8, gt=0, description="Convergence tolerance")
    maxiter: int = Field(default=1000, ge=1, description="Iteration budget")
    howard_start: int = Field(default=2, ge=1, description="First Howard iteration")
    howard_maxiter: int = Field(default=10, ge=0, description="Howard sweeps per iteration")
    howard_tol: float = Field(default=1e-5, gt=0, description="Howard tolerance")
    divergence_threshold: float = Field(default=10.0, gt=0, description="Divergence distance")
    divergence_min_iter: int = Field(default=500, ge=0, description="Divergence grace period")
    verbose_every: int = Field(default=25, ge=1, description="Log interval")


class KFEOptions(BaseModel):
    """Stationary-distribution solver settings."""

    iterative: bool = Field(default=True, description="Iterate per income block")
    delta: float = Field(default=1e5, gt=0, description="Iteration step size")
    tol: float = Field(default=1e-8, gt=0, description="Convergence tolerance")
    maxiter: int = Field(default=1000, ge=1, description="Sweep budget")
    divergence_threshold: float = Field(default=1e4, gt=0, description="Divergence distance")
    divergence_min_iter: int = Field(default=2000, ge=0, description="Divergence grace period")


class MPCOptions(BaseModel):
    """Feynman-Kac MPC settings."""

    delta: float = Field(default=0.01, gt=0, le=1, description="Backward step size")
    quarters: int = Field(default=4, ge=1, description="Quarters of cumulative consumption")
    interp_method: Literal["linear", "nearest", "cubic"] = Field(
        default="linear", description="Interpolation along the liquid grid for shocked households"
    )

    @model_validator(mode="after")
    def validate_steps(self):
        """Require a whole number of steps per quarter.

        Raises:
            ValueError: If ``1 / delta`` is not an integer.
        """
        steps = 1.0 / self.delta
        if abs(steps - round(steps)) > 1e-9:
            raise ValueError(f"1/delta must be an integer, got {steps}")
        return self

    @property
    def steps_per_quarter(self) -> int:
        """Number of backward steps per quarter."""
        return int(round(1.0 / self.delta))


class SimulationOptions(BaseModel):
    """Monte-Carlo MPC simulation settings."""

    n_households: int = Field(default=10_000, ge=1, description="Simulated households")
    subperiods_per_quarter: int = Field(default=100, ge=1, description="Steps per quarter")
    chunk_size: int = Field(default=500, ge=1, description="Households per sampling chunk")
    shock_period: int = Field(
        default=0, ge=0, le=4, description="Quarter in which the shock arrives (0=now)"
    )
    random_seed: Optional[int] = Field(default=15996, description="Seed for reproducibility")
    show_progress: bool = Field(default=False, description="Show a progress bar")
