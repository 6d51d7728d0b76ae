"""Configuration management using Pydantic v2 models.

The configuration is hierarchical: model parameters, grid layout, income
process and per-solver numerical options compose into a master ``Config``.

Sub-modules:
    constants: Numerical floors, penalties and defaults shared by the solvers.
    core: Master Config class that composes all sub-configs.
    exceptions: InputValidationError.
    model: ModelParams, GridConfig and IncomeConfig.
    reporting: Logging configuration.
    solver: HJB, KFE, Feynman-Kac and simulation options.

Examples:
    Quick start with defaults::

        from continuous_time_ha.config import Config

        config = Config()

    Full control::

        config = Config(
            params=ModelParams(r_a=0.02, chi1=0.8),
            grid=GridConfig(nb=50, na=40),
        )
"""

from .constants import (
    DEFAULT_MPC_SHOCKS,
    PENALTY_HAMILTONIAN,
    VA_MIN,
    VB_MIN,
)
from .core import Config
from .exceptions import InputValidationError
from .model import GridConfig, IncomeConfig, ModelParams
from .reporting import LoggingConfig
from .solver import HJBOptions, KFEOptions, MPCOptions, SimulationOptions

__all__ = [
    # Constants
    "DEFAULT_MPC_SHOCKS",
    "PENALTY_HAMILTONIAN",
    "VA_MIN",
    "VB_MIN",
    # Core
    "Config",
    "InputValidationError",
    # Model
    "GridConfig",
    "IncomeConfig",
    "ModelParams",
    # Solvers
    "HJBOptions",
    "KFEOptions",
    "LoggingConfig",
    "MPCOptions",
    "SimulationOptions",
]
