"""Continuous-time heterogeneous-agent models with liquid and illiquid assets"""

from ._version import __version__

# Use lazy imports so that importing the package does not pull in scipy and
# pandas until a solver is actually accessed

__all__ = [
    "__version__",
    "Config",
    "ConvergenceError",
    "DivergenceError",
    "FeynmanKacMPC",
    "Grid",
    "HJBSolver",
    "IncomeProcess",
    "InputValidationError",
    "InvariantViolationError",
    "KFESolver",
    "MPCResults",
    "MPCSimulator",
    "ModelParams",
    "PolicyEngine",
    "PolicySnapshots",
    "SteadyStateSolver",
    "TransitionMatrixBuilder",
]


def __getattr__(name):
    """Lazy import modules on first attribute access."""
    if name == "Config" or name == "ModelParams":
        from .config import Config, ModelParams

        return locals()[name]
    elif name in [
        "ConvergenceError",
        "DivergenceError",
        "InputValidationError",
        "InvariantViolationError",
    ]:
        from .exceptions import (
            ConvergenceError,
            DivergenceError,
            InputValidationError,
            InvariantViolationError,
        )

        return locals()[name]
    elif name == "FeynmanKacMPC" or name == "MPCResults":
        from .feynman_kac import FeynmanKacMPC, MPCResults

        return locals()[name]
    elif name == "Grid":
        from .grids import Grid

        return Grid
    elif name == "HJBSolver":
        from .hjb_solver import HJBSolver

        return HJBSolver
    elif name == "IncomeProcess":
        from .income import IncomeProcess

        return IncomeProcess
    elif name == "KFESolver":
        from .kfe_solver import KFESolver

        return KFESolver
    elif name == "MPCSimulator" or name == "PolicySnapshots":
        from .mpc_simulator import MPCSimulator, PolicySnapshots

        return locals()[name]
    elif name == "PolicyEngine":
        from .policies import PolicyEngine

        return PolicyEngine
    elif name == "SteadyStateSolver":
        from .steady_state import SteadyStateSolver

        return SteadyStateSolver
    elif name == "TransitionMatrixBuilder":
        from .transition_matrix import TransitionMatrixBuilder

        return TransitionMatrixBuilder
    raise AttributeError(f"module '{__name__}' has no attribute '{name}'")
