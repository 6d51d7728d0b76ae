"""Module-level numerical constants for the upwind schemes.

Centralizes hardcoded floors, penalties and defaults used by more than one
solver component.
"""

VB_MIN: float = 1e-8
"""Floor on one-sided derivatives of V with respect to the liquid asset."""

VA_MIN: float = 1e-8
"""Floor on one-sided derivatives of V with respect to the illiquid asset."""

PENALTY_HAMILTONIAN: float = -1.0e12
"""Hamiltonian assigned to regimes that are disallowed at a grid boundary."""

RETURN_GUESS_FLOOR: float = 0.001
"""Lower bound on asset returns used by the heuristic initial value guess."""

CONSUMPTION_GUESS_FLOOR: float = 1e-8
"""Lower bound on consumption used by the heuristic initial value guess."""

BISECTION_ITERATIONS: int = 60
"""Fixed number of halvings used by the vectorised first-order-condition solvers."""

DEFAULT_MPC_SHOCKS: tuple = (-1.0, -0.1, -0.01, 0.01, 0.1, 1.0)
"""Signed liquid-asset shocks for which MPC statistics are reported."""
