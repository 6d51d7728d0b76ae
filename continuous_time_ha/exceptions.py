"""Error taxonomy for the model solvers.

Every error propagates to the top-level solve call; nothing here is
recovered silently.
"""

from typing import Optional

from .config.exceptions import InputValidationError


class InvariantViolationError(RuntimeError):
    """Upwind regime indicators failed to partition the state space.

    Signals a logic defect rather than bad input.
    """

    def __init__(self, scheme: str, n_states: int) -> None:
        self.scheme = scheme
        self.n_states = n_states
        super().__init__(
            f"{scheme} regime indicators do not sum to one at {n_states} "
            f"{'state' if n_states == 1 else 'states'}"
        )


class ConvergenceError(RuntimeError):
    """An iteration budget was exhausted without reaching tolerance.

    Attributes:
        solver: Name of the iterating solver ("HJB", "KFE", ...).
        iterations: Number of iterations performed.
        distance: Sup-norm distance at the last iteration.
    """

    def __init__(
        self, solver: str, iterations: int, distance: float, message: Optional[str] = None
    ) -> None:
        self.solver = solver
        self.iterations = iterations
        self.distance = distance
        if message is None:
            message = (
                f"{solver} did not converge after {iterations} iterations "
                f"(distance = {distance:.6e})"
            )
        super().__init__(message)


class DivergenceError(ConvergenceError):
    """The iteration distance blew past the divergence threshold."""

    def __init__(self, solver: str, iterations: int, distance: float) -> None:
        super().__init__(
            solver,
            iterations,
            distance,
            f"{solver} is not converging: distance = {distance:.6e} "
            f"at iteration {iterations}",
        )


__all__ = [
    "ConvergenceError",
    "DivergenceError",
    "InputValidationError",
    "InvariantViolationError",
]
