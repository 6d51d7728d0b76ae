"""Custom exceptions for input validation."""


class InputValidationError(ValueError):
    """Raised when model inputs are missing or mutually inconsistent.

    Raised at construction time, before any iteration begins, and lists every
    problem found rather than only the first.

    Attributes:
        issues: List of specific input problems found.

    Examples:
        Catching and inspecting issues::

            try:
                HJBSolver(params, grid, income, options)
            except InputValidationError as e:
                for issue in e.issues:
                    print(f"  - {issue}")
    """

    def __init__(self, issues: list[str]) -> None:
        self.issues = issues
        bullet_list = "\n".join(f"  - {issue}" for issue in issues)
        super().__init__(
            f"Model inputs have {len(issues)} "
            f"{'issue' if len(issues) == 1 else 'issues'}:\n{bullet_list}"
        )
