"""Exception types raised by the budget engines and storage shell.

Every error carries a short machine-readable ``code`` so the CLI can map
failures to exit codes and JSON error payloads.
"""

from __future__ import annotations


class BudgetError(Exception):
    """Base class for all budget errors."""

    code = "ERROR"

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code


class InvalidInputError(BudgetError, ValueError):
    """Malformed month, date, amount, rule or identifier."""

    code = "VALIDATION"


class RuleDecodeError(InvalidInputError):
    """A stored or supplied recurrence rule could not be decoded."""


class MissingTBBError(BudgetError):
    code = "MISSING_TBB"

    def __init__(self, message: str = "To Be Budgeted envelope not found. Run `envelope-budget system init` first.") -> None:
        super().__init__(message)


class NotFoundError(BudgetError):
    code = "NOT_FOUND"


class AlreadyExistsError(BudgetError):
    code = "ALREADY_EXISTS"


class AlreadyPostedError(AlreadyExistsError):
    code = "ALREADY_POSTED"


class ScheduleArchivedError(BudgetError):
    code = "SCHEDULE_ARCHIVED"


class ReconciledError(BudgetError):
    """A reconciled transaction was changed without ``force``."""

    code = "RECONCILED"
