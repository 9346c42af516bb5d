"""Grade-engine error taxonomy and its HTTP rendering.

Every failure a recompute attempt can end in is a ``GradingError`` subclass
carrying a stable ``error_code``. The code is written to the ledger entry and
returned to API callers:

    {"detail": "...", "error_code": "LOCKED_GRADE", "log_entry_id": 42}

Configuration errors (``ExpressionSyntaxError``, ``FormulaConfigError``) are
raised when an author activates a formula or component and never reach
computation time.
"""

from fastapi import Request
from fastapi.responses import JSONResponse


class GradingError(Exception):
    """Base class for all grade-engine failures."""

    error_code = "GRADING_ERROR"
    status_code = 400

    def __init__(self, message: str, *, log_entry_id: int | None = None):
        super().__init__(message)
        self.message = message
        self.log_entry_id = log_entry_id


# ── Configuration (activation time) ───────────────────────────────


class FormulaConfigError(GradingError):
    """Malformed formula or component configuration."""

    error_code = "FORMULA_CONFIG_INVALID"
    status_code = 422


class ExpressionSyntaxError(FormulaConfigError):
    """Expression text falls outside the closed grammar."""

    error_code = "EXPRESSION_SYNTAX"

    def __init__(self, message: str, expression: str = "", position: int | None = None):
        super().__init__(message)
        self.expression = expression
        self.position = position


class ConfigNotFoundError(FormulaConfigError):
    error_code = "CONFIG_NOT_FOUND"
    status_code = 404


# ── Computation time ──────────────────────────────────────────────


class MissingFormulaError(GradingError):
    """No active formula at any scope for the offering. Not retried."""

    error_code = "MISSING_FORMULA"
    status_code = 404


class ExpressionEvaluationError(GradingError):
    """Unknown binding, division by zero or non-numeric result."""

    error_code = "EXPRESSION_EVALUATION"
    status_code = 422


class UnresolvedComponentError(ExpressionEvaluationError):
    """A referenced component produced no usable data and has no default,
    or a ``fail_validation`` component has ungraded scores."""

    error_code = "UNRESOLVED_COMPONENT"

    def __init__(self, key: str, reason: str | None = None):
        if reason:
            message = f"Component '{key}' failed validation: {reason}"
        else:
            message = f"Component '{key}' has no usable scores and no default value"
        super().__init__(message)
        self.key = key


class NotEnrolledError(GradingError):
    error_code = "NOT_ENROLLED"
    status_code = 404


class LockedGradeError(GradingError):
    """Expected, user-facing outcome: the final grade was locked by staff."""

    error_code = "LOCKED_GRADE"
    status_code = 409


class ConcurrentRecomputeConflict(GradingError):
    """Two attempts raced on the same pair and the retry lost as well."""

    error_code = "CONCURRENT_RECOMPUTE"
    status_code = 409


class RecomputeTimeoutError(GradingError):
    error_code = "RECOMPUTE_TIMEOUT"
    status_code = 503


class FinalGradeNotFoundError(GradingError):
    error_code = "FINAL_GRADE_NOT_FOUND"
    status_code = 404


class LedgerStateError(GradingError):
    """Illegal transition out of a terminal ledger state."""

    error_code = "LEDGER_STATE"
    status_code = 500


def grading_error_handler(_request: Request, exc: GradingError) -> JSONResponse:
    """Custom handler registered on the FastAPI app."""
    content = {"detail": exc.message, "error_code": exc.error_code}
    if exc.log_entry_id is not None:
        content["log_entry_id"] = exc.log_entry_id
    return JSONResponse(status_code=exc.status_code, content=content)
