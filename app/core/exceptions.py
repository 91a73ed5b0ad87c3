"""
Evaluation errors.

Caller-facing errors carry an HTTP status and are rendered as
``{"error": ..., "detail": ...}`` by the handlers registered in ``app.main``.
Per-submission problems (invalid backend replies, missing rubric data) are
recovered inside the run and never reach the caller.
"""


class EvaluationError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code = 500
    error = "Evaluation error"

    def __init__(self, detail: str = ""):
        self.detail = detail or self.error
        super().__init__(self.detail)


class LeaseBusyError(EvaluationError):
    """The global evaluation lease is held by a fresh, live run."""

    status_code = 409
    error = "Evaluation is locked"

    def __init__(self, locked_by: str | None = None, locked_at=None):
        self.locked_by = locked_by
        self.locked_at = locked_at
        detail = f"Evaluation is currently locked by competition {locked_by}" if locked_by else "Failed to acquire evaluation lock"
        super().__init__(detail)


class StoreUnavailableError(EvaluationError):
    """The document store failed; the run released its lease before raising."""

    status_code = 500
    error = "Store unavailable"


class BadRequestError(EvaluationError):
    status_code = 400
    error = "Bad request"


class AuthenticationError(EvaluationError):
    status_code = 401
    error = "Unauthorized"


class PermissionDeniedError(EvaluationError):
    status_code = 403
    error = "Permission denied"


class CompetitionNotFoundError(EvaluationError):
    status_code = 404
    error = "Competition not found"

    def __init__(self, competition_id: str):
        self.competition_id = competition_id
        super().__init__(f"Competition {competition_id} not found")


class BackendInvalidResponse(Exception):
    """One scoring backend's reply failed validation (retried, then dropped)."""


class MissingRubricOrBriefError(Exception):
    """A submission cannot be scored because its challenge config is incomplete."""
