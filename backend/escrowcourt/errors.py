"""Typed failures raised by the complaint workflow and the ledger.

They subclass ValueError so callers that only know "bad input" keep working.
``status_code`` is what an HTTP layer would map the error to.
"""


class EscrowCourtError(ValueError):
    status_code = 400
    code = "error"

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self):
        return {"ok": False, "code": self.code, "message": self.message, **self.context}


class NotFoundError(EscrowCourtError):
    status_code = 404
    code = "not_found"


class PermissionDeniedError(EscrowCourtError):
    status_code = 403
    code = "permission_denied"


class StateConflictError(EscrowCourtError):
    status_code = 409
    code = "state_conflict"


class WindowExpiredError(EscrowCourtError):
    status_code = 410
    code = "window_expired"


class ValidationError(EscrowCourtError):
    status_code = 422
    code = "validation_error"


class DependencyFailureError(EscrowCourtError):
    """A collaborator (wallet, inventory) could not be reached inside a unit of work. Retryable."""

    status_code = 503
    code = "dependency_failure"
