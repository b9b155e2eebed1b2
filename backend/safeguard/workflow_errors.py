class WorkflowError(Exception):
    """Base class for approval-workflow failures.

    ``detail`` is a short snake_case code that is safe to surface to API
    callers; ``status_code`` is the HTTP status it maps to.
    """

    status_code = 400

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class InvalidArgument(WorkflowError, ValueError):
    status_code = 400


class InvalidStateTransition(WorkflowError, ValueError):
    status_code = 409


class NotFound(WorkflowError, LookupError):
    status_code = 404


class Unauthorized(WorkflowError, PermissionError):
    status_code = 403


class PersistenceFailure(WorkflowError, RuntimeError):
    status_code = 503
