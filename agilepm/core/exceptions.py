"""Typed failures raised by the permission core and their HTTP mapping."""

from fastapi import HTTPException, status


class RbacError(Exception):
    """Base exception for the permission core."""

    def __init__(self, message: str = "An error occurred"):
        self.message = message
        super().__init__(self.message)


class ValidationError(RbacError):
    """Raised when input validation fails."""
    pass


class DuplicateCodeError(RbacError):
    """Raised when a permission code is already registered."""
    pass


class DuplicateAssignmentError(RbacError):
    """Raised when a role already holds the permission."""
    pass


class UnknownPermissionError(RbacError):
    """Raised when a permission code is absent from the catalog or inactive."""
    pass


class NotFoundError(RbacError):
    """Raised when an assignment, department or other record does not exist."""
    pass


class UnknownConditionError(RbacError):
    """Raised when a condition cannot be evaluated; callers must deny."""

    def __init__(self, condition_type: str | None, message: str | None = None):
        self.condition_type = condition_type
        super().__init__(message or f"Unsupported condition type: {condition_type!r}")


class CycleDetectedError(RbacError):
    """Raised when a department parent chain loops back on itself.

    ``path`` holds the names accumulated before the loop was detected,
    root-most first.
    """

    def __init__(self, department_id: str, path: list[str] | None = None, message: str | None = None):
        self.department_id = department_id
        self.path = list(path or [])
        super().__init__(message or f"Cycle detected in department hierarchy at {department_id}")


class TransientStorageError(RbacError):
    """Raised when storage keeps failing after the retry budget is spent."""
    pass


class QuotaExceededError(RbacError):
    """Raised when an AI usage quota is exhausted."""
    pass


_STATUS_BY_ERROR: dict[type[RbacError], int] = {
    DuplicateCodeError: status.HTTP_409_CONFLICT,
    DuplicateAssignmentError: status.HTTP_409_CONFLICT,
    NotFoundError: status.HTTP_404_NOT_FOUND,
    UnknownPermissionError: status.HTTP_400_BAD_REQUEST,
    UnknownConditionError: status.HTTP_400_BAD_REQUEST,
    CycleDetectedError: status.HTTP_400_BAD_REQUEST,
    ValidationError: status.HTTP_400_BAD_REQUEST,
    QuotaExceededError: status.HTTP_429_TOO_MANY_REQUESTS,
    TransientStorageError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def http_exception_for(exc: RbacError) -> HTTPException:
    """Translate a core error into the HTTPException the API layer returns."""
    for error_type in type(exc).__mro__:
        if error_type in _STATUS_BY_ERROR:
            return HTTPException(status_code=_STATUS_BY_ERROR[error_type], detail=exc.message)
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=exc.message)


# HTTP exception shortcuts
def forbidden(detail: str = "Insufficient permissions") -> HTTPException:
    return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=detail)


def unauthorized(detail: str = "Not authenticated") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )
