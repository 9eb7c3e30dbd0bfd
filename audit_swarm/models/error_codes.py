"""Machine-readable codes carried in JSON error bodies.

`AuditError` subclasses bring their own code; these cover the plain HTTP
errors raised by route handlers and the repository-origin failures that
snapshot resolution returns inside a 200.
"""

from enum import Enum


class ErrorCode(str, Enum):
    BAD_REQUEST = "BAD_REQUEST"
    UNAUTHORIZED = "UNAUTHORIZED"
    NOT_FOUND = "NOT_FOUND"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class SnapshotErrorCode(str, Enum):
    """Repository-origin failures surfaced by snapshot resolution."""

    PRIVATE_REPO = "PRIVATE_REPO"
    OWNER_NOT_FOUND = "OWNER_NOT_FOUND"
    RATE_LIMIT = "RATE_LIMIT"
    INVALID_URL = "INVALID_URL"
    NOT_FOUND = "NOT_FOUND"
    GITHUB_ERROR = "GITHUB_ERROR"


# Statuses route handlers raise as HTTPException
HTTP_ERROR_CODES = {
    400: ErrorCode.BAD_REQUEST,
    401: ErrorCode.UNAUTHORIZED,
    404: ErrorCode.NOT_FOUND,
}


def get_error_code(status_code: int) -> ErrorCode:
    return HTTP_ERROR_CODES.get(status_code, ErrorCode.INTERNAL_ERROR)
