"""Exception hierarchy shared by the request handlers.

Operations raise these before any mutation takes place; the API layer turns
them into ``{error, message?, errors?}`` JSON bodies with the matching status
code.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence


class ServiceError(Exception):
    """Base class for failures that map onto an HTTP error response."""

    status_code = 500
    default_error = "Internal server error"

    def __init__(
        self,
        error: Optional[str] = None,
        message: Optional[str] = None,
        *,
        errors: Optional[Sequence[str]] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.error = error or self.default_error
        self.message = message
        self.errors: Optional[List[str]] = list(errors) if errors is not None else None
        self.extra = dict(extra or {})
        super().__init__(message or self.error)

    def to_body(self) -> Dict[str, Any]:
        return build_error_body(self.error, self.message, self.errors, self.extra)


class BadRequest(ServiceError):
    status_code = 400
    default_error = "Invalid request"


class ValidationFailed(BadRequest):
    """Raised with the full list of human readable validation messages."""

    default_error = "Validation failed"

    def __init__(self, errors: Sequence[str], message: Optional[str] = None) -> None:
        super().__init__(self.default_error, message, errors=errors)


class PreconditionFailed(BadRequest):
    """Business-rule rejection, e.g. resending to an already active account."""


class Forbidden(ServiceError):
    status_code = 403
    default_error = "Unauthorized"


class NotFound(ServiceError):
    status_code = 404
    default_error = "Not found"


class Conflict(ServiceError):
    status_code = 409
    default_error = "Conflict"


def build_error_body(
    error: str,
    message: Optional[str] = None,
    errors: Optional[Sequence[str]] = None,
    extra: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Return the JSON error envelope, omitting absent optional keys."""

    body: Dict[str, Any] = {"error": error}
    if message not in (None, ""):
        body["message"] = message
    if errors is not None:
        body["errors"] = list(errors)
    if extra:
        body.update(extra)
    return body


__all__ = [
    "ServiceError",
    "BadRequest",
    "ValidationFailed",
    "PreconditionFailed",
    "Forbidden",
    "NotFound",
    "Conflict",
    "build_error_body",
]
