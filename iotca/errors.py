"""
Error taxonomy for the IoT Certificate Authority.

Every error carries the HTTP status it maps to and a stable machine-readable
code, so the API layer renders all of them through a single handler.
"""

from http import HTTPStatus
from typing import Any, Dict, Optional


class AuthorityError(Exception):
    """Base class for errors returned to CA callers."""

    status = HTTPStatus.BAD_REQUEST
    code = "ERROR"

    def __init__(self, message: str = "Unknown error", status: Optional[HTTPStatus] = None,
                 payload: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        if status is not None:
            self.status = status
        self.payload = payload

    def to_dict(self) -> Dict[str, Any]:
        rv = dict(self.payload or ())
        rv["error"] = self.message
        rv["code"] = self.code
        return rv


class ValidationError(AuthorityError):
    """Raised when input validation fails."""

    code = "VALIDATION_ERROR"

    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(f"{field}: {message}", payload={"field": field})


class ApprovalDenied(AuthorityError):
    status = HTTPStatus.FORBIDDEN
    code = "APPROVAL_DENIED"

    def __init__(self, message: str = "Registration not approved"):
        super().__init__(message, payload={"approved": False})


class ApprovalTimedOut(AuthorityError):
    status = HTTPStatus.GATEWAY_TIMEOUT
    code = "APPROVAL_TIMED_OUT"

    def __init__(self, message: str = "No approval decision before timeout"):
        super().__init__(message, payload={"approved": False})


class DuplicateServiceIdError(AuthorityError):
    status = HTTPStatus.CONFLICT
    code = "DUPLICATE_SERVICE_ID"


class DuplicateServiceNameError(AuthorityError):
    status = HTTPStatus.CONFLICT
    code = "DUPLICATE_SERVICE_NAME"


class AuthenticationFailed(AuthorityError):
    status = HTTPStatus.UNAUTHORIZED
    code = "AUTHENTICATION_FAILED"


class NotFound(AuthorityError):
    status = HTTPStatus.NOT_FOUND
    code = "NOT_FOUND"


class InvalidKeyError(AuthorityError):
    code = "INVALID_KEY"


class DecryptionError(AuthorityError):
    code = "DECRYPTION_ERROR"


class Forbidden(AuthorityError):
    status = HTTPStatus.FORBIDDEN
    code = "FORBIDDEN"


class RateLimited(AuthorityError):
    status = HTTPStatus.TOO_MANY_REQUESTS
    code = "RATE_LIMIT"

    def __init__(self, message: str = "API limit exceeded", retry_after: Optional[float] = None):
        payload = {"retryAfter": round(retry_after, 3)} if retry_after is not None else None
        super().__init__(message, payload=payload)
        self.retry_after = retry_after
