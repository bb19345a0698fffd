"""
auth/errors.py -- Service-layer exceptions mapped to HTTP responses.

Each class carries the HTTP status_code and a stable error code. The public
`message` is what the client sees; `internal_cause` is for logs only and is
never serialized.

Account enumeration guard: Unauthorized always uses INVALID_CREDENTIALS as its
public message, whatever went wrong (unknown email, bad password, expired or
revoked token, stale version, bad code, bad CSRF state). The real reason goes
into internal_cause.

Layer rule: no imports from api/, core/, or cache/.
"""

from __future__ import annotations

INVALID_CREDENTIALS = "Invalid credentials"
SOMETHING_WENT_WRONG = "Something went wrong"


class ServiceError(Exception):
    status_code: int = 400
    code: str = "bad_request"

    def __init__(self, message: str, internal_cause: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.internal_cause = internal_cause


class BadRequest(ServiceError):
    status_code = 400
    code = "bad_request"


class Unauthorized(ServiceError):
    status_code = 401
    code = "unauthorized"

    def __init__(self, internal_cause: str | None = None) -> None:
        super().__init__(INVALID_CREDENTIALS, internal_cause)


class Forbidden(ServiceError):
    status_code = 403
    code = "forbidden"


class NotFound(ServiceError):
    status_code = 404
    code = "not_found"


class Conflict(ServiceError):
    status_code = 409
    code = "conflict"


class InternalServerError(ServiceError):
    status_code = 500
    code = "internal_error"

    def __init__(self, internal_cause: str | None = None) -> None:
        super().__init__(SOMETHING_WENT_WRONG, internal_cause)
