"""
auth/errors.py -- Typed failures raised by the auth orchestrator.

Each class carries a stable machine-readable code and the HTTP status the API
layer renders it with. Stores and directories never raise these; they return
None / WriteResult values and the orchestrator maps them here, so no
lower-layer error crosses the boundary unmapped.

EmailUnverified is deliberately absent: an unverified login is not a hard
error, it is a LoginResult carrying a verification redirect.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for every failure the orchestrator surfaces."""

    status_code: int = 400
    code: str = "auth_error"
    message: str = "Authentication failed."

    def __init__(self, message: str | None = None, *, detail: str | None = None) -> None:
        super().__init__(message or self.message)
        if message is not None:
            self.message = message
        self.detail = detail


class MissingDeviceId(AuthError):
    status_code = 400
    code = "missing_device_id"
    message = 'Device id is required. Set it in the "Device-Uuid" request header.'


class MissingCredentials(AuthError):
    status_code = 400
    code = "missing_credentials"
    message = "Email and password are required."


class Unauthorized(AuthError):
    """Unknown user, wrong password or disabled account.

    reason is for logs only -- the wire message is identical for every reason
    so responses cannot be used to enumerate accounts.
    """

    status_code = 401
    code = "unauthorized"
    message = "Invalid email or password."

    def __init__(self, reason: str = "unknown", message: str | None = None) -> None:
        super().__init__(message)
        self.reason = reason


class Forbidden(AuthError):
    status_code = 403
    code = "forbidden"
    message = "Access denied."


class SessionExpired(AuthError):
    status_code = 401
    code = "session_expired"
    message = "Your authentication expired."


class ValidationError(AuthError):
    status_code = 400
    code = "validation_error"
    message = "Request validation failed."


class NotFound(AuthError):
    status_code = 404
    code = "not_found"
    message = "Not found."


class Conflict(AuthError):
    status_code = 409
    code = "conflict"
    message = "A verified account with that email already exists."


class VerificationDispatchError(AuthError):
    status_code = 400
    code = "verification_unavailable"
    message = "Unable to send verify email."
