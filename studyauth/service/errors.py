from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass is one error kind. ``error_code`` is the stable
    machine-readable code returned to clients and ``status_code`` the HTTP
    status the API layer answers with:
    - validation_error (400)
    - invalid_credentials / invalid_token / token_expired (401)
    - account_disabled (403)
    - not_found (404)
    - email_exists / username_exists / phone_exists (409)
    - otp_exhausted (429)
    - internal_error (500)
    - service_unavailable (503)
    - timeout (504)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Malformed or missing input, rejected before any mutation (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    error_code = "invalid_credentials"


class InvalidTokenError(AuthenticationError):
    """Token has a bad signature, shape, issuer, audience or kind."""
    error_code = "invalid_token"


class ExpiredTokenError(AuthenticationError):
    """Token was well-formed but its expiry has elapsed."""
    error_code = "token_expired"


class TokenAlreadyInvalidatedError(AuthenticationError):
    error_code = "token_already_invalidated"


class OTPError(AuthenticationError):
    """Base for one-time passcode failures.

    Messages never say whether the destination belongs to an account.
    """
    error_code = "otp_invalid"


class OTPExpiredError(OTPError):
    error_code = "otp_expired"


class OTPMismatchError(OTPError):
    error_code = "otp_mismatch"


class OTPExhaustedError(OTPError):
    status_code = 429
    error_code = "otp_exhausted"


class OTPAlreadyConsumedError(OTPError):
    error_code = "otp_already_consumed"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class AccountDisabledError(ForbiddenError):
    error_code = "account_disabled"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class EmailExistsError(ConflictError):
    error_code = "email_exists"


class UsernameExistsError(ConflictError):
    error_code = "username_exists"


class PhoneExistsError(ConflictError):
    error_code = "phone_exists"


class ServiceUnavailableError(ServiceError):
    """A downstream dependency (store, hasher, notification provider) failed (503)."""
    status_code = 503
    error_code = "service_unavailable"


class OperationTimeoutError(ServiceError):
    """An external call exceeded its bounded timeout (504)."""
    status_code = 504
    error_code = "timeout"


class InternalError(ServiceError):
    """Unexpected failure; details are logged, never returned (500)."""
    status_code = 500
    error_code = "internal_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "InvalidTokenError",
    "ExpiredTokenError",
    "TokenAlreadyInvalidatedError",
    "OTPError",
    "OTPExpiredError",
    "OTPMismatchError",
    "OTPExhaustedError",
    "OTPAlreadyConsumedError",
    "ForbiddenError",
    "AccountDisabledError",
    "NotFoundError",
    "ConflictError",
    "EmailExistsError",
    "UsernameExistsError",
    "PhoneExistsError",
    "ServiceUnavailableError",
    "OperationTimeoutError",
    "InternalError",
]
