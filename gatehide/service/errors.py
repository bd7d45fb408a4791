from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code. The generic codes are:
    - unauthorized (401)
    - not_found (404)
    - validation_error (400)
    - conflict (409)
    - server_error (500)

    Auth-specific subclasses narrow these with their own codes so clients can
    react (e.g. ``token_expired`` triggers a refresh, ``weak_password`` a form
    hint) without parsing messages.
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
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class InvalidCredentialsError(AuthenticationError):
    """No namespace accepted the email/password pair."""
    error_code = "invalid_credentials"


class TokenError(AuthenticationError):
    """Base for bearer token failures."""
    error_code = "token_invalid"


class MalformedTokenError(TokenError):
    """Token is not three decodable segments with the expected claims."""
    error_code = "token_malformed"


class InvalidTokenError(TokenError):
    """Signature, algorithm, issuer or bound session rejected the token."""
    error_code = "token_invalid"


class ExpiredTokenError(TokenError):
    error_code = "token_expired"


class SessionNotFoundError(NotFoundError):
    """Session is missing or does not belong to the caller."""
    error_code = "session_not_found"


class InvalidResetTokenError(ValidationError):
    """Reset token is unknown, used, expired or bound to another account."""
    error_code = "invalid_reset_token"


class PasswordMismatchError(ValidationError):
    error_code = "password_mismatch"


class WeakPasswordError(ValidationError):
    error_code = "weak_password"


class IncorrectPasswordError(ValidationError):
    """Current password supplied to a password change is wrong."""
    error_code = "incorrect_password"


class EmailNotFoundError(NotFoundError):
    error_code = "email_not_found"


class EmailConflictError(ConflictError):
    error_code = "email_conflict"


class EmailUnchangedError(ValidationError):
    """Requested email equals the current one."""
    error_code = "email_unchanged"


class VerificationCodeInvalidError(ValidationError):
    """Code is absent, expired or does not match."""
    error_code = "verification_code_invalid"


class IdentityNotFoundError(NotFoundError):
    error_code = "not_found"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
    "InvalidCredentialsError",
    "TokenError",
    "MalformedTokenError",
    "InvalidTokenError",
    "ExpiredTokenError",
    "SessionNotFoundError",
    "InvalidResetTokenError",
    "PasswordMismatchError",
    "WeakPasswordError",
    "IncorrectPasswordError",
    "EmailNotFoundError",
    "EmailConflictError",
    "EmailUnchangedError",
    "VerificationCodeInvalidError",
    "IdentityNotFoundError",
]
