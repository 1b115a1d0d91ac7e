"""
auth/errors.py -- Error taxonomy for the auth layer.

Every AuthError carries a stable machine-readable code and an HTTP-equivalent
status so the REST layer can render a consistent error envelope without
inspecting the exception type:

  InvalidInputError     400  malformed credentials, query-injection attempts
  AuthenticationError   401  wrong password, bad/absent token, unknown user
  AccessDeniedError     403  token lacks the required scope or owner
  NotFoundError         404  password reset for an unknown email
  ConflictError         409  email/username already taken in the realm
  PolicyViolationError  422  password empty or too long

Authentication failures are deliberately vague about the cause. Policy
violations are informative because they are not security-sensitive.

TokenStateError and TokenGenerationError are integrity errors, not auth
outcomes: a malformed token record or a failing randomness source is a bug or
an outage, and the REST layer renders them as 500.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for auth outcomes mapped to HTTP responses."""

    status_code: int = 400
    code: str = "AUTH_ERROR"

    def __init__(self, message: str, *, code: str | None = None, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, status_code={self.status_code}, message={self.message!r})"


class InvalidInputError(AuthError):
    status_code = 400
    code = "INVALID_INPUT"


class AuthenticationError(AuthError):
    status_code = 401
    code = "UNAUTHORIZED"


class AccessDeniedError(AuthError):
    status_code = 403
    code = "ACCESS_DENIED"


class NotFoundError(AuthError):
    status_code = 404
    code = "NOT_FOUND"


class ConflictError(AuthError):
    status_code = 409
    code = "USER_EXISTS"


class PolicyViolationError(AuthError):
    status_code = 422
    code = "VALIDATION_ERROR"


class TokenStateError(Exception):
    """A persisted token is malformed (bad created timestamp, ttl 0 or missing)."""


class TokenGenerationError(Exception):
    """The cryptographic randomness source failed while minting a token id."""


# ---------------------------------------------------------------------------
# Factories for the stable codes
# ---------------------------------------------------------------------------


def login_failed() -> AuthenticationError:
    return AuthenticationError("login failed", code="LOGIN_FAILED")


def invalid_token() -> AuthenticationError:
    return AuthenticationError("Invalid Access Token", code="INVALID_TOKEN")


def authorization_required() -> AuthenticationError:
    return AuthenticationError("Authorization Required", code="AUTHORIZATION_REQUIRED")


def realm_required() -> InvalidInputError:
    return InvalidInputError("realm is required", code="REALM_REQUIRED")


def username_email_required() -> InvalidInputError:
    return InvalidInputError("username or email is required", code="USERNAME_EMAIL_REQUIRED")


def invalid_field(field: str) -> InvalidInputError:
    """Non-string value supplied for a lookup field (email, username, realm)."""
    return InvalidInputError(f"Invalid {field}", code=f"INVALID_{field.upper()}")


def user_not_found(user_id: object) -> AuthenticationError:
    return AuthenticationError(f"User {user_id} not found", code="USER_NOT_FOUND")


def email_not_found() -> NotFoundError:
    return NotFoundError("Email not found", code="EMAIL_NOT_FOUND")


def user_exists(detail: str = "") -> ConflictError:
    message = "User already exists"
    if detail:
        message = f"{message} ({detail})"
    return ConflictError(message)
