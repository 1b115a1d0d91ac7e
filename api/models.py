"""
API request and response models for tokenward REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Passwords are plain `str` here with no length constraint: the 72-byte policy
lives in auth/passwords.py so every path (create, change, set, reset) reports
the same PASSWORD_TOO_LONG error instead of a generic validation failure.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from datetime import datetime
from typing import Any, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from auth.models import AccessToken, User

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class UserCreate(BaseModel):
    """Request body for POST /api/v1/users and PUT /api/v1/users/{id}.

    email_verified is accepted for wire compatibility but dropped by the
    service for remote callers.
    """

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    email: Optional[str] = Field(default=None, max_length=255)
    username: Optional[str] = Field(default=None, max_length=255)
    password: Optional[str] = None
    realm: Optional[str] = Field(default=None, max_length=255)
    email_verified: Optional[bool] = Field(
        default=None, validation_alias=AliasChoices("email_verified", "emailVerified")
    )
    name: Optional[str] = Field(default=None, max_length=255)
    profile: dict[str, Any] = Field(default_factory=dict)


class UserPatch(BaseModel):
    """Request body for PATCH /api/v1/users/{id}. Only fields sent are changed."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    email: Optional[str] = Field(default=None, max_length=255)
    username: Optional[str] = Field(default=None, max_length=255)
    password: Optional[str] = None
    realm: Optional[str] = Field(default=None, max_length=255)
    email_verified: Optional[bool] = Field(
        default=None, validation_alias=AliasChoices("email_verified", "emailVerified")
    )
    name: Optional[str] = Field(default=None, max_length=255)
    profile: Optional[dict[str, Any]] = None


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/users/login.

    Lookup fields are typed loosely on purpose: a non-string value (e.g. an
    operator object like {"neq": "x"}) must reach the service so it can be
    rejected as INVALID_EMAIL / INVALID_USERNAME / INVALID_REALM.
    """

    email: Any = None
    username: Any = None
    realm: Any = None
    password: Optional[str] = None
    ttl: Optional[int] = None
    scope: Optional[Union[str, list[str]]] = None


class ChangePasswordRequest(BaseModel):
    """Request body for POST /api/v1/users/change-password."""

    old_password: str = Field(validation_alias=AliasChoices("old_password", "oldPassword"))
    new_password: str = Field(validation_alias=AliasChoices("new_password", "newPassword"))


class ResetRequestBody(BaseModel):
    """Request body for POST /api/v1/users/reset."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=1, max_length=255)
    realm: Optional[str] = None


class SetPasswordRequest(BaseModel):
    """Request body for POST /api/v1/users/reset-password."""

    new_password: str = Field(validation_alias=AliasChoices("new_password", "newPassword"))


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    """Public view of a user. Never includes the password hash."""

    model_config = ConfigDict(frozen=True)

    id: str
    email: Optional[str]
    username: Optional[str]
    realm: Optional[str]
    email_verified: bool
    name: Optional[str]
    profile: dict[str, Any]
    created_at: Optional[str]
    updated_at: Optional[str]

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(**user.public_dict())


class TokenResponse(BaseModel):
    """Response for POST /api/v1/users/login.

    id is the bearer credential. user is present only with ?include=user.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    ttl: int
    created: Optional[datetime]
    user_id: str
    scopes: list[str]
    user: Optional[UserResponse] = None

    @classmethod
    def from_token(cls, token: AccessToken) -> "TokenResponse":
        """Factory Method: map the domain token (and any attached user) to the wire shape."""
        return cls(
            id=token.id,
            ttl=token.ttl,
            created=token.created,
            user_id=token.user_id,
            scopes=list(token.scopes),
            user=UserResponse.from_user(token.user) if token.user is not None else None,
        )


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
