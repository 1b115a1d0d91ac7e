"""
auth/models.py -- Domain dataclasses for authentication entities and policy.

Pattern: Data class (pure data containers). Stores and services do the work;
the only logic here is small derived properties and the policy registry lookup.

  User / AccessToken       -- persisted entities (auth/store.py maps rows).
  PrincipalPolicy          -- frozen per-principal configuration. Built once
                              from core.config.Settings in api/main.py and
                              passed into the service; nothing mutates it.
  PrincipalRegistry        -- explicit type-name -> policy table used to
                              resolve AccessToken.principal_type.
  TokenLookup              -- where to look for a token on inbound requests.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional

from auth.passwords import PasswordHasher

if TYPE_CHECKING:
    from auth.service import AuthService

# Fields whose change invalidates the user's outstanding sessions.
IDENTITY_FIELDS = ("email", "username", "realm")

# Columns a caller may write. id is assigned at create time only;
# created_at/updated_at are store-controlled.
USER_FIELDS = ("email", "username", "realm", "password", "email_verified", "name", "profile")

DEFAULT_PRINCIPAL = "User"
RESET_PASSWORD_SCOPE = "reset-password"


@dataclass
class User:
    """A principal that can log in with email or username plus password.

    password always holds a hash once the user has passed through the service
    (AuthService.create_user / mutations hash on assignment, never lazily).

    realm partitions uniqueness: (realm, email) and (realm, username) are each
    unique. email_verified is server-controlled -- remote create requests have
    it stripped before the store sees them.
    """

    email: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    realm: Optional[str] = None
    id: Optional[str] = None
    email_verified: bool = False
    name: Optional[str] = None
    profile: dict = field(default_factory=dict)
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def identity(self) -> dict[str, Optional[str]]:
        return {f: getattr(self, f) for f in IDENTITY_FIELDS}

    def public_dict(self) -> dict[str, Any]:
        """Serializable view without the password hash."""
        return {
            "id": self.id,
            "email": self.email,
            "username": self.username,
            "realm": self.realm,
            "email_verified": self.email_verified,
            "name": self.name,
            "profile": dict(self.profile),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class AccessToken:
    """An opaque bearer credential owned by one user.

    ttl is in seconds; -1 marks an eternal token (only honoured when the
    owning principal allows it); 0 or a missing ttl is a malformed record.
    principal_type names the PrincipalRegistry entry the token authenticates.
    """

    id: str
    user_id: str
    ttl: Optional[int]
    created: Optional[datetime] = None
    principal_type: Optional[str] = None
    scopes: list[str] = field(default_factory=list)
    # Not persisted. login(include="user") attaches the authenticated user here.
    user: Optional[User] = field(default=None, repr=False, compare=False)

    @property
    def is_eternal(self) -> bool:
        return self.ttl == -1

    @property
    def expires_at(self) -> Optional[datetime]:
        if self.created is None or self.ttl is None or self.ttl <= 0:
            return None
        return self.created + timedelta(seconds=self.ttl)

    def has_scope(self, scope: str) -> bool:
        return scope in self.scopes


# Injectable token-creation strategy: (service, user, ttl, scopes, options) -> AccessToken.
TokenIssuer = Callable[["AuthService", User, Optional[int], Optional[list], dict], Awaitable[AccessToken]]


@dataclass(frozen=True)
class PrincipalPolicy:
    """Immutable configuration for one principal model.

    tracks_sessions is False for principals that have no relation to the
    access-token model; session invalidation and delete cascades no-op for them.
    token_issuer replaces the default createAccessToken behaviour when set.
    """

    name: str = DEFAULT_PRINCIPAL
    token_ttl: int = 1209600
    max_token_ttl: int = 31556926
    allow_eternal_tokens: bool = False
    realm_required: bool = False
    realm_delimiter: Optional[str] = None
    case_sensitive_email: bool = True
    email_verification_required: bool = False
    reset_password_token_ttl: int = 900
    access_token_id_length: int = 64
    tracks_sessions: bool = True
    password_hasher: PasswordHasher = field(default_factory=PasswordHasher)
    token_issuer: Optional[TokenIssuer] = None

    @property
    def realm_mode(self) -> bool:
        """A configured delimiter implies a realm is required."""
        return self.realm_required or bool(self.realm_delimiter)

    def normalize_email(self, email: Optional[str]) -> Optional[str]:
        if email is None or self.case_sensitive_email:
            return email
        return email.lower()

    @classmethod
    def from_settings(cls, settings: Any, name: str = DEFAULT_PRINCIPAL) -> "PrincipalPolicy":
        """Build the policy from core.config.Settings (duck-typed to keep auth/ free of core/)."""
        return cls(
            name=name,
            token_ttl=settings.token_ttl,
            max_token_ttl=settings.max_token_ttl,
            allow_eternal_tokens=settings.allow_eternal_tokens,
            realm_required=settings.realm_required,
            realm_delimiter=settings.realm_delimiter or None,
            case_sensitive_email=settings.case_sensitive_email,
            email_verification_required=settings.email_verification_required,
            reset_password_token_ttl=settings.reset_password_token_ttl,
            access_token_id_length=settings.access_token_id_length,
            password_hasher=PasswordHasher(rounds=settings.salt_work_factor),
        )


class PrincipalRegistry:
    """Lookup table from principal type name to its policy.

    Replaces runtime model reflection: a token's principal_type either names a
    registered policy or it does not, in which case the token is simply not
    valid.
    """

    def __init__(self, default: PrincipalPolicy, *others: PrincipalPolicy) -> None:
        self.default = default
        self._policies: dict[str, PrincipalPolicy] = {default.name: default}
        for policy in others:
            self.register(policy)

    def register(self, policy: PrincipalPolicy) -> None:
        if policy.name in self._policies and self._policies[policy.name] is not policy:
            raise ValueError(f"Principal type {policy.name!r} is already registered")
        self._policies[policy.name] = policy

    def get(self, name: str) -> Optional[PrincipalPolicy]:
        return self._policies.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._policies


DEFAULT_TOKEN_PARAMS = ("access_token",)
DEFAULT_TOKEN_HEADERS = ("X-Access-Token", "authorization")
DEFAULT_TOKEN_COOKIES = ("access_token", "authorization")


@dataclass(frozen=True)
class TokenLookup:
    """Where resolve_token_id() searches an inbound request for a token id.

    Custom names are searched first; the defaults are appended unless
    search_default_token_keys is False.
    """

    params: tuple[str, ...] = ()
    headers: tuple[str, ...] = ()
    cookies: tuple[str, ...] = ()
    search_default_token_keys: bool = True
    bearer_token_base64_encoded: bool = True

    def keys(self) -> tuple[tuple[str, ...], tuple[str, ...], tuple[str, ...]]:
        params, headers, cookies = tuple(self.params), tuple(self.headers), tuple(self.cookies)
        if self.search_default_token_keys:
            params += DEFAULT_TOKEN_PARAMS
            headers += DEFAULT_TOKEN_HEADERS
            cookies += DEFAULT_TOKEN_COOKIES
        return params, headers, cookies

    @classmethod
    def from_settings(cls, settings: Any) -> "TokenLookup":
        return cls(
            params=tuple(settings.token_params),
            headers=tuple(settings.token_headers),
            cookies=tuple(settings.token_cookies),
            search_default_token_keys=settings.search_default_token_keys,
            bearer_token_base64_encoded=settings.bearer_token_base64_encoded,
        )
