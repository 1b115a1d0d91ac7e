"""
auth/tokens.py -- Token Manager: opaque access-token minting, lookup and validation.

Security design decisions:
  Token ids: secrets.token_urlsafe() truncated to the configured length
       (default 64 chars, ~384 bits). Ids are globally unique by construction;
       collisions are not checked for. If the OS randomness source fails we
       raise TokenGenerationError -- there is no fallback to a weaker PRNG.

  Lazy expiry: expired tokens are deleted the first time someone presents
       them (validate()), never by a background sweep.

  Fail closed: a token record with a missing/invalid created timestamp or a
       ttl of 0 raises TokenStateError. That is a data-integrity bug, not an
       "invalid token" answer, and must not be mistaken for one.

  Eternal tokens: ttl == -1 is only honoured when the owning principal's
       policy sets allow_eternal_tokens.

  Request lookup: resolve_token_id() searches params, then headers, then
       signed cookies, in that strict order (see its docstring). The Basic-auth
       branch keeps the historical "longer side of user:pass wins" heuristic;
       when both sides have the same length the left side wins.

  Cookies: the access_token cookie is signed with itsdangerous so a client
       cannot plant an arbitrary token id through document.cookie on a
       sibling subdomain.

Layer rule: no imports from api/ or core/. Starlette is only touched through
RequestView.from_request() so the lookup logic stays framework-neutral.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import enum
import logging
import secrets
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable, Optional

from itsdangerous import BadSignature, Signer

from auth.errors import TokenGenerationError, TokenStateError, invalid_token
from auth.models import AccessToken, PrincipalRegistry, TokenLookup

if TYPE_CHECKING:
    from starlette.requests import Request

    from auth.store import CredentialStore

logger = logging.getLogger("tokenward.auth")

DEFAULT_TOKEN_LENGTH = 64
ANONYMOUS_TOKEN_ID = "$anonymous"

_COOKIE_SALT = "tokenward.cookie"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def token_prefix(token_id: str) -> str:
    """Short, log-safe form of a token id."""
    return f"{token_id[:8]}..."


# ---------------------------------------------------------------------------
# Id generation
# ---------------------------------------------------------------------------


def generate_token_id(length: int = DEFAULT_TOKEN_LENGTH) -> str:
    """Return a URL-safe random string of exactly `length` characters.

    token_urlsafe(n) yields about 1.3 chars per byte, so asking for `length`
    bytes always produces at least `length` chars to truncate from.
    """
    if length <= 0:
        raise ValueError("Token length must be positive.")
    try:
        return secrets.token_urlsafe(length)[:length]
    except (OSError, NotImplementedError) as exc:
        raise TokenGenerationError("Unable to generate access token id.") from exc


# ---------------------------------------------------------------------------
# Signed cookies
# ---------------------------------------------------------------------------


def sign_cookie(value: str, secret_key: str) -> str:
    return Signer(secret_key, salt=_COOKIE_SALT).sign(value).decode("utf-8")


def unsign_cookie(value: str, secret_key: str) -> Optional[str]:
    """Return the original value, or None if the signature does not verify."""
    try:
        return Signer(secret_key, salt=_COOKIE_SALT).unsign(value).decode("utf-8")
    except BadSignature:
        return None


# ---------------------------------------------------------------------------
# Request lookup
# ---------------------------------------------------------------------------


@dataclass
class RequestView:
    """The parts of an inbound request a token can arrive in.

    headers are matched case-insensitively (keys are stored lowercased).
    signed_cookies holds only cookies whose signature verified.
    """

    path_params: Mapping[str, Any] = field(default_factory=dict)
    body: Optional[Mapping[str, Any]] = None
    query: Mapping[str, Any] = field(default_factory=dict)
    headers: Mapping[str, str] = field(default_factory=dict)
    signed_cookies: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.headers = {k.lower(): v for k, v in self.headers.items()}

    def header(self, name: str) -> Optional[str]:
        return self.headers.get(name.lower())

    def param(self, name: str) -> Any:
        """Path params win over body fields, which win over the query string."""
        for source in (self.path_params, self.body or {}, self.query):
            if name in source:
                return source[name]
        return None

    @classmethod
    def from_request(
        cls, request: "Request", secret_key: str, body: Optional[Mapping[str, Any]] = None
    ) -> "RequestView":
        signed: dict[str, str] = {}
        for name, raw in request.cookies.items():
            value = unsign_cookie(raw, secret_key)
            if value is not None:
                signed[name] = value
        return cls(
            path_params=dict(request.path_params),
            body=body,
            query=dict(request.query_params),
            headers=dict(request.headers),
            signed_cookies=signed,
        )


def _b64decode_text(value: str) -> str:
    padded = value + "=" * (-len(value) % 4)
    return base64.b64decode(padded).decode("utf-8")


def _token_from_header(value: str, bearer_base64: bool) -> str:
    """Extract the token id from one header value.

    Bearer <id>        -> id, base64-decoded when bearer_base64 is set.
    Basic <b64(a:b)>   -> whichever of a / b is longer (a on a tie); the token
                          may have been sent as either the user or password.
    anything else      -> the raw value.

    Raises ValueError (binascii.Error / UnicodeDecodeError) on undecodable input.
    """
    if value.startswith("Bearer "):
        token = value[7:]
        if bearer_base64:
            token = _b64decode_text(token)
        return token
    if value[:6].lower() == "basic ":
        decoded = _b64decode_text(value[6:])
        left, sep, right = decoded.partition(":")
        if not sep:
            return decoded
        return right if len(right) > len(left) else left
    return value


def resolve_token_id(request: RequestView, lookup: TokenLookup = TokenLookup()) -> Optional[str]:
    """Find the access token id carried by a request, or None.

    Search order is strict -- the first match wins:
      1. params (path, then body, then query) by name; only string values count.
      2. headers by name; empty values are skipped, Bearer/Basic are unwrapped.
      3. signed cookies by name.
    """
    params, headers, cookies = lookup.keys()

    for name in params:
        value = request.param(name)
        if isinstance(value, str):
            return value

    for name in headers:
        value = request.header(name)
        if not isinstance(value, str) or value == "":
            continue
        try:
            return _token_from_header(value, lookup.bearer_token_base64_encoded)
        except (binascii.Error, UnicodeDecodeError, ValueError):
            logger.debug("Skipping undecodable %s header", name)
            continue

    for name in cookies:
        value = request.signed_cookies.get(name)
        if isinstance(value, str):
            return value

    return None


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class TokenVerdict(enum.Enum):
    VALID = "valid"
    EXPIRED = "expired"
    UNRESOLVED_PRINCIPAL = "unresolved_principal"


def validate_token(token: AccessToken, registry: PrincipalRegistry, now: datetime) -> TokenVerdict:
    """Decide whether a token is usable at `now`. Pure: never touches the store.

    Raises TokenStateError for malformed records. A token whose principal_type
    is not registered is UNRESOLVED_PRINCIPAL -- not valid, but also not
    something to delete, since another deployment may know that principal.
    """
    if not isinstance(token.created, datetime):
        raise TokenStateError("token.created must be a valid datetime")
    if token.ttl == 0:
        raise TokenStateError("token.ttl must not be 0")
    if token.ttl is None:
        raise TokenStateError("token.ttl must exist")

    policy = registry.default
    if token.principal_type:
        policy = registry.get(token.principal_type)
        if policy is None:
            return TokenVerdict.UNRESOLVED_PRINCIPAL

    eternal_allowed = policy.allow_eternal_tokens
    if not eternal_allowed and token.ttl < -1:
        raise TokenStateError("token.ttl must be >= -1")

    created = token.created
    if created.tzinfo is None:
        created = created.replace(tzinfo=timezone.utc)
    elapsed = (now - created).total_seconds()

    if token.is_eternal:
        valid = eternal_allowed
    else:
        valid = elapsed < token.ttl
    return TokenVerdict.VALID if valid else TokenVerdict.EXPIRED


# ---------------------------------------------------------------------------
# Token Manager
# ---------------------------------------------------------------------------


class TokenManager:
    """Async facade over the store for minting, resolving and destroying tokens.

    Every store call runs in a worker thread (asyncio.to_thread) and receives
    the caller's options unchanged.
    """

    def __init__(
        self,
        store: "CredentialStore",
        registry: PrincipalRegistry,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.registry = registry
        self.clock = clock

    async def create_token(
        self,
        user_id: str,
        ttl: int,
        *,
        scopes: Optional[list[str]] = None,
        principal_type: Optional[str] = None,
        options: Optional[dict] = None,
    ) -> AccessToken:
        """Mint and persist a token for user_id."""
        if ttl is None or ttl == 0:
            raise TokenStateError("token.ttl must be set and non-zero")
        policy = self.registry.get(principal_type) if principal_type else None
        length = (policy or self.registry.default).access_token_id_length
        token = AccessToken(
            id=generate_token_id(length),
            user_id=user_id,
            ttl=ttl,
            created=self.clock(),
            principal_type=principal_type,
            scopes=list(scopes or []),
        )
        await asyncio.to_thread(self.store.create_token, token, options)
        logger.info("Issued access token %s for user %s (ttl=%s)", token_prefix(token.id), user_id, ttl)
        return token

    async def validate(self, token: AccessToken, options: Optional[dict] = None) -> bool:
        """Return True if the token is usable; delete it first if it has expired."""
        verdict = validate_token(token, self.registry, self.clock())
        if verdict is TokenVerdict.EXPIRED:
            await asyncio.to_thread(self.store.delete_token, token.id, options)
            logger.info("Deleted expired access token %s", token_prefix(token.id))
        elif verdict is TokenVerdict.UNRESOLVED_PRINCIPAL:
            logger.warning(
                "Access token %s names unknown principal type %r", token_prefix(token.id), token.principal_type
            )
        return verdict is TokenVerdict.VALID

    async def resolve(self, token_id: Optional[str], options: Optional[dict] = None) -> Optional[AccessToken]:
        """Look up and validate a token id.

        Returns None when there is no such token (a normal negative result).
        Raises AuthenticationError INVALID_TOKEN (401) when it exists but is
        not valid, and TokenStateError when the record is malformed.
        """
        if not token_id or token_id == ANONYMOUS_TOKEN_ID:
            return None
        token = await asyncio.to_thread(self.store.get_token, token_id, options)
        if token is None:
            return None
        if not await self.validate(token, options):
            raise invalid_token()
        return token

    async def find_for_request(
        self, request: RequestView, lookup: TokenLookup = TokenLookup(), options: Optional[dict] = None
    ) -> Optional[AccessToken]:
        token_id = resolve_token_id(request, lookup)
        if token_id is None:
            return None
        return await self.resolve(token_id, options)

    async def destroy(self, token_id: str, options: Optional[dict] = None) -> bool:
        return await asyncio.to_thread(self.store.delete_token, token_id, options)
