"""
auth/service.py -- Login/Logout Orchestrator and the user mutation pipeline.

AuthService is the only entry point the REST layer uses. It owns no state of
its own beyond the immutable PrincipalPolicy it was constructed with.

Concurrency model:
  Every operation is a coroutine. Store calls and bcrypt calls run through
  asyncio.to_thread, so each one is a suspension point and concurrent
  requests interleave freely. There is no in-process lock: token ids are
  unique by construction and (realm, email) / (realm, username) uniqueness is
  enforced by the store's UNIQUE constraints, surfaced here as USER_EXISTS.

Options:
  Every public method takes `options` (caller context, e.g. {"remote": True,
  "access_token": <token>}) and forwards the same dict -- plus, for password
  changes, {"set_password": True} -- to every store call it makes.

Login hardening:
  [C1] Unknown users are checked against a dummy bcrypt hash so response time
       does not reveal whether an email/username exists. "No such user" and
       "wrong password" both surface as LOGIN_FAILED.
  Lookup fields must be plain strings. A dict such as {"neq": "x"} is rejected
       with INVALID_EMAIL / INVALID_USERNAME / INVALID_REALM before any query
       runs, so operator objects can never reach the store's filter syntax.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy.exc import IntegrityError

from auth.errors import (
    AuthenticationError,
    InvalidInputError,
    NotFoundError,
    email_not_found,
    invalid_field,
    login_failed,
    realm_required,
    user_exists,
    user_not_found,
    username_email_required,
)
from auth.models import RESET_PASSWORD_SCOPE, USER_FIELDS, AccessToken, PrincipalPolicy, User
from auth.passwords import dummy_verify
from auth.sessions import DELETE, DELETE_ALL, REPLACE, UPDATE, UPDATE_ALL, MutationContext, SessionInvalidator
from auth.store import CredentialStore
from auth.tokens import TokenManager, token_prefix

logger = logging.getLogger("tokenward.auth")

# Keys a caller may send that are not writable but are harmless to ignore.
_READ_ONLY_FIELDS = {"id", "created_at", "updated_at"}


@dataclass
class ResetRequest:
    """Outcome of reset_password(): the user and their short-lived reset token.

    Delivering the token (email, SMS) is the caller's job.
    """

    user: User
    token: AccessToken


def split_principal(name: str, delimiter: Optional[str]) -> tuple[Optional[str], str]:
    """Split "realm<delimiter>name" into (realm, name); (None, name) when there is no realm part."""
    if not delimiter:
        return None, name
    realm, sep, rest = name.partition(delimiter)
    if not sep:
        return None, name
    return realm, rest


class AuthService:
    """Authentication decisions, token issuance and credential-aware user mutations."""

    def __init__(
        self,
        store: CredentialStore,
        tokens: TokenManager,
        policy: Optional[PrincipalPolicy] = None,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.policy = policy or tokens.registry.default
        if self.policy.name not in tokens.registry:
            tokens.registry.register(self.policy)
        self.sessions = SessionInvalidator(store, self.policy)

    # ------------------------------------------------------------------
    # Normalization helpers
    # ------------------------------------------------------------------

    def normalize_credentials(self, credentials: Mapping[str, Any]) -> dict[str, Any]:
        """Turn login credentials into a store filter, or raise the matching 400 error.

        Email wins over username when both are present. With a realm delimiter
        configured, "realm1:foo" is split into realm and name. Checks run in
        a fixed order: REALM_REQUIRED, USERNAME_EMAIL_REQUIRED, then the
        non-string field codes.
        """
        email = credentials.get("email") or None
        username = credentials.get("username") or None
        realm = credentials.get("realm") or None
        query: dict[str, Any] = {}

        if realm is not None:
            query["realm"] = realm
        if email is not None:
            key, value = "email", email
        elif username is not None:
            key, value = "username", username
        else:
            key, value = None, None

        if key is not None:
            if self.policy.realm_mode and isinstance(value, str):
                prefix, value = split_principal(value, self.policy.realm_delimiter)
                if prefix:
                    query["realm"] = prefix
            query[key] = value

        if self.policy.realm_mode and not query.get("realm"):
            raise realm_required()
        if key is None:
            raise username_email_required()
        if not isinstance(query[key], str):
            raise invalid_field(key)
        if "realm" in query and not isinstance(query["realm"], str):
            raise invalid_field("realm")

        if "email" in query:
            query["email"] = self.policy.normalize_email(query["email"])
        return query

    def normalize_where(self, where: Optional[Mapping[str, Any]]) -> dict[str, Any]:
        """Apply the email case policy to a user filter."""
        result = dict(where or {})
        email = result.get("email")
        if isinstance(email, Mapping) and "inq" in email:
            result["email"] = {"inq": [self.policy.normalize_email(e) for e in email["inq"]]}
        elif isinstance(email, str):
            result["email"] = self.policy.normalize_email(email)
        return result

    async def prepare_changes(self, changes: Mapping[str, Any], options: Mapping[str, Any]) -> dict[str, Any]:
        """Validate and normalize attribute changes before they reach the store.

        Passwords are validated and hashed here (assignment time). Remote
        callers can never set email_verified.
        """
        data = {k: v for k, v in changes.items() if k not in _READ_ONLY_FIELDS}
        unknown = set(data) - set(USER_FIELDS)
        if unknown:
            raise InvalidInputError(f"Unknown user attribute(s): {', '.join(sorted(unknown))}", code="INVALID_ATTRIBUTE")
        if options.get("remote"):
            data.pop("email_verified", None)
        if "email" in data:
            data["email"] = self.policy.normalize_email(data["email"])
        if "password" in data:
            data["password"] = await asyncio.to_thread(self.policy.password_hasher.prepare, data["password"])
        return data

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_user(self, user_id: str, options: Optional[dict] = None) -> Optional[User]:
        return await asyncio.to_thread(self.store.get_user, user_id, dict(options or {}))

    async def find_users(self, where: Optional[Mapping[str, Any]] = None, options: Optional[dict] = None) -> list[User]:
        return await asyncio.to_thread(self.store.find_users, self.normalize_where(where), dict(options or {}))

    async def has_password(self, user: User, plain: str) -> bool:
        """Return True if plain matches the user's stored password hash."""
        if not user.password or not isinstance(plain, str):
            return False
        return await asyncio.to_thread(self.policy.password_hasher.verify, plain, user.password)

    # ------------------------------------------------------------------
    # Login / logout
    # ------------------------------------------------------------------

    async def login(
        self,
        credentials: Mapping[str, Any],
        include: Optional[str] = None,
        options: Optional[dict] = None,
    ) -> AccessToken:
        """Authenticate with email or username + password and issue a token.

        credentials: {email?, username?, password, realm?, ttl?, scope?}
        include="user" attaches the authenticated user to the returned token.
        """
        opts = dict(options or {})
        query = self.normalize_credentials(credentials)
        password = credentials.get("password")

        users = await asyncio.to_thread(self.store.find_users, query, opts)
        user = users[0] if users else None
        if user is None:
            await asyncio.to_thread(dummy_verify, password if isinstance(password, str) else "")
            logger.info("Login failed: no user for %s", sorted(query))
            raise login_failed()
        if not await self.has_password(user, password):
            logger.info("Login failed: bad password for user %s", user.id)
            raise login_failed()

        ttl = credentials.get("ttl")
        if ttl is not None and (isinstance(ttl, bool) or not isinstance(ttl, int)):
            raise InvalidInputError("ttl must be an integer", code="INVALID_TTL")
        scope = credentials.get("scope")
        scopes = [scope] if isinstance(scope, str) else list(scope or [])

        token = await self.create_access_token(user, ttl, scopes, opts)
        if include == "user":
            token.user = user
        return token

    async def create_access_token(
        self,
        user: User,
        ttl: Optional[int] = None,
        scopes: Optional[list[str]] = None,
        options: Optional[dict] = None,
    ) -> AccessToken:
        """Issue a token for user via the policy's token_issuer, or the default strategy."""
        opts = dict(options or {})
        if self.policy.token_issuer is not None:
            return await self.policy.token_issuer(self, user, ttl, scopes, opts)
        return await self.default_create_access_token(user, ttl, scopes, opts)

    async def default_create_access_token(
        self,
        user: User,
        ttl: Optional[int] = None,
        scopes: Optional[list[str]] = None,
        options: Optional[dict] = None,
    ) -> AccessToken:
        """Mint a token with ttl capped at max_token_ttl (policy token_ttl when ttl is falsy)."""
        ttl = min(ttl or self.policy.token_ttl, self.policy.max_token_ttl)
        if ttl < 0 and not (ttl == -1 and self.policy.allow_eternal_tokens):
            raise InvalidInputError("ttl must be a positive number of seconds", code="INVALID_TTL")
        return await self.tokens.create_token(
            user.id,
            ttl,
            scopes=scopes,
            principal_type=self.policy.name,
            options=dict(options or {}),
        )

    async def logout(self, token_id: Optional[str], options: Optional[dict] = None) -> None:
        """Delete the token. A missing or unknown token id is a 401, never a silent no-op."""
        opts = dict(options or {})
        if not token_id:
            raise AuthenticationError("accessToken is required to logout", code="AUTHORIZATION_REQUIRED")
        deleted = await asyncio.to_thread(self.store.delete_token, token_id, opts)
        if not deleted:
            raise AuthenticationError("Could not find accessToken", code="INVALID_TOKEN")
        logger.info("Logged out access token %s", token_prefix(token_id))

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    async def change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        options: Optional[dict] = None,
    ) -> None:
        """Verify the current password, then set the new one (revoking other sessions)."""
        opts = dict(options or {})
        user = await asyncio.to_thread(self.store.get_user, user_id, opts)
        if user is None:
            raise user_not_found(user_id)
        if not await self.has_password(user, current_password):
            raise InvalidInputError("Invalid current password", code="INVALID_PASSWORD")
        await self._set_password(user, new_password, opts)

    async def set_password(self, user_id: str, new_password: str, options: Optional[dict] = None) -> None:
        """Set a new password without checking the old one (admin / reset flows)."""
        opts = dict(options or {})
        user = await asyncio.to_thread(self.store.get_user, user_id, opts)
        if user is None:
            raise user_not_found(user_id)
        await self._set_password(user, new_password, opts)

    async def _set_password(self, user: User, new_password: str, options: dict) -> None:
        self.policy.password_hasher.validate(new_password)
        await self.update_attributes(user.id, {"password": new_password}, {**options, "set_password": True})
        logger.info("Password changed for user %s", user.id)

    async def reset_password(
        self,
        email: str,
        realm: Optional[str] = None,
        password: Optional[str] = None,
        options: Optional[dict] = None,
    ) -> ResetRequest:
        """Issue a short-lived token scoped to "reset-password" for the user owning email.

        When the caller already supplies the intended new password it is
        checked against the length policy up front, before any lookup.
        """
        opts = dict(options or {})
        if password is not None:
            self.policy.password_hasher.validate(password)
        if not isinstance(email, str) or not email:
            raise InvalidInputError("email is required", code="EMAIL_REQUIRED")
        where: dict[str, Any] = {"email": self.policy.normalize_email(email)}
        if realm is None and self.policy.realm_mode:
            raise realm_required()
        if realm is not None:
            if not isinstance(realm, str):
                raise invalid_field("realm")
            where["realm"] = realm

        users = await asyncio.to_thread(self.store.find_users, where, opts)
        if not users:
            raise email_not_found()
        user = users[0]
        token = await self.tokens.create_token(
            user.id,
            self.policy.reset_password_token_ttl,
            scopes=[RESET_PASSWORD_SCOPE],
            principal_type=self.policy.name,
            options=opts,
        )
        logger.info("Password reset requested for user %s", user.id)
        return ResetRequest(user=user, token=token)

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create_user(self, attrs: Mapping[str, Any], options: Optional[dict] = None) -> User:
        """Validate, hash and persist a new user. Never touches existing sessions."""
        opts = dict(options or {})
        data = await self.prepare_changes({"password": None, **attrs}, opts)
        if not data.get("email") and not data.get("username"):
            raise username_email_required()
        user = User(id=attrs.get("id") or None, **data)
        try:
            created = await asyncio.to_thread(self.store.create_user, user, opts)
        except IntegrityError as exc:
            raise user_exists(_conflict_detail(exc)) from exc
        logger.info("Created user %s", created.id)
        return created

    # ------------------------------------------------------------------
    # Mutations (all routed through the session invalidation pipeline)
    # ------------------------------------------------------------------

    async def update_attributes(
        self, user_id: str, changes: Mapping[str, Any], options: Optional[dict] = None
    ) -> User:
        """Partially update one user; revoke sessions if credentials changed."""
        opts = dict(options or {})
        data = await self.prepare_changes(changes, opts)
        ctx = MutationContext(UPDATE, {"id": user_id}, data, opts)
        await self.sessions.prepare(ctx)
        if not ctx.snapshot:
            raise NotFoundError(f"User {user_id} not found", code="NOT_FOUND")
        self._reset_email_verification(ctx)
        try:
            updated = await asyncio.to_thread(self.store.update_user, user_id, ctx.changes, opts)
        except IntegrityError as exc:
            raise user_exists(_conflict_detail(exc)) from exc
        if updated is None:
            raise NotFoundError(f"User {user_id} not found", code="NOT_FOUND")
        await self.sessions.invalidate(ctx)
        return updated

    async def replace_attributes(
        self, user_id: str, attrs: Mapping[str, Any], options: Optional[dict] = None
    ) -> User:
        """Replace every writable attribute of one user. Always revokes that user's sessions."""
        opts = dict(options or {})
        data = await self.prepare_changes({"password": None, **attrs}, opts)
        ctx = MutationContext(REPLACE, {"id": user_id}, data, opts)
        await self.sessions.prepare(ctx)
        if not ctx.snapshot:
            raise NotFoundError(f"User {user_id} not found", code="NOT_FOUND")
        if opts.get("remote"):
            # Server-controlled: a remote replace keeps the stored value.
            ctx.changes["email_verified"] = ctx.snapshot[0].email_verified
        self._reset_email_verification(ctx)
        try:
            replaced = await asyncio.to_thread(self.store.replace_user, User(id=user_id, **ctx.changes), opts)
        except IntegrityError as exc:
            raise user_exists(_conflict_detail(exc)) from exc
        if replaced is None:
            raise NotFoundError(f"User {user_id} not found", code="NOT_FOUND")
        await self.sessions.invalidate(ctx)
        return replaced

    async def update_or_create(self, attrs: Mapping[str, Any], options: Optional[dict] = None) -> User:
        """Update the user named by attrs["id"] if it exists, otherwise create it."""
        user_id = attrs.get("id")
        if user_id and await self.get_user(user_id, options) is not None:
            changes = {k: v for k, v in attrs.items() if k != "id"}
            return await self.update_attributes(user_id, changes, options)
        return await self.create_user(attrs, options)

    async def update_all(
        self, where: Optional[Mapping[str, Any]], changes: Mapping[str, Any], options: Optional[dict] = None
    ) -> int:
        """Bulk update the users matching where. Returns the number updated.

        The filter is resolved to an id set before writing, and both the write
        and the revocation are restricted to exactly that set.
        """
        opts = dict(options or {})
        data = await self.prepare_changes(changes, opts)
        ctx = MutationContext(UPDATE_ALL, self.normalize_where(where), data, opts)
        await self.sessions.prepare(ctx)
        if not ctx.snapshot:
            return 0
        self._reset_email_verification(ctx)
        try:
            count = await asyncio.to_thread(self.store.update_users, {"id": {"inq": ctx.user_ids}}, ctx.changes, opts)
        except IntegrityError as exc:
            raise user_exists(_conflict_detail(exc)) from exc
        await self.sessions.invalidate(ctx)
        return count

    async def delete_by_id(self, user_id: str, options: Optional[dict] = None) -> bool:
        """Delete one user and all of their tokens. Returns False if the user did not exist."""
        opts = dict(options or {})
        ctx = MutationContext(DELETE, {"id": user_id}, options=opts)
        await self.sessions.prepare(ctx)
        deleted = await asyncio.to_thread(self.store.delete_user, user_id, opts)
        await self.sessions.cascade_delete(ctx)
        if deleted:
            logger.info("Deleted user %s", user_id)
        return deleted

    async def delete_all(self, where: Optional[Mapping[str, Any]], options: Optional[dict] = None) -> int:
        """Delete the users matching where and all of their tokens. Returns the number deleted."""
        opts = dict(options or {})
        ctx = MutationContext(DELETE_ALL, self.normalize_where(where), options=opts)
        await self.sessions.prepare(ctx)
        if not ctx.snapshot:
            return 0
        count = await asyncio.to_thread(self.store.delete_users, {"id": {"inq": ctx.user_ids}}, opts)
        await self.sessions.cascade_delete(ctx)
        logger.info("Deleted %d user(s)", count)
        return count

    def _reset_email_verification(self, ctx: MutationContext) -> None:
        # A changed address has not been verified yet.
        if not self.policy.email_verification_required or "email" not in ctx.changes:
            return
        if any(u.email != ctx.changes["email"] for u in ctx.snapshot):
            ctx.changes["email_verified"] = False


def _conflict_detail(exc: IntegrityError) -> str:
    text = str(exc.orig) if exc.orig is not None else str(exc)
    if "email" in text:
        return "Email already exists"
    if "username" in text:
        return "Username already exists"
    return ""
