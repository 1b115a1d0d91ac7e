"""
auth/sessions.py -- Session Invalidation Engine.

Every user mutation in AuthService runs through the same explicit pipeline,
each stage receiving one MutationContext:

  1. prepare          load the users the mutation will touch (the "before"
                      snapshot). Bulk operations resolve their filter to an id
                      set HERE, before anything is written.
  2. mutate           done by the service, restricted to the snapshot ids.
  3. invalidate       revoke tokens of users whose credentials changed.
     cascade_delete   or, for deletes, every token of the deleted users.

Revocation triggers (per user in the snapshot):
  - the written password hash differs from the stored one,
  - email / username / realm changes value,
  - the mutation is a full replace (treated as "everything changed").

Suppression:
  - options["preserve_access_tokens"] skips revocation entirely.
  - options["access_token"] (the acting request's token, or its id) is kept
    while every other token of the user is revoked.
  - principals without session tracking (PrincipalPolicy.tracks_sessions is
    False) never revoke and never cascade.

Revocation is not in the same transaction as the mutation. It is always
attempted, and a failure propagates out of the mutation call so stale
sessions are never left valid silently.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional

from auth.models import IDENTITY_FIELDS, AccessToken, PrincipalPolicy, User

if TYPE_CHECKING:
    from auth.store import CredentialStore

logger = logging.getLogger("tokenward.sessions")

UPDATE = "update"
REPLACE = "replace"
UPDATE_ALL = "update_all"
DELETE = "delete"
DELETE_ALL = "delete_all"


@dataclass
class MutationContext:
    """State shared by the pipeline stages of one user mutation."""

    operation: str
    where: dict[str, Any]
    changes: dict[str, Any] = field(default_factory=dict)
    options: dict[str, Any] = field(default_factory=dict)
    snapshot: list[User] = field(default_factory=list)

    @property
    def is_replace(self) -> bool:
        return self.operation == REPLACE

    @property
    def is_delete(self) -> bool:
        return self.operation in (DELETE, DELETE_ALL)

    @property
    def user_ids(self) -> list[str]:
        return [u.id for u in self.snapshot]


def acting_token_id(options: dict[str, Any]) -> Optional[str]:
    """Return the id of the token the current request authenticated with, if any."""
    token = options.get("access_token")
    if isinstance(token, AccessToken):
        return token.id
    if isinstance(token, str) and token:
        return token
    return None


def _same(field_name: str, before: Any, after: Any) -> bool:
    if field_name == "realm":
        return (before or None) == (after or None)
    return before == after


class SessionInvalidator:
    """Decides and performs token revocation around user mutations."""

    def __init__(self, store: "CredentialStore", policy: PrincipalPolicy) -> None:
        self.store = store
        self.policy = policy

    async def prepare(self, ctx: MutationContext) -> None:
        ctx.snapshot = await asyncio.to_thread(self.store.find_users, ctx.where, ctx.options)

    def users_to_revoke(self, ctx: MutationContext) -> list[str]:
        """Ids of snapshot users whose outstanding sessions must end."""
        if ctx.is_replace:
            return ctx.user_ids
        changed_fields = [f for f in ("password",) + IDENTITY_FIELDS if f in ctx.changes]
        if not changed_fields:
            return []
        return [
            user.id
            for user in ctx.snapshot
            if any(not _same(f, getattr(user, f), ctx.changes[f]) for f in changed_fields)
        ]

    async def invalidate(self, ctx: MutationContext) -> int:
        """Revoke tokens after a successful update/replace. Returns tokens deleted."""
        if not self.policy.tracks_sessions:
            return 0
        if ctx.options.get("preserve_access_tokens"):
            return 0
        user_ids = self.users_to_revoke(ctx)
        if not user_ids:
            return 0
        keep = acting_token_id(ctx.options)
        deleted = await asyncio.to_thread(self.store.delete_tokens_for_users, user_ids, keep, ctx.options)
        logger.info(
            "Revoked %d access token(s) for %d user(s) after %s%s",
            deleted,
            len(user_ids),
            ctx.operation,
            " (acting session kept)" if keep else "",
        )
        return deleted

    async def cascade_delete(self, ctx: MutationContext) -> int:
        """Delete every token owned by the users removed by a delete operation."""
        if not self.policy.tracks_sessions or not ctx.snapshot:
            return 0
        deleted = await asyncio.to_thread(self.store.delete_tokens_for_users, ctx.user_ids, None, ctx.options)
        logger.info("Deleted %d access token(s) of %d deleted user(s)", deleted, len(ctx.snapshot))
        return deleted
