"""
auth/store.py -- SQLAlchemy Core persistence layer for users and access tokens.

Pattern: Repository + Data Mapper. CredentialStore is the repository;
_row_to_user / _row_to_token are the mappers. Service code never touches SQL.

The store is synchronous. AuthService / TokenManager call it through
asyncio.to_thread so every store interaction is a suspension point for the
event loop without needing an async driver.

Security:
  All queries use bound parameters. Column names in `where` filters are
  checked against the table before use; anything else raises ValueError.

  Uniqueness of (realm, email) and (realm, username) is enforced by UNIQUE
  constraints, not by a check-then-insert in the service. A concurrent second
  create fails with IntegrityError. realm is stored as "" rather than NULL:
  SQLite treats NULLs as distinct in UNIQUE constraints, which would let two
  realm-less users share an email.

Options:
  Every public method takes `options` -- the caller's context dict -- and
  reports (operation, options) to the optional tracer. The store never reads
  the options itself; the tracer lets callers and tests observe that one
  option set flowed through a whole operation chain.

DB path: tokenward.db at the project root unless DATABASE_URL is set.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Iterable, Mapping
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from sqlalchemy import (
    Boolean,
    Column,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from auth.models import USER_FIELDS, AccessToken, User

logger = logging.getLogger("tokenward.store")

Tracer = Callable[[str, dict], None]

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", String(64), primary_key=True),
    Column("realm", String(255), nullable=False, server_default=""),
    Column("email", String(255)),
    Column("username", String(255)),
    Column("password", Text),
    Column("email_verified", Boolean, nullable=False, server_default="0"),
    Column("name", String(255)),
    Column("profile", Text),  # JSON blob of non-identity attributes
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    UniqueConstraint("realm", "email", name="uq_users_realm_email"),
    UniqueConstraint("realm", "username", name="uq_users_realm_username"),
)

_access_tokens = Table(
    "access_tokens",
    _metadata,
    Column("id", String(255), primary_key=True),
    Column("user_id", String(64), nullable=False),
    Column("ttl", Integer),
    Column("created", String(32)),
    Column("principal_type", String(100)),
    Column("scopes", Text),  # JSON array
    Index("ix_access_tokens_user_id", "user_id"),
)

_FILTERABLE = {"id", "realm", "email", "username", "email_verified", "name"}


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so token lookups are not blocked by writes."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _user_values(user: User) -> dict[str, Any]:
    return {
        "realm": user.realm or "",
        "email": user.email,
        "username": user.username,
        "password": user.password,
        "email_verified": bool(user.email_verified),
        "name": user.name,
        "profile": json.dumps(user.profile or {}),
    }


def _field_values(fields: Mapping[str, Any]) -> dict[str, Any]:
    values = dict(fields)
    if "realm" in values:
        values["realm"] = values["realm"] or ""
    if "profile" in values:
        values["profile"] = json.dumps(values["profile"] or {})
    if "email_verified" in values:
        values["email_verified"] = bool(values["email_verified"])
    unknown = set(values) - set(USER_FIELDS)
    if unknown:
        raise ValueError(f"Cannot write user columns: {sorted(unknown)!r}")
    return values


def _where_clause(where: Optional[Mapping[str, Any]]):
    """Translate a {column: value | {"inq": [...]}} filter into a SQL condition."""
    conditions = []
    for key, value in (where or {}).items():
        if key not in _FILTERABLE:
            raise ValueError(f"Unsupported filter column: {key!r}")
        column = _users.c[key]
        if isinstance(value, Mapping):
            if set(value) != {"inq"}:
                raise ValueError(f"Unsupported filter operator for {key!r}: {sorted(value)!r}")
            items = list(value["inq"])
            if key == "realm":
                items = [v or "" for v in items]
            conditions.append(column.in_(items))
        elif key == "realm":
            conditions.append(column == (value or ""))
        elif value is None:
            conditions.append(column.is_(None))
        else:
            conditions.append(column == value)
    return conditions


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class CredentialStore:
    """Repository for User and AccessToken entities.

    Usage:
        store = CredentialStore("sqlite:///tokenward.db")
        user = store.create_user(User(email="a@b.com", password=hashed))
        store.create_token(AccessToken(id=tid, user_id=user.id, ttl=3600, created=now))
        store.close()
    """

    def __init__(self, db_url: str, tracer: Optional[Tracer] = None) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite") and ":memory:" not in db_url and "mode=memory" not in db_url:
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)
        self.tracer = tracer

    def _trace(self, operation: str, options: Optional[Mapping[str, Any]]) -> None:
        if self.tracer is not None:
            self.tracer(operation, dict(options or {}))

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, user: User, options: Optional[Mapping[str, Any]] = None) -> User:
        """Insert a user and return it with id and timestamps filled in.

        Raises sqlalchemy.exc.IntegrityError on a (realm, email) or
        (realm, username) collision, including one caused by a concurrent
        create that won the race.
        """
        self._trace("create_user", options)
        now = _now_iso()
        user_id = user.id or uuid.uuid4().hex
        with self.engine.begin() as conn:
            conn.execute(_users.insert().values(id=user_id, created_at=now, updated_at=now, **_user_values(user)))
        return self._get_user(user_id)

    def get_user(self, user_id: str, options: Optional[Mapping[str, Any]] = None) -> Optional[User]:
        """Look up a user by primary key. Returns None if not found."""
        self._trace("get_user", options)
        return self._get_user(user_id)

    def _get_user(self, user_id: str) -> Optional[User]:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def find_users(
        self, where: Optional[Mapping[str, Any]] = None, options: Optional[Mapping[str, Any]] = None
    ) -> list[User]:
        """Return users matching the filter, oldest first."""
        self._trace("find_users", options)
        with self.engine.connect() as conn:
            rows = conn.execute(
                _users.select().where(*_where_clause(where)).order_by(_users.c.created_at, _users.c.id)
            ).fetchall()
        return [_row_to_user(r) for r in rows]

    def update_user(
        self, user_id: str, fields: Mapping[str, Any], options: Optional[Mapping[str, Any]] = None
    ) -> Optional[User]:
        """Partially update one user. Returns the updated user, or None if user_id was not found."""
        self._trace("update_user", options)
        values = _field_values(fields)
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.update().where(_users.c.id == user_id).values(updated_at=_now_iso(), **values)
            )
        if result.rowcount == 0:
            return None
        return self._get_user(user_id)

    def replace_user(self, user: User, options: Optional[Mapping[str, Any]] = None) -> Optional[User]:
        """Overwrite every writable column of an existing user (absent fields become empty)."""
        self._trace("replace_user", options)
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.update().where(_users.c.id == user.id).values(updated_at=_now_iso(), **_user_values(user))
            )
        if result.rowcount == 0:
            return None
        return self._get_user(user.id)

    def update_users(
        self,
        where: Optional[Mapping[str, Any]],
        fields: Mapping[str, Any],
        options: Optional[Mapping[str, Any]] = None,
    ) -> int:
        """Bulk update every user matching the filter. Returns the row count."""
        self._trace("update_users", options)
        values = _field_values(fields)
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.update().where(*_where_clause(where)).values(updated_at=_now_iso(), **values)
            )
        return result.rowcount

    def delete_user(self, user_id: str, options: Optional[Mapping[str, Any]] = None) -> bool:
        """Delete one user. Tokens are removed by the caller (see auth/sessions.py)."""
        self._trace("delete_user", options)
        with self.engine.begin() as conn:
            result = conn.execute(_users.delete().where(_users.c.id == user_id))
        return result.rowcount > 0

    def delete_users(
        self, where: Optional[Mapping[str, Any]], options: Optional[Mapping[str, Any]] = None
    ) -> int:
        self._trace("delete_users", options)
        with self.engine.begin() as conn:
            result = conn.execute(_users.delete().where(*_where_clause(where)))
        return result.rowcount

    # ------------------------------------------------------------------
    # Access tokens
    # ------------------------------------------------------------------

    def create_token(self, token: AccessToken, options: Optional[Mapping[str, Any]] = None) -> AccessToken:
        self._trace("create_token", options)
        with self.engine.begin() as conn:
            conn.execute(
                _access_tokens.insert().values(
                    id=token.id,
                    user_id=token.user_id,
                    ttl=token.ttl,
                    created=token.created.isoformat() if token.created is not None else None,
                    principal_type=token.principal_type,
                    scopes=json.dumps(list(token.scopes)),
                )
            )
        return token

    def get_token(self, token_id: str, options: Optional[Mapping[str, Any]] = None) -> Optional[AccessToken]:
        """Look up a token by id. Returns None if not found."""
        self._trace("get_token", options)
        with self.engine.connect() as conn:
            row = conn.execute(_access_tokens.select().where(_access_tokens.c.id == token_id)).fetchone()
        return _row_to_token(row) if row is not None else None

    def find_tokens(
        self, user_ids: Iterable[str], options: Optional[Mapping[str, Any]] = None
    ) -> list[AccessToken]:
        """Return all tokens owned by any of the given users."""
        self._trace("find_tokens", options)
        ids = list(user_ids)
        if not ids:
            return []
        with self.engine.connect() as conn:
            rows = conn.execute(
                _access_tokens.select().where(_access_tokens.c.user_id.in_(ids)).order_by(_access_tokens.c.created)
            ).fetchall()
        return [_row_to_token(r) for r in rows]

    def delete_token(self, token_id: str, options: Optional[Mapping[str, Any]] = None) -> bool:
        self._trace("delete_token", options)
        with self.engine.begin() as conn:
            result = conn.execute(_access_tokens.delete().where(_access_tokens.c.id == token_id))
        return result.rowcount > 0

    def delete_tokens_for_users(
        self,
        user_ids: Iterable[str],
        keep: Optional[str] = None,
        options: Optional[Mapping[str, Any]] = None,
    ) -> int:
        """Delete every token owned by the given users, except the token id in `keep`.

        Returns the number of tokens deleted. An empty user_ids set deletes
        nothing -- it never widens to "all tokens".
        """
        self._trace("delete_tokens_for_users", options)
        ids = list(user_ids)
        if not ids:
            return 0
        condition = _access_tokens.c.user_id.in_(ids)
        if keep is not None:
            condition = condition & (_access_tokens.c.id != keep)
        with self.engine.begin() as conn:
            result = conn.execute(_access_tokens.delete().where(condition))
        return result.rowcount

    def ping(self) -> bool:
        """Return True if the database answers a trivial query (health checks)."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError:
            logger.exception("Database ping failed")
            return False
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        realm=row.realm or None,
        email=row.email,
        username=row.username,
        password=row.password,
        email_verified=bool(row.email_verified),
        name=row.name,
        profile=json.loads(row.profile) if row.profile else {},
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _parse_created(value: Optional[str]) -> Optional[datetime]:
    # An unparseable timestamp maps to None; token validation then fails
    # closed with TokenStateError instead of the mapper raising.
    if not value:
        return None
    try:
        created = datetime.fromisoformat(value)
    except ValueError:
        logger.warning("Unparseable access token created timestamp: %r", value)
        return None
    if created.tzinfo is None:
        created = created.replace(tzinfo=timezone.utc)
    return created


def _row_to_token(row) -> AccessToken:
    return AccessToken(
        id=row.id,
        user_id=row.user_id,
        ttl=row.ttl,
        created=_parse_created(row.created),
        principal_type=row.principal_type,
        scopes=json.loads(row.scopes) if row.scopes else [],
    )
