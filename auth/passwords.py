"""
auth/passwords.py -- Credential Validator: bcrypt hashing and password policy.

Security design decisions:
  Hashing: bcrypt used directly (no passlib wrapper). The hash string is
       self-describing ($2b$<cost>$<salt+digest>), so hashes produced with an
       older or cheaper cost factor keep verifying without a rehash.

  Length policy: bcrypt only consumes the first 72 bytes of its input. A
       longer password would have its tail silently ignored, so two different
       long passwords sharing a 72-byte prefix would collide. We reject them
       up front: empty -> INVALID_PASSWORD, > 72 bytes -> PASSWORD_TOO_LONG,
       both 422.

  Legacy hashes: accounts created before the length policy may hold the hash
       of a password longer than 72 bytes. verify_password() truncates the
       candidate to 72 bytes before checkpw(), reproducing what bcrypt did when
       the hash was made, so those users can still log in.

  Pass-through: assigning a value that already looks like a bcrypt hash stores
       it unchanged instead of hashing the hash.

PasswordHasher bundles the hash/validate pair so a principal policy can swap
either one (e.g. a stricter minimum length) without the callers noticing.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Callable

import bcrypt

from auth.errors import PolicyViolationError

MAX_PASSWORD_LENGTH = 72
DEFAULT_SALT_WORK_FACTOR = 10

_BCRYPT_HASH = re.compile(r"^\$2[abxy]\$\d{2}\$[./A-Za-z0-9]{53}$")


def is_password_hash(value: object) -> bool:
    """Return True if value has the structure of a bcrypt hash string."""
    return isinstance(value, str) and _BCRYPT_HASH.match(value) is not None


def validate_password(plain: object) -> None:
    """Enforce the default password policy. Raises PolicyViolationError (422)."""
    if not isinstance(plain, str) or not plain:
        raise PolicyViolationError("Invalid password.", code="INVALID_PASSWORD")
    length = len(plain.encode("utf-8"))
    if length > MAX_PASSWORD_LENGTH:
        raise PolicyViolationError(
            f"The password entered was too long. Max length is {MAX_PASSWORD_LENGTH} (entered {length})",
            code="PASSWORD_TOO_LONG",
        )


def hash_password(plain: str, rounds: int = DEFAULT_SALT_WORK_FACTOR) -> str:
    """Return a bcrypt hash of the plaintext password using the given cost factor."""
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds)).decode("utf-8")


def verify_password(plain: str, hashed: str | None) -> bool:
    """Return True if the plaintext password matches the stored bcrypt hash."""
    if not plain or not hashed:
        return False
    try:
        return bcrypt.checkpw(plain.encode("utf-8")[:MAX_PASSWORD_LENGTH], hashed.encode("utf-8"))
    except ValueError:
        # Malformed or non-bcrypt hash: treat as a mismatch, not a crash.
        return False


# Timing equalization dummy hash [C1]. login() verifies against this when the
# user does not exist so response time does not reveal which usernames exist.
_DUMMY_HASH: str = hash_password("tokenward_timing_dummy", 4)


def dummy_verify(plain: str) -> bool:
    verify_password(plain or "x", _DUMMY_HASH)
    return False


@dataclass(frozen=True)
class PasswordHasher:
    """Per-principal hashing strategy.

    hash:     plaintext -> stored representation. Receives the cost factor.
    validate: raises PolicyViolationError when the plaintext is not acceptable.
    verify:   (plaintext, stored) -> bool.
    """

    rounds: int = DEFAULT_SALT_WORK_FACTOR
    hash: Callable[[str, int], str] = field(default=hash_password)
    validate: Callable[[object], None] = field(default=validate_password)
    verify: Callable[[str, str | None], bool] = field(default=verify_password)

    def prepare(self, value: object) -> str:
        """Turn an assigned password value into what the store should persist.

        Existing hashes pass through unchanged. Anything else is validated and
        hashed, so the store never sees a plaintext password.
        """
        if is_password_hash(value):
            return value  # type: ignore[return-value]
        self.validate(value)
        return self.hash(value, self.rounds)  # type: ignore[arg-type]
