"""
tests/test_errors.py -- Error taxonomy codes and statuses.

Every code rendered into the error envelope is upper snake case, including
the defaults of the base classes.
"""

from __future__ import annotations

import pytest

from auth.errors import (
    AccessDeniedError,
    AuthenticationError,
    AuthError,
    ConflictError,
    InvalidInputError,
    NotFoundError,
    PolicyViolationError,
    realm_required,
)


@pytest.mark.parametrize(
    "cls, code, status",
    [
        (AuthError, "AUTH_ERROR", 400),
        (InvalidInputError, "INVALID_INPUT", 400),
        (AuthenticationError, "UNAUTHORIZED", 401),
        (AccessDeniedError, "ACCESS_DENIED", 403),
        (NotFoundError, "NOT_FOUND", 404),
        (ConflictError, "USER_EXISTS", 409),
        (PolicyViolationError, "VALIDATION_ERROR", 422),
    ],
)
def test_default_codes(cls, code, status) -> None:
    exc = cls("boom")
    assert exc.code == code
    assert exc.code == exc.code.upper()
    assert exc.status_code == status


def test_explicit_code_overrides_default() -> None:
    exc = realm_required()
    assert exc.code == "REALM_REQUIRED"
    assert exc.status_code == 400
