"""
tests/test_config.py -- Settings validation and the policy built from it.

Covers:
  - SECRET_KEY policy (auto-generated in debug, required and >= 32 chars otherwise)
  - token / hashing parameter validation
  - PrincipalPolicy and TokenLookup built from Settings
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from auth.models import PrincipalPolicy, TokenLookup
from core.config import Settings

KEY = "k" * 32


class TestSecretKey:
    def test_debug_generates_key(self) -> None:
        settings = Settings(debug=True, secret_key="")
        assert len(settings.secret_key) >= 32

    def test_missing_key_outside_debug(self) -> None:
        with pytest.raises(ValidationError, match="SECRET_KEY is required"):
            Settings(debug=False, secret_key="")

    def test_short_key_rejected(self) -> None:
        with pytest.raises(ValidationError, match="at least 32"):
            Settings(debug=False, secret_key="short")


class TestTokenSettings:
    @pytest.mark.parametrize(
        "overrides",
        [
            {"access_token_id_length": 8},
            {"token_ttl": 0},
            {"token_ttl": -2},
            {"max_token_ttl": 0},
            {"salt_work_factor": 3},
            {"salt_work_factor": 32},
        ],
    )
    def test_invalid_values_rejected(self, overrides) -> None:
        with pytest.raises(ValidationError):
            Settings(secret_key=KEY, **overrides)

    def test_defaults(self) -> None:
        settings = Settings(secret_key=KEY, salt_work_factor=10)
        assert settings.access_token_id_length == 64
        assert settings.token_ttl == 1209600
        assert settings.max_token_ttl == 31556926
        assert settings.allow_eternal_tokens is False


class TestPolicyFromSettings:
    def test_principal_policy(self) -> None:
        settings = Settings(
            secret_key=KEY,
            token_ttl=600,
            realm_required=True,
            realm_delimiter=":",
            case_sensitive_email=False,
            salt_work_factor=5,
        )
        policy = PrincipalPolicy.from_settings(settings)
        assert policy.name == "User"
        assert policy.token_ttl == 600
        assert policy.realm_required is True
        assert policy.realm_delimiter == ":"
        assert policy.normalize_email("A@B.C") == "a@b.c"
        assert policy.password_hasher.rounds == 5

    def test_policy_is_frozen(self) -> None:
        policy = PrincipalPolicy()
        with pytest.raises(AttributeError):
            policy.token_ttl = 1  # type: ignore[misc]

    def test_token_lookup(self) -> None:
        settings = Settings(secret_key=KEY, token_headers=["X-Custom"], search_default_token_keys=False)
        lookup = TokenLookup.from_settings(settings)
        params, headers, cookies = lookup.keys()
        assert headers == ("X-Custom",)
        assert params == ()
        assert cookies == ()
