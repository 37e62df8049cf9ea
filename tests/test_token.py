"""Tests for the VaultToken / LoginToken value types."""

from __future__ import annotations

import dataclasses
import datetime

import pytest

from conftest import EPOCH
from vault_lifecycle.auth.token import LoginToken, VaultToken, require_auth, require_data
from vault_lifecycle.errors import MalformedResponseError


class TestVaultToken:
    def test_empty_token_rejected(self) -> None:
        with pytest.raises(ValueError):
            VaultToken("")

    def test_equality_by_value(self) -> None:
        assert VaultToken("s.abc") == VaultToken("s.abc")
        assert VaultToken("s.abc") != VaultToken("s.xyz")
        assert len({VaultToken("s.abc"), VaultToken("s.abc")}) == 1

    def test_repr_masks_credential(self) -> None:
        token = VaultToken("s.supersecret")
        assert "supersecret" not in repr(token)
        assert "supersecret" not in str(token)
        assert "s.su***" in repr(token)

    def test_immutable(self) -> None:
        token = VaultToken("s.abc")
        with pytest.raises(dataclasses.FrozenInstanceError):
            token.token = "s.other"  # type: ignore[misc]


class TestLoginToken:
    def test_renewable_requires_ttl(self) -> None:
        assert LoginToken("t", renewable=True, lease_duration=datetime.timedelta(seconds=60)).is_renewable()
        assert not LoginToken("t", renewable=True).is_renewable()
        assert not LoginToken("t", renewable=False, lease_duration=datetime.timedelta(seconds=60)).is_renewable()

    def test_negative_duration_rejected(self) -> None:
        with pytest.raises(ValueError):
            LoginToken("t", lease_duration=datetime.timedelta(seconds=-1))

    def test_equal_to_plain_token_with_same_value(self) -> None:
        assert LoginToken("t1", renewable=True) == VaultToken("t1")

    def test_expiry_and_remaining(self) -> None:
        token = LoginToken("t", lease_duration=datetime.timedelta(minutes=1), issued_at=EPOCH)
        assert token.expires_at == EPOCH + datetime.timedelta(minutes=1)
        assert token.remaining(EPOCH + datetime.timedelta(seconds=45)) == datetime.timedelta(seconds=15)
        assert token.remaining(EPOCH + datetime.timedelta(minutes=5)) == datetime.timedelta(0)

    def test_no_ttl_never_expires(self) -> None:
        token = LoginToken("t")
        assert token.expires_at is None
        assert token.remaining() is None

    def test_with_lease_keeps_token_value(self) -> None:
        token = LoginToken("t1", renewable=True, lease_duration=datetime.timedelta(seconds=10), issued_at=EPOCH)
        renewed = token.with_lease(True, datetime.timedelta(hours=1), issued_at=EPOCH)
        assert renewed.token == "t1"
        assert renewed == token
        assert renewed.lease_duration == datetime.timedelta(hours=1)
        assert token.lease_duration == datetime.timedelta(seconds=10)

    def test_from_auth(self) -> None:
        token = LoginToken.from_auth(
            {"client_token": "s.x", "lease_duration": 3600, "renewable": True, "accessor": "acc"}
        )
        assert token.token == "s.x"
        assert token.lease_duration == datetime.timedelta(hours=1)
        assert token.renewable
        assert token.accessor == "acc"

    def test_from_auth_requires_client_token(self) -> None:
        with pytest.raises(MalformedResponseError):
            LoginToken.from_auth({"lease_duration": 10})
        with pytest.raises(MalformedResponseError):
            LoginToken.from_auth(None)

    def test_from_auth_rejects_garbage_duration(self) -> None:
        with pytest.raises(MalformedResponseError):
            LoginToken.from_auth({"client_token": "s.x", "lease_duration": "soon"})

    def test_from_lookup_uses_ttl(self) -> None:
        token = LoginToken.from_lookup(VaultToken("s.x"), {"ttl": 120, "renewable": False})
        assert token.token == "s.x"
        assert token.lease_duration == datetime.timedelta(minutes=2)
        assert not token.renewable


class TestResponseHelpers:
    def test_require_auth(self) -> None:
        assert require_auth({"auth": {"client_token": "x"}}) == {"client_token": "x"}
        with pytest.raises(MalformedResponseError, match="Auth field must not be null"):
            require_auth({"data": {}})

    def test_require_data_accepts_empty_mapping(self) -> None:
        assert require_data({"data": {}}) == {}
        with pytest.raises(MalformedResponseError):
            require_data({})
