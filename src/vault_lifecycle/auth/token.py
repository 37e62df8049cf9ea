"""Vault token value types.

Pattern: Immutable Credential Snapshot
---------------------------------------
A ``VaultToken`` is the opaque credential string handed to callers.  A
``LoginToken`` is the same credential plus the lease metadata Vault returned
when it was issued (renewability, TTL, issuance time).  Both are frozen: a
renewal produces a *new* ``LoginToken`` that replaces the cached one wholesale.

Equality is by token value only.  A renewed ``LoginToken`` compares equal to
the token it replaced, which lets callers detect "same credential, new lease"
with a plain ``==``.

Token strings never appear in ``repr()`` or ``str()`` output, so tokens can be
passed to log calls without leaking the credential.
"""

from __future__ import annotations

import dataclasses
import datetime
from collections.abc import Mapping
from typing import Any

from vault_lifecycle.errors import MalformedResponseError

_VISIBLE_PREFIX = 4


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.UTC)


def _mask(token: str) -> str:
    if len(token) <= _VISIBLE_PREFIX:
        return "*" * len(token)
    return token[:_VISIBLE_PREFIX] + "***"


@dataclasses.dataclass(frozen=True, eq=False)
class VaultToken:
    """An opaque Vault client token."""

    token: str

    def __post_init__(self) -> None:
        if not self.token:
            raise ValueError("Token must not be empty")

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, VaultToken):
            return NotImplemented
        return self.token == other.token

    def __hash__(self) -> int:
        return hash(self.token)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(token={_mask(self.token)!r})"

    __str__ = __repr__


@dataclasses.dataclass(frozen=True, eq=False)
class LoginToken(VaultToken):
    """A token obtained through a login, carrying its lease metadata.

    Attributes:
        renewable:      Whether Vault allows ``renew-self`` on this token.
        lease_duration: TTL at issuance.  Zero means "does not expire / unknown".
        issued_at:      UTC timestamp the lease metadata was received.
        accessor:       Optional token accessor (safe to log).
    """

    renewable: bool = False
    lease_duration: datetime.timedelta = datetime.timedelta(0)
    issued_at: datetime.datetime = dataclasses.field(default_factory=_utcnow)
    accessor: str | None = None

    def __post_init__(self) -> None:
        super().__post_init__()
        if self.lease_duration < datetime.timedelta(0):
            raise ValueError("Lease duration must not be negative")

    def __repr__(self) -> str:
        return (
            f"LoginToken(token={_mask(self.token)!r}, renewable={self.renewable}, "
            f"lease_duration={int(self.lease_duration.total_seconds())}s)"
        )

    __str__ = __repr__

    def is_renewable(self) -> bool:
        """True if the token can be extended: renewable and with a finite TTL."""
        return self.renewable and self.lease_duration > datetime.timedelta(0)

    @property
    def expires_at(self) -> datetime.datetime | None:
        if not self.lease_duration:
            return None
        return self.issued_at + self.lease_duration

    def remaining(self, now: datetime.datetime | None = None) -> datetime.timedelta | None:
        """Remaining validity, or ``None`` for tokens without a TTL."""
        expires_at = self.expires_at
        if expires_at is None:
            return None
        now = now or _utcnow()
        return max(expires_at - now, datetime.timedelta(0))

    def with_lease(
        self,
        renewable: bool,
        lease_duration: datetime.timedelta,
        issued_at: datetime.datetime | None = None,
    ) -> LoginToken:
        """Return a copy carrying new lease metadata and the same token value."""
        return dataclasses.replace(
            self,
            renewable=renewable,
            lease_duration=lease_duration,
            issued_at=issued_at or _utcnow(),
        )

    # -- response parsing ----------------------------------------------------

    @classmethod
    def from_auth(cls, auth: Mapping[str, Any] | None) -> LoginToken:
        """Build a ``LoginToken`` from the ``auth`` block of a login response."""
        if not auth:
            raise MalformedResponseError("Auth field must not be null")
        client_token = auth.get("client_token")
        if not client_token:
            raise MalformedResponseError("Auth response does not contain a client_token")
        return cls(
            token=client_token,
            renewable=bool(auth.get("renewable", False)),
            lease_duration=_seconds(auth.get("lease_duration")),
            accessor=auth.get("accessor"),
        )

    @classmethod
    def from_lookup(cls, token: str | VaultToken, data: Mapping[str, Any] | None) -> LoginToken:
        """Build a ``LoginToken`` from a ``lookup-self`` ``data`` block."""
        if data is None:
            raise MalformedResponseError("Data field must not be null")
        value = token.token if isinstance(token, VaultToken) else token
        return cls(
            token=value,
            renewable=bool(data.get("renewable", False)),
            lease_duration=_seconds(data.get("ttl")),
            accessor=data.get("accessor"),
        )


def _seconds(value: Any) -> datetime.timedelta:
    if value is None:
        return datetime.timedelta(0)
    try:
        return datetime.timedelta(seconds=int(value))
    except (TypeError, ValueError) as exc:
        raise MalformedResponseError(f"Invalid lease duration: {value!r}") from exc


def require_auth(response: Mapping[str, Any] | None) -> Mapping[str, Any]:
    """Return the ``auth`` block of *response* or raise ``MalformedResponseError``."""
    auth = (response or {}).get("auth")
    if not auth:
        raise MalformedResponseError("Auth field must not be null")
    return auth


def require_data(response: Mapping[str, Any] | None) -> Mapping[str, Any]:
    """Return the ``data`` block of *response* or raise ``MalformedResponseError``."""
    data = (response or {}).get("data")
    if data is None:
        raise MalformedResponseError("Data field must not be null")
    return data
