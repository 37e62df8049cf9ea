"""Events published by ``SecretLeaseContainer``."""

from __future__ import annotations

import dataclasses
from collections.abc import Mapping
from typing import Any

from vault_lifecycle.lease.model import Lease, RequestedSecret


@dataclasses.dataclass(frozen=True)
class SecretLeaseEvent:
    requested_secret: RequestedSecret
    lease: Lease


@dataclasses.dataclass(frozen=True)
class SecretLeaseCreatedEvent(SecretLeaseEvent):
    """A secret was fetched.  ``secret`` is its ``data`` payload."""

    secret: Mapping[str, Any] = dataclasses.field(default_factory=dict, repr=False)


@dataclasses.dataclass(frozen=True)
class SecretLeaseRotatedEvent(SecretLeaseCreatedEvent):
    """A new secret value replaced the previous one."""

    previous_lease: Lease = dataclasses.field(default_factory=Lease)


@dataclasses.dataclass(frozen=True)
class AfterSecretLeaseRenewedEvent(SecretLeaseEvent):
    """The lease was extended; the secret value is unchanged."""


@dataclasses.dataclass(frozen=True)
class SecretLeaseExpiredEvent(SecretLeaseEvent):
    """The lease cannot be extended any more; renewal stopped for this secret."""


@dataclasses.dataclass(frozen=True)
class BeforeSecretLeaseRevocationEvent(SecretLeaseEvent):
    pass


@dataclasses.dataclass(frozen=True)
class AfterSecretLeaseRevocationEvent(SecretLeaseEvent):
    pass


@dataclasses.dataclass(frozen=True)
class SecretLeaseErrorEvent(SecretLeaseEvent):
    """An operation on the lease failed.  Published once per failed attempt."""

    exception: BaseException | None = None
