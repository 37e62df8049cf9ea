"""Requested secrets and their leases."""

from __future__ import annotations

import dataclasses
import datetime
import enum
from collections.abc import Mapping
from typing import Any

from vault_lifecycle.errors import MalformedResponseError


class Mode(enum.Enum):
    """What to do when a secret's lease runs out.

    ``RENEW`` extends the lease while Vault allows it, then reports expiry.
    ``ROTATE`` fetches a brand-new secret when the lease cannot be extended.
    """

    RENEW = "renew"
    ROTATE = "rotate"


@dataclasses.dataclass(frozen=True)
class RequestedSecret:
    """A secret identified by its Vault path and lifecycle mode."""

    path: str
    mode: Mode = Mode.RENEW

    def __post_init__(self) -> None:
        if not self.path or not self.path.strip("/"):
            raise ValueError("Path must not be empty")
        object.__setattr__(self, "path", self.path.strip("/"))

    @classmethod
    def renewable(cls, path: str) -> RequestedSecret:
        return cls(path, Mode.RENEW)

    @classmethod
    def rotating(cls, path: str) -> RequestedSecret:
        return cls(path, Mode.ROTATE)

    @property
    def job_id(self) -> str:
        return f"lease:{self.path}:{self.mode.value}"


@dataclasses.dataclass(frozen=True)
class Lease:
    """A Vault lease.  An empty ``lease_id`` with zero duration means "not leased"."""

    lease_id: str = ""
    lease_duration: datetime.timedelta = datetime.timedelta(0)
    renewable: bool = False

    def __post_init__(self) -> None:
        if self.lease_duration < datetime.timedelta(0):
            raise ValueError("Lease duration must not be negative")

    @classmethod
    def none(cls) -> Lease:
        return _NONE

    @classmethod
    def of(cls, lease_id: str, lease_duration: datetime.timedelta | int, renewable: bool) -> Lease:
        if isinstance(lease_duration, int):
            lease_duration = datetime.timedelta(seconds=lease_duration)
        return cls(lease_id or "", lease_duration, renewable)

    @classmethod
    def from_response(cls, body: Mapping[str, Any], *, previous: Lease | None = None) -> Lease:
        """Parse the lease fields of a secret read or ``sys/leases/renew`` response.

        ``lease_duration`` is required.  A missing or empty ``lease_id`` keeps the
        id of *previous* (renew responses may omit it).
        """
        duration = body.get("lease_duration")
        if duration is None:
            raise MalformedResponseError("Response does not contain a lease_duration")
        try:
            seconds = int(duration)
        except (TypeError, ValueError) as exc:
            raise MalformedResponseError(f"Invalid lease duration: {duration!r}") from exc
        if seconds < 0:
            raise MalformedResponseError(f"Invalid lease duration: {duration!r}")
        lease_id = body.get("lease_id")
        if not lease_id and previous is not None:
            lease_id = previous.lease_id
        return cls.of(lease_id or "", seconds, bool(body.get("renewable", False)))

    @property
    def has_lease_id(self) -> bool:
        return bool(self.lease_id)

    @property
    def is_none(self) -> bool:
        return not self.lease_id and not self.lease_duration

    def is_renewable(self) -> bool:
        return self.renewable and self.has_lease_id and self.lease_duration > datetime.timedelta(0)


_NONE = Lease()
