"""When to attempt the next renewal of a token or lease.

``FixedTimeoutRefreshTrigger`` schedules renewal a fixed safety margin before
expiry.  It is a pure function of the lease duration and "now"; the clock is
injectable so it can be tested without time passing.
"""

from __future__ import annotations

import datetime
from collections.abc import Callable
from typing import Protocol

_IMMEDIATE_RECHECK = datetime.timedelta(seconds=1)
_EXPIRY_GRACE = datetime.timedelta(seconds=2)

Clock = Callable[[], datetime.datetime]


def utc_clock() -> datetime.datetime:
    return datetime.datetime.now(datetime.UTC)


class HasLeaseDuration(Protocol):
    @property
    def lease_duration(self) -> datetime.timedelta: ...


class FixedTimeoutRefreshTrigger:
    """Renew *timeout* before expiry.

    Attributes:
        timeout:          Safety margin before expiry at which renewal runs.
        expiry_threshold: A lease whose remaining validity is at or below this
                          value is considered expired: renewing it again would
                          only buy a few seconds.  Defaults to ``timeout`` plus
                          a two second grace period.
    """

    def __init__(
        self,
        timeout: datetime.timedelta,
        expiry_threshold: datetime.timedelta | None = None,
        clock: Clock = utc_clock,
    ) -> None:
        if timeout < datetime.timedelta(0):
            raise ValueError("Timeout must not be negative")
        self.timeout = timeout
        self.expiry_threshold = expiry_threshold if expiry_threshold is not None else timeout + _EXPIRY_GRACE
        self._clock = clock

    def now(self) -> datetime.datetime:
        return self._clock()

    def next_execution(
        self,
        lease: HasLeaseDuration,
        now: datetime.datetime | None = None,
    ) -> datetime.datetime:
        """Return the time of the next renewal attempt for *lease*.

        Never earlier than *now*.  Leases already inside the safety margin get
        an almost immediate re-check instead of a time in the past.
        """
        now = now or self._clock()
        duration = lease.lease_duration
        if duration > self.timeout:
            return now + (duration - self.timeout)
        return now + min(max(duration, datetime.timedelta(0)), _IMMEDIATE_RECHECK)

    def is_expired(self, validity: datetime.timedelta | None) -> bool:
        """True if *validity* left is too short to be worth renewing.

        ``None`` (no TTL) never expires.
        """
        if validity is None:
            return False
        return validity <= self.expiry_threshold
