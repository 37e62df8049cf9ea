"""Renewal and rotation of leased secrets.

Pattern: Per-Entry Lifecycle Registry
--------------------------------------
``SecretLeaseContainer`` applies the session manager's renew-or-fall-back
scheme to any number of leased secrets (database credentials, dynamic
certificates, cloud tokens).  Callers ``register()`` a ``RequestedSecret``; the
container fetches it, remembers the ``(secret, lease)`` pair and schedules a
renewal on the shared ``TaskScheduler`` using the refresh trigger.

Each registry entry has its own lock and in-flight flag: renewals of
different secrets run concurrently on the scheduler's workers, while two
operations on the same secret never overlap.  The registry lock only guards
membership and is never held across an HTTP call.  Generations are drawn from
one container-wide counter, so a job left over from an unregistered entry
never matches a later registration of the same secret.

When a renewal fails or the lease cannot be extended any further:

  - ``Mode.ROTATE`` fetches a new secret and publishes ``SecretLeaseRotatedEvent``.
  - ``Mode.RENEW`` retries transient failures (network, 5xx, 429) while the
    lease is still valid, otherwise publishes ``SecretLeaseExpiredEvent`` and
    drops the entry.  Every failed attempt is published as a
    ``SecretLeaseErrorEvent`` so callers can cap retries by unregistering.

``unregister()`` cancels the pending job, removes the entry and revokes the
lease server-side.  An operation already in flight is not interrupted; its
result is discarded once it sees the entry is gone.

With a ``session_manager`` every request carries its current session token;
without one the transport is expected to authenticate requests itself.
"""

from __future__ import annotations

import dataclasses
import datetime
import itertools
import logging
import threading
from collections.abc import Callable, Mapping
from typing import Any

from vault_lifecycle.client.transport import VaultTransport, vault_token_header
from vault_lifecycle.errors import (
    LeaseError,
    MalformedResponseError,
    SchedulerUnavailableError,
    VaultError,
    VaultTransportError,
)
from vault_lifecycle.events import EventListener, EventPublisher
from vault_lifecycle.lease.events import (
    AfterSecretLeaseRenewedEvent,
    AfterSecretLeaseRevocationEvent,
    BeforeSecretLeaseRevocationEvent,
    SecretLeaseCreatedEvent,
    SecretLeaseErrorEvent,
    SecretLeaseExpiredEvent,
    SecretLeaseRotatedEvent,
)
from vault_lifecycle.lease.model import Lease, Mode, RequestedSecret
from vault_lifecycle.scheduling import TaskScheduler
from vault_lifecycle.session.manager import SessionManager
from vault_lifecycle.session.trigger import FixedTimeoutRefreshTrigger

logger = logging.getLogger(__name__)

DEFAULT_LEASE_REFRESH_BEFORE_EXPIRY = datetime.timedelta(seconds=10)
DEFAULT_LEASE_EXPIRY_THRESHOLD = datetime.timedelta(seconds=60)


@dataclasses.dataclass(eq=False)
class _LeaseEntry:
    secret: RequestedSecret
    lease: Lease
    data: Mapping[str, Any]
    expires_at: datetime.datetime | None
    generation: int
    condition: threading.Condition = dataclasses.field(default_factory=threading.Condition)
    in_flight: bool = False


class SecretLeaseContainer:
    """Tracks leased secrets and keeps their leases alive in the background."""

    def __init__(
        self,
        transport: VaultTransport,
        scheduler: TaskScheduler,
        refresh_trigger: FixedTimeoutRefreshTrigger | None = None,
        *,
        lease_increment: datetime.timedelta | None = None,
        publisher: EventPublisher | None = None,
        session_manager: SessionManager | None = None,
    ) -> None:
        self._transport = transport
        self._scheduler = scheduler
        self._trigger = refresh_trigger or FixedTimeoutRefreshTrigger(
            DEFAULT_LEASE_REFRESH_BEFORE_EXPIRY, DEFAULT_LEASE_EXPIRY_THRESHOLD
        )
        self._lease_increment = lease_increment
        self._publisher = publisher or EventPublisher()
        self._session_manager = session_manager

        self._registry_lock = threading.Lock()
        self._entries: dict[RequestedSecret, _LeaseEntry] = {}
        self._generations = itertools.count(1)

    # -- listeners -------------------------------------------------------------

    def add_listener(self, listener: EventListener) -> None:
        self._publisher.add_listener(listener)

    def remove_listener(self, listener: EventListener) -> None:
        self._publisher.remove_listener(listener)

    # -- registry ----------------------------------------------------------------

    def register(self, secret: RequestedSecret) -> Lease:
        """Fetch *secret*, start tracking its lease and return it.

        Registering an already tracked secret returns its current lease without
        fetching again.  Raises ``LeaseError`` if the secret cannot be fetched.
        """
        existing = self._entry(secret)
        if existing is not None:
            return self._snapshot(existing)[0]

        lease, data = self._fetch(secret)
        entry = _LeaseEntry(secret, lease, data, self._expires_at(lease), next(self._generations))
        with self._registry_lock:
            raced = self._entries.get(secret)
            if raced is None:
                self._entries[secret] = entry
        if raced is not None:
            logger.info("Secret %s was registered concurrently, revoking duplicate lease", secret.path)
            self._revoke(secret, lease)
            return self._snapshot(raced)[0]

        logger.info(
            "Registered secret %s (mode=%s, lease_duration=%ss, renewable=%s)",
            secret.path,
            secret.mode.value,
            int(lease.lease_duration.total_seconds()),
            lease.renewable,
        )
        self._publisher.publish(SecretLeaseCreatedEvent(secret, lease, data))
        self._schedule(entry, entry.generation)
        return lease

    def unregister(self, secret: RequestedSecret) -> None:
        """Stop tracking *secret* and revoke its lease.  Safe for unknown secrets."""
        with self._registry_lock:
            entry = self._entries.pop(secret, None)
        if entry is None:
            return
        with entry.condition:
            entry.generation = next(self._generations)
            lease = entry.lease
        self._scheduler.cancel(secret.job_id)
        logger.info("Unregistered secret %s", secret.path)
        self._revoke(secret, lease)

    def close(self) -> None:
        """Unregister every secret, revoking their leases."""
        for secret in self.requested_secrets():
            self.unregister(secret)

    def requested_secrets(self) -> list[RequestedSecret]:
        with self._registry_lock:
            return list(self._entries)

    def lease(self, secret: RequestedSecret) -> Lease | None:
        entry = self._entry(secret)
        return self._snapshot(entry)[0] if entry is not None else None

    def secret_data(self, secret: RequestedSecret) -> Mapping[str, Any] | None:
        entry = self._entry(secret)
        return self._snapshot(entry)[1] if entry is not None else None

    # -- manual operations ---------------------------------------------------------

    def renew(self, secret: RequestedSecret) -> Lease:
        """Renew *secret*'s lease now (rotating or expiring per its mode on failure)."""
        entry = self._require_entry(secret)
        self._run_exclusive(entry, self._renew_or_fall_back)
        return self._snapshot(entry)[0]

    def rotate(self, secret: RequestedSecret) -> Lease:
        """Fetch a new value for *secret* now and return its lease."""
        entry = self._require_entry(secret)
        self._run_exclusive(entry, lambda e, generation: self._rotate(e, generation, self._snapshot(e)[0]))
        return self._snapshot(entry)[0]

    # -- scheduled work ----------------------------------------------------------------

    def _on_renewal_due(self, secret: RequestedSecret, generation: int) -> None:
        entry = self._entry(secret)
        if entry is None:
            return
        with entry.condition:
            if entry.generation != generation or entry.in_flight:
                return
            entry.in_flight = True
        try:
            self._renew_or_fall_back(entry, generation)
        finally:
            self._release(entry)

    def _renew_or_fall_back(self, entry: _LeaseEntry, generation: int) -> None:
        secret = entry.secret
        lease = self._snapshot(entry)[0]

        if not lease.is_renewable():
            if secret.mode is Mode.ROTATE:
                self._rotate(entry, generation, lease)
            else:
                self._expire(entry, generation, lease)
            return

        try:
            renewed = self._renew_lease(lease)
        except VaultError as exc:
            logger.warning("Cannot renew lease for %s: %s", secret.path, exc)
            self._publisher.publish(SecretLeaseErrorEvent(secret, lease, exc))
            if secret.mode is Mode.ROTATE:
                self._rotate(entry, generation, lease)
            else:
                self._retry_or_expire(entry, generation, lease, exc)
            return

        if self._trigger.is_expired(renewed.lease_duration):
            logger.info(
                "Lease for %s renewed to %ss, below the expiry threshold",
                secret.path,
                int(renewed.lease_duration.total_seconds()),
            )
            if secret.mode is Mode.ROTATE:
                self._rotate(entry, generation, renewed)
            else:
                self._expire(entry, generation, renewed)
            return

        if not self._apply(entry, generation, renewed, None):
            logger.info("Discarding renewal result for %s: entry was unregistered", secret.path)
            return
        logger.info("Renewed lease for %s (lease_duration=%ss)", secret.path, int(renewed.lease_duration.total_seconds()))
        self._publisher.publish(AfterSecretLeaseRenewedEvent(secret, renewed))
        self._schedule(entry, generation)

    def _rotate(self, entry: _LeaseEntry, generation: int, previous: Lease) -> None:
        secret = entry.secret
        try:
            lease, data = self._fetch(secret)
        except LeaseError as exc:
            logger.warning("Cannot rotate secret %s: %s", secret.path, exc)
            self._publisher.publish(SecretLeaseErrorEvent(secret, previous, exc))
            self._retry_or_expire(entry, generation, previous, exc)
            return

        if not self._apply(entry, generation, lease, data):
            logger.info("Discarding rotated secret %s: entry was unregistered", secret.path)
            self._revoke(secret, lease)
            return
        logger.info("Rotated secret %s", secret.path)
        self._publisher.publish(SecretLeaseRotatedEvent(secret, lease, data, previous_lease=previous))
        self._schedule(entry, generation)

    def _retry_or_expire(self, entry: _LeaseEntry, generation: int, lease: Lease, exc: BaseException) -> None:
        with entry.condition:
            expires_at = entry.expires_at
        now = self._trigger.now()
        remaining = expires_at - now if expires_at is not None else None
        if _is_transient(exc) and remaining is not None and remaining > datetime.timedelta(0):
            retry = dataclasses.replace(lease, lease_duration=remaining)
            run_at = self._trigger.next_execution(retry, now)
            logger.info("Retrying %s at %s", entry.secret.path, run_at.isoformat())
            self._schedule_at(entry, generation, run_at)
            return
        self._expire(entry, generation, lease)

    def _expire(self, entry: _LeaseEntry, generation: int, lease: Lease) -> None:
        secret = entry.secret
        with self._registry_lock:
            current = self._entries.get(secret) is entry and entry.generation == generation
            if current:
                del self._entries[secret]
        if not current:
            return
        with entry.condition:
            entry.generation = next(self._generations)
        logger.warning("Lease for %s expired, renewal stopped", secret.path)
        self._publisher.publish(SecretLeaseExpiredEvent(secret, lease))

    # -- scheduling ------------------------------------------------------------------

    def _schedule(self, entry: _LeaseEntry, generation: int) -> None:
        secret = entry.secret
        lease = self._snapshot(entry)[0]
        if lease.is_none or not lease.lease_duration:
            logger.debug("Secret %s is not leased, nothing scheduled", secret.path)
            return
        if secret.mode is Mode.RENEW and not lease.is_renewable():
            logger.debug("Lease for %s is not renewable, nothing scheduled", secret.path)
            return
        self._schedule_at(entry, generation, self._trigger.next_execution(lease))

    def _schedule_at(self, entry: _LeaseEntry, generation: int, run_at: datetime.datetime) -> None:
        secret = entry.secret
        try:
            self._scheduler.schedule(
                secret.job_id, self._on_renewal_due, run_at, secret=secret, generation=generation
            )
        except SchedulerUnavailableError as exc:
            logger.warning("Cannot schedule renewal for %s: %s", secret.path, exc)
            self._publisher.publish(SecretLeaseErrorEvent(secret, self._snapshot(entry)[0], exc))

    # -- Vault calls -------------------------------------------------------------------

    def _fetch(self, secret: RequestedSecret) -> tuple[Lease, Mapping[str, Any]]:
        try:
            body = self._transport.request("GET", secret.path, headers=self._auth_headers())
            data = body.get("data")
            if data is None:
                raise MalformedResponseError("Data field must not be null")
            lease = Lease.from_response(body)
        except VaultError as exc:
            raise LeaseError(f"Cannot fetch secret {secret.path}: {exc}") from exc
        return lease, data

    def _renew_lease(self, lease: Lease) -> Lease:
        body: dict[str, Any] = {"lease_id": lease.lease_id}
        if self._lease_increment is not None:
            body["increment"] = int(self._lease_increment.total_seconds())
        response = self._transport.request("PUT", "sys/leases/renew", headers=self._auth_headers(), json=body)
        return Lease.from_response(response, previous=lease)

    def _revoke(self, secret: RequestedSecret, lease: Lease) -> None:
        if not lease.has_lease_id:
            return
        self._publisher.publish(BeforeSecretLeaseRevocationEvent(secret, lease))
        try:
            self._transport.request(
                "PUT", "sys/leases/revoke", headers=self._auth_headers(), json={"lease_id": lease.lease_id}
            )
        except VaultError as exc:
            logger.warning("Cannot revoke lease for %s: %s", secret.path, exc)
            self._publisher.publish(SecretLeaseErrorEvent(secret, lease, exc))
            return
        logger.info("Revoked lease for %s", secret.path)
        self._publisher.publish(AfterSecretLeaseRevocationEvent(secret, lease))

    # -- private helpers -----------------------------------------------------------------

    def _auth_headers(self) -> dict[str, str]:
        if self._session_manager is None:
            return {}
        return vault_token_header(self._session_manager.get_session_token())

    def _entry(self, secret: RequestedSecret) -> _LeaseEntry | None:
        with self._registry_lock:
            return self._entries.get(secret)

    def _require_entry(self, secret: RequestedSecret) -> _LeaseEntry:
        entry = self._entry(secret)
        if entry is None:
            raise LeaseError(f"Secret {secret.path} is not registered")
        return entry

    @staticmethod
    def _snapshot(entry: _LeaseEntry) -> tuple[Lease, Mapping[str, Any]]:
        with entry.condition:
            return entry.lease, entry.data

    def _apply(
        self,
        entry: _LeaseEntry,
        generation: int,
        lease: Lease,
        data: Mapping[str, Any] | None,
    ) -> bool:
        if self._entry(entry.secret) is not entry:
            return False
        with entry.condition:
            if entry.generation != generation:
                return False
            entry.lease = lease
            entry.expires_at = self._expires_at(lease)
            if data is not None:
                entry.data = data
        return True

    def _expires_at(self, lease: Lease) -> datetime.datetime | None:
        if not lease.lease_duration:
            return None
        return self._trigger.now() + lease.lease_duration

    def _run_exclusive(self, entry: _LeaseEntry, operation: Callable[[_LeaseEntry, int], None]) -> None:
        with entry.condition:
            while entry.in_flight:
                entry.condition.wait()
            entry.in_flight = True
            generation = entry.generation
        try:
            operation(entry, generation)
        finally:
            self._release(entry)

    @staticmethod
    def _release(entry: _LeaseEntry) -> None:
        with entry.condition:
            entry.in_flight = False
            entry.condition.notify_all()


def _is_transient(exc: BaseException) -> bool:
    cause: BaseException | None = exc
    while cause is not None:
        if isinstance(cause, VaultTransportError):
            return cause.is_transient
        cause = cause.__cause__
    return False
