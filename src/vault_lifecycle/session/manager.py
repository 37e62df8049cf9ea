"""Session managers: hand out a Vault token and keep it alive.

Pattern: Single-Flight Token Cache
-----------------------------------
A session manager owns exactly one cached token.  Callers ask for it with
``get_session_token()``; if none is cached, the first caller performs the
login and every concurrent caller waits for that same attempt instead of
starting its own.  The in-flight attempt is a ``concurrent.futures.Future``
stored next to the token, so "claiming" the login and publishing its outcome
are both plain assignments under one lock.

``LifecycleAwareSessionManager`` adds background renewal.  After each login or
renewal it asks the refresh trigger when to act next and schedules a one-shot
job on the shared ``TaskScheduler``.  When the job fires it either renews the
token (``auth/token/renew-self``) or, if the token is not renewable, renewal
fails, or the renewed TTL is too short to be useful, drops the token and runs
the full login again.  Renewal is never driven by ``get_session_token()``
unless the scheduler is unavailable, in which case the manager logs a warning
and refreshes expiring tokens on access instead.

State machine (``SessionState``)::

    EMPTY --login--> AUTHENTICATING --ok--> VALID --timer--> RENEWING
      ^                   |                   ^                 |
      +------failed-------+                   +----renewed------+
                          ^                                     |
                          +-------renew failed / not renewable--+

Invalidating the session (``drop_current_token()``) cancels the scheduled job
and detaches any in-flight attempt; that attempt's result is discarded when it
completes.
"""

from __future__ import annotations

import concurrent.futures
import datetime
import enum
import logging
import threading
from typing import Any, Protocol

from vault_lifecycle.auth.executor import ClientAuthentication
from vault_lifecycle.auth.token import LoginToken, VaultToken, require_data
from vault_lifecycle.client.transport import VaultTransport, vault_token_header
from vault_lifecycle.errors import (
    MalformedResponseError,
    SchedulerUnavailableError,
    SessionError,
    VaultError,
)
from vault_lifecycle.events import EventListener, EventPublisher
from vault_lifecycle.scheduling import TaskScheduler
from vault_lifecycle.session.events import (
    AfterLoginEvent,
    AfterLoginTokenRenewedEvent,
    BeforeLoginTokenRevocationEvent,
    LoginFailedEvent,
    LoginTokenExpiredEvent,
    LoginTokenRenewalFailedEvent,
    LoginTokenRevokedEvent,
)
from vault_lifecycle.session.trigger import FixedTimeoutRefreshTrigger

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_BEFORE_EXPIRY = datetime.timedelta(seconds=5)


class SessionManager(Protocol):
    def get_session_token(self) -> VaultToken: ...


class SessionState(enum.Enum):
    EMPTY = "empty"
    AUTHENTICATING = "authenticating"
    VALID = "valid"
    RENEWING = "renewing"


class SimpleSessionManager:
    """Logs in once on first use and caches the token forever.  No renewal."""

    def __init__(self, authentication: ClientAuthentication) -> None:
        self._authentication = authentication
        self._lock = threading.Lock()
        self._token: VaultToken | None = None

    def get_session_token(self) -> VaultToken:
        token = self._token
        if token is not None:
            return token
        with self._lock:
            if self._token is None:
                try:
                    self._token = self._authentication.login()
                except VaultError as exc:
                    raise SessionError(f"Cannot obtain a session token: {exc}") from exc
            return self._token


class LifecycleAwareSessionManager:
    """Session manager with background token renewal and re-login fallback."""

    def __init__(
        self,
        authentication: ClientAuthentication,
        transport: VaultTransport,
        scheduler: TaskScheduler,
        refresh_trigger: FixedTimeoutRefreshTrigger | None = None,
        *,
        token_self_lookup: bool = True,
        publisher: EventPublisher | None = None,
        name: str = "default",
    ) -> None:
        self._authentication = authentication
        self._transport = transport
        self._scheduler = scheduler
        self._trigger = refresh_trigger or FixedTimeoutRefreshTrigger(DEFAULT_REFRESH_BEFORE_EXPIRY)
        self._token_self_lookup = token_self_lookup
        self._publisher = publisher or EventPublisher()
        self._job_id = f"session:{name}"

        self._lock = threading.Lock()
        self._token: VaultToken | None = None
        self._state = SessionState.EMPTY
        self._flight: concurrent.futures.Future[VaultToken | None] | None = None
        self._generation = 0
        self._degraded = False

    # -- public API ------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def degraded(self) -> bool:
        """True while renewals cannot be scheduled and happen on access instead."""
        return self._degraded

    def add_listener(self, listener: EventListener) -> None:
        self._publisher.add_listener(listener)

    def remove_listener(self, listener: EventListener) -> None:
        self._publisher.remove_listener(listener)

    def get_session_token(self) -> VaultToken:
        """Return the cached token, logging in first if there is none.

        Concurrent callers share a single login attempt.  Raises
        ``SessionError`` (chained to the cause) if that login fails.
        """
        while True:
            with self._lock:
                token = self._token
                if token is not None and not self._expiring_on_access(token):
                    return token
                flight = self._flight
                owner = flight is None
                if flight is None:
                    flight = self._flight = concurrent.futures.Future()
                    self._state = SessionState.AUTHENTICATING if token is None else SessionState.RENEWING

            if owner:
                if token is None:
                    self._login(flight)
                else:
                    logger.info("Refreshing expiring token on access (scheduler unavailable)")
                    self._refresh(flight, token)

            try:
                result = flight.result()
            except Exception as exc:
                raise SessionError(f"Cannot obtain a session token: {exc}") from exc
            if result is not None:
                return result

    def drop_current_token(self) -> None:
        """Forget the cached token; the next ``get_session_token()`` logs in again.

        An in-flight login or renewal is not interrupted, but its result is
        discarded.
        """
        token = self._detach()
        if token is not None:
            logger.info("Session token dropped")
            self._publisher.publish(LoginTokenRevokedEvent(token))

    def destroy(self) -> None:
        """Drop the session and revoke its login token server-side (best effort)."""
        token = self._detach()
        if token is None:
            return
        if not isinstance(token, LoginToken):
            self._publisher.publish(LoginTokenRevokedEvent(token))
            return

        self._publisher.publish(BeforeLoginTokenRevocationEvent(token))
        try:
            self._transport.request("POST", "auth/token/revoke-self", headers=vault_token_header(token))
        except VaultError as exc:
            logger.warning("Cannot revoke session token: %s", exc)
            self._publisher.publish(LoginTokenRevokedEvent(token, server_side=False))
            return
        logger.info("Session token revoked")
        self._publisher.publish(LoginTokenRevokedEvent(token, server_side=True))

    # -- login -------------------------------------------------------------------

    def _login(self, flight: concurrent.futures.Future[VaultToken | None]) -> None:
        try:
            token = self._augment_with_self_lookup(self._authentication.login())
        except Exception as exc:
            with self._lock:
                if self._flight is flight:
                    self._flight = None
                    self._state = SessionState.EMPTY
            logger.warning("Login failed: %s", exc)
            self._publisher.publish(LoginFailedEvent(exc))
            flight.set_exception(exc)
            return

        with self._lock:
            current = self._flight is flight
            if current:
                self._token = token
                self._state = SessionState.VALID
                self._flight = None
                self._generation += 1
                generation = self._generation

        if not current:
            logger.info("Discarding login result: session was invalidated during login")
            flight.set_result(None)
            return

        if isinstance(token, LoginToken):
            logger.info(
                "Login successful: renewable=%s, ttl=%ss",
                token.renewable,
                int(token.lease_duration.total_seconds()),
            )
        else:
            logger.info("Login successful: token without lease information")
        self._publisher.publish(AfterLoginEvent(token))
        self._schedule_refresh(token, generation)
        flight.set_result(token)

    def _augment_with_self_lookup(self, token: VaultToken) -> VaultToken:
        if not self._token_self_lookup or isinstance(token, LoginToken):
            return token
        try:
            response = self._transport.request(
                "GET", "auth/token/lookup-self", headers=vault_token_header(token)
            )
            return LoginToken.from_lookup(token, require_data(response))
        except VaultError as exc:
            logger.warning("Cannot enhance VaultToken to a LoginToken: token self-lookup failed: %s", exc)
            return token

    # -- renewal -----------------------------------------------------------------

    def _schedule_refresh(self, token: VaultToken, generation: int) -> None:
        if not isinstance(token, LoginToken) or not token.lease_duration:
            logger.debug("Token has no TTL, no renewal scheduled")
            return
        run_at = self._trigger.next_execution(token)
        try:
            self._scheduler.schedule(self._job_id, self._on_refresh_due, run_at, generation=generation)
        except SchedulerUnavailableError as exc:
            if not self._degraded:
                logger.warning("%s; expiring tokens will be refreshed on access", exc)
            self._degraded = True
        else:
            self._degraded = False

    def _on_refresh_due(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation or self._token is None or self._flight is not None:
                return
            token = self._token
            flight: concurrent.futures.Future[VaultToken | None] = concurrent.futures.Future()
            self._flight = flight
            self._state = SessionState.RENEWING
        self._refresh(flight, token)

    def _refresh(self, flight: concurrent.futures.Future[VaultToken | None], token: VaultToken) -> None:
        if isinstance(token, LoginToken) and token.is_renewable():
            try:
                renewed = self._renew(token)
            except Exception as exc:
                logger.warning("Cannot renew session token, falling back to login: %s", exc)
                self._publisher.publish(LoginTokenRenewalFailedEvent(exc, token))
            else:
                if not self._trigger.is_expired(renewed.lease_duration):
                    self._complete_renewal(flight, renewed)
                    return
                logger.info(
                    "Renewed token TTL %ss is below the expiry threshold, logging in again",
                    int(renewed.lease_duration.total_seconds()),
                )
                self._publisher.publish(LoginTokenExpiredEvent(renewed))
        else:
            logger.info("Session token is not renewable, logging in again")
            self._publisher.publish(LoginTokenExpiredEvent(token))

        with self._lock:
            if self._flight is not flight:
                current = False
            else:
                current = True
                self._token = None
                self._generation += 1
                self._state = SessionState.AUTHENTICATING
        if not current:
            flight.set_result(None)
            return
        self._login(flight)

    def _complete_renewal(self, flight: concurrent.futures.Future[VaultToken | None], renewed: LoginToken) -> None:
        with self._lock:
            current = self._flight is flight
            if current:
                self._token = renewed
                self._state = SessionState.VALID
                self._flight = None
                generation = self._generation
        if not current:
            logger.info("Discarding renewal result: session was invalidated during renewal")
            flight.set_result(None)
            return

        logger.info("Session token renewed: ttl=%ss", int(renewed.lease_duration.total_seconds()))
        self._publisher.publish(AfterLoginTokenRenewedEvent(renewed))
        self._schedule_refresh(renewed, generation)
        flight.set_result(renewed)

    def _renew(self, token: LoginToken) -> LoginToken:
        response = self._transport.request(
            "POST", "auth/token/renew-self", headers=vault_token_header(token), json={}
        )
        source: dict[str, Any] = response.get("auth") or response
        if source.get("lease_duration") is None:
            raise MalformedResponseError("Renewal response does not contain a lease_duration")
        renewed = token.with_lease(
            renewable=bool(source.get("renewable", token.renewable)),
            lease_duration=datetime.timedelta(seconds=int(source["lease_duration"])),
            issued_at=self._trigger.now(),
        )
        client_token = source.get("client_token")
        if client_token and client_token != token.token:
            renewed = LoginToken(
                token=client_token,
                renewable=renewed.renewable,
                lease_duration=renewed.lease_duration,
                issued_at=renewed.issued_at,
                accessor=source.get("accessor", token.accessor),
            )
        return renewed

    # -- private helpers -----------------------------------------------------------

    def _expiring_on_access(self, token: VaultToken) -> bool:
        if not self._degraded or not isinstance(token, LoginToken):
            return False
        return self._trigger.is_expired(token.remaining(self._trigger.now()))

    def _detach(self) -> VaultToken | None:
        with self._lock:
            token = self._token
            self._token = None
            self._flight = None
            self._generation += 1
            self._state = SessionState.EMPTY
        self._scheduler.cancel(self._job_id)
        return token
