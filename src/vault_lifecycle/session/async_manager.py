"""asyncio session manager built on ``AuthenticationStepsOperator``.

Same lifecycle as ``LifecycleAwareSessionManager`` expressed with event-loop
primitives: the single in-flight login is a shared ``asyncio.Task`` that
concurrent callers await (shielded, so one caller's cancellation does not
abort the login for the others), and the renewal timer is a sleeping task that
is cancelled and replaced on every reschedule.  All state is touched from the
event loop only, so no lock is needed.
"""

from __future__ import annotations

import asyncio
import contextlib
import datetime
import logging

from vault_lifecycle.auth.operator import AuthenticationStepsOperator
from vault_lifecycle.auth.token import LoginToken, VaultToken, require_data
from vault_lifecycle.client.transport import AsyncVaultTransport, vault_token_header
from vault_lifecycle.errors import MalformedResponseError, SessionError, VaultError
from vault_lifecycle.events import EventListener, EventPublisher
from vault_lifecycle.session.events import (
    AfterLoginEvent,
    AfterLoginTokenRenewedEvent,
    BeforeLoginTokenRevocationEvent,
    LoginFailedEvent,
    LoginTokenExpiredEvent,
    LoginTokenRenewalFailedEvent,
    LoginTokenRevokedEvent,
)
from vault_lifecycle.session.manager import DEFAULT_REFRESH_BEFORE_EXPIRY
from vault_lifecycle.session.trigger import FixedTimeoutRefreshTrigger

logger = logging.getLogger(__name__)


class AsyncLifecycleAwareSessionManager:
    """Non-blocking session manager with background renewal."""

    def __init__(
        self,
        operator: AuthenticationStepsOperator,
        transport: AsyncVaultTransport,
        refresh_trigger: FixedTimeoutRefreshTrigger | None = None,
        *,
        token_self_lookup: bool = True,
        publisher: EventPublisher | None = None,
    ) -> None:
        self._operator = operator
        self._transport = transport
        self._trigger = refresh_trigger or FixedTimeoutRefreshTrigger(DEFAULT_REFRESH_BEFORE_EXPIRY)
        self._token_self_lookup = token_self_lookup
        self._publisher = publisher or EventPublisher()

        self._token: VaultToken | None = None
        self._login_task: asyncio.Task[VaultToken | None] | None = None
        self._refresh_task: asyncio.Task[None] | None = None
        self._generation = 0

    def add_listener(self, listener: EventListener) -> None:
        self._publisher.add_listener(listener)

    def remove_listener(self, listener: EventListener) -> None:
        self._publisher.remove_listener(listener)

    async def get_session_token(self) -> VaultToken:
        while True:
            if self._token is not None:
                return self._token
            task = self._ensure_login_task()
            try:
                token = await asyncio.shield(task)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                raise SessionError(f"Cannot obtain a session token: {exc}") from exc
            if token is not None:
                return token

    def drop_current_token(self) -> None:
        token = self._detach()
        if token is not None:
            logger.info("Session token dropped")
            self._publisher.publish(LoginTokenRevokedEvent(token))

    async def destroy(self) -> None:
        """Drop the session and revoke its login token server-side (best effort)."""
        token = self._detach()
        if token is None:
            return
        if not isinstance(token, LoginToken):
            self._publisher.publish(LoginTokenRevokedEvent(token))
            return
        self._publisher.publish(BeforeLoginTokenRevocationEvent(token))
        try:
            await self._transport.request("POST", "auth/token/revoke-self", headers=vault_token_header(token))
        except VaultError as exc:
            logger.warning("Cannot revoke session token: %s", exc)
            self._publisher.publish(LoginTokenRevokedEvent(token, server_side=False))
            return
        logger.info("Session token revoked")
        self._publisher.publish(LoginTokenRevokedEvent(token, server_side=True))

    # -- login ---------------------------------------------------------------------

    def _ensure_login_task(self) -> asyncio.Task[VaultToken | None]:
        if self._login_task is None:
            self._login_task = asyncio.ensure_future(self._login(self._generation))
        return self._login_task

    async def _login(self, generation: int) -> VaultToken | None:
        this_task = asyncio.current_task()
        try:
            token = await self._augment_with_self_lookup(await self._operator.get_vault_token())
        except Exception as exc:
            if self._login_task is this_task:
                self._login_task = None
            logger.warning("Login failed: %s", exc)
            self._publisher.publish(LoginFailedEvent(exc))
            raise

        if self._login_task is this_task:
            self._login_task = None
        if generation != self._generation:
            logger.info("Discarding login result: session was invalidated during login")
            return None

        self._token = token
        self._generation += 1
        logger.info("Login successful using %s", self._operator.mechanism)
        self._publisher.publish(AfterLoginEvent(token))
        self._schedule_refresh(token, self._generation)
        return token

    async def _augment_with_self_lookup(self, token: VaultToken) -> VaultToken:
        if not self._token_self_lookup or isinstance(token, LoginToken):
            return token
        try:
            response = await self._transport.request(
                "GET", "auth/token/lookup-self", headers=vault_token_header(token)
            )
            return LoginToken.from_lookup(token, require_data(response))
        except VaultError as exc:
            logger.warning("Cannot enhance VaultToken to a LoginToken: token self-lookup failed: %s", exc)
            return token

    # -- renewal ---------------------------------------------------------------------

    def _schedule_refresh(self, token: VaultToken, generation: int) -> None:
        self._cancel_refresh()
        if not isinstance(token, LoginToken) or not token.lease_duration:
            return
        now = self._trigger.now()
        delay = (self._trigger.next_execution(token, now) - now).total_seconds()
        self._refresh_task = asyncio.ensure_future(self._refresh_later(token, generation, delay))

    async def _refresh_later(self, token: LoginToken, generation: int, delay: float) -> None:
        await asyncio.sleep(delay)
        if generation != self._generation:
            return
        if token.is_renewable():
            try:
                renewed = await self._renew(token)
            except Exception as exc:
                logger.warning("Cannot renew session token, falling back to login: %s", exc)
                self._publisher.publish(LoginTokenRenewalFailedEvent(exc, token))
            else:
                if generation != self._generation:
                    return
                if not self._trigger.is_expired(renewed.lease_duration):
                    self._token = renewed
                    logger.info("Session token renewed: ttl=%ss", int(renewed.lease_duration.total_seconds()))
                    self._publisher.publish(AfterLoginTokenRenewedEvent(renewed))
                    self._refresh_task = None
                    self._schedule_refresh(renewed, generation)
                    return
                self._publisher.publish(LoginTokenExpiredEvent(renewed))
        else:
            self._publisher.publish(LoginTokenExpiredEvent(token))

        if generation != self._generation:
            return
        self._token = None
        self._generation += 1
        self._refresh_task = None
        try:
            await asyncio.shield(self._ensure_login_task())
        except Exception as exc:
            logger.warning("Background re-login failed: %s", exc)

    async def _renew(self, token: LoginToken) -> LoginToken:
        response = await self._transport.request(
            "POST", "auth/token/renew-self", headers=vault_token_header(token), json={}
        )
        source = response.get("auth") or response
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

    # -- private helpers ---------------------------------------------------------------

    def _cancel_refresh(self) -> None:
        task = self._refresh_task
        self._refresh_task = None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    def _detach(self) -> VaultToken | None:
        token = self._token
        self._token = None
        self._login_task = None
        self._generation += 1
        self._cancel_refresh()
        return token

    async def aclose(self) -> None:
        """Cancel background renewal without revoking the token."""
        task = self._refresh_task
        self._cancel_refresh()
        if task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await task
