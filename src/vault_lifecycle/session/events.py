"""Events published by session managers.

All events are immutable notifications.  Failure events carry the exception
that caused them; none of them are raised into caller code.
"""

from __future__ import annotations

import dataclasses

from vault_lifecycle.auth.token import VaultToken


@dataclasses.dataclass(frozen=True)
class AuthenticationEvent:
    token: VaultToken


@dataclasses.dataclass(frozen=True)
class AfterLoginEvent(AuthenticationEvent):
    """A login completed and its token is now cached."""


@dataclasses.dataclass(frozen=True)
class AfterLoginTokenRenewedEvent(AuthenticationEvent):
    """The cached token's lease was extended; ``token`` carries the new lease."""


@dataclasses.dataclass(frozen=True)
class LoginTokenExpiredEvent(AuthenticationEvent):
    """The cached token cannot (or can no longer usefully) be renewed; re-login follows."""


@dataclasses.dataclass(frozen=True)
class LoginTokenRevokedEvent(AuthenticationEvent):
    """The cached token was dropped.  ``server_side`` is true if Vault revoked it too."""

    server_side: bool = False


@dataclasses.dataclass(frozen=True)
class BeforeLoginTokenRevocationEvent(AuthenticationEvent):
    """Published right before the token is revoked server-side."""


@dataclasses.dataclass(frozen=True)
class AuthenticationErrorEvent:
    exception: BaseException


@dataclasses.dataclass(frozen=True)
class LoginFailedEvent(AuthenticationErrorEvent):
    """A login attempt failed; no token is cached."""


@dataclasses.dataclass(frozen=True)
class LoginTokenRenewalFailedEvent(AuthenticationErrorEvent):
    """Renewing ``token`` failed.  Non-fatal: the manager falls back to re-login."""

    token: VaultToken | None = None
