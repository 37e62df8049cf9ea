"""Error taxonomy shared by the transport, authentication, session and lease layers.

Nothing above the transport boundary sees third-party exception types: hvac,
requests and httpx failures are translated into ``VaultTransportError`` where
the HTTP call is made.
"""

from __future__ import annotations

from collections.abc import Sequence


class VaultError(Exception):
    """Base class for every error raised by this package."""


class VaultTransportError(VaultError):
    """Raised when an HTTP call to Vault fails.

    ``status_code`` is ``None`` for network-level failures (connection refused,
    timeouts) and the HTTP status otherwise.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        errors: Sequence[str] = (),
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.errors = tuple(errors)

    @property
    def is_transient(self) -> bool:
        if self.status_code is None:
            return True
        return self.status_code == 429 or self.status_code >= 500


class MalformedResponseError(VaultError):
    """Raised when a Vault response lacks a field the caller requires."""


class VaultLoginError(VaultError):
    """Raised when a login attempt fails for a specific authentication mechanism."""

    def __init__(self, mechanism: str, cause: BaseException | str) -> None:
        super().__init__(f"Cannot login using {mechanism}: {cause}")
        self.mechanism = mechanism
        self.cause = cause if isinstance(cause, BaseException) else None

    @classmethod
    def create(cls, mechanism: str, cause: BaseException) -> VaultLoginError:
        if isinstance(cause, VaultLoginError):
            return cls(mechanism, cause.cause or str(cause))
        return cls(mechanism, cause)


class SessionError(VaultError):
    """Raised by ``get_session_token()`` when no token can be obtained."""


class LeaseError(VaultError):
    """Raised when a requested secret cannot be fetched or its lease parsed."""


class SchedulerUnavailableError(VaultError):
    """Raised when background work is scheduled on a scheduler that is not running."""
