"""Settings loaded from ``settings.yaml`` with environment overrides.

Pattern: Typed Settings Snapshot
---------------------------------
The YAML file is parsed once into frozen dataclasses; everything downstream
receives those objects instead of raw dictionaries.  ``VAULT_ADDR``,
``VAULT_NAMESPACE`` and ``VAULT_TOKEN`` follow the Vault CLI conventions and
win over the file.

Example::

    vault:
      address: https://vault.example.com:8200
      namespace: null
      verify: true
      timeout: 30
    authentication:
      method: approle
      options: {role_id: ..., secret_id: ...}
    session:
      refresh_before_expiry: 5s
      expiry_threshold: 7s
      token_self_lookup: true
    leases:
      refresh_before_expiry: 10s
      expiry_threshold: 60s
      increment: null
"""

from __future__ import annotations

import dataclasses
import datetime
import logging
import os
import pathlib
from collections.abc import Mapping
from typing import Any

import yaml

from vault_lifecycle.auth.mechanisms import AuthenticationMechanism, create_authentication
from vault_lifecycle.client.transport import DEFAULT_VAULT_ADDR, HttpxAsyncTransport, HvacTransport
from vault_lifecycle.errors import VaultError
from vault_lifecycle.events import EventPublisher
from vault_lifecycle.lease.container import (
    DEFAULT_LEASE_EXPIRY_THRESHOLD,
    DEFAULT_LEASE_REFRESH_BEFORE_EXPIRY,
    SecretLeaseContainer,
)
from vault_lifecycle.scheduling import TaskScheduler
from vault_lifecycle.session.manager import (
    DEFAULT_REFRESH_BEFORE_EXPIRY,
    LifecycleAwareSessionManager,
    SessionManager,
)
from vault_lifecycle.session.trigger import FixedTimeoutRefreshTrigger

logger = logging.getLogger(__name__)


class SettingsError(VaultError):
    """Raised when the settings file is missing, unreadable or malformed."""


def parse_duration(value: Any) -> datetime.timedelta:
    """Parse a Vault-style duration into a ``timedelta``.

    Examples: ``"5m"`` -> 5 minutes, ``"1h"`` -> 1 hour, ``"30s"`` / ``30`` -> 30 seconds.
    """
    if isinstance(value, datetime.timedelta):
        return value
    if isinstance(value, bool):
        raise SettingsError(f"Invalid duration: {value!r}")
    if isinstance(value, int | float):
        seconds = float(value)
    else:
        s = str(value).strip()
        try:
            if s.endswith("m"):
                seconds = int(s[:-1]) * 60
            elif s.endswith("h"):
                seconds = int(s[:-1]) * 3600
            elif s.endswith("s"):
                seconds = int(s[:-1])
            else:
                seconds = int(s)
        except ValueError as exc:
            raise SettingsError(f"Invalid duration: {value!r}") from exc
    if seconds < 0:
        raise SettingsError(f"Duration must not be negative: {value!r}")
    return datetime.timedelta(seconds=seconds)


@dataclasses.dataclass(frozen=True)
class VaultSettings:
    address: str = DEFAULT_VAULT_ADDR
    namespace: str | None = None
    verify: bool | str = True
    timeout: float = 30
    cert: tuple[str, str] | None = None


@dataclasses.dataclass(frozen=True)
class AuthenticationSettings:
    """``method`` is a key of ``MECHANISMS``; ``options`` are its constructor arguments."""

    method: str
    options: Mapping[str, Any] = dataclasses.field(default_factory=dict, repr=False)


@dataclasses.dataclass(frozen=True)
class SessionSettings:
    refresh_before_expiry: datetime.timedelta = DEFAULT_REFRESH_BEFORE_EXPIRY
    expiry_threshold: datetime.timedelta | None = None
    token_self_lookup: bool = True

    def refresh_trigger(self) -> FixedTimeoutRefreshTrigger:
        return FixedTimeoutRefreshTrigger(self.refresh_before_expiry, self.expiry_threshold)


@dataclasses.dataclass(frozen=True)
class LeaseSettings:
    refresh_before_expiry: datetime.timedelta = DEFAULT_LEASE_REFRESH_BEFORE_EXPIRY
    expiry_threshold: datetime.timedelta = DEFAULT_LEASE_EXPIRY_THRESHOLD
    increment: datetime.timedelta | None = None

    def refresh_trigger(self) -> FixedTimeoutRefreshTrigger:
        return FixedTimeoutRefreshTrigger(self.refresh_before_expiry, self.expiry_threshold)


@dataclasses.dataclass(frozen=True)
class Settings:
    vault: VaultSettings
    authentication: AuthenticationSettings
    session: SessionSettings = dataclasses.field(default_factory=SessionSettings)
    leases: LeaseSettings = dataclasses.field(default_factory=LeaseSettings)

    @classmethod
    def from_mapping(
        cls,
        data: Mapping[str, Any] | None,
        environ: Mapping[str, str] | None = None,
    ) -> Settings:
        """Build settings from parsed YAML, applying ``VAULT_*`` overrides from *environ*."""
        env = os.environ if environ is None else environ
        data = data or {}
        if not isinstance(data, Mapping):
            raise SettingsError("Settings must be a mapping")

        vault_cfg = _section(data, "vault")
        cert = vault_cfg.get("cert")
        if cert is not None:
            if not isinstance(cert, list | tuple) or len(cert) != 2:
                raise SettingsError("vault.cert must be a [certificate, key] pair")
            cert = (str(cert[0]), str(cert[1]))
        vault = VaultSettings(
            address=env.get("VAULT_ADDR") or vault_cfg.get("address") or DEFAULT_VAULT_ADDR,
            namespace=env.get("VAULT_NAMESPACE") or vault_cfg.get("namespace"),
            verify=vault_cfg.get("verify", True),
            timeout=float(vault_cfg.get("timeout", 30)),
            cert=cert,
        )

        auth_cfg = _section(data, "authentication")
        method = auth_cfg.get("method")
        options = auth_cfg.get("options") or {}
        if not isinstance(options, Mapping):
            raise SettingsError("authentication.options must be a mapping")
        if not method:
            token = env.get("VAULT_TOKEN")
            if not token:
                raise SettingsError("No authentication.method configured and VAULT_TOKEN is not set")
            method, options = "token", {"token": token}
        authentication = AuthenticationSettings(method=str(method), options=dict(options))

        session_cfg = _section(data, "session")
        session = SessionSettings(
            refresh_before_expiry=parse_duration(
                session_cfg.get("refresh_before_expiry", DEFAULT_REFRESH_BEFORE_EXPIRY)
            ),
            expiry_threshold=_optional_duration(session_cfg.get("expiry_threshold")),
            token_self_lookup=bool(session_cfg.get("token_self_lookup", True)),
        )

        lease_cfg = _section(data, "leases")
        leases = LeaseSettings(
            refresh_before_expiry=parse_duration(
                lease_cfg.get("refresh_before_expiry", DEFAULT_LEASE_REFRESH_BEFORE_EXPIRY)
            ),
            expiry_threshold=parse_duration(lease_cfg.get("expiry_threshold", DEFAULT_LEASE_EXPIRY_THRESHOLD)),
            increment=_optional_duration(lease_cfg.get("increment")),
        )
        return cls(vault=vault, authentication=authentication, session=session, leases=leases)

    # -- factories -------------------------------------------------------------

    def create_transport(self) -> HvacTransport:
        return HvacTransport(
            self.vault.address,
            namespace=self.vault.namespace,
            verify=self.vault.verify,
            timeout=self.vault.timeout,
            cert=self.vault.cert,
        )

    def create_async_transport(self) -> HttpxAsyncTransport:
        return HttpxAsyncTransport(
            self.vault.address,
            namespace=self.vault.namespace,
            verify=self.vault.verify,
            timeout=self.vault.timeout,
            cert=self.vault.cert,
        )

    def create_authentication(self) -> AuthenticationMechanism:
        try:
            return create_authentication(self.authentication.method, **self.authentication.options)
        except (TypeError, ValueError) as exc:
            raise SettingsError(f"Invalid authentication settings: {exc}") from exc

    def create_session_manager(
        self,
        transport: HvacTransport,
        scheduler: TaskScheduler,
        *,
        publisher: EventPublisher | None = None,
    ) -> LifecycleAwareSessionManager:
        return LifecycleAwareSessionManager(
            self.create_authentication().executor(transport),
            transport,
            scheduler,
            self.session.refresh_trigger(),
            token_self_lookup=self.session.token_self_lookup,
            publisher=publisher,
        )

    def create_lease_container(
        self,
        transport: HvacTransport,
        scheduler: TaskScheduler,
        *,
        session_manager: SessionManager | None = None,
        publisher: EventPublisher | None = None,
    ) -> SecretLeaseContainer:
        return SecretLeaseContainer(
            transport,
            scheduler,
            self.leases.refresh_trigger(),
            lease_increment=self.leases.increment,
            session_manager=session_manager,
            publisher=publisher,
        )


def load_settings(path: str | pathlib.Path, environ: Mapping[str, str] | None = None) -> Settings:
    """Read *path* (YAML) and return the resulting ``Settings``."""
    try:
        with open(path) as fh:
            data = yaml.safe_load(fh)
    except OSError as exc:
        raise SettingsError(f"Cannot read settings file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise SettingsError(f"Cannot parse settings file {path}: {exc}") from exc
    settings = Settings.from_mapping(data, environ)
    logger.info(
        "Loaded settings from %s (vault=%s, auth_method=%s)",
        path,
        settings.vault.address,
        settings.authentication.method,
    )
    return settings


# -- private helpers -----------------------------------------------------------


def _section(data: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    section = data.get(name) or {}
    if not isinstance(section, Mapping):
        raise SettingsError(f"Section '{name}' must be a mapping")
    return section


def _optional_duration(value: Any) -> datetime.timedelta | None:
    return None if value is None else parse_duration(value)
