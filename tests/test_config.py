"""Tests for settings loading."""

from __future__ import annotations

import datetime
import pathlib
import textwrap
from unittest.mock import patch

import pytest

from conftest import ManualScheduler
from vault_lifecycle.auth.mechanisms import AppRoleAuthentication, TokenAuthentication
from vault_lifecycle.config import Settings, SettingsError, load_settings, parse_duration
from vault_lifecycle.lease.container import SecretLeaseContainer
from vault_lifecycle.session.manager import LifecycleAwareSessionManager

SETTINGS_YAML = textwrap.dedent(
    """\
    vault:
      address: https://vault.example.com:8200
      namespace: team-a
      verify: false
      timeout: 10
    authentication:
      method: approle
      options:
        role_id: rid
        secret_id: sid
    session:
      refresh_before_expiry: 10s
      expiry_threshold: 1m
      token_self_lookup: false
    leases:
      refresh_before_expiry: 1m
      expiry_threshold: 2m
      increment: 1h
    """
)


@pytest.fixture
def settings_file(tmp_path: pathlib.Path) -> pathlib.Path:
    path = tmp_path / "settings.yaml"
    path.write_text(SETTINGS_YAML)
    return path


class TestParseDuration:
    @pytest.mark.parametrize(
        ("value", "seconds"),
        [("5m", 300), ("1h", 3600), ("30s", 30), ("300", 300), (45, 45), (" 2m ", 120)],
    )
    def test_valid(self, value: object, seconds: int) -> None:
        assert parse_duration(value) == datetime.timedelta(seconds=seconds)

    @pytest.mark.parametrize("value", ["soon", "5d", True, "-5s"])
    def test_invalid(self, value: object) -> None:
        with pytest.raises(SettingsError):
            parse_duration(value)


class TestLoadSettings:
    def test_full_file(self, settings_file: pathlib.Path) -> None:
        settings = load_settings(settings_file, environ={})

        assert settings.vault.address == "https://vault.example.com:8200"
        assert settings.vault.namespace == "team-a"
        assert settings.vault.verify is False
        assert settings.vault.timeout == 10
        assert settings.authentication.method == "approle"
        assert settings.session.refresh_before_expiry == datetime.timedelta(seconds=10)
        assert settings.session.expiry_threshold == datetime.timedelta(minutes=1)
        assert not settings.session.token_self_lookup
        assert settings.leases.increment == datetime.timedelta(hours=1)

    def test_environment_overrides(self, settings_file: pathlib.Path) -> None:
        settings = load_settings(
            settings_file,
            environ={"VAULT_ADDR": "https://other:8200", "VAULT_NAMESPACE": "team-b"},
        )
        assert settings.vault.address == "https://other:8200"
        assert settings.vault.namespace == "team-b"

    def test_reads_process_environment(
        self,
        settings_file: pathlib.Path,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        monkeypatch.setenv("VAULT_ADDR", "https://from-env:8200")
        assert load_settings(settings_file).vault.address == "https://from-env:8200"

    def test_vault_token_used_without_method(self) -> None:
        settings = Settings.from_mapping({}, environ={"VAULT_TOKEN": "s.env"})

        assert settings.authentication.method == "token"
        assert settings.create_authentication() == TokenAuthentication("s.env")
        assert settings.session.refresh_before_expiry == datetime.timedelta(seconds=5)
        assert settings.leases.expiry_threshold == datetime.timedelta(seconds=60)

    def test_missing_authentication(self) -> None:
        with pytest.raises(SettingsError, match="VAULT_TOKEN"):
            Settings.from_mapping({"vault": {}}, environ={})

    def test_missing_file(self, tmp_path: pathlib.Path) -> None:
        with pytest.raises(SettingsError, match="Cannot read"):
            load_settings(tmp_path / "absent.yaml")

    def test_invalid_yaml(self, tmp_path: pathlib.Path) -> None:
        path = tmp_path / "broken.yaml"
        path.write_text("vault: [unclosed\n")
        with pytest.raises(SettingsError, match="Cannot parse"):
            load_settings(path)

    def test_section_must_be_mapping(self) -> None:
        with pytest.raises(SettingsError, match="vault"):
            Settings.from_mapping({"vault": "http://x"}, environ={"VAULT_TOKEN": "t"})

    def test_bad_authentication_options(self) -> None:
        settings = Settings.from_mapping(
            {"authentication": {"method": "approle", "options": {"unknown": 1}}}, environ={}
        )
        with pytest.raises(SettingsError):
            settings.create_authentication()


class TestFactories:
    def test_create_authentication(self, settings_file: pathlib.Path) -> None:
        settings = load_settings(settings_file, environ={})
        assert settings.create_authentication() == AppRoleAuthentication(role_id="rid", secret_id="sid")

    @patch("vault_lifecycle.config.HvacTransport")
    def test_create_transport(self, mock_transport_cls: object, settings_file: pathlib.Path) -> None:
        settings = load_settings(settings_file, environ={})

        settings.create_transport()

        mock_transport_cls.assert_called_once_with(  # type: ignore[attr-defined]
            "https://vault.example.com:8200",
            namespace="team-a",
            verify=False,
            timeout=10.0,
            cert=None,
        )

    def test_create_session_manager_and_container(self, settings_file: pathlib.Path) -> None:
        settings = load_settings(settings_file, environ={})
        scheduler = ManualScheduler()

        with patch("vault_lifecycle.client.transport.hvac.adapters.JSONAdapter"):
            transport = settings.create_transport()
        manager = settings.create_session_manager(transport, scheduler)
        container = settings.create_lease_container(transport, scheduler)

        assert isinstance(manager, LifecycleAwareSessionManager)
        assert isinstance(container, SecretLeaseContainer)
