"""HTTP transports used by the authentication interpreters, session managers and
lease container.

Pattern: Anti-Corruption Layer
-------------------------------
Everything above this module speaks one capability: "issue a request against
a path under ``/v1/`` and give me the parsed JSON body".  The synchronous
``HvacTransport`` delegates to hvac's ``JSONAdapter`` (connection pooling, TLS
and namespace handling come from hvac); the asynchronous ``HttpxAsyncTransport``
uses ``httpx.AsyncClient``.  Both translate their library's failures into
``VaultTransportError`` so callers never catch hvac, requests or httpx types.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any, Protocol

import httpx
import hvac
import hvac.adapters
import hvac.exceptions
import requests

from vault_lifecycle.errors import MalformedResponseError, VaultTransportError

logger = logging.getLogger(__name__)

DEFAULT_VAULT_ADDR = "http://127.0.0.1:8200"

_HVAC_STATUS: list[tuple[type[hvac.exceptions.VaultError], int]] = [
    (hvac.exceptions.InvalidRequest, 400),
    (hvac.exceptions.Unauthorized, 401),
    (hvac.exceptions.Forbidden, 403),
    (hvac.exceptions.InvalidPath, 404),
    (hvac.exceptions.RateLimitExceeded, 429),
    (hvac.exceptions.InternalServerError, 500),
    (hvac.exceptions.VaultNotInitialized, 501),
    (hvac.exceptions.BadGateway, 502),
    (hvac.exceptions.VaultDown, 503),
]


def vault_token_header(token: Any) -> dict[str, str]:
    """Return the ``X-Vault-Token`` header for a ``VaultToken`` or raw string."""
    value = getattr(token, "token", token)
    return {"X-Vault-Token": value}


class VaultTransport(Protocol):
    def request(
        self,
        method: str,
        path: str,
        *,
        headers: Mapping[str, str] | None = None,
        json: Any = None,
    ) -> dict[str, Any]: ...


class AsyncVaultTransport(Protocol):
    async def request(
        self,
        method: str,
        path: str,
        *,
        headers: Mapping[str, str] | None = None,
        json: Any = None,
    ) -> dict[str, Any]: ...


class HvacTransport:
    """Blocking transport backed by ``hvac.adapters.JSONAdapter``."""

    def __init__(
        self,
        vault_addr: str = DEFAULT_VAULT_ADDR,
        *,
        namespace: str | None = None,
        verify: bool | str = True,
        timeout: float = 30,
        cert: tuple[str, str] | None = None,
        session: requests.Session | None = None,
    ) -> None:
        self._vault_addr = vault_addr
        self._adapter = hvac.adapters.JSONAdapter(
            base_uri=vault_addr,
            token=None,
            cert=cert,
            verify=verify,
            timeout=timeout,
            namespace=namespace,
            session=session,
        )

    @classmethod
    def from_client(cls, client: hvac.Client, *, timeout: float = 30) -> HvacTransport:
        """Share the connection pool and TLS settings of an existing ``hvac.Client``.

        The client's own token is not used; every request carries its token header
        explicitly.
        """
        adapter = client.adapter
        return cls(
            adapter.base_uri,
            namespace=adapter.namespace,
            verify=adapter.session.verify,
            timeout=timeout,
            cert=adapter.session.cert,
            session=adapter.session,
        )

    @property
    def vault_addr(self) -> str:
        return self._vault_addr

    def request(
        self,
        method: str,
        path: str,
        *,
        headers: Mapping[str, str] | None = None,
        json: Any = None,
    ) -> dict[str, Any]:
        url = "/v1/" + path.lstrip("/")
        kwargs: dict[str, Any] = {}
        if json is not None:
            kwargs["json"] = json
        try:
            result = self._adapter.request(method, url, headers=dict(headers or {}), **kwargs)
        except hvac.exceptions.VaultError as exc:
            raise _translate_hvac_error(method, path, exc) from exc
        except requests.exceptions.RequestException as exc:
            raise VaultTransportError(f"{method} {path} failed: {exc}") from exc

        if isinstance(result, dict):
            return result
        return _empty_or_malformed(method, path, result.status_code, result.content)

    def close(self) -> None:
        self._adapter.close()


class HttpxAsyncTransport:
    """Non-blocking transport backed by ``httpx.AsyncClient``."""

    def __init__(
        self,
        vault_addr: str = DEFAULT_VAULT_ADDR,
        *,
        namespace: str | None = None,
        verify: bool | str = True,
        timeout: float = 30,
        cert: tuple[str, str] | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        headers = {"X-Vault-Request": "true"}
        if namespace:
            headers["X-Vault-Namespace"] = namespace
        self._client = client or httpx.AsyncClient(
            base_url=vault_addr.rstrip("/") + "/v1/",
            headers=headers,
            verify=verify,
            timeout=timeout,
            cert=cert,
        )

    async def request(
        self,
        method: str,
        path: str,
        *,
        headers: Mapping[str, str] | None = None,
        json: Any = None,
    ) -> dict[str, Any]:
        try:
            response = await self._client.request(
                method,
                path.lstrip("/"),
                headers=dict(headers or {}),
                json=json,
            )
        except httpx.HTTPError as exc:
            raise VaultTransportError(f"{method} {path} failed: {exc}") from exc

        if response.is_error:
            raise VaultTransportError(
                f"{method} {path} returned HTTP {response.status_code}",
                status_code=response.status_code,
                errors=_errors_from_body(response),
            )
        if not response.content:
            return {}
        try:
            body = response.json()
        except ValueError:
            return _empty_or_malformed(method, path, response.status_code, response.content)
        if not isinstance(body, dict):
            raise MalformedResponseError(f"{method} {path} returned a non-object JSON body")
        return body

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> HttpxAsyncTransport:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()


# -- private helpers -----------------------------------------------------------


def _translate_hvac_error(method: str, path: str, exc: hvac.exceptions.VaultError) -> VaultTransportError:
    status: int | None = None
    for exc_type, code in _HVAC_STATUS:
        if isinstance(exc, exc_type):
            status = code
            break
    errors = exc.errors if isinstance(exc.errors, list) else ([exc.errors] if exc.errors else [])
    return VaultTransportError(
        f"{method} {path} failed: {exc}",
        status_code=status,
        errors=[str(error) for error in errors],
    )


def _errors_from_body(response: httpx.Response) -> list[str]:
    try:
        body = response.json()
    except ValueError:
        return []
    if isinstance(body, dict):
        return [str(error) for error in body.get("errors") or []]
    return []


def _empty_or_malformed(method: str, path: str, status_code: int, content: bytes) -> dict[str, Any]:
    if status_code == 204 or not content or not content.strip():
        return {}
    raise MalformedResponseError(f"{method} {path} returned a body that is not JSON")
