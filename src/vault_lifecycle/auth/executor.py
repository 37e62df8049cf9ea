"""Blocking interpreter for ``AuthenticationSteps``.

Steps run sequentially on the calling thread; both branches of a ``zip_with``
are evaluated one after the other.  Any failure (transport error, malformed
response, failing supplier) aborts the chain and surfaces as a
``VaultLoginError`` naming the mechanism.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

from vault_lifecycle.auth.steps import AuthenticationSteps, Map, Node, OnNext, Request, Supply, Zip
from vault_lifecycle.auth.token import VaultToken
from vault_lifecycle.client.transport import VaultTransport
from vault_lifecycle.errors import VaultLoginError

logger = logging.getLogger(__name__)


class ClientAuthentication(Protocol):
    """Anything that can perform a blocking login."""

    def login(self) -> VaultToken: ...


class AuthenticationStepsExecutor:
    """Runs an ``AuthenticationSteps`` chain against a blocking transport."""

    def __init__(self, steps: AuthenticationSteps, transport: VaultTransport) -> None:
        self._steps = steps
        self._transport = transport

    @property
    def mechanism(self) -> str:
        return self._steps.mechanism

    def login(self) -> VaultToken:
        try:
            value = self._evaluate(self._steps.node)
            token = self._steps.login_fn(value)
        except Exception as exc:
            raise VaultLoginError.create(self._steps.mechanism, exc) from exc

        if not isinstance(token, VaultToken):
            raise VaultLoginError(
                self._steps.mechanism,
                f"login step returned {type(token).__name__}, expected a VaultToken",
            )
        logger.debug("Login successful using %s", self._steps.mechanism)
        return token

    # -- private helpers -----------------------------------------------------

    def _evaluate(self, node: Node) -> Any:
        step = node.step
        if isinstance(step, Zip):
            left = self._evaluate(node.previous) if node.previous is not None else None
            right = self._evaluate(step.other)
            return (left, right)

        upstream = self._evaluate(node.previous) if node.previous is not None else None
        if isinstance(step, Supply):
            return step.supplier()
        if isinstance(step, Map):
            return step.mapper(upstream)
        if isinstance(step, Request):
            request = step.request
            return self._transport.request(
                request.method,
                request.uri,
                headers=request.headers,
                json=request.resolve_body(upstream),
            )
        if isinstance(step, OnNext):
            step.listener(upstream)
            return upstream
        raise TypeError(f"Unsupported authentication step: {step!r}")
