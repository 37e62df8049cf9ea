"""asyncio interpreter for ``AuthenticationSteps``.

Walks the same chain as ``AuthenticationStepsExecutor`` but awaits HTTP calls
on an ``AsyncVaultTransport``.  The two branches of a ``zip_with`` are issued
concurrently and both complete before the dependent step runs.  If either
branch fails the other is cancelled before the failure propagates.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from vault_lifecycle.auth.steps import AuthenticationSteps, Map, Node, OnNext, Request, Supply, Zip
from vault_lifecycle.auth.token import VaultToken
from vault_lifecycle.client.transport import AsyncVaultTransport
from vault_lifecycle.errors import VaultLoginError

logger = logging.getLogger(__name__)


class AuthenticationStepsOperator:
    """Runs an ``AuthenticationSteps`` chain against a non-blocking transport."""

    def __init__(self, steps: AuthenticationSteps, transport: AsyncVaultTransport) -> None:
        self._steps = steps
        self._transport = transport

    @property
    def mechanism(self) -> str:
        return self._steps.mechanism

    async def get_vault_token(self) -> VaultToken:
        try:
            value = await self._evaluate(self._steps.node)
            token = self._steps.login_fn(value)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            raise VaultLoginError.create(self._steps.mechanism, exc) from exc

        if not isinstance(token, VaultToken):
            raise VaultLoginError(
                self._steps.mechanism,
                f"login step returned {type(token).__name__}, expected a VaultToken",
            )
        logger.debug("Login successful using %s", self._steps.mechanism)
        return token

    async def _evaluate(self, node: Node) -> Any:
        step = node.step
        if isinstance(step, Zip):
            return await self._evaluate_both(node.previous, step.other)

        upstream = await self._evaluate_optional(node.previous)
        if isinstance(step, Supply):
            return step.supplier()
        if isinstance(step, Map):
            return step.mapper(upstream)
        if isinstance(step, Request):
            request = step.request
            return await self._transport.request(
                request.method,
                request.uri,
                headers=request.headers,
                json=request.resolve_body(upstream),
            )
        if isinstance(step, OnNext):
            step.listener(upstream)
            return upstream
        raise TypeError(f"Unsupported authentication step: {step!r}")

    async def _evaluate_both(self, left_node: Node | None, right_node: Node) -> tuple[Any, Any]:
        branches = (
            asyncio.ensure_future(self._evaluate_optional(left_node)),
            asyncio.ensure_future(self._evaluate(right_node)),
        )
        try:
            left, right = await asyncio.gather(*branches)
        except BaseException:
            for branch in branches:
                branch.cancel()
            await asyncio.gather(*branches, return_exceptions=True)
            raise
        return (left, right)

    async def _evaluate_optional(self, node: Node | None) -> Any:
        if node is None:
            return None
        return await self._evaluate(node)
