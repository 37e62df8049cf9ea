"""Declarative description of a login flow.

Pattern: Interpreter
---------------------
An ``AuthenticationSteps`` value describes *how* to obtain a token without
performing any I/O.  It is a chain of immutable nodes:

  - a root that supplies a value (``just``, ``from_supplier``,
    ``from_http_request``),
  - continuation steps (``map``, ``zip_with``, ``request``, ``on_next``),
  - a terminal ``login`` that turns the accumulated value into a token.

The same chain is replayed by two interpreters: ``AuthenticationStepsExecutor``
(blocking, sequential) and ``AuthenticationStepsOperator`` (asyncio, zip
branches run concurrently).  Suppliers are evaluated at interpretation time, so
a chain built once from static configuration produces fresh credentials (for
example a newly signed request) on every login.

Example::

    steps = (
        AuthenticationSteps.from_supplier(lambda: {"password": read_password()})
        .login("auth/{}/login/{}", "userpass", "alice")
    )
"""

from __future__ import annotations

import dataclasses
from collections.abc import Callable, Mapping
from types import MappingProxyType
from typing import Any

from vault_lifecycle.auth.token import LoginToken, VaultToken, require_auth

_NO_BODY = object()


@dataclasses.dataclass(frozen=True)
class HttpRequest:
    """One HTTP call, described but not performed.

    When no body is set, interpreters send the upstream value as the JSON body
    (for non-GET requests).
    """

    method: str
    uri_template: str
    uri_variables: tuple[str, ...] = ()
    headers: Mapping[str, str] = dataclasses.field(default_factory=lambda: MappingProxyType({}))
    body: Any = _NO_BODY

    @classmethod
    def get(cls, uri_template: str, *uri_variables: str) -> HttpRequest:
        return cls("GET", uri_template, tuple(uri_variables))

    @classmethod
    def post(cls, uri_template: str, *uri_variables: str) -> HttpRequest:
        return cls("POST", uri_template, tuple(uri_variables))

    @classmethod
    def put(cls, uri_template: str, *uri_variables: str) -> HttpRequest:
        return cls("PUT", uri_template, tuple(uri_variables))

    def with_headers(self, headers: Mapping[str, str]) -> HttpRequest:
        merged = {**self.headers, **headers}
        return dataclasses.replace(self, headers=MappingProxyType(merged))

    def with_body(self, body: Any) -> HttpRequest:
        return dataclasses.replace(self, body=body)

    @property
    def has_body(self) -> bool:
        return self.body is not _NO_BODY

    @property
    def uri(self) -> str:
        path = self.uri_template.format(*self.uri_variables) if self.uri_variables else self.uri_template
        return path.lstrip("/")

    def resolve_body(self, upstream: Any) -> Any:
        if self.has_body:
            return self.body
        if self.method == "GET":
            return None
        return upstream


# -- chain nodes --------------------------------------------------------------


@dataclasses.dataclass(frozen=True)
class Supply:
    supplier: Callable[[], Any]


@dataclasses.dataclass(frozen=True)
class Map:
    mapper: Callable[[Any], Any]


@dataclasses.dataclass(frozen=True)
class Zip:
    other: Node


@dataclasses.dataclass(frozen=True)
class Request:
    request: HttpRequest


@dataclasses.dataclass(frozen=True)
class OnNext:
    listener: Callable[[Any], None]


Step = Supply | Map | Zip | Request | OnNext


@dataclasses.dataclass(frozen=True)
class Node:
    """An intermediate chain element.  ``previous`` is ``None`` for roots."""

    step: Step
    previous: Node | None = None

    def map(self, mapper: Callable[[Any], Any]) -> Node:
        return Node(Map(mapper), self)

    def zip_with(self, other: Node) -> Node:
        """Pair this chain's value with *other*'s as a ``(left, right)`` tuple."""
        return Node(Zip(other), self)

    def request(self, request: HttpRequest) -> Node:
        return Node(Request(request), self)

    def on_next(self, listener: Callable[[Any], None]) -> Node:
        return Node(OnNext(listener), self)

    def login(
        self,
        login: Callable[[Any], VaultToken] | str,
        *uri_variables: str,
        mechanism: str | None = None,
    ) -> AuthenticationSteps:
        """Terminate the chain.

        *login* is either a function turning the accumulated value into a token,
        or a login path: the upstream value is POSTed there and the response's
        ``auth`` block becomes a ``LoginToken``.
        """
        if isinstance(login, str):
            node = self.request(HttpRequest.post(login, *uri_variables))
            return AuthenticationSteps(
                node,
                _login_token_from_response,
                mechanism or _mechanism_from_path(login, uri_variables),
            )
        return AuthenticationSteps(self, login, mechanism or "AuthenticationSteps")

    def iter_steps(self) -> list[Step]:
        """Return the steps of this chain in execution order (root first)."""
        steps: list[Step] = []
        node: Node | None = self
        while node is not None:
            steps.append(node.step)
            node = node.previous
        steps.reverse()
        return steps


@dataclasses.dataclass(frozen=True)
class AuthenticationSteps:
    """A complete, replayable login description."""

    node: Node
    login_fn: Callable[[Any], VaultToken]
    mechanism: str = "AuthenticationSteps"

    # -- roots ----------------------------------------------------------------

    @staticmethod
    def just(value: VaultToken | HttpRequest | Any) -> AuthenticationSteps | Node:
        """A chain yielding *value*.

        A ``VaultToken`` produces a complete ``AuthenticationSteps``; an
        ``HttpRequest`` produces a node issuing that request; anything else a
        node yielding the value.
        """
        if isinstance(value, VaultToken):
            return AuthenticationSteps(Node(Supply(lambda: value)), _identity, "token")
        if isinstance(value, HttpRequest):
            return AuthenticationSteps.from_http_request(value)
        return Node(Supply(lambda: value))

    @staticmethod
    def from_value(value: Any) -> Node:
        return Node(Supply(lambda: value))

    @staticmethod
    def from_supplier(supplier: Callable[[], Any]) -> Node:
        return Node(Supply(supplier))

    @staticmethod
    def from_http_request(request: HttpRequest) -> Node:
        return Node(Supply(lambda: None)).request(request)

    def with_mechanism(self, mechanism: str) -> AuthenticationSteps:
        return dataclasses.replace(self, mechanism=mechanism)


def _identity(value: Any) -> Any:
    return value


def _login_token_from_response(response: Mapping[str, Any]) -> LoginToken:
    return LoginToken.from_auth(require_auth(response))


def _mechanism_from_path(path: str, uri_variables: tuple[str, ...]) -> str:
    resolved = path.format(*uri_variables) if uri_variables else path
    parts = [part for part in resolved.strip("/").split("/") if part]
    if len(parts) >= 2 and parts[0] == "auth":
        return parts[1]
    return resolved
