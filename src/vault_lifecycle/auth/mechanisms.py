"""Authentication mechanisms, each described as an ``AuthenticationSteps`` chain.

Pattern: Tagged Variants + Registry
------------------------------------
Every supported Vault auth method is a small frozen dataclass holding its
options and knowing how to build its login chain.  Nothing here performs I/O:
``authentication_steps()`` returns a description that either interpreter can
run, and ``executor()`` / ``operator()`` bind it to a transport.

The ``MECHANISMS`` registry maps the configuration name (``authentication.method``
in ``settings.yaml``) to the variant, so a new mechanism is one class plus one
registry entry.

Supported methods:

  - ``token``      static token, optionally augmented via ``lookup-self``
  - ``userpass``   username/password (also LDAP/Okta mounts via ``path``)
  - ``approle``    push mode (role_id/secret_id) or pull mode (fetch both)
  - ``jwt``        JWT/OIDC role login with a lazily supplied JWT
  - ``kubernetes`` service-account JWT read from disk at login time
  - ``cert``       TLS client certificate (certificate configured on the transport)
  - ``aws-iam``    SigV4-signed STS GetCallerIdentity, signed at login time
  - ``unwrap``     response-wrapped login token
"""

from __future__ import annotations

import base64
import dataclasses
import json
import logging
import pathlib
from collections.abc import Callable, Mapping
from typing import Any, ClassVar

from hvac import aws_utils

from vault_lifecycle.auth.executor import AuthenticationStepsExecutor
from vault_lifecycle.auth.operator import AuthenticationStepsOperator
from vault_lifecycle.auth.steps import AuthenticationSteps, HttpRequest
from vault_lifecycle.auth.token import LoginToken, VaultToken, require_auth, require_data
from vault_lifecycle.client.transport import AsyncVaultTransport, VaultTransport, vault_token_header
from vault_lifecycle.errors import MalformedResponseError

logger = logging.getLogger(__name__)

DEFAULT_KUBERNETES_JWT_PATH = "/var/run/secrets/kubernetes.io/serviceaccount/token"


class AuthenticationMechanism:
    """Common behaviour of every mechanism variant."""

    name: ClassVar[str]

    def authentication_steps(self) -> AuthenticationSteps:
        raise NotImplementedError

    def executor(self, transport: VaultTransport) -> AuthenticationStepsExecutor:
        return AuthenticationStepsExecutor(self.authentication_steps(), transport)

    def operator(self, transport: AsyncVaultTransport) -> AuthenticationStepsOperator:
        return AuthenticationStepsOperator(self.authentication_steps(), transport)


@dataclasses.dataclass(frozen=True)
class TokenAuthentication(AuthenticationMechanism):
    """A pre-issued token.  With ``self_lookup`` the token's TTL is looked up."""

    name: ClassVar[str] = "token"

    token: str = dataclasses.field(repr=False)
    self_lookup: bool = False

    def authentication_steps(self) -> AuthenticationSteps:
        token = VaultToken(self.token)
        if not self.self_lookup:
            return AuthenticationSteps.just(token)
        request = HttpRequest.get("auth/token/lookup-self").with_headers(vault_token_header(token))
        return (
            AuthenticationSteps.from_http_request(request)
            .login(lambda response: LoginToken.from_lookup(token, require_data(response)), mechanism=self.name)
        )


@dataclasses.dataclass(frozen=True)
class UsernamePasswordAuthentication(AuthenticationMechanism):
    """Username/password login against a ``userpass``-style mount."""

    name: ClassVar[str] = "userpass"

    username: str
    password: str = dataclasses.field(repr=False)
    path: str = "userpass"
    totp: str | None = dataclasses.field(default=None, repr=False)

    def authentication_steps(self) -> AuthenticationSteps:
        def body() -> dict[str, Any]:
            payload: dict[str, Any] = {"password": self.password}
            if self.totp:
                payload["totp"] = self.totp
            return payload

        return (
            AuthenticationSteps.from_supplier(body)
            .login("auth/{}/login/{}", self.path, self.username, mechanism=self.path)
        )


@dataclasses.dataclass(frozen=True)
class AppRoleAuthentication(AuthenticationMechanism):
    """AppRole login.

    Push mode: ``role_id`` (and optionally ``secret_id``) are configured.
    Pull mode: ``role_name`` plus an ``initial_token`` allowed to read the
    role-id and generate a secret-id; both are fetched concurrently under the
    asynchronous interpreter.
    """

    name: ClassVar[str] = "approle"

    role_id: str | None = None
    secret_id: str | None = dataclasses.field(default=None, repr=False)
    role_name: str | None = None
    initial_token: str | None = dataclasses.field(default=None, repr=False)
    path: str = "approle"

    def __post_init__(self) -> None:
        if not self.role_id and not (self.role_name and self.initial_token):
            raise ValueError("AppRole requires a role_id, or a role_name together with an initial_token")

    def authentication_steps(self) -> AuthenticationSteps:
        if self.role_id:
            return (
                AuthenticationSteps.from_supplier(self._push_body)
                .login("auth/{}/login", self.path, mechanism=self.name)
            )

        headers = vault_token_header(self.initial_token)
        role_id = AuthenticationSteps.from_http_request(
            HttpRequest.get("auth/{}/role/{}/role-id", self.path, self.role_name).with_headers(headers)
        ).map(lambda response: _required_field(require_data(response), "role_id"))
        secret_id = AuthenticationSteps.from_http_request(
            HttpRequest.post("auth/{}/role/{}/secret-id", self.path, self.role_name)
            .with_headers(headers)
            .with_body({})
        ).map(lambda response: _required_field(require_data(response), "secret_id"))

        return (
            role_id.zip_with(secret_id)
            .map(lambda pair: {"role_id": pair[0], "secret_id": pair[1]})
            .login("auth/{}/login", self.path, mechanism=self.name)
        )

    def _push_body(self) -> dict[str, Any]:
        body: dict[str, Any] = {"role_id": self.role_id}
        if self.secret_id:
            body["secret_id"] = self.secret_id
        return body


@dataclasses.dataclass(frozen=True)
class JwtAuthentication(AuthenticationMechanism):
    """JWT/OIDC role login.  ``jwt`` may be a string or a zero-argument callable."""

    name: ClassVar[str] = "jwt"

    role: str
    jwt: str | Callable[[], str] = dataclasses.field(repr=False)
    path: str = "jwt"

    def authentication_steps(self) -> AuthenticationSteps:
        return (
            AuthenticationSteps.from_supplier(lambda: {"role": self.role, "jwt": self._resolve_jwt()})
            .login("auth/{}/login", self.path, mechanism=self.name)
        )

    def _resolve_jwt(self) -> str:
        return self.jwt() if callable(self.jwt) else self.jwt


@dataclasses.dataclass(frozen=True)
class KubernetesAuthentication(AuthenticationMechanism):
    """Kubernetes service-account login; the JWT file is read at login time."""

    name: ClassVar[str] = "kubernetes"

    role: str
    jwt_path: str = DEFAULT_KUBERNETES_JWT_PATH
    path: str = "kubernetes"

    def authentication_steps(self) -> AuthenticationSteps:
        return (
            AuthenticationSteps.from_supplier(self._read_jwt)
            .map(lambda jwt: {"role": self.role, "jwt": jwt})
            .login("auth/{}/login", self.path, mechanism=self.name)
        )

    def _read_jwt(self) -> str:
        return pathlib.Path(self.jwt_path).read_text().strip()


@dataclasses.dataclass(frozen=True)
class ClientCertificateAuthentication(AuthenticationMechanism):
    """TLS certificate login.  The certificate itself is configured on the transport."""

    name: ClassVar[str] = "cert"

    role: str | None = None
    path: str = "cert"

    def authentication_steps(self) -> AuthenticationSteps:
        body = {"name": self.role} if self.role else {}
        return (
            AuthenticationSteps.from_value(body)
            .login("auth/{}/login", self.path, mechanism=self.name)
        )


@dataclasses.dataclass(frozen=True)
class AwsIamAuthentication(AuthenticationMechanism):
    """AWS IAM login using a signed ``sts:GetCallerIdentity`` request.

    Signing happens inside the supplier, so every login carries a fresh
    ``X-Amz-Date`` and signature.
    """

    name: ClassVar[str] = "aws-iam"

    access_key: str
    secret_key: str = dataclasses.field(repr=False)
    session_token: str | None = dataclasses.field(default=None, repr=False)
    region: str = "us-east-1"
    role: str | None = None
    server_id: str | None = None
    path: str = "aws"

    def authentication_steps(self) -> AuthenticationSteps:
        return (
            AuthenticationSteps.from_supplier(self.create_request_body)
            .login("auth/{}/login", self.path, mechanism=self.name)
        )

    def create_request_body(self) -> dict[str, str]:
        request = aws_utils.generate_sigv4_auth_request(header_value=self.server_id)
        aws_utils.SigV4Auth(self.access_key, self.secret_key, self.session_token, self.region).add_auth(request)

        headers = json.dumps({key: [value] for key, value in request.headers.items()})
        body = request.body if isinstance(request.body, str) else (request.body or b"").decode("utf-8")
        login = {
            "iam_http_request_method": request.method,
            "iam_request_url": _b64(request.url),
            "iam_request_headers": _b64(headers),
            "iam_request_body": _b64(body),
        }
        if self.role:
            login["role"] = self.role
        return login


@dataclasses.dataclass(frozen=True)
class UnwrapAuthentication(AuthenticationMechanism):
    """Login by unwrapping a response-wrapped login response."""

    name: ClassVar[str] = "unwrap"

    wrapping_token: str = dataclasses.field(repr=False)

    def authentication_steps(self) -> AuthenticationSteps:
        request = (
            HttpRequest.post("sys/wrapping/unwrap")
            .with_headers(vault_token_header(self.wrapping_token))
            .with_body({})
        )
        return (
            AuthenticationSteps.from_http_request(request)
            .login(lambda response: LoginToken.from_auth(require_auth(response)), mechanism=self.name)
        )


Authentication = (
    TokenAuthentication
    | UsernamePasswordAuthentication
    | AppRoleAuthentication
    | JwtAuthentication
    | KubernetesAuthentication
    | ClientCertificateAuthentication
    | AwsIamAuthentication
    | UnwrapAuthentication
)

MECHANISMS: dict[str, type[AuthenticationMechanism]] = {
    mechanism.name: mechanism
    for mechanism in (
        TokenAuthentication,
        UsernamePasswordAuthentication,
        AppRoleAuthentication,
        JwtAuthentication,
        KubernetesAuthentication,
        ClientCertificateAuthentication,
        AwsIamAuthentication,
        UnwrapAuthentication,
    )
}


def create_authentication(method: str, **options: Any) -> AuthenticationMechanism:
    """Instantiate the mechanism registered under *method* with *options*."""
    mechanism = MECHANISMS.get(method)
    if mechanism is None:
        raise ValueError(f"Unsupported auth method: {method} (known: {sorted(MECHANISMS)})")
    return mechanism(**options)


# -- private helpers -----------------------------------------------------------


def _b64(value: str) -> str:
    return base64.b64encode(value.encode("utf-8")).decode("utf-8")


def _required_field(data: Mapping[str, Any], key: str) -> Any:
    value = data.get(key)
    if not value:
        raise MalformedResponseError(f"Response data does not contain {key}")
    return value
