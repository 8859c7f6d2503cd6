"""Shared test fixtures for adcred."""

from __future__ import annotations

import datetime
import json
import threading
import urllib.parse
from pathlib import Path
from typing import Any

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID
from google.auth import jwt

from adcred.compute import METADATA_FLAVOR_HEADER, TOKEN_PATH
from adcred.config import DEFAULT_TOKEN_URI, get_settings
from adcred.exceptions import TransportError
from adcred.runtimes import RuntimeAdapter
from adcred.transport import Response, Transport

METADATA_ROOT = "http://169.254.169.254"

_ADCRED_ENV_VARS = (
    "GCE_METADATA_HOST",
    "GCE_METADATA_TIMEOUT",
    "GOOGLE_API_USE_CLIENT_CERTIFICATE",
    "ADCRED_TOKEN_URI",
    "ADCRED_REQUEST_TIMEOUT",
    "ADCRED_CERT_PROVIDER_TIMEOUT",
    "ADCRED_LOG_LEVEL",
    "ADCRED_JSON_LOGS",
)


@pytest.fixture(autouse=True)
def _isolated_settings(monkeypatch: pytest.MonkeyPatch) -> Any:
    """Load settings from a clean environment for every test."""
    for name in _ADCRED_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def _json_response(payload: dict[str, Any], status: int = 200) -> Response:
    return Response(
        status=status,
        headers={"Content-Type": "application/json"},
        data=json.dumps(payload).encode("utf-8"),
    )


class FakeTokenServer(Transport):
    """Transport that answers OAuth2 token requests like the real token endpoint.

    Service accounts are recognized by the JWT issuer; users by the
    client id/secret pair plus refresh token.
    """

    def __init__(self, token_uri: str = DEFAULT_TOKEN_URI) -> None:
        self.token_uri = token_uri
        self.service_accounts: dict[str, str] = {}
        self.clients: dict[str, str] = {}
        self.refresh_tokens: dict[str, str] = {}
        self.requests: list[tuple[str, str, dict[str, str]]] = []
        self.assertions: list[dict[str, Any]] = []
        self.lock = threading.Lock()

    def add_service_account(self, email: str, access_token: str) -> None:
        self.service_accounts[email] = access_token

    def add_client(self, client_id: str, client_secret: str) -> None:
        self.clients[client_id] = client_secret

    def add_refresh_token(self, refresh_token: str, access_token: str) -> None:
        self.refresh_tokens[refresh_token] = access_token

    def request(
        self,
        method: str,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        body: bytes | None = None,
        timeout: float | None = None,
    ) -> Response:
        form = dict(urllib.parse.parse_qsl((body or b"").decode("utf-8")))
        with self.lock:
            self.requests.append((method, url, form))

        if method != "POST" or url != self.token_uri:
            return _json_response({"error": "not_found"}, 404)

        grant_type = form.get("grant_type")
        if grant_type == "urn:ietf:params:oauth:grant-type:jwt-bearer":
            claims = jwt.decode(form["assertion"], verify=False)
            self.assertions.append(claims)
            access_token = self.service_accounts.get(claims["iss"])
            if access_token is None:
                return _json_response({"error": "invalid_grant"}, 400)
        elif grant_type == "refresh_token":
            if self.clients.get(form.get("client_id", "")) != form.get("client_secret"):
                return _json_response({"error": "invalid_client"}, 401)
            access_token = self.refresh_tokens.get(form.get("refresh_token", ""))
            if access_token is None:
                return _json_response({"error": "invalid_grant"}, 400)
        else:
            return _json_response({"error": "unsupported_grant_type"}, 400)

        return _json_response(
            {"access_token": access_token, "expires_in": 3600, "token_type": "Bearer"}
        )

    @property
    def exchange_count(self) -> int:
        return len(self.requests)


class FakeMetadataServer(Transport):
    """Transport standing in for the Compute Engine metadata server."""

    def __init__(self, access_token: str, root: str = METADATA_ROOT) -> None:
        self.access_token = access_token
        self.root = root
        self.urls: list[str] = []

    def request(
        self,
        method: str,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        body: bytes | None = None,
        timeout: float | None = None,
    ) -> Response:
        self.urls.append(url)
        if (headers or {}).get(METADATA_FLAVOR_HEADER) != "Google":
            return Response(status=403)
        if url == self.root:
            return Response(status=200, headers={"Metadata-Flavor": "Google"})
        if url == self.root + TOKEN_PATH:
            return _json_response(
                {"access_token": self.access_token, "expires_in": 3599, "token_type": "Bearer"}
            )
        return Response(status=404)


class FailingTransport(Transport):
    """Transport whose every request fails, counting the attempts."""

    def __init__(self) -> None:
        self.request_count = 0

    def request(
        self,
        method: str,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        body: bytes | None = None,
        timeout: float | None = None,
    ) -> Response:
        self.request_count += 1
        raise TransportError("FailingTransport request failed.")


class CountingAdapter(RuntimeAdapter):
    """Runtime adapter that counts probes and optionally reports availability."""

    name = "counting"

    def __init__(self, available: bool = False, credential_factory: Any = None) -> None:
        self.available = available
        self.credential_factory = credential_factory
        self.probe_count = 0

    def is_available(self) -> bool:
        self.probe_count += 1
        return self.available

    def create_credential(self, transport: Transport, decoder: Any) -> Any:
        return self.credential_factory(transport, decoder)


@pytest.fixture
def token_server() -> FakeTokenServer:
    return FakeTokenServer()


@pytest.fixture
def failing_transport() -> FailingTransport:
    return FailingTransport()


@pytest.fixture(scope="session")
def rsa_private_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def private_key_pem(rsa_private_key: rsa.RSAPrivateKey) -> str:
    return rsa_private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")


@pytest.fixture(scope="session")
def cert_and_key_pem(rsa_private_key: rsa.RSAPrivateKey, private_key_pem: str) -> bytes:
    """Self-signed client certificate followed by its private key."""
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "adcred-test-client")])
    now = datetime.datetime.now(datetime.UTC)
    certificate = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(rsa_private_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=1))
        .sign(rsa_private_key, hashes.SHA256())
    )
    return certificate.public_bytes(serialization.Encoding.PEM) + private_key_pem.encode("ascii")


@pytest.fixture
def service_account_info(private_key_pem: str) -> dict[str, str]:
    return {
        "type": "service_account",
        "client_id": "36680232662-vrd7ji19qe3nelgchd0ah2csanun6bnr.apps.googleusercontent.com",
        "client_email": "36680232662-vrd7ji19qe3nelgchdcsanun6bnr@developer.gserviceaccount.com",
        "private_key": private_key_pem,
        "private_key_id": "key_id",
    }


@pytest.fixture
def user_info() -> dict[str, str]:
    return {
        "type": "authorized_user",
        "client_id": "ya29.1.AADtN_UtlxH8cruGAxrN2XQnZTVRvDyVWnYq4I6dws",
        "client_secret": "jakuaL9YyieakhECKL2SwZcu",
        "refresh_token": "1/Tl6awhpFjkMkSJoj1xsli0H2eL5YsMgU_NKPY2TyGWY",
    }


def write_json(path: Path, data: dict[str, Any]) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data, indent=2))
    return path
