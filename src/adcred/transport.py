"""Transport layer for token exchanges and authorized API calls.

Defines the Transport protocol and implementations:
- HttpxTransport: Production transport over httpx, optionally presenting a client certificate
- AuthorizedTransport: Wraps another transport and adds the bearer header
"""

from __future__ import annotations

import ssl
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import certifi
import httpx
from loguru import logger

from adcred.config import Settings, get_settings
from adcred.exceptions import TransportError
from adcred.mtls import DefaultMtlsProvider, MtlsConfig, MtlsProvider, select_trust

if TYPE_CHECKING:
    from adcred.credentials import Credential

DEFAULT_TIMEOUT = 30.0

# Statuses after which AuthorizedTransport refreshes the credential and retries once
REFRESH_STATUS_CODES = frozenset({401, 403})


@dataclass(frozen=True)
class Response:
    """Status, headers and body of an HTTP response.

    Attributes:
        status: HTTP status code
        headers: Response headers (lookups through ``header`` are case-insensitive)
        data: Raw response body
    """

    status: int
    headers: dict[str, str] = field(default_factory=dict)
    data: bytes = b""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def header(self, name: str) -> str | None:
        """Return a header value, ignoring case."""
        wanted = name.lower()
        for key, value in self.headers.items():
            if key.lower() == wanted:
                return value
        return None


class Transport(ABC):
    """Abstract base class for HTTP transports.

    Implementations return a Response for every HTTP status and raise
    TransportError when no response could be obtained (connection failure,
    timeout). Implementations must bound every request by a timeout.
    """

    @abstractmethod
    def request(
        self,
        method: str,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        body: bytes | None = None,
        timeout: float | None = None,
    ) -> Response:
        """Send a request and return the response.

        Args:
            method: HTTP method
            url: Absolute URL
            headers: Request headers
            body: Request body
            timeout: Per-request timeout in seconds, or None for the transport default

        Returns:
            Response with status, headers and body
        """
        ...

    def close(self) -> None:
        """Close any open connections."""
        return None

    def __enter__(self) -> Transport:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


def create_ssl_context(mtls_config: MtlsConfig | None = None) -> ssl.SSLContext:
    """Create an SSL context trusting certifi's bundle.

    When the config asks for a client certificate, the keystore is loaded into
    the context so the certificate is presented during the handshake.
    """
    context = ssl.create_default_context(cafile=certifi.where())
    if mtls_config is not None and mtls_config.use_client_certificate:
        assert mtls_config.keystore is not None  # Guaranteed by MtlsConfig
        mtls_config.keystore.load_into(context, mtls_config.keystore_password)
    return context


class HttpxTransport(Transport):
    """Production transport backed by an httpx client."""

    def __init__(
        self,
        client: httpx.Client | None = None,
        mtls_config: MtlsConfig | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        """Initialize the transport.

        Args:
            client: Preconfigured httpx client. When given, mtls_config only
                affects ``is_mtls`` and the client's own TLS settings apply.
            mtls_config: Result of ``select_trust``; None means no client certificate
            timeout: Default request timeout in seconds
        """
        self._mtls = bool(mtls_config and mtls_config.use_client_certificate)
        if client is None:
            client = httpx.Client(
                verify=create_ssl_context(mtls_config),
                timeout=timeout,
            )
        self._client = client

    @property
    def is_mtls(self) -> bool:
        """Whether this transport presents a client certificate."""
        return self._mtls

    def request(
        self,
        method: str,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        body: bytes | None = None,
        timeout: float | None = None,
    ) -> Response:
        try:
            response = self._client.request(
                method,
                url,
                headers=headers,
                content=body,
                timeout=timeout if timeout is not None else httpx.USE_CLIENT_DEFAULT,
            )
        except httpx.HTTPError as e:
            raise TransportError(f"{method} {url} failed: {e}") from e

        return Response(
            status=response.status_code,
            headers=dict(response.headers.items()),
            data=response.content,
        )

    def close(self) -> None:
        self._client.close()


class AuthorizedTransport(Transport):
    """Transport that authorizes every request with a credential.

    A 401 or 403 response triggers one refresh and one retry, matching how
    access tokens revoked before their recorded expiry are recovered.
    """

    def __init__(self, credential: Credential, transport: Transport | None = None) -> None:
        self._credential = credential
        self._transport = transport or credential.transport

    @property
    def credential(self) -> Credential:
        return self._credential

    def request(
        self,
        method: str,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        body: bytes | None = None,
        timeout: float | None = None,
    ) -> Response:
        request_headers = dict(headers or {})
        self._credential.apply(request_headers)
        response = self._transport.request(
            method, url, headers=request_headers, body=body, timeout=timeout
        )

        if response.status in REFRESH_STATUS_CODES:
            logger.debug("Refreshing credential after {} from {}", response.status, url)
            if self._credential.refresh():
                self._credential.apply(request_headers)
                response = self._transport.request(
                    method, url, headers=request_headers, body=body, timeout=timeout
                )
        return response

    def close(self) -> None:
        self._transport.close()


def build_transport(
    provider: MtlsProvider | None = None,
    settings: Settings | None = None,
) -> HttpxTransport:
    """Build the default transport, presenting a client certificate when selected.

    Args:
        provider: Trust configuration provider; defaults to DefaultMtlsProvider
        settings: Library settings; defaults to get_settings()

    Raises:
        TrustMaterialUnavailableError: If an explicit keystore cannot be loaded.
    """
    settings = settings or get_settings()
    provider = provider or DefaultMtlsProvider(settings)
    return HttpxTransport(mtls_config=select_trust(provider), timeout=settings.request_timeout)
