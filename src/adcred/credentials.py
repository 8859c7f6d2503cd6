"""Access token lifecycle for resolved credentials.

Every credential owns a Token and a refresh lock. Reading a valid token never
blocks; an expired or missing token is refreshed synchronously before it is
returned, and concurrent refreshes of one credential are serialized.

Concrete credentials in this module are backed by credential files:
- ServiceAccountCredential: signed JWT assertion exchange
- UserCredential: refresh token grant
"""

from __future__ import annotations

import json
import threading
import time
import urllib.parse
from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from google.auth import crypt, jwt

from adcred.config import Settings, get_settings
from adcred.credential_file import JsonDecoder, ServiceAccountKey, UserRefreshCredential
from adcred.exceptions import RefreshFailedError, TransportError, replay
from adcred.logging import audit_token_refresh_failed, audit_token_refreshed
from adcred.transport import Response, Transport

JWT_BEARER_GRANT_TYPE = "urn:ietf:params:oauth:grant-type:jwt-bearer"
REFRESH_GRANT_TYPE = "refresh_token"

# Lifetime of a self-signed assertion (seconds)
ASSERTION_LIFETIME = 3600

# Tokens are treated as expired this many seconds early
EXPIRY_BUFFER_SECONDS = 60


@dataclass
class Token:
    """Access token state owned by a single credential.

    Attributes:
        access_token: The OAuth2 access token for API calls.
        expires_at: Unix timestamp when the token expires, or None if unknown.
        scopes: Scopes the token was requested for.
    """

    access_token: str
    expires_at: float | None = None
    scopes: frozenset[str] = field(default_factory=frozenset)

    def is_valid(self, buffer_seconds: int = EXPIRY_BUFFER_SECONDS) -> bool:
        """Check if token is still valid with a safety buffer."""
        if self.expires_at is None:
            return True
        return time.time() < self.expires_at - buffer_seconds

    def expires_in_seconds(self) -> int | None:
        """Return seconds until token expires."""
        if self.expires_at is None:
            return None
        return max(0, int(self.expires_at - time.time()))


def parse_token_response(
    response: Response, decoder: JsonDecoder, scopes: frozenset[str] = frozenset()
) -> Token:
    """Build a Token from an OAuth2 token endpoint (or metadata server) response.

    Raises:
        RefreshFailedError: On a non-success status or a body without access_token.
    """
    if not response.ok:
        body = response.data.decode("utf-8", errors="replace")[:500]
        raise RefreshFailedError(
            f"Token endpoint returned {response.status}: {body}", status=response.status
        )

    try:
        payload = decoder(response.data.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        raise RefreshFailedError(f"Token response is not valid JSON: {e}") from e

    if not isinstance(payload, dict) or not payload.get("access_token"):
        raise RefreshFailedError("Token response has no access_token")

    expires_at = None
    expires_in = payload.get("expires_in")
    if expires_in is not None:
        try:
            expires_at = time.time() + float(expires_in)
        except (TypeError, ValueError) as e:
            raise RefreshFailedError(f"Invalid expires_in in token response: {expires_in!r}") from e

    return Token(access_token=payload["access_token"], expires_at=expires_at, scopes=scopes)


class Credential(ABC):
    """Base class for credentials that mint bearer access tokens.

    Subclasses implement ``_fetch_token``; this class owns caching, expiry and
    the per-instance refresh lock.
    """

    kind = "credential"

    def __init__(
        self,
        transport: Transport,
        decoder: JsonDecoder = json.loads,
        scopes: Iterable[str] = (),
        settings: Settings | None = None,
    ) -> None:
        self._transport = transport
        self._settings = settings or get_settings()
        self._decoder = decoder
        self._scopes = frozenset(scopes)
        self._token: Token | None = None
        self._refresh_lock = threading.Lock()
        self.last_refresh_error: RefreshFailedError | None = None

    @property
    def transport(self) -> Transport:
        return self._transport

    @property
    def decoder(self) -> JsonDecoder:
        return self._decoder

    @property
    def scopes(self) -> frozenset[str]:
        return self._scopes

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def token(self) -> Token | None:
        """The current token, which may be expired."""
        return self._token

    @property
    def access_token(self) -> str | None:
        token = self._token
        return token.access_token if token else None

    @property
    def valid(self) -> bool:
        token = self._token
        return token is not None and token.is_valid()

    @property
    def expired(self) -> bool:
        token = self._token
        return token is not None and not token.is_valid()

    @property
    def scopes_required(self) -> bool:
        """Whether ``with_scopes`` must be called before the credential can refresh."""
        return False

    def with_scopes(self, scopes: Iterable[str]) -> Credential:
        """Return a credential bound to the given scopes.

        Credentials whose tokens are not scope-bound return themselves.
        """
        return self

    @abstractmethod
    def _fetch_token(self) -> Token:
        """Exchange credential material for a new token.

        Raises:
            TransportError: If the exchange could not be sent.
            RefreshFailedError: If the exchange was answered without a token.
        """
        ...

    def refresh(self) -> bool:
        """Obtain a new access token.

        Returns:
            True if a new token was stored. False if the exchange failed; the
            previous token is kept and the error is available as
            ``last_refresh_error``.
        """
        with self._refresh_lock:
            return self._refresh_locked()

    def _refresh_locked(self) -> bool:
        try:
            token = self._fetch_token()
        except RefreshFailedError as e:
            return self._record_failure(e)
        except TransportError as e:
            error = RefreshFailedError(f"Token exchange failed: {e}")
            error.__cause__ = e
            return self._record_failure(error)

        self._token = token
        self.last_refresh_error = None
        audit_token_refreshed(self.kind, token.expires_in_seconds())
        return True

    def _record_failure(self, error: RefreshFailedError) -> bool:
        self.last_refresh_error = error
        audit_token_refresh_failed(self.kind, str(error))
        return False

    def current_access_token(self) -> str:
        """Return a valid access token, refreshing first if needed.

        Raises:
            RefreshFailedError: If no valid token exists and refresh failed.
        """
        token = self._token
        if token is not None and token.is_valid():
            return token.access_token

        with self._refresh_lock:
            # Another thread may have refreshed while we waited
            token = self._token
            if token is not None and token.is_valid():
                return token.access_token
            if not self._refresh_locked():
                assert self.last_refresh_error is not None
                raise replay(self.last_refresh_error)
            assert self._token is not None
            return self._token.access_token

    def apply(self, headers: dict[str, str]) -> None:
        """Set the Authorization header to a valid bearer token."""
        headers["Authorization"] = f"Bearer {self.current_access_token()}"

    def _post_form(self, url: str, fields: dict[str, str]) -> Response:
        body = urllib.parse.urlencode(fields).encode("utf-8")
        return self._transport.request(
            "POST",
            url,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            body=body,
            timeout=self._settings.request_timeout,
        )

    def __repr__(self) -> str:
        return f"<{type(self).__name__} scopes={sorted(self._scopes)}>"


class ServiceAccountCredential(Credential):
    """Credential for a service account key, refreshed with a signed JWT assertion."""

    kind = "service_account"

    def __init__(
        self,
        key: ServiceAccountKey,
        transport: Transport,
        decoder: JsonDecoder = json.loads,
        scopes: Iterable[str] = (),
        token_uri: str | None = None,
        signer: crypt.Signer | None = None,
        settings: Settings | None = None,
    ) -> None:
        super().__init__(transport, decoder, scopes, settings)
        self._key = key
        self._token_uri = token_uri or key.token_uri or self._settings.token_uri
        self._signer = signer or crypt.RSASigner.from_service_account_info(
            {"private_key": key.private_key, "private_key_id": key.private_key_id}
        )

    @property
    def service_account_email(self) -> str:
        return self._key.client_email

    @property
    def key(self) -> ServiceAccountKey:
        return self._key

    @property
    def token_uri(self) -> str:
        return self._token_uri

    @property
    def scopes_required(self) -> bool:
        return not self._scopes

    def with_scopes(self, scopes: Iterable[str]) -> ServiceAccountCredential:
        """Return an independent credential sharing key material, not token state."""
        return ServiceAccountCredential(
            self._key,
            self._transport,
            self._decoder,
            scopes=scopes,
            token_uri=self._token_uri,
            signer=self._signer,
            settings=self._settings,
        )

    def _make_assertion(self) -> bytes:
        now = int(time.time())
        payload: dict[str, Any] = {
            "iss": self._key.client_email,
            "scope": " ".join(sorted(self._scopes)),
            "aud": self._token_uri,
            "iat": now,
            "exp": now + ASSERTION_LIFETIME,
        }
        return jwt.encode(self._signer, payload)

    def _fetch_token(self) -> Token:
        response = self._post_form(
            self._token_uri,
            {
                "grant_type": JWT_BEARER_GRANT_TYPE,
                "assertion": self._make_assertion().decode("ascii"),
            },
        )
        return parse_token_response(response, self._decoder, self._scopes)

    def __repr__(self) -> str:
        return (
            f"<ServiceAccountCredential email={self._key.client_email!r} "
            f"scopes={sorted(self._scopes)}>"
        )


class UserCredential(Credential):
    """Credential for an end user, refreshed with a long-lived refresh token."""

    kind = "authorized_user"

    def __init__(
        self,
        info: UserRefreshCredential,
        transport: Transport,
        decoder: JsonDecoder = json.loads,
        token_uri: str | None = None,
        settings: Settings | None = None,
    ) -> None:
        super().__init__(transport, decoder, settings=settings)
        self._info = info
        self._token_uri = token_uri or self._settings.token_uri

    @property
    def client_id(self) -> str:
        return self._info.client_id

    @property
    def refresh_token(self) -> str:
        return self._info.refresh_token

    @property
    def quota_project_id(self) -> str | None:
        return self._info.quota_project_id

    @property
    def token_uri(self) -> str:
        return self._token_uri

    def _fetch_token(self) -> Token:
        response = self._post_form(
            self._token_uri,
            {
                "grant_type": REFRESH_GRANT_TYPE,
                "client_id": self._info.client_id,
                "client_secret": self._info.client_secret,
                "refresh_token": self._info.refresh_token,
            },
        )
        return parse_token_response(response, self._decoder)

    def __repr__(self) -> str:
        return f"<UserCredential client_id={self._info.client_id!r}>"
