"""Unit tests for credentials module."""

from __future__ import annotations

import json
import threading
import time
from typing import Any

import pytest
from conftest import FailingTransport, FakeTokenServer

from adcred.credential_file import ServiceAccountKey, UserRefreshCredential
from adcred.credentials import (
    Credential,
    ServiceAccountCredential,
    Token,
    UserCredential,
    parse_token_response,
)
from adcred.exceptions import RefreshFailedError
from adcred.transport import Response, Transport

SCOPES = ["scope1", "scope2"]
SA_ACCESS_TOKEN = "1/MkSJoj1xsli0AccessToken_NKPY2"


@pytest.fixture
def sa_key(service_account_info: dict[str, str]) -> ServiceAccountKey:
    return ServiceAccountKey(
        client_id=service_account_info["client_id"],
        client_email=service_account_info["client_email"],
        private_key=service_account_info["private_key"],
        private_key_id=service_account_info["private_key_id"],
    )


@pytest.fixture
def user_refresh(user_info: dict[str, str]) -> UserRefreshCredential:
    return UserRefreshCredential(
        client_id=user_info["client_id"],
        client_secret=user_info["client_secret"],
        refresh_token=user_info["refresh_token"],
    )


class TestToken:
    """Tests for Token dataclass."""

    def test_is_valid_with_valid_token(self) -> None:
        token = Token(access_token="t", expires_at=time.time() + 3600)
        assert token.is_valid() is True

    def test_is_valid_with_expired_token(self) -> None:
        token = Token(access_token="t", expires_at=time.time() - 100)
        assert token.is_valid() is False

    def test_is_valid_respects_buffer(self) -> None:
        """Token expiring within buffer period is invalid."""
        token = Token(access_token="t", expires_at=time.time() + 30)
        assert token.is_valid(buffer_seconds=60) is False
        assert token.is_valid(buffer_seconds=10) is True

    def test_no_expiry_is_valid(self) -> None:
        token = Token(access_token="t")
        assert token.is_valid() is True
        assert token.expires_in_seconds() is None

    def test_expires_in_seconds_with_expired_token(self) -> None:
        token = Token(access_token="t", expires_at=time.time() - 100)
        assert token.expires_in_seconds() == 0


class TestParseTokenResponse:
    """Tests for parse_token_response."""

    def test_success(self) -> None:
        response = Response(200, data=b'{"access_token": "abc", "expires_in": 3600}')
        token = parse_token_response(response, json.loads, frozenset({"s"}))
        assert token.access_token == "abc"
        assert token.scopes == frozenset({"s"})
        assert token.expires_at is not None
        assert 3590 <= token.expires_at - time.time() <= 3600

    def test_error_status(self) -> None:
        response = Response(400, data=b'{"error": "invalid_grant"}')
        with pytest.raises(RefreshFailedError) as exc_info:
            parse_token_response(response, json.loads)
        assert exc_info.value.status == 400
        assert "invalid_grant" in str(exc_info.value)

    @pytest.mark.parametrize(
        "body",
        [b"not json", b"{}", b'{"access_token": "a", "expires_in": "soon"}'],
        ids=["invalid-json", "no-token", "bad-expiry"],
    )
    def test_malformed_body(self, body: bytes) -> None:
        with pytest.raises(RefreshFailedError):
            parse_token_response(Response(200, data=body), json.loads)


class TestServiceAccountCredential:
    """Tests for ServiceAccountCredential."""

    def test_refresh(self, sa_key: ServiceAccountKey, token_server: FakeTokenServer) -> None:
        """Refresh sends a signed assertion for the account and stores the token."""
        token_server.add_service_account(sa_key.client_email, SA_ACCESS_TOKEN)
        credential = ServiceAccountCredential(sa_key, token_server, scopes=SCOPES)

        assert credential.refresh() is True
        assert credential.access_token == SA_ACCESS_TOKEN
        assert credential.valid is True

        claims = token_server.assertions[0]
        assert claims["iss"] == sa_key.client_email
        assert claims["aud"] == token_server.token_uri
        assert claims["scope"] == "scope1 scope2"

    def test_token_uri_from_key(
        self, sa_key: ServiceAccountKey, service_account_info: dict[str, str]
    ) -> None:
        key = ServiceAccountKey(
            client_id=sa_key.client_id,
            client_email=sa_key.client_email,
            private_key=sa_key.private_key,
            private_key_id=sa_key.private_key_id,
            token_uri="https://token.example.com/token",
        )
        server = FakeTokenServer(token_uri="https://token.example.com/token")
        server.add_service_account(key.client_email, "custom")
        credential = ServiceAccountCredential(key, server, scopes=SCOPES)

        assert credential.token_uri == "https://token.example.com/token"
        assert credential.refresh() is True
        assert credential.access_token == "custom"

    def test_scopes_required(self, sa_key: ServiceAccountKey, token_server: FakeTokenServer) -> None:
        credential = ServiceAccountCredential(sa_key, token_server)
        assert credential.scopes_required is True
        assert credential.with_scopes(SCOPES).scopes_required is False

    def test_with_scopes_is_independent(
        self, sa_key: ServiceAccountKey, token_server: FakeTokenServer
    ) -> None:
        """A scoped variant shares key material but not token state."""
        token_server.add_service_account(sa_key.client_email, SA_ACCESS_TOKEN)
        original = ServiceAccountCredential(sa_key, token_server)
        scoped = original.with_scopes(SCOPES)

        assert scoped is not original
        assert scoped.key is original.key
        assert scoped.transport is original.transport
        assert scoped.scopes == frozenset(SCOPES)

        assert scoped.refresh() is True
        assert scoped.access_token == SA_ACCESS_TOKEN
        assert original.token is None

    def test_unknown_account_fails(
        self, sa_key: ServiceAccountKey, token_server: FakeTokenServer
    ) -> None:
        credential = ServiceAccountCredential(sa_key, token_server, scopes=SCOPES)
        assert credential.refresh() is False
        assert isinstance(credential.last_refresh_error, RefreshFailedError)
        assert credential.last_refresh_error.status == 400

    def test_invalid_private_key(self, sa_key: ServiceAccountKey) -> None:
        key = ServiceAccountKey(
            client_id=sa_key.client_id,
            client_email=sa_key.client_email,
            private_key="not a key",
            private_key_id="key_id",
        )
        with pytest.raises(ValueError):
            ServiceAccountCredential(key, FakeTokenServer())


class TestUserCredential:
    """Tests for UserCredential."""

    def test_refresh(self, user_refresh: UserRefreshCredential, token_server: FakeTokenServer) -> None:
        token_server.add_client(user_refresh.client_id, user_refresh.client_secret)
        token_server.add_refresh_token(user_refresh.refresh_token, "user-token")
        credential = UserCredential(user_refresh, token_server)

        assert credential.refresh_token == user_refresh.refresh_token
        assert credential.refresh() is True
        assert credential.access_token == "user-token"

        _, _, form = token_server.requests[0]
        assert form["grant_type"] == "refresh_token"
        assert form["client_id"] == user_refresh.client_id

    def test_wrong_secret_fails(
        self, user_refresh: UserRefreshCredential, token_server: FakeTokenServer
    ) -> None:
        token_server.add_client(user_refresh.client_id, "other-secret")
        token_server.add_refresh_token(user_refresh.refresh_token, "user-token")
        credential = UserCredential(user_refresh, token_server)

        assert credential.refresh() is False
        assert credential.token is None

    def test_with_scopes_returns_self(
        self, user_refresh: UserRefreshCredential, token_server: FakeTokenServer
    ) -> None:
        credential = UserCredential(user_refresh, token_server)
        assert credential.with_scopes(SCOPES) is credential
        assert credential.scopes_required is False


class _SequenceCredential(Credential):
    """Credential returning queued tokens or errors, counting exchanges."""

    kind = "sequence"

    def __init__(self, outcomes: list[Any], delay: float = 0.0) -> None:
        super().__init__(FailingTransport())
        self.outcomes = outcomes
        self.delay = delay
        self.fetch_count = 0

    def _fetch_token(self) -> Token:
        self.fetch_count += 1
        time.sleep(self.delay)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _fresh(value: str) -> Token:
    return Token(access_token=value, expires_at=time.time() + 3600)


class TestTokenLifecycle:
    """Tests for Credential refresh and token reads."""

    def test_current_token_refreshes_when_missing(self) -> None:
        credential = _SequenceCredential([_fresh("first")])
        assert credential.current_access_token() == "first"
        assert credential.current_access_token() == "first"
        assert credential.fetch_count == 1

    def test_current_token_refreshes_when_expired(self) -> None:
        credential = _SequenceCredential([_fresh("second")])
        credential._token = Token(access_token="stale", expires_at=time.time() - 10)
        assert credential.expired is True
        assert credential.current_access_token() == "second"

    def test_failed_refresh_keeps_prior_token(self) -> None:
        """A transport failure leaves the existing token untouched."""
        from adcred.exceptions import TransportError

        credential = _SequenceCredential([_fresh("first"), TransportError("down")])
        assert credential.refresh() is True
        prior = credential.token

        assert credential.refresh() is False
        assert credential.token is prior
        assert isinstance(credential.last_refresh_error, RefreshFailedError)
        assert isinstance(credential.last_refresh_error.__cause__, TransportError)

    def test_current_token_never_returns_expired(self) -> None:
        credential = _SequenceCredential([RefreshFailedError("nope", status=400)])
        credential._token = Token(access_token="stale", expires_at=time.time() - 10)
        with pytest.raises(RefreshFailedError) as exc_info:
            credential.current_access_token()

        recorded = credential.last_refresh_error
        assert exc_info.value is not recorded
        assert exc_info.value.__cause__ is recorded
        assert exc_info.value.status == 400

    def test_refresh_over_failing_transport(
        self, sa_key: ServiceAccountKey, failing_transport: FailingTransport
    ) -> None:
        credential = ServiceAccountCredential(sa_key, failing_transport, scopes=SCOPES)
        assert credential.refresh() is False
        assert failing_transport.request_count == 1
        assert credential.token is None

    def test_concurrent_reads_issue_one_exchange(self) -> None:
        """Threads racing on an empty token share a single exchange."""
        credential = _SequenceCredential([_fresh("shared")], delay=0.1)
        results: list[str] = []
        barrier = threading.Barrier(8)

        def read() -> None:
            barrier.wait()
            results.append(credential.current_access_token())

        threads = [threading.Thread(target=read) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert results == ["shared"] * 8
        assert credential.fetch_count == 1

    def test_apply_sets_bearer_header(self) -> None:
        credential = _SequenceCredential([_fresh("abc")])
        headers: dict[str, str] = {"Accept": "application/json"}
        credential.apply(headers)
        assert headers == {"Accept": "application/json", "Authorization": "Bearer abc"}

    def test_transport_and_decoder_are_bound(self) -> None:
        transport: Transport = FailingTransport()

        class _Bound(Credential):
            def _fetch_token(self) -> Token:
                raise AssertionError("not called")

        def decoder(text: str) -> Any:
            return json.loads(text)

        credential = _Bound(transport, decoder)
        assert credential.transport is transport
        assert credential.decoder is decoder
