"""Managed sandbox runtime adapters.

A runtime adapter detects whether the process runs inside a managed runtime
that issues its own identity tokens, without importing that runtime's libraries
unless they are present. Adapters are registered in a static registry that the
resolver consults in registration order.
"""

from __future__ import annotations

import importlib.util
from abc import ABC, abstractmethod
from collections.abc import Iterable

from loguru import logger

from adcred.credential_file import JsonDecoder
from adcred.credentials import Credential, Token
from adcred.exceptions import RefreshFailedError
from adcred.transport import Transport


class RuntimeAdapter(ABC):
    """Capability provider for one managed runtime."""

    name = "runtime"

    @abstractmethod
    def is_available(self) -> bool:
        """Cheaply check whether the runtime's identity service is present."""
        ...

    @abstractmethod
    def create_credential(self, transport: Transport, decoder: JsonDecoder) -> Credential:
        """Build a credential bound to the given transport and decoder."""
        ...


APP_IDENTITY_MODULE = "google.appengine.api.app_identity"


class AppIdentityCredential(Credential):
    """Credential backed by the App Engine App Identity service."""

    kind = "app_engine"

    def with_scopes(self, scopes: Iterable[str]) -> AppIdentityCredential:
        return AppIdentityCredential(self.transport, self.decoder, scopes, self.settings)

    def _fetch_token(self) -> Token:
        from google.appengine.api import app_identity  # type: ignore[import-not-found]

        try:
            access_token, expires_at = app_identity.get_access_token(sorted(self.scopes))
        except app_identity.Error as e:
            raise RefreshFailedError(f"App Identity service failed: {e}") from e
        return Token(access_token=access_token, expires_at=float(expires_at), scopes=self.scopes)


class AppEngineAdapter(RuntimeAdapter):
    """Detects the App Engine standard bundled services."""

    name = "app_engine"

    def is_available(self) -> bool:
        try:
            return importlib.util.find_spec(APP_IDENTITY_MODULE) is not None
        except ImportError:
            return False

    def create_credential(self, transport: Transport, decoder: JsonDecoder) -> Credential:
        return AppIdentityCredential(transport, decoder)


_registry: list[RuntimeAdapter] = [AppEngineAdapter()]


def register_runtime_adapter(adapter: RuntimeAdapter) -> None:
    """Add an adapter to the registry, after the built-in ones."""
    logger.debug("Registering runtime adapter {}", adapter.name)
    _registry.append(adapter)


def registered_runtime_adapters() -> tuple[RuntimeAdapter, ...]:
    return tuple(_registry)
