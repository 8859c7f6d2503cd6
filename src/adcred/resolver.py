"""Application Default Credentials discovery.

The resolver searches, in order:

1. The file named by GOOGLE_APPLICATION_CREDENTIALS (authoritative when set)
2. The gcloud well-known file
3. A registered managed runtime adapter
4. The Compute Engine metadata server

The first outcome, success or failure, is cached for the life of the resolver
and replayed to every later caller without probing again. Share one resolver
per process by passing it explicitly.
"""

from __future__ import annotations

import json
import os
import sys
import threading
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from loguru import logger

from adcred.compute import ComputeCredential, is_on_compute
from adcred.config import Settings, get_settings
from adcred.credential_file import (
    CredentialInfo,
    JsonDecoder,
    ServiceAccountKey,
    UserRefreshCredential,
    read_credential_file,
)
from adcred.credentials import Credential, ServiceAccountCredential, UserCredential
from adcred.exceptions import (
    CredentialNotFoundError,
    DefaultCredentialsError,
    ExplicitPointerFileMissingError,
    MalformedCredentialFileError,
    replay,
)
from adcred.logging import audit_credential_not_found, audit_credential_resolved
from adcred.runtimes import RuntimeAdapter, registered_runtime_adapters
from adcred.transport import Transport

CREDENTIAL_ENV_VAR = "GOOGLE_APPLICATION_CREDENTIALS"
CLOUDSDK_CONFIG_ENV_VAR = "CLOUDSDK_CONFIG"
WINDOWS_APPDATA_ENV_VAR = "APPDATA"
CLOUDSDK_CONFIG_DIRECTORY = "gcloud"
WELL_KNOWN_CREDENTIALS_FILE = "application_default_credentials.json"

# Client id used by `gcloud auth application-default login`
CLOUD_SDK_CLIENT_ID = "764086051850-6qr4p6gpi6hn506pt8ejuq83di341hur.apps.googleusercontent.com"


class CredentialSource(Enum):
    """Discovery step that produced a credential (diagnostics only)."""

    ENV_FILE = "env_file"
    WELL_KNOWN_FILE = "well_known_file"
    SANDBOX_RUNTIME = "sandbox_runtime"
    COMPUTE_METADATA = "compute_metadata"


@dataclass(frozen=True)
class ResolutionResult:
    """Cached outcome of a resolution attempt: a credential or an error."""

    credential: Credential | None = None
    source: CredentialSource | None = None
    error: DefaultCredentialsError | None = None

    def unwrap(self) -> Credential:
        if self.error is not None:
            raise replay(self.error)
        assert self.credential is not None
        return self.credential


def credential_from_info(
    info: CredentialInfo,
    transport: Transport,
    decoder: JsonDecoder = json.loads,
    path: str | None = None,
    settings: Settings | None = None,
) -> Credential:
    """Build the credential matching a parsed credential file."""
    if isinstance(info, ServiceAccountKey):
        try:
            return ServiceAccountCredential(info, transport, decoder, settings=settings)
        except (ValueError, TypeError) as e:
            raise MalformedCredentialFileError(
                f"Service account private key could not be loaded: {e}", path
            ) from e
    if isinstance(info, UserRefreshCredential):
        return UserCredential(info, transport, decoder, settings=settings)
    raise TypeError(f"Unsupported credential info: {type(info).__name__}")


def load_credentials_from_file(
    path: str | Path,
    transport: Transport,
    decoder: JsonDecoder = json.loads,
    settings: Settings | None = None,
) -> Credential:
    """Load a credential from a file, without any discovery.

    Raises:
        MalformedCredentialFileError: If the file cannot be read or parsed.
    """
    info = read_credential_file(path, decoder)
    return credential_from_info(info, transport, decoder, str(path), settings)


class CredentialResolver:
    """Finds the Application Default Credential for this process.

    Environment, platform, home directory and runtime adapters are injected for
    testability and default to the running process.

    Args:
        environ: Environment variables; defaults to os.environ.
        platform: Platform name as in sys.platform; "win*" selects Windows paths.
        home: Home directory; defaults to Path.home().
        runtime_adapters: Managed runtime adapters; defaults to the registry.
        settings: Library settings; defaults to get_settings().

    Example:
        resolver = CredentialResolver()
        credential = resolver.resolve(build_transport())
        token = credential.current_access_token()
    """

    def __init__(
        self,
        environ: Mapping[str, str] | None = None,
        platform: str | None = None,
        home: str | Path | None = None,
        runtime_adapters: Sequence[RuntimeAdapter] | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._environ = os.environ if environ is None else environ
        self._platform = platform or sys.platform
        self._home = Path(home) if home is not None else None
        self._runtime_adapters = (
            tuple(runtime_adapters)
            if runtime_adapters is not None
            else registered_runtime_adapters()
        )
        self._settings = settings or get_settings()
        self._lock = threading.Lock()
        self._result: ResolutionResult | None = None

    @property
    def result(self) -> ResolutionResult | None:
        """The cached outcome, or None before the first resolution."""
        return self._result

    @property
    def source(self) -> CredentialSource | None:
        result = self._result
        return result.source if result else None

    def resolve(self, transport: Transport, decoder: JsonDecoder = json.loads) -> Credential:
        """Return the Application Default Credential.

        The first call runs discovery with the given transport and decoder; later
        calls return the same credential (or raise the same error) without probing.

        Raises:
            ExplicitPointerFileMissingError: GOOGLE_APPLICATION_CREDENTIALS names a
                missing file.
            MalformedCredentialFileError: A credential file was found but is invalid.
            CredentialNotFoundError: No discovery step produced a credential.
        """
        result = self._result
        if result is None:
            with self._lock:
                if self._result is None:
                    self._result = self._attempt(transport, decoder)
                result = self._result
        return result.unwrap()

    def well_known_file(self) -> Path | None:
        """Path of the gcloud well-known credentials file for this platform."""
        config_dir = self._environ.get(CLOUDSDK_CONFIG_ENV_VAR)
        if config_dir:
            return Path(config_dir) / WELL_KNOWN_CREDENTIALS_FILE

        if self._is_windows():
            appdata = self._environ.get(WINDOWS_APPDATA_ENV_VAR)
            if not appdata:
                return None
            return Path(appdata) / CLOUDSDK_CONFIG_DIRECTORY / WELL_KNOWN_CREDENTIALS_FILE

        home = self._home or Path.home()
        return home / ".config" / CLOUDSDK_CONFIG_DIRECTORY / WELL_KNOWN_CREDENTIALS_FILE

    def _is_windows(self) -> bool:
        return self._platform.lower().startswith("win")

    def _attempt(self, transport: Transport, decoder: JsonDecoder) -> ResolutionResult:
        try:
            credential, source = self._discover(transport, decoder)
        except DefaultCredentialsError as e:
            audit_credential_not_found(str(e))
            return ResolutionResult(error=e)

        audit_credential_resolved(source.value, credential.kind)
        return ResolutionResult(credential=credential, source=source)

    def _discover(
        self, transport: Transport, decoder: JsonDecoder
    ) -> tuple[Credential, CredentialSource]:
        steps = (
            (CredentialSource.ENV_FILE, self._from_env_file),
            (CredentialSource.WELL_KNOWN_FILE, self._from_well_known_file),
            (CredentialSource.SANDBOX_RUNTIME, self._from_runtime),
            (CredentialSource.COMPUTE_METADATA, self._from_compute),
        )
        for source, step in steps:
            credential = step(transport, decoder)
            if credential is not None:
                return credential, source
            logger.debug("Credential source {} not applicable", source.value)
        raise CredentialNotFoundError()

    def _from_env_file(self, transport: Transport, decoder: JsonDecoder) -> Credential | None:
        value = self._environ.get(CREDENTIAL_ENV_VAR)
        if not value:
            return None

        path = Path(os.path.abspath(value))
        if not path.is_file():
            raise ExplicitPointerFileMissingError(CREDENTIAL_ENV_VAR, str(path))
        return load_credentials_from_file(path, transport, decoder, self._settings)

    def _from_well_known_file(
        self, transport: Transport, decoder: JsonDecoder
    ) -> Credential | None:
        path = self.well_known_file()
        if path is None or not path.is_file():
            return None

        credential = load_credentials_from_file(path, transport, decoder, self._settings)
        if isinstance(credential, UserCredential) and credential.client_id == CLOUD_SDK_CLIENT_ID:
            logger.warning(
                "Using end user credentials from the Google Cloud SDK without a quota "
                "project. You might receive a 'quota exceeded' or 'API not enabled' "
                "error. Consider using a service account instead."
            )
        return credential

    def _from_runtime(self, transport: Transport, decoder: JsonDecoder) -> Credential | None:
        for adapter in self._runtime_adapters:
            if adapter.is_available():
                logger.debug("Runtime adapter {} is available", adapter.name)
                return adapter.create_credential(transport, decoder)
        return None

    def _from_compute(self, transport: Transport, decoder: JsonDecoder) -> Credential | None:
        if not is_on_compute(transport, self._settings):
            return None
        return ComputeCredential(transport, decoder, self._settings)
