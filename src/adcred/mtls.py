"""Client certificate (mutual TLS) selection.

``select_trust`` decides, from a pluggable provider, whether a transport should
present a client certificate. The policy is asymmetric:

- An explicitly supplied keystore that cannot be loaded is a hard error.
- A default keystore that is absent or broken degrades to "no certificate", so
  opportunistic mTLS never breaks callers without a provisioned certificate.
"""

from __future__ import annotations

import json
import re
import ssl
import subprocess
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from adcred.config import Settings, get_settings
from adcred.exceptions import TrustMaterialUnavailableError
from adcred.logging import audit_mtls_decision

CONTEXT_AWARE_METADATA_PATH = Path("~/.secureConnect/context_aware_metadata.json")

_CERT_REGEX = re.compile(
    rb"-----BEGIN CERTIFICATE-----.+?-----END CERTIFICATE-----\r?\n?", re.DOTALL
)
_KEY_REGEX = re.compile(
    rb"-----BEGIN [A-Z ]*PRIVATE KEY-----.+?-----END [A-Z ]*PRIVATE KEY-----\r?\n?",
    re.DOTALL,
)

# Errors that mean "the keystore could not be produced"
_LOAD_ERRORS = (OSError, ValueError, subprocess.SubprocessError)


@dataclass(frozen=True)
class Keystore:
    """A PEM certificate chain and its private key."""

    cert_pem: bytes
    key_pem: bytes

    @classmethod
    def from_pem(cls, data: bytes | str) -> Keystore:
        """Build a keystore from a document holding certificate(s) and a key.

        Raises:
            ValueError: If no certificate or no private key is present.
        """
        if isinstance(data, str):
            data = data.encode("utf-8")
        certs = _CERT_REGEX.findall(data)
        key = _KEY_REGEX.search(data)
        if not certs:
            raise ValueError("No PEM certificate found in client certificate data")
        if key is None:
            raise ValueError("No PEM private key found in client certificate data")
        return cls(cert_pem=b"".join(certs), key_pem=key.group(0))

    @classmethod
    def from_file(cls, path: str | Path) -> Keystore:
        return cls.from_pem(Path(path).read_bytes())

    def load_into(self, context: ssl.SSLContext, password: str = "") -> None:
        """Load the certificate chain into an SSL context.

        Raises:
            ssl.SSLError: If the certificate and key do not load or do not match.
        """
        with tempfile.TemporaryDirectory() as tmp:
            cert_path = Path(tmp) / "cert.pem"
            key_path = Path(tmp) / "key.pem"
            cert_path.write_bytes(self.cert_pem)
            key_path.write_bytes(self.key_pem)
            key_path.chmod(0o600)
            context.load_cert_chain(str(cert_path), str(key_path), password=password or None)


@dataclass(frozen=True)
class MtlsConfig:
    """Outcome of trust selection, consumed when building a transport."""

    use_client_certificate: bool
    keystore: Keystore | None = None
    keystore_password: str = ""

    def __post_init__(self) -> None:
        if self.use_client_certificate and self.keystore is None:
            raise ValueError("A keystore is required when using a client certificate")


NO_CLIENT_CERTIFICATE = MtlsConfig(use_client_certificate=False)


class MtlsProvider(ABC):
    """Supplies the inputs of the client certificate decision."""

    @abstractmethod
    def use_client_certificate(self) -> bool:
        """Whether a client certificate should be presented at all."""
        ...

    def keystore_password(self) -> str:
        return ""

    def explicit_keystore(self) -> Keystore | None:
        """Return a keystore requested by the caller, or None if none was requested.

        Raising here means the requested certificate could not be produced.
        """
        return None

    @abstractmethod
    def load_default_keystore(self) -> Keystore | None:
        """Load the platform default keystore, or None if none is provisioned."""
        ...


class StaticMtlsProvider(MtlsProvider):
    """Provider with fixed answers, for callers that manage their own certificate.

    Args:
        use_client_certificate: Whether to present a certificate
        keystore: Explicit keystore
        keystore_path: Combined PEM file to load as the explicit keystore
        default_keystore: Keystore returned by ``load_default_keystore``
        password: Private key password
    """

    def __init__(
        self,
        use_client_certificate: bool,
        keystore: Keystore | None = None,
        keystore_path: str | Path | None = None,
        default_keystore: Keystore | None = None,
        password: str = "",
    ) -> None:
        self._use = use_client_certificate
        self._keystore = keystore
        self._keystore_path = Path(keystore_path) if keystore_path else None
        self._default_keystore = default_keystore
        self._password = password

    def use_client_certificate(self) -> bool:
        return self._use

    def keystore_password(self) -> str:
        return self._password

    def explicit_keystore(self) -> Keystore | None:
        if self._keystore is not None:
            return self._keystore
        if self._keystore_path is not None:
            return Keystore.from_file(self._keystore_path)
        return None

    def load_default_keystore(self) -> Keystore | None:
        return self._default_keystore


class DefaultMtlsProvider(MtlsProvider):
    """Provider driven by the environment and the endpoint verification metadata.

    The client certificate is used only when GOOGLE_API_USE_CLIENT_CERTIFICATE
    is "true". The default keystore comes from running the
    ``cert_provider_command`` listed in the context aware metadata file, which
    prints a combined certificate and key PEM on stdout.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        metadata_path: str | Path | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._metadata_path = Path(metadata_path or CONTEXT_AWARE_METADATA_PATH).expanduser()

    def use_client_certificate(self) -> bool:
        return self._settings.use_client_certificate

    def load_default_keystore(self) -> Keystore | None:
        if not self._metadata_path.exists():
            return None

        metadata = json.loads(self._metadata_path.read_text())
        if not isinstance(metadata, dict):
            raise ValueError(f"{self._metadata_path} must contain a JSON object")
        command = metadata.get("cert_provider_command")
        if not isinstance(command, list) or not command:
            raise ValueError(f"No cert_provider_command in {self._metadata_path}")
        if not all(isinstance(part, str) for part in command):
            raise ValueError(f"cert_provider_command in {self._metadata_path} must be strings")

        logger.debug("Running certificate provider command {}", command[0])
        result = subprocess.run(
            command,
            capture_output=True,
            check=True,
            timeout=self._settings.cert_provider_timeout,
        )
        return Keystore.from_pem(result.stdout)


def _check_loadable(keystore: Keystore, password: str) -> None:
    keystore.load_into(ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT), password)


def select_trust(provider: MtlsProvider) -> MtlsConfig:
    """Decide whether a transport should present a client certificate.

    Args:
        provider: Source of the decision inputs

    Returns:
        MtlsConfig for the transport builder

    Raises:
        TrustMaterialUnavailableError: If an explicitly supplied keystore fails to load.
    """
    if not provider.use_client_certificate():
        audit_mtls_decision(False, "client certificate not requested")
        return NO_CLIENT_CERTIFICATE

    password = provider.keystore_password()

    try:
        keystore = provider.explicit_keystore()
        if keystore is not None:
            _check_loadable(keystore, password)
    except _LOAD_ERRORS as e:
        raise TrustMaterialUnavailableError(
            f"Client certificate could not be loaded: {e}"
        ) from e

    if keystore is not None:
        audit_mtls_decision(True, "explicit keystore")
        return MtlsConfig(True, keystore, password)

    try:
        keystore = provider.load_default_keystore()
        if keystore is not None:
            _check_loadable(keystore, password)
    except _LOAD_ERRORS as e:
        logger.warning("Default client certificate unavailable, continuing without it: {}", e)
        keystore = None

    if keystore is None:
        audit_mtls_decision(False, "no default keystore")
        return NO_CLIENT_CERTIFICATE

    audit_mtls_decision(True, "default keystore")
    return MtlsConfig(True, keystore, password)
