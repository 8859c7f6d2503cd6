"""adcred - Application Default Credentials for Google API callers.

Finds a credential without being told where the process runs, keeps its access
token valid, and decides whether outbound connections present a client
certificate.

Example:
    from adcred import CredentialResolver, build_transport

    transport = build_transport()
    resolver = CredentialResolver()
    credential = resolver.resolve(transport).with_scopes(
        ["https://www.googleapis.com/auth/cloud-platform"]
    )
    headers = {}
    credential.apply(headers)
"""

from adcred.compute import ComputeCredential
from adcred.credential_file import (
    ServiceAccountKey,
    UserRefreshCredential,
    parse_credential_file,
)
from adcred.credentials import Credential, ServiceAccountCredential, Token, UserCredential
from adcred.exceptions import (
    CredentialNotFoundError,
    DefaultCredentialsError,
    ExplicitPointerFileMissingError,
    MalformedCredentialFileError,
    RefreshFailedError,
    TransportError,
    TrustMaterialUnavailableError,
)
from adcred.mtls import (
    DefaultMtlsProvider,
    Keystore,
    MtlsConfig,
    MtlsProvider,
    StaticMtlsProvider,
    select_trust,
)
from adcred.resolver import (
    CredentialResolver,
    CredentialSource,
    ResolutionResult,
    load_credentials_from_file,
)
from adcred.runtimes import AppIdentityCredential, RuntimeAdapter, register_runtime_adapter
from adcred.transport import (
    AuthorizedTransport,
    HttpxTransport,
    Response,
    Transport,
    build_transport,
)

__version__ = "0.1.0"
__all__ = [
    "AppIdentityCredential",
    "AuthorizedTransport",
    "ComputeCredential",
    "Credential",
    "CredentialNotFoundError",
    "CredentialResolver",
    "CredentialSource",
    "DefaultCredentialsError",
    "DefaultMtlsProvider",
    "ExplicitPointerFileMissingError",
    "HttpxTransport",
    "Keystore",
    "MalformedCredentialFileError",
    "MtlsConfig",
    "MtlsProvider",
    "RefreshFailedError",
    "ResolutionResult",
    "Response",
    "RuntimeAdapter",
    "ServiceAccountCredential",
    "ServiceAccountKey",
    "StaticMtlsProvider",
    "Token",
    "Transport",
    "TransportError",
    "TrustMaterialUnavailableError",
    "UserCredential",
    "UserRefreshCredential",
    "build_transport",
    "load_credentials_from_file",
    "parse_credential_file",
    "register_runtime_adapter",
    "select_trust",
]
