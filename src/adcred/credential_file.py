"""Credential file parsing.

A credential file is a small JSON object in one of two shapes, selected by its
``type`` field:

- ``service_account``: a key for a non-human identity
- ``authorized_user``: a refresh token issued to a human user (written by gcloud)
"""

from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from adcred.exceptions import MalformedCredentialFileError

SERVICE_ACCOUNT_FILE_TYPE = "service_account"
USER_FILE_TYPE = "authorized_user"

JsonDecoder = Callable[[str], Any]


@dataclass(frozen=True)
class ServiceAccountKey:
    """Key material for a service account.

    Attributes:
        client_id: OAuth2 client id of the service account.
        client_email: Service account email, used as the JWT issuer.
        private_key: PEM encoded RSA private key.
        private_key_id: Identifier of the key, sent as the JWT ``kid``.
        token_uri: Token endpoint recorded in the file, if any.
        project_id: Owning project, if recorded.
    """

    client_id: str
    client_email: str
    private_key: str
    private_key_id: str
    token_uri: str | None = None
    project_id: str | None = None
    type: str = SERVICE_ACCOUNT_FILE_TYPE


@dataclass(frozen=True)
class UserRefreshCredential:
    """Refresh token material for an end user."""

    client_id: str
    client_secret: str
    refresh_token: str
    quota_project_id: str | None = None
    type: str = USER_FILE_TYPE


CredentialInfo = ServiceAccountKey | UserRefreshCredential

_REQUIRED_FIELDS = {
    SERVICE_ACCOUNT_FILE_TYPE: ("client_id", "client_email", "private_key", "private_key_id"),
    USER_FILE_TYPE: ("client_id", "client_secret", "refresh_token"),
}


def _require(data: dict[str, Any], file_type: str, path: str | None) -> None:
    missing = [name for name in _REQUIRED_FIELDS[file_type] if not data.get(name)]
    if missing:
        raise MalformedCredentialFileError(
            f"Credential file of type '{file_type}' is missing required field(s): "
            + ", ".join(missing),
            path,
        )


def parse_credential_file(
    raw: bytes | str,
    decoder: JsonDecoder = json.loads,
    *,
    path: str | None = None,
) -> CredentialInfo:
    """Parse a credential document into one of the recognized shapes.

    Args:
        raw: UTF-8 JSON document.
        decoder: JSON decoding callable.
        path: Source path, only used in error messages.

    Returns:
        ServiceAccountKey or UserRefreshCredential depending on ``type``.

    Raises:
        MalformedCredentialFileError: If the document does not decode, is not an
            object, has a missing or unknown ``type``, or lacks a required field.
    """
    try:
        text = raw.decode("utf-8") if isinstance(raw, bytes) else raw
        data = decoder(text)
    except (UnicodeDecodeError, ValueError) as e:
        raise MalformedCredentialFileError(
            f"Credential file is not valid JSON: {e}", path
        ) from e

    if not isinstance(data, dict):
        raise MalformedCredentialFileError("Credential file must contain a JSON object", path)

    file_type = data.get("type")
    if not file_type:
        raise MalformedCredentialFileError("Credential file is missing the 'type' field", path)

    if file_type == SERVICE_ACCOUNT_FILE_TYPE:
        _require(data, file_type, path)
        return ServiceAccountKey(
            client_id=data["client_id"],
            client_email=data["client_email"],
            private_key=data["private_key"],
            private_key_id=data["private_key_id"],
            token_uri=data.get("token_uri"),
            project_id=data.get("project_id"),
        )
    if file_type == USER_FILE_TYPE:
        _require(data, file_type, path)
        return UserRefreshCredential(
            client_id=data["client_id"],
            client_secret=data["client_secret"],
            refresh_token=data["refresh_token"],
            quota_project_id=data.get("quota_project_id"),
        )

    raise MalformedCredentialFileError(
        f"Credential file has unrecognized type '{file_type}'. Expecting "
        f"'{USER_FILE_TYPE}' or '{SERVICE_ACCOUNT_FILE_TYPE}'",
        path,
    )


def read_credential_file(path: str | Path, decoder: JsonDecoder = json.loads) -> CredentialInfo:
    """Read and parse a credential file from disk.

    Raises:
        MalformedCredentialFileError: If the file cannot be read or parsed.
    """
    path = Path(path)
    try:
        raw = path.read_bytes()
    except OSError as e:
        raise MalformedCredentialFileError(
            f"Credential file could not be read: {e}", str(path)
        ) from e
    return parse_credential_file(raw, decoder, path=str(path))
