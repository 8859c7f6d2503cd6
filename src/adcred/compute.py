"""Compute Engine metadata server support.

The metadata server is a link-local HTTP endpoint available on hosted compute
instances. It identifies itself with the ``Metadata-Flavor: Google`` response
header and issues access tokens for the instance's default service account.
"""

from __future__ import annotations

import json

from loguru import logger

from adcred.config import Settings, get_settings
from adcred.credential_file import JsonDecoder
from adcred.credentials import Credential, Token, parse_token_response
from adcred.exceptions import TransportError
from adcred.transport import Transport

METADATA_FLAVOR_HEADER = "Metadata-Flavor"
METADATA_FLAVOR_VALUE = "Google"
METADATA_HEADERS = {METADATA_FLAVOR_HEADER: METADATA_FLAVOR_VALUE}

TOKEN_PATH = "/computeMetadata/v1/instance/service-accounts/default/token"


def is_on_compute(transport: Transport, settings: Settings | None = None) -> bool:
    """Probe the metadata server once.

    Returns:
        True if the server answered 200 with the metadata flavor header.
        Any transport failure or other answer is False.
    """
    settings = settings or get_settings()
    try:
        response = transport.request(
            "GET",
            settings.metadata_root,
            headers=dict(METADATA_HEADERS),
            timeout=settings.gce_metadata_timeout,
        )
    except TransportError as e:
        logger.debug("Metadata server not reachable: {}", e)
        return False

    return (
        response.status == 200
        and response.header(METADATA_FLAVOR_HEADER) == METADATA_FLAVOR_VALUE
    )


class ComputeCredential(Credential):
    """Credential for the instance's default service account.

    Every refresh queries the metadata server token endpoint. Scopes are fixed
    when the instance is created, so ``with_scopes`` returns the same credential.
    """

    kind = "compute_engine"

    def __init__(
        self,
        transport: Transport,
        decoder: JsonDecoder = json.loads,
        settings: Settings | None = None,
    ) -> None:
        super().__init__(transport, decoder, settings=settings)

    @property
    def token_url(self) -> str:
        return self._settings.metadata_root + TOKEN_PATH

    def _fetch_token(self) -> Token:
        response = self.transport.request(
            "GET",
            self.token_url,
            headers=dict(METADATA_HEADERS),
            timeout=self._settings.request_timeout,
        )
        return parse_token_response(response, self.decoder)
