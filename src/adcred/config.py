"""Library configuration using pydantic-settings.

Every value can be overridden through the environment. Settings that mirror
variables understood by other Google tooling keep those variable names.
"""

from functools import lru_cache

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_METADATA_HOST = "169.254.169.254"
DEFAULT_TOKEN_URI = "https://oauth2.googleapis.com/token"

_LOG_LEVELS = {"TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"}


class Settings(BaseSettings):
    """Settings loaded from environment variables.

    Environment variables:
    - GCE_METADATA_HOST: Metadata server host (default 169.254.169.254)
    - GCE_METADATA_TIMEOUT: Seconds to wait for the metadata probe
    - GOOGLE_API_USE_CLIENT_CERTIFICATE: "true" to present the default client cert
    - ADCRED_TOKEN_URI, ADCRED_REQUEST_TIMEOUT, ADCRED_CERT_PROVIDER_TIMEOUT
    - ADCRED_LOG_LEVEL, ADCRED_JSON_LOGS
    """

    model_config = SettingsConfigDict(
        env_prefix="ADCRED_",
        case_sensitive=False,
        populate_by_name=True,
        extra="ignore",
    )

    # Metadata server
    gce_metadata_host: str = Field(
        default=DEFAULT_METADATA_HOST,
        validation_alias=AliasChoices("GCE_METADATA_HOST", "gce_metadata_host"),
    )
    gce_metadata_timeout: float = Field(
        default=3.0,
        validation_alias=AliasChoices("GCE_METADATA_TIMEOUT", "gce_metadata_timeout"),
    )

    # Token exchange
    token_uri: str = DEFAULT_TOKEN_URI
    request_timeout: float = 30.0

    # Mutual TLS
    use_client_certificate: bool = Field(
        default=False,
        validation_alias=AliasChoices(
            "GOOGLE_API_USE_CLIENT_CERTIFICATE", "use_client_certificate"
        ),
    )
    cert_provider_timeout: float = 30.0

    # Logging (CLI only; the library never installs sinks on its own)
    log_level: str = "INFO"
    json_logs: bool = False

    @property
    def metadata_root(self) -> str:
        """Base URL of the metadata server."""
        return f"http://{self.gce_metadata_host}"

    @field_validator(
        "gce_metadata_timeout", "request_timeout", "cert_provider_timeout"
    )
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        """Validate timeouts are positive."""
        if v <= 0:
            raise ValueError("timeouts must be positive")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is a known loguru level."""
        level = v.upper()
        if level not in _LOG_LEVELS:
            raise ValueError(f"log_level must be one of: {sorted(_LOG_LEVELS)}")
        return level


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Settings are loaded once and cached for the lifetime of the process.
    """
    return Settings()
