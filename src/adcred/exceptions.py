"""Exception hierarchy for credential discovery, refresh and trust selection."""

from __future__ import annotations

HELP_PERMALINK = (
    "https://developers.google.com/accounts/docs/application-default-credentials"
)


class DefaultCredentialsError(Exception):
    """Base exception for adcred errors."""

    pass


class ExplicitPointerFileMissingError(DefaultCredentialsError):
    """Raised when the credentials environment variable names a missing file."""

    def __init__(self, env_var: str, path: str) -> None:
        super().__init__(
            f"Error reading credential file from environment variable {env_var}, "
            f"value '{path}': File does not exist."
        )
        self.env_var = env_var
        self.path = path


class MalformedCredentialFileError(DefaultCredentialsError):
    """Raised when a credential file cannot be read, decoded or dispatched."""

    def __init__(self, message: str, path: str | None = None) -> None:
        if path:
            message = f"{message} (file: {path})"
        super().__init__(message)
        self.path = path


class CredentialNotFoundError(DefaultCredentialsError):
    """Raised when no discovery step produced a credential."""

    def __init__(self) -> None:
        super().__init__(
            "The Application Default Credentials are not available. They are "
            "available if running on Google App Engine or Google Compute Engine. "
            "Otherwise, the environment variable GOOGLE_APPLICATION_CREDENTIALS "
            "must be defined pointing to a file defining the credentials. See "
            f"{HELP_PERMALINK} for more information."
        )


class RefreshFailedError(DefaultCredentialsError):
    """Raised (or recorded) when a token exchange does not yield a token."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class TrustMaterialUnavailableError(DefaultCredentialsError):
    """Raised when an explicitly supplied client certificate cannot be loaded."""

    pass


class TransportError(DefaultCredentialsError):
    """Raised by transports when a request cannot be completed."""

    pass


def replay(error: DefaultCredentialsError) -> DefaultCredentialsError:
    """Return a copy of a cached error, safe to raise again.

    The copy has the same type, message and attributes and is chained to the
    cached instance, which keeps the original traceback. Raising the copy never
    touches the traceback or context of the cached instance, which other
    callers may be raising concurrently.
    """
    cls = type(error)
    fresh = cls.__new__(cls, *error.args)
    fresh.args = error.args
    fresh.__dict__.update(error.__dict__)
    fresh.__cause__ = error
    return fresh
