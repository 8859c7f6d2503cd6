"""CLI entry point for adcred.

Usage:
    python -m adcred info                 # Show which source provides credentials
    python -m adcred token --scopes a,b   # Print a valid access token
    python -m adcred mtls                 # Show the client certificate decision
"""

import argparse
import sys

from adcred.config import get_settings
from adcred.exceptions import DefaultCredentialsError
from adcred.logging import setup_logging
from adcred.mtls import DefaultMtlsProvider, select_trust
from adcred.resolver import CredentialResolver
from adcred.transport import build_transport


def cmd_info(_args: argparse.Namespace) -> int:
    """Resolve the application default credential and describe it."""
    resolver = CredentialResolver()
    with build_transport() as transport:
        try:
            credential = resolver.resolve(transport)
        except DefaultCredentialsError as e:
            print(f"Credential discovery failed: {e}", file=sys.stderr)
            return 1

    assert resolver.source is not None
    print(f"Source: {resolver.source.value}")
    print(f"Kind: {credential.kind}")
    print(f"Credential: {credential!r}")
    return 0


def cmd_token(args: argparse.Namespace) -> int:
    """Resolve, optionally narrow, and print a current access token."""
    scopes = [s.strip() for s in (args.scopes or "").split(",") if s.strip()]
    with build_transport() as transport:
        try:
            credential = CredentialResolver().resolve(transport)
            if scopes:
                credential = credential.with_scopes(scopes)
            if credential.scopes_required:
                print("Error: this credential requires --scopes", file=sys.stderr)
                return 1
            token = credential.current_access_token()
        except DefaultCredentialsError as e:
            print(f"Failed to obtain access token: {e}", file=sys.stderr)
            return 1

    print(token)
    return 0


def cmd_mtls(_args: argparse.Namespace) -> int:
    """Print whether a client certificate would be presented."""
    try:
        config = select_trust(DefaultMtlsProvider(get_settings()))
    except DefaultCredentialsError as e:
        print(f"Client certificate selection failed: {e}", file=sys.stderr)
        return 1

    print(f"Use client certificate: {'yes' if config.use_client_certificate else 'no'}")
    return 0


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point."""
    settings = get_settings()
    parser = argparse.ArgumentParser(
        prog="adcred",
        description="Application Default Credentials - inspect credential discovery",
    )
    parser.add_argument(
        "--log-level",
        default=settings.log_level,
        help="Minimum log level (or set ADCRED_LOG_LEVEL env var)",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        default=settings.json_logs,
        help="Emit JSON log lines (or set ADCRED_JSON_LOGS env var)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    info_parser = subparsers.add_parser("info", help="Show the credential source")
    info_parser.set_defaults(func=cmd_info)

    token_parser = subparsers.add_parser("token", help="Print a valid access token")
    token_parser.add_argument(
        "--scopes",
        help="Comma-separated scopes for service account credentials",
    )
    token_parser.set_defaults(func=cmd_token)

    mtls_parser = subparsers.add_parser("mtls", help="Show the client certificate decision")
    mtls_parser.set_defaults(func=cmd_mtls)

    args = parser.parse_args(argv)
    setup_logging(json_logs=args.json_logs, log_level=args.log_level.upper())
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
