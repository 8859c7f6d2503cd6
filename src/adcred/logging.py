"""Logging configuration using loguru.

Provides:
- Structured JSON logging (Cloud Logging compatible) for hosted environments
- Human-readable logging for workstations
- Audit events for credential discovery, refresh and trust decisions

Modules log through ``loguru.logger`` directly. Nothing is installed on import;
``setup_logging`` is called by the CLI or by the host application.
"""

import json
import sys
from datetime import UTC, datetime

from loguru import logger

# Map loguru levels to Cloud Logging severity levels
LEVEL_TO_SEVERITY = {
    "TRACE": "DEBUG",
    "DEBUG": "DEBUG",
    "INFO": "INFO",
    "SUCCESS": "INFO",
    "WARNING": "WARNING",
    "ERROR": "ERROR",
    "CRITICAL": "CRITICAL",
}


def _json_formatter(record: dict) -> str:
    """Format log record as Cloud Logging compatible JSON."""
    log_entry = {
        "timestamp": datetime.now(UTC).isoformat(),
        "severity": LEVEL_TO_SEVERITY.get(record["level"].name, "INFO"),
        "message": record["message"],
        "logger": record["name"],
        "function": record["function"],
        "line": record["line"],
    }

    if record.get("extra"):
        for key, value in record["extra"].items():
            if key not in log_entry:
                log_entry[key] = value

    if record["exception"]:
        log_entry["exception"] = {
            "type": record["exception"].type.__name__ if record["exception"].type else None,
            "value": str(record["exception"].value) if record["exception"].value else None,
        }

    # Returned as a template: escape braces so loguru does not re-format the payload
    payload = json.dumps(log_entry, default=str)
    return payload.replace("{", "{{").replace("}", "}}") + "\n"


def _dev_formatter(record: dict) -> str:
    """Format log record for a terminal (human-readable)."""
    audit = record["extra"].get("audit_event")
    audit_str = f"[{audit}] " if audit else ""
    return (
        "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
        "<level>{level: <8}</level> | "
        "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
        + audit_str
        + "<level>{message}</level>\n"
        "{exception}"
    )


def setup_logging(json_logs: bool = False, log_level: str = "INFO") -> None:
    """Configure loguru sinks.

    Args:
        json_logs: If True, output Cloud Logging compatible JSON lines
        log_level: Minimum log level to output
    """
    logger.remove()

    if json_logs:
        logger.add(
            sys.stderr,
            format=_json_formatter,
            level=log_level,
            serialize=False,
        )
    else:
        logger.add(
            sys.stderr,
            format=_dev_formatter,
            level=log_level,
            colorize=True,
        )


# =============================================================================
# Audit Logging
# =============================================================================


def audit_credential_resolved(source: str, kind: str) -> None:
    """Log which discovery step produced the credential."""
    logger.info(
        "Application default credential resolved",
        audit_event="credential_resolved",
        source=source,
        kind=kind,
    )


def audit_credential_not_found(reason: str) -> None:
    """Log a terminal discovery failure."""
    logger.warning(
        "Application default credential not available",
        audit_event="credential_not_found",
        reason=reason,
    )


def audit_token_refreshed(kind: str, expires_in: int | None) -> None:
    """Log a successful token exchange."""
    logger.debug(
        "Access token refreshed",
        audit_event="token_refresh",
        kind=kind,
        expires_in=expires_in,
    )


def audit_token_refresh_failed(kind: str, reason: str) -> None:
    """Log a failed token exchange."""
    logger.warning(
        "Access token refresh failed",
        audit_event="token_refresh_failed",
        kind=kind,
        reason=reason,
    )


def audit_mtls_decision(use_client_certificate: bool, reason: str) -> None:
    """Log the client certificate decision for a transport."""
    logger.info(
        "Client certificate decision",
        audit_event="mtls_decision",
        use_client_certificate=use_client_certificate,
        reason=reason,
    )


__all__ = [
    "logger",
    "setup_logging",
    "audit_credential_resolved",
    "audit_credential_not_found",
    "audit_token_refreshed",
    "audit_token_refresh_failed",
    "audit_mtls_decision",
]
