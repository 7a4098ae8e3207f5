"""Logging configuration using loguru.

Provides:
- Structured JSON logging (GCP Cloud Logging compatible)
- Human-readable logging for interactive use
- Poll session context tracking (poll_id)
- Audit logging for poll lifecycle events
"""

import json
import sys
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

from loguru import logger

# Context variable for poll-session-scoped data
poll_id_ctx: ContextVar[str | None] = ContextVar("poll_id", default=None)

# Map loguru levels to GCP severity levels
LEVEL_TO_SEVERITY = {
    "TRACE": "DEBUG",
    "DEBUG": "DEBUG",
    "INFO": "INFO",
    "SUCCESS": "INFO",
    "WARNING": "WARNING",
    "ERROR": "ERROR",
    "CRITICAL": "CRITICAL",
}


def _gcp_json_formatter(record: dict) -> str:
    """Format log record as GCP Cloud Logging compatible JSON."""
    poll_id = poll_id_ctx.get()

    log_entry = {
        "timestamp": datetime.now(UTC).isoformat(),
        "severity": LEVEL_TO_SEVERITY.get(record["level"].name, "INFO"),
        "message": record["message"],
        "logger": record["name"],
        "function": record["function"],
        "line": record["line"],
    }

    if poll_id:
        log_entry["poll_id"] = poll_id

    if record.get("extra"):
        for key, value in record["extra"].items():
            if key not in log_entry:
                log_entry[key] = value

    if record["exception"]:
        log_entry["exception"] = {
            "type": record["exception"].type.__name__ if record["exception"].type else None,
            "value": str(record["exception"].value) if record["exception"].value else None,
        }

    # loguru treats the returned string as a format template
    serialized = json.dumps(log_entry, default=str)
    return serialized.replace("{", "{{").replace("}", "}}") + "\n"


def _dev_formatter(_record: dict) -> str:
    """Format log record for terminals (human-readable)."""
    poll_id = poll_id_ctx.get()
    context_str = f"[poll={poll_id}] " if poll_id else ""

    return (
        "<green>{time:HH:mm:ss.SSS}</green> | "
        "<level>{level: <8}</level> | "
        "<cyan>{name}</cyan>:<cyan>{function}</cyan> | "
        + context_str
        + "<level>{message}</level>\n"
        "{exception}"
    )


def setup_logging(json_logs: bool = False, log_level: str = "INFO") -> None:
    """Configure loguru for the CLI.

    Logs go to stderr so command output on stdout stays clean.

    Args:
        json_logs: If True, output GCP-compatible JSON logs
        log_level: Minimum log level to output
    """
    logger.remove()

    if json_logs:
        logger.add(
            sys.stderr,
            format=_gcp_json_formatter,
            level=log_level,
            serialize=False,
            colorize=False,
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


def audit_poll_started(expected_at: datetime, options: Any) -> None:
    """Log when a poll session begins."""
    logger.info(
        "Polling for eventually-consistent data",
        extra={
            "audit_event": "poll_started",
            "expected_at": expected_at.isoformat(),
            "initial_delay_seconds": options.initial_delay_seconds,
            "max_delay_seconds": options.max_delay_seconds,
            "backoff_exponent": options.backoff_exponent,
            "timeout_ms": options.timeout_ms,
        },
    )


def audit_poll_attempt_failed(attempt: int, error: BaseException | None) -> None:
    """Log a transient query failure that will be retried."""
    logger.warning(
        "Poll query failed, will retry",
        extra={
            "audit_event": "poll_query_failed",
            "attempt": attempt,
            "error": repr(error),
        },
    )


def audit_poll_finished(outcome: Any, attempts: int, failures: int) -> None:
    """Log the terminal outcome of a poll session."""
    kind = getattr(outcome, "kind", None)
    log = logger.warning if kind is not None else logger.info
    log(
        "Poll finished",
        extra={
            "audit_event": "poll_finished",
            "outcome": type(outcome).__name__,
            "error_kind": kind.value if kind is not None else None,
            "elapsed_ms": outcome.elapsed_ms,
            "attempts": attempts,
            "failures": failures,
        },
    )


__all__ = [
    "logger",
    "setup_logging",
    "poll_id_ctx",
    "audit_poll_started",
    "audit_poll_attempt_failed",
    "audit_poll_finished",
]
