"""Cloud Logging retrieval for Apps Script executions.

Apps Script writes one set of entries per execution under the
``app_script_function`` resource type. Runs triggered through the
Execution API carry ``invocation_type="apps script api"``; manual runs
from the editor carry a different label, so filtering on it keeps the
results tied to runs this tool started.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from loguru import logger

from scriptwatch.poller import ErrorKind, ObservedEvent
from scriptwatch.transport import Transport, TransportError, classify_transport_error

if TYPE_CHECKING:
    from scriptwatch.client import ExecutionResult

RESOURCE_TYPE = "app_script_function"
API_INVOCATION_TYPE = "apps script api"

# Lookback for "latest execution" queries
LATEST_LOOKBACK = timedelta(hours=1)
LATEST_API_PAGE_SIZE = 5
LATEST_ANY_PAGE_SIZE = 3

# Window around an execution when collecting its logs
WINDOW_BEFORE = timedelta(seconds=60)
WINDOW_AFTER = timedelta(seconds=120)
WINDOW_PAGE_SIZE = 50


@dataclass(frozen=True)
class LogEntry:
    """A single Cloud Logging entry emitted by an Apps Script function."""

    timestamp: datetime
    severity: str
    message: str
    invocation_type: str = ""
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def is_api(self) -> bool:
        return self.invocation_type == API_INVOCATION_TYPE


@dataclass(frozen=True)
class LatestExecution:
    """Most recent execution visible in Cloud Logging."""

    timestamp: datetime
    entries: tuple[LogEntry, ...]
    execution_type: str  # "API" or "unknown"


def parse_timestamp(value: str) -> datetime:
    """Parse an RFC 3339 timestamp as returned by Cloud Logging.

    Cloud Logging uses nanosecond precision and a trailing ``Z``.
    """
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def format_timestamp(value: datetime) -> str:
    return value.astimezone(UTC).isoformat().replace("+00:00", "Z")


def parse_log_entry(data: dict[str, Any]) -> LogEntry:
    json_payload = data.get("jsonPayload") or {}
    message = json_payload.get("message") or data.get("textPayload", "")
    labels = data.get("resource", {}).get("labels", {})
    return LogEntry(
        timestamp=parse_timestamp(data["timestamp"]),
        severity=data.get("severity", "INFO"),
        message=str(message),
        invocation_type=labels.get("invocation_type", ""),
        raw=data,
    )


def build_filter(start: datetime, end: datetime, *, api_only: bool) -> str:
    """Build a Cloud Logging filter for Apps Script entries in a time window."""
    clauses = [
        f'timestamp >= "{format_timestamp(start)}"',
        f'timestamp <= "{format_timestamp(end)}"',
        f'resource.type="{RESOURCE_TYPE}"',
    ]
    if api_only:
        clauses.append(f'resource.labels.invocation_type="{API_INVOCATION_TYPE}"')
    return " AND ".join(clauses)


def split_by_invocation(
    entries: Sequence[LogEntry],
) -> tuple[list[LogEntry], list[LogEntry]]:
    """Separate Execution API entries from editor (manual) ones."""
    api = [e for e in entries if e.is_api]
    editor = [e for e in entries if not e.is_api]
    return api, editor


class LogRetriever:
    """Queries Cloud Logging for Apps Script execution entries."""

    def __init__(
        self,
        transport: Transport,
        gcp_project_id: str,
        *,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self._transport = transport
        self._resource_names = [f"projects/{gcp_project_id}"]
        self._now = now or (lambda: datetime.now(UTC))

    async def _query(self, log_filter: str, page_size: int) -> list[LogEntry]:
        raw = await self._transport.list_log_entries(
            self._resource_names,
            log_filter,
            order_by="timestamp desc",
            page_size=page_size,
        )
        return [parse_log_entry(e) for e in raw]

    async def latest_execution(self) -> LatestExecution | None:
        """Find the most recent execution in the last hour.

        Prefers Execution API runs and falls back to any invocation type.
        Transport errors propagate so the poller can classify them.
        """
        end = self._now()
        start = end - LATEST_LOOKBACK

        entries = await self._query(
            build_filter(start, end, api_only=True), LATEST_API_PAGE_SIZE
        )
        if entries:
            return LatestExecution(entries[0].timestamp, tuple(entries), "API")

        logger.debug("No recent Execution API entries, checking any invocation type")
        entries = await self._query(
            build_filter(start, end, api_only=False), LATEST_ANY_PAGE_SIZE
        )
        if entries:
            return LatestExecution(entries[0].timestamp, tuple(entries), "unknown")
        return None

    async def observe_latest(self) -> ObservedEvent | None:
        """Poller query: the latest execution as an ObservedEvent."""
        latest = await self.latest_execution()
        if latest is None:
            return None
        return ObservedEvent(timestamp=latest.timestamp, payload=latest)

    async def execution_logs(self, execution: ExecutionResult) -> list[LogEntry]:
        """Collect entries written around ``execution``.

        Tries Execution API entries first; falls back to all Apps Script
        entries in the window when that yields nothing or fails transiently.
        """
        start = execution.started_at - WINDOW_BEFORE
        end = execution.ended_at + WINDOW_AFTER

        try:
            entries = await self._query(
                build_filter(start, end, api_only=True), WINDOW_PAGE_SIZE
            )
        except TransportError as e:
            if classify_transport_error(e) is ErrorKind.NON_RETRYABLE:
                raise
            logger.warning(
                "Execution API log query failed, falling back to general query",
                extra={"error": str(e)},
            )
            entries = []

        if entries:
            logger.info("Retrieved Execution API entries", extra={"count": len(entries)})
            return entries

        return await self._general_logs(start, end)

    async def _general_logs(self, start: datetime, end: datetime) -> list[LogEntry]:
        try:
            entries = await self._query(
                build_filter(start, end, api_only=False), WINDOW_PAGE_SIZE
            )
        except TransportError as e:
            if classify_transport_error(e) is ErrorKind.NON_RETRYABLE:
                raise
            logger.error("General log query failed", extra={"error": str(e)})
            return []
        logger.info(
            "Retrieved entries from execution window", extra={"count": len(entries)}
        )
        return entries
