"""Tests for Cloud Logging retrieval."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from scriptwatch.client import ExecutionResult
from scriptwatch.logs import (
    LogRetriever,
    build_filter,
    parse_log_entry,
    parse_timestamp,
    split_by_invocation,
)
from scriptwatch.transport import (
    APIError,
    AuthenticationError,
    LocalFileTransport,
    Transport,
)

from conftest import EXECUTION_END, EXECUTION_START

NOW = EXECUTION_END + timedelta(seconds=30)


class FailingTransport(Transport):
    """Raises the given errors for API-only queries or all queries."""

    def __init__(self, error: Exception, *, api_only: bool = False) -> None:
        self.error = error
        self.api_only = api_only
        self.filters: list[str] = []

    async def run_function(self, *args: Any, **kwargs: Any) -> dict[str, Any]:
        raise NotImplementedError

    async def list_log_entries(
        self,
        resource_names: list[str],
        log_filter: str,
        order_by: str = "timestamp desc",
        page_size: int = 50,
    ) -> list[dict[str, Any]]:
        self.filters.append(log_filter)
        if not self.api_only or "invocation_type" in log_filter:
            raise self.error
        return [
            {
                "timestamp": "2025-06-01T12:00:01Z",
                "textPayload": "general",
                "resource": {"labels": {"invocation_type": "editor"}},
            }
        ]

    async def close(self) -> None:
        pass


def _execution() -> ExecutionResult:
    return ExecutionResult(
        function="testFontSwap",
        started_at=EXECUTION_START,
        ended_at=EXECUTION_END,
        success=True,
    )


def test_parse_timestamp_nanoseconds() -> None:
    """Cloud Logging's nanosecond timestamps parse (truncated to microseconds)."""
    parsed = parse_timestamp("2025-06-01T12:00:02.123456789Z")
    assert parsed == datetime(2025, 6, 1, 12, 0, 2, 123456, tzinfo=UTC)


def test_parse_log_entry_prefers_json_message() -> None:
    entry = parse_log_entry(
        {
            "timestamp": "2025-06-01T12:00:00Z",
            "severity": "ERROR",
            "jsonPayload": {"message": "boom"},
            "textPayload": "ignored",
            "resource": {"labels": {"invocation_type": "apps script api"}},
        }
    )
    assert entry.message == "boom"
    assert entry.severity == "ERROR"
    assert entry.is_api


def test_parse_log_entry_text_payload_and_defaults() -> None:
    entry = parse_log_entry({"timestamp": "2025-06-01T12:00:00Z", "textPayload": "hi"})
    assert entry.message == "hi"
    assert entry.severity == "INFO"
    assert not entry.is_api


def test_build_filter_api_only() -> None:
    start = datetime(2025, 6, 1, 11, 0, tzinfo=UTC)
    end = datetime(2025, 6, 1, 12, 0, tzinfo=UTC)

    api = build_filter(start, end, api_only=True)
    general = build_filter(start, end, api_only=False)

    assert 'timestamp >= "2025-06-01T11:00:00Z"' in api
    assert 'timestamp <= "2025-06-01T12:00:00Z"' in api
    assert 'resource.type="app_script_function"' in api
    assert 'resource.labels.invocation_type="apps script api"' in api
    assert "invocation_type" not in general


def test_split_by_invocation() -> None:
    entries = [
        parse_log_entry(
            {
                "timestamp": "2025-06-01T12:00:00Z",
                "resource": {"labels": {"invocation_type": kind}},
            }
        )
        for kind in ("apps script api", "editor", "apps script api")
    ]
    api, editor = split_by_invocation(entries)
    assert len(api) == 2
    assert len(editor) == 1


@pytest.mark.asyncio
async def test_latest_execution_prefers_api_entries(
    local_transport: LocalFileTransport,
) -> None:
    retriever = LogRetriever(local_transport, "test-project", now=lambda: NOW)

    latest = await retriever.latest_execution()

    assert latest is not None
    assert latest.execution_type == "API"
    assert latest.timestamp == parse_timestamp("2025-06-01T12:00:02.123456Z")
    assert all(e.is_api for e in latest.entries)
    call = local_transport.list_calls[0]
    assert call["resource_names"] == ["projects/test-project"]
    assert call["page_size"] == 5
    assert 'timestamp >= "2025-06-01T11:00:31Z"' in call["log_filter"]


@pytest.mark.asyncio
async def test_latest_execution_none_when_empty(golden_dir: Any) -> None:
    transport = LocalFileTransport(golden_dir / "script_error")
    retriever = LogRetriever(transport, "test-project", now=lambda: NOW)

    assert await retriever.latest_execution() is None
    # API query then the any-invocation fallback
    assert [c["page_size"] for c in transport.list_calls] == [5, 3]


@pytest.mark.asyncio
async def test_observe_latest_wraps_latest_execution(
    local_transport: LocalFileTransport,
) -> None:
    retriever = LogRetriever(local_transport, "test-project", now=lambda: NOW)

    observed = await retriever.observe_latest()

    assert observed is not None
    assert observed.timestamp == observed.payload.timestamp


@pytest.mark.asyncio
async def test_latest_execution_propagates_errors() -> None:
    transport = FailingTransport(APIError("API error (503): busy", status_code=503))
    retriever = LogRetriever(transport, "test-project", now=lambda: NOW)

    with pytest.raises(APIError):
        await retriever.latest_execution()


@pytest.mark.asyncio
async def test_execution_logs_window(local_transport: LocalFileTransport) -> None:
    retriever = LogRetriever(local_transport, "test-project", now=lambda: NOW)

    entries = await retriever.execution_logs(_execution())

    assert len(entries) == 2
    assert all(e.is_api for e in entries)
    log_filter = local_transport.list_calls[0]["log_filter"]
    assert 'timestamp >= "2025-06-01T11:59:00Z"' in log_filter
    assert 'timestamp <= "2025-06-01T12:02:01Z"' in log_filter


@pytest.mark.asyncio
async def test_execution_logs_falls_back_on_transient_error() -> None:
    transport = FailingTransport(
        APIError("API error (500): oops", status_code=500), api_only=True
    )
    retriever = LogRetriever(transport, "test-project", now=lambda: NOW)

    entries = await retriever.execution_logs(_execution())

    assert [e.message for e in entries] == ["general"]
    assert len(transport.filters) == 2


@pytest.mark.asyncio
async def test_execution_logs_general_failure_is_best_effort() -> None:
    transport = FailingTransport(APIError("API error (500): oops", status_code=500))
    retriever = LogRetriever(transport, "test-project", now=lambda: NOW)

    assert await retriever.execution_logs(_execution()) == []


@pytest.mark.asyncio
async def test_execution_logs_auth_error_raises() -> None:
    transport = FailingTransport(AuthenticationError("Invalid or expired access token"))
    retriever = LogRetriever(transport, "test-project", now=lambda: NOW)

    with pytest.raises(AuthenticationError):
        await retriever.execution_logs(_execution())
