"""Tests for loguru configuration and poll audit events."""

from __future__ import annotations

import json
import sys
from collections.abc import Iterator

import pytest
from loguru import logger

from scriptwatch.logging import _gcp_json_formatter, poll_id_ctx, setup_logging
from scriptwatch.poller import EventuallyConsistentPoller, ObservedEvent, TriggerEvent

from conftest import EXECUTION_END, EXECUTION_START, FakeClock


@pytest.fixture
def json_lines() -> Iterator[list[str]]:
    lines: list[str] = []
    handler_id = logger.add(lines.append, format=_gcp_json_formatter, level="DEBUG")
    yield lines
    logger.remove(handler_id)


def test_json_formatter_includes_poll_id(json_lines: list[str]) -> None:
    token = poll_id_ctx.set("abcd1234")
    try:
        logger.warning("Query failed", extra={"filter": "{not a field}"})
    finally:
        poll_id_ctx.reset(token)

    record = json.loads(json_lines[0])
    assert record["severity"] == "WARNING"
    assert record["message"] == "Query failed"
    assert record["extra"]["filter"] == "{not a field}"
    assert record["poll_id"] == "abcd1234"


@pytest.mark.asyncio
async def test_poll_emits_audit_events(
    json_lines: list[str], fake_clock: FakeClock
) -> None:
    trigger = TriggerEvent(EXECUTION_START, EXECUTION_END)

    async def fetch() -> ObservedEvent:
        return ObservedEvent(EXECUTION_END)

    poller = EventuallyConsistentPoller(clock=fake_clock, sleep=fake_clock.sleep)
    await poller.poll(trigger, fetch)

    records = [json.loads(line) for line in json_lines]
    events = [r.get("extra", {}).get("audit_event") for r in records]
    assert events == ["poll_started", "poll_finished"]
    assert len({r["poll_id"] for r in records}) == 1
    assert poll_id_ctx.get() is None


@pytest.fixture
def restore_default_sink() -> Iterator[None]:
    yield
    logger.remove()
    logger.add(sys.stderr)


def test_json_sink_keeps_angle_brackets(
    restore_default_sink: None, capsys: pytest.CaptureFixture[str]
) -> None:
    """HTML error bodies are not parsed as loguru color markup."""
    setup_logging(json_logs=True, log_level="INFO")

    logger.error("Access denied (403): <html><b>Forbidden</b></html>")

    record = json.loads(capsys.readouterr().err.strip().splitlines()[-1])
    assert record["message"] == "Access denied (403): <html><b>Forbidden</b></html>"
    assert record["severity"] == "ERROR"
