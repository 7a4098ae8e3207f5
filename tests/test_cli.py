"""Tests for CLI helpers and output formatting."""

from __future__ import annotations

import argparse
from datetime import UTC, datetime
from pathlib import Path

import pytest

from scriptwatch.__main__ import (
    cmd_wait_auth,
    describe_outcome,
    parse_script_id,
    positive_int,
    print_entries,
    print_execution,
    print_report,
)
from scriptwatch.client import BenchmarkReport, CycleResult, ExecutionResult, ScriptError
from scriptwatch.logs import parse_log_entry
from scriptwatch.poller import ErrorKind, Failed, Matched, TimedOut

from conftest import EXECUTION_END, EXECUTION_START


def test_parse_script_id_from_url() -> None:
    url = "https://script.google.com/d/1abc_xyz/edit"
    assert parse_script_id(url) == "1abc_xyz"


def test_parse_script_id_from_projects_url() -> None:
    url = "https://script.google.com/home/projects/1abc_xyz/edit"
    assert parse_script_id(url) == "1abc_xyz"


def test_parse_script_id_from_macros_url() -> None:
    url = "https://script.google.com/macros/d/1abc_xyz/exec"
    assert parse_script_id(url) == "1abc_xyz"


def test_parse_script_id_plain() -> None:
    assert parse_script_id("1abc_xyz") == "1abc_xyz"


@pytest.mark.parametrize(
    ("outcome", "expected"),
    [
        (Matched(None, 12_300), "Logs caught up after 12.3s"),
        (TimedOut(120_000), "Timed out after 120.0s"),
        (Failed(ErrorKind.CANCELLED, 4_000), "Cancelled after 4.0s"),
        (
            Failed(ErrorKind.NON_RETRYABLE, 0, RuntimeError("token revoked")),
            "Stopped after 0.0s: token revoked",
        ),
    ],
)
def test_describe_outcome(outcome: object, expected: str) -> None:
    assert describe_outcome(outcome).startswith(expected)


def test_print_execution_failure_shows_stack(capsys: pytest.CaptureFixture[str]) -> None:
    execution = ExecutionResult(
        function="testFontSwap",
        started_at=EXECUTION_START,
        ended_at=EXECUTION_END,
        success=False,
        error=ScriptError("boom", "TypeError", ("swapFonts:42",)),
    )

    print_execution(execution)

    err = capsys.readouterr().err
    assert "TypeError: boom" in err
    assert "at swapFonts:42" in err


def test_print_entries_limits_editor_entries(capsys: pytest.CaptureFixture[str]) -> None:
    def entry(kind: str, message: str) -> object:
        return parse_log_entry(
            {
                "timestamp": datetime(2025, 6, 1, 12, tzinfo=UTC).isoformat(),
                "textPayload": message,
                "resource": {"labels": {"invocation_type": kind}},
            }
        )

    entries = [entry("apps script api", "from api")]
    entries += [entry("editor", f"manual {i}") for i in range(5)]

    print_entries(entries)

    out = capsys.readouterr().out
    assert "[API-1]" in out
    assert "from api" in out
    assert "Editor executions (manual runs): 5" in out
    assert "[Editor-3]" in out
    assert "[Editor-4]" not in out
    assert "... and 2 more editor entries" in out


def test_print_report(capsys: pytest.CaptureFixture[str]) -> None:
    report = BenchmarkReport(
        function="testFontSwap",
        cycles=[
            CycleResult(1, 2_000, 8_000, 10_000, True, 2, "Matched"),
            CycleResult(2, 0, 0, 500, False, error="expired"),
        ],
    )

    print_report(report)

    out = capsys.readouterr().out
    assert "Benchmark: testFontSwap() x 2" in out
    assert "failed (expired)" in out
    assert "1 succeeded, 1 failed" in out
    assert "Rating: excellent" in out


@pytest.mark.parametrize("value", ["0", "-3"])
def test_positive_int_rejects_non_positive(value: str) -> None:
    with pytest.raises(argparse.ArgumentTypeError, match="at least 1"):
        positive_int(value)


def test_positive_int_accepts_counts() -> None:
    assert positive_int("3") == 3


@pytest.mark.asyncio
async def test_wait_auth_reports_filesystem_errors(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    """An unusable token path prints an error and exits 1."""
    args = argparse.Namespace(
        token_path=str(tmp_path), timeout=30.0, interval=15.0, fresh=True
    )

    assert await cmd_wait_auth(args) == 1
    assert capsys.readouterr().err.startswith("Error: ")
