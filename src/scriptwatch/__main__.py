"""CLI entry point for scriptwatch.

Usage:
    python -m scriptwatch run [function] [--arg value]... [--no-logs]
    python -m scriptwatch logs [--limit N]  (at most 5 entries per query)
    python -m scriptwatch benchmark [function] [--iterations N]
    python -m scriptwatch wait-auth [--token-path PATH] [--timeout S] [--fresh]

Configuration comes from SCRIPTWATCH_* environment variables (or .env);
``--script`` overrides the script ID and accepts Apps Script URLs.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import re
import signal
import sys
from collections.abc import Iterator

from scriptwatch.auth_monitor import wait_for_token
from scriptwatch.client import BenchmarkReport, ExecutionResult, ScriptOpsClient
from scriptwatch.config import Settings, get_settings
from scriptwatch.credentials import CredentialsError, load_access_token
from scriptwatch.logging import setup_logging
from scriptwatch.logs import LATEST_API_PAGE_SIZE, LogEntry, split_by_invocation
from scriptwatch.poller import ErrorKind, Failed, Matched, PollOutcome, TimedOut

EDITOR_ENTRIES_SHOWN = 3


def parse_script_id(id_or_url: str) -> str:
    """Extract script ID from a URL or return as-is.

    Supports URLs like:
      https://script.google.com/d/SCRIPT_ID/edit
      https://script.google.com/home/projects/SCRIPT_ID/edit
    """
    patterns = [
        r"script\.google\.com/d/([a-zA-Z0-9_-]+)",
        r"script\.google\.com/home/projects/([a-zA-Z0-9_-]+)",
        r"script\.google\.com/macros/d/([a-zA-Z0-9_-]+)",
    ]
    for pattern in patterns:
        match = re.search(pattern, id_or_url)
        if match:
            return match.group(1)
    return id_or_url


def editor_url(script_id: str) -> str:
    return f"https://script.google.com/d/{script_id}/edit"


def positive_int(value: str) -> int:
    """argparse type for counts that must be at least 1."""
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, got {number}")
    return number


def _settings_from_args(args: argparse.Namespace) -> Settings:
    settings = get_settings()
    if getattr(args, "script", None):
        settings = settings.model_copy(update={"script_id": parse_script_id(args.script)})
    return settings


def _get_client(settings: Settings) -> ScriptOpsClient:
    """Authenticate and create a ScriptOpsClient."""
    settings.require("script_id", "gcp_project_id")
    token = load_access_token(settings)
    return ScriptOpsClient(settings, access_token=token)


@contextlib.contextmanager
def _cancel_on_sigint() -> Iterator[asyncio.Event]:
    """Map SIGINT onto a cancel event for the running poll."""
    cancel_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, cancel_event.set)
        installed = True
    except (NotImplementedError, RuntimeError):
        installed = False
    try:
        yield cancel_event
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)


# --- Output ---


def describe_outcome(outcome: PollOutcome) -> str:
    seconds = outcome.elapsed_ms / 1000
    if isinstance(outcome, Matched):
        return f"Logs caught up after {seconds:.1f}s"
    if isinstance(outcome, TimedOut):
        return f"Timed out after {seconds:.1f}s; showing best-effort results"
    if outcome.kind is ErrorKind.CANCELLED:
        return f"Cancelled after {seconds:.1f}s"
    return f"Stopped after {seconds:.1f}s: {outcome.error}"


def print_execution(execution: ExecutionResult) -> None:
    if execution.success:
        print(f"Executed {execution.function}() at {execution.ended_at.isoformat()}")
        if execution.result is not None:
            print(json.dumps(execution.result, indent=2, default=str))
        return
    print(f"Execution of {execution.function}() failed: {execution.error}", file=sys.stderr)
    if execution.error is not None:
        for frame in execution.error.stack:
            print(f"  at {frame}", file=sys.stderr)


def _print_entry(label: str, entry: LogEntry) -> None:
    when = entry.timestamp.astimezone().strftime("%Y-%m-%d %H:%M:%S")
    print(f"[{label}] {when} [{entry.severity}]")
    if entry.message:
        print(f"    {entry.message}")


def print_entries(entries: list[LogEntry]) -> None:
    api, editor = split_by_invocation(entries)
    for i, entry in enumerate(api, 1):
        _print_entry(f"API-{i}", entry)
    if editor:
        print(f"\nEditor executions (manual runs): {len(editor)}")
        for i, entry in enumerate(editor[:EDITOR_ENTRIES_SHOWN], 1):
            _print_entry(f"Editor-{i}", entry)
        if len(editor) > EDITOR_ENTRIES_SHOWN:
            print(f"... and {len(editor) - EDITOR_ENTRIES_SHOWN} more editor entries")


def print_report(report: BenchmarkReport) -> None:
    print(f"\nBenchmark: {report.function}() x {len(report.cycles)}")
    for c in report.cycles:
        status = "ok" if c.success else f"failed ({c.error})"
        print(
            f"  [{c.cycle}] total {c.total_ms / 1000:.1f}s "
            f"(execute {c.execute_ms / 1000:.1f}s, logs {c.log_ms / 1000:.1f}s, "
            f"{c.logs_retrieved} entries, {c.outcome or '-'}) {status}"
        )
    print(f"\n{len(report.successful)} succeeded, {len(report.failed)} failed")
    if report.successful:
        print(
            f"Average {report.average_total_ms / 1000:.1f}s "
            f"(execute {report.average_execute_ms / 1000:.1f}s, "
            f"logs {report.average_log_ms / 1000:.1f}s), "
            f"min {report.min_total_ms / 1000:.1f}s, "
            f"max {report.max_total_ms / 1000:.1f}s"
        )
    print(f"Rating: {report.rating}")


# --- Command handlers ---


async def cmd_run(args: argparse.Namespace) -> int:
    """Execute a function and collect its logs."""
    settings = _settings_from_args(args)
    function = args.function or settings.function
    options = settings.poll_options(timeout_ms=args.timeout_ms)

    client = _get_client(settings)
    try:
        with _cancel_on_sigint() as cancel_event:
            execution = await client.execute(function, args.arg)
            print_execution(execution)
            if args.no_logs:
                return 0 if execution.success else 1

            collection = await client.collect_logs(execution, options, cancel_event)
        print(describe_outcome(collection.outcome))
        if collection.entries:
            print_entries(collection.entries)
        else:
            print(f"No logs retrieved. Check manually at {editor_url(settings.script_id)}")
        if isinstance(collection.outcome, Failed):
            return 1
        return 0 if execution.success else 1
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        await client.close()


async def cmd_logs(args: argparse.Namespace) -> int:
    """Show the latest execution's entries."""
    settings = _settings_from_args(args)
    client = _get_client(settings)
    try:
        latest = await client.logs.latest_execution()
        if latest is None:
            print("No executions in the last hour.")
            return 0
        print(
            f"Latest execution ({latest.execution_type}) at "
            f"{latest.timestamp.isoformat()}"
        )
        print_entries(list(latest.entries[: args.limit]))
        return 0
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        await client.close()


async def cmd_benchmark(args: argparse.Namespace) -> int:
    """Repeat run + log collection and summarize timings."""
    settings = _settings_from_args(args)
    function = args.function or settings.function

    client = _get_client(settings)
    try:
        with _cancel_on_sigint() as cancel_event:
            report = await client.benchmark(
                function, args.iterations, cancel_event=cancel_event
            )
        print_report(report)
        return 0 if report.successful else 1
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        await client.close()


async def cmd_wait_auth(args: argparse.Namespace) -> int:
    """Wait for an OAuth flow to write the token file."""
    settings = get_settings()
    token_path = args.token_path or settings.token_path
    print(f"Waiting for {token_path} (timeout {args.timeout:.0f}s, Ctrl-C to stop)...")
    try:
        with _cancel_on_sigint() as cancel_event:
            outcome = await wait_for_token(
                token_path,
                timeout_seconds=args.timeout,
                interval_seconds=args.interval,
                fresh=args.fresh,
                cancel_event=cancel_event,
            )
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    if isinstance(outcome, Matched):
        print(f"Token written to {outcome.payload}")
        return 0
    print(describe_outcome(outcome), file=sys.stderr)
    return 1


# --- CLI setup ---


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="scriptwatch",
        description="Run Apps Script functions and wait for their Cloud Logging entries",
    )
    parser.add_argument("--script", help="Script ID or Apps Script URL")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # run
    run_parser = subparsers.add_parser("run", help="Execute a function and fetch its logs")
    run_parser.add_argument("function", nargs="?", default=None, help="Function name")
    run_parser.add_argument(
        "--arg",
        action="append",
        help="Argument to pass (can be repeated)",
    )
    run_parser.add_argument(
        "--no-logs",
        action="store_true",
        help="Skip waiting for Cloud Logging entries",
    )
    run_parser.add_argument(
        "--timeout-ms",
        type=int,
        default=None,
        help="Log polling budget in milliseconds",
    )
    run_parser.set_defaults(func=cmd_run)

    # logs
    logs_parser = subparsers.add_parser("logs", help="Show the latest execution's entries")
    logs_parser.add_argument(
        "--limit",
        type=positive_int,
        default=LATEST_API_PAGE_SIZE,
        help=(
            "Max entries to show (default: %(default)s; the latest-execution "
            f"query returns at most {LATEST_API_PAGE_SIZE} entries)"
        ),
    )
    logs_parser.set_defaults(func=cmd_logs)

    # benchmark
    bench_parser = subparsers.add_parser(
        "benchmark", help="Time repeated run + log retrieval cycles"
    )
    bench_parser.add_argument("function", nargs="?", default=None, help="Function name")
    bench_parser.add_argument(
        "--iterations",
        type=positive_int,
        default=5,
        help="Number of cycles (default: 5)",
    )
    bench_parser.set_defaults(func=cmd_benchmark)

    # wait-auth
    auth_parser = subparsers.add_parser(
        "wait-auth", help="Wait for an OAuth flow to write the token file"
    )
    auth_parser.add_argument("--token-path", default=None, help="Token file to watch")
    auth_parser.add_argument(
        "--timeout",
        type=float,
        default=900,
        help="Seconds to wait (default: 900)",
    )
    auth_parser.add_argument(
        "--interval",
        type=float,
        default=15,
        help="Seconds between checks (default: 15)",
    )
    auth_parser.add_argument(
        "--fresh",
        action="store_true",
        help="Delete an existing token first",
    )
    auth_parser.set_defaults(func=cmd_wait_auth)

    args = parser.parse_args()

    try:
        settings = get_settings()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1
    setup_logging(
        json_logs=settings.json_logs,
        log_level="DEBUG" if args.verbose else settings.log_level,
    )

    try:
        result: int = asyncio.run(args.func(args))
    except (ValueError, CredentialsError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return result


if __name__ == "__main__":
    sys.exit(main())
