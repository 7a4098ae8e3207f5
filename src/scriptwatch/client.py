"""ScriptOpsClient - Main API for scriptwatch.

Runs Apps Script functions through the Execution API, waits for their
Cloud Logging entries to become visible, and benchmarks the round trip.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from loguru import logger

from scriptwatch.config import Settings
from scriptwatch.logs import LogEntry, LogRetriever
from scriptwatch.poller import (
    ErrorKind,
    EventuallyConsistentPoller,
    Failed,
    NonRetryableError,
    PollOptions,
    PollOutcome,
    TriggerEvent,
)
from scriptwatch.transport import (
    GoogleCloudTransport,
    Transport,
    TransportError,
    classify_transport_error,
)

DEFAULT_ITERATIONS = 5
DEFAULT_CYCLE_PAUSE_SECONDS = 3.0


# --- Data classes ---


@dataclass(frozen=True)
class ScriptError:
    """Error reported by a script execution (or by the API call itself)."""

    message: str
    type: str
    stack: tuple[str, ...] = ()

    def __str__(self) -> str:
        return f"{self.type}: {self.message}"


@dataclass(frozen=True)
class ExecutionResult:
    """Outcome of one ``scripts.run`` call, with its wall-clock window."""

    function: str
    started_at: datetime
    ended_at: datetime
    success: bool
    result: Any = None
    error: ScriptError | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def trigger(self) -> TriggerEvent:
        return TriggerEvent(started_at=self.started_at, ended_at=self.ended_at)


@dataclass(frozen=True)
class LogCollection:
    """Poll outcome plus the entries retrieved afterwards."""

    outcome: PollOutcome
    entries: list[LogEntry] = field(default_factory=list)


@dataclass(frozen=True)
class CycleResult:
    """Timings for one benchmark cycle (milliseconds)."""

    cycle: int
    execute_ms: int
    log_ms: int
    total_ms: int
    success: bool
    logs_retrieved: int = 0
    outcome: str = ""
    error: str = ""


@dataclass
class BenchmarkReport:
    """Aggregated benchmark cycles."""

    function: str
    cycles: list[CycleResult] = field(default_factory=list)

    @property
    def successful(self) -> list[CycleResult]:
        return [c for c in self.cycles if c.success]

    @property
    def failed(self) -> list[CycleResult]:
        return [c for c in self.cycles if not c.success]

    def _average(self, attr: str) -> float:
        values = [getattr(c, attr) for c in self.successful]
        return sum(values) / len(values) if values else 0.0

    @property
    def average_total_ms(self) -> float:
        return self._average("total_ms")

    @property
    def average_execute_ms(self) -> float:
        return self._average("execute_ms")

    @property
    def average_log_ms(self) -> float:
        return self._average("log_ms")

    @property
    def min_total_ms(self) -> int:
        return min((c.total_ms for c in self.successful), default=0)

    @property
    def max_total_ms(self) -> int:
        return max((c.total_ms for c in self.successful), default=0)

    @property
    def total_logs_retrieved(self) -> int:
        return sum(c.logs_retrieved for c in self.cycles)

    @property
    def rating(self) -> str:
        """Coarse rating of the average successful cycle time."""
        if not self.successful:
            return "no successful cycles"
        seconds = self.average_total_ms / 1000
        if seconds < 30:
            return "excellent"
        if seconds < 60:
            return "good"
        if seconds < 120:
            return "acceptable"
        return "slow"


def parse_run_response(
    function: str, started_at: datetime, ended_at: datetime, data: dict[str, Any]
) -> ExecutionResult:
    """Convert a ``scripts.run`` operation into an ExecutionResult."""
    error = data.get("error")
    if error:
        details = (error.get("details") or [{}])[0]
        stack = tuple(
            f"{frame.get('function', '?')}:{frame.get('lineNumber', '?')}"
            for frame in details.get("scriptStackTraceElements", [])
        )
        return ExecutionResult(
            function=function,
            started_at=started_at,
            ended_at=ended_at,
            success=False,
            error=ScriptError(
                message=details.get("errorMessage", error.get("message", "")),
                type=details.get("errorType", "ScriptError"),
                stack=stack,
            ),
            raw=data,
        )
    return ExecutionResult(
        function=function,
        started_at=started_at,
        ended_at=ended_at,
        success=True,
        result=data.get("response", {}).get("result"),
        raw=data,
    )


# --- Client ---


class ScriptOpsClient:
    """Client for running Apps Script functions and collecting their logs.

    Example:
        >>> client = ScriptOpsClient(settings, access_token="ya29...")
        >>> execution, logs = await client.run_and_collect("myFunction")
    """

    def __init__(
        self,
        settings: Settings,
        *,
        access_token: str | None = None,
        transport: Transport | None = None,
        now: Callable[[], datetime] | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if transport is None:
            if not access_token:
                raise ValueError("access_token is required without a transport")
            transport = GoogleCloudTransport(access_token)
        self._settings = settings
        self._transport = transport
        self._now = now or (lambda: datetime.now(UTC))
        self._clock = clock
        self._sleep = sleep
        self.logs = LogRetriever(transport, settings.gcp_project_id, now=self._now)

    async def close(self) -> None:
        """Close the underlying transport."""
        await self._transport.close()

    # --- Execute ---

    async def execute(
        self, function: str, parameters: list[Any] | None = None
    ) -> ExecutionResult:
        """Run ``function`` and record when it started and ended.

        Script errors and transient API failures come back as
        ``success=False``. Authentication and not-found errors raise.
        """
        started_at = self._now()
        logger.info(
            "Executing script function",
            extra={"script_id": self._settings.script_id, "function": function},
        )
        try:
            data = await self._transport.run_function(
                self._settings.script_id,
                function,
                parameters,
                dev_mode=self._settings.dev_mode,
            )
        except NonRetryableError:
            raise
        except TransportError as e:
            ended_at = self._now()
            logger.warning("Execution API call failed", extra={"error": str(e)})
            return ExecutionResult(
                function=function,
                started_at=started_at,
                ended_at=ended_at,
                success=False,
                error=ScriptError(message=str(e), type=type(e).__name__),
            )

        result = parse_run_response(function, started_at, self._now(), data)
        if result.error is not None:
            logger.warning(
                "Script reported an error",
                extra={"function": function, "error": str(result.error)},
            )
        return result

    # --- Logs ---

    def poller(self, options: PollOptions | None = None) -> EventuallyConsistentPoller:
        return EventuallyConsistentPoller(
            options or self._settings.poll_options(),
            classify=classify_transport_error,
            clock=self._clock,
            sleep=self._sleep,
        )

    async def collect_logs(
        self,
        execution: ExecutionResult,
        options: PollOptions | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> LogCollection:
        """Wait for ``execution`` to show up in Cloud Logging, then fetch its entries.

        A timeout still fetches whatever the execution window holds; a
        cancelled or non-retryable poll fetches nothing.
        """
        outcome = await self.poller(options).poll(
            execution.trigger, self.logs.observe_latest, cancel_event
        )
        if isinstance(outcome, Failed):
            return LogCollection(outcome)
        entries = await self.logs.execution_logs(execution)
        return LogCollection(outcome, entries)

    async def run_and_collect(
        self,
        function: str,
        parameters: list[Any] | None = None,
        *,
        options: PollOptions | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> tuple[ExecutionResult, LogCollection]:
        """Execute ``function`` and collect its logs."""
        execution = await self.execute(function, parameters)
        collection = await self.collect_logs(execution, options, cancel_event)
        return execution, collection

    # --- Benchmark ---

    async def benchmark(
        self,
        function: str,
        iterations: int = DEFAULT_ITERATIONS,
        *,
        pause_seconds: float = DEFAULT_CYCLE_PAUSE_SECONDS,
        options: PollOptions | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> BenchmarkReport:
        """Repeat execute + collect_logs and time each cycle.

        A failing cycle is recorded and the benchmark moves on. A cycle
        interrupted through ``cancel_event`` is recorded as failed and ends
        the run without the pause.
        """
        report = BenchmarkReport(function=function)

        def ms_since(start: float) -> int:
            return int((self._clock() - start) * 1000)

        for cycle in range(1, iterations + 1):
            if cancel_event is not None and cancel_event.is_set():
                break
            cycle_start = self._clock()
            try:
                execute_start = self._clock()
                execution = await self.execute(function)
                execute_ms = ms_since(execute_start)

                log_start = self._clock()
                collection = await self.collect_logs(execution, options, cancel_event)
                log_ms = ms_since(log_start)
                cancelled = (
                    isinstance(collection.outcome, Failed)
                    and collection.outcome.kind is ErrorKind.CANCELLED
                )
                error = "cancelled" if cancelled else str(execution.error or "")

                report.cycles.append(
                    CycleResult(
                        cycle=cycle,
                        execute_ms=execute_ms,
                        log_ms=log_ms,
                        total_ms=ms_since(cycle_start),
                        success=execution.success and not cancelled,
                        logs_retrieved=len(collection.entries),
                        outcome=type(collection.outcome).__name__,
                        error=error,
                    )
                )
            except Exception as e:
                logger.exception("Benchmark cycle failed", extra={"cycle": cycle})
                report.cycles.append(
                    CycleResult(
                        cycle=cycle,
                        execute_ms=0,
                        log_ms=0,
                        total_ms=ms_since(cycle_start),
                        success=False,
                        error=str(e),
                    )
                )

            if cancel_event is not None and cancel_event.is_set():
                break
            if cycle < iterations:
                await self._sleep(pause_seconds)

        return report
