"""Bounded exponential-backoff polling for eventually-consistent data.

A remote action (the trigger) produces a record that a query source only
exposes after some lag. The poller calls the query once immediately, then
backs off as ``delay = min(delay ** exponent, max_delay)`` until the
observed record lines up with the trigger or the time budget runs out.
On timeout one last unconditional fetch is made so the caller still gets
the freshest data available.

Retries are driven by tenacity's ``AsyncRetrying`` with a custom wait,
stop, and cancellable sleep.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Awaitable, Callable, Iterator
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from loguru import logger
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception,
    retry_if_result,
)

from scriptwatch.logging import (
    audit_poll_attempt_failed,
    audit_poll_finished,
    audit_poll_started,
    poll_id_ctx,
)

DEFAULT_INITIAL_DELAY_SECONDS = 10.0
DEFAULT_MAX_DELAY_SECONDS = 60.0
DEFAULT_BACKOFF_EXPONENT = 1.2
DEFAULT_TIMEOUT_MS = 120_000
DEFAULT_MATCH_TOLERANCE_MS = 5_000


# --- Errors ---


class ErrorKind(str, Enum):
    """Why a poll session ended in ``Failed`` (or why a query failed)."""

    QUERY_FAILED = "query_failed"
    CANCELLED = "cancelled"
    NON_RETRYABLE = "non_retryable"


class NonRetryableError(Exception):
    """Raised by a query callable for failures that must not be retried."""


class _PollCancelled(Exception):
    """Raised out of the sleep step when the cancel event fires."""


# --- Data classes ---


@dataclass(frozen=True)
class TriggerEvent:
    """Window during which the side-effecting remote action ran."""

    started_at: datetime
    ended_at: datetime


@dataclass(frozen=True)
class ObservedEvent:
    """Latest externally observable record returned by a query."""

    timestamp: datetime
    payload: Any = None


@dataclass(frozen=True)
class PollOptions:
    """Tuning knobs for one poll session."""

    initial_delay_seconds: float = DEFAULT_INITIAL_DELAY_SECONDS
    max_delay_seconds: float = DEFAULT_MAX_DELAY_SECONDS
    backoff_exponent: float = DEFAULT_BACKOFF_EXPONENT
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    match_tolerance_ms: int = DEFAULT_MATCH_TOLERANCE_MS

    def __post_init__(self) -> None:
        if self.initial_delay_seconds <= 0:
            raise ValueError("initial_delay_seconds must be positive")
        if self.max_delay_seconds < self.initial_delay_seconds:
            raise ValueError("max_delay_seconds must be >= initial_delay_seconds")
        if self.backoff_exponent < 1:
            raise ValueError("backoff_exponent must be >= 1")
        if self.timeout_ms < 0:
            raise ValueError("timeout_ms must not be negative")
        if self.match_tolerance_ms < 0:
            raise ValueError("match_tolerance_ms must not be negative")


@dataclass(frozen=True)
class Matched:
    """The observed record caught up with the trigger."""

    payload: Any
    elapsed_ms: int


@dataclass(frozen=True)
class TimedOut:
    """The budget ran out; ``payload`` comes from the final best-effort fetch."""

    elapsed_ms: int
    payload: Any = None


@dataclass(frozen=True)
class Failed:
    """Polling stopped early: cancelled or hit a non-retryable error."""

    kind: ErrorKind
    elapsed_ms: int
    error: BaseException | None = None


PollOutcome = Matched | TimedOut | Failed

FetchLatest = Callable[[], Awaitable[ObservedEvent | None]]
MatchCondition = Callable[[TriggerEvent, ObservedEvent | None], bool]
Classifier = Callable[[BaseException], ErrorKind]


@dataclass
class PollState:
    """Mutable bookkeeping for a single poll session."""

    attempt: int = 0
    current_delay_seconds: float = 0.0
    elapsed_ms: int = 0
    failures: int = 0
    last_error: BaseException | None = field(default=None, repr=False)


# --- Pure helpers ---


def next_delay(current: float, options: PollOptions) -> float:
    """Apply one backoff step, never shrinking and never passing the cap."""
    grown = min(current**options.backoff_exponent, options.max_delay_seconds)
    return max(current, grown)


def backoff_delays(options: PollOptions) -> Iterator[float]:
    """Yield the (infinite) sequence of sleep durations for ``options``."""
    delay = options.initial_delay_seconds
    while True:
        yield delay
        delay = next_delay(delay, options)


def delay_for_attempt(attempt: int, options: PollOptions) -> float:
    """Delay to sleep after the ``attempt``-th fetch (1-based)."""
    delay = options.initial_delay_seconds
    for _ in range(max(attempt - 1, 0)):
        delay = next_delay(delay, options)
    return delay


def within_tolerance(tolerance_ms: int) -> MatchCondition:
    """Symmetric timestamp window around ``trigger.ended_at``."""

    def _match(trigger: TriggerEvent, observed: ObservedEvent | None) -> bool:
        if observed is None:
            return False
        skew = abs((observed.timestamp - trigger.ended_at).total_seconds() * 1000)
        return skew <= tolerance_ms

    return _match


def default_classifier(exc: BaseException) -> ErrorKind:
    if isinstance(exc, NonRetryableError):
        return ErrorKind.NON_RETRYABLE
    return ErrorKind.QUERY_FAILED


# --- Poller ---


class EventuallyConsistentPoller:
    """Waits for a query source to reflect a trigger event.

    One instance can run any number of sessions, sequentially or
    concurrently; each ``poll`` call keeps its own ``PollState``.

    Example:
        >>> poller = EventuallyConsistentPoller(PollOptions(timeout_ms=60_000))
        >>> outcome = await poller.poll(trigger, retriever.observe_latest)
    """

    def __init__(
        self,
        options: PollOptions | None = None,
        *,
        match: MatchCondition | None = None,
        classify: Classifier | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the poller.

        Args:
            options: Backoff and timeout settings (defaults if omitted).
            match: Predicate deciding whether an observation satisfies the
                trigger. Defaults to the symmetric tolerance window.
            classify: Maps a query exception to QUERY_FAILED (retry) or
                NON_RETRYABLE (abort).
            clock: Monotonic seconds source, injectable for tests.
            sleep: Awaitable sleep primitive, injectable for tests.
        """
        self.options = options or PollOptions()
        self._match = match or within_tolerance(self.options.match_tolerance_ms)
        self._classify = classify or default_classifier
        self._clock = clock
        self._sleep = sleep

    async def poll(
        self,
        trigger: TriggerEvent,
        fetch_latest: FetchLatest,
        cancel_event: asyncio.Event | None = None,
    ) -> PollOutcome:
        """Poll ``fetch_latest`` until it matches ``trigger`` or time runs out.

        Returns:
            Matched, TimedOut, or Failed. Ordinary timeouts never raise.
        """
        options = self.options
        state = PollState(current_delay_seconds=options.initial_delay_seconds)
        start = self._clock()
        token = poll_id_ctx.set(uuid.uuid4().hex[:8])

        def elapsed_ms() -> int:
            state.elapsed_ms = max(state.elapsed_ms, int((self._clock() - start) * 1000))
            return state.elapsed_ms

        def is_retryable(exc: BaseException) -> bool:
            # Task cancellation and interpreter exits are never query failures.
            if not isinstance(exc, Exception):
                return False
            return self._classify(exc) is ErrorKind.QUERY_FAILED

        def not_matched(observed: ObservedEvent | None) -> bool:
            return not self._match(trigger, observed)

        def wait(retry_state: RetryCallState) -> float:
            return delay_for_attempt(retry_state.attempt_number, options)

        def stop(retry_state: RetryCallState) -> bool:
            remaining = options.timeout_ms - elapsed_ms()
            if remaining <= 0:
                return True
            # Never sleep past the budget; go straight to the final fetch.
            return wait(retry_state) * 1000 > remaining

        async def pause(seconds: float) -> None:
            if cancel_event is None:
                await self._sleep(seconds)
                return
            if cancel_event.is_set():
                raise _PollCancelled
            sleeper = asyncio.ensure_future(self._sleep(seconds))
            waiter = asyncio.ensure_future(cancel_event.wait())
            try:
                await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                for task in (sleeper, waiter):
                    task.cancel()
            if cancel_event.is_set():
                raise _PollCancelled

        def before_sleep(retry_state: RetryCallState) -> None:
            state.current_delay_seconds = wait(retry_state)
            outcome = retry_state.outcome
            if outcome is not None and outcome.failed:
                state.failures += 1
                state.last_error = outcome.exception()
                audit_poll_attempt_failed(state.attempt, state.last_error)
            logger.info(
                "Observed state has not caught up, backing off",
                extra={
                    "attempt": state.attempt,
                    "delay_seconds": round(state.current_delay_seconds, 1),
                    "elapsed_ms": elapsed_ms(),
                    "remaining_ms": max(options.timeout_ms - state.elapsed_ms, 0),
                },
            )

        async def attempt() -> ObservedEvent | None:
            state.attempt += 1
            return await fetch_latest()

        retrying = AsyncRetrying(
            retry=retry_if_exception(is_retryable) | retry_if_result(not_matched),
            wait=wait,
            stop=stop,
            sleep=pause,
            before_sleep=before_sleep,
            reraise=False,
        )

        audit_poll_started(trigger.ended_at, options)
        try:
            try:
                observed = await retrying(attempt)
            except RetryError:
                result = await self._final_fetch(fetch_latest, state, elapsed_ms)
            except _PollCancelled:
                result = Failed(ErrorKind.CANCELLED, elapsed_ms())
            except Exception as e:
                # Only non-retryable errors escape the retry loop.
                result = Failed(ErrorKind.NON_RETRYABLE, elapsed_ms(), e)
            else:
                payload = observed.payload if observed is not None else None
                result = Matched(payload, elapsed_ms())
            audit_poll_finished(result, state.attempt, state.failures)
            return result
        finally:
            poll_id_ctx.reset(token)

    async def _final_fetch(
        self,
        fetch_latest: FetchLatest,
        state: PollState,
        elapsed_ms: Callable[[], int],
    ) -> PollOutcome:
        state.attempt += 1
        try:
            observed = await fetch_latest()
        except Exception as e:
            if self._classify(e) is ErrorKind.NON_RETRYABLE:
                return Failed(ErrorKind.NON_RETRYABLE, elapsed_ms(), e)
            state.failures += 1
            state.last_error = e
            audit_poll_attempt_failed(state.attempt, e)
            return TimedOut(elapsed_ms(), None)
        payload = observed.payload if observed is not None else None
        return TimedOut(elapsed_ms(), payload)


async def poll_until_match(
    trigger: TriggerEvent,
    fetch_latest: FetchLatest,
    options: PollOptions | None = None,
    *,
    cancel_event: asyncio.Event | None = None,
    match: MatchCondition | None = None,
    classify: Classifier | None = None,
) -> PollOutcome:
    """One-shot convenience wrapper around ``EventuallyConsistentPoller``."""
    poller = EventuallyConsistentPoller(options, match=match, classify=classify)
    return await poller.poll(trigger, fetch_latest, cancel_event)
