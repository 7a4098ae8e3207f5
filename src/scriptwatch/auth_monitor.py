"""Wait for an external OAuth flow to drop its token file.

The OAuth browser flow runs elsewhere (a separate process or a human on
another machine). Completion is signalled by the token file appearing, so
this is the eventually-consistent poller with "the marker exists" as the
match condition and a fixed polling interval.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from pathlib import Path

from loguru import logger

from scriptwatch.poller import (
    EventuallyConsistentPoller,
    NonRetryableError,
    ObservedEvent,
    PollOptions,
    PollOutcome,
    TriggerEvent,
)

DEFAULT_AUTH_TIMEOUT_SECONDS = 15 * 60
DEFAULT_AUTH_INTERVAL_SECONDS = 15.0


class AuthProcessExited(NonRetryableError):
    """The process running the OAuth flow exited without writing a token."""


def marker_exists(_trigger: TriggerEvent, observed: ObservedEvent | None) -> bool:
    return observed is not None


async def wait_for_token(
    token_path: str | Path,
    *,
    timeout_seconds: float = DEFAULT_AUTH_TIMEOUT_SECONDS,
    interval_seconds: float = DEFAULT_AUTH_INTERVAL_SECONDS,
    is_alive: Callable[[], bool] | None = None,
    fresh: bool = False,
    cancel_event: asyncio.Event | None = None,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> PollOutcome:
    """Poll until ``token_path`` exists.

    Args:
        token_path: File the OAuth flow writes on success.
        timeout_seconds: Give up after this long.
        interval_seconds: Fixed delay between checks.
        is_alive: Optional liveness probe for the process running the flow;
            once it reports False and no token exists, polling stops.
        fresh: Delete any existing token first so only a new one counts.
        cancel_event: Set to stop waiting early (e.g. on SIGINT).

    Returns:
        Matched with the token path as payload, TimedOut, or Failed.
    """
    path = Path(token_path)
    if fresh and path.exists():
        logger.info("Removing existing token for a fresh flow", extra={"path": str(path)})
        path.unlink()

    async def check_marker() -> ObservedEvent | None:
        if path.exists():
            modified = datetime.fromtimestamp(path.stat().st_mtime, tz=UTC)
            return ObservedEvent(timestamp=modified, payload=path)
        if is_alive is not None and not is_alive():
            raise AuthProcessExited("OAuth process exited without producing a token")
        return None

    options = PollOptions(
        initial_delay_seconds=interval_seconds,
        max_delay_seconds=interval_seconds,
        backoff_exponent=1.0,
        timeout_ms=int(timeout_seconds * 1000),
    )
    now = datetime.now(UTC)
    poller = EventuallyConsistentPoller(
        options, match=marker_exists, clock=clock, sleep=sleep
    )
    trigger = TriggerEvent(started_at=now, ended_at=now)
    return await poller.poll(trigger, check_marker, cancel_event)
