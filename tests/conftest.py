"""Shared test fixtures for scriptwatch."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from scriptwatch.config import Settings
from scriptwatch.transport import LocalFileTransport

GOLDEN_DIR = Path(__file__).parent / "golden"

# Matches the timestamps in golden/api_execution/entries.json
EXECUTION_START = datetime(2025, 6, 1, 12, 0, 0, tzinfo=UTC)
EXECUTION_END = datetime(2025, 6, 1, 12, 0, 1, tzinfo=UTC)


class FakeClock:
    """Monotonic clock whose sleeps advance time instantly.

    Every sleep and (when wrapped with ``track``) every fetch is appended
    to ``events`` so tests can assert on the exact call order.
    """

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []
        self.events: list[str] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.events.append("sleep")
        self.now += seconds


class FakeNow:
    """Wall clock returning scripted datetimes, then repeating the last one."""

    def __init__(self, times: Iterable[datetime]) -> None:
        self._times = list(times)
        self.calls = 0

    def __call__(self) -> datetime:
        index = min(self.calls, len(self._times) - 1)
        self.calls += 1
        return self._times[index]


@pytest.fixture
def golden_dir() -> Path:
    return GOLDEN_DIR


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_now() -> FakeNow:
    return FakeNow(
        [EXECUTION_START, EXECUTION_END, EXECUTION_END + timedelta(seconds=2)]
    )


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        script_id="1abc_script",
        gcp_project_id="test-project",
        function="testFontSwap",
        access_token="ya29.test",
    )


@pytest.fixture
def local_transport() -> LocalFileTransport:
    return LocalFileTransport(GOLDEN_DIR / "api_execution")
