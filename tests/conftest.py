"""Shared test fixtures for stall-profiler."""

import asyncio
import logging
import time

import pytest
import structlog

from stall_profiler.aggregator import Profile
from stall_profiler.errors import set_unexpected_error_handler


def make_profile(
    samples: list[tuple[str, float]] | None = None,
    start_time: float = 0,
    end_time: float = 6_000_000,
    data: object = None,
) -> Profile:
    """Create a Profile from (id, delta) samples."""
    if samples is None:
        samples = [("ext.a", 2_000_000), ("ext.b", 500_000), ("ext.a", 3_500_000)]
    return Profile(
        ids=[s[0] for s in samples],
        deltas=[s[1] for s in samples],
        start_time=start_time,
        end_time=end_time,
        data=data if data is not None else {"nodes": [], "samples": []},
    )


class FakeSession:
    """Profiling session returning a canned profile (or raising)."""

    def __init__(self, profile: Profile | None = None, error: Exception | None = None):
        self.profile = profile or make_profile()
        self.error = error
        self.stop_calls = 0
        self.stopped_at: float | None = None

    async def stop(self) -> Profile:
        self.stop_calls += 1
        self.stopped_at = time.monotonic()
        if self.error is not None:
            raise self.error
        return self.profile


class FakeTarget:
    """Profilable target. Hashes by identity, like a real process handle."""

    def __init__(
        self,
        profileable: bool = True,
        session: FakeSession | None = None,
        start_error: Exception | None = None,
        start_delay: float = 0,
    ):
        self.profileable = profileable
        self.session = session or FakeSession()
        self.start_error = start_error
        self.start_delay = start_delay
        self.start_calls = 0
        self.started_at: float | None = None

    def can_profile(self) -> bool:
        return self.profileable

    async def start_profiling_session(self) -> FakeSession:
        self.start_calls += 1
        if self.start_delay:
            await asyncio.sleep(self.start_delay)
        if self.start_error is not None:
            raise self.start_error
        self.started_at = time.monotonic()
        return self.session


@pytest.fixture
def reported_errors():
    """Collect errors sent to the unexpected-error sink during the test."""
    errors: list[BaseException] = []
    previous = set_unexpected_error_handler(errors.append)
    yield errors
    set_unexpected_error_handler(previous)


@pytest.fixture(autouse=True)
def _reset_logging():
    """Undo any structlog/stdlib logging configuration done by a test."""
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    structlog.reset_defaults()
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)
