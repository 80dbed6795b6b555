"""Per-target profiling session lifecycle.

When a target reports it became unresponsive, a profiling session is started
and kept open until the target is responsive again or SESSION_TIMEOUT elapses,
whichever comes first. The captured profile is then aggregated and handed to
the reporting callback. At most one session is active per target.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Protocol

import structlog

from stall_profiler.aggregator import Profile, Summary, aggregate
from stall_profiler.errors import on_unexpected_error

log = structlog.get_logger()

# Upper bound on a single capture. Fixed, not configurable.
SESSION_TIMEOUT = 5.0  # seconds


class ProfileSession(Protocol):
    """An open profiling capture against one target."""

    async def stop(self) -> Profile: ...


class Target(Protocol):
    """A monitored process that can report responsiveness and be profiled."""

    def can_profile(self) -> bool: ...

    async def start_profiling_session(self) -> ProfileSession: ...


class CancellationSignal:
    """One-shot flag used to end a bounded wait early.

    Cancelling is idempotent; once cancelled the signal stays cancelled.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


class SessionManager:
    """Starts, bounds, and cancels profiling sessions per target."""

    def __init__(
        self,
        on_summary: Callable[[Profile, Summary], None] | None = None,
    ) -> None:
        """Initialize session manager.

        Args:
            on_summary: Called with (profile, summary) when a session produced
                        a profile with something to report.
        """
        self._on_summary = on_summary
        # Active-session table. Only mutated from synchronous code on the event
        # loop thread, so check-then-insert cannot interleave with another event.
        self._sessions: dict[Target, CancellationSignal] = {}
        self._tasks: set[asyncio.Task] = set()

    @property
    def active_count(self) -> int:
        return len(self._sessions)

    def is_profiling(self, target: Target) -> bool:
        return target in self._sessions

    def handle_responsiveness_change(
        self, target: Target, is_responsive: bool
    ) -> asyncio.Task | None:
        """Start or cancel profiling for a target.

        Returns the session task when a new session was started, else None.
        Must be called from a running event loop.
        """
        if not target.can_profile():
            return None

        if is_responsive and target in self._sessions:
            # Entry is removed by the session task once the capture is stopped
            log.debug("profiling_cancel_requested", target=repr(target))
            self._sessions[target].cancel()
            return None

        if not is_responsive and target not in self._sessions:
            # Raises before anything is registered when no loop is running
            loop = asyncio.get_running_loop()
            signal = CancellationSignal()
            self._sessions[target] = signal
            task = loop.create_task(self._run_session(target, signal))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            return task

        return None

    async def _run_session(self, target: Target, signal: CancellationSignal) -> None:
        try:
            session = await target.start_profiling_session()
        except Exception:
            # Expected when another profiler is already attached
            self._sessions.pop(target, None)
            return
        except BaseException:
            self._sessions.pop(target, None)
            raise

        log.debug("profiling_started", target=repr(target))

        try:
            try:
                await asyncio.wait_for(signal.wait(), timeout=SESSION_TIMEOUT)
            except asyncio.TimeoutError:
                pass
            except asyncio.CancelledError:
                # Task cancelled mid-capture: detach the profiler, then unwind
                try:
                    await session.stop()
                except Exception as e:
                    on_unexpected_error(e)
                raise

            profile = await session.stop()
            log.debug(
                "profiling_stopped",
                target=repr(target),
                cancelled=signal.is_cancelled,
                samples=len(profile.ids),
            )
            summary = aggregate(profile)
            if summary is not None and self._on_summary is not None:
                self._on_summary(profile, summary)
        except Exception as e:
            on_unexpected_error(e)
        finally:
            self._sessions.pop(target, None)

    def cancel_all(self) -> None:
        """Signal every active session to stop early."""
        for signal in self._sessions.values():
            signal.cancel()

    async def wait_idle(self) -> None:
        """Wait until every in-flight session task has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
