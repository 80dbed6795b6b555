"""Automatic profiling of unresponsive targets.

AutoProfiler listens for responsiveness changes, lets the SessionManager
capture a bounded profile, and reports the dominant contributor: a stored
profile artifact, a diagnostic event, and a prompt when the stall is severe.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Callable, Coroutine
from contextlib import ExitStack
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

import structlog

from stall_profiler import logging as console
from stall_profiler.aggregator import Profile, Summary
from stall_profiler.artifacts import ArtifactStore
from stall_profiler.config import Config
from stall_profiler.errors import on_unexpected_error
from stall_profiler.events import ResponsivenessSource, ResponsiveStateChangeEvent
from stall_profiler.formatting import format_slice_table, stall_seconds
from stall_profiler.notifications import Notifier, PromptAction
from stall_profiler.session import SessionManager
from stall_profiler.storage import get_connection, init_database
from stall_profiler.telemetry import UNRESPONSIVE_EVENT, UNRESPONSIVE_MORE_EVENT, TelemetryService

log = structlog.get_logger()

SHOW_DETAILS_LABEL = "Show Details"


@dataclass(frozen=True)
class ContributorInfo:
    """Display metadata for a contributor id."""

    id: str
    name: str
    display_name: str | None = None

    @property
    def label(self) -> str:
        return self.display_name or self.name


class IdentifierResolver(Protocol):
    async def resolve(self, contributor_id: str) -> ContributorInfo | None: ...


class StaticResolver:
    """Resolves contributor ids from a fixed mapping."""

    def __init__(self, contributors: dict[str, ContributorInfo] | None = None) -> None:
        self.contributors = dict(contributors or {})

    async def resolve(self, contributor_id: str) -> ContributorInfo | None:
        return self.contributors.get(contributor_id)


class UnresponsiveProfileRegistry:
    """Latest unresponsive profile per contributor, for later inspection."""

    def __init__(self) -> None:
        self._profiles: dict[str, Profile] = {}

    def set_unresponsive_profile(self, contributor_id: str, profile: Profile) -> None:
        self._profiles[contributor_id] = profile

    def get_unresponsive_profile(self, contributor_id: str) -> Profile | None:
        return self._profiles.get(contributor_id)

    def __len__(self) -> int:
        return len(self._profiles)


class AutoProfiler:
    """Entry point wiring responsiveness events to profiling and reporting.

    Subscribes to the source on construction. Use as a context manager, or call
    close()/aclose(), to unsubscribe.
    """

    def __init__(
        self,
        source: ResponsivenessSource,
        resolver: IdentifierResolver,
        artifacts: ArtifactStore,
        telemetry: TelemetryService,
        notifier: Notifier,
        registry: UnresponsiveProfileRegistry | None = None,
    ) -> None:
        self._resolver = resolver
        self._artifacts = artifacts
        self._telemetry = telemetry
        self._notifier = notifier
        self.registry = registry or UnresponsiveProfileRegistry()
        self.sessions = SessionManager(on_summary=self._on_summary)
        self._tasks: set[asyncio.Task] = set()

        with ExitStack() as stack:
            self._subscription = source.subscribe(self._on_responsive_change)
            stack.callback(self._subscription.dispose)
            # Keep the subscription past construction; close() releases it
            self._exit_stack = stack.pop_all()

    def _on_responsive_change(self, event: ResponsiveStateChangeEvent) -> None:
        self.sessions.handle_responsiveness_change(event.target, event.is_responsive)

    def _on_summary(self, profile: Profile, summary: Summary) -> None:
        self._spawn(self.report(profile, summary))

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            on_unexpected_error(task.exception())  # type: ignore[arg-type]

    async def report(self, profile: Profile, summary: Summary) -> str | None:
        """Report a profiled stall. Returns the episode id, or None if dropped."""
        top = summary.top
        contributor = await self._resolver.resolve(top.id)
        if contributor is None:
            log.debug("contributor_unresolved", contributor_id=top.id)
            return None

        episode_id = str(uuid.uuid4())
        self.registry.set_unresponsive_profile(contributor.id, profile)

        prompt = summary.prompt_warranted
        if prompt:
            message = (
                f"'{contributor.label}' froze the monitored process for more than "
                f"{stall_seconds(summary.duration)} seconds."
            )
            self._spawn(
                self._notifier.prompt(
                    message,
                    [
                        PromptAction(
                            SHOW_DETAILS_LABEL,
                            lambda: self._show_details(episode_id, summary),
                        )
                    ],
                )
            )

        path: Path | None = None
        try:
            path = await asyncio.to_thread(self._artifacts.write, profile)
        except (OSError, TypeError, ValueError) as e:
            on_unexpected_error(e)

        log.warning(
            "unresponsive_target",
            contributor_id=top.id,
            percentage=top.percentage,
            duration_ms=summary.duration / 1e3,
            profile_path=str(path) if path else None,
            slices=[s.to_dict() for s in summary.slices],
        )

        self._telemetry.public_log(
            UNRESPONSIVE_EVENT,
            {
                "id": episode_id,
                "duration": summary.duration,
                "data": [s.to_dict() for s in summary.slices],
                "prompt": prompt,
            },
        )
        return episode_id

    def _show_details(self, episode_id: str, summary: Summary) -> None:
        log.info(
            "unresponsive_details",
            episode_id=episode_id,
            table="\n".join(format_slice_table(summary.slices, summary.top)),
        )
        self._telemetry.public_log(UNRESPONSIVE_MORE_EVENT, {"id": episode_id})

    def add_close_callback(self, callback: Callable[[], object]) -> None:
        """Run callback when the profiler is closed (last registered runs first)."""
        self._exit_stack.callback(callback)

    def close(self) -> None:
        """Stop listening for responsiveness changes and release owned resources."""
        self._exit_stack.close()

    async def aclose(self) -> None:
        """Unsubscribe, end active sessions early, and wait for pending work."""
        self._subscription.dispose()
        self.sessions.cancel_all()
        await self.sessions.wait_idle()
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        self.close()

    def __enter__(self) -> "AutoProfiler":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


def create_auto_profiler(
    source: ResponsivenessSource,
    resolver: IdentifierResolver,
    config: Config | None = None,
    configure_logging: bool = True,
) -> AutoProfiler:
    """Build an AutoProfiler from configuration.

    Opens the diagnostic events database; closing the profiler closes it.
    """
    config = config or Config.load()
    if configure_logging:
        console.configure(config)

    conn = None
    if config.telemetry.enabled:
        init_database(config.db_path)
        conn = get_connection(config.db_path)

    try:
        profiler = AutoProfiler(
            source,
            resolver,
            artifacts=ArtifactStore(
                config.artifacts.path, config.artifacts.prefix, config.artifacts.extension
            ),
            telemetry=TelemetryService(conn, enabled=config.telemetry.enabled),
            notifier=Notifier(config.alerts),
        )
    except BaseException:
        if conn is not None:
            conn.close()
        raise

    if conn is not None:
        profiler.add_close_callback(conn.close)
    log.info("auto_profiler_ready", db_path=str(config.db_path), telemetry=conn is not None)
    if configure_logging:
        console.profiler_started(str(config.db_path))
    return profiler
