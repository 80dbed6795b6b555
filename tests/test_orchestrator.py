"""Tests for the auto-profiler entry point and reporting path."""

import asyncio
import json
import re
import sqlite3
import threading
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from stall_profiler.aggregator import aggregate
from stall_profiler.artifacts import ArtifactStore
from stall_profiler.config import Config
from stall_profiler.events import ResponsivenessSource, ResponsiveStateChangeEvent
from stall_profiler.notifications import Notifier
from stall_profiler.orchestrator import (
    SHOW_DETAILS_LABEL,
    AutoProfiler,
    ContributorInfo,
    StaticResolver,
    UnresponsiveProfileRegistry,
    create_auto_profiler,
)
from stall_profiler.telemetry import UNRESPONSIVE_EVENT, UNRESPONSIVE_MORE_EVENT, TelemetryService
from tests.conftest import FakeSession, FakeTarget, make_profile

CONTRIBUTORS = {
    "ext.a": ContributorInfo(id="ext.a", name="a", display_name="Extension A"),
    "ext.c": ContributorInfo(id="ext.c", name="c"),
}


@pytest.fixture
def source() -> ResponsivenessSource:
    return ResponsivenessSource()


@pytest.fixture
def telemetry() -> MagicMock:
    return MagicMock(spec=TelemetryService)


@pytest.fixture
def notifier() -> MagicMock:
    mock = MagicMock(spec=Notifier)
    mock.prompt = AsyncMock(return_value=None)
    return mock


@pytest.fixture
def profiler(source, telemetry, notifier, tmp_path: Path) -> AutoProfiler:
    return AutoProfiler(
        source,
        StaticResolver(CONTRIBUTORS),
        artifacts=ArtifactStore(tmp_path),
        telemetry=telemetry,
        notifier=notifier,
    )


def severe_profile():
    return make_profile([("ext.c", 9_900_000)], end_time=10_000_000, data={"nodes": [1]})


class TestReport:
    @pytest.mark.asyncio
    async def test_unresolved_contributor_is_dropped(self, profiler, telemetry, tmp_path):
        """Nothing is reported when the top contributor cannot be resolved."""
        profile = make_profile([("unknown", 100)], end_time=100)

        result = await profiler.report(profile, aggregate(profile))

        assert result is None
        telemetry.public_log.assert_not_called()
        assert list(tmp_path.iterdir()) == []
        assert len(profiler.registry) == 0

    @pytest.mark.asyncio
    async def test_reports_event_and_artifact(self, profiler, telemetry, notifier, tmp_path):
        """A resolved stall emits the primary event and writes the profile."""
        profile = make_profile(data={"nodes": ["root"]})
        summary = aggregate(profile)

        episode_id = await profiler.report(profile, summary)

        assert episode_id is not None
        telemetry.public_log.assert_called_once()
        name, payload = telemetry.public_log.call_args.args
        assert name == UNRESPONSIVE_EVENT
        assert payload == {
            "id": episode_id,
            "duration": 6_000_000,
            "data": [
                {"id": "ext.a", "total": 5_500_000, "percentage": 92},
                {"id": "ext.b", "total": 500_000, "percentage": 8},
            ],
            "prompt": False,
        }

        artifacts = list(tmp_path.iterdir())
        assert len(artifacts) == 1
        assert re.fullmatch(r"exthost-[0-9a-f]{6}\.cpuprofile", artifacts[0].name)
        assert json.loads(artifacts[0].read_text()) == {"nodes": ["root"]}

        assert profiler.registry.get_unresponsive_profile("ext.a") is profile
        notifier.prompt.assert_not_called()

    @pytest.mark.asyncio
    async def test_episode_ids_are_unique(self, profiler):
        profile = make_profile()
        first = await profiler.report(profile, aggregate(profile))
        second = await profiler.report(profile, aggregate(profile))
        assert first != second

    @pytest.mark.asyncio
    async def test_severe_stall_prompts_user(self, profiler, telemetry, notifier):
        """A prompt-worthy stall shows a prompt naming the contributor."""
        profile = severe_profile()

        episode_id = await profiler.report(profile, aggregate(profile))
        await asyncio.sleep(0)

        notifier.prompt.assert_awaited_once()
        message, actions = notifier.prompt.call_args.args
        assert "'c'" in message
        assert "10 seconds" in message
        assert [a.label for a in actions] == [SHOW_DETAILS_LABEL]
        assert telemetry.public_log.call_args.args[1]["prompt"] is True

        # Taking the follow-up action emits the secondary event
        actions[0].run()
        telemetry.public_log.assert_called_with(UNRESPONSIVE_MORE_EVENT, {"id": episode_id})

    @pytest.mark.asyncio
    async def test_prompt_uses_display_name(self, profiler, notifier):
        profile = make_profile([("ext.a", 9_900_000)], end_time=10_000_000)

        await profiler.report(profile, aggregate(profile))
        await asyncio.sleep(0)

        message = notifier.prompt.call_args.args[0]
        assert "'Extension A'" in message

    @pytest.mark.asyncio
    async def test_artifact_failure_still_emits_event(
        self, source, telemetry, notifier, reported_errors
    ):
        """A failed artifact write is reported and the event still emitted."""
        artifacts = MagicMock(spec=ArtifactStore)
        error = OSError("disk full")
        artifacts.write.side_effect = error
        profiler = AutoProfiler(
            source, StaticResolver(CONTRIBUTORS), artifacts, telemetry, notifier
        )
        profile = make_profile()

        await profiler.report(profile, aggregate(profile))

        assert reported_errors == [error]
        assert telemetry.public_log.call_args.args[0] == UNRESPONSIVE_EVENT

    @pytest.mark.asyncio
    async def test_artifact_written_off_the_event_loop(
        self, source, telemetry, notifier, tmp_path
    ):
        """The blocking profile write does not run on the loop thread."""
        store = ArtifactStore(tmp_path)
        artifacts = MagicMock(spec=ArtifactStore)
        write_threads = []

        def write(profile):
            write_threads.append(threading.get_ident())
            return store.write(profile)

        artifacts.write.side_effect = write
        profiler = AutoProfiler(
            source, StaticResolver(CONTRIBUTORS), artifacts, telemetry, notifier
        )
        profile = make_profile()

        await profiler.report(profile, aggregate(profile))

        assert len(write_threads) == 1
        assert write_threads[0] != threading.get_ident()
        assert len(list(tmp_path.iterdir())) == 1

    @pytest.mark.asyncio
    async def test_resolver_failure_reported_from_background_task(
        self, source, telemetry, notifier, tmp_path, reported_errors
    ):
        """Errors in the spawned reporting task reach the error sink."""
        resolver = MagicMock()
        error = LookupError("registry offline")
        resolver.resolve = AsyncMock(side_effect=error)
        profiler = AutoProfiler(source, resolver, ArtifactStore(tmp_path), telemetry, notifier)
        target = FakeTarget()

        source.fire(ResponsiveStateChangeEvent(target, is_responsive=False))
        source.fire(ResponsiveStateChangeEvent(target, is_responsive=True))
        await profiler.aclose()

        assert reported_errors == [error]
        telemetry.public_log.assert_not_called()


class TestWiring:
    @pytest.mark.asyncio
    async def test_end_to_end(self, source, profiler, telemetry, tmp_path):
        """Unresponsive then responsive produces one reported episode."""
        target = FakeTarget(session=FakeSession(profile=make_profile()))

        source.fire(ResponsiveStateChangeEvent(target, is_responsive=False))
        assert profiler.sessions.is_profiling(target)
        source.fire(ResponsiveStateChangeEvent(target, is_responsive=True))
        await profiler.aclose()

        assert target.session.stop_calls == 1
        assert not profiler.sessions.is_profiling(target)
        telemetry.public_log.assert_called_once()
        assert telemetry.public_log.call_args.args[0] == UNRESPONSIVE_EVENT
        assert len(list(tmp_path.glob("*.cpuprofile"))) == 1

    @pytest.mark.asyncio
    async def test_close_unsubscribes(self, source, profiler):
        assert source.listener_count == 1

        profiler.close()

        assert source.listener_count == 0
        source.fire(ResponsiveStateChangeEvent(FakeTarget(), is_responsive=False))
        assert profiler.sessions.active_count == 0

    @pytest.mark.asyncio
    async def test_context_manager_unsubscribes(self, source, telemetry, notifier, tmp_path):
        with AutoProfiler(
            source, StaticResolver(), ArtifactStore(tmp_path), telemetry, notifier
        ):
            assert source.listener_count == 1
        assert source.listener_count == 0

    @pytest.mark.asyncio
    async def test_aclose_cancels_active_sessions(self, source, profiler):
        target = FakeTarget()
        source.fire(ResponsiveStateChangeEvent(target, is_responsive=False))

        await asyncio.wait_for(profiler.aclose(), timeout=1.0)

        assert target.session.stop_calls == 1
        assert profiler.sessions.active_count == 0

    @pytest.mark.asyncio
    async def test_close_callbacks_run(self, profiler):
        callback = MagicMock()
        profiler.add_close_callback(callback)
        profiler.close()
        callback.assert_called_once()


class TestCreateAutoProfiler:
    @pytest.mark.asyncio
    async def test_builds_from_config(self, source, tmp_path, monkeypatch):
        """The factory opens the events database and closes it on close()."""
        monkeypatch.setattr(Path, "home", lambda: tmp_path)
        config = Config()
        config.artifacts.directory = str(tmp_path / "profiles")

        profiler = create_auto_profiler(
            source, StaticResolver(CONTRIBUTORS), config=config, configure_logging=False
        )
        profile = make_profile()
        await profiler.report(profile, aggregate(profile))
        conn = profiler._telemetry.conn

        assert config.db_path.exists()
        assert conn.execute("SELECT COUNT(*) FROM diagnostic_events").fetchone()[0] == 1
        assert len(list((tmp_path / "profiles").glob("exthost-*.cpuprofile"))) == 1

        await profiler.aclose()
        assert source.listener_count == 0
        with pytest.raises(sqlite3.ProgrammingError):
            conn.execute("SELECT 1")

    @pytest.mark.asyncio
    async def test_telemetry_disabled_skips_database(self, source, tmp_path, monkeypatch):
        monkeypatch.setattr(Path, "home", lambda: tmp_path)
        config = Config()
        config.telemetry.enabled = False

        profiler = create_auto_profiler(
            source, StaticResolver(), config=config, configure_logging=False
        )

        assert not config.db_path.exists()
        profiler.close()


def test_registry_keeps_latest_profile():
    registry = UnresponsiveProfileRegistry()
    first, second = make_profile(), make_profile()

    registry.set_unresponsive_profile("ext.a", first)
    registry.set_unresponsive_profile("ext.a", second)

    assert registry.get_unresponsive_profile("ext.a") is second
    assert registry.get_unresponsive_profile("ext.b") is None
    assert len(registry) == 1
