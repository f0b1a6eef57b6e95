"""
Tests for the cron scheduler.
"""

import asyncio
from typing import Any, Callable
from unittest.mock import AsyncMock, MagicMock

import pytest

from mls_replicator.scheduler import ReplicationScheduler
from mls_replicator.sources import MlsSource
from mls_replicator.sync.orchestrator import RunResult, SourceRuntime


def make_orchestrator(*sources: MlsSource) -> MagicMock:
    runtimes = {source.name: SourceRuntime(source, MagicMock(), []) for source in sources}
    orchestrator = MagicMock()
    orchestrator.source_names = list(runtimes)
    orchestrator.invalid_sources = {}
    orchestrator.get_runtime.side_effect = runtimes.__getitem__
    orchestrator.run = AsyncMock(
        side_effect=lambda source, operation: RunResult(source, operation, "batch-1", success=True)
    )
    return orchestrator


@pytest.fixture
def scheduled_source(make_source: Callable[..., MlsSource]) -> MlsSource:
    return make_source(cron={
        "sync": {"enabled": True, "cron_strings": ["*/5 * * * *", "30 2 * * *"]},
        "purge": {"enabled": False, "cron_strings": ["0 3 * * *"]},
        "reconcile": {"enabled": True, "cron_strings": ["0 4 * * 0"]},
    })


class TestRegisterJobs:
    """Tests for job registration."""

    def test_job_per_cron_string_of_enabled_schedules(self, scheduled_source: MlsSource) -> None:
        scheduler = ReplicationScheduler(make_orchestrator(scheduled_source))

        assert scheduler.register_jobs() == 3

        job_ids = sorted(job["id"] for job in scheduler.get_status()["jobs"])
        assert job_ids == ["testMls:reconcile:0", "testMls:sync:0", "testMls:sync:1"]

    def test_nothing_scheduled_by_default(self, source: MlsSource) -> None:
        scheduler = ReplicationScheduler(make_orchestrator(source))

        assert scheduler.register_jobs() == 0
        assert scheduler.get_status()["jobs"] == []

    def test_register_twice_replaces(self, scheduled_source: MlsSource) -> None:
        scheduler = ReplicationScheduler(make_orchestrator(scheduled_source))
        scheduler.register_jobs()
        scheduler.register_jobs()

        assert len(scheduler.get_status()["jobs"]) == 3


class TestRunJob:
    """Tests for running a scheduled tick."""

    @pytest.mark.asyncio
    async def test_runs_and_records_result(self, source: MlsSource) -> None:
        orchestrator = make_orchestrator(source)
        scheduler = ReplicationScheduler(orchestrator)

        result = await scheduler.run_job("testMls", "sync")

        assert result is not None and result.success
        orchestrator.run.assert_awaited_once_with("testMls", "sync")
        orchestrator.print_result.assert_called_once_with(result)
        status = scheduler.get_status()
        assert status["last_results"]["testMls sync"]["success"] is True
        assert status["in_flight"] == []

    @pytest.mark.asyncio
    async def test_overlapping_tick_is_dropped(self, source: MlsSource) -> None:
        orchestrator = make_orchestrator(source)
        release = asyncio.Event()

        async def slow_run(source_name: str, operation: str) -> RunResult:
            if operation == "sync":
                await release.wait()
            return RunResult(source_name, operation, "batch-1", success=True)

        orchestrator.run.side_effect = slow_run
        scheduler = ReplicationScheduler(orchestrator)

        first = asyncio.create_task(scheduler.run_job("testMls", "sync"))
        await asyncio.sleep(0)
        assert scheduler.is_running("testMls", "sync")

        assert await scheduler.run_job("testMls", "sync") is None
        # Other operations of the same source are not blocked
        assert await scheduler.run_job("testMls", "purge") is not None

        release.set()
        assert (await first) is not None
        assert orchestrator.run.await_count == 2
        assert not scheduler.is_running("testMls", "sync")

    @pytest.mark.asyncio
    async def test_crash_is_recorded_not_raised(self, source: MlsSource) -> None:
        orchestrator = make_orchestrator(source)
        orchestrator.run.side_effect = RuntimeError("boom")
        scheduler = ReplicationScheduler(orchestrator)

        assert await scheduler.run_job("testMls", "reconcile") is None

        last: dict[str, Any] = scheduler.get_status()["last_results"]["testMls reconcile"]
        assert last["success"] is False
        assert last["errors"] == ["boom"]
        assert not scheduler.is_running("testMls", "reconcile")
