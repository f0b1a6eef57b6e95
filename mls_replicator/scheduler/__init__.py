"""
Scheduler module - Cron-driven replication runs.

One APScheduler job per cron string per enabled (source, operation).
A tick that fires while the same (source, operation) is still running is
dropped, so a slow sync never piles up behind itself.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from rich.console import Console
from rich.panel import Panel

from mls_replicator.config_loader import OPERATIONS
from mls_replicator.sync.orchestrator import ReplicationOrchestrator, RunResult

logger = logging.getLogger(__name__)
console = Console()


class ReplicationScheduler:
    """
    Scheduler for the configured sources.

    The orchestrator is owned by the caller and must already be entered;
    its adapters live as long as the scheduler does.
    """

    def __init__(self, orchestrator: ReplicationOrchestrator) -> None:
        self.orchestrator = orchestrator
        self.scheduler = AsyncIOScheduler()
        self._running: set[tuple[str, str]] = set()
        self._last_results: dict[tuple[str, str], dict[str, Any]] = {}

    def register_jobs(self) -> int:
        """Add a job per cron string of every enabled schedule. Returns the job count."""
        # Pending jobs are only deduplicated by id once the scheduler starts
        self.scheduler.remove_all_jobs()
        count = 0
        for source_name in self.orchestrator.source_names:
            source = self.orchestrator.get_runtime(source_name).source
            for operation in OPERATIONS:
                schedule = source.cron.for_operation(operation)
                if not schedule.enabled:
                    continue
                for index, cron_string in enumerate(schedule.cron_strings):
                    self.scheduler.add_job(
                        self.run_job,
                        trigger=CronTrigger.from_crontab(cron_string, timezone="UTC"),
                        args=[source_name, operation],
                        id=f"{source_name}:{operation}:{index}",
                        name=f"{source_name} {operation} ({cron_string})",
                        replace_existing=True,
                        max_instances=1,
                    )
                    count += 1
        return count

    async def start(self) -> None:
        """Register jobs and start the scheduler."""
        count = self.register_jobs()
        console.print(Panel.fit(
            "[bold green]Starting Replication Scheduler[/bold green]\n"
            f"[dim]Sources: {', '.join(self.orchestrator.source_names) or 'none'}[/dim]\n"
            f"[dim]Jobs: {count}[/dim]",
            border_style="green",
        ))
        for source_name, reason in self.orchestrator.invalid_sources.items():
            console.print(f"[yellow]Skipping invalid source {source_name}: {reason}[/yellow]")

        self.scheduler.start()
        console.print("[green]Scheduler started successfully[/green]")

    async def stop(self) -> None:
        """Stop the scheduler gracefully."""
        if not self.scheduler.running:
            return
        console.print("[yellow]Stopping scheduler...[/yellow]")
        self.scheduler.shutdown(wait=True)
        console.print("[green]Scheduler stopped[/green]")

    async def run_job(self, source_name: str, operation: str) -> RunResult | None:
        """Run one tick. Returns None when the tick was dropped or crashed."""
        key = (source_name, operation)
        if key in self._running:
            logger.warning("%s %s already in progress, skipping", source_name, operation)
            return None

        self._running.add(key)
        start_time = datetime.now()
        try:
            console.print(
                f"\n[blue][{start_time.strftime('%H:%M:%S')}] Starting {operation} "
                f"for {source_name}...[/blue]"
            )
            result = await self.orchestrator.run(source_name, operation)
            self.orchestrator.print_result(result)
            self._last_results[key] = {
                "time": start_time,
                "success": result.success,
                "duration": result.duration_seconds,
                "records": result.records,
                "errors": result.errors,
            }
            return result
        except Exception as e:
            logger.exception("%s %s run crashed", source_name, operation)
            self._last_results[key] = {
                "time": start_time,
                "success": False,
                "duration": (datetime.now() - start_time).total_seconds(),
                "records": 0,
                "errors": [str(e)],
            }
            return None
        finally:
            self._running.discard(key)

    def is_running(self, source_name: str, operation: str) -> bool:
        return (source_name, operation) in self._running

    def get_status(self) -> dict[str, Any]:
        """Get current scheduler status."""
        jobs = []
        for job in self.scheduler.get_jobs():
            next_run_time = getattr(job, "next_run_time", None)
            jobs.append({
                "id": job.id,
                "name": job.name,
                "next_run": str(next_run_time) if next_run_time else None,
            })

        return {
            "running": self.scheduler.running,
            "in_flight": [f"{source} {operation}" for source, operation in sorted(self._running)],
            "jobs": jobs,
            "last_results": {
                f"{source} {operation}": result
                for (source, operation), result in self._last_results.items()
            },
        }


async def run_scheduler(config_path: str | None = None, metrics_port: int | None = None) -> None:
    """
    Run the scheduler until cancelled.

    Args:
        config_path: User config module. Defaults to settings.config_path.
        metrics_port: Port for the Prometheus metrics server.
    """
    from mls_replicator.config import settings
    from mls_replicator.config_loader import load_config
    from mls_replicator.metrics import metrics

    config, invalid = load_config(config_path)

    async with ReplicationOrchestrator(config, invalid) as orchestrator:
        scheduler = ReplicationScheduler(orchestrator)
        try:
            await metrics.start_server(port=metrics_port or settings.metrics_port)
            await scheduler.start()

            while True:
                await asyncio.sleep(60)

                status = scheduler.get_status()
                upcoming = sorted(job["next_run"] for job in status["jobs"] if job["next_run"])
                if upcoming:
                    console.print(f"[dim]Next run: {upcoming[0]}[/dim]", highlight=False)
        except (asyncio.CancelledError, KeyboardInterrupt):
            await scheduler.stop()
        finally:
            await metrics.stop_server()
