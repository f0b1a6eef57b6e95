"""
Replication Orchestrator

Runs the three operations for a source:
- sync: drain leftover batches, collect changes (plus reconcile ids), load
- purge: collect the key listing, delete what vanished upstream
- reconcile: diff source and destinations, queue ids for the next sync

Platform adapters and destination adapters are built once when the
orchestrator is entered and closed when it exits. Runs for the same
(source, resource) are serialized on a lock. A failing run is logged,
counted and reported in its RunResult; it never takes other sources down.
"""

import asyncio
import logging
import time
from concurrent.futures import Executor
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

import httpx
from rich.console import Console
from rich.table import Table

from mls_replicator.batches import BatchStore
from mls_replicator.client import FetchStats, ODataClient
from mls_replicator.destinations import DestinationAdapter, build_destination
from mls_replicator.errors import ConfigurationError, ReplicatorError
from mls_replicator.events import EventEmitter
from mls_replicator.metadata import Metadata
from mls_replicator.metrics import metrics
from mls_replicator.platforms import (
    PlatformAdapter,
    build_platform_adapter,
    build_platform_data_adapter,
)
from mls_replicator.sources import MlsResource, MlsSource, ReplicatorConfig
from mls_replicator.sync.collector import Collector
from mls_replicator.sync.diff import build_diff_executor
from mls_replicator.sync.loader import Loader
from mls_replicator.sync.purger import Purger
from mls_replicator.sync.reconciler import Reconciler
from mls_replicator.utils import natural_sort_key, new_batch_id

logger = logging.getLogger(__name__)
console = Console()


@dataclass
class RunResult:
    """Result of one operation run for one source."""

    source_name: str
    operation: str
    batch_id: str
    success: bool = False
    resources: dict[str, dict[str, Any]] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)
    duration_seconds: float = 0.0
    http_stats: FetchStats | None = None

    @property
    def records(self) -> int:
        return sum(int(summary.get("records", 0)) for summary in self.resources.values())


@dataclass
class SourceRuntime:
    """Long-lived collaborators of one source."""

    source: MlsSource
    platform_adapter: PlatformAdapter
    destinations: list[DestinationAdapter]


class ReplicationOrchestrator:
    """
    Entry point for running operations.

    Usage:
        async with ReplicationOrchestrator(config) as orchestrator:
            result = await orchestrator.run("utahRealEstate", "sync")
    """

    def __init__(
        self,
        config: ReplicatorConfig,
        invalid_sources: dict[str, str] | None = None,
        store: BatchStore | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        executor: Executor | None = None,
        emitter: EventEmitter | None = None,
    ) -> None:
        self.config = config
        self.invalid_sources = dict(invalid_sources or {})
        self.store = store or BatchStore()
        self._transport = transport
        self._executor = executor
        self._owns_executor = executor is None
        self._emitter = emitter
        self._owns_emitter = emitter is None

        self._runtimes: dict[str, SourceRuntime] = {}
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}
        # Ids found by reconcile, consumed by the next sync of the resource
        self.pending_reconcile_ids: dict[tuple[str, str], list[Any]] = {}

    async def __aenter__(self) -> "ReplicationOrchestrator":
        for source in self.config.sources:
            if source.name in self.invalid_sources:
                continue
            try:
                self._runtimes[source.name] = self._build_runtime(source)
            except ReplicatorError as e:
                logger.error("Source %s disabled: %s", source.name, e)
                self.invalid_sources[source.name] = str(e)

        if self._executor is None:
            self._executor = build_diff_executor()
        if self._emitter is None:
            self._emitter = EventEmitter()
            await self._emitter.__aenter__()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        for runtime in self._runtimes.values():
            for destination in runtime.destinations:
                try:
                    await destination.close_connection()
                except Exception:
                    logger.exception("Closing destination %s failed", destination.name)
        self._runtimes.clear()

        if self._owns_executor and self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
        if self._owns_emitter and self._emitter is not None:
            await self._emitter.__aexit__(exc_type, exc_val, exc_tb)
            self._emitter = None

    def _build_runtime(self, source: MlsSource) -> SourceRuntime:
        platform_adapter = build_platform_adapter(source.platform_adapter_name)
        destinations = [
            build_destination(
                destination,
                platform_adapter,
                build_platform_data_adapter(source.platform_adapter_name, destination.type),
            )
            for destination in source.destinations
        ]
        return SourceRuntime(source=source, platform_adapter=platform_adapter, destinations=destinations)

    def get_runtime(self, source_name: str) -> SourceRuntime:
        """
        Raises:
            ConfigurationError: Unknown source, or one that failed validation.
        """
        if source_name in self.invalid_sources:
            raise ConfigurationError(
                f"Source '{source_name}' is disabled: {self.invalid_sources[source_name]}"
            )
        if source_name not in self._runtimes:
            raise ConfigurationError(f"Unknown source: {source_name}")
        return self._runtimes[source_name]

    @property
    def source_names(self) -> list[str]:
        return list(self._runtimes)

    def resource_lock(self, source_name: str, resource_name: str) -> asyncio.Lock:
        key = (source_name, resource_name)
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    def _client(self, runtime: SourceRuntime) -> ODataClient:
        return ODataClient(runtime.source, runtime.platform_adapter, transport=self._transport)

    def _select_resources(self, source: MlsSource, names: list[str] | None) -> list[MlsResource]:
        if not names:
            return list(source.mls_resources)
        known = {resource.name: resource for resource in source.mls_resources}
        unknown = [name for name in names if name not in known]
        if unknown:
            raise ConfigurationError(
                f"{source.name}: not a top-level resource: {', '.join(unknown)}"
            )
        return [known[name] for name in names]

    # ========== Runs ==========

    async def run(
        self, source_name: str, operation: str, resources: list[str] | None = None
    ) -> RunResult:
        """Run one operation for one source."""
        operations: dict[str, Callable[..., Awaitable[None]]] = {
            "sync": self._sync,
            "purge": self._purge,
            "reconcile": self._reconcile,
        }
        if operation not in operations:
            raise ValueError(f"Unknown operation: {operation}")
        if self._emitter is None:
            raise RuntimeError("Orchestrator not initialized. Use 'async with' context manager.")

        runtime = self.get_runtime(source_name)
        selected = self._select_resources(runtime.source, resources)
        result = RunResult(source_name=source_name, operation=operation, batch_id=new_batch_id())
        start = time.time()

        await self._emitter.emit_run_started(source_name, operation, result.batch_id)
        try:
            async with metrics.track_run(source_name, operation):
                async with self._client(runtime) as client:
                    try:
                        await operations[operation](runtime, client, selected, result)
                    finally:
                        result.http_stats = client.stats
            result.success = True
        except ReplicatorError as e:
            result.errors.append(str(e))
            logger.error(
                "%s %s run (batch %s) failed: %s", source_name, operation, result.batch_id, e
            )
        finally:
            result.duration_seconds = time.time() - start

        if result.success:
            await self._emitter.emit_run_completed(
                source_name,
                operation,
                result.duration_seconds,
                batch_id=result.batch_id,
                resources=list(result.resources),
                records=result.records,
            )
        else:
            await self._emitter.emit_run_failed(
                source_name,
                operation,
                "; ".join(result.errors),
                duration_seconds=result.duration_seconds,
                batch_id=result.batch_id,
            )
        return result

    async def sync_source(self, source_name: str, resources: list[str] | None = None) -> RunResult:
        return await self.run(source_name, "sync", resources)

    async def purge_source(self, source_name: str, resources: list[str] | None = None) -> RunResult:
        return await self.run(source_name, "purge", resources)

    async def reconcile_source(
        self, source_name: str, resources: list[str] | None = None
    ) -> RunResult:
        return await self.run(source_name, "reconcile", resources)

    async def _sync(
        self,
        runtime: SourceRuntime,
        client: ODataClient,
        resources: list[MlsResource],
        result: RunResult,
    ) -> None:
        source = runtime.source
        metadata: Metadata | None = None
        if source.metadata_endpoint or source.metadata_path:
            metadata = await client.fetch_metadata()
        collector = Collector(source, client, self.store)
        loader = Loader(source, self.store, runtime.destinations, runtime.platform_adapter)

        for resource in resources:
            key = (source.name, resource.name)
            async with self.resource_lock(*key):
                # Leftovers of an interrupted run go first, so the
                # high-water mark below already includes them
                leftovers = await loader.load(resource, metadata)

                reconcile_ids = self.pending_reconcile_ids.pop(key, [])
                try:
                    collected = await collector.collect_sync(
                        resource, result.batch_id, runtime.destinations, reconcile_ids
                    )
                except ReplicatorError:
                    if reconcile_ids:
                        self.pending_reconcile_ids[key] = reconcile_ids
                    raise
                loaded = await loader.load(resource, metadata)

            result.resources[resource.name] = {
                "high_water_mark": collected.high_water_mark,
                "batches": collected.batches,
                "records": collected.records,
                "reconcile_ids": len(reconcile_ids),
                "sub_records": dict(collected.sub_records),
                "applied": sum(r.records for r in loaded),
                "leftovers_applied": sum(r.records for r in leftovers),
            }

    async def _purge(
        self,
        runtime: SourceRuntime,
        client: ODataClient,
        resources: list[MlsResource],
        result: RunResult,
    ) -> None:
        source = runtime.source
        collector = Collector(source, client, self.store)
        purger = Purger(source, collector, self.store, runtime.destinations)

        for resource in resources:
            async with self.resource_lock(source.name, resource.name):
                purged = await purger.purge(resource, result.batch_id)
            result.resources[resource.name] = {
                "source_count": purged.source_count,
                "server_count": purged.server_count,
                "purged": dict(purged.purged),
                "records": sum(purged.purged.values()),
                "aborted": purged.aborted,
            }

    async def _reconcile(
        self,
        runtime: SourceRuntime,
        client: ODataClient,
        resources: list[MlsResource],
        result: RunResult,
    ) -> None:
        source = runtime.source
        collector = Collector(source, client, self.store)
        reconciler = Reconciler(source, collector, runtime.destinations, self._executor)

        for resource in resources:
            key = (source.name, resource.name)
            async with self.resource_lock(*key):
                reconciled = await reconciler.reconcile(resource)
                queued = {natural_sort_key(i): i for i in self.pending_reconcile_ids.get(key, [])}
                for record_id in reconciled.ids:
                    queued.setdefault(natural_sort_key(record_id), record_id)
                if queued:
                    self.pending_reconcile_ids[key] = [queued[k] for k in sorted(queued)]

            result.resources[resource.name] = {
                "source_count": reconciled.source_count,
                "records": len(reconciled.ids),
                "by_destination": {name: len(ids) for name, ids in reconciled.by_destination.items()},
            }

    # ========== Reporting ==========

    async def get_status(self, source_name: str) -> list[dict[str, Any]]:
        """Per resource and destination: record count, newest timestamp, pending batches."""
        runtime = self.get_runtime(source_name)
        rows = []
        for resource in runtime.source.all_resources():
            pending = await asyncio.to_thread(self.store.list, source_name, resource.name)
            for destination in runtime.destinations:
                rows.append({
                    "resource": resource.name,
                    "destination": destination.name,
                    "count": await destination.get_count(resource),
                    "most_recent": await destination.get_most_recent_timestamp(resource),
                    "pending_batches": len(pending),
                    "pending_reconcile_ids": len(
                        self.pending_reconcile_ids.get((source_name, resource.name), [])
                    ),
                })
        return rows

    def print_result(self, result: RunResult) -> None:
        """Print a run summary to the console."""
        status = "[green]OK[/green]" if result.success else "[red]FAILED[/red]"
        table = Table(
            title=f"{result.source_name} {result.operation} {status} "
                  f"({result.duration_seconds:.1f}s, batch {result.batch_id})",
        )
        table.add_column("Resource", style="cyan")
        table.add_column("Details")
        for resource_name, summary in result.resources.items():
            details = ", ".join(f"{key}={value}" for key, value in summary.items())
            table.add_row(resource_name, details)
        console.print(table)

        for error in result.errors:
            console.print(f"[red]  {error}[/red]")
        if result.http_stats:
            console.print(f"[dim]{result.http_stats}[/dim]")
