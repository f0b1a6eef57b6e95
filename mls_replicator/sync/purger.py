"""
Purger - deletes destination records that no longer exist upstream.

The source's complete key listing is collected into purge batches for the
current run; keys a destination holds beyond that listing are purged,
cascading to expanded sub-resources flagged ``purge_from_parent``.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Sequence

from mls_replicator.batches import BatchStore
from mls_replicator.destinations import DestinationAdapter
from mls_replicator.metrics import metrics
from mls_replicator.sources import MlsResource, MlsSource
from mls_replicator.sync.collector import Collector

logger = logging.getLogger(__name__)


@dataclass
class PurgeResult:
    resource: str
    source_count: int = 0
    server_count: int | None = None
    purged: dict[str, int] = field(default_factory=dict)
    # Set when the listing looked incomplete and nothing was deleted
    aborted: bool = False


class Purger:
    def __init__(
        self,
        source: MlsSource,
        collector: Collector,
        store: BatchStore,
        destinations: Sequence[DestinationAdapter],
    ) -> None:
        self.source = source
        self.collector = collector
        self.store = store
        self.destinations = destinations

    async def _retire_leftovers(self, resource: MlsResource) -> None:
        """Purge batches of an interrupted run are stale; drop them."""
        leftovers = await asyncio.to_thread(
            self.store.list, self.source.name, resource.name, "purge"
        )
        for batch_file in leftovers:
            await asyncio.to_thread(self.store.mark_done, batch_file)
        if leftovers:
            logger.info("%s/%s: retired %d stale purge batches",
                        self.source.name, resource.name, len(leftovers))

    async def _read_source_ids(self, resource: MlsResource, batch_id: str) -> tuple[set[str], list]:
        batch_files = await asyncio.to_thread(
            self.store.list, self.source.name, resource.name, "purge", batch_id
        )
        primary_key = resource.primary_key
        ids: set[str] = set()
        for batch_file in batch_files:
            batch = await asyncio.to_thread(self.store.read, batch_file)
            ids.update(str(record[primary_key]) for record in batch.records if primary_key in record)
        return ids, batch_files

    async def purge(self, resource: MlsResource, batch_id: str) -> PurgeResult:
        """
        Purge one top-level resource from every destination.

        Raises:
            FetchError: Collecting the source listing failed; nothing deleted.
            DestinationError: A destination failed; later destinations untouched.
        """
        await self._retire_leftovers(resource)
        collected = await self.collector.collect_purge(resource, batch_id)
        source_ids, batch_files = await self._read_source_ids(resource, batch_id)

        result = PurgeResult(
            resource=resource.name,
            source_count=len(source_ids),
            server_count=collected.server_count,
        )

        if collected.server_count is not None and collected.server_count != len(source_ids):
            logger.warning(
                "%s/%s: server reported %d records but %d ids were collected, not purging",
                self.source.name, resource.name, collected.server_count, len(source_ids),
            )
            result.aborted = True
        else:
            indexes = resource.get_indexes()
            for destination in self.destinations:
                destination_ids = await destination.get_all_ids(resource, indexes)
                to_purge: list[Any] = [
                    record_id for record_id in destination_ids if str(record_id) not in source_ids
                ]
                purged = await destination.purge(resource, to_purge) if to_purge else 0
                result.purged[destination.name] = purged
                metrics.record_records_purged(self.source.name, resource.name, destination.name, purged)

        for batch_file in batch_files:
            await asyncio.to_thread(self.store.mark_done, batch_file)
        return result
