"""
Loader - applies pending sync batches to every destination.

Batches of one resource are applied one at a time in batch store order; a
later batch may hold a newer version of a record from an earlier one. A
batch is marked done only after every destination accepted it, so a
failure leaves it pending for the next run. Upserts make reapplying a
batch harmless.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Sequence

from mls_replicator.batches import BatchStore
from mls_replicator.destinations import DestinationAdapter
from mls_replicator.indexes import Indexes, should_include_field
from mls_replicator.metadata import Metadata
from mls_replicator.metrics import metrics
from mls_replicator.platforms.base import PlatformAdapter
from mls_replicator.sources import MlsResource, MlsSource
from mls_replicator.utils import parse_timestamp

logger = logging.getLogger(__name__)


def normalize_record(record: dict[str, Any]) -> dict[str, Any]:
    """
    Canonicalize values by field naming convention.

    ``*Timestamp`` fields become aware UTC datetimes and ``*YN`` flags
    become booleans. Unparseable timestamps are left as they are.
    """
    normalized = {}
    for key, value in record.items():
        if key.endswith("Timestamp") and value:
            parsed = parse_timestamp(value)
            normalized[key] = parsed if parsed is not None else value
        elif key.endswith("YN") and value is not None:
            normalized[key] = bool(value)
        else:
            normalized[key] = value
    return normalized


def filter_fields(
    record: dict[str, Any],
    resource: MlsResource,
    indexes: Indexes,
    platform_adapter: PlatformAdapter,
) -> dict[str, Any]:
    return {
        key: value
        for key, value in record.items()
        if should_include_field(key, indexes, platform_adapter.should_include_json_field, resource.select)
    }


@dataclass
class LoadResult:
    resource: str
    batches: int = 0
    records: int = 0


class Loader:
    """Drains a source's sync batches into its destinations."""

    def __init__(
        self,
        source: MlsSource,
        store: BatchStore,
        destinations: Sequence[DestinationAdapter],
        platform_adapter: PlatformAdapter,
    ) -> None:
        self.source = source
        self.store = store
        self.destinations = destinations
        self.platform_adapter = platform_adapter

    async def load_resource(self, resource: MlsResource, metadata: Metadata | None) -> LoadResult:
        """
        Apply every pending sync batch of one resource.

        Raises:
            DestinationError: The failing batch and those after it stay pending.
            SchemaMappingError: Raised by schema sync before any data is written.
        """
        result = LoadResult(resource=resource.name)
        batch_files = await asyncio.to_thread(
            self.store.list, self.source.name, resource.name, "sync"
        )
        if not batch_files:
            return result

        if metadata is not None:
            for destination in self.destinations:
                await destination.sync_structure(resource, metadata)

        indexes = resource.get_indexes()
        for batch_file in batch_files:
            batch = await asyncio.to_thread(self.store.read, batch_file)
            records = [
                filter_fields(normalize_record(record), resource, indexes, self.platform_adapter)
                for record in batch.records
            ]

            for destination in self.destinations:
                rows = [destination.transform(resource.name, dict(record), metadata) for record in records]
                try:
                    written = await destination.sync_data(resource, rows, metadata)
                except Exception:
                    logger.error(
                        "%s/%s: batch %s failed on destination %s",
                        self.source.name, resource.name, batch_file.name, destination.name,
                    )
                    raise
                metrics.record_records_upserted(self.source.name, resource.name, destination.name, written)

            await asyncio.to_thread(self.store.mark_done, batch_file)
            metrics.record_batch_applied(self.source.name, resource.name)
            result.batches += 1
            result.records += len(records)
            logger.debug("%s/%s: applied %s", self.source.name, resource.name, batch_file.name)

        logger.info(
            "%s/%s: applied %d batches, %d records",
            self.source.name, resource.name, result.batches, result.records,
        )
        return result

    async def load(self, resource: MlsResource, metadata: Metadata | None) -> list[LoadResult]:
        """Load a top-level resource, then its expanded sub-resources."""
        results = [await self.load_resource(resource, metadata)]
        for sub_resource in resource.expand:
            results.append(await self.load_resource(sub_resource, metadata))
        return results
