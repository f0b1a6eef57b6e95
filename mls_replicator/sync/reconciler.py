"""
Reconciler - finds records the incremental sync missed.

Lists (primary key, timestamps) of every record at the source and in each
destination, diffs the two in an executor and hands back the ids that are
missing or stale anywhere. The next sync of the resource fetches exactly
those records.
"""

import logging
from concurrent.futures import Executor
from dataclasses import dataclass, field
from typing import Any, Sequence

from mls_replicator.destinations import DestinationAdapter
from mls_replicator.indexes import get_timestamp_fields
from mls_replicator.metrics import metrics
from mls_replicator.sources import MlsResource, MlsSource
from mls_replicator.sync.collector import Collector
from mls_replicator.sync.diff import DiffRequest, run_diff_task
from mls_replicator.utils import natural_sort, natural_sort_key

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    """Ids needing a resync, overall and per destination."""

    resource: str
    source_count: int = 0
    ids: list[Any] = field(default_factory=list)
    by_destination: dict[str, list[Any]] = field(default_factory=dict)


class Reconciler:
    def __init__(
        self,
        source: MlsSource,
        collector: Collector,
        destinations: Sequence[DestinationAdapter],
        executor: Executor | None = None,
    ) -> None:
        self.source = source
        self.collector = collector
        self.destinations = destinations
        self.executor = executor

    async def reconcile(self, resource: MlsResource) -> ReconcileResult:
        """
        Diff one resource against every destination.

        Raises:
            FetchError: Listing the source failed.
            DiffError: A diff task failed.
        """
        indexes = resource.get_indexes()
        primary_key = resource.primary_key
        timestamp_fields = tuple(get_timestamp_fields(indexes))

        source_rows = await self.collector.collect_listing(resource)
        # Never trust server or database ordering, both sides use one key
        source_rows = natural_sort(source_rows, key=lambda row: row[primary_key])
        result = ReconcileResult(resource=resource.name, source_count=len(source_rows))

        found: dict[tuple, Any] = {}
        for destination in self.destinations:
            destination_rows = await destination.fetch_missing_ids_data(resource, indexes)
            destination_rows = natural_sort(destination_rows, key=lambda row: row[primary_key])
            diff = await run_diff_task(
                DiffRequest(
                    primary_key=primary_key,
                    timestamp_fields=timestamp_fields,
                    source_rows=source_rows,
                    destination_rows=destination_rows,
                ),
                self.executor,
            )
            ids = diff.ids
            result.by_destination[destination.name] = ids
            metrics.record_reconcile_ids(self.source.name, resource.name, destination.name, len(ids))
            logger.info(
                "%s/%s: %s is missing %d and has %d stale records",
                self.source.name, resource.name, destination.name,
                len(diff.missing_ids), len(diff.stale_ids),
            )
            for record_id in ids:
                found.setdefault(natural_sort_key(record_id), record_id)

        result.ids = [found[key] for key in sorted(found)]
        return result
