"""
Collector - turns a fetch of one resource into batch files.

Sync runs fetch everything changed since the destinations' high-water
mark, then any records reconcile flagged. Purge runs fetch the complete
list of primary keys. Every page is written to the batch store before the
next page is requested.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Sequence

from mls_replicator.batches import Batch, BatchStore
from mls_replicator.client import ODataClient
from mls_replicator.config import settings
from mls_replicator.destinations import DestinationAdapter
from mls_replicator.indexes import get_timestamp_fields
from mls_replicator.metrics import metrics
from mls_replicator.sources import MlsResource, MlsSource
from mls_replicator.utils import chunked, format_odata_timestamp

logger = logging.getLogger(__name__)


@dataclass
class CollectResult:
    """What one collection pass wrote."""

    resource: str
    batch_type: str
    batch_id: str
    batches: int = 0
    records: int = 0
    # @odata.count of the first page, when requested
    server_count: int | None = None
    high_water_mark: datetime | None = None
    sub_records: dict[str, int] = field(default_factory=dict)


class Collector:
    """Fetches pages for one source and persists them as batches."""

    def __init__(self, source: MlsSource, client: ODataClient, store: BatchStore) -> None:
        self.source = source
        self.client = client
        self.store = store
        # Next sequence number per (resource, batch id)
        self._seq: dict[tuple[str, str], int] = {}

    def _next_seq(self, resource_name: str, batch_id: str) -> int:
        key = (resource_name, batch_id)
        self._seq[key] = self._seq.get(key, 0) + 1
        return self._seq[key]

    async def _write(
        self,
        resource_name: str,
        batch_type: str,
        batch_id: str,
        records: list[dict[str, Any]],
        count: int | None = None,
    ) -> None:
        batch = Batch(
            source=self.source.name,
            resource=resource_name,
            batch_type=batch_type,
            batch_id=batch_id,
            seq=self._next_seq(resource_name, batch_id),
            records=records,
            count=count,
        )
        await asyncio.to_thread(self.store.write, batch)
        metrics.record_batch_written(self.source.name, resource_name, batch_type)

    # ========== Query building ==========

    def select_fields(self, resource: MlsResource) -> str | None:
        """$select for a resource: its select list plus every indexed field."""
        if not resource.select:
            return None
        fields = list(resource.select)
        for index in resource.get_indexes().values():
            for name in index.fields:
                if name not in fields:
                    fields.append(name)
        return ",".join(fields)

    def expand_fields(self, resource: MlsResource) -> str | None:
        names = [sub.field_name for sub in resource.expand if sub.field_name]
        return ",".join(names) if names else None

    def timestamp_filter(self, resource: MlsResource, high_water_mark: datetime | None) -> str | None:
        """``F1 gt M or F2 gt M ...``; None when there is no mark (full fetch)."""
        if high_water_mark is None:
            return None
        literal = format_odata_timestamp(high_water_mark)
        clauses = [f"{name} gt {literal}" for name in get_timestamp_fields(resource.get_indexes())]
        return " or ".join(clauses) or None

    def reconcile_filter(self, resource: MlsResource, ids: Iterable[Any]) -> str:
        """Filter selecting the given ids, in the source's reconcile filter format."""
        separator = self.source.reconcile_filter_separator
        joined = "".join(
            self.source.get_reconcile_id_filter_string(resource.primary_key, separator, record_id)
            for record_id in ids
        )
        if separator and joined.startswith(separator):
            joined = joined[len(separator):]
        return self.source.reconcile_filter_template.replace("PLACEHOLDER", joined)

    async def get_high_water_mark(
        self, resource: MlsResource, destinations: Sequence[DestinationAdapter]
    ) -> datetime | None:
        """
        The point from which a sync must fetch so no destination misses data.

        Each destination's mark is its newest timestamp over all tracked
        fields; the earliest of those wins. Any empty destination means a
        full fetch.
        """
        indexes = resource.get_indexes()
        marks = []
        for destination in destinations:
            timestamps = await destination.get_timestamps(resource, indexes)
            values = [value for value in timestamps.values() if value is not None]
            if not values:
                return None
            marks.append(max(values))
        return min(marks) if marks else None

    # ========== Collection ==========

    def _extract_expanded(
        self, resource: MlsResource, records: list[dict[str, Any]]
    ) -> dict[str, list[dict[str, Any]]]:
        """Pop expanded sub-resource values out of parent records."""
        extracted: dict[str, list[dict[str, Any]]] = {}
        for sub_resource in resource.expand:
            if not sub_resource.field_name:
                continue
            sub_records = extracted.setdefault(sub_resource.name, [])
            for record in records:
                value = record.pop(sub_resource.field_name, None)
                if isinstance(value, list):
                    sub_records.extend(value)
                elif isinstance(value, dict):
                    sub_records.append(value)
        return extracted

    async def _collect_pages(
        self,
        resource: MlsResource,
        endpoint: str,
        params: dict[str, Any],
        page_size: int,
        extra_filter: str | None,
        result: CollectResult,
    ) -> None:
        async for page in self.client.iter_pages(endpoint, params, page_size, extra_filter):
            if result.server_count is None and page.count is not None:
                result.server_count = page.count
            if not page.records:
                continue

            records = page.records
            if result.batch_type == "sync":
                # Children first: if we crash before the parent page is
                # written, the parent and its children are fetched again
                for sub_name, sub_records in self._extract_expanded(resource, records).items():
                    if sub_records:
                        await self._write(sub_name, "sync", result.batch_id, sub_records)
                        result.sub_records[sub_name] = result.sub_records.get(sub_name, 0) + len(sub_records)

            count = page.count if result.batch_type == "purge" else None
            await self._write(resource.name, result.batch_type, result.batch_id, records, count)
            result.batches += 1
            result.records += len(records)
            logger.debug(
                "%s/%s: %s page %d with %d records",
                self.source.name, resource.name, result.batch_type, result.batches, len(records),
            )

    async def collect_sync(
        self,
        resource: MlsResource,
        batch_id: str,
        destinations: Sequence[DestinationAdapter],
        reconcile_ids: Sequence[Any] = (),
    ) -> CollectResult:
        """
        Fetch changed records (and reconcile ids) into sync batches.

        Raises:
            FetchError: Pages written so far stay pending.
        """
        result = CollectResult(resource=resource.name, batch_type="sync", batch_id=batch_id)
        result.high_water_mark = await self.get_high_water_mark(resource, destinations)

        timestamp_fields = get_timestamp_fields(resource.get_indexes())
        params: dict[str, Any] = {
            "$select": self.select_fields(resource),
            "$expand": self.expand_fields(resource),
        }
        if self.source.use_order_by and timestamp_fields:
            params["$orderby"] = f"{timestamp_fields[0]} asc"

        endpoint = self.source.replication_endpoint(resource)
        logger.info(
            "%s/%s: collecting changes since %s",
            self.source.name, resource.name, result.high_water_mark or "the beginning",
        )
        await self._collect_pages(
            resource,
            endpoint,
            params,
            self.source.top,
            self.timestamp_filter(resource, result.high_water_mark),
            result,
        )

        if reconcile_ids:
            logger.info("%s/%s: collecting %d reconcile ids",
                        self.source.name, resource.name, len(reconcile_ids))
            for chunk in chunked(list(reconcile_ids), settings.reconcile_ids_per_request):
                await self._collect_pages(
                    resource,
                    endpoint,
                    params,
                    self.source.top,
                    self.reconcile_filter(resource, chunk),
                    result,
                )
        return result

    async def collect_purge(self, resource: MlsResource, batch_id: str) -> CollectResult:
        """Fetch the complete primary key listing into purge batches."""
        result = CollectResult(resource=resource.name, batch_type="purge", batch_id=batch_id)
        primary_key = resource.primary_key
        params: dict[str, Any] = {"$select": primary_key, "$count": "true"}
        if self.source.use_order_by:
            params["$orderby"] = f"{primary_key} asc"

        await self._collect_pages(
            resource,
            self.source.purge_endpoint(resource),
            params,
            self.source.top_for_purge,
            None,
            result,
        )
        return result

    async def collect_listing(self, resource: MlsResource) -> list[dict[str, Any]]:
        """
        Primary key and timestamp fields of every source record, in memory.

        Paged like a purge; the reconciler diffs this against destinations.
        """
        primary_key = resource.primary_key
        fields = [primary_key, *get_timestamp_fields(resource.get_indexes())]
        params: dict[str, Any] = {"$select": ",".join(fields)}
        if self.source.use_order_by:
            params["$orderby"] = f"{primary_key} asc"

        rows: list[dict[str, Any]] = []
        async for page in self.client.iter_pages(
            self.source.purge_endpoint(resource), params, self.source.top_for_purge
        ):
            rows.extend({name: record.get(name) for name in fields} for record in page.records)
        return rows
