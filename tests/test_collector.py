"""
Tests for the collector (fetch -> batch files).
"""

from datetime import datetime, timezone
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from mls_replicator.batches import BatchStore
from mls_replicator.client import ODataClient
from mls_replicator.config import settings
from mls_replicator.platforms import build_platform_adapter
from mls_replicator.sources import MlsResource, MlsSource
from mls_replicator.sync.collector import Collector

from conftest import FakeMlsServer, make_property

BATCH_ID = "2024-05-01-T-00-00-00-000Z"


def fake_destination(**timestamps: datetime | None) -> MagicMock:
    destination = MagicMock()
    destination.get_timestamps = AsyncMock(return_value=timestamps)
    return destination


def utc(day: int) -> datetime:
    return datetime(2024, 1, day, tzinfo=timezone.utc)


def property_resource(source: MlsSource) -> MlsResource:
    return source.mls_resources[0]


class TestQueryBuilding:
    """Tests for $select, $filter and reconcile filter construction."""

    def test_select_adds_indexed_fields(self, make_source: Any) -> None:
        source = make_source(mls_resources=[{"name": "Property", "select": ["City"]}])
        collector = Collector(source, MagicMock(), MagicMock())

        assert collector.select_fields(source.mls_resources[0]) == (
            "City,ListingKey,ModificationTimestamp,PhotosChangeTimestamp"
        )

    def test_no_select_means_everything(self, source: MlsSource) -> None:
        collector = Collector(source, MagicMock(), MagicMock())

        assert collector.select_fields(property_resource(source)) is None
        assert collector.expand_fields(property_resource(source)) == "Media"

    def test_timestamp_filter(self, source: MlsSource) -> None:
        collector = Collector(source, MagicMock(), MagicMock())

        assert collector.timestamp_filter(property_resource(source), utc(2)) == (
            "ModificationTimestamp gt 2024-01-02T00:00:00.000Z"
            " or PhotosChangeTimestamp gt 2024-01-02T00:00:00.000Z"
        )
        assert collector.timestamp_filter(property_resource(source), None) is None

    def test_reconcile_filter_default(self, source: MlsSource) -> None:
        collector = Collector(source, MagicMock(), MagicMock())

        assert collector.reconcile_filter(property_resource(source), ["L1", "L2"]) == (
            "ListingKey eq 'L1' or ListingKey eq 'L2'"
        )

    def test_reconcile_filter_escapes_quotes(self, source: MlsSource) -> None:
        collector = Collector(source, MagicMock(), MagicMock())

        assert collector.reconcile_filter(property_resource(source), ["O'Brien-7"]) == (
            "ListingKey eq 'O''Brien-7'"
        )

    def test_reconcile_filter_template(self, make_source: Any) -> None:
        source = make_source(
            reconcile_filter_template="(PLACEHOLDER) and StandardStatus ne 'Deleted'",
            reconcile_filter_separator=",",
            get_reconcile_id_filter_string=lambda pk, sep, record_id: f"{sep}'{record_id}'",
        )
        collector = Collector(source, MagicMock(), MagicMock())

        assert collector.reconcile_filter(source.mls_resources[0], ["L1", "L2"]) == (
            "('L1','L2') and StandardStatus ne 'Deleted'"
        )


class TestHighWaterMark:
    """The earliest per-destination maximum wins."""

    @pytest.mark.asyncio
    async def test_min_of_maxes(self, source: MlsSource) -> None:
        collector = Collector(source, MagicMock(), MagicMock())
        ahead = fake_destination(ModificationTimestamp=utc(5), PhotosChangeTimestamp=utc(3))
        behind = fake_destination(ModificationTimestamp=utc(2), PhotosChangeTimestamp=None)

        mark = await collector.get_high_water_mark(property_resource(source), [ahead, behind])

        assert mark == utc(2)

    @pytest.mark.asyncio
    async def test_empty_destination_means_full_fetch(self, source: MlsSource) -> None:
        collector = Collector(source, MagicMock(), MagicMock())
        full = fake_destination(ModificationTimestamp=utc(5), PhotosChangeTimestamp=None)
        empty = fake_destination(ModificationTimestamp=None, PhotosChangeTimestamp=None)

        assert await collector.get_high_water_mark(property_resource(source), [full, empty]) is None


class TestCollectSync:
    """Tests for sync collection."""

    @pytest.mark.asyncio
    async def test_pages_become_batches(self, source: MlsSource, store: BatchStore) -> None:
        media = [{"MediaKey": "M1", "ListingKey": "L0"}, {"MediaKey": "M2", "ListingKey": "L0"}]
        records = [make_property(i) for i in range(5)]
        records[0]["Media"] = media
        server = FakeMlsServer({"Property": records})
        destination = fake_destination(ModificationTimestamp=None, PhotosChangeTimestamp=None)

        async with ODataClient(
            source, build_platform_adapter("utahRealEstate"), transport=server.transport()
        ) as client:
            result = await Collector(source, client, store).collect_sync(
                property_resource(source), BATCH_ID, [destination]
            )

        assert (result.batches, result.records) == (3, 5)
        assert result.sub_records == {"Media": 2}
        batch_files = store.list(source.name, "Property", "sync")
        assert [f.seq for f in batch_files] == [1, 2, 3]
        assert [len(store.read(f).records) for f in batch_files] == [2, 2, 1]
        assert "Media" not in store.read(batch_files[0]).records[0]

        media_files = store.list(source.name, "Media", "sync", BATCH_ID)
        assert len(media_files) == 1
        assert store.read(media_files[0]).records == media

        params = server.params(0)
        assert params["$expand"] == "Media"
        assert params["$orderby"] == "ModificationTimestamp asc"
        assert "$filter" not in params

    @pytest.mark.asyncio
    async def test_incremental_filter(self, source: MlsSource, store: BatchStore) -> None:
        server = FakeMlsServer({"Property": [make_property(1)]})
        destination = fake_destination(ModificationTimestamp=utc(2), PhotosChangeTimestamp=None)

        async with ODataClient(
            source, build_platform_adapter("utahRealEstate"), transport=server.transport()
        ) as client:
            result = await Collector(source, client, store).collect_sync(
                property_resource(source), BATCH_ID, [destination]
            )

        assert result.high_water_mark == utc(2)
        assert server.params(0)["$filter"] == (
            "ModificationTimestamp gt 2024-01-02T00:00:00.000Z"
            " or PhotosChangeTimestamp gt 2024-01-02T00:00:00.000Z"
        )

    @pytest.mark.asyncio
    async def test_no_order_by(self, make_source: Any, store: BatchStore) -> None:
        source = make_source(use_order_by=False)
        server = FakeMlsServer({"Property": []})

        async with ODataClient(
            source, build_platform_adapter("utahRealEstate"), transport=server.transport()
        ) as client:
            result = await Collector(source, client, store).collect_sync(
                source.mls_resources[0], BATCH_ID, []
            )

        assert "$orderby" not in server.params(0)
        # Empty pages are not written
        assert result.batches == 0
        assert store.list(source.name, "Property") == []

    @pytest.mark.asyncio
    async def test_reconcile_ids_fetched_in_chunks(
        self, source: MlsSource, store: BatchStore, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr(settings, "reconcile_ids_per_request", 2)
        server = FakeMlsServer({"Property": [make_property(1)]})
        destination = fake_destination(ModificationTimestamp=None, PhotosChangeTimestamp=None)

        async with ODataClient(
            source, build_platform_adapter("utahRealEstate"), transport=server.transport()
        ) as client:
            result = await Collector(source, client, store).collect_sync(
                property_resource(source), BATCH_ID, [destination], ["L1", "L2", "L3"]
            )

        filters = [params.get("$filter") for params in server.resource_requests("Property")]
        assert filters == [
            None,
            "ListingKey eq 'L1' or ListingKey eq 'L2'",
            "ListingKey eq 'L3'",
        ]
        # One batch id, sequence numbers continue across passes
        assert [f.seq for f in store.list(source.name, "Property", "sync", BATCH_ID)] == [1, 2, 3]
        assert result.batches == 3


class TestCollectPurge:
    """Tests for purge and listing collection."""

    @pytest.mark.asyncio
    async def test_purge_batches(self, source: MlsSource, store: BatchStore) -> None:
        server = FakeMlsServer({"Property": [make_property(i) for i in range(3)]})

        async with ODataClient(
            source, build_platform_adapter("utahRealEstate"), transport=server.transport()
        ) as client:
            result = await Collector(source, client, store).collect_purge(
                property_resource(source), BATCH_ID
            )

        params = server.params(0)
        assert params["$select"] == "ListingKey"
        assert params["$count"] == "true"
        assert params["$orderby"] == "ListingKey asc"
        assert params["$top"] == "2"
        assert result.server_count == 3

        batch_files = store.list(source.name, "Property", "purge", BATCH_ID)
        assert len(batch_files) == 2
        first = store.read(batch_files[0])
        assert first.records == [{"ListingKey": "L0"}, {"ListingKey": "L1"}]
        assert first.count == 3

    @pytest.mark.asyncio
    async def test_listing(self, source: MlsSource, store: BatchStore) -> None:
        server = FakeMlsServer({"Property": [make_property(i) for i in range(3)]})

        async with ODataClient(
            source, build_platform_adapter("utahRealEstate"), transport=server.transport()
        ) as client:
            rows = await Collector(source, client, store).collect_listing(property_resource(source))

        assert rows[0] == {
            "ListingKey": "L0",
            "ModificationTimestamp": "2024-01-01T00:00:00Z",
            "PhotosChangeTimestamp": None,
        }
        assert len(rows) == 3
        # Listings stay in memory
        assert store.list(source.name, "Property") == []
