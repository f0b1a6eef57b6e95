"""
Tests for the reconciler.
"""

from concurrent.futures import ThreadPoolExecutor
from typing import Any, Iterator
from unittest.mock import AsyncMock, MagicMock

import pytest

from mls_replicator.batches import BatchStore
from mls_replicator.client import ODataClient
from mls_replicator.platforms import build_platform_adapter
from mls_replicator.sources import MlsSource
from mls_replicator.sync.collector import Collector
from mls_replicator.sync.reconciler import Reconciler

from conftest import FakeMlsServer, make_property

OLD = "2024-01-01T00:00:00Z"
NEW = "2024-02-01T00:00:00Z"


def fake_destination(name: str, rows: list[dict[str, Any]]) -> MagicMock:
    destination = MagicMock()
    destination.name = name
    destination.fetch_missing_ids_data = AsyncMock(return_value=rows)
    return destination


def row(key: str, modified: str = OLD) -> dict[str, Any]:
    return {"ListingKey": key, "ModificationTimestamp": modified, "PhotosChangeTimestamp": None}


@pytest.fixture
def executor() -> Iterator[ThreadPoolExecutor]:
    with ThreadPoolExecutor(max_workers=1) as pool:
        yield pool


async def run_reconcile(
    source: MlsSource,
    store: BatchStore,
    server: FakeMlsServer,
    destinations: list[Any],
    executor: ThreadPoolExecutor,
) -> Any:
    async with ODataClient(
        source, build_platform_adapter("utahRealEstate"), transport=server.transport()
    ) as client:
        collector = Collector(source, client, store)
        return await Reconciler(source, collector, destinations, executor).reconcile(
            source.mls_resources[0]
        )


class TestReconciler:
    """Tests for finding missing and stale records."""

    @pytest.mark.asyncio
    async def test_missing_and_stale(
        self, source: MlsSource, store: BatchStore, executor: ThreadPoolExecutor
    ) -> None:
        server = FakeMlsServer({"Property": [
            make_property(1, OLD), make_property(2, OLD), make_property(3, NEW),
        ]})
        destination = fake_destination("db", [row("L1"), row("L3")])

        result = await run_reconcile(source, store, server, [destination], executor)

        assert result.source_count == 3
        assert result.ids == ["L2", "L3"]
        assert result.by_destination == {"db": ["L2", "L3"]}

    @pytest.mark.asyncio
    async def test_union_across_destinations(
        self, source: MlsSource, store: BatchStore, executor: ThreadPoolExecutor
    ) -> None:
        server = FakeMlsServer({"Property": [make_property(i) for i in (1, 2, 10)]})
        first = fake_destination("first", [row("L1"), row("L2")])
        second = fake_destination("second", [row("L2")])

        result = await run_reconcile(source, store, server, [first, second], executor)

        assert result.by_destination == {"first": ["L10"], "second": ["L1", "L10"]}
        assert result.ids == ["L1", "L10"]

    @pytest.mark.asyncio
    async def test_unsorted_inputs_are_sorted(
        self, source: MlsSource, store: BatchStore, executor: ThreadPoolExecutor
    ) -> None:
        """Server and database order is not trusted."""
        server = FakeMlsServer({"Property": [make_property(i) for i in (10, 9, 2)]})
        destination = fake_destination("db", [row("L10"), row("L2")])

        result = await run_reconcile(source, store, server, [destination], executor)

        assert result.ids == ["L9"]

    @pytest.mark.asyncio
    async def test_in_sync(
        self, source: MlsSource, store: BatchStore, executor: ThreadPoolExecutor
    ) -> None:
        server = FakeMlsServer({"Property": [make_property(1)]})
        destination = fake_destination("db", [row("L1")])

        result = await run_reconcile(source, store, server, [destination], executor)

        assert result.ids == []
        # The listing is never written as batches
        assert store.list(source.name, "Property") == []
