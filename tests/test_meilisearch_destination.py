"""
Tests for the Meilisearch destination against a mocked REST API.
"""

import json
from datetime import datetime, timezone
from typing import Any, AsyncIterator

import httpx
import pytest

from mls_replicator.destinations import MeilisearchDestination
from mls_replicator.errors import ConfigurationError, DestinationError
from mls_replicator.metadata import parse_metadata
from mls_replicator.platforms import PlatformDataAdapter, build_platform_adapter
from mls_replicator.sources import MlsSource

from conftest import PROPERTY_METADATA


class FakeMeilisearch:
    """Tiny in-memory Meilisearch: indexes, documents, tasks that succeed at once."""

    def __init__(self) -> None:
        self.indexes: dict[str, dict[str, dict[str, Any]]] = {}
        self.settings: dict[tuple[str, str], list[str]] = {}
        self.tasks: dict[int, dict[str, Any]] = {}
        self.requests: list[httpx.Request] = []

    def _task(self, details: dict[str, Any] | None = None, status: str = "succeeded") -> httpx.Response:
        uid = len(self.tasks) + 1
        self.tasks[uid] = {"uid": uid, "status": status, "details": details or {}}
        if status == "failed":
            self.tasks[uid]["error"] = {"message": "bad document"}
        return httpx.Response(202, json={"taskUid": uid})

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        parts = request.url.path.strip("/").split("/")
        body = json.loads(request.content) if request.content else None

        if parts[0] == "tasks":
            return httpx.Response(200, json=self.tasks[int(parts[1])])
        if parts == ["indexes"] and request.method == "POST":
            self.indexes[body["uid"]] = {}
            return self._task()

        uid = parts[1]
        if uid not in self.indexes:
            if request.method == "PUT" and parts[2] == "settings":
                self.indexes[uid] = {}
            else:
                return httpx.Response(404, json={"code": "index_not_found"})
        documents = self.indexes[uid]
        rest = parts[2:]

        if not rest:
            return httpx.Response(200, json={"uid": uid})
        if rest[0] == "settings":
            if request.method == "PUT":
                self.settings[(uid, rest[1])] = body
                return self._task()
            return httpx.Response(200, json=self.settings.get((uid, rest[1]), []))
        if rest == ["stats"]:
            return httpx.Response(200, json={"numberOfDocuments": len(documents)})
        if rest == ["documents"] and request.method == "POST":
            primary_key = request.url.params["primaryKey"]
            if any(primary_key not in document for document in body):
                return self._task(status="failed")
            for document in body:
                documents.setdefault(document[primary_key], {}).update(document)
            return self._task()
        if rest == ["documents"]:
            fields = request.url.params["fields"].split(",")
            offset = int(request.url.params["offset"])
            limit = int(request.url.params["limit"])
            page = list(documents.values())[offset:offset + limit]
            return httpx.Response(200, json={
                "results": [{key: document.get(key) for key in fields} for document in page],
                "total": len(documents),
            })
        if rest == ["documents", "delete-batch"]:
            deleted = sum(1 for key in body if documents.pop(key, None) is not None)
            return self._task({"deletedDocuments": deleted})
        if rest == ["documents", "delete"]:
            column, values = body["filter"].split(" IN ")
            wanted = json.loads(values)
            doomed = [key for key, document in documents.items() if document.get(column) in wanted]
            for key in doomed:
                del documents[key]
            return self._task({"deletedDocuments": len(doomed)})
        if rest == ["search"]:
            column, direction = body["sort"][0].split(":")
            hits = sorted(
                (document for document in documents.values() if document.get(column)),
                key=lambda document: document[column],
                reverse=direction == "desc",
            )
            return httpx.Response(200, json={"hits": hits[:body["limit"]]})
        return httpx.Response(400, json={"message": f"unhandled {request.method} {request.url.path}"})


METADATA = parse_metadata(PROPERTY_METADATA)


@pytest.fixture
def meili() -> FakeMeilisearch:
    return FakeMeilisearch()


@pytest.fixture
async def destination(meili: FakeMeilisearch) -> AsyncIterator[MeilisearchDestination]:
    adapter = MeilisearchDestination(
        "search",
        {"url": "http://meili.test", "api_key": "master"},
        build_platform_adapter("utahRealEstate"),
        PlatformDataAdapter(),
        transport=httpx.MockTransport(meili.handler),
    )
    yield adapter
    await adapter.close_connection()


def listing(key: str, day: int) -> dict[str, Any]:
    return {
        "ListingKey": key,
        "ModificationTimestamp": datetime(2024, 1, day, tzinfo=timezone.utc),
        "City": "Ogden",
    }


class TestMeilisearchDestination:
    """Tests for index setup, upserts, queries and purge."""

    @pytest.mark.asyncio
    async def test_sync_structure_creates_index(
        self, destination: MeilisearchDestination, meili: FakeMeilisearch, source: MlsSource
    ) -> None:
        await destination.sync_structure(source.mls_resources[0], METADATA)

        assert "Property" in meili.indexes
        assert meili.settings[("Property", "sortable-attributes")] == [
            "ListingKey", "ModificationTimestamp", "PhotosChangeTimestamp",
        ]
        assert "ListingKey" in meili.settings[("Media", "filterable-attributes")]
        assert meili.requests[0].headers["Authorization"] == "Bearer master"

    @pytest.mark.asyncio
    async def test_upsert_and_query(
        self, destination: MeilisearchDestination, source: MlsSource
    ) -> None:
        resource = source.mls_resources[0]
        await destination.sync_structure(resource, METADATA)

        await destination.sync_data(resource, [listing("L10", 2), listing("L9", 5)], METADATA)
        await destination.sync_data(resource, [listing("L10", 3)], METADATA)

        assert await destination.get_count(resource) == 2
        assert await destination.get_all_ids(resource, resource.get_indexes()) == ["L9", "L10"]
        timestamps = await destination.get_timestamps(resource, resource.get_indexes())
        assert timestamps["ModificationTimestamp"] == datetime(2024, 1, 5, tzinfo=timezone.utc)
        assert timestamps["PhotosChangeTimestamp"] is None

    @pytest.mark.asyncio
    async def test_missing_index_reads_as_empty(
        self, destination: MeilisearchDestination, source: MlsSource
    ) -> None:
        resource = source.mls_resources[0]

        assert await destination.get_count(resource) == 0
        assert await destination.get_all_ids(resource, resource.get_indexes()) == []

    @pytest.mark.asyncio
    async def test_failed_task_raises(
        self, destination: MeilisearchDestination, source: MlsSource
    ) -> None:
        resource = source.mls_resources[0]
        await destination.sync_structure(resource, METADATA)

        with pytest.raises(DestinationError, match="bad document"):
            await destination.sync_data(resource, [{"City": "Ogden"}], METADATA)

    @pytest.mark.asyncio
    async def test_purge_cascades_by_filter(
        self, destination: MeilisearchDestination, meili: FakeMeilisearch, source: MlsSource
    ) -> None:
        property_resource, media_resource = source.all_resources()
        await destination.sync_structure(property_resource, METADATA)
        await destination.sync_structure(media_resource, METADATA)
        assert "ListingKey" in meili.settings[("Media", "filterable-attributes")]
        await destination.sync_data(property_resource, [listing("L1", 1), listing("L2", 1)], METADATA)
        await destination.sync_data(media_resource, [
            {"MediaKey": "M1", "ListingKey": "L1"},
            {"MediaKey": "M2", "ListingKey": "L2"},
        ], METADATA)

        assert await destination.purge(property_resource, ["L1"]) == 1

        assert list(meili.indexes["Property"]) == ["L2"]
        assert list(meili.indexes["Media"]) == ["M2"]

    def test_url_required(self) -> None:
        with pytest.raises(ConfigurationError, match="url"):
            MeilisearchDestination(
                "search", {}, build_platform_adapter("utahRealEstate"), PlatformDataAdapter()
            )
