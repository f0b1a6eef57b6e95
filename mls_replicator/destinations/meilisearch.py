"""
Meilisearch destination.

Each resource is one index. Uses httpx directly against the REST API and
waits for every enqueued task, so a batch only counts as applied once
Meilisearch has actually processed it.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime, timezone
from typing import Any, Mapping

import httpx

from mls_replicator.destinations.base import DestinationAdapter, PurgeTarget, Record
from mls_replicator.errors import ConfigurationError, DestinationError
from mls_replicator.indexes import Indexes, get_timestamp_fields
from mls_replicator.metadata import Metadata
from mls_replicator.platforms.base import PlatformAdapter, PlatformDataAdapter
from mls_replicator.sources import MlsResource
from mls_replicator.utils import chunked, natural_sort, parse_timestamp

logger = logging.getLogger(__name__)

# Documents per page when listing ids
PAGE_SIZE = 1000

# Ids per delete request
DELETE_CHUNK_SIZE = 1000


def _to_document_value(value: Any) -> Any:
    # Timestamps are normalized to UTC so ISO strings sort chronologically
    if isinstance(value, datetime):
        return value.astimezone(timezone.utc).isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return value


class MeilisearchDestination(DestinationAdapter):
    """
    Search index destination.

    Config:
        url: Meilisearch base URL
        api_key: Master or admin key
        task_timeout: Seconds to wait for an enqueued task (default 300)
    """

    type_name = "meilisearch"

    def __init__(
        self,
        name: str,
        config: Mapping[str, Any],
        platform_adapter: PlatformAdapter,
        platform_data_adapter: PlatformDataAdapter,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(name, config, platform_adapter, platform_data_adapter)
        url = config.get("url")
        if not url:
            raise ConfigurationError(f"Destination '{name}': url is required")

        headers = {"Content-Type": "application/json"}
        if config.get("api_key"):
            headers["Authorization"] = f"Bearer {config['api_key']}"

        self.task_timeout = float(config.get("task_timeout", 300))
        self._client = httpx.AsyncClient(
            base_url=url.rstrip("/"),
            headers=headers,
            timeout=30.0,
            transport=transport,
        )

    def _index_uid(self, resource_name: str) -> str:
        return self.make_table_name(resource_name)

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise DestinationError(self.name, f"{method} {path} failed: {e}") from e
        if response.status_code >= 400 and response.status_code != 404:
            raise DestinationError(
                self.name, f"{method} {path}: HTTP {response.status_code} {response.text[:200]}"
            )
        return response

    async def _wait_for_task(self, response: httpx.Response) -> dict[str, Any]:
        """Poll an enqueued task until it succeeds."""
        task_uid = response.json()["taskUid"]
        deadline = asyncio.get_running_loop().time() + self.task_timeout
        delay = 0.05
        while True:
            task = (await self._request("GET", f"/tasks/{task_uid}")).json()
            status = task.get("status")
            if status == "succeeded":
                return task
            if status in ("failed", "canceled"):
                error = (task.get("error") or {}).get("message", status)
                raise DestinationError(self.name, f"Task {task_uid} {status}: {error}")
            if asyncio.get_running_loop().time() > deadline:
                raise DestinationError(self.name, f"Task {task_uid} did not finish in time")
            await asyncio.sleep(delay)
            delay = min(delay * 2, 1.0)

    # ========== Schema ==========

    async def sync_structure(self, resource: MlsResource, metadata: Metadata) -> None:
        """Create the index and make key and timestamp fields sortable/filterable."""
        if not self.should_sync_table_schema(resource.name):
            return

        uid = self._index_uid(resource.name)
        primary_key = self.make_field_name(resource.name, resource.primary_key)
        response = await self._request("GET", f"/indexes/{uid}")
        if response.status_code == 404:
            created = await self._request("POST", "/indexes", json={"uid": uid, "primaryKey": primary_key})
            await self._wait_for_task(created)
            logger.info("%s: created index %s", self.name, uid)

        timestamp_columns = [
            self.make_field_name(resource.name, field)
            for field in get_timestamp_fields(resource.get_indexes())
        ]
        sortable = [primary_key, *timestamp_columns]
        await self._wait_for_task(await self._request(
            "PUT", f"/indexes/{uid}/settings/sortable-attributes", json=sortable
        ))
        await self._add_filterable(uid, sortable)

        # Cascaded purges delete sub-resource documents by filter
        for sub_resource in resource.expand:
            if not sub_resource.purge_from_parent:
                continue
            column = self.make_foreign_key_field_name(
                resource.name, sub_resource.name, resource.primary_key
            )
            await self._add_filterable(self._index_uid(sub_resource.name), [column])

    async def _add_filterable(self, uid: str, columns: list[str]) -> None:
        """Make columns filterable, keeping attributes set by other resources."""
        current = await self._request("GET", f"/indexes/{uid}/settings/filterable-attributes")
        attributes = current.json() if current.status_code == 200 else []
        missing = [column for column in columns if column not in attributes]
        if missing:
            await self._wait_for_task(await self._request(
                "PUT", f"/indexes/{uid}/settings/filterable-attributes", json=[*attributes, *missing]
            ))

    # ========== Data ==========

    async def sync_data(
        self, resource: MlsResource, records: list[Record], metadata: Metadata | None
    ) -> int:
        if not records:
            return 0

        uid = self._index_uid(resource.name)
        primary_key = self.make_field_name(resource.name, resource.primary_key)
        documents = [
            {
                self.make_field_name(resource.name, key): _to_document_value(value)
                for key, value in record.items()
            }
            for record in records
        ]
        response = await self._request(
            "POST",
            f"/indexes/{uid}/documents",
            params={"primaryKey": primary_key},
            json=documents,
        )
        await self._wait_for_task(response)
        logger.debug("%s: indexed %d documents in %s", self.name, len(documents), uid)
        return len(documents)

    # ========== Queries ==========

    async def _list_documents(self, resource: MlsResource, fields: list[str]) -> list[Record]:
        uid = self._index_uid(resource.name)
        columns = {self.make_field_name(resource.name, field): field for field in fields}
        documents: list[Record] = []
        offset = 0
        while True:
            response = await self._request(
                "GET",
                f"/indexes/{uid}/documents",
                params={"fields": ",".join(columns), "limit": PAGE_SIZE, "offset": offset},
            )
            if response.status_code == 404:
                return []
            page = response.json()
            for document in page.get("results", []):
                documents.append({field: document.get(column) for column, field in columns.items()})
            offset += PAGE_SIZE
            if offset >= page.get("total", 0):
                break
        return documents

    async def get_timestamps(
        self, resource: MlsResource, indexes: Indexes
    ) -> dict[str, datetime | None]:
        uid = self._index_uid(resource.name)
        timestamps: dict[str, datetime | None] = {}
        for field in get_timestamp_fields(indexes):
            column = self.make_field_name(resource.name, field)
            response = await self._request(
                "POST",
                f"/indexes/{uid}/search",
                json={
                    "q": "",
                    "sort": [f"{column}:desc"],
                    "limit": 1,
                    "attributesToRetrieve": [column],
                },
            )
            hits = response.json().get("hits", []) if response.status_code == 200 else []
            timestamps[field] = parse_timestamp(hits[0].get(column)) if hits else None
        return timestamps

    async def get_all_ids(self, resource: MlsResource, indexes: Indexes) -> list[Any]:
        primary_key = resource.primary_key
        documents = await self._list_documents(resource, [primary_key])
        return natural_sort(document[primary_key] for document in documents)

    async def fetch_missing_ids_data(self, resource: MlsResource, indexes: Indexes) -> list[Record]:
        primary_key = resource.primary_key
        documents = await self._list_documents(
            resource, [primary_key, *get_timestamp_fields(indexes)]
        )
        return natural_sort(documents, key=lambda document: document[primary_key])

    async def get_count(self, resource: MlsResource) -> int:
        response = await self._request("GET", f"/indexes/{self._index_uid(resource.name)}/stats")
        if response.status_code == 404:
            return 0
        return int(response.json().get("numberOfDocuments", 0))

    async def _delete(self, targets: list[PurgeTarget]) -> int:
        counts: list[int] = []
        for target in targets:
            uid = self._index_uid(target.resource_name)
            deleted = 0
            for chunk in chunked(list(target.ids), DELETE_CHUNK_SIZE):
                if target.is_primary_key:
                    response = await self._request(
                        "POST", f"/indexes/{uid}/documents/delete-batch", json=list(chunk)
                    )
                else:
                    quoted = ", ".join(
                        '"' + str(value).replace('"', '\\"') + '"' for value in chunk
                    )
                    response = await self._request(
                        "POST",
                        f"/indexes/{uid}/documents/delete",
                        json={"filter": f"{target.column} IN [{quoted}]"},
                    )
                if response.status_code == 404:
                    break
                task = await self._wait_for_task(response)
                deleted += int((task.get("details") or {}).get("deletedDocuments") or 0)
            counts.append(deleted)
        return counts[0]

    async def close_connection(self) -> None:
        await self._client.aclose()
