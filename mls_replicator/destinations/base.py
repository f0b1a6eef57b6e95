"""
Destination adapter contract.

A destination adapter stores the records of every resource of one source in
one backend. Adapters are built once per destination at startup with their
platform collaborators passed to the constructor, reused sequentially by
every run and closed on shutdown.

The optional naming/transform hooks come from the destination's ``config``
dict, so a user config can do e.g.::

    {"type": "sql", "name": "pg1", "config": {
        "connection_string": "postgresql+asyncpg://...",
        "make_table_name": lambda name: "ure_" + name,
    }}
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, ClassVar, Mapping, Sequence

from mls_replicator.indexes import Indexes
from mls_replicator.metadata import Metadata
from mls_replicator.platforms.base import PlatformAdapter, PlatformDataAdapter
from mls_replicator.sources import MlsResource

logger = logging.getLogger(__name__)

Record = dict[str, Any]


@dataclass(frozen=True)
class PurgeTarget:
    """Rows of one resource whose ``column`` value is in ``ids``."""

    resource_name: str
    column: str
    ids: Sequence[Any]
    # True when column is the resource's own primary key
    is_primary_key: bool = False


class DestinationAdapter(ABC):
    """Base class for all destination backends."""

    type_name: ClassVar[str] = "base"

    def __init__(
        self,
        name: str,
        config: Mapping[str, Any],
        platform_adapter: PlatformAdapter,
        platform_data_adapter: PlatformDataAdapter,
    ) -> None:
        self.name = name
        self.config = config
        self.platform_adapter = platform_adapter
        self.platform_data_adapter = platform_data_adapter

        self._user_make_table_name: Callable[[str], str] | None = config.get("make_table_name")
        self._user_make_field_name: Callable[[str, str], str] | None = config.get("make_field_name")
        self._user_make_foreign_key_field_name: Callable[[str, str, str], str] | None = config.get(
            "make_foreign_key_field_name"
        )
        self._user_transform: Callable[[str, Record, Metadata | None], Record] | None = config.get(
            "transform"
        )
        self._user_should_sync_table_schema: Callable[[str], bool] | None = config.get(
            "should_sync_table_schema"
        )

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name!r}>"

    # ========== Hooks ==========

    def make_table_name(self, resource_name: str) -> str:
        if self._user_make_table_name:
            return self._user_make_table_name(resource_name)
        return resource_name

    def make_field_name(self, resource_name: str, field_name: str) -> str:
        if self._user_make_field_name:
            return self._user_make_field_name(resource_name, field_name)
        return field_name

    def make_foreign_key_field_name(
        self, parent_resource_name: str, resource_name: str, field_name: str
    ) -> str:
        """Column of ``resource_name`` that holds the parent's ``field_name`` value."""
        if self._user_make_foreign_key_field_name:
            return self._user_make_foreign_key_field_name(
                parent_resource_name, resource_name, field_name
            )
        return self.make_field_name(resource_name, field_name)

    def transform(self, resource_name: str, record: Record, metadata: Metadata | None) -> Record:
        if self._user_transform:
            return self._user_transform(resource_name, record, metadata)
        return record

    def should_sync_table_schema(self, resource_name: str) -> bool:
        if self._user_should_sync_table_schema:
            return self._user_should_sync_table_schema(resource_name)
        return True

    # ========== Contract ==========

    async def sync_structure(self, resource: MlsResource, metadata: Metadata) -> None:
        """Bring the backend's schema for ``resource`` up to date. No-op by default."""

    @abstractmethod
    async def sync_data(
        self, resource: MlsResource, records: list[Record], metadata: Metadata | None
    ) -> int:
        """Upsert records keyed by primary key. Returns the number of records written."""

    @abstractmethod
    async def get_timestamps(
        self, resource: MlsResource, indexes: Indexes
    ) -> dict[str, datetime | None]:
        """Latest stored value of each update timestamp field (None when empty)."""

    @abstractmethod
    async def get_all_ids(self, resource: MlsResource, indexes: Indexes) -> list[Any]:
        """All stored primary keys in natural sort order."""

    @abstractmethod
    async def get_count(self, resource: MlsResource) -> int:
        ...

    async def get_most_recent_timestamp(self, resource: MlsResource) -> datetime | None:
        """Newest value across the resource's update timestamp fields."""
        timestamps = await self.get_timestamps(resource, resource.get_indexes())
        values = [value for value in timestamps.values() if value is not None]
        return max(values) if values else None

    @abstractmethod
    async def fetch_missing_ids_data(
        self, resource: MlsResource, indexes: Indexes
    ) -> list[Record]:
        """
        Primary key plus update timestamp fields of every stored record.

        Keys are the upstream field names, rows are in natural primary key
        order, so the result can be diffed against the source listing.
        """

    async def purge(self, resource: MlsResource, ids: Sequence[Any]) -> int:
        """
        Delete records by primary key, cascading to sub-resources.

        Expanded sub-resources flagged ``purge_from_parent`` lose the rows
        whose foreign key column holds one of the purged parent ids.

        Returns:
            Number of parent records deleted.
        """
        if not ids:
            return 0

        primary_key = resource.primary_key
        targets = [
            PurgeTarget(
                resource.name,
                self.make_field_name(resource.name, primary_key),
                ids,
                is_primary_key=True,
            )
        ]
        for sub_resource in resource.expand:
            if sub_resource.purge_from_parent:
                column = self.make_foreign_key_field_name(
                    resource.name, sub_resource.name, primary_key
                )
                targets.append(PurgeTarget(sub_resource.name, column, ids))

        deleted = await self._delete(targets)
        logger.info(
            "%s: purged %d %s records (%d requested)", self.name, deleted, resource.name, len(ids)
        )
        return deleted

    @abstractmethod
    async def _delete(self, targets: list[PurgeTarget]) -> int:
        """Apply the deletions, ideally atomically. Returns the count for the first target."""

    async def close_connection(self) -> None:
        """Release backend connections."""
