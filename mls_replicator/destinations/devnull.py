"""Destination that stores nothing. Handy for dry runs of a new source."""

import logging
from datetime import datetime
from typing import Any

from mls_replicator.destinations.base import DestinationAdapter, PurgeTarget, Record
from mls_replicator.indexes import Indexes, get_timestamp_fields
from mls_replicator.metadata import Metadata
from mls_replicator.sources import MlsResource

logger = logging.getLogger(__name__)


class DevNullDestination(DestinationAdapter):
    """Accepts every record and forgets it. Counts what went through."""

    type_name = "devnull"

    received: dict[str, int]

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.received = {}

    async def sync_data(
        self, resource: MlsResource, records: list[Record], metadata: Metadata | None
    ) -> int:
        self.received[resource.name] = self.received.get(resource.name, 0) + len(records)
        logger.debug("%s: discarded %d %s records", self.name, len(records), resource.name)
        return len(records)

    async def get_timestamps(
        self, resource: MlsResource, indexes: Indexes
    ) -> dict[str, datetime | None]:
        return {field: None for field in get_timestamp_fields(indexes)}

    async def get_all_ids(self, resource: MlsResource, indexes: Indexes) -> list[Any]:
        return []

    async def get_count(self, resource: MlsResource) -> int:
        return 0

    async def fetch_missing_ids_data(self, resource: MlsResource, indexes: Indexes) -> list[Record]:
        return []

    async def _delete(self, targets: list[PurgeTarget]) -> int:
        return 0
