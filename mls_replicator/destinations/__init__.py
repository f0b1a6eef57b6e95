"""Destination adapters and their type registry."""

from mls_replicator.destinations.base import DestinationAdapter, PurgeTarget
from mls_replicator.destinations.devnull import DevNullDestination
from mls_replicator.destinations.meilisearch import MeilisearchDestination
from mls_replicator.destinations.sql import SqlDestination
from mls_replicator.errors import ConfigurationError
from mls_replicator.platforms.base import PlatformAdapter, PlatformDataAdapter
from mls_replicator.sources import DestinationConfig

DESTINATION_TYPES: dict[str, type[DestinationAdapter]] = {
    SqlDestination.type_name: SqlDestination,
    MeilisearchDestination.type_name: MeilisearchDestination,
    DevNullDestination.type_name: DevNullDestination,
}


def build_destination(
    destination: DestinationConfig,
    platform_adapter: PlatformAdapter,
    platform_data_adapter: PlatformDataAdapter,
) -> DestinationAdapter:
    """Construct the adapter for a destination config with its collaborators bound."""
    adapter_class = DESTINATION_TYPES.get(destination.type)
    if adapter_class is None:
        raise ConfigurationError(f"Unknown destination type: {destination.type}")
    return adapter_class(
        destination.name,
        destination.config,
        platform_adapter,
        platform_data_adapter,
    )


__all__ = [
    "DESTINATION_TYPES",
    "DestinationAdapter",
    "DevNullDestination",
    "MeilisearchDestination",
    "PurgeTarget",
    "SqlDestination",
    "build_destination",
]
