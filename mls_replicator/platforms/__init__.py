"""Platform adapters - MLS vendor specific behavior."""

from mls_replicator.errors import ConfigurationError
from mls_replicator.platforms.base import AuthInfo, PlatformAdapter, PlatformDataAdapter
from mls_replicator.platforms.bridge_interactive import (
    BridgeInteractivePlatformAdapter,
    BridgeInteractiveSqlDataAdapter,
)
from mls_replicator.platforms.trestle import TrestlePlatformAdapter, TrestleSqlDataAdapter
from mls_replicator.platforms.utah_real_estate import UtahRealEstatePlatformAdapter

PLATFORM_ADAPTERS: dict[str, type[PlatformAdapter]] = {
    BridgeInteractivePlatformAdapter.name: BridgeInteractivePlatformAdapter,
    TrestlePlatformAdapter.name: TrestlePlatformAdapter,
    UtahRealEstatePlatformAdapter.name: UtahRealEstatePlatformAdapter,
}

# (platform, destination type) -> data adapter; other pairs get the no-op base
PLATFORM_DATA_ADAPTERS: dict[tuple[str, str], type[PlatformDataAdapter]] = {
    (BridgeInteractivePlatformAdapter.name, "sql"): BridgeInteractiveSqlDataAdapter,
    (TrestlePlatformAdapter.name, "sql"): TrestleSqlDataAdapter,
}


def build_platform_adapter(name: str) -> PlatformAdapter:
    """Instantiate a platform adapter by name."""
    try:
        return PLATFORM_ADAPTERS[name]()
    except KeyError:
        raise ConfigurationError(f"Unknown platform adapter: {name}") from None


def build_platform_data_adapter(platform_name: str, destination_type: str) -> PlatformDataAdapter:
    """Instantiate the data adapter for a platform/destination pair."""
    adapter_class = PLATFORM_DATA_ADAPTERS.get((platform_name, destination_type), PlatformDataAdapter)
    return adapter_class()


__all__ = [
    "PLATFORM_ADAPTERS",
    "PLATFORM_DATA_ADAPTERS",
    "AuthInfo",
    "PlatformAdapter",
    "PlatformDataAdapter",
    "build_platform_adapter",
    "build_platform_data_adapter",
]
