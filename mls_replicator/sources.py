"""
MLS source configuration models.

The user configuration is a Python module exposing ``get_config()`` which
returns a plain dict (so endpoint builders and destination hooks can be real
functions). It is validated into these frozen models once at startup.

Example::

    def get_config():
        return {
            "user_config_version": "0.2.0",
            "sources": [
                {
                    "name": "utahRealEstate",
                    "access_token": os.environ["URE_TOKEN"],
                    "metadata_endpoint": "https://resoapi.utahrealestate.com/reso/odata/$metadata",
                    "get_resource_endpoint": lambda r: f"https://resoapi.utahrealestate.com/reso/odata/{r.name}",
                    "platform_adapter_name": "utahRealEstate",
                    "mls_resources": [
                        {"name": "Property", "expand": [{"field_name": "Media", "name": "Media"}]},
                    ],
                    "destinations": [
                        {"type": "sql", "name": "pg1", "config": {"connection_string": "postgresql+asyncpg://..."}},
                    ],
                    "cron": {"sync": {"enabled": True, "cron_strings": ["*/15 * * * *"]}},
                },
            ],
        }
"""

from __future__ import annotations

from typing import Any, Callable

from pydantic import BaseModel, ConfigDict, Field

from mls_replicator.indexes import IndexDefinition, Indexes, get_indexes, get_primary_key_field
from mls_replicator.utils import flatten_expanded_resources

USER_CONFIG_VERSION = "0.2.0"


def default_reconcile_id_filter_string(primary_key: str, separator: str, record_id: Any) -> str:
    """Filter fragment selecting one record by primary key."""
    quoted = str(record_id).replace("'", "''")
    return f"{separator}{primary_key} eq '{quoted}'"


class MlsResource(BaseModel):
    """An upstream resource (entity type), possibly expanding sub-resources."""

    model_config = ConfigDict(frozen=True)

    name: str
    select: tuple[str, ...] | None = None
    expand: tuple[MlsResource, ...] = ()
    indexes: dict[str, IndexDefinition] | None = None

    # Only set on expanded sub-resources
    field_name: str | None = None
    purge_from_parent: bool = False

    def get_indexes(self) -> Indexes:
        """Index definitions (config override or RESO default)."""
        return get_indexes(self.name, self.indexes)

    @property
    def primary_key(self) -> str:
        return get_primary_key_field(self.name, self.get_indexes())


class DestinationConfig(BaseModel):
    """A destination store: backend type tag, unique name, backend config."""

    model_config = ConfigDict(frozen=True)

    type: str
    name: str
    config: dict[str, Any] = Field(default_factory=dict)


class CronSchedule(BaseModel):
    """Schedule for one operation."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = False
    cron_strings: tuple[str, ...] = ()


class CronConfig(BaseModel):
    """Per-operation schedules for a source."""

    model_config = ConfigDict(frozen=True)

    sync: CronSchedule = CronSchedule()
    purge: CronSchedule = CronSchedule()
    reconcile: CronSchedule = CronSchedule()

    def for_operation(self, operation: str) -> CronSchedule:
        return getattr(self, operation)


class MlsSource(BaseModel):
    """A connection to one MLS and everything replicated from it."""

    model_config = ConfigDict(frozen=True)

    name: str

    # Auth, interpreted by the platform adapter
    access_token: str | None = None
    credentials: dict[str, Any] = Field(default_factory=dict)

    metadata_endpoint: str | None = None
    metadata_path: str | None = None

    get_resource_endpoint: Callable[[MlsResource], str]
    get_replication_endpoint: Callable[[MlsResource], str] | None = None
    get_purge_endpoint: Callable[[MlsResource], str] | None = None

    top: int = 1000
    top_for_purge: int = 10000
    use_order_by: bool = True

    reconcile_filter_template: str = "PLACEHOLDER"
    reconcile_filter_separator: str = " or "
    get_reconcile_id_filter_string: Callable[[str, str, Any], str] = default_reconcile_id_filter_string

    platform_adapter_name: str
    mls_resources: tuple[MlsResource, ...]
    destinations: tuple[DestinationConfig, ...] = ()
    cron: CronConfig = CronConfig()

    def replication_endpoint(self, resource: MlsResource) -> str:
        builder = self.get_replication_endpoint or self.get_resource_endpoint
        return builder(resource)

    def purge_endpoint(self, resource: MlsResource) -> str:
        builder = self.get_purge_endpoint or self.get_resource_endpoint
        return builder(resource)

    def all_resources(self) -> list[MlsResource]:
        """Top-level and expanded resources, unique by name."""
        return flatten_expanded_resources(self.mls_resources)


class ReplicatorConfig(BaseModel):
    """Root of the user configuration."""

    model_config = ConfigDict(frozen=True)

    user_config_version: str = USER_CONFIG_VERSION
    sources: tuple[MlsSource, ...] = ()

    def get_source(self, name: str) -> MlsSource:
        for source in self.sources:
            if source.name == name:
                return source
        raise KeyError(name)


MlsResource.model_rebuild()
