"""
Platform adapter base classes.

A platform adapter carries behavior specific to the MLS vendor platform
(Trestle, Bridge Interactive, ...): which metadata namespace holds the
entity types, field exclusion rules and how to get an access token.
"""

from dataclasses import dataclass
from datetime import datetime, timezone

import httpx
from sqlalchemy.types import TypeEngine

from mls_replicator.errors import ConfigurationError
from mls_replicator.metadata import EntityProperty, EntityType, Metadata
from mls_replicator.sources import MlsSource

# As far into the future as a 32-bit timestamp goes
NEVER_EXPIRES = datetime.fromtimestamp(2147483647, tz=timezone.utc)


@dataclass(frozen=True)
class AuthInfo:
    """An access token and its expiry."""

    access_token: str
    expires_at: datetime

    def is_expired(self, now: datetime | None = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return now >= self.expires_at


class PlatformAdapter:
    """Default platform behavior. Subclasses override what differs."""

    name = "base"
    metadata_namespace: str | None = None
    # Sources must set access_token; False when fetch_auth obtains one itself
    requires_access_token = True

    def get_entity_types(self, metadata: Metadata) -> list[EntityType]:
        return metadata.entity_types(self.metadata_namespace)

    def get_entity_type(self, metadata: Metadata, resource_name: str) -> EntityType | None:
        for entity_type in self.get_entity_types(metadata):
            if entity_type.name == resource_name:
                return entity_type
        return None

    def should_include_metadata_field(self, field_name: str) -> bool | None:
        """Return False to exclude a metadata field, None to have no opinion."""
        return None

    def should_include_json_field(self, field_name: str) -> bool | None:
        """Return False to exclude a field of a fetched record, None to have no opinion."""
        return self.should_include_metadata_field(field_name)

    async def fetch_auth(self, source: MlsSource, client: httpx.AsyncClient) -> AuthInfo:
        """Static token from the source config."""
        if not source.access_token:
            raise ConfigurationError(f"{source.name}: access_token is not configured")
        return AuthInfo(access_token=source.access_token, expires_at=NEVER_EXPIRES)


class PlatformDataAdapter:
    """Platform specific storage type overrides for relational destinations."""

    def overrides_database_type(self, prop: EntityProperty) -> bool:
        return False

    def get_database_type(self, prop: EntityProperty) -> TypeEngine:
        raise NotImplementedError
