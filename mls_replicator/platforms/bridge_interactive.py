"""Bridge Interactive (Bridge API) RESO Web API."""

from sqlalchemy.types import JSON, TypeEngine

from mls_replicator.metadata import EntityProperty
from mls_replicator.platforms.base import PlatformAdapter, PlatformDataAdapter


class BridgeInteractivePlatformAdapter(PlatformAdapter):
    name = "bridgeInteractive"
    metadata_namespace = "org.reso.metadata"

    def should_include_metadata_field(self, field_name: str) -> bool | None:
        # Bridge's local (non-RESO) fields are named like FEED_FieldName
        if "_" in field_name and field_name.split("_", 1)[0].isupper():
            return False
        return None

    def should_include_json_field(self, field_name: str) -> bool | None:
        # Annotations such as "@odata.id" travel with each record
        if field_name.startswith("@"):
            return False
        return self.should_include_metadata_field(field_name)


class BridgeInteractiveSqlDataAdapter(PlatformDataAdapter):
    """Multi-select lookups are declared as collections; store them as JSON."""

    def overrides_database_type(self, prop: EntityProperty) -> bool:
        return bool(prop.type and prop.type.startswith("Collection("))

    def get_database_type(self, prop: EntityProperty) -> TypeEngine:
        return JSON()
