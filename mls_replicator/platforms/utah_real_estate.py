"""UtahRealEstate.com RESO Web API."""

from mls_replicator.platforms.base import PlatformAdapter


class UtahRealEstatePlatformAdapter(PlatformAdapter):
    name = "utahRealEstate"
    metadata_namespace = "Odata.Models"

    def should_include_metadata_field(self, field_name: str) -> bool | None:
        # X_ fields are vendor specific
        if field_name.startswith("X_"):
            return False
        return None

    def should_include_json_field(self, field_name: str) -> bool | None:
        if field_name == "Directions":
            return False
        return self.should_include_metadata_field(field_name)
