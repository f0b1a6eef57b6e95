"""
Resource index definitions and the field inclusion rule.

Every replicated resource needs exactly one single-field primary index and
zero or more "update timestamp" indexes used for incremental sync and drift
detection. Well-known RESO resources have defaults; anything else (or an
override) comes from the resource's ``indexes`` config.
"""

from typing import Callable, Mapping, Sequence

from pydantic import BaseModel, ConfigDict

from mls_replicator.errors import ConfigurationError


class IndexDefinition(BaseModel):
    """One index on a resource."""

    model_config = ConfigDict(frozen=True)

    fields: tuple[str, ...]
    is_primary: bool = False
    is_update_timestamp: bool = False


Indexes = Mapping[str, IndexDefinition]


def _resource_indexes(primary_key: str, *timestamps: str) -> dict[str, IndexDefinition]:
    indexes = {"PRIMARY": IndexDefinition(fields=(primary_key,), is_primary=True)}
    for field_name in timestamps:
        indexes[field_name] = IndexDefinition(fields=(field_name,), is_update_timestamp=True)
    return indexes


# RESO Data Dictionary keys for the standard resources
DEFAULT_INDEXES: dict[str, dict[str, IndexDefinition]] = {
    "Property": _resource_indexes("ListingKey", "ModificationTimestamp", "PhotosChangeTimestamp"),
    "Member": _resource_indexes("MemberKey", "ModificationTimestamp"),
    "Office": _resource_indexes("OfficeKey", "ModificationTimestamp"),
    "Media": _resource_indexes("MediaKey", "ModificationTimestamp"),
    "OpenHouse": _resource_indexes("OpenHouseKey", "ModificationTimestamp"),
    "PropertyRooms": _resource_indexes("RoomKey", "ModificationTimestamp"),
    "PropertyUnitTypes": _resource_indexes("UnitTypeKey", "ModificationTimestamp"),
    "Teams": _resource_indexes("TeamKey", "ModificationTimestamp"),
    "TeamMembers": _resource_indexes("TeamMemberKey", "ModificationTimestamp"),
    "Lookup": _resource_indexes("LookupKey", "ModificationTimestamp"),
}


def get_indexes(resource_name: str, overrides: Indexes | None = None) -> Indexes:
    """
    Get the index definitions for a resource.

    Raises:
        ConfigurationError: If the resource has neither an override nor a default.
    """
    if overrides:
        return overrides
    if resource_name not in DEFAULT_INDEXES:
        raise ConfigurationError(
            f"No index definitions for resource '{resource_name}'; "
            f"declare 'indexes' on the resource"
        )
    return DEFAULT_INDEXES[resource_name]


def get_primary_key_field(resource_name: str, indexes: Indexes) -> str:
    """
    Get the single primary key field of a resource.

    Raises:
        ConfigurationError: Unless there is exactly one primary index with
            exactly one field.
    """
    primary = [name for name, index in indexes.items() if index.is_primary]
    if len(primary) != 1:
        raise ConfigurationError(
            f"{resource_name}: expected exactly 1 primary key, "
            f"got {len(primary)} ({', '.join(primary)})"
        )
    fields = indexes[primary[0]].fields
    if len(fields) != 1:
        raise ConfigurationError(
            f"{resource_name}: expected exactly 1 primary key field, "
            f"got {len(fields)} ({', '.join(fields)})"
        )
    return fields[0]


def get_timestamp_fields(indexes: Indexes) -> list[str]:
    """Get the update timestamp fields, in declaration order."""
    return [
        index.fields[0]
        for index in indexes.values()
        if index.is_update_timestamp and index.fields
    ]


def is_indexed_field(field_name: str, indexes: Indexes) -> bool:
    """Check whether a field belongs to any index."""
    return any(field_name in index.fields for index in indexes.values())


def should_include_field(
    field_name: str,
    indexes: Indexes,
    platform_predicate: Callable[[str], bool | None],
    select: Sequence[str] | None = None,
) -> bool:
    """
    Decide whether a field is replicated.

    Indexed fields are always included. Otherwise the platform predicate may
    exclude a field (it returns False) but never force one in. Otherwise an
    explicit selection list decides, and without one the field is included.
    """
    if is_indexed_field(field_name, indexes):
        return True
    if platform_predicate(field_name) is False:
        return False
    if select:
        return field_name in select
    return True
