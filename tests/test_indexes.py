"""
Tests for index definitions and the field inclusion rule.
"""

import pytest

from mls_replicator.errors import ConfigurationError
from mls_replicator.indexes import (
    IndexDefinition,
    get_indexes,
    get_primary_key_field,
    get_timestamp_fields,
    is_indexed_field,
    should_include_field,
)
from mls_replicator.sources import MlsResource

PROPERTY_INDEXES = get_indexes("Property")


def no_opinion(field_name: str) -> None:
    return None


class TestDefaultIndexes:
    """Tests for the RESO default index table."""

    def test_property(self) -> None:
        assert get_primary_key_field("Property", PROPERTY_INDEXES) == "ListingKey"
        assert get_timestamp_fields(PROPERTY_INDEXES) == [
            "ModificationTimestamp",
            "PhotosChangeTimestamp",
        ]

    def test_unknown_resource_needs_override(self) -> None:
        with pytest.raises(ConfigurationError, match="CustomThing"):
            get_indexes("CustomThing")

    def test_override_wins(self) -> None:
        resource = MlsResource.model_validate({
            "name": "Property",
            "indexes": {
                "PRIMARY": {"fields": ["ListingId"], "is_primary": True},
            },
        })

        assert resource.primary_key == "ListingId"
        assert get_timestamp_fields(resource.get_indexes()) == []


class TestPrimaryKeyExtraction:
    """Exactly one primary index with exactly one field is required."""

    def test_no_primary_index(self) -> None:
        indexes = {"ts": IndexDefinition(fields=("ModificationTimestamp",), is_update_timestamp=True)}

        with pytest.raises(ConfigurationError, match="exactly 1 primary key"):
            get_primary_key_field("Thing", indexes)

    def test_two_primary_indexes(self) -> None:
        indexes = {
            "a": IndexDefinition(fields=("A",), is_primary=True),
            "b": IndexDefinition(fields=("B",), is_primary=True),
        }

        with pytest.raises(ConfigurationError, match="got 2"):
            get_primary_key_field("Thing", indexes)

    def test_composite_primary_key(self) -> None:
        indexes = {"PRIMARY": IndexDefinition(fields=("A", "B"), is_primary=True)}

        with pytest.raises(ConfigurationError, match="primary key field"):
            get_primary_key_field("Thing", indexes)


class TestFieldInclusion:
    """Tests for should_include_field."""

    def test_indexed_field_always_included(self) -> None:
        """Neither the platform nor the select list can drop an indexed field."""
        assert is_indexed_field("ModificationTimestamp", PROPERTY_INDEXES)
        assert should_include_field(
            "ListingKey", PROPERTY_INDEXES, lambda name: False, select=["City"]
        )

    def test_platform_can_exclude(self) -> None:
        assert not should_include_field("X_Secret", PROPERTY_INDEXES, lambda name: False)

    def test_platform_cannot_force_in(self) -> None:
        """A True from the platform does not override the select list."""
        assert not should_include_field(
            "PublicRemarks", PROPERTY_INDEXES, lambda name: True, select=["City"]
        )

    def test_select_list_membership(self) -> None:
        assert should_include_field("City", PROPERTY_INDEXES, no_opinion, select=["City"])
        assert not should_include_field("Country", PROPERTY_INDEXES, no_opinion, select=["City"])

    def test_included_by_default(self) -> None:
        assert should_include_field("Anything", PROPERTY_INDEXES, no_opinion)
