"""
RESO / OData metadata handling.

Fetches and parses the ``$metadata`` EDMX document describing each entity
type's properties. Only the parts the replicator needs are kept: property
names, EDM types and the facets used by the type mapping.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from lxml import etree

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EntityProperty:
    """A property (field) declared on an entity type."""

    name: str
    type: str | None
    precision: int | None = None
    scale: int | None = None
    max_length: int | None = None
    nullable: bool = True


@dataclass
class EntityType:
    """An entity type (resource) from the metadata."""

    name: str
    namespace: str
    properties: list[EntityProperty] = field(default_factory=list)
    navigation_properties: list[str] = field(default_factory=list)

    def get_property(self, name: str) -> EntityProperty | None:
        for prop in self.properties:
            if prop.name == name:
                return prop
        return None


@dataclass
class Metadata:
    """Parsed metadata: entity types grouped by schema namespace."""

    schemas: dict[str, list[EntityType]] = field(default_factory=dict)

    def entity_types(self, namespace: str | None = None) -> list[EntityType]:
        if namespace is not None:
            return self.schemas.get(namespace, [])
        return [entity_type for types in self.schemas.values() for entity_type in types]

    def get_entity_type(self, name: str, namespace: str | None = None) -> EntityType | None:
        for entity_type in self.entity_types(namespace):
            if entity_type.name == name:
                return entity_type
        return None


def _int_facet(value: str | None) -> int | None:
    if value is None or not value.strip().isdigit():
        return None
    return int(value)


def parse_metadata(xml: bytes | str) -> Metadata:
    """Parse an EDMX metadata document."""
    if isinstance(xml, str):
        xml = xml.encode("utf-8")
    parser = etree.XMLParser(resolve_entities=False, no_network=True, huge_tree=True)
    root = etree.fromstring(xml, parser=parser)

    metadata = Metadata()
    for schema in root.iter("{*}Schema"):
        namespace = schema.get("Namespace", "")
        entity_types = metadata.schemas.setdefault(namespace, [])
        for element in schema.iterchildren("{*}EntityType"):
            entity_type = EntityType(name=element.get("Name", ""), namespace=namespace)
            for prop in element.iterchildren("{*}Property"):
                entity_type.properties.append(EntityProperty(
                    name=prop.get("Name", ""),
                    type=prop.get("Type"),
                    precision=_int_facet(prop.get("Precision")),
                    scale=_int_facet(prop.get("Scale")),
                    max_length=_int_facet(prop.get("MaxLength")),
                    nullable=prop.get("Nullable", "true").lower() != "false",
                ))
            entity_type.navigation_properties = [
                nav.get("Name", "") for nav in element.iterchildren("{*}NavigationProperty")
            ]
            entity_types.append(entity_type)
    return metadata


def read_metadata_file(path: str | Path) -> Metadata:
    """Parse metadata saved on disk (debug / offline use)."""
    return parse_metadata(Path(path).read_bytes())
