"""
Mapping of OData EDM types to SQLAlchemy column types.

Used by destinations that keep a schema in sync with the upstream metadata.
"""

from sqlalchemy.types import (
    DOUBLE_PRECISION,
    JSON,
    REAL,
    BigInteger,
    Boolean,
    Date,
    DateTime,
    Integer,
    Numeric,
    String,
    Text,
    TypeEngine,
)

from mls_replicator.errors import SchemaMappingError
from mls_replicator.metadata import EntityProperty
from mls_replicator.platforms.base import PlatformDataAdapter

# Largest precision (in bits of mantissa) a single precision float holds
SINGLE_PRECISION_MAX = 23

# Longer strings become unbounded text
MAX_VARCHAR_LENGTH = 255


def get_database_type(
    prop: EntityProperty,
    platform_data_adapter: PlatformDataAdapter | None = None,
    resource_name: str = "",
) -> TypeEngine:
    """
    Column type for a metadata property.

    The platform data adapter gets the first say. Everything else follows
    fixed rules; an unknown EDM type raises SchemaMappingError rather than
    guessing a column type.
    """
    if platform_data_adapter is not None and platform_data_adapter.overrides_database_type(prop):
        return platform_data_adapter.get_database_type(prop)

    edm_type = prop.type
    if edm_type == "Edm.Double":
        if prop.precision is not None and prop.precision <= SINGLE_PRECISION_MAX:
            return REAL()
        return DOUBLE_PRECISION()
    if edm_type == "Edm.Decimal":
        return Numeric(prop.precision, prop.scale)
    if edm_type == "Edm.String":
        if prop.max_length is None or prop.max_length > MAX_VARCHAR_LENGTH:
            return Text()
        return String(prop.max_length)
    if edm_type == "Edm.Boolean":
        return Boolean()
    if edm_type == "Edm.Date":
        return Date()
    if edm_type == "Edm.Int32":
        return Integer()
    if edm_type == "Edm.Int64":
        return BigInteger()
    if edm_type == "Edm.DateTimeOffset":
        return DateTime(timezone=True)
    if edm_type == "Edm.GeographyPoint":
        return JSON()

    raise SchemaMappingError(resource_name, prop.name, edm_type)
