"""OData client for MLS sources."""

from mls_replicator.client.odata_client import (
    FetchStats,
    ODataClient,
    Page,
    build_query_url,
    compose_filter,
)

__all__ = ["FetchStats", "ODataClient", "Page", "build_query_url", "compose_filter"]
