"""
Pytest configuration and fixtures.
"""

import json
from pathlib import Path
from typing import Any, Callable
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest

from mls_replicator.batches import BatchStore
from mls_replicator.config import settings
from mls_replicator.destinations import DevNullDestination
from mls_replicator.platforms import PlatformDataAdapter, build_platform_adapter
from mls_replicator.sources import MlsSource

BASE_URL = "https://api.example-mls.test/odata"

PROPERTY_METADATA = """<?xml version="1.0" encoding="utf-8"?>
<edmx:Edmx Version="4.0" xmlns:edmx="http://docs.oasis-open.org/odata/ns/edmx">
  <edmx:DataServices>
    <Schema Namespace="Odata.Models" xmlns="http://docs.oasis-open.org/odata/ns/edm">
      <EntityType Name="Property">
        <Key><PropertyRef Name="ListingKey"/></Key>
        <Property Name="ListingKey" Type="Edm.String" MaxLength="128" Nullable="false"/>
        <Property Name="ModificationTimestamp" Type="Edm.DateTimeOffset"/>
        <Property Name="PhotosChangeTimestamp" Type="Edm.DateTimeOffset"/>
        <Property Name="City" Type="Edm.String" MaxLength="50"/>
        <Property Name="PublicRemarks" Type="Edm.String"/>
        <Property Name="BedroomsTotal" Type="Edm.Int32"/>
        <Property Name="NewConstructionYN" Type="Edm.Boolean"/>
        <Property Name="X_InternalCode" Type="Edm.String"/>
        <NavigationProperty Name="Media" Type="Collection(Odata.Models.Media)"/>
      </EntityType>
      <EntityType Name="Media">
        <Key><PropertyRef Name="MediaKey"/></Key>
        <Property Name="MediaKey" Type="Edm.String" MaxLength="128" Nullable="false"/>
        <Property Name="ListingKey" Type="Edm.String" MaxLength="128"/>
        <Property Name="ModificationTimestamp" Type="Edm.DateTimeOffset"/>
        <Property Name="MediaURL" Type="Edm.String"/>
        <Property Name="Order" Type="Edm.Int32"/>
      </EntityType>
    </Schema>
  </edmx:DataServices>
</edmx:Edmx>
"""


def make_property(number: int, modified: str = "2024-01-01T00:00:00Z", **fields: Any) -> dict[str, Any]:
    """A Property record keyed L<number>."""
    record = {
        "ListingKey": f"L{number}",
        "ModificationTimestamp": modified,
        "PhotosChangeTimestamp": None,
        "City": "Provo",
        "BedroomsTotal": number,
        "NewConstructionYN": False,
    }
    record.update(fields)
    return record


class FakeMlsServer:
    """
    In-memory RESO Web API for httpx.MockTransport.

    Serves $metadata and $top/$skip pages of the configured records per
    resource. ``$filter`` is recorded, not evaluated. Requests can be made
    to fail by queueing status codes in ``failures``.
    """

    def __init__(self, records: dict[str, list[dict[str, Any]]] | None = None) -> None:
        self.records = records or {}
        self.requests: list[httpx.Request] = []
        self.failures: list[int] = []
        self.count_override: int | None = None
        # Resources answering 500 to every request
        self.failing_resources: set[str] = set()

    def params(self, index: int = -1) -> dict[str, str]:
        query = parse_qs(urlsplit(str(self.requests[index].url)).query)
        return {key: values[0] for key, values in query.items()}

    def resource_requests(self, resource: str) -> list[dict[str, str]]:
        return [
            self.params(i)
            for i, request in enumerate(self.requests)
            if request.url.path.endswith(f"/{resource}")
        ]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.failures:
            return httpx.Response(self.failures.pop(0), text="failure")

        path = request.url.path
        if path.endswith("$metadata"):
            return httpx.Response(
                200, content=PROPERTY_METADATA.encode(), headers={"Content-Type": "application/xml"}
            )

        resource = path.rsplit("/", 1)[-1]
        if resource in self.failing_resources:
            return httpx.Response(500, text="failure")
        params = dict(request.url.params)
        records = self.records.get(resource, [])
        skip = int(params.get("$skip", 0))
        top = int(params.get("$top", len(records) or 1))

        page = [json.loads(json.dumps(record)) for record in records[skip:skip + top]]
        if "$select" in params:
            selected = params["$select"].split(",")
            page = [{key: record.get(key) for key in selected} for record in page]

        body: dict[str, Any] = {"value": page}
        if params.get("$count") == "true":
            body["@odata.count"] = (
                self.count_override if self.count_override is not None else len(records)
            )
        return httpx.Response(200, json=body)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture(autouse=True)
def no_circuit_breaker(monkeypatch: pytest.MonkeyPatch) -> None:
    """Breakers are process global and would carry failures between tests."""
    monkeypatch.setattr(settings, "circuit_breaker_enabled", False)


@pytest.fixture
def store(tmp_path: Path) -> BatchStore:
    """Batch store under a temp dir, keeping applied batches in done/."""
    return BatchStore(root=tmp_path / "batches", retention="move")


@pytest.fixture
def make_source() -> Callable[..., MlsSource]:
    """Factory for a utahRealEstate source replicating Property with Media."""

    def factory(**overrides: Any) -> MlsSource:
        raw: dict[str, Any] = {
            "name": "testMls",
            "access_token": "token-1",
            "metadata_endpoint": f"{BASE_URL}/$metadata",
            "get_resource_endpoint": lambda resource: f"{BASE_URL}/{resource.name}",
            "top": 2,
            "top_for_purge": 2,
            "platform_adapter_name": "utahRealEstate",
            "mls_resources": [
                {
                    "name": "Property",
                    "expand": [
                        {"field_name": "Media", "name": "Media", "purge_from_parent": True},
                    ],
                },
            ],
            "destinations": [],
        }
        raw.update(overrides)
        return MlsSource.model_validate(raw)

    return factory


@pytest.fixture
def source(make_source: Callable[..., MlsSource]) -> MlsSource:
    return make_source()


@pytest.fixture
def devnull() -> DevNullDestination:
    return DevNullDestination(
        "null", {}, build_platform_adapter("utahRealEstate"), PlatformDataAdapter()
    )


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest."""
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
