"""
OData HTTP Client for RESO Web API sources

Features:
- Async HTTP with connection pooling
- Bearer auth from the platform adapter, refreshed when expired or rejected
- Exponential backoff retry on 5xx, 429 and network errors
- Circuit breaker per source
- Pagination via $top/$skip or @odata.nextLink
- Prometheus metrics
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Mapping
from urllib.parse import quote, urlencode

import httpx
from lxml import etree

from mls_replicator.circuit_breaker import CircuitOpenError, circuit_breakers
from mls_replicator.config import settings
from mls_replicator.errors import FetchError
from mls_replicator.metadata import Metadata, parse_metadata, read_metadata_file
from mls_replicator.metrics import metrics
from mls_replicator.platforms.base import AuthInfo, PlatformAdapter
from mls_replicator.sources import MlsSource

logger = logging.getLogger(__name__)

# Characters OData servers expect unescaped in query strings
_QUERY_SAFE = "$,'():"


def compose_filter(*clauses: str | None) -> str | None:
    """AND together the non-empty filter clauses."""
    present = [clause for clause in clauses if clause]
    if not present:
        return None
    if len(present) == 1:
        return present[0]
    return " and ".join(f"({clause})" for clause in present)


def build_query_url(endpoint: str, params: Mapping[str, Any], extra_filter: str | None = None) -> str:
    """
    Merge query options into an endpoint URL.

    A ``$filter`` already in the endpoint (the source's base filter) is kept
    and ANDed with ``extra_filter``. Other options in ``params`` replace
    those of the endpoint. ``None`` values are dropped.
    """
    url = httpx.URL(endpoint)
    query: dict[str, Any] = dict(url.params)
    query["$filter"] = compose_filter(query.get("$filter"), extra_filter)
    query.update(params)
    query = {key: value for key, value in query.items() if value is not None}

    base = endpoint.split("?", 1)[0]
    if not query:
        return base
    return f"{base}?{urlencode(query, quote_via=quote, safe=_QUERY_SAFE)}"


@dataclass
class Page:
    """One page of an OData collection response."""

    url: str
    records: list[dict[str, Any]]
    count: int | None = None
    next_link: str | None = None


@dataclass
class FetchStats:
    """Statistics for one client session."""

    http_requests: int = 0
    pages_fetched: int = 0
    records_fetched: int = 0
    errors: int = 0
    http_time: float = 0.0
    start_time: float = field(default_factory=time.time)

    def __str__(self) -> str:
        elapsed = time.time() - self.start_time
        return (
            f"HTTP Requests: {self.http_requests} | "
            f"Pages: {self.pages_fetched} | "
            f"Records: {self.records_fetched} | "
            f"Errors: {self.errors} | "
            f"HTTP Time: {self.http_time:.1f}s | "
            f"Total: {elapsed:.1f}s"
        )


class ODataClient:
    """
    Async client for one MLS source.

    Usage:
        async with ODataClient(source, platform_adapter) as client:
            async for page in client.iter_pages(url, page_size=200):
                ...
    """

    def __init__(
        self,
        source: MlsSource,
        platform_adapter: PlatformAdapter,
        timeout: float | None = None,
        wait_time: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.source = source
        self.platform_adapter = platform_adapter
        self.timeout = timeout or settings.request_timeout
        self.wait_time = settings.wait_time if wait_time is None else wait_time
        self.max_retries = max(1, settings.max_retries)
        self.retry_backoff = settings.retry_backoff
        self._transport = transport

        self._client: httpx.AsyncClient | None = None
        self._auth: AuthInfo | None = None
        self._auth_lock = asyncio.Lock()
        self.stats = FetchStats()

    async def __aenter__(self) -> "ODataClient":
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout),
            headers={
                "Accept": "application/json",
                "User-Agent": "mls-replicator/0.2",
            },
            follow_redirects=True,
            transport=self._transport,
        )
        self.stats = FetchStats()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("Client not initialized. Use 'async with' context manager.")
        return self._client

    # ========== Auth ==========

    async def _access_token(self, force_refresh: bool = False) -> str:
        async with self._auth_lock:
            if force_refresh or self._auth is None or self._auth.is_expired():
                logger.debug("Fetching access token for %s", self.source.name)
                self._auth = await self.platform_adapter.fetch_auth(self.source, self.client)
            return self._auth.access_token

    # ========== Requests ==========

    async def _do_get(self, url: str, headers: dict[str, str]) -> httpx.Response:
        """One GET, raising for responses worth retrying."""
        if self.wait_time > 0:
            await asyncio.sleep(self.wait_time)

        start = time.time()
        response = await self.client.get(url, headers=headers)
        duration = time.time() - start

        self.stats.http_requests += 1
        self.stats.http_time += duration
        metrics.record_http_request(self.source.name, response.status_code, duration)

        if response.status_code >= 500 or response.status_code == 429:
            response.raise_for_status()
        return response

    async def get(self, url: str, accept: str = "application/json") -> httpx.Response:
        """
        GET with auth, retry and circuit breaker.

        Raises:
            FetchError: Client errors, an open circuit, or retries exhausted.
        """
        breaker = None
        if settings.circuit_breaker_enabled:
            breaker = await circuit_breakers.get(self.source.name)

        last_error = ""
        refreshed = False
        attempt = 0
        while attempt < self.max_retries:
            headers = {
                "Accept": accept,
                "Authorization": f"Bearer {await self._access_token()}",
            }
            try:
                if breaker is not None:
                    response = await breaker.call(self._do_get, url, headers)
                else:
                    response = await self._do_get(url, headers)
            except CircuitOpenError as e:
                self.stats.errors += 1
                metrics.record_http_error(self.source.name, "circuit_open")
                raise FetchError(url, str(e)) from e
            except httpx.HTTPStatusError as e:
                last_error = f"HTTP {e.response.status_code}"
                metrics.record_http_error(self.source.name, f"http_{e.response.status_code}")
            except httpx.TimeoutException as e:
                last_error = f"timeout: {e}"
                metrics.record_http_error(self.source.name, "timeout")
            except httpx.RequestError as e:
                last_error = str(e) or type(e).__name__
                metrics.record_http_error(self.source.name, "request_error")
            else:
                if response.status_code == 401 and not refreshed:
                    # Token revoked or expired early: renew once
                    refreshed = True
                    await self._access_token(force_refresh=True)
                    continue
                if response.status_code >= 400:
                    self.stats.errors += 1
                    metrics.record_http_error(self.source.name, f"http_{response.status_code}")
                    raise FetchError(
                        url, f"HTTP {response.status_code}: {response.text[:200]}", response.status_code
                    )
                return response

            attempt += 1
            if attempt < self.max_retries:
                wait = self.retry_backoff ** (attempt - 1)
                logger.warning(
                    "%s: %s fetching %s, retry %d/%d in %.1fs",
                    self.source.name, last_error, url, attempt, self.max_retries - 1, wait,
                )
                await asyncio.sleep(wait)

        self.stats.errors += 1
        raise FetchError(url, f"Max retries exceeded: {last_error}")

    async def get_json(self, url: str) -> dict[str, Any]:
        response = await self.get(url)
        try:
            return response.json()
        except ValueError as e:
            raise FetchError(url, f"Invalid JSON response: {e}", response.status_code) from e

    async def iter_pages(
        self,
        endpoint: str,
        params: Mapping[str, Any] | None = None,
        page_size: int = 1000,
        extra_filter: str | None = None,
    ) -> AsyncIterator[Page]:
        """
        Page through an OData collection.

        Follows ``@odata.nextLink`` when the server sends one; otherwise
        advances ``$skip`` by ``page_size``. Stops on a short or empty page,
        or when a server that paged with next links stops sending one.

        Raises:
            FetchError: From any page; earlier pages have been yielded.
        """
        params = dict(params or {})
        params["$top"] = page_size
        url = build_query_url(endpoint, params, extra_filter)
        skip = 0
        server_pages = False

        while True:
            data = await self.get_json(url)
            records = data.get("value", [])
            next_link = data.get("@odata.nextLink")
            count = data.get("@odata.count")

            self.stats.pages_fetched += 1
            self.stats.records_fetched += len(records)
            yield Page(url=url, records=records, count=count, next_link=next_link)

            if next_link:
                server_pages = True
                url = next_link
                continue
            if server_pages or len(records) < page_size:
                break

            skip += len(records)
            params["$skip"] = skip
            url = build_query_url(endpoint, params, extra_filter)

    # ========== Metadata ==========

    async def fetch_metadata(self) -> Metadata:
        """Get the source's metadata document, from disk when metadata_path is set."""
        if self.source.metadata_path:
            try:
                return await asyncio.to_thread(read_metadata_file, self.source.metadata_path)
            except (OSError, etree.XMLSyntaxError) as e:
                raise FetchError(self.source.metadata_path, f"Unreadable metadata: {e}") from e
        if not self.source.metadata_endpoint:
            raise FetchError("", f"{self.source.name}: no metadata endpoint configured")

        response = await self.get(self.source.metadata_endpoint, accept="application/xml")
        # Metadata documents run to megabytes; parse off the event loop
        try:
            return await asyncio.to_thread(parse_metadata, response.content)
        except etree.XMLSyntaxError as e:
            raise FetchError(self.source.metadata_endpoint, f"Invalid metadata document: {e}") from e
