"""CoreLogic Trestle RESO Web API."""

from datetime import datetime, timedelta, timezone

import httpx
from sqlalchemy.types import DOUBLE_PRECISION, JSON, TypeEngine

from mls_replicator.errors import FetchError
from mls_replicator.metadata import EntityProperty
from mls_replicator.platforms.base import AuthInfo, PlatformAdapter, PlatformDataAdapter
from mls_replicator.sources import MlsSource

TOKEN_URL = "https://api-trestle.corelogic.com/trestle/oidc/connect/token"

# Renew a little before the server-side expiry
EXPIRY_MARGIN = timedelta(minutes=5)


class TrestlePlatformAdapter(PlatformAdapter):
    name = "trestle"
    metadata_namespace = "CoreLogic.DataStandard.RESO.DD"
    requires_access_token = False

    def should_include_metadata_field(self, field_name: str) -> bool | None:
        # Trestle adds an X_ prefixed copy of some fields for internal use
        if field_name.startswith("X_"):
            return False
        return None

    async def fetch_auth(self, source: MlsSource, client: httpx.AsyncClient) -> AuthInfo:
        """Client credentials grant against the Trestle identity server."""
        credentials = source.credentials
        token_url = credentials.get("token_url", TOKEN_URL)
        try:
            response = await client.post(
                token_url,
                data={
                    "client_id": credentials.get("client_id", ""),
                    "client_secret": credentials.get("client_secret", ""),
                    "scope": credentials.get("scope", "api"),
                    "grant_type": "client_credentials",
                },
            )
        except httpx.HTTPError as e:
            raise FetchError(token_url, f"Token request failed: {e}") from e
        if response.status_code != 200:
            raise FetchError(token_url, f"Token request failed: HTTP {response.status_code}",
                             response.status_code)
        try:
            payload = response.json()
            access_token = payload["access_token"]
            expires_in = int(payload.get("expires_in", 3600))
        except (ValueError, KeyError, TypeError) as e:
            raise FetchError(token_url, f"Invalid token response: {e!r}", response.status_code) from e
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=expires_in) - EXPIRY_MARGIN
        return AuthInfo(access_token=access_token, expires_at=expires_at)


class TrestleSqlDataAdapter(PlatformDataAdapter):
    """Trestle declares some decimals without precision, and collections of enums."""

    def overrides_database_type(self, prop: EntityProperty) -> bool:
        if prop.type == "Edm.Decimal" and prop.precision is None:
            return True
        return bool(prop.type and prop.type.startswith("Collection("))

    def get_database_type(self, prop: EntityProperty) -> TypeEngine:
        if prop.type == "Edm.Decimal":
            return DOUBLE_PRECISION()
        return JSON()
