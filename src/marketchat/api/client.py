"""REST client for the marketplace persistence gateway."""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import urlencode

import httpx

from ..errors import AuthenticationError, ConstraintViolation, GatewayError, TransientNetworkError
from .models import LISTINGS_TABLE, PROFILES_TABLE, Listing, Profile, User
from .query import Filter, Order

logger = logging.getLogger(__name__)

UNIQUE_VIOLATION = "23505"
RETRYABLE_STATUSES = frozenset({408, 425, 429, 500, 502, 503, 504})


class GatewayClient:
    """Async client for a PostgREST-style gateway."""

    def __init__(
        self,
        server_url: str,
        api_key: str,
        access_token: str | None = None,
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Initialize the client.

        Args:
            server_url: Base URL of the gateway (e.g., https://project.example.co)
            api_key: Public API key sent with every request
            access_token: The signed-in user's bearer token
            timeout: Request timeout in seconds
            transport: Optional httpx transport (tests pass a MockTransport)
        """
        self.server_url = server_url.rstrip("/")
        self.api_key = api_key
        self.access_token = access_token
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> GatewayClient:
        await self.connect()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def connect(self) -> None:
        """Initialize the HTTP client."""
        if self._client is not None:
            return
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout, connect=5.0),
            follow_redirects=True,
            http2=self._transport is None,
            transport=self._transport,
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Get the HTTP client, raising if not connected."""
        if self._client is None:
            raise GatewayError("Client not connected. Call connect() first.")
        return self._client

    def _headers(self, prefer: str | None = None) -> dict[str, str]:
        headers = {
            "apikey": self.api_key,
            "Authorization": f"Bearer {self.access_token or self.api_key}",
        }
        if prefer:
            headers["Prefer"] = prefer
        return headers

    def _build_url(self, path: str, params: dict[str, str] | None = None) -> str:
        url = f"{self.server_url}/{path.lstrip('/')}"
        if params:
            url = f"{url}?{urlencode(params)}"
        return url

    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, str] | None = None,
        json_data: Any = None,
        prefer: str | None = None,
    ) -> httpx.Response:
        """Make a request and map failures onto the error taxonomy."""
        url = self._build_url(path, params)
        try:
            response = await self.client.request(
                method, url, json=json_data, headers=self._headers(prefer)
            )
        except httpx.TimeoutException as e:
            raise TransientNetworkError(f"Request timed out: {e}") from e
        except httpx.TransportError as e:
            raise TransientNetworkError(f"Failed to reach gateway: {e}") from e

        if response.status_code < 400:
            return response

        code: str | None = None
        message = response.text[:200]
        try:
            body = response.json()
            if isinstance(body, dict):
                code = body.get("code")
                message = body.get("message") or message
        except ValueError:
            pass

        status = response.status_code
        if status == 401:
            raise AuthenticationError(message, status=status, code=code)
        # PostgREST answers 409 for foreign-key clashes too
        if code == UNIQUE_VIOLATION:
            raise ConstraintViolation(message, status=status, code=code)
        if status in RETRYABLE_STATUSES:
            raise TransientNetworkError(f"HTTP {status}: {message}", status=status, code=code)
        raise GatewayError(f"HTTP {status}: {message}", status=status, code=code)

    # Table operations

    async def query(
        self, table: str, filter: Filter, order: Order | None = None
    ) -> list[dict[str, Any]]:
        """Select rows matching a filter."""
        params = {"select": "*", **filter.to_params()}
        if order is not None:
            params["order"] = order.to_param()
        response = await self._request("GET", f"rest/v1/{table}", params=params)
        return list(response.json())

    async def insert(self, table: str, record: dict[str, Any]) -> dict[str, Any]:
        """Insert one row and return it as stored."""
        response = await self._request(
            "POST",
            f"rest/v1/{table}",
            params={"select": "*"},
            json_data=record,
            prefer="return=representation",
        )
        rows = response.json()
        if isinstance(rows, list):
            if not rows:
                raise GatewayError(f"Insert into {table} returned no row")
            return rows[0]
        return rows

    async def update(self, table: str, filter: Filter, patch: dict[str, Any]) -> None:
        """Apply a patch to every row matching a filter."""
        if not filter.to_params():
            raise GatewayError("Refusing to update without a filter")
        await self._request(
            "PATCH",
            f"rest/v1/{table}",
            params=filter.to_params(),
            json_data=patch,
            prefer="return=minimal",
        )

    # Collaborator lookups

    async def current_user(self) -> User | None:
        """Get the signed-in user, or None without a valid session."""
        if not self.access_token:
            return None
        try:
            response = await self._request("GET", "auth/v1/user")
        except AuthenticationError:
            logger.info("Access token rejected; no current user")
            return None
        return User(**response.json())

    async def get_listing(self, listing_id: str) -> Listing | None:
        """Get a listing's owner and status."""
        rows = await self.query(LISTINGS_TABLE, Filter.where(id=listing_id))
        return Listing(**rows[0]) if rows else None

    async def get_profile(self, user_id: str) -> Profile | None:
        """Get a user's public profile."""
        rows = await self.query(PROFILES_TABLE, Filter.where(id=user_id))
        return Profile(**rows[0]) if rows else None

