"""HTTP client for the item REST API."""

import asyncio
import logging
from typing import Any

import httpx

from ..auth import Credentials
from ..config import ServerConfig
from ..errors import RemoteRejected, TransportError
from ..models import Item

logger = logging.getLogger(__name__)


class ItemService:
    """Client for the server's item endpoints.

    Supports:
    - list_items: GET    {items_path}
    - create: POST {items_path}
    - update: PUT  {items_path}/{id}
    - delete: DELETE {items_path}/{id}

    Server errors, connection failures and timeouts are retried with
    exponential backoff. Whatever is left after the last attempt is raised
    as TransportError or RemoteRejected.
    """

    def __init__(
        self,
        config: ServerConfig,
        credentials: Credentials,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the item service.

        Args:
            config: Server configuration.
            credentials: Source of the bearer token sent with every request.
            transport: Optional httpx transport (used by tests).
        """
        self.config = config
        self.credentials = credentials
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.config.base_url.rstrip("/"),
                timeout=self.config.timeout_seconds,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    def _item_url(self, key: str | None = None) -> str:
        path = self.config.items_path.rstrip("/")
        return f"{path}/{key}" if key else path

    async def _request(
        self,
        method: str,
        url: str,
        json_data: Any = None,
    ) -> httpx.Response:
        """Make an authorized request with exponential backoff retry.

        Raises:
            TransportError: Network failure after the last attempt.
            RemoteRejected: Non-2xx response.
        """
        client = await self._get_client()
        attempts = max(1, self.config.retry_max_attempts)
        backoff = self.config.retry_backoff_seconds
        last_error: Exception | None = None

        for attempt in range(attempts):
            headers = {"Authorization": self.credentials.authorization_header}
            try:
                response = await client.request(method, url, json=json_data, headers=headers)
            except httpx.TimeoutException as e:
                logger.warning(f"Request timeout, attempt {attempt + 1}/{attempts}")
                last_error = TransportError(f"{method} {url} timed out")
                last_error.__cause__ = e
            except httpx.TransportError as e:
                logger.warning(
                    f"Connection failed ({type(e).__name__}), attempt {attempt + 1}/{attempts}"
                )
                last_error = TransportError(f"{method} {url} failed: {e}")
                last_error.__cause__ = e
            else:
                if response.is_success:
                    return response

                if response.status_code >= 500:
                    # Server error, retry
                    logger.warning(
                        f"Server error {response.status_code}, "
                        f"attempt {attempt + 1}/{attempts}"
                    )
                    last_error = RemoteRejected(response.status_code, response.text)
                else:
                    # Client error, don't retry
                    raise RemoteRejected(response.status_code, response.text)

            # Exponential backoff
            if attempt < attempts - 1:
                await asyncio.sleep(backoff)
                backoff *= 2

        raise last_error

    @staticmethod
    def _decode(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise RemoteRejected(response.status_code, f"Invalid JSON body: {e}") from e

    @staticmethod
    def _to_item(response: httpx.Response, data: Any) -> Item:
        try:
            return Item.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            raise RemoteRejected(response.status_code, f"Invalid item in body: {e}") from e

    async def list_items(self) -> list[Item]:
        """Fetch every item the server holds for this user."""
        response = await self._request("GET", self._item_url())
        data = self._decode(response)
        items = [self._to_item(response, entry) for entry in data]
        logger.debug(f"Listed {len(items)} items from server")
        return items

    async def create(self, item: Item) -> Item:
        """Create an item on the server using the client-generated key."""
        response = await self._request("POST", self._item_url(), item.to_dict())
        return self._to_item(response, self._decode(response))

    async def update(self, key: str, item: Item) -> Item:
        """Replace every field of an item on the server."""
        response = await self._request("PUT", self._item_url(key), item.to_dict())
        return self._to_item(response, self._decode(response))

    async def delete(self, key: str) -> None:
        """Delete an item on the server."""
        await self._request("DELETE", self._item_url(key))

    async def check_connection(self) -> bool:
        """Check if the server is reachable.

        Any HTTP response counts as reachable, including auth errors.
        """
        try:
            client = await self._get_client()
            await client.request("HEAD", self._item_url())
            return True
        except httpx.HTTPError as e:
            logger.debug(f"Connectivity check failed: {e}")
            return False
