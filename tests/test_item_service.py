"""Tests for the item REST client."""

import json
import httpx
import pytest

from itemsync.auth import Credentials
from itemsync.config import ServerConfig
from itemsync.errors import RemoteRejected, TransportError
from itemsync.models import Item, SyncStatus
from itemsync.remote import ItemService


def make_service(handler, retries: int = 2, token: str | None = "tok") -> ItemService:
    config = ServerConfig(
        base_url="http://items.test",
        retry_max_attempts=retries,
        retry_backoff_seconds=0,
    )
    return ItemService(config, Credentials(token), transport=httpx.MockTransport(handler))


class TestItemServiceEndpoints:
    """Tests for the CRUD endpoints."""

    @pytest.mark.asyncio
    async def test_list_items(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=[
                {"_id": "a", "text": "one", "priority": 1, "isCompleted": False},
                {"_id": "b", "text": "two", "dueDate": "2026-01-01T00:00:00Z"},
            ])

        service = make_service(handler)
        items = await service.list_items()
        await service.close()

        assert [i.id for i in items] == ["a", "b"]
        assert all(i.sync_status == SyncStatus.SYNCED for i in items)
        assert seen[0].method == "GET"
        assert seen[0].url.path == "/api/item"
        assert seen[0].headers["Authorization"] == "Bearer tok"

    @pytest.mark.asyncio
    async def test_create_posts_wire_form(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(201, content=request.content)

        item = Item(id="k1", text="milk", priority=2)
        service = make_service(handler)
        created = await service.create(item)

        body = json.loads(seen[0].content)
        assert seen[0].method == "POST"
        assert body["_id"] == "k1"
        assert body["text"] == "milk"
        assert "sync_status" not in body
        assert created.id == "k1"

    @pytest.mark.asyncio
    async def test_update_puts_to_item_url(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, content=request.content)

        service = make_service(handler)
        await service.update("k1", Item(id="k1", text="edited"))

        assert seen[0].method == "PUT"
        assert seen[0].url.path == "/api/item/k1"

    @pytest.mark.asyncio
    async def test_delete(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(204)

        service = make_service(handler)
        await service.delete("k1")

        assert seen[0].method == "DELETE"
        assert seen[0].url.path == "/api/item/k1"

    @pytest.mark.asyncio
    async def test_token_change_applies_to_next_request(self):
        headers = []

        def handler(request: httpx.Request) -> httpx.Response:
            headers.append(request.headers["Authorization"])
            return httpx.Response(200, json=[])

        service = make_service(handler, token="old")
        await service.list_items()
        service.credentials.set_token("fresh")
        await service.list_items()

        assert headers == ["Bearer old", "Bearer fresh"]


class TestItemServiceErrors:
    """Tests for retry and error mapping."""

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(404, text="no such item")

        service = make_service(handler, retries=3)

        with pytest.raises(RemoteRejected) as exc_info:
            await service.delete("missing")

        assert exc_info.value.status_code == 404
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_server_error_retried(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(503)

        service = make_service(handler, retries=3)

        with pytest.raises(RemoteRejected) as exc_info:
            await service.list_items()

        assert exc_info.value.status_code == 503
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_server_error_then_success(self):
        responses = [httpx.Response(500), httpx.Response(200, json=[])]

        def handler(request: httpx.Request) -> httpx.Response:
            return responses.pop(0)

        service = make_service(handler, retries=2)

        assert await service.list_items() == []

    @pytest.mark.asyncio
    async def test_connection_error_maps_to_transport_error(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            raise httpx.ConnectError("connection refused", request=request)

        service = make_service(handler, retries=2)

        with pytest.raises(TransportError):
            await service.create(Item(id="k1"))

        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_timeout_maps_to_transport_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        service = make_service(handler, retries=1)

        with pytest.raises(TransportError):
            await service.list_items()

    @pytest.mark.asyncio
    async def test_invalid_json_body(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="<html>")

        service = make_service(handler)

        with pytest.raises(RemoteRejected):
            await service.list_items()

    @pytest.mark.asyncio
    async def test_invalid_item_in_body(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=[{"_id": "a", "isCompleted": "false"}])

        service = make_service(handler)

        with pytest.raises(RemoteRejected):
            await service.list_items()


class TestCheckConnection:
    """Tests for the reachability probe."""

    @pytest.mark.asyncio
    async def test_any_response_is_reachable(self):
        service = make_service(lambda request: httpx.Response(401))

        assert await service.check_connection() is True

    @pytest.mark.asyncio
    async def test_connection_error_is_unreachable(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("down", request=request)

        service = make_service(handler)

        assert await service.check_connection() is False
