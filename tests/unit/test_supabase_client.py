from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List

import httpx
import pytest

from common.errors import AuthExpiredError, NetworkError, NotFoundError
from remote.supabase import SupabaseBlobClient
from state.models import EncryptedBlob


BASE = "https://demo.supabase.co/rest/v1"
UPDATED = datetime(2024, 3, 4, 9, 0, tzinfo=timezone.utc)


def _client(handler: Callable[[httpx.Request], httpx.Response]) -> SupabaseBlobClient:
    http = httpx.AsyncClient(base_url=BASE, transport=httpx.MockTransport(handler))
    return SupabaseBlobClient("https://demo.supabase.co", "anon-key", access_token="user-jwt", client=http)


def _recorder(responses: List[httpx.Response]):
    seen: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return responses.pop(0)

    return seen, handler


@pytest.mark.asyncio
async def test_metadata_selects_only_timestamp_columns():
    seen, handler = _recorder(
        [httpx.Response(200, json=[{"updated_at": "2024-03-04T09:00:00+00:00", "device_id": "dev-b"}])]
    )
    client = _client(handler)

    meta = await client.get_metadata("owner-1")

    assert meta.updated_at == UPDATED
    assert meta.device_id == "dev-b"
    req = seen[0]
    assert req.method == "GET"
    assert req.url.path == "/rest/v1/user_journal_data"
    assert req.url.params["select"] == "updated_at,device_id:data->>deviceId"
    assert req.url.params["user_id"] == "eq.owner-1"
    assert req.headers["apikey"] == "anon-key"
    assert req.headers["authorization"] == "Bearer user-jwt"


@pytest.mark.asyncio
async def test_metadata_none_when_no_row():
    _, handler = _recorder([httpx.Response(200, json=[])])
    assert await _client(handler).get_metadata("owner-1") is None


@pytest.mark.asyncio
async def test_fetch_uses_row_timestamp():
    row: Dict[str, Any] = {
        "data": {
            "isEncrypted": True,
            "payload": "v1:1:AAAA:BBBB",
            "updatedAt": "2024-03-01T00:00:00+00:00",
            "deviceId": "dev-b",
        },
        "updated_at": "2024-03-04T09:00:00Z",
    }
    _, handler = _recorder([httpx.Response(200, json=[row])])

    blob = await _client(handler).fetch("owner-1")

    assert blob.payload == "v1:1:AAAA:BBBB"
    assert blob.updated_at == UPDATED
    assert blob.device_id == "dev-b"


@pytest.mark.asyncio
async def test_fetch_without_row_raises_not_found():
    _, handler = _recorder([httpx.Response(200, json=[])])
    with pytest.raises(NotFoundError):
        await _client(handler).fetch("owner-1")


@pytest.mark.asyncio
async def test_upsert_posts_single_row_and_reads_server_time():
    seen, handler = _recorder(
        [httpx.Response(201, json=[{"user_id": "owner-1", "updated_at": "2024-03-04T09:00:00+00:00"}])]
    )
    blob = EncryptedBlob(payload="v1:1:AAAA:BBBB", updated_at=datetime(2024, 3, 4, 8, 59, tzinfo=timezone.utc), device_id="dev-a")

    stored = await _client(handler).upsert("owner-1", blob)

    assert stored is not None and stored.updated_at == UPDATED
    assert stored.device_id == "dev-a"
    req = seen[0]
    assert req.method == "POST"
    assert req.url.params["on_conflict"] == "user_id"
    assert "resolution=merge-duplicates" in req.headers["prefer"]
    body = json.loads(req.content)
    assert body["user_id"] == "owner-1"
    assert set(body) == {"user_id", "data", "updated_at"}
    assert body["data"]["deviceId"] == "dev-a"
    assert body["data"]["isEncrypted"] is True
    assert body["data"]["payload"] == "v1:1:AAAA:BBBB"


@pytest.mark.asyncio
async def test_upsert_without_representation_returns_none():
    _, handler = _recorder([httpx.Response(204)])
    blob = EncryptedBlob(payload="x", updated_at=UPDATED)
    assert await _client(handler).upsert("owner-1", blob) is None


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [401, 403])
async def test_auth_statuses_raise_auth_expired(status):
    _, handler = _recorder([httpx.Response(status, json={"message": "JWT expired"})])
    with pytest.raises(AuthExpiredError):
        await _client(handler).get_metadata("owner-1")


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [429, 500, 503])
async def test_transient_statuses_raise_network_error(status):
    _, handler = _recorder([httpx.Response(status)])
    with pytest.raises(NetworkError):
        await _client(handler).fetch("owner-1")


@pytest.mark.asyncio
async def test_transport_failure_raises_network_error_without_retry():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(NetworkError):
        await _client(handler).upsert("owner-1", EncryptedBlob(payload="x", updated_at=UPDATED))
    assert len(calls) == 1
