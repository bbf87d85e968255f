"""Tests for client.py against a mock transport."""

import sys, os
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

import json

import httpx
import pytest
from client import RegistryClient, Transport, HTTPTransport, raise_for_error
from protocol import (
    RegistryError, ValidationError, AuthorizationError, NotFoundError,
    InvalidStateError, ConflictError, UpstreamError,
)

ADMIN = "0xfb918bac7ba0c324f573b2763cd4ec08cdec5647"


class MockTransport(Transport):
    def __init__(self):
        self.calls = []

    async def post(self, path, data, headers=None):
        self.calls.append(("POST", path, data, headers))
        if path == "/promises":
            return {"id": "promise_1", "status": "active"}
        if path.endswith("/status"):
            return {"id": "promise_1", "status": data["status"]}
        if path.endswith("/delete-request"):
            return {"id": "delreq_1", "status": "pending"}
        if path.endswith("/approve"):
            return {"id": "delreq_1", "status": "approved"}
        if path == "/session":
            return {"success": True, "session": {"session_id": data["session_id"]}}
        return {}

    async def get(self, path, params=None, headers=None):
        self.calls.append(("GET", path, params, headers))
        if path in ("/promises", "/admin/promises"):
            return {"promises": [{"id": "promise_1"}]}
        if path == "/admin/delete-requests":
            return {"requests": [{"id": "delreq_1"}]}
        if path == "/admin/users":
            return {"users": [{"address": "0xabc"}]}
        if path == "/admin/sessions":
            return {"sessions": []}
        if path.startswith("/users/"):
            return {"address": path.split("/")[-1], "reputation": 0}
        if path == "/stats":
            return {"total_promises": 1}
        return {"id": "promise_1", "status": "active"}


@pytest.fixture
def mock_transport():
    return MockTransport()


@pytest.fixture
def registry_client(mock_transport):
    return RegistryClient(transport=mock_transport)


# --- Transport ABC ---

def test_transport_is_abstract():
    """Transport ABC cannot be instantiated directly."""
    with pytest.raises(TypeError):
        Transport()


def test_transport_can_be_subclassed():
    assert isinstance(MockTransport(), Transport)


def test_default_transport_is_http():
    c = RegistryClient(base_url="http://registry.local:9000/")
    assert isinstance(c.transport, HTTPTransport)
    assert c.transport.base_url == "http://registry.local:9000"


# --- Owner surface ---

@pytest.mark.asyncio
async def test_create_promise(registry_client, mock_transport):
    result = await registry_client.create_promise("0xAbc", "Run", "Health", "easy", 1234.0)
    assert result["id"] == "promise_1"
    assert mock_transport.calls[-1] == ("POST", "/promises", {
        "owner": "0xAbc", "message": "Run", "category": "Health",
        "difficulty": "easy", "deadline": 1234.0, "proof": None,
    }, None)


@pytest.mark.asyncio
async def test_update_details(registry_client, mock_transport):
    await registry_client.update_details("promise_1", "0xabc", {"message": "Walk"})
    assert mock_transport.calls[-1] == (
        "POST", "/promises/promise_1/details", {"editor": "0xabc", "updates": {"message": "Walk"}}, None,
    )


@pytest.mark.asyncio
async def test_transition_status(registry_client, mock_transport):
    result = await registry_client.transition_status("promise_1", "0xabc", "completed", "https://x.io/p")
    assert result["status"] == "completed"
    method, path, data, _ = mock_transport.calls[-1]
    assert (method, path) == ("POST", "/promises/promise_1/status")
    assert data == {"actor": "0xabc", "status": "completed", "proof": "https://x.io/p"}


@pytest.mark.asyncio
async def test_request_delete(registry_client, mock_transport):
    result = await registry_client.request_delete("promise_1", "0xabc")
    assert result["status"] == "pending"
    assert mock_transport.calls[-1][2] == {"requester": "0xabc"}


@pytest.mark.asyncio
async def test_record_session(registry_client):
    result = await registry_client.record_session("sess-1")
    assert result["session"]["session_id"] == "sess-1"


# --- Reads ---

@pytest.mark.asyncio
async def test_list_promises_params(registry_client, mock_transport):
    result = await registry_client.list_promises(address="0xabc", status="active", limit=10)
    assert result == [{"id": "promise_1"}]
    assert mock_transport.calls[-1] == (
        "GET", "/promises", {"limit": 10, "address": "0xabc", "status": "active"}, None,
    )


@pytest.mark.asyncio
async def test_reads(registry_client, mock_transport):
    assert (await registry_client.get_promise("promise_1"))["id"] == "promise_1"
    assert (await registry_client.get_user_stats("0xabc"))["address"] == "0xabc"
    assert (await registry_client.get_global_stats())["total_promises"] == 1
    assert [c[1] for c in mock_transport.calls] == ["/promises/promise_1", "/users/0xabc", "/stats"]


# --- Admin surface ---

@pytest.mark.asyncio
async def test_admin_calls_send_bearer(registry_client, mock_transport):
    expected = {"Authorization": f"Bearer {ADMIN}"}
    assert await registry_client.list_pending(ADMIN) == [{"id": "delreq_1"}]
    assert (await registry_client.approve("delreq_1", ADMIN))["status"] == "approved"
    await registry_client.reject("delreq_1", ADMIN)
    await registry_client.admin_set_progress("promise_1", ADMIN, 40)
    assert await registry_client.list_all_promises(ADMIN) == [{"id": "promise_1"}]
    assert await registry_client.list_all_users(ADMIN) == [{"address": "0xabc"}]
    assert await registry_client.list_all_sessions(ADMIN) == []
    await registry_client.recompute_user_stats("0xabc", ADMIN)
    assert all(call[3] == expected for call in mock_transport.calls)
    assert ("POST", "/admin/promises/promise_1/progress", {"progress": 40}, expected) in mock_transport.calls
    assert mock_transport.calls[0][2] == {"status": "pending"}


# --- Error mapping ---

@pytest.mark.parametrize("kind,error_cls", [
    ("validation_error", ValidationError),
    ("authorization_error", AuthorizationError),
    ("not_found", NotFoundError),
    ("invalid_state", InvalidStateError),
    ("conflict", ConflictError),
    ("upstream_error", UpstreamError),
])
def test_raise_for_error_maps_kinds(kind, error_cls):
    with pytest.raises(error_cls) as exc_info:
        raise_for_error(error_cls.status_code, {"error": kind, "detail": "nope"})
    assert exc_info.value.message == "nope"


def test_raise_for_error_passes_success():
    raise_for_error(200, {"id": "promise_1"})


def test_raise_for_error_unknown_body():
    with pytest.raises(RegistryError) as exc_info:
        raise_for_error(500, "Internal Server Error")
    assert exc_info.value.status_code == 500


# --- HTTPTransport ---

def _http_client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_http_transport_posts_json():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        seen["auth"] = request.headers.get("Authorization")
        return httpx.Response(200, json={"id": "delreq_1", "status": "approved"})

    async with _http_client(handler) as http:
        transport = HTTPTransport("http://registry.test", client=http)
        result = await RegistryClient(transport=transport).approve("delreq_1", ADMIN)
    assert result["status"] == "approved"
    assert seen["url"] == "http://registry.test/admin/delete-requests/delreq_1/approve"
    assert seen["body"] == {}
    assert seen["auth"] == f"Bearer {ADMIN}"


@pytest.mark.asyncio
async def test_http_transport_raises_typed_errors():
    def handler(request):
        return httpx.Response(409, json={"error": "invalid_state", "detail": "Promise already resolved as completed"})

    async with _http_client(handler) as http:
        client = RegistryClient(transport=HTTPTransport("http://registry.test", client=http))
        with pytest.raises(InvalidStateError, match="already resolved"):
            await client.transition_status("promise_1", "0xabc", "failed")


@pytest.mark.asyncio
async def test_http_transport_network_failure():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    async with _http_client(handler) as http:
        client = RegistryClient(transport=HTTPTransport("http://registry.test", client=http))
        with pytest.raises(UpstreamError):
            await client.get_promise("promise_1")
