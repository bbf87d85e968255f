# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""Promise registry API client.

Thin async HTTP client with a pluggable transport interface, for a UI
layer to call into. Error bodies from the server are raised as the same
typed errors the service uses (ValidationError, AuthorizationError, ...).
"""

import json
from abc import ABC, abstractmethod

import httpx

from protocol import ERRORS_BY_KIND, RegistryError, UpstreamError


def raise_for_error(status_code: int, body) -> None:
    """Turn a non-2xx response body back into a typed registry error."""
    if status_code < 400:
        return
    kind = body.get("error", "") if isinstance(body, dict) else ""
    detail = body.get("detail", "") if isinstance(body, dict) else str(body)
    error_cls = ERRORS_BY_KIND.get(kind)
    if error_cls is None:
        err = RegistryError(f"HTTP {status_code}: {detail}")
        err.status_code = status_code
        raise err
    raise error_cls(detail)


class Transport(ABC):
    """Override this to talk to the registry some other way."""

    @abstractmethod
    async def post(self, path: str, data: dict, headers: dict | None = None) -> dict:
        ...

    @abstractmethod
    async def get(self, path: str, params: dict | None = None, headers: dict | None = None) -> dict:
        ...


class HTTPTransport(Transport):
    """Default. Talks to the registry server over HTTP."""

    def __init__(self, base_url: str = "http://localhost:8000", timeout: float = 30.0,
                 client: httpx.AsyncClient | None = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client

    def _headers(self, extra: dict | None = None) -> dict:
        h = {"Content-Type": "application/json"}
        if extra:
            h.update(extra)
        return h

    async def _send(self, method: str, path: str, **kwargs) -> dict:
        # Failures surface as-is; re-read state before retrying any write
        try:
            if self._client is not None:
                resp = await self._client.request(method, f"{self.base_url}{path}",
                                                  timeout=self.timeout, **kwargs)
            else:
                async with httpx.AsyncClient() as client:
                    resp = await client.request(method, f"{self.base_url}{path}",
                                                timeout=self.timeout, **kwargs)
        except httpx.HTTPError as e:
            raise UpstreamError(f"Registry unreachable: {e}") from e
        try:
            body = resp.json()
        except ValueError:
            body = resp.text
        raise_for_error(resp.status_code, body)
        return body

    async def post(self, path: str, data: dict, headers: dict | None = None) -> dict:
        return await self._send("POST", path, content=json.dumps(data), headers=self._headers(headers))

    async def get(self, path: str, params: dict | None = None, headers: dict | None = None) -> dict:
        return await self._send("GET", path, params=params, headers=self._headers(headers))


def _admin_headers(admin: str) -> dict:
    return {"Authorization": f"Bearer {admin}"}


class RegistryClient:
    """High-level client for the promise registry."""

    def __init__(self, transport: Transport | None = None, base_url: str = "http://localhost:8000"):
        self.transport = transport or HTTPTransport(base_url)

    # --- Owner surface ---

    async def create_promise(self, owner: str, message: str, category: str, difficulty: str,
                             deadline: float, proof: str | None = None) -> dict:
        """Create a promise. Returns the stored promise."""
        return await self.transport.post("/promises", {
            "owner": owner,
            "message": message,
            "category": category,
            "difficulty": difficulty,
            "deadline": deadline,
            "proof": proof,
        })

    async def update_details(self, promise_id: str, editor: str, updates: dict) -> dict:
        return await self.transport.post(f"/promises/{promise_id}/details", {
            "editor": editor,
            "updates": updates,
        })

    async def transition_status(self, promise_id: str, actor: str, status: str,
                                proof: str | None = None) -> dict:
        """Resolve a promise as completed or failed.

        Never retry this blindly after a network failure: call
        get_promise first and only retry if it is still active.
        """
        return await self.transport.post(f"/promises/{promise_id}/status", {
            "actor": actor,
            "status": status,
            "proof": proof,
        })

    async def request_delete(self, promise_id: str, requester: str) -> dict:
        return await self.transport.post(f"/promises/{promise_id}/delete-request", {
            "requester": requester,
        })

    async def record_session(self, session_id: str) -> dict:
        return await self.transport.post("/session", {"session_id": session_id})

    # --- Reads ---

    async def get_promise(self, promise_id: str) -> dict:
        return await self.transport.get(f"/promises/{promise_id}")

    async def list_promises(self, address: str = "", status: str = "", category: str = "",
                            limit: int = 200) -> list[dict]:
        params = {"limit": limit}
        if address:
            params["address"] = address
        if status:
            params["status"] = status
        if category:
            params["category"] = category
        resp = await self.transport.get("/promises", params)
        return resp["promises"]

    async def get_user_stats(self, address: str) -> dict:
        return await self.transport.get(f"/users/{address}")

    async def get_global_stats(self) -> dict:
        return await self.transport.get("/stats")

    # --- Admin surface ---

    async def list_pending(self, admin: str) -> list[dict]:
        resp = await self.transport.get("/admin/delete-requests", {"status": "pending"},
                                        headers=_admin_headers(admin))
        return resp["requests"]

    async def approve(self, request_id: str, admin: str) -> dict:
        return await self.transport.post(f"/admin/delete-requests/{request_id}/approve", {},
                                         headers=_admin_headers(admin))

    async def reject(self, request_id: str, admin: str) -> dict:
        return await self.transport.post(f"/admin/delete-requests/{request_id}/reject", {},
                                         headers=_admin_headers(admin))

    async def admin_set_progress(self, promise_id: str, admin: str, progress: int) -> dict:
        return await self.transport.post(f"/admin/promises/{promise_id}/progress",
                                         {"progress": progress}, headers=_admin_headers(admin))

    async def list_all_promises(self, admin: str) -> list[dict]:
        resp = await self.transport.get("/admin/promises", headers=_admin_headers(admin))
        return resp["promises"]

    async def list_all_users(self, admin: str) -> list[dict]:
        resp = await self.transport.get("/admin/users", headers=_admin_headers(admin))
        return resp["users"]

    async def list_all_sessions(self, admin: str) -> list[dict]:
        resp = await self.transport.get("/admin/sessions", headers=_admin_headers(admin))
        return resp["sessions"]

    async def recompute_user_stats(self, address: str, admin: str) -> dict:
        return await self.transport.post(f"/admin/users/{address}/recompute", {},
                                         headers=_admin_headers(admin))

    # --- Events ---

    async def stream_events(self, kinds: list[str] | None = None, callback=None):
        """Subscribe to SSE registry events.

        Args:
            kinds: Only receive these event kinds (default: all)
            callback: async callable(event_dict) called for each event

        Usage:
            async def on_event(event):
                if event["event"] == "StatsUpdated":
                    print(event["stats"]["completion_rate"])

            await client.stream_events(kinds=["StatsUpdated"], callback=on_event)
        """
        base = self.transport.base_url if hasattr(self.transport, "base_url") else "http://localhost:8000"
        params = {"kind": ",".join(kinds)} if kinds else None

        async with httpx.AsyncClient() as client:
            async with client.stream("GET", f"{base}/events/stream", params=params, timeout=None) as resp:
                async for line in resp.aiter_lines():
                    if line.startswith("data: "):
                        event = json.loads(line[6:])
                        if callback:
                            await callback(event)
