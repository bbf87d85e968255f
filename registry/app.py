# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""HTTP API for the promise registry (FastAPI).

Endpoints for the promise lifecycle: create, edit, resolve, request
deletion, plus reputation and global stats reads. Admin endpoints cover
deletion moderation, progress overrides and raw listings.

Caller identity is an explicit body field on every mutation. Admin
endpoints take the admin address as `Authorization: Bearer <address>`.

Every error comes back as {"error": <kind>, "detail": <message>} with
the status code of its kind.
"""

import sys
import os
# Ensure parent directory is importable
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import asyncio
import json as json_mod
import logging
import queue as _queue_mod
import threading
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.responses import StreamingResponse
from pydantic import BaseModel

from protocol import (
    MAX_SSE_SUBSCRIBERS, SSE_QUEUE_SIZE, SSE_KEEPALIVE_SECONDS, LIST_LIMIT_MAX,
    EventKind, RegistryError, ValidationError, UpstreamError,
)
from registry.events import EventBus
from registry.lifecycle import LifecycleService
from registry.moderation import AdminGate, ModerationQueue, ModerationWorkflow
from registry.store import LedgerStore

logger = logging.getLogger(__name__)


# --- Request models ---

class CreatePromiseRequest(BaseModel):
    owner: str
    message: str
    category: str
    difficulty: str
    deadline: float
    proof: Optional[str] = None

class UpdateDetailsRequest(BaseModel):
    editor: str
    updates: dict

class TransitionRequest(BaseModel):
    actor: str
    status: str  # "completed" or "failed"
    proof: Optional[str] = None

class DeleteRequestBody(BaseModel):
    requester: str

class ProgressRequest(BaseModel):
    progress: int

class SessionRequest(BaseModel):
    session_id: str


def _bearer(request: Request) -> str:
    """Pull the admin credential out of `Authorization: Bearer <address>`."""
    header = request.headers.get("Authorization", "")
    parts = header.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return ""
    return parts[1].strip()


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


# --- App factory ---

def create_app(
    store: LedgerStore | None = None,
    moderation_queue: ModerationQueue | None = None,
    bus: EventBus | None = None,
    admin_address: str | None = None,
    clock=time.time,
) -> FastAPI:
    """Create FastAPI app with injected dependencies.

    Missing dependencies default to in-memory stores and the admin
    address from REGISTRY_ADMIN_ADDRESS.
    """

    _store = store or LedgerStore()
    _queue = moderation_queue or ModerationQueue()
    _bus = bus or EventBus()
    _gate = AdminGate(admin_address) if admin_address else AdminGate()
    _lifecycle = LifecycleService(_store, _bus, _gate, clock=clock)
    _moderation = ModerationWorkflow(_lifecycle, _queue)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        _bus.close()

    app = FastAPI(title="Promise Registry", version="1.0", lifespan=lifespan)

    # --- SSE bridge from the event bus ---
    # Use threading.Queue for cross-thread safety (TestClient uses threads)
    _sse_subscribers: list[_queue_mod.Queue] = []
    _sse_lock = threading.Lock()

    def _open_stream(kinds: set[EventKind] | None = None):
        """Attach a bounded queue to the bus. Returns (queue, close)."""
        q = _queue_mod.Queue(maxsize=SSE_QUEUE_SIZE)
        with _sse_lock:
            if len(_sse_subscribers) >= MAX_SSE_SUBSCRIBERS:
                raise UpstreamError("Too many event stream subscribers")
            _sse_subscribers.append(q)

        unsubscribe = None

        def close():
            with _sse_lock:
                if q in _sse_subscribers:
                    _sse_subscribers.remove(q)
            if unsubscribe:
                unsubscribe()

        def on_event(kind: EventKind, payload: dict):
            if kinds and kind not in kinds:
                return
            try:
                q.put_nowait({"event": kind.value, **payload})
            except _queue_mod.Full:
                # Slow consumer: drop it rather than block publishers
                logger.warning("Dropping slow event stream subscriber")
                close()

        unsubscribe = _bus.subscribe_all(on_event)
        return q, close

    # Expose for testing
    app.state.store = _store
    app.state.moderation_queue = _queue
    app.state.bus = _bus
    app.state.gate = _gate
    app.state.lifecycle = _lifecycle
    app.state.moderation = _moderation
    app.state.open_stream = _open_stream

    # --- Error mapping ---

    @app.exception_handler(RegistryError)
    async def registry_error_handler(request: Request, exc: RegistryError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg', '')}"
            for err in exc.errors()
        )
        return JSONResponse(status_code=400, content=ValidationError(problems).to_dict())

    # --- Promise lifecycle ---

    @app.post("/promises")
    async def create_promise(req: CreatePromiseRequest):
        promise = _lifecycle.create_promise(
            req.owner, req.message, req.category, req.difficulty, req.deadline, req.proof,
        )
        return promise.to_dict(clock())

    @app.get("/promises")
    async def list_promises(address: str = "", status: str = "", category: str = "", limit: int = 200):
        limit = min(max(limit, 1), LIST_LIMIT_MAX)
        promises = _lifecycle.list_promises(
            address=address or None, status=status or None, category=category or None, limit=limit,
        )
        now = clock()
        return {"promises": [p.to_dict(now) for p in promises]}

    @app.get("/promises/{promise_id}")
    async def get_promise(promise_id: str):
        return _lifecycle.get_promise(promise_id).to_dict(clock())

    @app.post("/promises/{promise_id}/details")
    async def update_details(promise_id: str, req: UpdateDetailsRequest):
        promise = _lifecycle.update_details(promise_id, req.editor, req.updates)
        return promise.to_dict(clock())

    @app.post("/promises/{promise_id}/status")
    async def transition_status(promise_id: str, req: TransitionRequest):
        promise = _lifecycle.transition_status(promise_id, req.actor, req.status, req.proof)
        return promise.to_dict(clock())

    @app.post("/promises/{promise_id}/delete-request")
    async def request_delete(promise_id: str, req: DeleteRequestBody):
        return _moderation.request_delete(promise_id, req.requester).to_dict()

    # --- Reputation and stats ---

    @app.get("/users/{address}")
    async def get_user_stats(address: str):
        return _lifecycle.get_user_stats(address).to_dict()

    @app.get("/stats")
    async def get_global_stats():
        return _lifecycle.get_global_stats().to_dict()

    @app.post("/session")
    async def record_session(req: SessionRequest, request: Request):
        session = _lifecycle.record_session(req.session_id, _client_ip(request))
        return {"success": True, "session": session.to_dict()}

    @app.get("/events/stream")
    async def stream_events(kind: str = ""):
        """SSE stream of registry events.

        Optional filter: kind (comma-separated event kinds, e.g.
        PromiseCreated,PromiseDeleted).

        Usage:
            curl -N http://localhost:8000/events/stream?kind=StatsUpdated

        Events:
            data: {"event": "PromiseCreated", "promise": {...}}
            data: {"event": "UserUpdated", "user": {...}}
            data: {"event": "StatsUpdated", "stats": {...}}
        """
        kinds = None
        if kind:
            try:
                kinds = {EventKind(k.strip()) for k in kind.split(",") if k.strip()}
            except ValueError:
                raise ValidationError(f"Unknown event kind in {kind!r}")
        q, close = _open_stream(kinds)

        async def event_generator():
            try:
                while True:
                    try:
                        event = await asyncio.to_thread(q.get, True, SSE_KEEPALIVE_SECONDS)
                        yield f"data: {json_mod.dumps(event)}\n\n"
                    except _queue_mod.Empty:
                        yield ": keepalive\n\n"
            finally:
                close()

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )

    # --- Admin ---

    @app.get("/admin/delete-requests")
    async def list_delete_requests(request: Request, status: str = "pending"):
        admin = _bearer(request)
        if status == "pending":
            requests = _moderation.list_pending(admin)
        else:
            requests = _moderation.list_requests(admin, None if status == "all" else status)
        return {"requests": [r.to_dict() for r in requests]}

    @app.post("/admin/delete-requests/{request_id}/approve")
    async def approve_delete_request(request_id: str, request: Request):
        return _moderation.approve(request_id, _bearer(request)).to_dict()

    @app.post("/admin/delete-requests/{request_id}/reject")
    async def reject_delete_request(request_id: str, request: Request):
        return _moderation.reject(request_id, _bearer(request)).to_dict()

    @app.post("/admin/promises/{promise_id}/progress")
    async def set_progress(promise_id: str, req: ProgressRequest, request: Request):
        promise = _lifecycle.admin_set_progress(promise_id, _bearer(request), req.progress)
        return promise.to_dict(clock())

    @app.get("/admin/promises")
    async def admin_list_promises(request: Request):
        now = clock()
        return {"promises": [p.to_dict(now) for p in _lifecycle.list_all_promises(_bearer(request))]}

    @app.get("/admin/users")
    async def admin_list_users(request: Request):
        return {"users": [u.to_dict() for u in _lifecycle.list_all_users(_bearer(request))]}

    @app.get("/admin/sessions")
    async def admin_list_sessions(request: Request):
        return {"sessions": [s.to_dict() for s in _lifecycle.list_all_sessions(_bearer(request))]}

    @app.post("/admin/users/{address}/recompute")
    async def recompute_user(address: str, request: Request):
        return _lifecycle.recompute_user_stats(address, _bearer(request)).to_dict()

    return app
