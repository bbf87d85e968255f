# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""Moderation workflow: promise deletion requests and the admin gate.

Owners file a deletion request; the admin approves (promise deleted) or
rejects (promise untouched). At most one request per promise may be
pending, enforced by a partial unique index.

Admin auth is a single operator-configured address compared
case-insensitively against the caller's bearer value. There are no
per-admin accounts.
"""

import logging
import sqlite3
import threading
import uuid

from protocol import (
    ADMIN_ADDRESS, DeleteRequestStatus, EventKind,
    AuthorizationError, ConflictError, InvalidStateError, NotFoundError, RegistryError,
    UpstreamError, ValidationError,
)
from registry.models import DeleteRequest

logger = logging.getLogger(__name__)


class AdminGate:
    """Checks a caller-supplied credential against the configured admin address."""

    def __init__(self, admin_address: str = ADMIN_ADDRESS):
        if not admin_address or not admin_address.strip():
            raise ValueError("Admin address must be configured")
        self.admin_address = admin_address.strip().lower()

    def is_admin(self, credential: str | None) -> bool:
        if not credential or not isinstance(credential, str):
            return False
        return credential.strip().lower() == self.admin_address

    def require(self, credential: str | None) -> str:
        """Return the admin address or raise AuthorizationError."""
        if not self.is_admin(credential):
            raise AuthorizationError("Forbidden: admin access required")
        return self.admin_address


class ModerationQueue:
    """SQLite-backed deletion request queue."""

    def __init__(self, db_path: str = ":memory:"):
        self.db = sqlite3.connect(db_path, check_same_thread=False)
        self.db.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self):
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS delete_requests (
                id TEXT PRIMARY KEY,
                promise_id TEXT NOT NULL,
                requester_address TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending',
                requested_at REAL NOT NULL,
                processed_by TEXT,
                processed_at REAL
            )
        """)
        self.db.execute(
            "CREATE UNIQUE INDEX IF NOT EXISTS idx_one_pending_per_promise "
            "ON delete_requests(promise_id) WHERE status = 'pending'"
        )
        self.db.execute("CREATE INDEX IF NOT EXISTS idx_request_status ON delete_requests(status)")
        self.db.commit()

    def add(self, promise_id: str, requester_address: str, now: float) -> DeleteRequest:
        """Queue a pending request. ConflictError if one is already pending."""
        request = DeleteRequest(
            id=f"delreq_{uuid.uuid4().hex[:16]}",
            promise_id=promise_id,
            requester_address=requester_address,
            requested_at=now,
        )
        with self._lock:
            try:
                self.db.execute(
                    "INSERT INTO delete_requests (id, promise_id, requester_address, status, requested_at) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (request.id, promise_id, requester_address, request.status.value, now),
                )
                self.db.commit()
            except sqlite3.IntegrityError:
                self.db.rollback()
                raise ConflictError(f"A delete request for {promise_id} is already pending")
            except sqlite3.Error as e:
                self.db.rollback()
                logger.error("Moderation queue write failed: %s", e)
                raise UpstreamError(f"Moderation queue unavailable: {e}") from e
        return request

    def get(self, request_id: str) -> DeleteRequest | None:
        rows = self._fetchall("SELECT * FROM delete_requests WHERE id = ?", (request_id,))
        return self._row_to_request(rows[0]) if rows else None

    def list_by_status(self, status: DeleteRequestStatus | None = None) -> list[DeleteRequest]:
        """Requests oldest first, optionally filtered by status."""
        if status is None:
            rows = self._fetchall("SELECT * FROM delete_requests ORDER BY requested_at ASC, id ASC")
        else:
            rows = self._fetchall(
                "SELECT * FROM delete_requests WHERE status = ? ORDER BY requested_at ASC, id ASC",
                (status.value,),
            )
        return [self._row_to_request(r) for r in rows]

    def close_request(self, request_id: str, status: DeleteRequestStatus,
                      processed_by: str, now: float) -> DeleteRequest | None:
        """Move a pending request to approved/rejected. None if it was not pending."""
        with self._lock:
            try:
                cursor = self.db.execute(
                    "UPDATE delete_requests SET status = ?, processed_by = ?, processed_at = ? "
                    "WHERE id = ? AND status = 'pending'",
                    (status.value, processed_by, now, request_id),
                )
                self.db.commit()
            except sqlite3.Error as e:
                self.db.rollback()
                logger.error("Moderation queue write failed: %s", e)
                raise UpstreamError(f"Moderation queue unavailable: {e}") from e
            if cursor.rowcount == 0:
                return None
        return self.get(request_id)

    def reopen_request(self, request_id: str) -> DeleteRequest | None:
        """Put an approved request back to pending. None if it was not approved.

        ConflictError if a newer request for the same promise is pending.
        """
        with self._lock:
            try:
                cursor = self.db.execute(
                    "UPDATE delete_requests SET status = 'pending', processed_by = NULL, processed_at = NULL "
                    "WHERE id = ? AND status = 'approved'",
                    (request_id,),
                )
                self.db.commit()
            except sqlite3.IntegrityError:
                self.db.rollback()
                raise ConflictError(f"Another delete request for request {request_id}'s promise is pending")
            except sqlite3.Error as e:
                self.db.rollback()
                logger.error("Moderation queue write failed: %s", e)
                raise UpstreamError(f"Moderation queue unavailable: {e}") from e
            if cursor.rowcount == 0:
                return None
        return self.get(request_id)

    def _fetchall(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self._lock:
            try:
                return self.db.execute(sql, params).fetchall()
            except sqlite3.Error as e:
                logger.error("Moderation queue read failed: %s", e)
                raise UpstreamError(f"Moderation queue unavailable: {e}") from e

    def _row_to_request(self, row) -> DeleteRequest:
        return DeleteRequest(
            id=row["id"],
            promise_id=row["promise_id"],
            requester_address=row["requester_address"],
            status=DeleteRequestStatus(row["status"]),
            requested_at=row["requested_at"],
            processed_by=row["processed_by"],
            processed_at=row["processed_at"],
        )

    def close(self):
        self.db.close()


class ModerationWorkflow:
    """Owner-filed, admin-resolved deletion requests.

    Reads promises and publishes through the lifecycle service so the
    store, bus, clock and admin gate are shared.
    """

    def __init__(self, lifecycle, queue: ModerationQueue):
        self.lifecycle = lifecycle
        self.queue = queue

    @property
    def gate(self) -> AdminGate:
        return self.lifecycle.gate

    def request_delete(self, promise_id: str, requester: str) -> DeleteRequest:
        promise = self.lifecycle.get_promise(promise_id)
        if not isinstance(requester, str) or requester.strip().lower() != promise.owner:
            raise AuthorizationError("Only the promise owner can request deletion")
        request = self.queue.add(promise_id, promise.owner, self.lifecycle.clock())
        logger.info("Delete request %s filed for promise %s by %s", request.id, promise_id, promise.owner)
        return request

    def list_pending(self, admin: str) -> list[DeleteRequest]:
        self.gate.require(admin)
        return self.queue.list_by_status(DeleteRequestStatus.PENDING)

    def list_requests(self, admin: str, status: str | None = None) -> list[DeleteRequest]:
        self.gate.require(admin)
        if not status:
            return self.queue.list_by_status()
        try:
            parsed = DeleteRequestStatus(status)
        except ValueError:
            raise ValidationError(f"Unknown request status {status!r}")
        return self.queue.list_by_status(parsed)

    def approve(self, request_id: str, admin: str) -> DeleteRequest:
        """Approve a pending request and delete its promise."""
        admin_address = self.gate.require(admin)
        request = self._get_pending(request_id)
        if self.lifecycle.store.get_promise(request.promise_id) is None:
            raise NotFoundError(f"Promise {request.promise_id} not found")

        now = self.lifecycle.clock()
        closed = self.queue.close_request(request_id, DeleteRequestStatus.APPROVED, admin_address, now)
        if closed is None:
            raise InvalidStateError(f"Delete request {request_id} was already processed")

        # The request is closed first so concurrent approvals delete at most once;
        # any failure below must hand it back to the pending queue
        try:
            removed = self.lifecycle.store.delete_promise(request.promise_id, now)
        except Exception:
            self._reopen(request_id)
            raise
        if removed is None:
            logger.warning("Promise %s vanished before approved request %s could delete it",
                           request.promise_id, request_id)
            self._reopen(request_id)
            raise NotFoundError(f"Promise {request.promise_id} not found")
        promise, owner = removed
        logger.info("Delete request %s approved by %s; promise %s deleted",
                    request_id, admin_address, promise.id)

        self.lifecycle.bus.publish(EventKind.PROMISE_DELETED, {
            "promise_id": promise.id,
            "owner": promise.owner,
            "request_id": request_id,
        })
        self.lifecycle.publish_user(owner)
        self.lifecycle.publish_stats()
        return closed

    def reject(self, request_id: str, admin: str) -> DeleteRequest:
        admin_address = self.gate.require(admin)
        self._get_pending(request_id)
        closed = self.queue.close_request(
            request_id, DeleteRequestStatus.REJECTED, admin_address, self.lifecycle.clock(),
        )
        if closed is None:
            raise InvalidStateError(f"Delete request {request_id} was already processed")
        logger.info("Delete request %s rejected by %s", request_id, admin_address)
        return closed

    def _reopen(self, request_id: str):
        # Never mask the failure that triggered the reopen
        try:
            reopened = self.queue.reopen_request(request_id)
        except RegistryError:
            logger.exception("Delete request %s could not be returned to pending", request_id)
            return
        if reopened is None:
            logger.error("Delete request %s could not be returned to pending", request_id)
        else:
            logger.warning("Delete request %s returned to pending after a failed delete", request_id)

    def _get_pending(self, request_id: str) -> DeleteRequest:
        request = self.queue.get(request_id)
        if request is None:
            raise NotFoundError(f"Delete request {request_id} not found")
        if request.status != DeleteRequestStatus.PENDING:
            raise InvalidStateError(f"Delete request {request_id} is already {request.status.value}")
        return request
