# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""Promise lifecycle service.

The only writer of promise status, admin progress and reputation
counters. Every mutation takes the caller's identity explicitly.

State machine: active -> completed | failed. Both outcomes are terminal;
a promise resolves exactly once and its reputation delta is applied in
the same store transaction as the status change.
"""

import logging
import math
import time
import uuid
from typing import Callable
from urllib.parse import urlparse

from protocol import (
    MAX_MESSAGE_LENGTH, CATEGORIES, DIFFICULTIES,
    PromiseStatus, TERMINAL_STATUSES, EventKind,
    ValidationError, AuthorizationError, InvalidStateError, NotFoundError, UpstreamError,
)
from registry.events import EventBus
from registry.models import Promise, User, Session, GlobalStats
from registry.moderation import AdminGate
from registry.reputation import compute_delta, apply_delta, replay
from registry.store import LedgerStore

logger = logging.getLogger(__name__)

MAX_PROOF_LENGTH = 2048
MAX_SESSION_ID_LENGTH = 128


# --- Input validation ---

def normalize_address(address) -> str:
    if not isinstance(address, str) or not address.strip():
        raise ValidationError("Address is required")
    return address.strip().lower()


def _validate_message(message) -> str:
    if not isinstance(message, str) or not message.strip():
        raise ValidationError("Message cannot be empty")
    message = message.strip()
    if len(message) > MAX_MESSAGE_LENGTH:
        raise ValidationError(f"Message cannot exceed {MAX_MESSAGE_LENGTH} characters")
    return message


def _validate_category(category) -> str:
    if category not in CATEGORIES:
        raise ValidationError(f"Unknown category {category!r} (expected one of {', '.join(CATEGORIES)})")
    return category


def _validate_difficulty(difficulty) -> str:
    if difficulty not in DIFFICULTIES:
        raise ValidationError(f"Unknown difficulty {difficulty!r} (expected one of {', '.join(DIFFICULTIES)})")
    return difficulty


def _validate_deadline(deadline, now: float) -> float:
    if isinstance(deadline, bool) or not isinstance(deadline, (int, float)):
        raise ValidationError("Deadline must be a timestamp in seconds")
    try:
        deadline = float(deadline)
    except OverflowError:
        raise ValidationError("Deadline must be a finite timestamp")
    if not math.isfinite(deadline):
        raise ValidationError("Deadline must be a finite timestamp")
    if deadline <= now:
        raise ValidationError("Deadline must be in the future")
    return deadline


def _validate_proof(proof) -> str | None:
    if proof is None or proof == "":
        return None
    if not isinstance(proof, str) or len(proof) > MAX_PROOF_LENGTH:
        raise ValidationError("Proof must be a URL")
    parsed = urlparse(proof.strip())
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValidationError("Proof must be an http(s) URL")
    return proof.strip()


def _parse_terminal_status(status) -> PromiseStatus:
    try:
        parsed = PromiseStatus(status)
    except ValueError:
        raise ValidationError(f"Unknown status {status!r}")
    if parsed not in TERMINAL_STATUSES:
        raise ValidationError("A promise can only be resolved as completed or failed")
    return parsed


_FIELD_VALIDATORS = {
    "message": lambda value, now: _validate_message(value),
    "category": lambda value, now: _validate_category(value),
    "difficulty": lambda value, now: _validate_difficulty(value),
    "deadline": _validate_deadline,
    "proof": lambda value, now: _validate_proof(value),
}


class LifecycleService:
    """Create, edit, resolve and read promises."""

    def __init__(self, store: LedgerStore, bus: EventBus, gate: AdminGate,
                 clock: Callable[[], float] = time.time):
        self.store = store
        self.bus = bus
        self.gate = gate
        self.clock = clock

    # --- Mutations ---

    def create_promise(self, owner: str, message: str, category: str, difficulty: str,
                       deadline: float, proof: str | None = None) -> Promise:
        now = self.clock()
        promise = Promise(
            id=f"promise_{uuid.uuid4().hex[:16]}",
            owner=normalize_address(owner),
            message=_validate_message(message),
            category=_validate_category(category),
            difficulty=_validate_difficulty(difficulty),
            deadline=_validate_deadline(deadline, now),
            proof=_validate_proof(proof),
            created_at=now,
            updated_at=now,
        )
        promise, user = self.store.insert_promise(promise)
        logger.info("Promise %s created by %s (deadline %s)", promise.id, promise.owner, promise.deadline)

        self.bus.publish(EventKind.PROMISE_CREATED, {"promise": promise.to_dict(now)})
        self.publish_user(user)
        self.publish_stats()
        return promise

    def update_details(self, promise_id: str, editor: str, updates: dict) -> Promise:
        """Edit message/category/difficulty/deadline/proof of an active promise."""
        promise = self.get_promise(promise_id)
        self._check_owner(promise, editor)
        if not promise.is_active:
            raise InvalidStateError(f"Promise is {promise.status.value}; only active promises can be edited")

        if not isinstance(updates, dict) or not updates:
            raise ValidationError("No updates given")
        unknown = set(updates) - set(_FIELD_VALIDATORS)
        if unknown:
            raise ValidationError(f"Fields not editable: {', '.join(sorted(unknown))}")

        now = self.clock()
        # A new deadline must be in the future at edit time
        fields = {name: _FIELD_VALIDATORS[name](value, now) for name, value in updates.items()}

        updated = self.store.update_active_fields(promise_id, fields, now)
        if updated is None:
            current = self.get_promise(promise_id)
            raise InvalidStateError(f"Promise is {current.status.value}; only active promises can be edited")
        logger.info("Promise %s edited by owner (%s)", promise_id, ", ".join(sorted(fields)))

        self.bus.publish(EventKind.PROMISE_UPDATED, {"promise": updated.to_dict(now)})
        return updated

    def transition_status(self, promise_id: str, actor: str, new_status,
                          proof: str | None = None) -> Promise:
        """Resolve an active promise as completed or failed. One shot."""
        target = _parse_terminal_status(new_status)
        promise = self.get_promise(promise_id)
        self._check_owner(promise, actor)
        if not promise.is_active:
            raise InvalidStateError(f"Promise already resolved as {promise.status.value}")
        proof = _validate_proof(proof)

        def apply(counters: User) -> User:
            return apply_delta(counters, compute_delta(PromiseStatus.ACTIVE, target, counters))

        now = self.clock()
        result = self.store.resolve_promise(promise_id, target, proof, now, apply)
        if result is None:
            # Lost the compare-and-set: someone resolved or deleted it first
            current = self.store.get_promise(promise_id)
            if current is None:
                raise NotFoundError(f"Promise {promise_id} not found")
            raise InvalidStateError(f"Promise already resolved as {current.status.value}")
        resolved, user = result
        logger.info("Promise %s resolved as %s; %s reputation now %d (streak %d)",
                    promise_id, target.value, user.address, user.reputation, user.streak)

        self.bus.publish(EventKind.PROMISE_UPDATED, {"promise": resolved.to_dict(now)})
        self.publish_user(user)
        self.publish_stats()
        return resolved

    def admin_set_progress(self, promise_id: str, admin: str, progress) -> Promise:
        admin_address = self.gate.require(admin)
        if isinstance(progress, bool) or not isinstance(progress, int):
            raise ValidationError("Progress must be an integer")
        if progress < 0 or progress > 100:
            raise ValidationError("Progress must be between 0 and 100")

        now = self.clock()
        updated = self.store.set_admin_progress(promise_id, progress, now)
        if updated is None:
            raise NotFoundError(f"Promise {promise_id} not found")
        logger.info("Promise %s progress set to %d by %s", promise_id, progress, admin_address)

        self.bus.publish(EventKind.PROMISE_UPDATED, {"promise": updated.to_dict(now)})
        return updated

    def record_session(self, session_id: str, ip: str) -> Session:
        if not isinstance(session_id, str) or not session_id.strip():
            raise ValidationError("Session id is required")
        if len(session_id) > MAX_SESSION_ID_LENGTH:
            raise ValidationError("Session id too long")
        return self.store.record_session(session_id.strip(), ip or "unknown", self.clock())

    def recompute_user_stats(self, address: str, admin: str) -> User:
        """Rebuild a user's counters from their promises (admin repair)."""
        admin_address = self.gate.require(admin)
        address = normalize_address(address)
        outcomes = self.store.resolved_outcomes(address)
        total = len(self.store.list_promises(owner=address))
        rebuilt = replay(address, outcomes, total)
        user = self.store.replace_user_counters(rebuilt, self.clock())
        logger.info("Counters for %s recomputed by %s: reputation %d, %d/%d resolved",
                    address, admin_address, user.reputation, len(outcomes), total)

        self.publish_user(user)
        self.publish_stats()
        return user

    # --- Reads ---

    def get_promise(self, promise_id: str) -> Promise:
        promise = self.store.get_promise(promise_id)
        if promise is None:
            raise NotFoundError(f"Promise {promise_id} not found")
        return promise

    def list_promises(self, address: str | None = None, status: str | None = None,
                      category: str | None = None, limit: int | None = None) -> list[Promise]:
        if status is not None:
            try:
                PromiseStatus(status)
            except ValueError:
                raise ValidationError(f"Unknown status {status!r}")
        if category is not None:
            _validate_category(category)
        owner = normalize_address(address) if address else None
        return self.store.list_promises(owner=owner, status=status, category=category, limit=limit)

    def get_user_stats(self, address: str) -> User:
        return self.store.ensure_user(normalize_address(address), self.clock())

    def get_global_stats(self) -> GlobalStats:
        return self.store.global_stats()

    # --- Admin reads ---

    def list_all_promises(self, admin: str) -> list[Promise]:
        self.gate.require(admin)
        return self.store.list_promises()

    def list_all_users(self, admin: str) -> list[User]:
        self.gate.require(admin)
        return self.store.list_users()

    def list_all_sessions(self, admin: str) -> list[Session]:
        self.gate.require(admin)
        return self.store.list_sessions()

    # --- Notifications ---

    def publish_user(self, user: User | None):
        if user is not None:
            self.bus.publish(EventKind.USER_UPDATED, {"user": user.to_dict()})

    def publish_stats(self):
        # The write has already committed; a failed aggregate read only costs the event
        try:
            stats = self.store.global_stats()
        except UpstreamError:
            logger.warning("Skipping StatsUpdated: aggregate query failed")
            return
        self.bus.publish(EventKind.STATS_UPDATED, {"stats": stats.to_dict()})

    # --- Helpers ---

    def _check_owner(self, promise: Promise, caller: str):
        if not isinstance(caller, str) or caller.strip().lower() != promise.owner:
            raise AuthorizationError("Only the promise owner can do this")
