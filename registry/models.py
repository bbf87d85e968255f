# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""Typed entities for the promise registry.

The store maps rows to these and nothing else crosses its boundary.
"""

from dataclasses import dataclass, replace

from protocol import LEVEL_WIDTH, PromiseStatus, DeleteRequestStatus


def level_for(reputation: int) -> int:
    return reputation // LEVEL_WIDTH + 1


@dataclass(frozen=True)
class Promise:
    id: str
    owner: str
    message: str
    category: str
    difficulty: str
    deadline: float
    created_at: float
    updated_at: float
    status: PromiseStatus = PromiseStatus.ACTIVE
    proof: str | None = None
    admin_adjusted_progress: int | None = None
    resolved_at: float | None = None

    @property
    def is_active(self) -> bool:
        return self.status == PromiseStatus.ACTIVE

    def progress(self, now: float) -> float:
        """Percent complete for display.

        Admin override wins; resolved promises read 100; otherwise the
        share of the created_at..deadline window that has elapsed.
        """
        if self.admin_adjusted_progress is not None:
            return float(min(100, max(0, self.admin_adjusted_progress)))
        if not self.is_active:
            return 100.0
        total = self.deadline - self.created_at
        if total <= 0:
            return 100.0
        elapsed = now - self.created_at
        return min(100.0, max(0.0, elapsed / total * 100))

    def to_dict(self, now: float | None = None) -> dict:
        d = {
            "id": self.id,
            "owner": self.owner,
            "message": self.message,
            "category": self.category,
            "difficulty": self.difficulty,
            "deadline": self.deadline,
            "status": self.status.value,
            "proof": self.proof,
            "admin_adjusted_progress": self.admin_adjusted_progress,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "resolved_at": self.resolved_at,
        }
        if now is not None:
            d["progress"] = round(self.progress(now), 2)
        return d


@dataclass(frozen=True)
class User:
    """Reputation counters for one address."""
    address: str
    reputation: int = 0
    completed_promises: int = 0
    failed_promises: int = 0
    total_promises: int = 0
    streak: int = 0
    joined_at: float = 0.0
    last_active: float = 0.0

    @property
    def level(self) -> int:
        return level_for(self.reputation)

    def with_counters(self, **changes) -> "User":
        return replace(self, **changes)

    def to_dict(self) -> dict:
        return {
            "address": self.address,
            "reputation": self.reputation,
            "completed_promises": self.completed_promises,
            "failed_promises": self.failed_promises,
            "total_promises": self.total_promises,
            "streak": self.streak,
            "level": self.level,
            "joined_at": self.joined_at,
            "last_active": self.last_active,
        }


@dataclass(frozen=True)
class DeleteRequest:
    id: str
    promise_id: str
    requester_address: str
    requested_at: float
    status: DeleteRequestStatus = DeleteRequestStatus.PENDING
    processed_by: str | None = None
    processed_at: float | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "promise_id": self.promise_id,
            "requester_address": self.requester_address,
            "status": self.status.value,
            "requested_at": self.requested_at,
            "processed_by": self.processed_by,
            "processed_at": self.processed_at,
        }


@dataclass(frozen=True)
class Session:
    session_id: str
    ip: str
    first_visit: float
    last_active: float

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "ip": self.ip,
            "first_visit": self.first_visit,
            "last_active": self.last_active,
        }


@dataclass
class GlobalStats:
    total_users: int = 0
    total_promises: int = 0
    completion_rate: float = 0.0
    average_reputation: float = 0.0
    top_performer: str | None = None
    active_promises: int = 0
    completed_promises: int = 0
    failed_promises: int = 0
    highest_streak: int = 0

    def to_dict(self) -> dict:
        return {
            "total_users": self.total_users,
            "total_promises": self.total_promises,
            "completion_rate": self.completion_rate,
            "average_reputation": self.average_reputation,
            "top_performer": self.top_performer,
            "active_promises": self.active_promises,
            "completed_promises": self.completed_promises,
            "failed_promises": self.failed_promises,
            "highest_streak": self.highest_streak,
        }
