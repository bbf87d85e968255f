# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""Reputation rules for the promise registry.

Pure functions: (old status, new status, counters) -> counter delta.
No I/O and no hidden state, so the store can apply the result inside
its own transaction.
"""

from dataclasses import dataclass

from protocol import (
    COMPLETION_REWARD, FAILURE_PENALTY,
    PromiseStatus, STATUS_TRANSITIONS, InvalidStateError,
)
from registry.models import User


@dataclass(frozen=True)
class ReputationDelta:
    """Counter changes produced by one resolution."""
    reputation_delta: int = 0
    completed_delta: int = 0
    failed_delta: int = 0
    streak_new_value: int = 0

    def to_dict(self) -> dict:
        return {
            "reputation_delta": self.reputation_delta,
            "completed_delta": self.completed_delta,
            "failed_delta": self.failed_delta,
            "streak_new_value": self.streak_new_value,
        }


def compute_delta(old_status: PromiseStatus, new_status: PromiseStatus, counters: User) -> ReputationDelta:
    """Delta for a single transition. Only active -> terminal is defined."""
    if new_status not in STATUS_TRANSITIONS.get(old_status, set()):
        raise InvalidStateError(f"No reputation rule for {old_status.value} -> {new_status.value}")

    if new_status == PromiseStatus.COMPLETED:
        return ReputationDelta(
            reputation_delta=COMPLETION_REWARD,
            completed_delta=1,
            streak_new_value=counters.streak + 1,
        )
    # Floor at zero: never take away more than the user has
    penalty = min(FAILURE_PENALTY, counters.reputation)
    return ReputationDelta(
        reputation_delta=-penalty,
        failed_delta=1,
        streak_new_value=0,
    )


def apply_delta(counters: User, delta: ReputationDelta) -> User:
    return counters.with_counters(
        reputation=max(0, counters.reputation + delta.reputation_delta),
        completed_promises=counters.completed_promises + delta.completed_delta,
        failed_promises=counters.failed_promises + delta.failed_delta,
        streak=delta.streak_new_value,
    )


def replay(address: str, outcomes: list[PromiseStatus], total_promises: int) -> User:
    """Rebuild counters from resolved outcomes, oldest first."""
    counters = User(address=address, total_promises=total_promises)
    for outcome in outcomes:
        counters = apply_delta(counters, compute_delta(PromiseStatus.ACTIVE, outcome, counters))
    return counters
