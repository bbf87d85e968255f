# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""Shared constants, enums and errors for the promise registry.

All modules import from here to avoid circular dependencies.
"""

import os
from enum import Enum

# --- Registry Constants ---

MAX_MESSAGE_LENGTH = 200

# Reputation rules
COMPLETION_REWARD = 10
FAILURE_PENALTY = 5
LEVEL_WIDTH = 50  # reputation points per level

CATEGORIES = ("Learning", "Health", "Personal", "Business", "Creative")
DIFFICULTIES = ("easy", "medium", "hard")

# Single operator-configured admin identity, compared case-insensitively
DEFAULT_ADMIN_ADDRESS = "0xfb918bac7ba0c324f573b2763cd4ec08cdec5647"
ADMIN_ADDRESS = os.environ.get("REGISTRY_ADMIN_ADDRESS", DEFAULT_ADMIN_ADDRESS).lower()

# SSE bridge limits
MAX_SSE_SUBSCRIBERS = 1000
SSE_QUEUE_SIZE = 256
SSE_KEEPALIVE_SECONDS = 15.0

LIST_LIMIT_MAX = 500


# --- State Machine ---

class PromiseStatus(Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


# Valid status transitions: current -> set of valid next states.
# Terminal states have no way out.
STATUS_TRANSITIONS = {
    PromiseStatus.ACTIVE: {PromiseStatus.COMPLETED, PromiseStatus.FAILED},
    PromiseStatus.COMPLETED: set(),
    PromiseStatus.FAILED: set(),
}

TERMINAL_STATUSES = {PromiseStatus.COMPLETED, PromiseStatus.FAILED}


class DeleteRequestStatus(Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


# --- Event Kinds ---

class EventKind(Enum):
    PROMISE_CREATED = "PromiseCreated"
    PROMISE_UPDATED = "PromiseUpdated"
    PROMISE_DELETED = "PromiseDeleted"
    USER_UPDATED = "UserUpdated"
    STATS_UPDATED = "StatsUpdated"


# --- Errors ---

class RegistryError(Exception):
    """Base for every operation-level failure. Carries an HTTP status."""
    kind = "registry_error"
    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": self.kind, "detail": self.message}


class ValidationError(RegistryError):
    kind = "validation_error"
    status_code = 400


class AuthorizationError(RegistryError):
    kind = "authorization_error"
    status_code = 403


class NotFoundError(RegistryError):
    kind = "not_found"
    status_code = 404


class InvalidStateError(RegistryError):
    kind = "invalid_state"
    status_code = 409


class ConflictError(RegistryError):
    kind = "conflict"
    status_code = 409


class UpstreamError(RegistryError):
    kind = "upstream_error"
    status_code = 502


ERRORS_BY_KIND = {
    cls.kind: cls
    for cls in (ValidationError, AuthorizationError, NotFoundError,
                InvalidStateError, ConflictError, UpstreamError)
}
