# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""Ledger store for the promise registry.

SQLite-backed CRUD for promises, users and visitor sessions. This is the
only place rows are mapped to typed entities; callers never see sqlite
rows or column names.

Every write runs under one lock and one transaction. A status change and
the owner's counter update commit together or not at all.
"""

import logging
import sqlite3
import threading
from contextlib import contextmanager
from typing import Callable

from protocol import PromiseStatus, UpstreamError
from registry.models import Promise, User, Session, GlobalStats
from registry.reputation import replay

logger = logging.getLogger(__name__)

EDITABLE_COLUMNS = {"message", "category", "difficulty", "deadline", "proof"}

OUTCOMES_SQL = (
    "SELECT status FROM promises WHERE owner = ? AND status != 'active' "
    "ORDER BY resolved_at ASC, id ASC"
)


class LedgerStore:
    """SQLite-backed store for promises and the users that own them."""

    def __init__(self, db_path: str = ":memory:"):
        self.db = sqlite3.connect(db_path, check_same_thread=False)
        self.db.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self):
        # Enable WAL mode for safe concurrent reads during writes
        self.db.execute("PRAGMA journal_mode=WAL")
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS promises (
                id TEXT PRIMARY KEY,
                owner TEXT NOT NULL,
                message TEXT NOT NULL,
                category TEXT NOT NULL,
                difficulty TEXT NOT NULL,
                deadline REAL NOT NULL,
                status TEXT NOT NULL DEFAULT 'active',
                proof TEXT,
                admin_adjusted_progress INTEGER,
                resolved_at REAL,
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL
            )
        """)
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS users (
                address TEXT PRIMARY KEY,
                reputation INTEGER NOT NULL DEFAULT 0,
                completed_promises INTEGER NOT NULL DEFAULT 0,
                failed_promises INTEGER NOT NULL DEFAULT 0,
                total_promises INTEGER NOT NULL DEFAULT 0,
                streak INTEGER NOT NULL DEFAULT 0,
                joined_at REAL NOT NULL,
                last_active REAL NOT NULL
            )
        """)
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS sessions (
                session_id TEXT PRIMARY KEY,
                ip TEXT NOT NULL,
                first_visit REAL NOT NULL,
                last_active REAL NOT NULL
            )
        """)
        self.db.execute("CREATE INDEX IF NOT EXISTS idx_promise_owner ON promises(owner)")
        self.db.execute("CREATE INDEX IF NOT EXISTS idx_promise_status ON promises(status)")
        self.db.commit()

    # --- Plumbing ---

    @contextmanager
    def _transaction(self):
        """Hold the write lock for one transaction. sqlite errors become UpstreamError."""
        with self._lock:
            try:
                yield self.db
                self.db.commit()
            except sqlite3.Error as e:
                self.db.rollback()
                logger.error("Ledger store transaction failed: %s", e)
                raise UpstreamError(f"Ledger store unavailable: {e}") from e
            except Exception:
                self.db.rollback()
                raise

    def _fetchall(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self._lock:
            try:
                return self.db.execute(sql, params).fetchall()
            except sqlite3.Error as e:
                logger.error("Ledger store read failed: %s", e)
                raise UpstreamError(f"Ledger store unavailable: {e}") from e

    def _fetchone(self, sql: str, params: tuple = ()) -> sqlite3.Row | None:
        rows = self._fetchall(sql, params)
        return rows[0] if rows else None

    @staticmethod
    def _ensure_user_row(db, address: str, now: float):
        db.execute(
            "INSERT OR IGNORE INTO users (address, joined_at, last_active) VALUES (?, ?, ?)",
            (address, now, now),
        )

    # --- Users ---

    def get_user(self, address: str) -> User | None:
        row = self._fetchone("SELECT * FROM users WHERE address = ?", (address,))
        if not row:
            return None
        return self._row_to_user(row)

    def ensure_user(self, address: str, now: float) -> User:
        """Get a user, creating a zeroed row on first sight."""
        with self._transaction() as db:
            self._ensure_user_row(db, address, now)
            row = db.execute("SELECT * FROM users WHERE address = ?", (address,)).fetchone()
        return self._row_to_user(row)

    def list_users(self) -> list[User]:
        rows = self._fetchall("SELECT * FROM users ORDER BY reputation DESC, address ASC")
        return [self._row_to_user(r) for r in rows]

    def replace_user_counters(self, user: User, now: float) -> User:
        """Overwrite a user's counters. Used by the admin repair path only."""
        with self._transaction() as db:
            self._ensure_user_row(db, user.address, now)
            db.execute(
                "UPDATE users SET reputation = ?, completed_promises = ?, failed_promises = ?, "
                "total_promises = ?, streak = ?, last_active = ? WHERE address = ?",
                (user.reputation, user.completed_promises, user.failed_promises,
                 user.total_promises, user.streak, now, user.address),
            )
            row = db.execute("SELECT * FROM users WHERE address = ?", (user.address,)).fetchone()
        return self._row_to_user(row)

    # --- Promises ---

    def insert_promise(self, promise: Promise) -> tuple[Promise, User]:
        """Store a new promise and bump the owner's total in one transaction."""
        with self._transaction() as db:
            self._ensure_user_row(db, promise.owner, promise.created_at)
            db.execute(
                "INSERT INTO promises (id, owner, message, category, difficulty, deadline, status, proof, "
                "admin_adjusted_progress, resolved_at, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (promise.id, promise.owner, promise.message, promise.category, promise.difficulty,
                 promise.deadline, promise.status.value, promise.proof, promise.admin_adjusted_progress,
                 promise.resolved_at, promise.created_at, promise.updated_at),
            )
            db.execute(
                "UPDATE users SET total_promises = total_promises + 1, last_active = ? WHERE address = ?",
                (promise.created_at, promise.owner),
            )
            row = db.execute("SELECT * FROM users WHERE address = ?", (promise.owner,)).fetchone()
        return promise, self._row_to_user(row)

    def get_promise(self, promise_id: str) -> Promise | None:
        row = self._fetchone("SELECT * FROM promises WHERE id = ?", (promise_id,))
        if not row:
            return None
        return self._row_to_promise(row)

    def list_promises(self, owner: str | None = None, status: str | None = None,
                      category: str | None = None, limit: int | None = None) -> list[Promise]:
        """List promises, newest first. All filters are equality matches."""
        clauses = []
        params: list = []
        if owner:
            clauses.append("owner = ?")
            params.append(owner)
        if status:
            clauses.append("status = ?")
            params.append(status)
        if category:
            clauses.append("category = ?")
            params.append(category)
        sql = "SELECT * FROM promises"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at DESC, id ASC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        return [self._row_to_promise(r) for r in self._fetchall(sql, tuple(params))]

    def resolved_outcomes(self, owner: str) -> list[PromiseStatus]:
        """Terminal statuses for an owner's promises, in resolution order."""
        rows = self._fetchall(OUTCOMES_SQL, (owner,))
        return [PromiseStatus(r["status"]) for r in rows]

    def update_active_fields(self, promise_id: str, fields: dict, now: float) -> Promise | None:
        """Update editable columns of an active promise.

        Returns None if the promise is gone or no longer active.
        """
        unknown = set(fields) - EDITABLE_COLUMNS
        if unknown:
            raise ValueError(f"Not editable: {sorted(unknown)}")
        with self._transaction() as db:
            sets = [f"{col} = ?" for col in fields]
            params = list(fields.values())
            sets.append("updated_at = ?")
            params.append(now)
            params.append(promise_id)
            cursor = db.execute(
                f"UPDATE promises SET {', '.join(sets)} WHERE id = ? AND status = 'active'",
                params,
            )
            if cursor.rowcount == 0:
                return None
            row = db.execute("SELECT * FROM promises WHERE id = ?", (promise_id,)).fetchone()
        return self._row_to_promise(row)

    def resolve_promise(self, promise_id: str, new_status: PromiseStatus, proof: str | None,
                        now: float, apply: Callable[[User], User]) -> tuple[Promise, User] | None:
        """Move an active promise to a terminal status and update its owner.

        The status change is a compare-and-set on 'active'; `apply` maps the
        owner's current counters to the new ones and runs inside the same
        transaction. Returns None if another writer got there first.
        """
        with self._transaction() as db:
            cursor = db.execute(
                "UPDATE promises SET status = ?, proof = COALESCE(?, proof), resolved_at = ?, updated_at = ? "
                "WHERE id = ? AND status = 'active'",
                (new_status.value, proof, now, now, promise_id),
            )
            if cursor.rowcount == 0:
                return None
            promise = self._row_to_promise(
                db.execute("SELECT * FROM promises WHERE id = ?", (promise_id,)).fetchone()
            )
            self._ensure_user_row(db, promise.owner, now)
            before = self._row_to_user(
                db.execute("SELECT * FROM users WHERE address = ?", (promise.owner,)).fetchone()
            )
            after = apply(before)
            db.execute(
                "UPDATE users SET reputation = ?, completed_promises = ?, failed_promises = ?, "
                "streak = ?, last_active = ? WHERE address = ?",
                (after.reputation, after.completed_promises, after.failed_promises,
                 after.streak, now, promise.owner),
            )
            user = self._row_to_user(
                db.execute("SELECT * FROM users WHERE address = ?", (promise.owner,)).fetchone()
            )
        return promise, user

    def set_admin_progress(self, promise_id: str, progress: int, now: float) -> Promise | None:
        with self._transaction() as db:
            cursor = db.execute(
                "UPDATE promises SET admin_adjusted_progress = ?, updated_at = ? WHERE id = ?",
                (progress, now, promise_id),
            )
            if cursor.rowcount == 0:
                return None
            row = db.execute("SELECT * FROM promises WHERE id = ?", (promise_id,)).fetchone()
        return self._row_to_promise(row)

    def delete_promise(self, promise_id: str, now: float) -> tuple[Promise, User | None] | None:
        """Delete a promise and fix up its owner's counters.

        Deleting an active promise only lowers total_promises (floored at 0).
        Deleting a resolved one rebuilds the owner's counters from the
        promises that remain, so they match what recompute would produce.
        """
        with self._transaction() as db:
            row = db.execute("SELECT * FROM promises WHERE id = ?", (promise_id,)).fetchone()
            if not row:
                return None
            promise = self._row_to_promise(row)
            db.execute("DELETE FROM promises WHERE id = ?", (promise_id,))
            if promise.is_active:
                db.execute(
                    "UPDATE users SET total_promises = MAX(0, total_promises - 1), last_active = ? "
                    "WHERE address = ?",
                    (now, promise.owner),
                )
            else:
                outcomes = [PromiseStatus(r["status"]) for r in db.execute(OUTCOMES_SQL, (promise.owner,))]
                total = db.execute(
                    "SELECT COUNT(*) AS n FROM promises WHERE owner = ?", (promise.owner,)
                ).fetchone()["n"]
                rebuilt = replay(promise.owner, outcomes, total)
                self._ensure_user_row(db, promise.owner, now)
                db.execute(
                    "UPDATE users SET reputation = ?, completed_promises = ?, failed_promises = ?, "
                    "total_promises = ?, streak = ?, last_active = ? WHERE address = ?",
                    (rebuilt.reputation, rebuilt.completed_promises, rebuilt.failed_promises,
                     rebuilt.total_promises, rebuilt.streak, now, promise.owner),
                )
            user_row = db.execute("SELECT * FROM users WHERE address = ?", (promise.owner,)).fetchone()
        return promise, (self._row_to_user(user_row) if user_row else None)

    # --- Sessions ---

    def record_session(self, session_id: str, ip: str, now: float) -> Session:
        """Upsert a visitor session. first_visit is kept on repeat visits."""
        with self._transaction() as db:
            db.execute(
                "INSERT INTO sessions (session_id, ip, first_visit, last_active) VALUES (?, ?, ?, ?) "
                "ON CONFLICT(session_id) DO UPDATE SET ip = excluded.ip, last_active = excluded.last_active",
                (session_id, ip, now, now),
            )
            row = db.execute("SELECT * FROM sessions WHERE session_id = ?", (session_id,)).fetchone()
        return self._row_to_session(row)

    def list_sessions(self) -> list[Session]:
        rows = self._fetchall("SELECT * FROM sessions ORDER BY last_active DESC")
        return [self._row_to_session(r) for r in rows]

    # --- Aggregates ---

    def global_stats(self) -> GlobalStats:
        counts = {r["status"]: r["n"] for r in self._fetchall(
            "SELECT status, COUNT(*) AS n FROM promises GROUP BY status"
        )}
        users = self._fetchone(
            "SELECT COUNT(*) AS n, COALESCE(AVG(reputation), 0) AS avg_rep, "
            "COALESCE(MAX(streak), 0) AS max_streak FROM users"
        )
        top = self._fetchone(
            "SELECT address FROM users WHERE reputation > 0 ORDER BY reputation DESC, address ASC LIMIT 1"
        )
        total = sum(counts.values())
        completed = counts.get(PromiseStatus.COMPLETED.value, 0)
        return GlobalStats(
            total_users=users["n"],
            total_promises=total,
            completion_rate=round(completed / total * 100, 2) if total else 0.0,
            average_reputation=round(users["avg_rep"], 2),
            top_performer=top["address"] if top else None,
            active_promises=counts.get(PromiseStatus.ACTIVE.value, 0),
            completed_promises=completed,
            failed_promises=counts.get(PromiseStatus.FAILED.value, 0),
            highest_streak=users["max_streak"],
        )

    # --- Row mapping ---

    def _row_to_promise(self, row) -> Promise:
        return Promise(
            id=row["id"],
            owner=row["owner"],
            message=row["message"],
            category=row["category"],
            difficulty=row["difficulty"],
            deadline=row["deadline"],
            status=PromiseStatus(row["status"]),
            proof=row["proof"],
            admin_adjusted_progress=row["admin_adjusted_progress"],
            resolved_at=row["resolved_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _row_to_user(self, row) -> User:
        return User(
            address=row["address"],
            reputation=row["reputation"],
            completed_promises=row["completed_promises"],
            failed_promises=row["failed_promises"],
            total_promises=row["total_promises"],
            streak=row["streak"],
            joined_at=row["joined_at"],
            last_active=row["last_active"],
        )

    def _row_to_session(self, row) -> Session:
        return Session(
            session_id=row["session_id"],
            ip=row["ip"],
            first_visit=row["first_visit"],
            last_active=row["last_active"],
        )

    def close(self):
        self.db.close()
