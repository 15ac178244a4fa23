"""SQLite-backed storage for escrow payments and the records they guard."""

from __future__ import annotations

import contextlib
import sqlite3
import time
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from threading import RLock
from typing import Any


class DuplicateEscrowError(Exception):
    """Raised when a task already has a non-refunded escrow."""


class DuplicateRecordError(Exception):
    """Raised when inserting a task, bid or submission with an existing id."""


class StaleTaskStateError(Exception):
    """Raised when a task status compare-and-set affects zero rows."""


class EscrowStateError(Exception):
    """Raised when an escrow is not in the status an operation requires."""


class BidStateError(Exception):
    """Raised when a bid cannot be accepted."""


def _now_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def _rollback(db: sqlite3.Connection) -> None:
    with contextlib.suppress(sqlite3.Error):
        db.execute("ROLLBACK")


class EscrowStore:
    """
    SQLite-backed storage for the escrow flow.

    Holds tasks, bids and submissions as plain record keeping next to the
    escrow rows so that cross-table invariants can be enforced inside one
    ``BEGIN IMMEDIATE`` transaction. Amounts are stored as decimal text.
    """

    _ESCROW_COLUMNS: tuple[str, ...] = (
        "escrow_id",
        "task_id",
        "bid_id",
        "amount",
        "payment_id",
        "funding_txid",
        "status",
        "release_payment_id",
        "release_txid",
        "created_at",
        "updated_at",
    )
    _ESCROW_SELECT_SQL = (
        "SELECT escrow_id, task_id, bid_id, amount, payment_id, funding_txid, status, "
        "release_payment_id, release_txid, created_at, updated_at FROM escrow_payments"
    )

    def __init__(self, db_path: str) -> None:
        self._lock = RLock()
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
        self._db.row_factory = sqlite3.Row
        self._db.execute("PRAGMA journal_mode=WAL")
        self._db.execute("PRAGMA foreign_keys=ON")
        self._db.execute("PRAGMA busy_timeout=5000")
        self._init_schema()

    def _init_schema(self) -> None:
        with self._lock:
            self._db.executescript(
                """
                CREATE TABLE IF NOT EXISTS tasks (
                    task_id TEXT PRIMARY KEY,
                    creator_id TEXT NOT NULL,
                    executor_id TEXT,
                    title TEXT NOT NULL,
                    payment_amount TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'open'
                        CHECK (status IN ('open', 'in_progress', 'completed', 'disputed')),
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS bids (
                    bid_id TEXT PRIMARY KEY,
                    task_id TEXT NOT NULL REFERENCES tasks(task_id),
                    bidder_id TEXT NOT NULL,
                    amount TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending'
                        CHECK (status IN ('pending', 'accepted', 'rejected')),
                    created_at TEXT NOT NULL,
                    UNIQUE(task_id, bidder_id)
                );

                CREATE UNIQUE INDEX IF NOT EXISTS ux_accepted_bid_task
                    ON bids(task_id) WHERE status = 'accepted';

                CREATE TABLE IF NOT EXISTS submissions (
                    submission_id TEXT PRIMARY KEY,
                    task_id TEXT NOT NULL REFERENCES tasks(task_id),
                    executor_id TEXT NOT NULL,
                    content TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending'
                        CHECK (status IN ('pending', 'approved', 'rejected')),
                    created_at TEXT NOT NULL,
                    reviewed_at TEXT
                );

                CREATE TABLE IF NOT EXISTS escrow_payments (
                    escrow_id TEXT PRIMARY KEY,
                    task_id TEXT NOT NULL REFERENCES tasks(task_id),
                    bid_id TEXT REFERENCES bids(bid_id),
                    amount TEXT NOT NULL,
                    payment_id TEXT,
                    funding_txid TEXT,
                    status TEXT NOT NULL DEFAULT 'pending'
                        CHECK (status IN ('pending', 'funded', 'released', 'refunded')),
                    release_payment_id TEXT,
                    release_txid TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE UNIQUE INDEX IF NOT EXISTS ux_active_escrow_task
                    ON escrow_payments(task_id) WHERE status != 'refunded';

                CREATE TRIGGER IF NOT EXISTS trg_escrow_amount_immutable
                    BEFORE UPDATE OF amount ON escrow_payments
                    WHEN NEW.amount != OLD.amount
                BEGIN
                    SELECT RAISE(ABORT, 'escrow amount is immutable');
                END;

                CREATE TABLE IF NOT EXISTS payment_records (
                    payment_id TEXT PRIMARY KEY,
                    actor_id TEXT,
                    direction TEXT NOT NULL,
                    amount TEXT NOT NULL,
                    task_id TEXT,
                    txid TEXT,
                    state TEXT NOT NULL,
                    source TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS payment_locks (
                    actor_id TEXT PRIMARY KEY,
                    handshake_id TEXT NOT NULL,
                    acquired_at REAL NOT NULL
                );

                CREATE TABLE IF NOT EXISTS reconciliations (
                    actor_id TEXT PRIMARY KEY,
                    status TEXT NOT NULL CHECK (status IN ('completed', 'skipped')),
                    reason TEXT,
                    reconciled_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS profiles (
                    uid TEXT PRIMARY KEY,
                    username TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    last_seen_at TEXT NOT NULL
                );
                """
            )

    # ------------------------------------------------------------------
    # Row helpers
    # ------------------------------------------------------------------

    def _row_to_escrow(self, row: sqlite3.Row) -> dict[str, Any]:
        escrow = {column: row[column] for column in self._ESCROW_COLUMNS}
        escrow["amount"] = Decimal(escrow["amount"])
        return escrow

    @staticmethod
    def _row_with_amount(row: sqlite3.Row, amount_column: str) -> dict[str, Any]:
        data = dict(row)
        data[amount_column] = Decimal(data[amount_column])
        return data

    def _insert(self, sql: str, params: tuple[object, ...], label: str) -> None:
        with self._lock:
            try:
                self._db.execute("BEGIN IMMEDIATE")
                self._db.execute(sql, params)
                self._db.execute("COMMIT")
            except sqlite3.IntegrityError as exc:
                _rollback(self._db)
                if "unique" in str(exc).lower():
                    raise DuplicateRecordError(f"{label} already exists") from exc
                raise
            except Exception:
                _rollback(self._db)
                raise

    # ------------------------------------------------------------------
    # Tasks, bids, submissions
    # ------------------------------------------------------------------

    def insert_task(
        self,
        task_id: str,
        creator_id: str,
        title: str,
        payment_amount: Decimal,
    ) -> None:
        now = _now_iso()
        self._insert(
            "INSERT INTO tasks (task_id, creator_id, executor_id, title, payment_amount, "
            "status, created_at, updated_at) VALUES (?, ?, NULL, ?, ?, 'open', ?, ?)",
            (task_id, creator_id, title, str(payment_amount), now, now),
            f"Task {task_id}",
        )

    def get_task(self, task_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._db.execute("SELECT * FROM tasks WHERE task_id = ?", (task_id,)).fetchone()
        if row is None:
            return None
        return self._row_with_amount(row, "payment_amount")

    def insert_bid(self, bid_id: str, task_id: str, bidder_id: str, amount: Decimal) -> None:
        self._insert(
            "INSERT INTO bids (bid_id, task_id, bidder_id, amount, status, created_at) "
            "VALUES (?, ?, ?, ?, 'pending', ?)",
            (bid_id, task_id, bidder_id, str(amount), _now_iso()),
            f"Bid {bid_id}",
        )

    def get_bid(self, bid_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._db.execute("SELECT * FROM bids WHERE bid_id = ?", (bid_id,)).fetchone()
        if row is None:
            return None
        return self._row_with_amount(row, "amount")

    def get_accepted_bid(self, task_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._db.execute(
                "SELECT * FROM bids WHERE task_id = ? AND status = 'accepted'",
                (task_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_with_amount(row, "amount")

    def accept_bid(self, task_id: str, bid_id: str) -> None:
        """Accept one pending bid and reject the task's other pending bids."""
        with self._lock:
            try:
                self._db.execute("BEGIN IMMEDIATE")
                cursor = self._db.execute(
                    "UPDATE bids SET status = 'accepted' "
                    "WHERE bid_id = ? AND task_id = ? AND status = 'pending'",
                    (bid_id, task_id),
                )
                if cursor.rowcount == 0:
                    raise BidStateError(f"Bid {bid_id} is not a pending bid of task {task_id}")
                self._db.execute(
                    "UPDATE bids SET status = 'rejected' "
                    "WHERE task_id = ? AND bid_id != ? AND status = 'pending'",
                    (task_id, bid_id),
                )
                self._db.execute("COMMIT")
            except sqlite3.IntegrityError as exc:
                _rollback(self._db)
                raise BidStateError(f"Task {task_id} already has an accepted bid") from exc
            except Exception:
                _rollback(self._db)
                raise

    def insert_submission(
        self,
        submission_id: str,
        task_id: str,
        executor_id: str,
        content: str,
    ) -> None:
        self._insert(
            "INSERT INTO submissions (submission_id, task_id, executor_id, content, status, "
            "created_at, reviewed_at) VALUES (?, ?, ?, ?, 'pending', ?, NULL)",
            (submission_id, task_id, executor_id, content, _now_iso()),
            f"Submission {submission_id}",
        )

    def approve_submission(self, submission_id: str) -> int:
        """Approve a pending submission and return the number of affected rows."""
        with self._lock:
            cursor = self._db.execute(
                "UPDATE submissions SET status = 'approved', reviewed_at = ? "
                "WHERE submission_id = ? AND status = 'pending'",
                (_now_iso(), submission_id),
            )
        return cursor.rowcount

    def has_approved_submission(self, task_id: str) -> bool:
        with self._lock:
            row = self._db.execute(
                "SELECT 1 FROM submissions WHERE task_id = ? AND status = 'approved' LIMIT 1",
                (task_id,),
            ).fetchone()
        return row is not None

    # ------------------------------------------------------------------
    # Escrow payments
    # ------------------------------------------------------------------

    def insert_escrow(
        self,
        escrow_id: str,
        task_id: str,
        bid_id: str | None,
        amount: Decimal,
        payment_id: str | None,
    ) -> dict[str, Any]:
        """
        Insert a pending escrow.

        Raises:
            DuplicateEscrowError: if the task already has a non-refunded escrow
        """
        now = _now_iso()
        with self._lock:
            try:
                self._db.execute("BEGIN IMMEDIATE")
                self._db.execute(
                    "INSERT INTO escrow_payments (escrow_id, task_id, bid_id, amount, payment_id, "
                    "funding_txid, status, release_payment_id, release_txid, created_at, "
                    "updated_at) VALUES (?, ?, ?, ?, ?, NULL, 'pending', NULL, NULL, ?, ?)",
                    (escrow_id, task_id, bid_id, str(amount), payment_id, now, now),
                )
                self._db.execute("COMMIT")
            except sqlite3.IntegrityError as exc:
                _rollback(self._db)
                if "unique" in str(exc).lower():
                    raise DuplicateEscrowError(
                        f"Task {task_id} already has an active escrow"
                    ) from exc
                raise
            except Exception:
                _rollback(self._db)
                raise

        escrow = self.get_escrow(escrow_id)
        if escrow is None:
            msg = "Escrow row missing after insert"
            raise RuntimeError(msg)
        return escrow

    def get_escrow(self, escrow_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._db.execute(
                f"{self._ESCROW_SELECT_SQL} WHERE escrow_id = ?",
                (escrow_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_escrow(row)

    def get_active_escrow_for_task(self, task_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._db.execute(
                f"{self._ESCROW_SELECT_SQL} WHERE task_id = ? AND status != 'refunded'",
                (task_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_escrow(row)

    def get_latest_escrow_for_task(self, task_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._db.execute(
                f"{self._ESCROW_SELECT_SQL} WHERE task_id = ? "
                "ORDER BY status = 'refunded', created_at DESC LIMIT 1",
                (task_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_escrow(row)

    def count_funded_escrows(self, task_id: str) -> int:
        with self._lock:
            row = self._db.execute(
                "SELECT COUNT(*) FROM escrow_payments WHERE task_id = ? AND status = 'funded'",
                (task_id,),
            ).fetchone()
        return int(row[0])

    def set_escrow_payment_id(self, escrow_id: str, payment_id: str) -> int:
        """Attach the funding payment id to a pending escrow; returns affected rows."""
        with self._lock:
            cursor = self._db.execute(
                "UPDATE escrow_payments SET payment_id = ?, updated_at = ? "
                "WHERE escrow_id = ? AND status = 'pending' "
                "AND (payment_id IS NULL OR payment_id = ?)",
                (payment_id, _now_iso(), escrow_id, payment_id),
            )
        return cursor.rowcount

    def fund_escrow(self, escrow_id: str, task_id: str, executor_id: str, txid: str) -> None:
        """
        Mark an escrow funded and move its task to in_progress atomically.

        The task compare-and-set runs first, so of two racing callers the
        loser sees StaleTaskStateError and its escrow stays pending.

        Raises:
            StaleTaskStateError: task was not open
            EscrowStateError: escrow was not pending
        """
        now = _now_iso()
        with self._lock:
            try:
                self._db.execute("BEGIN IMMEDIATE")
                task_cursor = self._db.execute(
                    "UPDATE tasks SET status = 'in_progress', executor_id = ?, updated_at = ? "
                    "WHERE task_id = ? AND status = 'open'",
                    (executor_id, now, task_id),
                )
                if task_cursor.rowcount == 0:
                    raise StaleTaskStateError(f"Task {task_id} is no longer open")

                escrow_cursor = self._db.execute(
                    "UPDATE escrow_payments SET status = 'funded', funding_txid = ?, "
                    "updated_at = ? WHERE escrow_id = ? AND status = 'pending'",
                    (txid, now, escrow_id),
                )
                if escrow_cursor.rowcount == 0:
                    raise EscrowStateError(f"Escrow {escrow_id} is not pending")
                self._db.execute("COMMIT")
            except Exception:
                _rollback(self._db)
                raise

    def record_release_payment(
        self,
        escrow_id: str,
        payment_id: str,
        replaces: str | None = None,
    ) -> int:
        """
        Claim a funded escrow for a payout; returns affected rows.

        Only succeeds while the escrow's recorded payout id is still
        ``replaces`` (None for a first claim), so one escrow never carries
        two payouts.
        """
        with self._lock:
            if replaces is None:
                cursor = self._db.execute(
                    "UPDATE escrow_payments SET release_payment_id = ?, updated_at = ? "
                    "WHERE escrow_id = ? AND status = 'funded' "
                    "AND release_payment_id IS NULL",
                    (payment_id, _now_iso(), escrow_id),
                )
            else:
                cursor = self._db.execute(
                    "UPDATE escrow_payments SET release_payment_id = ?, updated_at = ? "
                    "WHERE escrow_id = ? AND status = 'funded' "
                    "AND release_payment_id = ?",
                    (payment_id, _now_iso(), escrow_id, replaces),
                )
        return cursor.rowcount

    def finalize_release(self, escrow_id: str, task_id: str, txid: str) -> None:
        """
        Mark an escrow released and its task completed atomically.

        Raises:
            EscrowStateError: escrow was not funded
            StaleTaskStateError: task was not in_progress
        """
        now = _now_iso()
        with self._lock:
            try:
                self._db.execute("BEGIN IMMEDIATE")
                escrow_cursor = self._db.execute(
                    "UPDATE escrow_payments SET status = 'released', release_txid = ?, "
                    "updated_at = ? WHERE escrow_id = ? AND status = 'funded'",
                    (txid, now, escrow_id),
                )
                if escrow_cursor.rowcount == 0:
                    raise EscrowStateError(f"Escrow {escrow_id} is not funded")
                task_cursor = self._db.execute(
                    "UPDATE tasks SET status = 'completed', updated_at = ? "
                    "WHERE task_id = ? AND status = 'in_progress'",
                    (now, task_id),
                )
                if task_cursor.rowcount == 0:
                    raise StaleTaskStateError(f"Task {task_id} is not in progress")
                self._db.execute("COMMIT")
            except Exception:
                _rollback(self._db)
                raise

    def refund_escrow(self, escrow_id: str, task_id: str) -> None:
        """
        Mark an escrow refunded and its task disputed atomically.

        An escrow with a payout already recorded cannot be refunded.

        Raises:
            EscrowStateError: escrow was not funded, or has a payout
            StaleTaskStateError: task was not in_progress
        """
        now = _now_iso()
        with self._lock:
            try:
                self._db.execute("BEGIN IMMEDIATE")
                escrow_cursor = self._db.execute(
                    "UPDATE escrow_payments SET status = 'refunded', updated_at = ? "
                    "WHERE escrow_id = ? AND status = 'funded' "
                    "AND release_payment_id IS NULL",
                    (now, escrow_id),
                )
                if escrow_cursor.rowcount == 0:
                    raise EscrowStateError(f"Escrow {escrow_id} is not funded or has a payout")
                task_cursor = self._db.execute(
                    "UPDATE tasks SET status = 'disputed', updated_at = ? "
                    "WHERE task_id = ? AND status = 'in_progress'",
                    (now, task_id),
                )
                if task_cursor.rowcount == 0:
                    raise StaleTaskStateError(f"Task {task_id} is not in progress")
                self._db.execute("COMMIT")
            except Exception:
                _rollback(self._db)
                raise

    def count_escrows_by_status(self) -> dict[str, int]:
        with self._lock:
            rows = self._db.execute(
                "SELECT status, COUNT(*) AS total FROM escrow_payments GROUP BY status"
            ).fetchall()
        return {row["status"]: int(row["total"]) for row in rows}

    # ------------------------------------------------------------------
    # Payment records
    # ------------------------------------------------------------------

    def upsert_payment_record(
        self,
        payment_id: str,
        *,
        actor_id: str | None,
        direction: str,
        amount: Decimal,
        task_id: str | None,
        txid: str | None,
        state: str,
        source: str,
    ) -> None:
        """Insert or refresh the local correlation row for a payment."""
        now = _now_iso()
        with self._lock:
            self._db.execute(
                "INSERT INTO payment_records (payment_id, actor_id, direction, amount, task_id, "
                "txid, state, source, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(payment_id) DO UPDATE SET "
                "actor_id = COALESCE(excluded.actor_id, payment_records.actor_id), "
                "task_id = COALESCE(excluded.task_id, payment_records.task_id), "
                "txid = COALESCE(excluded.txid, payment_records.txid), "
                "state = excluded.state, source = excluded.source, "
                "updated_at = excluded.updated_at",
                (
                    payment_id,
                    actor_id,
                    direction,
                    str(amount),
                    task_id,
                    txid,
                    state,
                    source,
                    now,
                    now,
                ),
            )

    def get_payment_record(self, payment_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._db.execute(
                "SELECT * FROM payment_records WHERE payment_id = ?",
                (payment_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_with_amount(row, "amount")

    # ------------------------------------------------------------------
    # Per-actor payment lock and reconciliation mark
    # ------------------------------------------------------------------

    def acquire_payment_lock(
        self,
        actor_id: str,
        handshake_id: str,
        stale_after_seconds: float,
    ) -> bool:
        """
        Take the actor's payment lock.

        A lock held longer than ``stale_after_seconds`` belongs to a flow
        that never resolved (crash, restart) and is reclaimed.
        """
        now = time.time()
        with self._lock:
            try:
                self._db.execute("BEGIN IMMEDIATE")
                self._db.execute(
                    "DELETE FROM payment_locks WHERE actor_id = ? AND acquired_at < ?",
                    (actor_id, now - stale_after_seconds),
                )
                cursor = self._db.execute(
                    "INSERT OR IGNORE INTO payment_locks (actor_id, handshake_id, acquired_at) "
                    "VALUES (?, ?, ?)",
                    (actor_id, handshake_id, now),
                )
                self._db.execute("COMMIT")
            except Exception:
                _rollback(self._db)
                raise
        return cursor.rowcount == 1

    def release_payment_lock(self, actor_id: str, handshake_id: str) -> int:
        with self._lock:
            cursor = self._db.execute(
                "DELETE FROM payment_locks WHERE actor_id = ? AND handshake_id = ?",
                (actor_id, handshake_id),
            )
        return cursor.rowcount

    def get_payment_lock(self, actor_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._db.execute(
                "SELECT * FROM payment_locks WHERE actor_id = ?",
                (actor_id,),
            ).fetchone()
        return dict(row) if row is not None else None

    def mark_reconciled(self, actor_id: str, status: str, reason: str | None) -> None:
        with self._lock:
            self._db.execute(
                "INSERT INTO reconciliations (actor_id, status, reason, reconciled_at) "
                "VALUES (?, ?, ?, ?) ON CONFLICT(actor_id) DO UPDATE SET "
                "status = excluded.status, reason = excluded.reason, "
                "reconciled_at = excluded.reconciled_at",
                (actor_id, status, reason, _now_iso()),
            )

    def clear_reconciliation(self, actor_id: str) -> int:
        with self._lock:
            cursor = self._db.execute(
                "DELETE FROM reconciliations WHERE actor_id = ?",
                (actor_id,),
            )
        return cursor.rowcount

    def get_reconciliation(self, actor_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._db.execute(
                "SELECT * FROM reconciliations WHERE actor_id = ?",
                (actor_id,),
            ).fetchone()
        return dict(row) if row is not None else None

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------

    def upsert_profile(self, uid: str, username: str) -> dict[str, Any]:
        now = _now_iso()
        with self._lock:
            self._db.execute(
                "INSERT INTO profiles (uid, username, created_at, last_seen_at) "
                "VALUES (?, ?, ?, ?) ON CONFLICT(uid) DO UPDATE SET "
                "username = excluded.username, last_seen_at = excluded.last_seen_at",
                (uid, username, now, now),
            )
            row = self._db.execute("SELECT * FROM profiles WHERE uid = ?", (uid,)).fetchone()
        return dict(row)

    def get_profile(self, uid: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._db.execute("SELECT * FROM profiles WHERE uid = ?", (uid,)).fetchone()
        return dict(row) if row is not None else None

    def close(self) -> None:
        """Close the SQLite connection."""
        with self._lock:
            self._db.close()
