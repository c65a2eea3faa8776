"""
Idempotency guard — one settlement per payment reference.

A SQLite table keyed by payment reference (the inbound transaction
signature). The pipeline claims a reference before verifying it and
resolves the claim when the request ends.

Status transitions:
    (none)   → CLAIMED   (claim)
    RELEASED → CLAIMED   (claim again; the previous attempt moved nothing)
    CLAIMED  → SETTLED   (complete; receipt stored)
    CLAIMED  → RELEASED  (release; nothing left the treasury)
    CLAIMED  → UNCERTAIN (mark_uncertain; outbound fate unknown)
    SETTLED  → (terminal)
    UNCERTAIN → (terminal until reconciled by an operator)

Invariants:
    - A reference has at most one row.
    - Only a RELEASED row can be claimed again.
    - SETTLED rows always carry the receipt JSON.
    - All timestamps are RFC3339 UTC.

Follows the same SQLite patterns as the rest of the package:
    - _get_conn() with persistent connection for :memory:
    - _transaction() context manager with commit/rollback
    - _init_schema() via executescript
    - sqlite3.Row row factory
    - WAL mode for file-backed databases
"""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import StrEnum
from pathlib import Path

from treasury_bridge.canonical_json import canonical_json
from treasury_bridge.models import AssetKind, SettlementReceipt

_SCHEMA = """\
CREATE TABLE IF NOT EXISTS settlements (
    reference TEXT PRIMARY KEY,
    kind TEXT NOT NULL,
    status TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    outbound_tx_id TEXT,
    last_error_code TEXT,
    receipt_json TEXT
);

CREATE INDEX IF NOT EXISTS idx_settlements_status
ON settlements(status);
"""


def _now_utc() -> str:
    """RFC3339 UTC timestamp."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S+00:00")


class SettlementStatus(StrEnum):
    CLAIMED = "CLAIMED"
    SETTLED = "SETTLED"
    RELEASED = "RELEASED"
    UNCERTAIN = "UNCERTAIN"


class ClaimOutcome(StrEnum):
    """Result of trying to claim a reference."""

    CLAIMED = "CLAIMED"
    ALREADY_SETTLED = "ALREADY_SETTLED"
    IN_PROGRESS = "IN_PROGRESS"
    UNCERTAIN = "UNCERTAIN"


@dataclass(frozen=True)
class SettlementRecord:
    """One row of the settlement table."""

    reference: str
    kind: str
    status: SettlementStatus
    created_at: str
    updated_at: str
    outbound_tx_id: str | None = None
    last_error_code: str | None = None
    receipt: SettlementReceipt | None = None


@dataclass(frozen=True)
class ClaimResult:
    """Outcome of ``claim``.

    Attributes:
        outcome: Whether the caller now owns the reference.
        record: The existing row when the claim was refused.
    """

    outcome: ClaimOutcome
    record: SettlementRecord | None = None

    @property
    def claimed(self) -> bool:
        return self.outcome == ClaimOutcome.CLAIMED


_REFUSED: dict[SettlementStatus, ClaimOutcome] = {
    SettlementStatus.SETTLED: ClaimOutcome.ALREADY_SETTLED,
    SettlementStatus.CLAIMED: ClaimOutcome.IN_PROGRESS,
    SettlementStatus.UNCERTAIN: ClaimOutcome.UNCERTAIN,
}


class SettlementStore:
    """SQLite-backed idempotency guard.

    Thread-safe via SQLite's built-in locking.

    Args:
        db_path: Path to SQLite database file, or ":memory:" for in-memory.
    """

    def __init__(self, db_path: str | Path = ":memory:") -> None:
        self._db_path = str(db_path)
        self._is_memory = self._db_path == ":memory:"

        if self._is_memory:
            self._persistent_conn = sqlite3.connect(":memory:", check_same_thread=False)
            self._persistent_conn.row_factory = sqlite3.Row
        else:
            self._persistent_conn = None

        self._init_schema()

    def _get_conn(self) -> sqlite3.Connection:
        """Get a database connection with proper settings."""
        if self._persistent_conn is not None:
            return self._persistent_conn

        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode = WAL")
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Context manager for a database transaction."""
        conn = self._get_conn()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            if self._persistent_conn is None:
                conn.close()

    def _init_schema(self) -> None:
        """Create tables if they don't exist."""
        with self._transaction() as conn:
            conn.executescript(_SCHEMA)

    # -----------------------------------------------------------------
    # Claim lifecycle
    # -----------------------------------------------------------------

    def claim(
        self,
        reference: str,
        kind: AssetKind | str,
        *,
        created_at: str | None = None,
    ) -> ClaimResult:
        """Atomically take ownership of ``reference``.

        Returns:
            CLAIMED if the caller now owns the reference, otherwise the
            refusal reason together with the existing row.
        """
        now = created_at or _now_utc()
        with self._transaction() as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO settlements
                    (reference, kind, status, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (reference, str(kind), SettlementStatus.CLAIMED.value, now, now),
                )
                return ClaimResult(ClaimOutcome.CLAIMED)
            except sqlite3.IntegrityError:
                pass

            cursor = conn.execute(
                """
                UPDATE settlements
                SET status = ?, kind = ?, updated_at = ?, last_error_code = NULL
                WHERE reference = ? AND status = ?
                """,
                (
                    SettlementStatus.CLAIMED.value,
                    str(kind),
                    now,
                    reference,
                    SettlementStatus.RELEASED.value,
                ),
            )
            if cursor.rowcount == 1:
                return ClaimResult(ClaimOutcome.CLAIMED)

            row = conn.execute(
                "SELECT * FROM settlements WHERE reference = ?", (reference,)
            ).fetchone()

        record = _row_to_record(row)
        return ClaimResult(_REFUSED[record.status], record)

    def complete(
        self,
        reference: str,
        receipt: SettlementReceipt,
        *,
        updated_at: str | None = None,
    ) -> bool:
        """Mark a claimed reference SETTLED and store its receipt.

        Returns:
            True if the row was CLAIMED and is now SETTLED.
        """
        return self._transition(
            reference,
            SettlementStatus.SETTLED,
            updated_at=updated_at,
            outbound_tx_id=receipt.outbound_tx_id,
            receipt_json=canonical_json(receipt.to_dict()),
        )

    def release(
        self,
        reference: str,
        error_code: str,
        *,
        updated_at: str | None = None,
    ) -> bool:
        """Give up a claim after a failure that moved no tokens."""
        return self._transition(
            reference,
            SettlementStatus.RELEASED,
            updated_at=updated_at,
            last_error_code=error_code,
        )

    def mark_uncertain(
        self,
        reference: str,
        error_code: str,
        *,
        outbound_tx_id: str | None = None,
        updated_at: str | None = None,
    ) -> bool:
        """Park a claim whose outbound transfer may or may not have landed."""
        return self._transition(
            reference,
            SettlementStatus.UNCERTAIN,
            updated_at=updated_at,
            outbound_tx_id=outbound_tx_id,
            last_error_code=error_code,
        )

    def _transition(
        self,
        reference: str,
        status: SettlementStatus,
        *,
        updated_at: str | None,
        outbound_tx_id: str | None = None,
        last_error_code: str | None = None,
        receipt_json: str | None = None,
    ) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE settlements
                SET status = ?, updated_at = ?,
                    outbound_tx_id = COALESCE(?, outbound_tx_id),
                    last_error_code = ?,
                    receipt_json = COALESCE(?, receipt_json)
                WHERE reference = ? AND status = ?
                """,
                (
                    status.value,
                    updated_at or _now_utc(),
                    outbound_tx_id,
                    last_error_code,
                    receipt_json,
                    reference,
                    SettlementStatus.CLAIMED.value,
                ),
            )
            return cursor.rowcount == 1

    # -----------------------------------------------------------------
    # Queries
    # -----------------------------------------------------------------

    def get(self, reference: str) -> SettlementRecord | None:
        """Current row for ``reference``, or None if never claimed."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM settlements WHERE reference = ?", (reference,)
            ).fetchone()
        if row is None:
            return None
        return _row_to_record(row)

    def list_by_status(self, status: SettlementStatus) -> list[SettlementRecord]:
        """Rows in ``status``, oldest first. Used for reconciliation."""
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT * FROM settlements
                WHERE status = ?
                ORDER BY created_at, reference
                """,
                (status.value,),
            ).fetchall()
        return [_row_to_record(row) for row in rows]


def _row_to_record(row: sqlite3.Row) -> SettlementRecord:
    receipt_json = row["receipt_json"]
    return SettlementRecord(
        reference=row["reference"],
        kind=row["kind"],
        status=SettlementStatus(row["status"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        outbound_tx_id=row["outbound_tx_id"],
        last_error_code=row["last_error_code"],
        receipt=SettlementReceipt.from_dict(json.loads(receipt_json)) if receipt_json else None,
    )
