"""SQLite-backed idempotency ledger for settled invoices.

Each (store_id, invoice_id) pair owns one row. The row's primary key is what
serializes concurrent deliveries: a claim only succeeds when a statement
actually inserted or flipped the row, never on the strength of an earlier read.
"""
from __future__ import annotations

import enum
import logging
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

logger = logging.getLogger(__name__)


class LedgerError(RuntimeError):
    pass


class ClaimResult(str, enum.Enum):
    CLAIMED = "claimed"
    ALREADY_PROCESSING = "already_processing"
    ALREADY_PROCESSED = "already_processed"


@dataclass(frozen=True)
class LedgerEntry:
    store_id: str
    invoice_id: str
    is_processing: bool
    is_processed: bool
    created_at: str
    updated_at: str

    def as_dict(self) -> dict:
        return {
            "store_id": self.store_id,
            "invoice_id": self.invoice_id,
            "is_processing": self.is_processing,
            "is_processed": self.is_processed,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class InvoiceLedger:
    def __init__(self, path: Path, busy_timeout_seconds: float = 5.0) -> None:
        self.path = path
        self.busy_timeout_seconds = busy_timeout_seconds
        self._local = threading.local()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._initialize()

    def _connection(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            # Autocommit: each statement below is its own transaction.
            conn = sqlite3.connect(
                str(self.path),
                timeout=self.busy_timeout_seconds,
                isolation_level=None,
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            self._local.conn = conn
        return conn

    def _initialize(self) -> None:
        conn = self._connection()
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS invoices (
                store_id TEXT NOT NULL,
                invoice_id TEXT NOT NULL,
                is_processing INTEGER NOT NULL DEFAULT 0,
                is_processed INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (store_id, invoice_id)
            )
            """
        )

    def _row_to_entry(self, row: sqlite3.Row) -> LedgerEntry:
        return LedgerEntry(
            store_id=row["store_id"],
            invoice_id=row["invoice_id"],
            is_processing=bool(row["is_processing"]),
            is_processed=bool(row["is_processed"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def try_claim(self, store_id: str, invoice_id: str) -> ClaimResult:
        now = utcnow_iso()
        try:
            conn = self._connection()
            inserted = conn.execute(
                """
                INSERT INTO invoices (store_id, invoice_id, is_processing, is_processed, created_at, updated_at)
                VALUES (?, ?, 1, 0, ?, ?)
                ON CONFLICT (store_id, invoice_id) DO NOTHING
                """,
                (store_id, invoice_id, now, now),
            )
            if inserted.rowcount == 1:
                return ClaimResult.CLAIMED

            # A released row (neither processing nor processed) can be claimed again.
            reclaimed = conn.execute(
                """
                UPDATE invoices SET is_processing = 1, updated_at = ?
                WHERE store_id = ? AND invoice_id = ? AND is_processing = 0 AND is_processed = 0
                """,
                (now, store_id, invoice_id),
            )
            if reclaimed.rowcount == 1:
                return ClaimResult.CLAIMED

            row = conn.execute(
                "SELECT is_processed FROM invoices WHERE store_id = ? AND invoice_id = ?",
                (store_id, invoice_id),
            ).fetchone()
        except sqlite3.Error as exc:
            raise LedgerError(f"ledger claim failed for {store_id}/{invoice_id}: {exc}") from exc

        if row is not None and row["is_processed"]:
            return ClaimResult.ALREADY_PROCESSED
        return ClaimResult.ALREADY_PROCESSING

    def mark_processed(self, store_id: str, invoice_id: str) -> None:
        try:
            cursor = self._connection().execute(
                """
                UPDATE invoices SET is_processing = 0, is_processed = 1, updated_at = ?
                WHERE store_id = ? AND invoice_id = ?
                """,
                (utcnow_iso(), store_id, invoice_id),
            )
        except sqlite3.Error as exc:
            raise LedgerError(f"failed to mark {store_id}/{invoice_id} processed: {exc}") from exc
        if cursor.rowcount != 1:
            raise LedgerError(f"no ledger entry for {store_id}/{invoice_id}")

    def release(self, store_id: str, invoice_id: str) -> bool:
        """Drop an in-flight claim without marking the invoice processed.

        Processed entries are never touched. Returns True when a claim was released.
        """
        try:
            cursor = self._connection().execute(
                """
                UPDATE invoices SET is_processing = 0, updated_at = ?
                WHERE store_id = ? AND invoice_id = ? AND is_processing = 1 AND is_processed = 0
                """,
                (utcnow_iso(), store_id, invoice_id),
            )
        except sqlite3.Error as exc:
            raise LedgerError(f"failed to release {store_id}/{invoice_id}: {exc}") from exc
        released = cursor.rowcount == 1
        if released:
            logger.info("Released ledger claim for %s/%s", store_id, invoice_id)
        return released

    def get(self, store_id: str, invoice_id: str) -> Optional[LedgerEntry]:
        try:
            row = self._connection().execute(
                "SELECT * FROM invoices WHERE store_id = ? AND invoice_id = ?",
                (store_id, invoice_id),
            ).fetchone()
        except sqlite3.Error as exc:
            raise LedgerError(f"failed to read {store_id}/{invoice_id}: {exc}") from exc
        return self._row_to_entry(row) if row is not None else None

    def list_stuck(self) -> List[LedgerEntry]:
        try:
            rows = self._connection().execute(
                "SELECT * FROM invoices WHERE is_processing = 1 AND is_processed = 0 ORDER BY updated_at"
            ).fetchall()
        except sqlite3.Error as exc:
            raise LedgerError(f"failed to list stuck invoices: {exc}") from exc
        return [self._row_to_entry(row) for row in rows]

    def close(self) -> None:
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            conn.close()
            self._local.conn = None
