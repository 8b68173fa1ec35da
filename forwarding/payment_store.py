"""Append-only record of confirmed rail payments.

A row is written only after the rail reported the payment as confirmed; rows
are never updated. The table shares the ledger's SQLite file.
"""
from __future__ import annotations

import logging
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

PAYMENT_KINDS = {"owner", "tip", "off_ramp"}


@dataclass(frozen=True)
class PaymentRecord:
    payment_id: str
    store_id: str
    invoice_id: str
    kind: str
    timestamp: Optional[int]
    fee_retained_msat: Optional[int]
    recipient: str
    amount_msat: int
    created_at: str = ""

    def as_dict(self) -> Dict[str, Any]:
        return {
            "payment_id": self.payment_id,
            "store_id": self.store_id,
            "invoice_id": self.invoice_id,
            "kind": self.kind,
            "timestamp": self.timestamp,
            "fee_retained_msat": self.fee_retained_msat,
            "recipient": self.recipient,
            "amount_msat": self.amount_msat,
            "created_at": self.created_at,
        }


class PaymentRecordStore:
    def __init__(self, path: Path, busy_timeout_seconds: float = 5.0) -> None:
        self.path = path
        self.busy_timeout_seconds = busy_timeout_seconds
        self._local = threading.local()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._connection().execute(
            """
            CREATE TABLE IF NOT EXISTS payments (
                payment_id TEXT PRIMARY KEY,
                store_id TEXT NOT NULL,
                invoice_id TEXT NOT NULL,
                kind TEXT NOT NULL,
                timestamp INTEGER,
                fee_retained_msat INTEGER,
                recipient TEXT NOT NULL,
                amount_msat INTEGER NOT NULL,
                created_at TEXT NOT NULL
            )
            """
        )
        self._connection().execute(
            "CREATE INDEX IF NOT EXISTS idx_payments_invoice ON payments(store_id, invoice_id)"
        )

    def _connection(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = sqlite3.connect(
                str(self.path),
                timeout=self.busy_timeout_seconds,
                isolation_level=None,
            )
            conn.row_factory = sqlite3.Row
            self._local.conn = conn
        return conn

    def append(self, record: PaymentRecord) -> PaymentRecord:
        if record.kind not in PAYMENT_KINDS:
            raise ValueError(f"unknown payment kind {record.kind!r}")
        created_at = datetime.now(timezone.utc).isoformat()
        self._connection().execute(
            """
            INSERT INTO payments (
                payment_id, store_id, invoice_id, kind, timestamp,
                fee_retained_msat, recipient, amount_msat, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.payment_id,
                record.store_id,
                record.invoice_id,
                record.kind,
                record.timestamp,
                record.fee_retained_msat,
                record.recipient,
                record.amount_msat,
                created_at,
            ),
        )
        logger.debug(
            "Recorded %s payment %s for %s/%s (%s msat)",
            record.kind,
            record.payment_id,
            record.store_id,
            record.invoice_id,
            record.amount_msat,
        )
        return PaymentRecord(**{**record.as_dict(), "created_at": created_at})

    def list(self, store_id: Optional[str] = None, invoice_id: Optional[str] = None) -> List[PaymentRecord]:
        query = "SELECT * FROM payments"
        clauses: List[str] = []
        params: List[str] = []
        if store_id is not None:
            clauses.append("store_id = ?")
            params.append(store_id)
        if invoice_id is not None:
            clauses.append("invoice_id = ?")
            params.append(invoice_id)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at, rowid"
        rows = self._connection().execute(query, params).fetchall()
        return [
            PaymentRecord(
                payment_id=row["payment_id"],
                store_id=row["store_id"],
                invoice_id=row["invoice_id"],
                kind=row["kind"],
                timestamp=row["timestamp"],
                fee_retained_msat=row["fee_retained_msat"],
                recipient=row["recipient"],
                amount_msat=row["amount_msat"],
                created_at=row["created_at"],
            )
            for row in rows
        ]

    def close(self) -> None:
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            conn.close()
            self._local.conn = None
