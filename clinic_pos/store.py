"""
Charge ledger — SQLite persistent storage
==========================================
Keeps every PaymentIntent the relay created together with its last observed
status, so a charge whose polling loop was interrupted (restart, crash) can
still be found, looked up and refunded.

Stripe stays the source of truth; rows here are only a local index.
"""
from __future__ import annotations

import logging
import sqlite3
import threading
import time
from typing import Any, Dict, List, Optional

logger = logging.getLogger("clinic_pos.store")


class ChargeStore:
    """SQLite-backed ledger with one connection per thread."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._local = threading.local()
        self.init_db()
        logger.info(f"[STORE] Charge ledger at {db_path}")

    def _get_conn(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = sqlite3.connect(self.db_path, timeout=5)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            self._local.conn = conn
        return conn

    def init_db(self):
        conn = self._get_conn()
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS charges (
                payment_intent_id TEXT PRIMARY KEY,
                amount INTEGER NOT NULL,
                description TEXT,
                patient_name TEXT,
                reader_id TEXT,
                status TEXT NOT NULL,
                outcome TEXT,
                refund_id TEXT,
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_charges_created ON charges(created_at);
        """)
        conn.commit()

    def close(self):
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            conn.close()
            self._local.conn = None

    def record_created(self, payment_intent_id: str, amount: int, status: str,
                       description: str = "", patient_name: str = "", reader_id: str = ""):
        now = time.time()
        conn = self._get_conn()
        conn.execute("""
            INSERT INTO charges (payment_intent_id, amount, description, patient_name,
                                 reader_id, status, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(payment_intent_id) DO UPDATE SET status = excluded.status,
                                                         updated_at = excluded.updated_at
        """, (payment_intent_id, amount, description, patient_name, reader_id, status, now, now))
        conn.commit()

    def update_status(self, payment_intent_id: str, status: str, outcome: Optional[str] = None):
        conn = self._get_conn()
        if outcome is None:
            conn.execute(
                "UPDATE charges SET status = ?, updated_at = ? WHERE payment_intent_id = ?",
                (status, time.time(), payment_intent_id),
            )
        else:
            conn.execute(
                "UPDATE charges SET status = ?, outcome = ?, updated_at = ? WHERE payment_intent_id = ?",
                (status, outcome, time.time(), payment_intent_id),
            )
        conn.commit()

    def record_refund(self, payment_intent_id: str, refund_id: str):
        conn = self._get_conn()
        conn.execute(
            "UPDATE charges SET refund_id = ?, updated_at = ? WHERE payment_intent_id = ?",
            (refund_id, time.time(), payment_intent_id),
        )
        conn.commit()

    def get(self, payment_intent_id: str) -> Optional[Dict[str, Any]]:
        row = self._get_conn().execute(
            "SELECT * FROM charges WHERE payment_intent_id = ?", (payment_intent_id,)
        ).fetchone()
        return dict(row) if row else None

    def recent(self, limit: int = 50) -> List[Dict[str, Any]]:
        rows = self._get_conn().execute(
            "SELECT * FROM charges ORDER BY created_at DESC LIMIT ?", (limit,)
        ).fetchall()
        return [dict(r) for r in rows]

    def pending(self) -> List[Dict[str, Any]]:
        """Charges whose polling never reached an outcome."""
        rows = self._get_conn().execute(
            "SELECT * FROM charges WHERE outcome IS NULL ORDER BY created_at"
        ).fetchall()
        return [dict(r) for r in rows]
