"""SQLite implementation of the state store."""

from __future__ import annotations

import asyncio
import sqlite3
import threading
from pathlib import Path
from typing import Any

from ..models import MigrationRecord, Transaction, TransactionStatus, utcnow
from .repository import StateStore


class SQLiteStateStore(StateStore):
    """Persist migration state using SQLite.

    This is the default store for a single device: the database file lives on
    the local disk and survives reboots. Each record is stored as a JSON
    document keyed by device id.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).expanduser().parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute("PRAGMA synchronous=FULL")
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS migration_records (
                    device_id TEXT PRIMARY KEY,
                    stage TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    document TEXT NOT NULL
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS archived_records (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    device_id TEXT NOT NULL,
                    archived_at TEXT NOT NULL,
                    document TEXT NOT NULL
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS transactions (
                    id TEXT PRIMARY KEY,
                    device_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    opened_at TEXT NOT NULL,
                    document TEXT NOT NULL
                )
                """
            )
            self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()

    def _execute_many(self, statements: list[tuple[str, tuple]]) -> None:
        with self._lock:
            cur = self._conn.cursor()
            try:
                for query, params in statements:
                    cur.execute(query, params)
            except sqlite3.Error:
                self._conn.rollback()
                raise
            self._conn.commit()

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # ------------------------------------------------------------------
    # Records
    async def get_record(self, device_id: str) -> MigrationRecord | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT document FROM migration_records WHERE device_id = ?",
            device_id,
        )
        if not row:
            return None
        return MigrationRecord.model_validate_json(row["document"])

    async def save_record(self, record: MigrationRecord) -> None:
        record.updated_at = utcnow()
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO migration_records (device_id, stage, updated_at, document)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(device_id) DO UPDATE SET
                stage = excluded.stage,
                updated_at = excluded.updated_at,
                document = excluded.document
            """,
            record.device_id,
            record.stage.value,
            record.updated_at.isoformat(),
            record.model_dump_json(),
        )

    async def list_records(self) -> list[MigrationRecord]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT document FROM migration_records ORDER BY device_id",
        )
        return [MigrationRecord.model_validate_json(r["document"]) for r in rows]

    async def delete_record(self, device_id: str) -> None:
        await asyncio.to_thread(
            self._execute,
            "DELETE FROM migration_records WHERE device_id = ?",
            device_id,
        )

    async def archive_record(self, device_id: str) -> MigrationRecord | None:
        record = await self.get_record(device_id)
        if record is None:
            return None
        await asyncio.to_thread(
            self._execute_many,
            [
                (
                    "INSERT INTO archived_records (device_id, archived_at, document) VALUES (?, ?, ?)",
                    (device_id, utcnow().isoformat(), record.model_dump_json()),
                ),
                ("DELETE FROM migration_records WHERE device_id = ?", (device_id,)),
            ],
        )
        return record

    async def list_archived(self, device_id: str | None = None) -> list[MigrationRecord]:
        if device_id is None:
            rows = await asyncio.to_thread(
                self._fetchall, "SELECT document FROM archived_records ORDER BY id"
            )
        else:
            rows = await asyncio.to_thread(
                self._fetchall,
                "SELECT document FROM archived_records WHERE device_id = ? ORDER BY id",
                device_id,
            )
        return [MigrationRecord.model_validate_json(r["document"]) for r in rows]

    # ------------------------------------------------------------------
    # Transactions
    async def save_transaction(self, tx: Transaction) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO transactions (id, device_id, status, opened_at, document)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                status = excluded.status,
                document = excluded.document
            """,
            tx.id,
            tx.device_id,
            tx.status.value,
            tx.opened_at.isoformat(),
            tx.model_dump_json(),
        )

    async def get_transaction(self, transaction_id: str) -> Transaction | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT document FROM transactions WHERE id = ?",
            transaction_id,
        )
        return Transaction.model_validate_json(row["document"]) if row else None

    async def find_open_transaction(self, device_id: str) -> Transaction | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT document FROM transactions WHERE device_id = ? AND status = ? ORDER BY opened_at LIMIT 1",
            device_id,
            TransactionStatus.OPEN.value,
        )
        return Transaction.model_validate_json(row["document"]) if row else None

    async def list_transactions(self, device_id: str | None = None) -> list[Transaction]:
        if device_id is None:
            rows = await asyncio.to_thread(
                self._fetchall, "SELECT document FROM transactions ORDER BY opened_at"
            )
        else:
            rows = await asyncio.to_thread(
                self._fetchall,
                "SELECT document FROM transactions WHERE device_id = ? ORDER BY opened_at",
                device_id,
            )
        return [Transaction.model_validate_json(r["document"]) for r in rows]

    async def delete_transaction(self, transaction_id: str) -> None:
        await asyncio.to_thread(
            self._execute, "DELETE FROM transactions WHERE id = ?", transaction_id
        )
