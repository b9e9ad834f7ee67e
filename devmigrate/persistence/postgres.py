"""PostgreSQL implementation of the state store."""

from __future__ import annotations

import json

import asyncpg

from ..models import MigrationRecord, Transaction, TransactionStatus, utcnow
from .repository import StateStore


class PostgresStateStore(StateStore):
    """Persist migration state using PostgreSQL.

    Intended for a control host that drives many devices at once: every
    worker, and every device resuming after a reboot, sees the same records.
    """

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS migration_records (
                device_id TEXT PRIMARY KEY,
                stage TEXT NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL,
                document JSONB NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS archived_records (
                id SERIAL PRIMARY KEY,
                device_id TEXT NOT NULL,
                archived_at TIMESTAMPTZ NOT NULL,
                document JSONB NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS transactions (
                id TEXT PRIMARY KEY,
                device_id TEXT NOT NULL,
                status TEXT NOT NULL,
                opened_at TIMESTAMPTZ NOT NULL,
                document JSONB NOT NULL
            )
            """
        )

    @staticmethod
    def _document(value) -> str:
        # asyncpg returns JSONB columns as text unless a codec is registered.
        return value if isinstance(value, str) else json.dumps(value)

    # ------------------------------------------------------------------
    async def get_record(self, device_id: str) -> MigrationRecord | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT document FROM migration_records WHERE device_id = $1",
                device_id,
            )
        finally:
            await conn.close()
        if not row:
            return None
        return MigrationRecord.model_validate_json(self._document(row["document"]))

    async def save_record(self, record: MigrationRecord) -> None:
        record.updated_at = utcnow()
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO migration_records (device_id, stage, updated_at, document)
                VALUES ($1, $2, $3, $4::jsonb)
                ON CONFLICT (device_id) DO UPDATE SET
                    stage = EXCLUDED.stage,
                    updated_at = EXCLUDED.updated_at,
                    document = EXCLUDED.document
                """,
                record.device_id,
                record.stage.value,
                record.updated_at,
                record.model_dump_json(),
            )
        finally:
            await conn.close()

    async def list_records(self) -> list[MigrationRecord]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT document FROM migration_records ORDER BY device_id"
            )
        finally:
            await conn.close()
        return [
            MigrationRecord.model_validate_json(self._document(r["document"]))
            for r in rows
        ]

    async def delete_record(self, device_id: str) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "DELETE FROM migration_records WHERE device_id = $1", device_id
            )
        finally:
            await conn.close()

    async def archive_record(self, device_id: str) -> MigrationRecord | None:
        conn = await self._connect()
        try:
            async with conn.transaction():
                row = await conn.fetchrow(
                    "DELETE FROM migration_records WHERE device_id = $1 RETURNING document",
                    device_id,
                )
                if not row:
                    return None
                await conn.execute(
                    "INSERT INTO archived_records (device_id, archived_at, document) VALUES ($1, $2, $3::jsonb)",
                    device_id,
                    utcnow(),
                    self._document(row["document"]),
                )
        finally:
            await conn.close()
        return MigrationRecord.model_validate_json(self._document(row["document"]))

    async def list_archived(self, device_id: str | None = None) -> list[MigrationRecord]:
        conn = await self._connect()
        try:
            if device_id is None:
                rows = await conn.fetch("SELECT document FROM archived_records ORDER BY id")
            else:
                rows = await conn.fetch(
                    "SELECT document FROM archived_records WHERE device_id = $1 ORDER BY id",
                    device_id,
                )
        finally:
            await conn.close()
        return [
            MigrationRecord.model_validate_json(self._document(r["document"]))
            for r in rows
        ]

    # ------------------------------------------------------------------
    async def save_transaction(self, tx: Transaction) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO transactions (id, device_id, status, opened_at, document)
                VALUES ($1, $2, $3, $4, $5::jsonb)
                ON CONFLICT (id) DO UPDATE SET
                    status = EXCLUDED.status,
                    document = EXCLUDED.document
                """,
                tx.id,
                tx.device_id,
                tx.status.value,
                tx.opened_at,
                tx.model_dump_json(),
            )
        finally:
            await conn.close()

    async def get_transaction(self, transaction_id: str) -> Transaction | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT document FROM transactions WHERE id = $1", transaction_id
            )
        finally:
            await conn.close()
        if not row:
            return None
        return Transaction.model_validate_json(self._document(row["document"]))

    async def find_open_transaction(self, device_id: str) -> Transaction | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT document FROM transactions WHERE device_id = $1 AND status = $2 ORDER BY opened_at LIMIT 1",
                device_id,
                TransactionStatus.OPEN.value,
            )
        finally:
            await conn.close()
        if not row:
            return None
        return Transaction.model_validate_json(self._document(row["document"]))

    async def list_transactions(self, device_id: str | None = None) -> list[Transaction]:
        conn = await self._connect()
        try:
            if device_id is None:
                rows = await conn.fetch("SELECT document FROM transactions ORDER BY opened_at")
            else:
                rows = await conn.fetch(
                    "SELECT document FROM transactions WHERE device_id = $1 ORDER BY opened_at",
                    device_id,
                )
        finally:
            await conn.close()
        return [
            Transaction.model_validate_json(self._document(r["document"])) for r in rows
        ]

    async def delete_transaction(self, transaction_id: str) -> None:
        conn = await self._connect()
        try:
            await conn.execute("DELETE FROM transactions WHERE id = $1", transaction_id)
        finally:
            await conn.close()
