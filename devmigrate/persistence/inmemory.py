"""In-memory implementation of the state store."""

from __future__ import annotations

from typing import Dict, List

from ..models import MigrationRecord, Transaction, TransactionStatus, utcnow
from .repository import StateStore


class InMemoryStateStore(StateStore):
    """Store migration state in local memory.

    Useful for tests or dry runs. Data is not persisted across process
    restarts. Records are copied on the way in and out so callers never share
    a mutable instance with the store.
    """

    def __init__(self) -> None:
        self._records: Dict[str, MigrationRecord] = {}
        self._archive: List[MigrationRecord] = []
        self._transactions: Dict[str, Transaction] = {}

    # ------------------------------------------------------------------
    async def get_record(self, device_id: str) -> MigrationRecord | None:
        record = self._records.get(device_id)
        return record.model_copy(deep=True) if record else None

    async def save_record(self, record: MigrationRecord) -> None:
        record.updated_at = utcnow()
        self._records[record.device_id] = record.model_copy(deep=True)

    async def list_records(self) -> list[MigrationRecord]:
        return [r.model_copy(deep=True) for r in self._records.values()]

    async def delete_record(self, device_id: str) -> None:
        self._records.pop(device_id, None)

    async def archive_record(self, device_id: str) -> MigrationRecord | None:
        record = self._records.pop(device_id, None)
        if record is None:
            return None
        self._archive.append(record)
        return record.model_copy(deep=True)

    async def list_archived(self, device_id: str | None = None) -> list[MigrationRecord]:
        return [
            r.model_copy(deep=True)
            for r in self._archive
            if device_id is None or r.device_id == device_id
        ]

    # ------------------------------------------------------------------
    async def save_transaction(self, tx: Transaction) -> None:
        self._transactions[tx.id] = tx.model_copy(deep=True)

    async def get_transaction(self, transaction_id: str) -> Transaction | None:
        tx = self._transactions.get(transaction_id)
        return tx.model_copy(deep=True) if tx else None

    async def find_open_transaction(self, device_id: str) -> Transaction | None:
        for tx in self._transactions.values():
            if tx.device_id == device_id and tx.status == TransactionStatus.OPEN:
                return tx.model_copy(deep=True)
        return None

    async def list_transactions(self, device_id: str | None = None) -> list[Transaction]:
        txs = [
            tx.model_copy(deep=True)
            for tx in self._transactions.values()
            if device_id is None or tx.device_id == device_id
        ]
        return sorted(txs, key=lambda t: t.opened_at)

    async def delete_transaction(self, transaction_id: str) -> None:
        self._transactions.pop(transaction_id, None)
