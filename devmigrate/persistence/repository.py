"""State store abstraction for migration records and transactions."""

from __future__ import annotations

from typing import Protocol

from ..models import MigrationRecord, Transaction


class StateStore(Protocol):
    """Protocol for durable migration state backends.

    Implementations must have committed a write by the time the coroutine
    returns; the controller relies on this before a reboot is requested.
    """

    async def get_record(self, device_id: str) -> MigrationRecord | None:
        """Return the live record for ``device_id`` if one exists."""

    async def save_record(self, record: MigrationRecord) -> None:
        """Insert or replace the record for ``record.device_id``."""

    async def list_records(self) -> list[MigrationRecord]:
        """Return all live records."""

    async def delete_record(self, device_id: str) -> None:
        """Remove the live record without archiving it."""

    async def archive_record(self, device_id: str) -> MigrationRecord | None:
        """Move the live record into the archive and return it."""

    async def list_archived(self, device_id: str | None = None) -> list[MigrationRecord]:
        """Return archived records, optionally for one device."""

    async def save_transaction(self, tx: Transaction) -> None:
        """Insert or replace a transaction."""

    async def get_transaction(self, transaction_id: str) -> Transaction | None:
        """Return a transaction by id."""

    async def find_open_transaction(self, device_id: str) -> Transaction | None:
        """Return the open transaction for the device, if any."""

    async def list_transactions(self, device_id: str | None = None) -> list[Transaction]:
        """Return transactions, optionally filtered by device, oldest first."""

    async def delete_transaction(self, transaction_id: str) -> None:
        """Remove a transaction record."""
