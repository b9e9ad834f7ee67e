"""Rollback-scoped execution of a single stage.

Every stage runs inside a :class:`~devmigrate.models.Transaction`. While the
transaction is open, stage work registers backups of whatever it is about to
change. If the work raises, the backups are restored newest first, so later
captures (which may depend on earlier ones) are undone before the state they
depend on.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import shutil
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar, Union

from .config import MigrationConfig
from .errors import (
    MigrationError,
    RollbackFailure,
    StageTimeoutError,
    TransactionConflictError,
)
from .models import BackupEntry, Transaction, TransactionStatus, utcnow
from .persistence import StateStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

CaptureFn = Callable[[Path], Union[Optional[str], Awaitable[Optional[str]]]]
RestoreFn = Callable[[Transaction, BackupEntry], Union[None, Awaitable[None]]]


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class TransactionScope:
    """Handle given to stage work while its transaction is open."""

    def __init__(self, manager: "TransactionManager", transaction: Transaction) -> None:
        self._manager = manager
        self.transaction = transaction

    @property
    def device_id(self) -> str:
        return self.transaction.device_id

    async def backup(self, component: str, capture: CaptureFn) -> BackupEntry:
        """Capture rollback data for ``component`` before it is changed."""
        return await self._manager.backup(self.transaction, component, capture)


class TransactionManager:
    """Opens, commits and rolls back stage transactions for devices."""

    def __init__(
        self,
        store: StateStore,
        config: MigrationConfig,
        restore: RestoreFn,
    ) -> None:
        self._store = store
        self._config = config
        self._restore = restore
        self._open: Dict[str, str] = {}
        self._guard = asyncio.Lock()

    @property
    def backup_root(self) -> Path:
        return self._config.resolved_backup_path

    # ------------------------------------------------------------------
    async def begin(self, device_id: str, name: str) -> Transaction:
        """Open a transaction for ``device_id``.

        Raises:
            TransactionConflictError: The device already has an open
                transaction, in this process or persisted by another one.
        """
        async with self._guard:
            if device_id in self._open:
                raise TransactionConflictError(device_id, self._open[device_id])
            existing = await self._store.find_open_transaction(device_id)
            if existing is not None:
                raise TransactionConflictError(device_id, existing.id)
            tx = Transaction(device_id=device_id, name=name)
            await self._store.save_transaction(tx)
            self._open[device_id] = tx.id
        logger.info("Opened transaction %s (%s) device=%s", tx.id, name, device_id)
        return tx

    async def execute(
        self, tx: Transaction, fn: Callable[[TransactionScope], Awaitable[T]]
    ) -> T:
        """Run ``fn`` inside ``tx``; commit on success, roll back on error.

        The original error is re-raised after a successful rollback. If the
        rollback itself fails, :class:`RollbackFailure` is raised instead, with
        the original error attached.
        """
        if not tx.is_open:
            raise MigrationError(f"Transaction {tx.id} is {tx.status.value}, not open")
        scope = TransactionScope(self, tx)
        try:
            result = await asyncio.wait_for(
                fn(scope), timeout=self._config.stage_timeout_seconds
            )
        except asyncio.TimeoutError as exc:
            timeout = StageTimeoutError(
                f"{tx.name} exceeded {self._config.stage_timeout_seconds}s"
            )
            await self.rollback(tx, original=timeout)
            raise timeout from exc
        except Exception as exc:
            await self.rollback(tx, original=exc)
            raise
        await self.commit(tx)
        return result

    async def run(
        self,
        device_id: str,
        name: str,
        fn: Callable[[TransactionScope], Awaitable[T]],
    ) -> T:
        tx = await self.begin(device_id, name)
        return await self.execute(tx, fn)

    # ------------------------------------------------------------------
    async def backup(
        self, tx: Transaction, component: str, capture: CaptureFn
    ) -> BackupEntry:
        if not tx.is_open:
            raise MigrationError(
                f"Cannot add backup {component}: transaction {tx.id} is {tx.status.value}"
            )
        for entry in tx.backups:
            if entry.component == component:
                logger.debug("Backup %s already captured in %s", component, tx.id)
                return entry

        destination = self.backup_root / tx.device_id / tx.id / component
        destination.mkdir(parents=True, exist_ok=True)
        location = await _maybe_await(capture(destination))
        entry = BackupEntry(component=component, location=str(location or destination))
        tx.backups.append(entry)
        await self._store.save_transaction(tx)
        logger.info(
            "Captured backup %s at %s device=%s", component, entry.location, tx.device_id
        )
        return entry

    async def commit(self, tx: Transaction) -> None:
        tx.status = TransactionStatus.COMMITTED
        tx.closed_at = utcnow()
        await self._store.save_transaction(tx)
        self._release(tx)
        logger.info("Committed transaction %s device=%s", tx.id, tx.device_id)

    async def rollback(
        self, tx: Transaction, original: Optional[BaseException] = None
    ) -> None:
        """Restore every backup of ``tx`` in reverse capture order.

        All backups are attempted even when some fail.
        """
        failures = []
        for entry in reversed(tx.backups):
            try:
                await _maybe_await(self._restore(tx, entry))
                logger.info("Restored %s device=%s", entry.component, tx.device_id)
            except Exception as exc:
                logger.error(
                    "Failed to restore %s from %s device=%s: %s",
                    entry.component,
                    entry.location,
                    tx.device_id,
                    exc,
                )
                failures.append((entry, exc))

        tx.status = TransactionStatus.ROLLED_BACK
        tx.closed_at = utcnow()
        tx.retain_until = self._retention_deadline()
        await self._store.save_transaction(tx)
        self._release(tx)

        if failures:
            raise RollbackFailure(
                "RollbackMechanism failure: escalate to manual recovery",
                failures=failures,
                original=original,
            ) from original
        logger.warning("Rolled back transaction %s device=%s", tx.id, tx.device_id)

    async def complete(self, tx: Transaction, retain_backups: bool = True) -> None:
        """Finalize a committed transaction.

        Retained backups stay on disk until ``rollback_retention_days`` have
        passed, for manual rollback; otherwise they are deleted now.
        """
        if tx.status != TransactionStatus.COMMITTED:
            raise MigrationError(f"Transaction {tx.id} is not committed")
        if retain_backups and self._config.rollback_retention_days > 0:
            tx.retain_until = self._retention_deadline()
            await self._store.save_transaction(tx)
            return
        await self._discard(tx)

    async def recover(self, device_id: str) -> Optional[Transaction]:
        """Roll back a transaction left open by a process that no longer exists."""
        if device_id in self._open:
            return None
        stale = await self._store.find_open_transaction(device_id)
        if stale is None:
            return None
        logger.warning(
            "Found stale open transaction %s (%s) device=%s, rolling back",
            stale.id,
            stale.name,
            device_id,
        )
        await self.rollback(stale)
        return stale

    async def purge_expired(self, now: Optional[datetime] = None) -> list[str]:
        """Delete closed transactions whose retention window has passed."""
        now = now or utcnow()
        purged: list[str] = []
        for tx in await self._store.list_transactions():
            if tx.is_open or tx.retain_until is None or tx.retain_until > now:
                continue
            await self._discard(tx)
            purged.append(tx.id)
        if purged:
            logger.info("Purged %d expired transaction(s)", len(purged))
        return purged

    # ------------------------------------------------------------------
    def _retention_deadline(self) -> datetime:
        return utcnow() + timedelta(days=self._config.rollback_retention_days)

    def _release(self, tx: Transaction) -> None:
        if self._open.get(tx.device_id) == tx.id:
            del self._open[tx.device_id]

    async def _discard(self, tx: Transaction) -> None:
        root = self.backup_root.resolve()
        for entry in tx.backups:
            path = Path(entry.location).resolve()
            if root not in path.parents:
                # Locations outside the backup root belong to the capability
                # implementation.
                continue
            if path.is_dir():
                await asyncio.to_thread(shutil.rmtree, path, True)
            elif path.exists():
                path.unlink()
        tx_dir = root / tx.device_id / tx.id
        if tx_dir.exists():
            await asyncio.to_thread(shutil.rmtree, tx_dir, True)
        await self._store.delete_transaction(tx.id)
