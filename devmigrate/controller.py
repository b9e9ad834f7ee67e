"""Reboot-persistent migration state machine.

A device moves through ``STAGE_ORDER`` one stage per :meth:`StageController.resume`
call. Each call reads the record from the state store, performs the work that
reaches the next stage inside a transaction, persists the new stage and, when
the next step must happen in a fresh boot session, arms a continuation before
returning. The process may then exit; the next boot re-invokes ``resume``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional, Set

from .capabilities import MigrationCapabilities, MigrationContext
from .config import MigrationConfig
from .continuation import Continuation
from .errors import (
    MigrationError,
    RollbackFailure,
    TransactionConflictError,
    VerificationFailure,
    classify,
)
from .models import (
    BackupEntry,
    ErrorInfo,
    MigrationRecord,
    ResumeResult,
    Stage,
    StageTransition,
    Transaction,
)
from .persistence import StateStore
from .stages import StageWork, build_stages
from .transaction import TransactionManager
from .utils.retry import schedule_retry
from .verification import Check, VerificationEngine, build_default_checks

logger = logging.getLogger(__name__)

ChecksFactory = Callable[[MigrationCapabilities, MigrationContext], List[Check]]


class StageController:
    """Drives a single device through the migration stages."""

    def __init__(
        self,
        store: StateStore,
        capabilities: MigrationCapabilities,
        continuation: Continuation,
        config: MigrationConfig,
        *,
        transactions: Optional[TransactionManager] = None,
        verifier: Optional[VerificationEngine] = None,
        checks_factory: ChecksFactory = build_default_checks,
        skip_verification: bool = False,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._caps = capabilities
        self._continuation = continuation
        self._config = config
        self._transactions = transactions or TransactionManager(
            store, config, restore=self._restore_backup
        )
        self._verifier = verifier or VerificationEngine(config.verification, sleep=sleep)
        self._checks_factory = checks_factory
        self._skip_verification = skip_verification
        self._sleep = sleep
        self._stages: Dict[Stage, StageWork] = build_stages(capabilities)
        self._locks: Dict[str, asyncio.Lock] = {}
        self._cancelled: Set[str] = set()

    @property
    def transactions(self) -> TransactionManager:
        return self._transactions

    def context(self, device_id: str) -> MigrationContext:
        return MigrationContext(device_id=device_id, config=self._config)

    # ------------------------------------------------------------------
    async def cancel(self, device_id: str) -> None:
        """Stop the device after the stage currently in flight, if any."""
        self._cancelled.add(device_id)
        async with self._lock_for(device_id):
            record = await self._store.get_record(device_id)
            if record is not None and not record.stage.is_terminal:
                record.cancel_requested = True
                await self._save(record)
        logger.info("Cancellation requested device=%s", device_id)

    def is_cancelled(self, device_id: str) -> bool:
        return device_id in self._cancelled

    async def resume(self, device_id: str) -> ResumeResult:
        """Advance ``device_id`` by one stage.

        Stage executions for one device never overlap; concurrent calls for the
        same device queue behind each other.
        """
        async with self._lock_for(device_id):
            return await self._resume_locked(device_id)

    # ------------------------------------------------------------------
    async def _resume_locked(self, device_id: str) -> ResumeResult:
        record = await self._store.get_record(device_id)
        if record is None:
            record = MigrationRecord(
                device_id=device_id,
                history=[StageTransition(stage=Stage.PREPARATION)],
            )
            await self._save(record)
            logger.info("Initialized migration record device=%s", device_id)

        if record.stage.is_terminal:
            return ResumeResult(
                device_id=device_id, stage=record.stage, error=record.last_error
            )
        if device_id in self._cancelled or record.cancel_requested:
            logger.info("Not resuming cancelled device=%s at %s", device_id, record.stage.value)
            return ResumeResult(
                device_id=device_id,
                stage=record.stage,
                error=record.last_error,
                cancelled=True,
            )

        consumed = await self._continuation.consume(device_id)
        if consumed is not None:
            logger.info("Resuming after boot at %s device=%s", consumed.value, device_id)

        try:
            stale = await self._transactions.recover(device_id)
        except RollbackFailure as exc:
            record.transaction_id = None
            return await self._fail(record, exc, Stage.FAILED, record.stage)
        if stale is not None:
            record.transaction_id = None
            await self._save(record)

        if record.stage in (Stage.FINALIZE, Stage.VERIFICATION):
            return await self._verify(record)

        target = record.stage.next()
        work = self._stages[target]

        if record.stage == Stage.PREPARATION:
            failed = await self._check_environment(record, target)
            if failed is not None:
                return failed

        return await self._run_stage(record, work)

    async def _check_environment(
        self, record: MigrationRecord, target: Stage
    ) -> Optional[ResumeResult]:
        """Run the pre-transaction environment check.

        Nothing has been mutated yet, so a failure ends the record in
        ``Failed`` without a rollback. Transient errors are retried within
        the same budget as stage work.
        """
        device_id = record.device_id
        attempt = 0
        while True:
            attempt += 1
            try:
                await self._caps.check_environment(self.context(device_id))
                return None
            except Exception as exc:
                error = classify(exc)
                if error.retryable and attempt <= self._config.transient_retries:
                    logger.warning(
                        "Transient failure in environment check device=%s, retrying: %s",
                        device_id,
                        error,
                    )
                    await schedule_retry(
                        attempt, self._config.retry_base_delay, sleep=self._sleep
                    )
                    continue
                logger.error("Environment check failed device=%s: %s", device_id, error)
                return await self._fail(record, error, Stage.FAILED, target)

    async def _run_stage(self, record: MigrationRecord, work: StageWork) -> ResumeResult:
        device_id = record.device_id
        ctx = self.context(device_id)

        while True:
            try:
                tx = await self._transactions.begin(device_id, work.name)
            except TransactionConflictError as exc:
                logger.error("%s", exc)
                return ResumeResult(
                    device_id=device_id,
                    stage=record.stage,
                    error=ErrorInfo.from_exception(exc, work.stage),
                )

            record.attempts += 1
            record.transaction_id = tx.id
            await self._save(record)
            logger.info(
                "Running stage %s (attempt %d) device=%s", work.name, record.attempts, device_id
            )

            try:
                await self._transactions.execute(tx, lambda scope: work.run(ctx, scope))
            except RollbackFailure as exc:
                record.transaction_id = None
                logger.critical(
                    "Rollback of %s failed device=%s, manual recovery required: %s",
                    work.name,
                    device_id,
                    exc.details.get("unrestored"),
                )
                return await self._fail(record, exc, Stage.FAILED, work.stage)
            except Exception as exc:
                error = classify(exc)
                record.transaction_id = None
                if error.retryable and record.attempts <= self._config.transient_retries:
                    record.last_error = ErrorInfo.from_exception(error, work.stage)
                    await self._save(record)
                    logger.warning(
                        "Transient failure in %s device=%s, retrying: %s",
                        work.name,
                        device_id,
                        error,
                    )
                    await schedule_retry(
                        record.attempts, self._config.retry_base_delay, sleep=self._sleep
                    )
                    continue
                terminal = Stage.FAILED if error.retryable else Stage.ROLLED_BACK
                logger.error(
                    "Stage %s failed device=%s, now %s: %s",
                    work.name,
                    device_id,
                    terminal.value,
                    error,
                )
                return await self._fail(record, error, terminal, work.stage)

            record.transaction_id = None
            await self._transactions.complete(tx, retain_backups=True)
            return await self._advance(record, work)

    async def _advance(self, record: MigrationRecord, work: StageWork) -> ResumeResult:
        record.last_error = None
        record.advance_to(work.stage)
        await self._save(record)
        if work.reboot_after:
            # The new stage is durable before the boot trigger exists.
            await self._continuation.register(record.device_id, work.stage.next())
            logger.info(
                "Reached %s, reboot required before %s device=%s",
                work.stage.value,
                work.stage.next().value,
                record.device_id,
            )
        else:
            logger.info("Reached %s device=%s", work.stage.value, record.device_id)
        return ResumeResult(
            device_id=record.device_id,
            stage=record.stage,
            reboot_required=work.reboot_after,
        )

    async def _verify(self, record: MigrationRecord) -> ResumeResult:
        device_id = record.device_id
        if self._skip_verification:
            logger.warning("Skipping verification device=%s", device_id)
            record.last_error = None
            record.advance_to(Stage.COMPLETED)
            return await self._complete(record)

        ctx = self.context(device_id)
        result = await self._verifier.verify(device_id, self._checks_factory(self._caps, ctx))
        record.verification = result
        if result.overall_success:
            record.last_error = None
            record.advance_to(Stage.COMPLETED)
            return await self._complete(record)

        if record.stage != Stage.VERIFICATION:
            record.advance_to(Stage.VERIFICATION)
        record.attempts += 1
        record.last_error = ErrorInfo.from_exception(
            VerificationFailure(result), Stage.VERIFICATION
        )
        await self._save(record)
        return ResumeResult(
            device_id=device_id, stage=record.stage, error=record.last_error
        )

    async def _complete(self, record: MigrationRecord) -> ResumeResult:
        await self._save(record)
        await self._continuation.cancel(record.device_id)
        await self._transactions.purge_expired()
        logger.info("Migration completed device=%s", record.device_id)
        return ResumeResult(device_id=record.device_id, stage=record.stage)

    async def _fail(
        self,
        record: MigrationRecord,
        exc: MigrationError,
        terminal: Stage,
        failed_stage: Stage,
    ) -> ResumeResult:
        record.last_error = ErrorInfo.from_exception(exc, failed_stage)
        record.advance_to(terminal)
        await self._save(record)
        await self._continuation.cancel(record.device_id)
        return ResumeResult(
            device_id=record.device_id, stage=record.stage, error=record.last_error
        )

    async def _restore_backup(self, tx: Transaction, entry: BackupEntry) -> None:
        await self._caps.restore_backup(tx.device_id, entry.component, entry.location)

    async def _save(self, record: MigrationRecord) -> None:
        # A cancellation written to a shared store by a fleet host must survive
        # this process saving its own copy of the record.
        if not record.cancel_requested:
            stored = await self._store.get_record(record.device_id)
            if stored is not None and stored.cancel_requested:
                record.cancel_requested = True
        await self._store.save_record(record)

    def _lock_for(self, device_id: str) -> asyncio.Lock:
        lock = self._locks.get(device_id)
        if lock is None:
            lock = self._locks[device_id] = asyncio.Lock()
        return lock
