"""Error taxonomy for migration runs."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Optional, Sequence, Tuple

if TYPE_CHECKING:
    from .models import BackupEntry, VerificationResult


class MigrationError(Exception):
    """Base class for all migration errors.

    ``kind`` is persisted on the record as ``ErrorInfo.kind``; ``retryable``
    marks errors the stage controller may retry within its attempt budget.
    """

    kind = "migration_error"
    retryable = False

    def __init__(self, message: str, *, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class TransientError(MigrationError):
    """Network blip, throttling or any other failure worth retrying."""

    kind = "transient"
    retryable = True


class EnvironmentFatalError(MigrationError):
    """The device cannot be migrated at all; raised before anything is mutated."""

    kind = "environment_fatal"


class StepFailure(MigrationError):
    """A capability call failed while a stage transaction was open."""

    kind = "step_failure"


class StageTimeoutError(StepFailure):
    kind = "stage_timeout"


class RollbackFailure(MigrationError):
    """One or more backups could not be restored.

    The device needs manual recovery. ``failures`` pairs each backup that could
    not be restored with the error raised while restoring it.
    """

    kind = "rollback_failure"

    def __init__(
        self,
        message: str,
        *,
        failures: Sequence[Tuple["BackupEntry", BaseException]] = (),
        original: Optional[BaseException] = None,
    ):
        self.failures = list(failures)
        self.original = original
        super().__init__(
            message,
            details={
                "unrestored": [entry.component for entry, _ in self.failures],
                "errors": {entry.component: str(err) for entry, err in self.failures},
                "original_error": str(original) if original is not None else None,
            },
        )


class VerificationFailure(MigrationError):
    """Post-migration checks did not pass."""

    kind = "verification_failure"

    def __init__(self, result: "VerificationResult"):
        failed = [check.name for check in result.checks if not check.passed]
        super().__init__(
            f"Verification failed: {', '.join(failed) or 'no checks passed'}",
            details={
                "failed_checks": failed,
                "checks": {c.name: c.detail for c in result.checks},
            },
        )
        self.result = result


class TransactionConflictError(MigrationError):
    """A transaction is already open for the device."""

    kind = "transaction_conflict"

    def __init__(self, device_id: str, open_transaction_id: str):
        super().__init__(
            f"Device {device_id} already has open transaction {open_transaction_id}",
            details={"device_id": device_id, "transaction_id": open_transaction_id},
        )
        self.device_id = device_id
        self.open_transaction_id = open_transaction_id


class ConfigurationError(MigrationError):
    kind = "configuration"


def classify(exc: BaseException) -> MigrationError:
    """Map an arbitrary exception raised by stage work onto the taxonomy."""
    if isinstance(exc, MigrationError):
        return exc
    wrapped = StepFailure(f"{type(exc).__name__}: {exc}")
    wrapped.__cause__ = exc
    return wrapped
