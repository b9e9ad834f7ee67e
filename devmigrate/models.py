"""Core data models for device migrations."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Stage(str, Enum):
    """Forward-only migration stages plus the two terminal failure states."""

    PREPARATION = "Preparation"
    SOURCE_REMOVAL = "SourceRemoval"
    INTERMEDIATE_BOOT = "IntermediateBoot"
    TARGET_ENROLLMENT = "TargetEnrollment"
    PROFILE_CAPTURE = "ProfileCapture"
    FINALIZE = "Finalize"
    VERIFICATION = "Verification"
    COMPLETED = "Completed"
    FAILED = "Failed"
    ROLLED_BACK = "RolledBack"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STAGES

    @property
    def position(self) -> int:
        """Index in the forward order; terminal failure states sort last."""
        if self in STAGE_ORDER:
            return STAGE_ORDER.index(self)
        return len(STAGE_ORDER)

    def next(self) -> Optional["Stage"]:
        """Return the stage that follows this one, or ``None`` at the end."""
        if self not in STAGE_ORDER:
            return None
        idx = STAGE_ORDER.index(self)
        return STAGE_ORDER[idx + 1] if idx + 1 < len(STAGE_ORDER) else None


STAGE_ORDER: List[Stage] = [
    Stage.PREPARATION,
    Stage.SOURCE_REMOVAL,
    Stage.INTERMEDIATE_BOOT,
    Stage.TARGET_ENROLLMENT,
    Stage.PROFILE_CAPTURE,
    Stage.FINALIZE,
    Stage.VERIFICATION,
    Stage.COMPLETED,
]

TERMINAL_STAGES = frozenset({Stage.COMPLETED, Stage.FAILED, Stage.ROLLED_BACK})


class ErrorInfo(BaseModel):
    """Structured error persisted as ``MigrationRecord.last_error``."""

    kind: str
    message: str
    stage: Optional[Stage] = None
    occurred_at: datetime = Field(default_factory=utcnow)
    details: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_exception(cls, exc: BaseException, stage: Optional[Stage] = None) -> "ErrorInfo":
        return cls(
            kind=getattr(exc, "kind", type(exc).__name__),
            message=getattr(exc, "message", None) or str(exc),
            stage=stage,
            details=dict(getattr(exc, "details", {}) or {}),
        )


class StageTransition(BaseModel):
    stage: Stage
    at: datetime = Field(default_factory=utcnow)


class CheckResult(BaseModel):
    """Outcome of a single verification check."""

    name: str
    passed: bool
    detail: Optional[str] = None
    attempts: int = 0


class VerificationResult(BaseModel):
    overall_success: bool
    checks: List[CheckResult] = Field(default_factory=list)
    verified_at: datetime = Field(default_factory=utcnow)

    def failed_checks(self) -> List[CheckResult]:
        return [c for c in self.checks if not c.passed]


class MigrationRecord(BaseModel):
    """Durable per-device migration state.

    Created on the first ``resume`` for a device and only mutated by the stage
    controller. ``stage`` names the last stage reached.
    """

    device_id: str
    stage: Stage = Stage.PREPARATION
    started_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    transaction_id: Optional[str] = None
    attempts: int = 0
    last_error: Optional[ErrorInfo] = None
    cancel_requested: bool = False
    history: List[StageTransition] = Field(default_factory=list)
    verification: Optional[VerificationResult] = None

    def advance_to(self, stage: Stage) -> None:
        """Move forward (or into a terminal failure state) and record it."""
        if self.stage.is_terminal:
            raise ValueError(f"Record for {self.device_id} is terminal ({self.stage.value})")
        if stage not in (Stage.FAILED, Stage.ROLLED_BACK) and stage.position <= self.stage.position:
            raise ValueError(
                f"Stage may only move forward: {self.stage.value} -> {stage.value}"
            )
        self.stage = stage
        self.attempts = 0
        self.history.append(StageTransition(stage=stage))


class BackupEntry(BaseModel):
    component: str
    location: str
    captured_at: datetime = Field(default_factory=utcnow)


class TransactionStatus(str, Enum):
    OPEN = "Open"
    COMMITTED = "Committed"
    ROLLED_BACK = "RolledBack"


class Transaction(BaseModel):
    """Rollback scope for one stage execution."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    device_id: str
    name: str
    opened_at: datetime = Field(default_factory=utcnow)
    closed_at: Optional[datetime] = None
    status: TransactionStatus = TransactionStatus.OPEN
    backups: List[BackupEntry] = Field(default_factory=list)
    retain_until: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.status == TransactionStatus.OPEN


class ResumeResult(BaseModel):
    """Outcome of one ``StageController.resume`` call."""

    device_id: str
    stage: Stage
    error: Optional[ErrorInfo] = None
    reboot_required: bool = False
    cancelled: bool = False


class JobStatus(str, Enum):
    PENDING = "Pending"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    SKIPPED = "Skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.SKIPPED)


class FleetJob(BaseModel):
    device_id: str
    status: JobStatus = JobStatus.PENDING
    reason: Optional[str] = None
    stage: Optional[Stage] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None


class Summary(BaseModel):
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    pending: int = 0
    running: int = 0

    @property
    def finished(self) -> bool:
        return self.pending == 0 and self.running == 0

    @classmethod
    def from_jobs(cls, jobs: List[FleetJob]) -> "Summary":
        counts = {status: 0 for status in JobStatus}
        for job in jobs:
            counts[job.status] += 1
        return cls(
            total=len(jobs),
            succeeded=counts[JobStatus.SUCCEEDED],
            failed=counts[JobStatus.FAILED],
            skipped=counts[JobStatus.SKIPPED],
            pending=counts[JobStatus.PENDING],
            running=counts[JobStatus.RUNNING],
        )


class FleetRunResult(BaseModel):
    summary: Summary
    jobs: List[FleetJob] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=utcnow)
    ended_at: Optional[datetime] = None

    @property
    def all_succeeded(self) -> bool:
        return self.summary.total == self.summary.succeeded
