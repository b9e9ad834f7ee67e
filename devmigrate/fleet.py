"""Bounded-concurrency migration of many devices."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Set

from .capabilities import DeviceProbe
from .config import MigrationConfig
from .dispatch import Dispatcher
from .models import (
    FleetJob,
    FleetRunResult,
    JobStatus,
    ResumeResult,
    Stage,
    Summary,
    utcnow,
)

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[Summary], None]


@dataclass
class JobEvent:
    """Status change reported by a worker to the aggregator."""

    device_id: str
    status: JobStatus
    reason: Optional[str] = None
    stage: Optional[Stage] = None
    at: datetime = field(default_factory=utcnow)


def _dedupe(devices: Iterable[str]) -> List[str]:
    seen: Set[str] = set()
    ordered: List[str] = []
    for device in devices:
        device = device.strip()
        if not device or device in seen:
            continue
        seen.add(device)
        ordered.append(device)
    return ordered


def outcome_to_event(result: ResumeResult) -> JobEvent:
    if result.cancelled:
        return JobEvent(
            result.device_id,
            JobStatus.SKIPPED,
            reason=f"cancelled at {result.stage.value}",
            stage=result.stage,
        )
    if result.stage == Stage.COMPLETED:
        return JobEvent(result.device_id, JobStatus.SUCCEEDED, stage=result.stage)
    reason = result.stage.value
    if result.error is not None:
        reason = f"{result.stage.value}: {result.error.kind}: {result.error.message}"
    return JobEvent(result.device_id, JobStatus.FAILED, reason=reason, stage=result.stage)


class FleetOrchestrator:
    """Runs the migration for a set of devices with a fixed-size worker pool.

    Workers only report :class:`JobEvent` objects; a single aggregator task
    owns the job table and the summary.
    """

    def __init__(
        self,
        dispatcher: Dispatcher,
        probe: DeviceProbe,
        config: MigrationConfig,
        on_progress: Optional[ProgressCallback] = None,
    ) -> None:
        self._dispatcher = dispatcher
        self._probe = probe
        self._config = config
        self._on_progress = on_progress
        self._jobs: Dict[str, FleetJob] = {}
        self._summary = Summary()
        self._cancelled: Set[str] = set()
        self._stopped = False

    # ------------------------------------------------------------------
    def snapshot(self) -> Summary:
        return self._summary.model_copy()

    def jobs(self) -> List[FleetJob]:
        return [job.model_copy() for job in self._jobs.values()]

    def cancel(self, device_id: str) -> None:
        """Stop one device after its current stage."""
        self._cancelled.add(device_id)

    def cancel_all(self) -> None:
        """Stop dispatching new devices; in-flight ones run to completion."""
        self._stopped = True

    # ------------------------------------------------------------------
    async def run(
        self,
        devices: Iterable[str],
        max_parallel: Optional[int] = None,
        force: bool = False,
    ) -> FleetRunResult:
        if max_parallel is None:
            max_parallel = self._config.max_parallel
        if max_parallel < 1:
            raise ValueError("max_parallel must be at least 1")

        device_ids = _dedupe(devices)
        started_at = utcnow()
        self._jobs = {device_id: FleetJob(device_id=device_id) for device_id in device_ids}
        self._summary = Summary.from_jobs(list(self._jobs.values()))
        logger.info(
            "Starting fleet run: %d device(s), max_parallel=%d, force=%s",
            len(device_ids),
            max_parallel,
            force,
        )

        pending: asyncio.Queue[str] = asyncio.Queue()
        for device_id in device_ids:
            pending.put_nowait(device_id)
        events: asyncio.Queue[Optional[JobEvent]] = asyncio.Queue()

        aggregator = asyncio.create_task(self._aggregate(events))
        workers = [
            asyncio.create_task(self._worker(pending, events, force))
            for _ in range(min(max_parallel, len(device_ids)))
        ]
        try:
            await asyncio.gather(*workers)
        finally:
            await events.put(None)
            await aggregator

        summary = self.snapshot()
        logger.info(
            "Fleet run finished: total=%d succeeded=%d failed=%d skipped=%d",
            summary.total,
            summary.succeeded,
            summary.failed,
            summary.skipped,
        )
        return FleetRunResult(
            summary=summary,
            jobs=self.jobs(),
            started_at=started_at,
            ended_at=utcnow(),
        )

    # ------------------------------------------------------------------
    async def _worker(
        self,
        pending: "asyncio.Queue[str]",
        events: "asyncio.Queue[Optional[JobEvent]]",
        force: bool,
    ) -> None:
        while True:
            try:
                device_id = pending.get_nowait()
            except asyncio.QueueEmpty:
                return

            if self._stopped or device_id in self._cancelled:
                await events.put(JobEvent(device_id, JobStatus.SKIPPED, reason="cancelled"))
                continue

            reason = await self._unavailable_reason(device_id, force)
            if reason is not None:
                logger.info("Skipping device=%s: %s", device_id, reason)
                await events.put(JobEvent(device_id, JobStatus.SKIPPED, reason=reason))
                continue

            await events.put(JobEvent(device_id, JobStatus.RUNNING))
            try:
                result = await self._dispatcher.dispatch(
                    device_id, lambda d=device_id: d in self._cancelled
                )
            except Exception as exc:
                logger.exception("Migration of device=%s raised", device_id)
                await events.put(
                    JobEvent(
                        device_id,
                        JobStatus.FAILED,
                        reason=f"{type(exc).__name__}: {exc}",
                    )
                )
                continue
            await events.put(outcome_to_event(result))

    async def _unavailable_reason(self, device_id: str, force: bool) -> Optional[str]:
        try:
            if not await self._probe.is_reachable(device_id):
                return "unreachable"
            if not force and await self._probe.is_in_use(device_id):
                return "in use"
        except Exception as exc:
            return f"availability check failed: {exc}"
        return None

    async def _aggregate(self, events: "asyncio.Queue[Optional[JobEvent]]") -> None:
        self._publish()
        while True:
            try:
                event = await asyncio.wait_for(
                    events.get(), timeout=self._config.poll_interval_seconds
                )
            except asyncio.TimeoutError:
                self._publish()
                continue
            if event is None:
                return
            self._apply(event)
            self._publish()

    def _apply(self, event: JobEvent) -> None:
        job = self._jobs[event.device_id]
        job.status = event.status
        job.reason = event.reason
        if event.stage is not None:
            job.stage = event.stage
        if event.status == JobStatus.RUNNING:
            job.started_at = event.at
        elif event.status.is_terminal:
            job.ended_at = event.at
        self._summary = Summary.from_jobs(list(self._jobs.values()))
        if event.status.is_terminal:
            logger.info(
                "device=%s %s%s",
                event.device_id,
                event.status.value,
                f" ({event.reason})" if event.reason else "",
            )

    def _publish(self) -> None:
        if self._on_progress is None:
            return
        try:
            self._on_progress(self.snapshot())
        except Exception:
            logger.exception("Progress callback failed")
