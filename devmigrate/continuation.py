"""Durable, single-fire "resume after next boot" handles.

A continuation records the stage a device should resume from and arranges
for ``migrate resume <device>`` to run after the next boot. Consuming a
continuation deletes it, so a boot trigger can never replay.
"""

from __future__ import annotations

import json
import logging
import os
import re
from pathlib import Path
from typing import Awaitable, Callable, Dict, Optional, Protocol

from .config import MigrationConfig
from .models import Stage, utcnow
from .utils.command import CmdResult, run_cmd_async

logger = logging.getLogger(__name__)


def _safe_name(device_id: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.-]", "_", device_id)


class Continuation(Protocol):
    async def register(self, device_id: str, next_stage: Stage) -> None:
        """Persist the resume point and arm the boot trigger."""

    async def pending(self, device_id: str) -> Optional[Stage]:
        """Return the armed resume point without consuming it."""

    async def consume(self, device_id: str) -> Optional[Stage]:
        """Return the resume point and disarm it; ``None`` if not armed."""

    async def cancel(self, device_id: str) -> None:
        """Disarm without resuming."""


class InMemoryContinuation:
    """Continuation kept in process memory, for tests and local fleet loops."""

    def __init__(self) -> None:
        self._pending: Dict[str, Stage] = {}
        self.registered: list[tuple[str, Stage]] = []

    async def register(self, device_id: str, next_stage: Stage) -> None:
        self._pending[device_id] = next_stage
        self.registered.append((device_id, next_stage))

    async def pending(self, device_id: str) -> Optional[Stage]:
        return self._pending.get(device_id)

    async def consume(self, device_id: str) -> Optional[Stage]:
        return self._pending.pop(device_id, None)

    async def cancel(self, device_id: str) -> None:
        self._pending.pop(device_id, None)


class FileContinuation:
    """Marker file per device; the boot trigger itself is external."""

    def __init__(self, marker_dir: str | Path) -> None:
        self.marker_dir = Path(marker_dir)

    def _marker(self, device_id: str) -> Path:
        return self.marker_dir / f"{_safe_name(device_id)}.json"

    async def register(self, device_id: str, next_stage: Stage) -> None:
        self.marker_dir.mkdir(parents=True, exist_ok=True)
        marker = self._marker(device_id)
        tmp = marker.with_suffix(".tmp")
        payload = {
            "device_id": device_id,
            "next_stage": next_stage.value,
            "registered_at": utcnow().isoformat(),
        }
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(payload, f)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, marker)
        logger.info("Registered continuation %s device=%s", next_stage.value, device_id)

    async def pending(self, device_id: str) -> Optional[Stage]:
        marker = self._marker(device_id)
        if not marker.exists():
            return None
        data = json.loads(marker.read_text(encoding="utf-8"))
        return Stage(data["next_stage"])

    async def consume(self, device_id: str) -> Optional[Stage]:
        stage = await self.pending(device_id)
        if stage is None:
            return None
        try:
            self._marker(device_id).unlink()
        except FileNotFoundError:
            # Another process consumed it first.
            return None
        logger.info("Consumed continuation %s device=%s", stage.value, device_id)
        return stage

    async def cancel(self, device_id: str) -> None:
        try:
            self._marker(device_id).unlink()
        except FileNotFoundError:
            pass


class ScheduledTaskContinuation(FileContinuation):
    """Windows one-shot ONSTART task running as SYSTEM, plus a marker file.

    The task runs ``<command> resume <device>``; the resumed process consumes
    the continuation, which deletes both the marker and the task.
    """

    def __init__(
        self,
        marker_dir: str | Path,
        task_name: str,
        command: str = "migrate",
        run: Callable[..., Awaitable[CmdResult]] = run_cmd_async,
        dry_run: bool = False,
    ) -> None:
        super().__init__(marker_dir)
        self.task_name = task_name
        self.command = command
        self._run = run
        self.dry_run = dry_run

    def task_for(self, device_id: str) -> str:
        return f"{self.task_name}-{_safe_name(device_id)}"

    async def register(self, device_id: str, next_stage: Stage) -> None:
        await super().register(device_id, next_stage)
        result: CmdResult = await self._run(
            [
                "schtasks",
                "/Create",
                "/TN",
                self.task_for(device_id),
                "/TR",
                f'{self.command} resume "{device_id}"',
                "/SC",
                "ONSTART",
                "/RU",
                "SYSTEM",
                "/RL",
                "HIGHEST",
                "/F",
            ],
            dry_run=self.dry_run,
        )
        logger.debug("schtasks create returned %s", result.returncode)

    async def consume(self, device_id: str) -> Optional[Stage]:
        stage = await super().consume(device_id)
        await self._delete_task(device_id)
        return stage

    async def cancel(self, device_id: str) -> None:
        await super().cancel(device_id)
        await self._delete_task(device_id)

    async def _delete_task(self, device_id: str) -> None:
        await self._run(
            ["schtasks", "/Delete", "/TN", self.task_for(device_id), "/F"],
            check=False,
            dry_run=self.dry_run,
        )


def get_continuation(config: MigrationConfig) -> Continuation:
    """Build the continuation backend named in the configuration."""
    settings = config.continuation
    if settings.backend == "memory":
        return InMemoryContinuation()
    if settings.backend == "scheduled_task":
        return ScheduledTaskContinuation(
            config.resolved_marker_dir,
            task_name=settings.task_name,
            command=settings.command,
        )
    return FileContinuation(config.resolved_marker_dir)
