"""Ways a fleet worker can drive one device to a final state."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Protocol

from .config import MigrationConfig
from .controller import StageController
from .models import ErrorInfo, MigrationRecord, ResumeResult, Stage, StageTransition
from .persistence import StateStore

logger = logging.getLogger(__name__)

CancelCheck = Callable[[], bool]


def is_settled(result: ResumeResult) -> bool:
    """True when no further ``resume`` will change the outcome on its own."""
    if result.cancelled or result.stage.is_terminal:
        return True
    return result.stage == Stage.VERIFICATION and result.error is not None


class Dispatcher(Protocol):
    async def dispatch(self, device_id: str, is_cancelled: CancelCheck) -> ResumeResult:
        """Drive the device until it settles and return the last outcome."""


class LocalDispatcher:
    """Calls ``StageController.resume`` in a loop from this process.

    Without ``on_reboot`` a reboot boundary is only simulated: the next
    ``resume`` consumes the continuation as a boot would. With ``on_reboot``
    the reboot is requested and the device is handed off; the returned
    result has ``reboot_required`` set and the armed continuation is left for
    the next boot session to consume.
    """

    def __init__(
        self,
        controller: StageController,
        on_reboot: Optional[Callable[[str], Awaitable[None]]] = None,
        max_steps: int = 32,
    ) -> None:
        self._controller = controller
        self._on_reboot = on_reboot
        self._max_steps = max_steps

    async def dispatch(self, device_id: str, is_cancelled: CancelCheck) -> ResumeResult:
        result = await self._controller.resume(device_id)
        steps = 1
        while not is_settled(result):
            if result.error is not None and result.error.kind == "transaction_conflict":
                return result
            if is_cancelled():
                await self._controller.cancel(device_id)
                return result.model_copy(update={"cancelled": True})
            if steps >= self._max_steps:
                return result.model_copy(
                    update={
                        "error": ErrorInfo(
                            kind="stalled",
                            message=f"No final state after {steps} resume calls",
                            stage=result.stage,
                        )
                    }
                )
            if result.reboot_required and self._on_reboot is not None:
                await self._on_reboot(device_id)
                logger.info(
                    "Reboot requested at %s, handing off device=%s",
                    result.stage.value,
                    device_id,
                )
                return result
            result = await self._controller.resume(device_id)
            steps += 1
        return result


class RemoteDispatcher:
    """Starts the device's own resumption mechanism and watches the shared store."""

    def __init__(
        self,
        store: StateStore,
        trigger: Callable[[str], Awaitable[None]],
        poll_interval: float = 5.0,
        timeout: float = 7200.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._trigger = trigger
        self._poll_interval = poll_interval
        self._timeout = timeout
        self._sleep = sleep

    @classmethod
    def from_config(
        cls,
        store: StateStore,
        trigger: Callable[[str], Awaitable[None]],
        config: MigrationConfig,
    ) -> "RemoteDispatcher":
        return cls(
            store,
            trigger,
            poll_interval=config.poll_interval_seconds,
            timeout=config.remote_timeout_seconds,
        )

    async def dispatch(self, device_id: str, is_cancelled: CancelCheck) -> ResumeResult:
        await self._trigger(device_id)
        logger.info("Triggered remote migration device=%s", device_id)
        waited = 0.0
        stage = Stage.PREPARATION
        while True:
            record = await self._store.get_record(device_id)
            if record is not None:
                stage = record.stage
                result = ResumeResult(
                    device_id=device_id,
                    stage=record.stage,
                    error=record.last_error,
                    cancelled=record.cancel_requested and not record.stage.is_terminal,
                )
                if is_settled(result):
                    return result
            if is_cancelled():
                stage = await self._request_cancel(device_id)
                return ResumeResult(device_id=device_id, stage=stage, cancelled=True)
            if waited >= self._timeout:
                return ResumeResult(
                    device_id=device_id,
                    stage=stage,
                    error=ErrorInfo(
                        kind="timeout",
                        message=f"No final state after {self._timeout:.0f}s",
                        stage=stage,
                    ),
                )
            await self._sleep(self._poll_interval)
            waited += self._poll_interval

    async def _request_cancel(self, device_id: str) -> Stage:
        """Persist the cancellation so the device's next boot does not advance."""
        record = await self._store.get_record(device_id)
        if record is None:
            record = MigrationRecord(
                device_id=device_id,
                history=[StageTransition(stage=Stage.PREPARATION)],
            )
        if not record.stage.is_terminal:
            record.cancel_requested = True
            await self._store.save_record(record)
        logger.info("Cancellation requested at %s device=%s", record.stage.value, device_id)
        return record.stage
