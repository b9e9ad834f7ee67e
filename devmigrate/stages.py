"""Work performed to reach each migration stage.

Each class describes how a device gets *into* ``stage``. ``is_done`` lets a
stage recognise work that already happened (for example when the device
rebooted after the capability call but before the new stage was persisted),
in which case ``run`` captures nothing and changes nothing.
"""

from __future__ import annotations

import logging
from typing import Dict, List

from .capabilities import MigrationCapabilities, MigrationContext
from .errors import TransientError
from .models import Stage
from .transaction import TransactionScope

logger = logging.getLogger(__name__)


class StageWork:
    """A single idempotent stage."""

    stage: Stage
    reboot_after: bool = False

    def __init__(self, capabilities: MigrationCapabilities) -> None:
        self.caps = capabilities

    @property
    def name(self) -> str:
        return self.stage.value

    async def is_done(self, ctx: MigrationContext) -> bool:
        return False

    async def run(self, ctx: MigrationContext, scope: TransactionScope) -> None:
        if await self.is_done(ctx):
            logger.info("Stage %s already satisfied device=%s", self.name, ctx.device_id)
            return
        await self.apply(ctx, scope)

    async def apply(self, ctx: MigrationContext, scope: TransactionScope) -> None:
        raise NotImplementedError

    async def _backup(self, ctx: MigrationContext, scope: TransactionScope, component: str) -> None:
        await scope.backup(
            component,
            lambda dest: self.caps.capture_backup(ctx, component, dest),
        )


class SourceRemovalStage(StageWork):
    stage = Stage.SOURCE_REMOVAL
    reboot_after = True

    async def is_done(self, ctx: MigrationContext) -> bool:
        return not await self.caps.is_source_management_present(ctx)

    async def apply(self, ctx: MigrationContext, scope: TransactionScope) -> None:
        await self._backup(ctx, scope, "source_enrollment")
        await self._backup(ctx, scope, "recovery_key")
        await self.caps.remove_source_management(ctx)


class IntermediateBootStage(StageWork):
    stage = Stage.INTERMEDIATE_BOOT

    async def apply(self, ctx: MigrationContext, scope: TransactionScope) -> None:
        if await self.caps.is_source_management_present(ctx):
            # Agent services may still be settling after the reboot.
            raise TransientError("Source management agent still present after reboot")
        await self._backup(ctx, scope, "target_prerequisites")
        await self.caps.prepare_target_enrollment(ctx)


class TargetEnrollmentStage(StageWork):
    stage = Stage.TARGET_ENROLLMENT
    reboot_after = True

    async def apply(self, ctx: MigrationContext, scope: TransactionScope) -> None:
        if not await self.caps.is_target_directory_joined(ctx):
            await self._backup(ctx, scope, "directory_membership")
            await self.caps.join_target_directory(ctx)
        enrolled, detail = await self.caps.verify_enrollment(ctx)
        if enrolled:
            logger.info("Already enrolled (%s) device=%s", detail, ctx.device_id)
            return
        await self.caps.enroll_target_management(ctx)


class ProfileCaptureStage(StageWork):
    stage = Stage.PROFILE_CAPTURE
    reboot_after = True

    async def apply(self, ctx: MigrationContext, scope: TransactionScope) -> None:
        mapping = await self.caps.get_profile_mapping(ctx)
        if mapping is None:
            logger.info("No profile mapping, skipping profile transfer device=%s", ctx.device_id)
            return
        if await self.caps.is_profile_transferred(ctx, mapping):
            logger.info("Profile %s already transferred device=%s", mapping.source_sid, ctx.device_id)
            return
        await self._backup(ctx, scope, "user_profile")
        await self.caps.transfer_user_profile(mapping.source_sid, mapping.target_account)


class FinalizeStage(StageWork):
    stage = Stage.FINALIZE

    async def apply(self, ctx: MigrationContext, scope: TransactionScope) -> None:
        await self.caps.finalize_cleanup(ctx)


def build_stages(capabilities: MigrationCapabilities) -> Dict[Stage, StageWork]:
    """Stage work keyed by the stage it reaches."""
    stages: List[StageWork] = [
        SourceRemovalStage(capabilities),
        IntermediateBootStage(capabilities),
        TargetEnrollmentStage(capabilities),
        ProfileCaptureStage(capabilities),
        FinalizeStage(capabilities),
    ]
    return {work.stage: work for work in stages}
