"""Shared fakes and fixtures for devmigrate tests."""

from __future__ import annotations

import asyncio
import json
from collections import defaultdict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

import pytest

from devmigrate.capabilities import MigrationContext, ProfileMapping
from devmigrate.config import ContinuationSettings, MigrationConfig, VerificationSettings
from devmigrate.continuation import InMemoryContinuation
from devmigrate.controller import StageController
from devmigrate.persistence import InMemoryStateStore


@dataclass
class DeviceState:
    source_present: bool = True
    joined: bool = False
    enrolled: bool = False
    prepared: bool = False
    finalized: bool = False
    apps: set = field(default_factory=set)
    markers: set = field(default_factory=set)


class FakeCapabilities:
    """In-memory stand-in for the Workspace ONE / Intune / OS collaborators."""

    def __init__(self, profiles: bool = True) -> None:
        self.devices: Dict[str, DeviceState] = defaultdict(DeviceState)
        self.calls: List[tuple[str, str]] = []
        self.captured: List[tuple[str, str]] = []
        self.restored: List[tuple[str, str]] = []
        self.reboots: List[str] = []
        self.transferred: set = set()
        self.profiles = profiles
        self.restore_failures: set = set()
        self.enrollment_visible_after: Dict[str, int] = {}
        self.enrollment_checks: Dict[str, int] = defaultdict(int)
        self.call_delay = 0.0
        self._failures: Dict[tuple[str, Optional[str]], List[BaseException]] = defaultdict(list)

    def fail(self, operation: str, exc: BaseException, device_id: Optional[str] = None, times: int = 1) -> None:
        self._failures[(operation, device_id)].extend([exc] * times)

    async def _call(self, operation: str, device_id: str) -> None:
        self.calls.append((operation, device_id))
        if self.call_delay:
            await asyncio.sleep(self.call_delay)
        for key in ((operation, device_id), (operation, None)):
            if self._failures.get(key):
                raise self._failures[key].pop(0)

    def ops(self, device_id: str) -> List[str]:
        return [op for op, dev in self.calls if dev == device_id]

    # ------------------------------------------------------------------
    async def check_environment(self, ctx: MigrationContext) -> None:
        await self._call("check_environment", ctx.device_id)

    async def is_source_management_present(self, ctx: MigrationContext) -> bool:
        return self.devices[ctx.device_id].source_present

    async def remove_source_management(self, ctx: MigrationContext) -> None:
        await self._call("remove_source_management", ctx.device_id)
        self.devices[ctx.device_id].source_present = False

    async def prepare_target_enrollment(self, ctx: MigrationContext) -> None:
        await self._call("prepare_target_enrollment", ctx.device_id)
        self.devices[ctx.device_id].prepared = True

    async def is_target_directory_joined(self, ctx: MigrationContext) -> bool:
        return self.devices[ctx.device_id].joined

    async def join_target_directory(self, ctx: MigrationContext) -> None:
        await self._call("join_target_directory", ctx.device_id)
        self.devices[ctx.device_id].joined = True

    async def enroll_target_management(self, ctx: MigrationContext) -> None:
        await self._call("enroll_target_management", ctx.device_id)
        self.devices[ctx.device_id].enrolled = True

    async def verify_enrollment(self, ctx: MigrationContext):
        self.enrollment_checks[ctx.device_id] += 1
        state = self.devices[ctx.device_id]
        needed = self.enrollment_visible_after.get(ctx.device_id, 0)
        if state.enrolled and self.enrollment_checks[ctx.device_id] > needed:
            return True, "enrolled"
        return False, "enrollment record not found"

    async def get_profile_mapping(self, ctx: MigrationContext) -> Optional[ProfileMapping]:
        if not self.profiles:
            return None
        return ProfileMapping(
            source_sid=f"S-1-5-21-{ctx.device_id}", target_account=f"user@{ctx.device_id}"
        )

    async def is_profile_transferred(self, ctx: MigrationContext, mapping: ProfileMapping) -> bool:
        return mapping.source_sid in self.transferred

    async def transfer_user_profile(self, source_sid: str, target_account: str) -> None:
        device_id = target_account.split("@", 1)[1]
        await self._call("transfer_user_profile", device_id)
        self.transferred.add(source_sid)

    async def finalize_cleanup(self, ctx: MigrationContext) -> None:
        await self._call("finalize_cleanup", ctx.device_id)
        self.devices[ctx.device_id].finalized = True

    async def is_application_installed(self, ctx: MigrationContext, name: str) -> bool:
        return name in self.devices[ctx.device_id].apps

    async def has_policy_marker(self, ctx: MigrationContext, marker: str) -> bool:
        return marker in self.devices[ctx.device_id].markers

    async def capture_backup(self, ctx: MigrationContext, component: str, destination: Path) -> str:
        await self._call(f"capture:{component}", ctx.device_id)
        (destination / "backup.json").write_text(json.dumps({"component": component}))
        self.captured.append((ctx.device_id, component))
        return str(destination)

    async def restore_backup(self, device_id: str, component: str, location: str) -> None:
        if component in self.restore_failures:
            raise RuntimeError(f"cannot restore {component}")
        self.restored.append((device_id, component))
        if component == "source_enrollment":
            self.devices[device_id].source_present = True

    async def request_reboot(self, ctx: MigrationContext) -> None:
        self.reboots.append(ctx.device_id)


class FakeProbe:
    def __init__(self, unreachable=(), in_use=()) -> None:
        self.unreachable = set(unreachable)
        self.in_use = set(in_use)

    async def is_reachable(self, device_id: str) -> bool:
        return device_id not in self.unreachable

    async def is_in_use(self, device_id: str) -> bool:
        return device_id in self.in_use


async def no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture
def config(tmp_path) -> MigrationConfig:
    return MigrationConfig(
        local_state_path=str(tmp_path / "state" / "state.db"),
        backup_path=str(tmp_path / "backups"),
        log_path=str(tmp_path / "devmigrate.log"),
        retry_base_delay=0,
        poll_interval_seconds=0.05,
        verification=VerificationSettings(attempts=3, delay_seconds=0),
        continuation=ContinuationSettings(backend="memory"),
    )


@pytest.fixture
def capabilities() -> FakeCapabilities:
    return FakeCapabilities()


@pytest.fixture
def store() -> InMemoryStateStore:
    return InMemoryStateStore()


@pytest.fixture
def continuation() -> InMemoryContinuation:
    return InMemoryContinuation()


@pytest.fixture
def make_controller(store, capabilities, continuation, config):
    def _make(**kwargs) -> StageController:
        kwargs.setdefault("sleep", no_sleep)
        return StageController(
            kwargs.pop("store", store),
            kwargs.pop("capabilities", capabilities),
            kwargs.pop("continuation", continuation),
            kwargs.pop("config", config),
            **kwargs,
        )

    return _make


@pytest.fixture
def fake_probe():
    return FakeProbe
