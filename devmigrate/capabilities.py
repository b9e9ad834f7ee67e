"""Interfaces to the collaborators that actually touch the device.

The migration core never talks to Workspace ONE, Microsoft Graph, the
registry or the scheduler directly. It calls the narrow capability surface
below; concrete implementations are injected at construction time.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Protocol, Tuple

from .config import MigrationConfig


@dataclass
class ProfileMapping:
    """Which local profile moves to which target account."""

    source_sid: str
    target_account: str


@dataclass
class MigrationContext:
    """Per-device information handed to every capability call."""

    device_id: str
    config: MigrationConfig
    attributes: dict = field(default_factory=dict)


class MigrationCapabilities(Protocol):
    """Operations implemented outside the core for one device."""

    async def check_environment(self, ctx: MigrationContext) -> None:
        """Raise ``EnvironmentFatalError`` if the device cannot be migrated."""

    async def is_source_management_present(self, ctx: MigrationContext) -> bool:
        ...

    async def remove_source_management(self, ctx: MigrationContext) -> None:
        ...

    async def prepare_target_enrollment(self, ctx: MigrationContext) -> None:
        ...

    async def is_target_directory_joined(self, ctx: MigrationContext) -> bool:
        ...

    async def join_target_directory(self, ctx: MigrationContext) -> None:
        ...

    async def enroll_target_management(self, ctx: MigrationContext) -> None:
        ...

    async def verify_enrollment(self, ctx: MigrationContext) -> Tuple[bool, str]:
        ...

    async def get_profile_mapping(self, ctx: MigrationContext) -> Optional[ProfileMapping]:
        ...

    async def is_profile_transferred(self, ctx: MigrationContext, mapping: ProfileMapping) -> bool:
        ...

    async def transfer_user_profile(self, source_sid: str, target_account: str) -> None:
        ...

    async def finalize_cleanup(self, ctx: MigrationContext) -> None:
        ...

    async def is_application_installed(self, ctx: MigrationContext, name: str) -> bool:
        ...

    async def has_policy_marker(self, ctx: MigrationContext, marker: str) -> bool:
        ...

    async def capture_backup(
        self, ctx: MigrationContext, component: str, destination: Path
    ) -> Optional[str]:
        """Save ``component`` under ``destination``; return its location."""

    async def restore_backup(self, device_id: str, component: str, location: str) -> None:
        ...

    async def request_reboot(self, ctx: MigrationContext) -> None:
        ...


class DeviceProbe(Protocol):
    """Availability checks run before a fleet job is dispatched."""

    async def is_reachable(self, device_id: str) -> bool:
        ...

    async def is_in_use(self, device_id: str) -> bool:
        ...


class AlwaysAvailableProbe:
    """Probe for single-device runs where the device is the local machine."""

    async def is_reachable(self, device_id: str) -> bool:
        return True

    async def is_in_use(self, device_id: str) -> bool:
        return False
