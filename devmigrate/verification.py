"""Post-migration verification gate."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Sequence, Tuple, Union

from .capabilities import MigrationCapabilities, MigrationContext
from .config import VerificationSettings
from .models import CheckResult, VerificationResult
from .utils.retry import schedule_retry

logger = logging.getLogger(__name__)

PredicateResult = Union[bool, Tuple[bool, Optional[str]]]


@dataclass
class Check:
    """A named predicate against externally observed device state.

    ``retry`` marks checks whose condition may lag behind the migration
    (policy application, enrollment records) and should be polled.
    """

    name: str
    predicate: Callable[[], Awaitable[PredicateResult]]
    retry: bool = True


class VerificationEngine:
    """Runs checks independently and reports every result."""

    def __init__(
        self,
        settings: Optional[VerificationSettings] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.settings = settings or VerificationSettings()
        self._sleep = sleep

    async def verify(self, device_id: str, checks: Sequence[Check]) -> VerificationResult:
        results = await asyncio.gather(*(self._run_check(device_id, c) for c in checks))
        overall = all(r.passed for r in results)
        if overall:
            logger.info("Verification passed (%d checks) device=%s", len(results), device_id)
        else:
            logger.warning(
                "Verification failed device=%s: %s",
                device_id,
                ", ".join(f"{r.name} ({r.detail})" for r in results if not r.passed),
            )
        return VerificationResult(overall_success=overall, checks=list(results))

    async def _run_check(self, device_id: str, check: Check) -> CheckResult:
        max_attempts = self.settings.attempts if check.retry else 1
        passed = False
        detail: Optional[str] = None
        attempt = 0
        while attempt < max_attempts:
            attempt += 1
            try:
                passed, detail = _normalize(await check.predicate())
            except Exception as exc:
                passed, detail = False, f"{type(exc).__name__}: {exc}"
            if passed:
                break
            logger.debug(
                "Check %s attempt %d/%d failed device=%s: %s",
                check.name,
                attempt,
                max_attempts,
                device_id,
                detail,
            )
            if attempt < max_attempts:
                await schedule_retry(
                    attempt,
                    self.settings.delay_seconds,
                    self.settings.backoff,
                    sleep=self._sleep,
                )
        return CheckResult(name=check.name, passed=passed, detail=detail, attempts=attempt)


def _normalize(value: PredicateResult) -> Tuple[bool, Optional[str]]:
    if isinstance(value, tuple):
        passed, detail = value
        return bool(passed), detail
    return bool(value), None


def build_default_checks(
    capabilities: MigrationCapabilities, ctx: MigrationContext
) -> List[Check]:
    """Checks every migrated device must pass."""

    async def enrollment() -> PredicateResult:
        return await capabilities.verify_enrollment(ctx)

    async def source_removed() -> PredicateResult:
        present = await capabilities.is_source_management_present(ctx)
        return (not present, "source agent present" if present else "source agent absent")

    checks = [
        Check("target_enrollment", enrollment),
        Check("source_management_removed", source_removed, retry=False),
    ]

    for app in ctx.config.required_applications:
        checks.append(Check(f"application:{app}", _app_check(capabilities, ctx, app)))
    for marker in ctx.config.required_policy_markers:
        checks.append(Check(f"policy:{marker}", _policy_check(capabilities, ctx, marker)))
    return checks


def _app_check(capabilities: MigrationCapabilities, ctx: MigrationContext, name: str):
    async def predicate() -> PredicateResult:
        installed = await capabilities.is_application_installed(ctx, name)
        return installed, "installed" if installed else "not installed"

    return predicate


def _policy_check(capabilities: MigrationCapabilities, ctx: MigrationContext, marker: str):
    async def predicate() -> PredicateResult:
        present = await capabilities.has_policy_marker(ctx, marker)
        return present, "present" if present else "missing"

    return predicate
