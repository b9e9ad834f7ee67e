"""Stage controller tests."""

import asyncio

import pytest

from devmigrate.continuation import FileContinuation
from devmigrate.errors import EnvironmentFatalError, TransientError
from devmigrate.models import MigrationRecord, Stage, TransactionStatus
from devmigrate.persistence import SQLiteStateStore
from devmigrate.transaction import TransactionManager


async def drive(controller, device_id, times):
    result = None
    for _ in range(times):
        result = await controller.resume(device_id)
    return result


@pytest.mark.asyncio
async def test_first_resume_initializes_and_removes_source(make_controller, store, capabilities, continuation):
    controller = make_controller()
    result = await controller.resume("PC-1")

    assert result.stage == Stage.SOURCE_REMOVAL
    assert result.reboot_required
    assert result.error is None
    assert capabilities.ops("PC-1") == [
        "check_environment",
        "capture:source_enrollment",
        "capture:recovery_key",
        "remove_source_management",
    ]
    record = await store.get_record("PC-1")
    assert record.stage == Stage.SOURCE_REMOVAL
    assert record.transaction_id is None
    assert [t.stage for t in record.history] == [Stage.PREPARATION, Stage.SOURCE_REMOVAL]
    assert await continuation.pending("PC-1") == Stage.INTERMEDIATE_BOOT


@pytest.mark.asyncio
async def test_resume_is_idempotent_when_stage_write_was_lost(make_controller, store, capabilities):
    controller = make_controller()
    first = await controller.resume("PC-1")

    # Reboot hit after the capability call but before the new stage was stored.
    await store.save_record(MigrationRecord(device_id="PC-1"))
    second = await controller.resume("PC-1")

    assert first.stage == second.stage == Stage.SOURCE_REMOVAL
    assert capabilities.ops("PC-1").count("remove_source_management") == 1
    assert len(capabilities.captured) == 2
    backups = [b for tx in await store.list_transactions("PC-1") for b in tx.backups]
    assert len(backups) == 2


@pytest.mark.asyncio
async def test_resume_continues_after_process_restart(tmp_path, make_controller, capabilities):
    db_path = tmp_path / "device.db"
    markers = tmp_path / "markers"

    before_reboot = SQLiteStateStore(db_path)
    controller = make_controller(store=before_reboot, continuation=FileContinuation(markers))
    assert (await controller.resume("PC-1")).stage == Stage.SOURCE_REMOVAL
    before_reboot.close()

    after_reboot = SQLiteStateStore(db_path)
    continuation = FileContinuation(markers)
    controller = make_controller(store=after_reboot, continuation=continuation)
    result = await controller.resume("PC-1")

    assert result.stage == Stage.INTERMEDIATE_BOOT
    assert capabilities.ops("PC-1").count("check_environment") == 1
    assert capabilities.ops("PC-1").count("remove_source_management") == 1
    assert "prepare_target_enrollment" in capabilities.ops("PC-1")
    assert await continuation.pending("PC-1") is None


@pytest.mark.asyncio
async def test_full_run_registers_continuations_at_reboot_boundaries(make_controller, continuation, store):
    controller = make_controller()
    stages = [(await controller.resume("PC-1")).stage for _ in range(6)]

    assert stages == [
        Stage.SOURCE_REMOVAL,
        Stage.INTERMEDIATE_BOOT,
        Stage.TARGET_ENROLLMENT,
        Stage.PROFILE_CAPTURE,
        Stage.FINALIZE,
        Stage.COMPLETED,
    ]
    assert continuation.registered == [
        ("PC-1", Stage.INTERMEDIATE_BOOT),
        ("PC-1", Stage.PROFILE_CAPTURE),
        ("PC-1", Stage.FINALIZE),
    ]
    assert await continuation.pending("PC-1") is None
    record = await store.get_record("PC-1")
    assert record.verification.overall_success

    again = await controller.resume("PC-1")
    assert again.stage == Stage.COMPLETED


@pytest.mark.asyncio
async def test_step_failure_rolls_back_and_stops(make_controller, store, capabilities):
    capabilities.fail("join_target_directory", RuntimeError("directory join refused"))
    controller = make_controller()

    await drive(controller, "PC-1", 2)
    result = await controller.resume("PC-1")

    assert result.stage == Stage.ROLLED_BACK
    assert result.error.kind == "step_failure"
    assert "directory join refused" in result.error.message
    assert result.error.stage == Stage.TARGET_ENROLLMENT
    assert capabilities.restored == [("PC-1", "directory_membership")]

    record = await store.get_record("PC-1")
    assert record.stage == Stage.ROLLED_BACK
    assert record.transaction_id is None

    calls_before = len(capabilities.calls)
    assert (await controller.resume("PC-1")).stage == Stage.ROLLED_BACK
    assert len(capabilities.calls) == calls_before


@pytest.mark.asyncio
async def test_transient_error_retried_once(make_controller, capabilities):
    capabilities.fail("remove_source_management", TransientError("429 too many requests"))
    controller = make_controller()

    result = await controller.resume("PC-1")

    assert result.stage == Stage.SOURCE_REMOVAL
    assert result.error is None
    assert capabilities.ops("PC-1").count("remove_source_management") == 2
    assert capabilities.restored == [("PC-1", "recovery_key"), ("PC-1", "source_enrollment")]


@pytest.mark.asyncio
async def test_transient_error_exhausts_budget_and_fails(make_controller, store, capabilities):
    capabilities.fail("remove_source_management", TransientError("throttled"), times=2)
    controller = make_controller()

    result = await controller.resume("PC-1")

    assert result.stage == Stage.FAILED
    assert result.error.kind == "transient"
    assert capabilities.ops("PC-1").count("remove_source_management") == 2
    txs = await store.list_transactions("PC-1")
    assert [tx.status for tx in txs] == [TransactionStatus.ROLLED_BACK] * 2


@pytest.mark.asyncio
async def test_rollback_failure_ends_failed_for_manual_recovery(make_controller, store, capabilities):
    capabilities.restore_failures = {"source_enrollment"}
    capabilities.fail("remove_source_management", RuntimeError("uninstall returned 1603"))
    controller = make_controller()

    result = await controller.resume("PC-1")

    assert result.stage == Stage.FAILED
    assert result.error.kind == "rollback_failure"
    assert result.error.details["unrestored"] == ["source_enrollment"]
    assert "1603" in result.error.details["original_error"]
    assert capabilities.restored == [("PC-1", "recovery_key")]


@pytest.mark.asyncio
async def test_environment_fatal_fails_before_any_mutation(make_controller, store, capabilities):
    capabilities.fail("check_environment", EnvironmentFatalError("unsupported OS build"))
    controller = make_controller()

    result = await controller.resume("PC-1")

    assert result.stage == Stage.FAILED
    assert result.error.kind == "environment_fatal"
    assert capabilities.captured == []
    assert await store.list_transactions("PC-1") == []


@pytest.mark.asyncio
async def test_verification_failure_is_reported_not_rolled_back(make_controller, store, capabilities, config):
    config.required_applications = ["Company Portal"]
    controller = make_controller()

    await drive(controller, "PC-1", 5)
    result = await controller.resume("PC-1")

    assert result.stage == Stage.VERIFICATION
    assert result.error.kind == "verification_failure"
    assert result.error.details["failed_checks"] == ["application:Company Portal"]
    assert capabilities.restored == []

    record = await store.get_record("PC-1")
    assert not record.verification.overall_success

    capabilities.devices["PC-1"].apps.add("Company Portal")
    result = await controller.resume("PC-1")
    assert result.stage == Stage.COMPLETED
    assert result.error is None


@pytest.mark.asyncio
async def test_skip_verification_completes_after_finalize(make_controller, capabilities, config):
    config.required_applications = ["Company Portal"]
    controller = make_controller(skip_verification=True)

    result = await drive(controller, "PC-1", 6)
    assert result.stage == Stage.COMPLETED


@pytest.mark.asyncio
async def test_cancel_stops_further_stages(make_controller, store, capabilities):
    controller = make_controller()
    await controller.resume("PC-1")
    await controller.cancel("PC-1")

    result = await controller.resume("PC-1")
    assert result.cancelled
    assert result.stage == Stage.SOURCE_REMOVAL
    assert "prepare_target_enrollment" not in capabilities.ops("PC-1")
    assert (await store.get_record("PC-1")).cancel_requested


@pytest.mark.asyncio
async def test_stale_transaction_rolled_back_before_rerun(make_controller, store, config, capabilities):
    await store.save_record(MigrationRecord(device_id="PC-1"))
    crashed = TransactionManager(store, config, restore=lambda tx, entry: None)
    tx = await crashed.begin("PC-1", "SourceRemoval")
    await crashed.backup(tx, "source_enrollment", lambda dest: None)

    controller = make_controller()
    result = await controller.resume("PC-1")

    assert result.stage == Stage.SOURCE_REMOVAL
    assert capabilities.restored[0] == ("PC-1", "source_enrollment")
    stale = await store.get_transaction(tx.id)
    assert stale.status == TransactionStatus.ROLLED_BACK


@pytest.mark.asyncio
async def test_concurrent_resumes_for_one_device_are_serialized(make_controller):
    controller = make_controller()
    first, second = await asyncio.gather(controller.resume("PC-1"), controller.resume("PC-1"))

    assert {first.stage, second.stage} == {Stage.SOURCE_REMOVAL, Stage.INTERMEDIATE_BOOT}
    assert first.error is None and second.error is None


@pytest.mark.asyncio
async def test_unexpected_environment_check_error_is_recorded(make_controller, store, capabilities):
    capabilities.fail("check_environment", RuntimeError("WMI unavailable"))
    controller = make_controller()

    result = await controller.resume("PC-1")

    assert result.stage == Stage.FAILED
    assert result.error.kind == "step_failure"
    assert "WMI unavailable" in result.error.message
    record = await store.get_record("PC-1")
    assert record.stage == Stage.FAILED
    assert record.last_error.message == result.error.message
    assert capabilities.captured == []


@pytest.mark.asyncio
async def test_transient_environment_check_error_is_retried(make_controller, capabilities):
    capabilities.fail("check_environment", TransientError("WinRM timeout"))
    controller = make_controller()

    result = await controller.resume("PC-1")

    assert result.stage == Stage.SOURCE_REMOVAL
    assert capabilities.ops("PC-1").count("check_environment") == 2


@pytest.mark.asyncio
async def test_transient_environment_check_error_exhausts_budget(make_controller, store, capabilities):
    capabilities.fail("check_environment", TransientError("WinRM timeout"), times=2)
    controller = make_controller()

    result = await controller.resume("PC-1")

    assert result.stage == Stage.FAILED
    assert result.error.kind == "transient"
    assert await store.list_transactions("PC-1") == []


@pytest.mark.asyncio
async def test_cancel_written_elsewhere_during_stage_is_kept(make_controller, store, capabilities):
    remove = capabilities.remove_source_management

    async def remove_while_operator_cancels(ctx):
        record = await store.get_record(ctx.device_id)
        record.cancel_requested = True
        await store.save_record(record)
        await remove(ctx)

    capabilities.remove_source_management = remove_while_operator_cancels
    controller = make_controller()

    first = await controller.resume("PC-1")
    assert first.stage == Stage.SOURCE_REMOVAL
    assert (await store.get_record("PC-1")).cancel_requested

    second = await make_controller().resume("PC-1")
    assert second.cancelled
    assert "prepare_target_enrollment" not in capabilities.ops("PC-1")
