import asyncio

import pytest
import yaml
from typer.testing import CliRunner

import devmigrate.cli as cli
from devmigrate.cli import app
from devmigrate.errors import ConfigurationError, EnvironmentFatalError
from devmigrate.models import Stage
from devmigrate.persistence import SQLiteStateStore

runner = CliRunner()


@pytest.fixture
def cli_env(tmp_path, monkeypatch, capabilities):
    """Config file on disk plus fake capabilities wired into the CLI."""
    monkeypatch.delenv("DEVMIGRATE_STATE_URL", raising=False)
    monkeypatch.setattr(cli, "configure_logging", lambda *args, **kwargs: None)
    monkeypatch.setattr(cli, "_load_capabilities", lambda config: capabilities)

    state_path = tmp_path / "state" / "state.db"
    config_path = tmp_path / "devmigrate.yaml"
    config_path.write_text(
        yaml.safe_dump(
            {
                "local_state_path": str(state_path),
                "log_path": str(tmp_path / "devmigrate.log"),
                "retry_base_delay": 0,
                "poll_interval_seconds": 0.05,
                "remote_timeout_seconds": 0.3,
                "verification": {"attempts": 1, "delay_seconds": 0},
                "continuation": {"backend": "file", "marker_dir": str(tmp_path / "markers")},
            }
        )
    )

    class Env:
        pass

    env = Env()
    env.capabilities = capabilities
    env.config = str(config_path)
    env.state_path = state_path
    env.tmp_path = tmp_path
    env.marker_dir = tmp_path / "markers"
    return env


def invoke(env, *args):
    return runner.invoke(app, [*args, "--config", env.config])


def record_stage(env, device_id):
    record = asyncio.run(SQLiteStateStore(env.state_path).get_record(device_id))
    return record.stage if record else None


def test_run_all_devices_succeed(cli_env):
    reports = cli_env.tmp_path / "reports"
    result = invoke(
        cli_env,
        "run",
        "--devices",
        "PC-1,PC-2",
        "--parallel",
        "2",
        "--simulate-reboots",
        "--report-path",
        str(reports),
    )

    assert result.exit_code == 0, f"Output: {result.stdout}"
    assert "PC-1\tSucceeded" in result.stdout
    assert "Succeeded: 2" in result.stdout
    assert cli_env.capabilities.reboots == []
    written = list(reports.glob("fleet-summary-*.json"))
    assert len(written) == 1
    assert '"succeeded": 2' in written[0].read_text()
    assert record_stage(cli_env, "PC-1") == Stage.COMPLETED


def test_run_reports_failed_device(cli_env):
    cli_env.capabilities.fail("remove_source_management", RuntimeError("uninstall failed"), device_id="PC-2")

    result = invoke(cli_env, "run", "--devices", "PC-1,PC-2", "--simulate-reboots")

    assert result.exit_code == 1, f"Output: {result.stdout}"
    assert "PC-2\tFailed" in result.stdout
    assert "uninstall failed" in result.stdout
    assert record_stage(cli_env, "PC-1") == Stage.COMPLETED
    assert record_stage(cli_env, "PC-2") == Stage.ROLLED_BACK


def test_run_reads_devices_from_csv(cli_env):
    schedule = cli_env.tmp_path / "wave1.csv"
    schedule.write_text("ComputerName,Owner\nPC-7,alice\nPC-8,bob\n")

    result = invoke(cli_env, "run", "--devices", str(schedule), "--simulate-reboots")

    assert result.exit_code == 0, f"Output: {result.stdout}"
    assert "Total: 2" in result.stdout


def test_run_stops_at_first_reboot_and_leaves_continuation_armed(cli_env):
    capabilities = cli_env.capabilities
    ops_at_reboot = []
    request_reboot = capabilities.request_reboot

    async def reboot(ctx):
        ops_at_reboot.append(list(capabilities.ops(ctx.device_id)))
        await request_reboot(ctx)

    capabilities.request_reboot = reboot

    result = invoke(cli_env, "run", "--devices", "PC-1")

    assert result.exit_code == 1, f"Output: {result.stdout}"
    assert "PC-1\tFailed\tSourceRemoval: timeout" in result.stdout
    assert capabilities.reboots == ["PC-1"]
    assert capabilities.ops("PC-1") == ops_at_reboot[0]
    assert "prepare_target_enrollment" not in capabilities.ops("PC-1")
    assert (cli_env.marker_dir / "PC-1.json").exists()
    assert record_stage(cli_env, "PC-1") == Stage.SOURCE_REMOVAL


def test_device_completes_by_resuming_after_each_boot(cli_env):
    invoke(cli_env, "run", "--devices", "PC-1")

    stages = []
    for _ in range(5):
        result = invoke(cli_env, "resume", "PC-1", "--no-reboot")
        assert result.exit_code == 0, f"Output: {result.stdout}"
        stages.append(record_stage(cli_env, "PC-1"))

    assert stages == [
        Stage.INTERMEDIATE_BOOT,
        Stage.TARGET_ENROLLMENT,
        Stage.PROFILE_CAPTURE,
        Stage.FINALIZE,
        Stage.COMPLETED,
    ]
    assert not (cli_env.marker_dir / "PC-1.json").exists()

    result = invoke(cli_env, "run", "--devices", "PC-1")
    assert result.exit_code == 0, f"Output: {result.stdout}"
    assert "PC-1\tSucceeded" in result.stdout


def test_run_without_capabilities_factory_is_config_error(cli_env, monkeypatch):
    monkeypatch.setattr(cli, "_load_capabilities", _unconfigured)
    result = invoke(cli_env, "run", "--devices", "PC-1")
    assert result.exit_code == 2
    assert record_stage(cli_env, "PC-1") is None


def _unconfigured(config):
    raise ConfigurationError("capabilities_factory is not configured")


def test_missing_config_file_is_config_error(tmp_path):
    result = runner.invoke(app, ["status", "--config", str(tmp_path / "missing.yaml")])
    assert result.exit_code == 2


def test_invalid_config_is_config_error(tmp_path, monkeypatch):
    monkeypatch.setattr(cli, "configure_logging", lambda *args, **kwargs: None)
    config_path = tmp_path / "bad.yaml"
    config_path.write_text("max_parallel: 0\n")
    result = runner.invoke(app, ["run", "--devices", "PC-1", "--config", str(config_path)])
    assert result.exit_code == 2


def test_resume_advances_one_stage(cli_env):
    result = invoke(cli_env, "resume", "PC-1", "--no-reboot")

    assert result.exit_code == 0, f"Output: {result.stdout}"
    assert "PC-1: SourceRemoval" in result.stdout
    assert "Reboot required" in result.stdout
    assert cli_env.capabilities.reboots == []

    result = invoke(cli_env, "resume", "PC-1")
    assert "PC-1: IntermediateBoot" in result.stdout
    assert record_stage(cli_env, "PC-1") == Stage.INTERMEDIATE_BOOT


def test_resume_requests_reboot_by_default(cli_env):
    result = invoke(cli_env, "resume", "PC-1")
    assert result.exit_code == 0
    assert cli_env.capabilities.reboots == ["PC-1"]


def test_resume_failure_exit_code(cli_env):
    cli_env.capabilities.fail("check_environment", EnvironmentFatalError("unsupported build"))
    result = invoke(cli_env, "resume", "PC-1")

    assert result.exit_code == 1
    assert "environment_fatal" in result.stdout
    assert record_stage(cli_env, "PC-1") == Stage.FAILED


def test_status_lists_and_shows_devices(cli_env):
    result = invoke(cli_env, "status")
    assert result.exit_code == 0
    assert "No migrations found" in result.stdout

    invoke(cli_env, "resume", "PC-1", "--no-reboot")

    result = invoke(cli_env, "status")
    assert "PC-1\tSourceRemoval" in result.stdout

    result = invoke(cli_env, "status", "PC-1")
    assert result.exit_code == 0
    assert "Device PC-1: SourceRemoval" in result.stdout
    assert "- Preparation" in result.stdout

    result = invoke(cli_env, "status", "missing")
    assert result.exit_code == 1
    assert "Migration not found" in result.stdout


def test_cancel_then_resume_does_not_advance(cli_env):
    invoke(cli_env, "resume", "PC-1", "--no-reboot")
    result = invoke(cli_env, "cancel", "PC-1")
    assert "Cancellation requested for PC-1" in result.stdout

    invoke(cli_env, "resume", "PC-1", "--no-reboot")
    assert record_stage(cli_env, "PC-1") == Stage.SOURCE_REMOVAL


def test_cleanup_only_archives_finished_migrations(cli_env):
    invoke(cli_env, "resume", "PC-1", "--no-reboot")
    result = invoke(cli_env, "cleanup", "PC-1")
    assert result.exit_code == 1
    assert "still active" in result.stdout

    invoke(cli_env, "run", "--devices", "PC-1", "--simulate-reboots")
    result = invoke(cli_env, "cleanup", "PC-1")
    assert result.exit_code == 0, f"Output: {result.stdout}"
    assert "Archived PC-1 (Completed)" in result.stdout
    assert record_stage(cli_env, "PC-1") is None

    archived = asyncio.run(SQLiteStateStore(cli_env.state_path).list_archived("PC-1"))
    assert [r.stage for r in archived] == [Stage.COMPLETED]


def test_purge_backups(cli_env):
    result = invoke(cli_env, "purge-backups")
    assert result.exit_code == 0
    assert "Purged 0 transaction(s)" in result.stdout
