"""Command line interface for device migrations."""

from __future__ import annotations

import asyncio
import importlib
from pathlib import Path
from typing import Optional

import typer

from devmigrate.capabilities import AlwaysAvailableProbe, DeviceProbe, MigrationCapabilities
from devmigrate.config import MigrationConfig, load_config
from devmigrate.continuation import get_continuation
from devmigrate.controller import StageController
from devmigrate.dispatch import Dispatcher, LocalDispatcher, RemoteDispatcher
from devmigrate.errors import ConfigurationError
from devmigrate.fleet import FleetOrchestrator
from devmigrate.logging_utils import configure_logging
from devmigrate.models import FleetRunResult, JobStatus, Stage, utcnow
from devmigrate.persistence import StateStore, get_state_store
from devmigrate.schedule import parse_devices

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2

app = typer.Typer(help="Migrate managed devices from Workspace ONE to Intune")


@app.callback()
def main() -> None:
    """devmigrate CLI entry point."""
    pass


def _fatal(message: str) -> typer.Exit:
    typer.secho(message, fg=typer.colors.RED, err=True)
    return typer.Exit(code=EXIT_CONFIG)


def _load_config(path: Optional[Path]) -> MigrationConfig:
    try:
        config = load_config(str(path) if path else None)
    except ConfigurationError as exc:
        raise _fatal(str(exc))
    configure_logging(config.log_path, config.log_level.upper())
    return config


def _import_factory(spec: str):
    module_name, _, attr = spec.partition(":")
    if not module_name or not attr:
        raise ConfigurationError(f"Factory must look like 'package.module:callable', got {spec!r}")
    try:
        module = importlib.import_module(module_name)
        return getattr(module, attr)
    except (ImportError, AttributeError) as exc:
        raise ConfigurationError(f"Cannot load factory {spec!r}: {exc}") from exc


def _load_capabilities(config: MigrationConfig) -> MigrationCapabilities:
    if not config.capabilities_factory:
        raise ConfigurationError("capabilities_factory is not configured")
    return _import_factory(config.capabilities_factory)(config)


def _load_probe(config: MigrationConfig) -> DeviceProbe:
    if not config.probe_factory:
        return AlwaysAvailableProbe()
    return _import_factory(config.probe_factory)(config)


def _open_store(config: MigrationConfig) -> StateStore:
    try:
        return get_state_store(config=config)
    except (ValueError, RuntimeError, OSError) as exc:
        raise _fatal(f"Cannot open state store: {exc}")


def _build_controller(
    config: MigrationConfig, store: StateStore, skip_verification: bool = False
) -> tuple[StageController, MigrationCapabilities]:
    try:
        capabilities = _load_capabilities(config)
    except ConfigurationError as exc:
        raise _fatal(str(exc))
    controller = StageController(
        store,
        capabilities,
        get_continuation(config),
        config,
        skip_verification=skip_verification,
    )
    return controller, capabilities


def _write_report(report_path: Path, result: FleetRunResult) -> Path:
    report_path.mkdir(parents=True, exist_ok=True)
    target = report_path / f"fleet-summary-{utcnow().strftime('%Y%m%dT%H%M%SZ')}.json"
    target.write_text(result.model_dump_json(indent=2), encoding="utf-8")
    return target


@app.command("run")
def run(
    devices: str = typer.Option(
        ..., "--devices", help="Comma-separated device ids or a schedule file"
    ),
    parallel: Optional[int] = typer.Option(
        None, "--parallel", min=1, help="Maximum devices migrated at once"
    ),
    skip_verification: bool = typer.Option(
        False, "--skip-verification", help="Complete without post-migration checks"
    ),
    force: bool = typer.Option(False, "--force", help="Migrate devices that are in use"),
    simulate_reboots: bool = typer.Option(
        False,
        "--simulate-reboots",
        help="Run every stage in this process without rebooting (lab use only)",
    ),
    report_path: Optional[Path] = typer.Option(
        None, "--report-path", help="Directory for the JSON run summary"
    ),
    config_path: Optional[Path] = typer.Option(None, "--config", help="Config file"),
) -> None:
    """
    Migrate a fleet of devices with bounded parallelism.

    Each device runs until its first reboot boundary; the reboot is then
    requested and progress is followed through the state store while the
    device resumes itself after each boot.

    Exit codes: 0 when every device completed, 1 when any device failed or
    was skipped, 2 on configuration or environment errors (nothing attempted).

    Example:
        migrate run --devices PC-001,PC-002 --parallel 2
        migrate run --devices ./wave1.csv --report-path ./reports
    """
    config = _load_config(config_path)
    try:
        device_ids = parse_devices(devices)
    except (OSError, ValueError) as exc:
        raise _fatal(f"Cannot read devices: {exc}")
    if not device_ids:
        raise _fatal("No devices given")

    store = _open_store(config)
    controller, capabilities = _build_controller(config, store, skip_verification)
    try:
        probe = _load_probe(config)
    except ConfigurationError as exc:
        raise _fatal(str(exc))

    async def _reboot(device_id: str) -> None:
        await capabilities.request_reboot(controller.context(device_id))

    dispatcher: Dispatcher
    if simulate_reboots:
        dispatcher = LocalDispatcher(controller)
    else:
        local = LocalDispatcher(controller, on_reboot=_reboot)

        async def _start(device_id: str) -> None:
            await local.dispatch(device_id, lambda: controller.is_cancelled(device_id))

        dispatcher = RemoteDispatcher.from_config(store, _start, config)

    orchestrator = FleetOrchestrator(dispatcher, probe, config)
    result = asyncio.run(orchestrator.run(device_ids, max_parallel=parallel, force=force))

    for job in result.jobs:
        line = f"{job.device_id}\t{job.status.value}"
        if job.reason:
            line += f"\t{job.reason}"
        color = typer.colors.GREEN if job.status == JobStatus.SUCCEEDED else typer.colors.RED
        typer.secho(line, fg=color)
    summary = result.summary
    typer.echo(
        f"Total: {summary.total}  Succeeded: {summary.succeeded}  "
        f"Failed: {summary.failed}  Skipped: {summary.skipped}"
    )
    if report_path is not None:
        typer.echo(f"Report: {_write_report(report_path, result)}")

    raise typer.Exit(code=EXIT_OK if result.all_succeeded else EXIT_FAILED)


@app.command("resume")
def resume(
    device_id: str,
    reboot: bool = typer.Option(True, help="Request the reboot when a stage needs one"),
    skip_verification: bool = typer.Option(False, "--skip-verification"),
    config_path: Optional[Path] = typer.Option(None, "--config", help="Config file"),
) -> None:
    """
    Advance one device by a single stage.

    This is the command the boot-time continuation runs.

    Example:
        migrate resume PC-001
    """
    config = _load_config(config_path)
    store = _open_store(config)
    controller, capabilities = _build_controller(config, store, skip_verification)

    async def _resume():
        result = await controller.resume(device_id)
        if result.reboot_required and reboot:
            await capabilities.request_reboot(controller.context(device_id))
        return result

    result = asyncio.run(_resume())
    typer.echo(f"{device_id}: {result.stage.value}")
    if result.error is not None:
        typer.secho(f"Error ({result.error.kind}): {result.error.message}", fg=typer.colors.RED)
    if result.reboot_required:
        typer.echo("Reboot required to continue")
    failed = result.stage in (Stage.FAILED, Stage.ROLLED_BACK) or result.error is not None
    raise typer.Exit(code=EXIT_FAILED if failed else EXIT_OK)


@app.command("status")
def status(
    device_id: Optional[str] = typer.Argument(None),
    config_path: Optional[Path] = typer.Option(None, "--config", help="Config file"),
) -> None:
    """
    Show migration records.

    Without a device id, lists every device and its stage. With one, shows
    the stage history, last error and open transaction.
    """
    config = _load_config(config_path)
    store = _open_store(config)

    if device_id is None:
        records = asyncio.run(store.list_records())
        if not records:
            typer.echo("No migrations found")
            return
        for record in records:
            typer.echo(f"{record.device_id}\t{record.stage.value}\t{record.updated_at.isoformat()}")
        return

    record = asyncio.run(store.get_record(device_id))
    if record is None:
        typer.echo("Migration not found")
        raise typer.Exit(code=EXIT_FAILED)
    typer.echo(f"Device {record.device_id}: {record.stage.value}")
    typer.echo(f"Started: {record.started_at.isoformat()}  Updated: {record.updated_at.isoformat()}")
    if record.transaction_id:
        typer.echo(f"Open transaction: {record.transaction_id}")
    if record.last_error is not None:
        typer.echo(f"Last error ({record.last_error.kind}): {record.last_error.message}")
    for transition in record.history:
        typer.echo(f"- {transition.stage.value} ({transition.at.isoformat()})")
    if record.verification is not None:
        for check in record.verification.checks:
            mark = "ok" if check.passed else "FAILED"
            typer.echo(f"  check {check.name}: {mark} ({check.detail}, attempts={check.attempts})")


@app.command("cancel")
def cancel(
    device_id: str,
    config_path: Optional[Path] = typer.Option(None, "--config", help="Config file"),
) -> None:
    """Stop a device's migration after the stage currently running."""
    config = _load_config(config_path)
    store = _open_store(config)
    controller, _ = _build_controller(config, store)
    asyncio.run(controller.cancel(device_id))
    typer.echo(f"Cancellation requested for {device_id}")


@app.command("cleanup")
def cleanup(
    device_id: str,
    config_path: Optional[Path] = typer.Option(None, "--config", help="Config file"),
) -> None:
    """Archive the record of a finished, failed or rolled back migration."""
    config = _load_config(config_path)
    store = _open_store(config)
    continuation = get_continuation(config)

    async def _cleanup() -> int:
        record = await store.get_record(device_id)
        if record is None:
            typer.echo("Migration not found")
            return EXIT_FAILED
        if not record.stage.is_terminal:
            typer.secho(
                f"{device_id} is still active ({record.stage.value}); cancel it first",
                fg=typer.colors.RED,
            )
            return EXIT_FAILED
        await continuation.cancel(device_id)
        await store.archive_record(device_id)
        typer.echo(f"Archived {device_id} ({record.stage.value})")
        return EXIT_OK

    raise typer.Exit(code=asyncio.run(_cleanup()))


@app.command("purge-backups")
def purge_backups(
    config_path: Optional[Path] = typer.Option(None, "--config", help="Config file"),
) -> None:
    """Delete retained backups whose retention window has passed."""
    config = _load_config(config_path)
    store = _open_store(config)
    controller, _ = _build_controller(config, store)
    purged = asyncio.run(controller.transactions.purge_expired())
    typer.echo(f"Purged {len(purged)} transaction(s)")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
