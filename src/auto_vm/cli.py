"""Command-line interface for auto-vm.

Usage:
    auto-vm login                      # SSH ForceCommand of a vm_user_XX account
    auto-vm reap                       # One sweep (cron, every minute)
    auto-vm reap --loop                # Sweep forever at a fixed cadence
    auto-vm status --json              # Stored entries
    auto-vm decommission vm_user_07    # Destroy an identity's VM
"""

from __future__ import annotations

import asyncio
import json
import signal
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, NoReturn

import click
from pydantic import ValidationError

from auto_vm import __version__
from auto_vm._logging import configure_logging, get_logger
from auto_vm.activity import ActivityTracker, PsutilSessionObserver
from auto_vm.backend import QmBackend
from auto_vm.bootstrap import CloudLocalDsBuilder, read_public_key
from auto_vm.exceptions import (
    AutoVmError,
    BackendUnavailable,
    InvalidIdentityError,
    LifecycleLockTimeout,
    PublicKeyNotFoundError,
    ReadinessTimeoutError,
    ReaperAlreadyRunning,
)
from auto_vm.handoff import splice_stdio
from auto_vm.platform_utils import current_username
from auto_vm.port_probe import tcp_port_open
from auto_vm.provisioner import Provisioner
from auto_vm.reaper import Reaper
from auto_vm.resource_key import ResourceKey
from auto_vm.settings import Settings
from auto_vm.state_store import FileStateStore

if TYPE_CHECKING:
    from collections.abc import Coroutine

logger = get_logger(__name__)

# Exit codes following Unix conventions
EXIT_SUCCESS = 0
EXIT_CLI_ERROR = 2
EXIT_TEMPFAIL = 75  # EX_TEMPFAIL from sysexits.h
EXIT_TIMEOUT = 124  # Matches `timeout` command
EXIT_VM_ERROR = 125


@dataclass
class CliState:
    """Global options shared by every subcommand."""

    settings: Settings
    log_level: str | None
    log_file: Path | None
    quiet: bool


def format_error(title: str, message: str, suggestions: list[str] | None = None) -> str:
    """Format an error message following What → Why → Fix pattern.

    Args:
        title: Short error title
        message: Detailed explanation
        suggestions: Optional list of suggestions to fix the issue

    Returns:
        Formatted error string
    """
    lines = [
        click.style(f"Error: {title}", fg="red", bold=True),
        "",
        f"  {message}",
    ]

    if suggestions:
        lines.extend(["", "  Suggestions:"])
        lines.extend(f"    • {suggestion}" for suggestion in suggestions)

    return "\n".join(lines)


def report_error(error: AutoVmError, settings: Settings) -> int:
    """Print error for the user and return the matching exit code."""
    if isinstance(error, InvalidIdentityError):
        click.echo(
            format_error(
                "Invalid identity",
                error.message,
                [f"Identities look like {settings.lifecycle.identity_prefix}<number>"],
            ),
            err=True,
        )
        return EXIT_CLI_ERROR

    if isinstance(error, ReadinessTimeoutError):
        vm_id = error.context.get("vm_id", "<id>")
        click.echo(
            format_error(
                "VM not ready",
                error.message,
                [
                    "Try connecting again in a minute",
                    f"Inspect the VM console: qm terminal {vm_id}",
                ],
            ),
            err=True,
        )
        return EXIT_TIMEOUT

    if isinstance(error, (BackendUnavailable, LifecycleLockTimeout)):
        click.echo(
            format_error(
                "Backend temporarily unavailable",
                error.message,
                ["Try again shortly", f"Check that {settings.qm_bin} runs under sudo without a password"],
            ),
            err=True,
        )
        return EXIT_TEMPFAIL

    if isinstance(error, PublicKeyNotFoundError):
        click.echo(
            format_error(
                "No public key registered",
                error.message,
                ["Ask an administrator to register your public key"],
            ),
            err=True,
        )
        return EXIT_VM_ERROR

    click.echo(format_error("auto-vm error", error.message), err=True)
    return EXIT_VM_ERROR


def setup_logging(state: CliState, default_log_file: Path) -> None:
    """Configure stderr logging plus the per-command log file.

    A log file that cannot be opened never blocks the command.
    """
    log_file = state.log_file or default_log_file
    try:
        configure_logging(level=state.log_level, quiet=state.quiet, log_file=log_file)
    except OSError as e:
        configure_logging(level=state.log_level, quiet=state.quiet)
        logger.warning("Cannot open log file", extra={"path": str(log_file), "error": str(e)})


def make_provisioner(settings: Settings) -> Provisioner:
    """Wire the Provisioner used by `login`."""
    store = FileStateStore(settings.state_dir)
    return Provisioner(
        QmBackend(settings),
        store,
        CloudLocalDsBuilder(settings),
        tcp_port_open,
        settings.lifecycle,
        activity=ActivityTracker(store, PsutilSessionObserver(), clock=time.time),
    )


def make_reaper(settings: Settings) -> Reaper:
    """Wire the Reaper used by `reap` and `decommission`."""
    store = FileStateStore(settings.state_dir)
    return Reaper(
        QmBackend(settings),
        store,
        ActivityTracker(store, PsutilSessionObserver(), clock=time.time),
        settings.lifecycle,
        settings.reaper_lock_path,
        bootstrap_builder=CloudLocalDsBuilder(settings),
    )


def run(coro: Coroutine[object, object, int]) -> NoReturn:
    sys.exit(asyncio.run(coro))


# =============================================================================
# Command implementations
# =============================================================================


async def run_login(settings: Settings, identity: str) -> int:
    """Provision the identity's VM and splice stdio to its SSH port."""
    try:
        key = ResourceKey.from_identity(identity, settings.lifecycle)
        try:
            public_key: str | None = await read_public_key(identity, settings)
        except PublicKeyNotFoundError as e:
            # Only fatal if the VM has to be created
            logger.warning(e.message, extra=e.context)
            public_key = None

        logger.info("Login", extra={"identity": identity, "vm_id": key.vm_id})
        address = await make_provisioner(settings).acquire(key, public_key)
    except AutoVmError as e:
        logger.error(e.message, extra=e.context)
        return report_error(e, settings)

    logger.info("Connecting to VM", extra={"vm_id": key.vm_id, "address": address})
    try:
        await splice_stdio(address, settings.lifecycle.ssh_port)
    except OSError as e:
        logger.error("Connection to VM failed", extra={"vm_id": key.vm_id, "address": address, "error": str(e)})
        click.echo(format_error("Connection failed", f"{address}:{settings.lifecycle.ssh_port}: {e}"), err=True)
        return EXIT_VM_ERROR
    return EXIT_SUCCESS


async def run_reap(settings: Settings, *, loop: bool, interval: float | None) -> int:
    """One sweep, or sweeps until SIGTERM/SIGINT with --loop."""
    reaper = make_reaper(settings)

    if loop:
        stop = asyncio.Event()
        event_loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            event_loop.add_signal_handler(sig, stop.set)
        await reaper.run_forever(interval, stop)
        return EXIT_SUCCESS

    try:
        report = await reaper.sweep()
    except ReaperAlreadyRunning as e:
        logger.info("Reaper is already running. Exiting.", extra=e.context)
        return EXIT_SUCCESS
    except AutoVmError as e:
        logger.error(e.message, extra=e.context)
        return report_error(e, settings)
    return EXIT_VM_ERROR if report.errors else EXIT_SUCCESS


async def collect_status(settings: Settings) -> list[dict[str, object]]:
    """Stored entries with their identity and idle time."""
    store = FileStateStore(settings.state_dir)
    now = time.time()
    rows: list[dict[str, object]] = []
    for vm_id in await store.list_keys():
        entry = await store.get(vm_id)
        if entry is None:
            continue
        try:
            identity: str | None = ResourceKey.from_vm_id(vm_id, settings.lifecycle).identity
        except InvalidIdentityError:
            identity = None
        idle = entry.idle_seconds(now)
        rows.append(
            {
                "vm_id": vm_id,
                "identity": identity,
                "address": entry.resolved_address,
                "idle_minutes": None if idle is None else round(idle / 60.0, 1),
            }
        )
    return rows


async def run_status(settings: Settings, *, json_output: bool) -> int:
    try:
        rows = await collect_status(settings)
    except AutoVmError as e:
        return report_error(e, settings)

    if json_output:
        click.echo(json.dumps(rows, indent=2))
        return EXIT_SUCCESS

    if not rows:
        click.echo("No VMs tracked")
        return EXIT_SUCCESS

    click.echo(f"{'VMID':<8} {'IDENTITY':<16} {'ADDRESS':<16} IDLE (min)")
    for row in rows:
        idle = "-" if row["idle_minutes"] is None else row["idle_minutes"]
        click.echo(f"{row['vm_id']:<8} {row['identity'] or '?':<16} {row['address'] or '-':<16} {idle}")
    return EXIT_SUCCESS


async def run_decommission(settings: Settings, identity: str) -> int:
    try:
        key = ResourceKey.from_identity(identity, settings.lifecycle)
        result = await make_reaper(settings).decommission(key)
    except AutoVmError as e:
        logger.error(e.message, extra=e.context)
        return report_error(e, settings)
    logger.info("VM removed", extra={"identity": identity, "vm_id": key.vm_id, "result": result.value})
    return EXIT_SUCCESS


# =============================================================================
# Click commands
# =============================================================================


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Log level (default: AUTO_VM_LOG_LEVEL or WARNING)",
)
@click.option(
    "--log-file",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Log file (default: per-command file under the log directory)",
)
@click.option("-q", "--quiet", is_flag=True, help="Only log errors")
@click.version_option(__version__, "-V", "--version", prog_name="auto-vm")
@click.pass_context
def main(ctx: click.Context, log_level: str | None, log_file: Path | None, quiet: bool) -> None:
    """On-demand per-user VMs on Proxmox VE."""
    try:
        settings = Settings()
    except ValidationError as e:
        raise click.UsageError(f"Invalid configuration: {e}") from e
    ctx.obj = CliState(
        settings=settings,
        log_level=log_level.upper() if log_level else None,
        log_file=log_file,
        quiet=quiet,
    )


@main.command()
@click.option("--identity", help="Identity to serve (default: the invoking OS user)")
@click.pass_obj
def login(state: CliState, identity: str | None) -> NoReturn:
    """Start (or create) the caller's VM and connect stdio to its SSH port.

    Meant as the sshd ForceCommand of the identity accounts.
    """
    setup_logging(state, state.settings.management_log)
    run(run_login(state.settings, identity or current_username()))


@main.command()
@click.option("--loop", is_flag=True, help="Keep sweeping instead of running once")
@click.option("--interval", type=click.FloatRange(min=1.0), help="Seconds between sweeps with --loop")
@click.pass_obj
def reap(state: CliState, loop: bool, interval: float | None) -> NoReturn:
    """Delete stale entries and shut down idle VMs."""
    setup_logging(state, state.settings.cleanup_log)
    run(run_reap(state.settings, loop=loop, interval=interval))


@main.command()
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.pass_obj
def status(state: CliState, json_output: bool) -> NoReturn:
    """List tracked VMs."""
    if state.log_level or state.quiet or state.log_file:
        configure_logging(level=state.log_level, quiet=state.quiet, log_file=state.log_file)
    run(run_status(state.settings, json_output=json_output))


@main.command()
@click.argument("identity")
@click.option("-y", "--yes", is_flag=True, help="Do not ask for confirmation")
@click.pass_obj
def decommission(state: CliState, identity: str, yes: bool) -> NoReturn:
    """Stop and destroy IDENTITY's VM and remove its state."""
    setup_logging(state, state.settings.user_log)
    if not yes:
        click.confirm(f"Destroy the VM of {identity}?", abort=True)
    run(run_decommission(state.settings, identity))


if __name__ == "__main__":
    main()
