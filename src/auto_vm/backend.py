"""Resource backend: VM control operations.

The lifecycle cache treats the hypervisor as an opaque capability described
by the ResourceBackend protocol.  QmBackend implements it on a Proxmox VE
host by invoking the qm command line tool:

    clone            qm clone <template> <id> --name <name> --full
    set_config       qm set <id> --<key> <value>
    start            qm start <id>
    graceful_stop    qm shutdown <id>
    forced_stop      qm stop <id>
    destroy          qm destroy <id> --purge
    power_state      qm status <id>            ("does not exist": VM absent)
    exec_in_guest    qm guest exec <id> -- <argv>
    ping             qm guest cmd <id> ping
"""

from __future__ import annotations

import json
import re
from typing import Protocol, runtime_checkable

from auto_vm._logging import get_logger
from auto_vm.exceptions import BackendCommandError, BackendUnavailable, ConcurrentProvisionConflict
from auto_vm.models import PowerState
from auto_vm.settings import Settings
from auto_vm.subprocess_utils import CommandResult, run_command

logger = get_logger(__name__)

_STATUS_PATTERN = re.compile(r"^status:\s*(\S+)", re.MULTILINE)
_CLONE_CONFLICT_PATTERN = re.compile(r"already exists", re.IGNORECASE)
_CLONE_PROGRESS_PREFIX = "transferred"
_MISSING_VM_PATTERN = re.compile(r"Configuration file .* does not exist", re.IGNORECASE)


@runtime_checkable
class ResourceBackend(Protocol):
    """Protocol for VM control.

    Uses structural typing (Protocol) instead of inheritance; tests supply an
    in-memory implementation.
    """

    async def clone(self, template_id: int, vm_id: int, name: str) -> None:
        """Full-clone template_id into a new VM.

        Raises:
            ConcurrentProvisionConflict: vm_id already exists
        """
        ...

    async def set_config(self, vm_id: int, key: str, value: str) -> None:
        """Set one VM configuration option."""
        ...

    async def start(self, vm_id: int) -> None: ...

    async def graceful_stop(self, vm_id: int) -> None:
        """Request an ACPI shutdown (returns once requested, not once stopped)."""
        ...

    async def forced_stop(self, vm_id: int) -> None:
        """Power off immediately; in-guest state may not be flushed."""
        ...

    async def destroy(self, vm_id: int) -> None:
        """Delete the VM and its disks."""
        ...

    async def power_state(self, vm_id: int) -> PowerState: ...

    async def exec_in_guest(self, vm_id: int, argv: list[str]) -> str:
        """Run a command through the guest agent and return its stdout."""
        ...

    async def ping_guest_channel(self, vm_id: int) -> bool: ...


def parse_power_state(status_output: str) -> PowerState:
    """Map `qm status` output ("status: running") to a PowerState."""
    match = _STATUS_PATTERN.search(status_output)
    if match is None:
        return PowerState.UNKNOWN
    value = match.group(1).lower()
    if value == "running":
        return PowerState.RUNNING
    if value == "stopped":
        return PowerState.STOPPED
    return PowerState.UNKNOWN


def parse_guest_exec_output(raw: str) -> str:
    """Extract out-data from the JSON printed by `qm guest exec`.

    Raises:
        BackendCommandError: Output is not the expected JSON, or the guest
            command reported a non-zero exit code.
    """
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as e:
        raise BackendCommandError(
            f"Unparseable guest exec output: {raw[:200]!r}",
            argv=["qm", "guest", "exec"],
            returncode=0,
            stderr=str(e),
        ) from e
    exit_code = payload.get("exitcode", 0)
    if exit_code:
        raise BackendCommandError(
            f"Guest command exited with {exit_code}",
            argv=["qm", "guest", "exec"],
            returncode=int(exit_code),
            stderr=str(payload.get("err-data", "")),
        )
    return str(payload.get("out-data", ""))


class QmBackend:
    """ResourceBackend over the Proxmox `qm` tool.

    When settings.use_sudo is set, every command is prefixed with
    `sudo -n`, matching the sudoers entry granted to login users.
    """

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._timeout = settings.backend_command_timeout_seconds

    def _argv(self, *args: str | int) -> list[str]:
        base = [str(self._settings.qm_bin), *(str(a) for a in args)]
        if self._settings.use_sudo:
            return [str(self._settings.sudo_bin), "-n", *base]
        return base

    async def _qm(self, *args: str | int, vm_id: int, check: bool = True) -> CommandResult:
        return await run_command(self._argv(*args), timeout=self._timeout, context_id=str(vm_id), check=check)

    async def clone(self, template_id: int, vm_id: int, name: str) -> None:
        logger.info(
            "Cloning template",
            extra={"vm_id": vm_id, "template_id": template_id, "vm_name": name},
        )
        try:
            result = await self._qm("clone", template_id, vm_id, "--name", name, "--full", vm_id=vm_id)
        except BackendCommandError as e:
            if _CLONE_CONFLICT_PATTERN.search(e.stderr):
                raise ConcurrentProvisionConflict(
                    f"VM {vm_id} already exists",
                    context={"vm_id": vm_id, "stderr": e.stderr.strip()[:500]},
                ) from e
            raise
        for line in result.stdout.splitlines():
            if line and not line.startswith(_CLONE_PROGRESS_PREFIX):
                logger.debug(f"[qm clone] {line}", extra={"vm_id": vm_id})
        logger.info("Clone completed", extra={"vm_id": vm_id})

    async def set_config(self, vm_id: int, key: str, value: str) -> None:
        logger.debug("Setting VM option", extra={"vm_id": vm_id, "key": key, "value": value})
        await self._qm("set", vm_id, f"--{key}", value, vm_id=vm_id)

    async def start(self, vm_id: int) -> None:
        logger.info("Starting VM", extra={"vm_id": vm_id})
        await self._qm("start", vm_id, vm_id=vm_id)

    async def graceful_stop(self, vm_id: int) -> None:
        logger.info("Requesting VM shutdown", extra={"vm_id": vm_id})
        # qm shutdown blocks until the guest is down; callers bound it and
        # confirm the outcome through power_state()
        result = await self._qm("shutdown", vm_id, vm_id=vm_id, check=False)
        if not result.ok:
            logger.warning(
                "qm shutdown reported failure",
                extra={"vm_id": vm_id, "returncode": result.returncode, "stderr": result.stderr.strip()[:200]},
            )

    async def forced_stop(self, vm_id: int) -> None:
        logger.warning("Forcing VM stop", extra={"vm_id": vm_id})
        await self._qm("stop", vm_id, vm_id=vm_id)

    async def destroy(self, vm_id: int) -> None:
        logger.info("Destroying VM", extra={"vm_id": vm_id})
        await self._qm("destroy", vm_id, "--purge", vm_id=vm_id)

    async def power_state(self, vm_id: int) -> PowerState:
        result = await self._qm("status", vm_id, vm_id=vm_id, check=False)
        if result.ok:
            return parse_power_state(result.stdout)
        if _MISSING_VM_PATTERN.search(result.stderr):
            logger.debug("VM does not exist", extra={"vm_id": vm_id})
            return PowerState.ABSENT
        # sudo, pmxcfs or lock failures say nothing about the VM
        detail = result.stderr.strip()[:500] or "(no stderr)"
        raise BackendCommandError(
            f"qm status {vm_id} exited with {result.returncode}: {detail}",
            argv=result.argv,
            returncode=result.returncode,
            stderr=result.stderr,
            context={"vm_id": vm_id},
        )

    async def exec_in_guest(self, vm_id: int, argv: list[str]) -> str:
        result = await self._qm("guest", "exec", vm_id, "--", *argv, vm_id=vm_id)
        return parse_guest_exec_output(result.stdout)

    async def ping_guest_channel(self, vm_id: int) -> bool:
        try:
            result = await self._qm("guest", "cmd", vm_id, "ping", vm_id=vm_id, check=False)
        except BackendUnavailable:
            return False
        return result.ok
