"""Cloud-init bootstrap image for new VMs.

A new VM receives its hostname, its login account and the identity's public
key through a NoCloud seed ISO attached as a CD-ROM.  The Provisioner only
needs BootstrapBuilder.build(params) -> image reference; CloudLocalDsBuilder
produces the ISO with cloud-localds into the Proxmox ISO storage.
"""

from __future__ import annotations

import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, runtime_checkable

import aiofiles
import yaml

from auto_vm._logging import get_logger
from auto_vm.exceptions import BackendCommandError, BackendUnavailable, BootstrapError, PublicKeyNotFoundError
from auto_vm.resource_cleanup import cleanup_file
from auto_vm.settings import Settings
from auto_vm.subprocess_utils import run_command

logger = get_logger(__name__)


@dataclass(frozen=True)
class BootstrapParams:
    """Per-identity material baked into the seed image."""

    identity: str
    hostname: str
    public_key: str
    vm_id: int


@runtime_checkable
class BootstrapBuilder(Protocol):
    """Builds an attachable configuration image."""

    async def build(self, params: BootstrapParams) -> str:
        """Build the image and return the backend reference to attach."""
        ...

    async def remove(self, vm_id: int) -> bool:
        """Delete the VM's image; True once it is gone."""
        ...


def render_user_data(params: BootstrapParams, settings: Settings) -> str:
    """Render the #cloud-config user-data document."""
    user: dict[str, object] = {"name": params.identity}
    if settings.guest_groups:
        user["groups"] = ", ".join(settings.guest_groups)
    user.update(
        {
            "sudo": "ALL=(ALL) NOPASSWD:ALL",
            "ssh_authorized_keys": [params.public_key.strip()],
            "lock_passwd": True,
            "shell": settings.guest_shell,
        }
    )
    document = {
        "hostname": params.hostname,
        "fqdn": f"{params.hostname}.localdomain",
        "manage_etc_hosts": True,
        "users": [user],
        "ssh_pwauth": False,
        "disable_root": True,
        "ssh": {"allow_tcp_forwarding": True},
    }
    return "#cloud-config\n" + yaml.safe_dump(document, sort_keys=False, default_flow_style=False)


def render_meta_data(params: BootstrapParams) -> str:
    """Render the NoCloud meta-data document."""
    return yaml.safe_dump(
        {"instance-id": str(params.vm_id), "local-hostname": params.hostname},
        sort_keys=False,
        default_flow_style=False,
    )


def public_key_path(identity: str, settings: Settings) -> Path:
    """Where the identity's public key is stored by the account tooling."""
    return settings.home_root / identity / ".ssh" / "keys" / f"{identity}_id.pub"


async def read_public_key(identity: str, settings: Settings) -> str:
    """Read the identity's stored public key.

    Raises:
        PublicKeyNotFoundError: The key file is missing, unreadable or empty
    """
    path = public_key_path(identity, settings)
    try:
        async with aiofiles.open(path) as f:
            key = (await f.read()).strip()
    except OSError as e:
        raise PublicKeyNotFoundError(
            f"No public key found for {identity} at {path}",
            context={"identity": identity, "path": str(path), "error": str(e)},
        ) from e
    if not key:
        raise PublicKeyNotFoundError(
            f"Public key file for {identity} is empty: {path}",
            context={"identity": identity, "path": str(path)},
        )
    return key


class CloudLocalDsBuilder:
    """BootstrapBuilder that runs cloud-localds into the ISO storage directory."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    def iso_path(self, vm_id: int) -> Path:
        return self._settings.cloudinit_dir / f"cloudinit_{vm_id}.iso"

    def image_reference(self, vm_id: int) -> str:
        return f"{self._settings.iso_storage}:iso/{self.iso_path(vm_id).name}"

    async def build(self, params: BootstrapParams) -> str:
        """Write user-data/meta-data, build the seed ISO, return its reference.

        Raises:
            BootstrapError: cloud-localds is missing or failed
        """
        iso = self.iso_path(params.vm_id)
        context_id = str(params.vm_id)
        logger.info(
            "Generating cloud-init ISO",
            extra={"vm_id": params.vm_id, "identity": params.identity, "iso": str(iso)},
        )

        with tempfile.TemporaryDirectory(prefix=f"auto-vm-{params.vm_id}-") as tmpdir:
            user_data = Path(tmpdir) / "user-data"
            meta_data = Path(tmpdir) / "meta-data"
            async with aiofiles.open(user_data, "w") as f:
                await f.write(render_user_data(params, self._settings))
            async with aiofiles.open(meta_data, "w") as f:
                await f.write(render_meta_data(params))

            argv = [str(self._settings.cloud_localds_bin), str(iso), str(user_data), str(meta_data)]
            if self._settings.use_sudo:
                argv = [str(self._settings.sudo_bin), "-n", *argv]
            try:
                await run_command(
                    argv,
                    timeout=self._settings.backend_command_timeout_seconds,
                    context_id=context_id,
                )
            except (BackendCommandError, BackendUnavailable) as e:
                await cleanup_file(iso, context_id=context_id, description="partial cloud-init ISO")
                raise BootstrapError(
                    f"Failed to build cloud-init ISO for VM {params.vm_id}: {e.message}",
                    context={"vm_id": params.vm_id, **e.context},
                ) from e

        return self.image_reference(params.vm_id)

    async def remove(self, vm_id: int) -> bool:
        """Delete the VM's seed ISO (used when a VM is decommissioned)."""
        return await cleanup_file(self.iso_path(vm_id), context_id=str(vm_id), description="cloud-init ISO")
