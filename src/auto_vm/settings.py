"""Runtime configuration from environment variables."""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from auto_vm import constants
from auto_vm.config import LifecycleConfig


class Settings(BaseSettings):
    """Runtime configuration from environment variables and /etc/auto_vm.env.

    All settings can be overridden via environment variables with AUTO_VM_ prefix.
    Nested lifecycle parameters use a double underscore:
    AUTO_VM_LIFECYCLE__IDLE_THRESHOLD_MINUTES=45
    """

    model_config = SettingsConfigDict(
        env_prefix="AUTO_VM_",
        env_nested_delimiter="__",
        env_file="/etc/auto_vm.env",
        extra="ignore",
    )

    # Directories
    state_dir: Path = Path("/var/lock/auto_vm")
    cloudinit_dir: Path = Path("/var/lib/vz/template/iso")
    log_dir: Path = Path("/var/log/auto_vm")
    home_root: Path = Path("/home")

    # Executables
    qm_bin: Path = Path("/usr/sbin/qm")
    cloud_localds_bin: Path = Path("/usr/bin/cloud-localds")
    use_sudo: bool = True
    """Prefix backend commands with sudo (login runs as the unprivileged user)."""
    sudo_bin: Path = Path("/usr/bin/sudo")

    # Backend
    iso_storage: str = "local"
    """Proxmox storage holding the cloud-init ISOs (maps to cloudinit_dir)."""
    backend_command_timeout_seconds: float = constants.BACKEND_COMMAND_TIMEOUT_SECONDS

    # Guest bootstrap
    guest_groups: list[str] = Field(default_factory=lambda: ["docker"])
    guest_shell: str = "/bin/bash"

    # Lifecycle parameters
    lifecycle: LifecycleConfig = Field(default_factory=LifecycleConfig)

    @property
    def management_log(self) -> Path:
        """Log file of login/provisioning."""
        return self.log_dir / "vm_management.log"

    @property
    def cleanup_log(self) -> Path:
        """Log file of reaper sweeps."""
        return self.log_dir / "vm_cleanup.log"

    @property
    def reaper_lock_path(self) -> Path:
        """Reaper pid marker."""
        return self.state_dir / constants.REAPER_LOCK_NAME

    @property
    def user_log(self) -> Path:
        """Log file of account decommissioning."""
        return self.log_dir / "user.log"
