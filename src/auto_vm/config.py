"""Lifecycle configuration for auto-vm.

LifecycleConfig holds the pure parameters consumed by the Provisioner, the
Activity Tracker and the Reaper: naming scheme, idle threshold, and every
readiness/shutdown deadline and poll interval.  It carries no behaviour.

Example:
    ```python
    from auto_vm.config import LifecycleConfig

    config = LifecycleConfig(idle_threshold_minutes=45, boot_timeout_seconds=180)
    ```
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, model_validator

from auto_vm import constants


class LifecycleConfig(BaseModel):
    """Configuration for the VM lifecycle cache.

    Attributes:
        identity_prefix: Prefix of served OS accounts (vm_user_07).
        vm_id_start: Digits prepended to the identity's number to form the VM id.
        vm_name_prefix: VM display name prefix.
        template_id: VM id of the template cloned for new identities.
        idle_threshold_minutes: Inactivity before a VM is shut down.
        boot_timeout_seconds: Deadline for running + guest agent responsive.
        address_timeout_seconds: Deadline for the guest to report an IPv4 address.
        service_timeout_seconds: Deadline for the SSH port to accept connections.
        shutdown_timeout_seconds: Graceful shutdown deadline before forced stop.
        forced_stop_timeout_seconds: Deadline for a forced stop to be confirmed.
        lifecycle_lock_timeout_seconds: Max wait on another process's
            provisioning/eviction of the same VM.
        provision_max_attempts: Attempts when the backend is transiently unavailable.
        reaper_interval_seconds: Reaper cadence in loop mode.
    """

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
    )

    # Naming
    identity_prefix: str = Field(
        default=constants.DEFAULT_IDENTITY_PREFIX,
        min_length=1,
        pattern=r"^[a-z_][a-z0-9_-]*$",
        description="Prefix of served OS accounts",
    )
    vm_id_start: str = Field(
        default=constants.DEFAULT_VM_ID_START,
        pattern=r"^[1-9][0-9]*$",
        description="Digits prepended to the identity number to form the VM id",
    )
    vm_name_prefix: str = Field(
        default=constants.DEFAULT_VM_NAME_PREFIX,
        pattern=r"^[a-zA-Z0-9-]*$",
        description="VM display name prefix",
    )
    template_id: int = Field(
        default=constants.DEFAULT_TEMPLATE_ID,
        ge=100,
        description="VM id of the golden template",
    )

    # Idleness
    idle_threshold_minutes: int = Field(
        default=constants.DEFAULT_IDLE_THRESHOLD_MINUTES,
        ge=1,
        description="Minutes of inactivity before shutdown",
    )

    # Readiness
    boot_timeout_seconds: float = Field(default=constants.VM_START_TIMEOUT_SECONDS, gt=0)
    boot_poll_interval_seconds: float = Field(default=constants.VM_START_POLL_INTERVAL_SECONDS, gt=0)
    address_timeout_seconds: float = Field(default=constants.ADDRESS_TIMEOUT_SECONDS, gt=0)
    address_poll_interval_seconds: float = Field(default=constants.ADDRESS_POLL_INTERVAL_SECONDS, gt=0)
    service_timeout_seconds: float = Field(default=constants.SSH_TIMEOUT_SECONDS, gt=0)
    service_poll_interval_seconds: float = Field(default=constants.SSH_POLL_INTERVAL_SECONDS, gt=0)
    ssh_port: int = Field(default=constants.SSH_PORT, ge=1, le=65535)

    # Shutdown
    shutdown_timeout_seconds: float = Field(default=constants.SHUTDOWN_TIMEOUT_SECONDS, gt=0)
    shutdown_poll_interval_seconds: float = Field(default=constants.SHUTDOWN_POLL_INTERVAL_SECONDS, gt=0)
    forced_stop_timeout_seconds: float = Field(default=constants.FORCED_STOP_TIMEOUT_SECONDS, gt=0)

    # Coordination
    lifecycle_lock_timeout_seconds: float = Field(default=constants.LIFECYCLE_LOCK_TIMEOUT_SECONDS, gt=0)
    provision_max_attempts: int = Field(default=constants.PROVISION_MAX_ATTEMPTS, ge=1, le=10)
    reaper_interval_seconds: float = Field(default=constants.DEFAULT_REAPER_INTERVAL_SECONDS, gt=0)

    @model_validator(mode="after")
    def _intervals_fit_deadlines(self) -> LifecycleConfig:
        pairs = (
            ("boot", self.boot_poll_interval_seconds, self.boot_timeout_seconds),
            ("address", self.address_poll_interval_seconds, self.address_timeout_seconds),
            ("service", self.service_poll_interval_seconds, self.service_timeout_seconds),
            ("shutdown", self.shutdown_poll_interval_seconds, self.shutdown_timeout_seconds),
        )
        for name, interval, deadline in pairs:
            if interval > deadline:
                raise ValueError(f"{name} poll interval ({interval}s) exceeds its timeout ({deadline}s)")
        return self

    @property
    def idle_threshold_seconds(self) -> float:
        """Idle threshold in seconds."""
        return self.idle_threshold_minutes * 60.0
