"""Constants for auto-vm configuration and limits."""

from typing import Final

# ============================================================================
# Naming
# ============================================================================

DEFAULT_IDENTITY_PREFIX: Final[str] = "vm_user_"
"""OS accounts served by auto-vm are named <prefix><number>."""

DEFAULT_VM_ID_START: Final[str] = "2"
"""Leading digit(s) of every VM id: vm_user_07 maps to VM 207."""

DEFAULT_VM_NAME_PREFIX: Final[str] = "user-vm-"
"""VM display name prefix, followed by the VM id."""

DEFAULT_TEMPLATE_ID: Final[int] = 9000
"""VM id of the golden template cloned for new users."""

# ============================================================================
# Idleness
# ============================================================================

DEFAULT_IDLE_THRESHOLD_MINUTES: Final[int] = 20
"""Minutes without a session or login before a VM is shut down."""

DEFAULT_REAPER_INTERVAL_SECONDS: Final[int] = 60
"""Reaper cadence (cron runs it every minute)."""

# ============================================================================
# Readiness Timeouts
# ============================================================================

VM_START_TIMEOUT_SECONDS: Final[int] = 120
"""Deadline for a VM to be running with a responsive guest agent."""

VM_START_POLL_INTERVAL_SECONDS: Final[float] = 2.0
"""Interval between power-state/agent checks during boot."""

ADDRESS_TIMEOUT_SECONDS: Final[int] = 30
"""Deadline for the guest to report a non-loopback IPv4 address."""

ADDRESS_POLL_INTERVAL_SECONDS: Final[float] = 2.0
"""Interval between guest address queries."""

SSH_TIMEOUT_SECONDS: Final[int] = 60
"""Deadline for the guest's SSH port to accept connections."""

SSH_POLL_INTERVAL_SECONDS: Final[float] = 1.0
"""Interval between SSH port probes."""

SSH_PORT: Final[int] = 22
"""Guest service port the login is handed off to."""

PORT_PROBE_TIMEOUT_SECONDS: Final[float] = 1.0
"""Connect timeout for a single port probe."""

# ============================================================================
# Shutdown Timeouts
# ============================================================================

SHUTDOWN_TIMEOUT_SECONDS: Final[int] = 60
"""Deadline for a graceful (ACPI) shutdown before escalating to stop."""

SHUTDOWN_POLL_INTERVAL_SECONDS: Final[float] = 5.0
"""Interval between power-state checks while shutting down."""

FORCED_STOP_TIMEOUT_SECONDS: Final[int] = 30
"""Deadline for a forced stop to be confirmed."""

# ============================================================================
# Coordination
# ============================================================================

LIFECYCLE_LOCK_TIMEOUT_SECONDS: Final[int] = 300
"""Max wait for another process's provisioning or eviction of the same VM."""

LOCK_POLL_INTERVAL_SECONDS: Final[float] = 0.05
"""Interval between non-blocking flock attempts."""

PROVISION_MAX_ATTEMPTS: Final[int] = 3
"""Attempts for a login when the backend is transiently unavailable."""

PROVISION_RETRY_MIN_SECONDS: Final[float] = 1.0
"""Minimum backoff between provisioning attempts."""

PROVISION_RETRY_MAX_SECONDS: Final[float] = 10.0
"""Maximum backoff between provisioning attempts."""

# ============================================================================
# Backend
# ============================================================================

BACKEND_COMMAND_TIMEOUT_SECONDS: Final[int] = 300
"""Per-command timeout for qm (full clones of large disks are slow)."""

GUEST_ADDRESS_COMMAND: Final[tuple[str, ...]] = ("ip", "-4", "-o", "addr", "show")
"""Command run through the guest agent to discover addresses."""

# ============================================================================
# Persisted Layout
# ============================================================================

ADDRESS_RECORD_SUFFIX: Final[str] = ".lock"
"""vm_<id>.lock holds the resolved address (name kept from the shell tooling)."""

WATERMARK_RECORD_SUFFIX: Final[str] = ".last_active"
"""vm_<id>.last_active holds the last-active epoch timestamp."""

MUTEX_SUFFIX: Final[str] = ".mutex"
"""vm_<id>.mutex is flocked while a record of that VM is mutated."""

LIFECYCLE_SUFFIX: Final[str] = ".lifecycle"
"""vm_<id>.lifecycle is flocked while a VM is being started or stopped."""

REAPER_LOCK_NAME: Final[str] = "cleanup.lock"
"""Reaper pid marker inside the state directory."""
