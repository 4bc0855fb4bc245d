"""Exception hierarchy for auto-vm.

All exceptions inherit from AutoVmError.

Hierarchy:
    AutoVmError (base)
    ├── TransientError (retryable marker base)
    │   ├── BackendUnavailable          ← qm missing, hung or killed by timeout
    │   └── LifecycleLockTimeout        ← another process held the VM's lease too long
    ├── PermanentError (non-retryable marker base)
    │   ├── BackendCommandError         ← qm exited non-zero
    │   ├── ReadinessTimeoutError
    │   │   ├── ResourceNotReady        ← guest agent never answered
    │   │   └── ServiceNotReady         ← SSH port never opened
    │   ├── AddressResolutionFailed     ← guest reported no usable IPv4
    │   ├── BootstrapError              ← cloud-init image could not be built
    │   ├── PublicKeyNotFoundError      ← identity has no stored public key
    │   └── InvalidIdentityError        ← identity does not match the naming scheme
    ├── ConcurrentProvisionConflict     ← clone raced a concurrent creator (resolved locally)
    ├── StaleEntry                      ← stored state disagrees with the backend (resolved locally)
    ├── PollTimeoutError                ← generic poll_until deadline
    ├── StateStoreError                 ← persisted records unreadable/unwritable
    └── ReaperAlreadyRunning            ← a live reaper holds the pid marker
"""

from __future__ import annotations

from typing import Any


class AutoVmError(Exception):
    """Base exception for all auto-vm errors with structured context.

    Attributes:
        message: Human-readable error message
        context: Dictionary of structured error context for logging
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


# =============================================================================
# Transient vs Permanent Error Base Classes
# =============================================================================


class TransientError(AutoVmError):
    """Base for errors that may succeed if the whole attempt is retried."""


class PermanentError(AutoVmError):
    """Base for errors that will not succeed on retry without intervention."""


# =============================================================================
# Backend Errors
# =============================================================================


class BackendUnavailable(TransientError):
    """The backend could not be reached.

    Raised when the qm binary is missing or a command does not finish within
    its timeout.  The caller may retry the whole connection attempt.
    """


class BackendCommandError(PermanentError):
    """A backend command ran and reported failure.

    Attributes:
        argv: Command that failed
        returncode: Exit status
        stderr: Captured standard error
    """

    def __init__(
        self,
        message: str,
        *,
        argv: list[str],
        returncode: int,
        stderr: str = "",
        context: dict[str, Any] | None = None,
    ):
        ctx = context or {}
        ctx.update({"argv": argv, "returncode": returncode, "stderr": stderr})
        super().__init__(message, ctx)
        self.argv = argv
        self.returncode = returncode
        self.stderr = stderr


# =============================================================================
# Provisioning Errors
# =============================================================================


class ReadinessTimeoutError(PermanentError):
    """A bounded readiness wait expired.

    Surfaced to the caller as a failed connection attempt; not retried
    automatically.
    """


class ResourceNotReady(ReadinessTimeoutError):
    """The VM did not reach running with a responsive guest agent in time."""


class ServiceNotReady(ReadinessTimeoutError):
    """The VM's SSH port did not accept connections in time."""


class AddressResolutionFailed(PermanentError):
    """The guest agent answered but reported no non-loopback IPv4 address.

    The VM is up but unusable; the address is never cached.
    """


class BootstrapError(PermanentError):
    """Building the cloud-init image failed."""


class PublicKeyNotFoundError(PermanentError):
    """No public key is stored for the identity."""


class InvalidIdentityError(PermanentError):
    """The identity does not follow the <prefix><number> naming scheme."""


class ConcurrentProvisionConflict(AutoVmError):
    """A clone found the VM id already taken by a concurrent creator.

    Resolved inside the Provisioner by treating the VM as existing; never
    surfaced to the caller.
    """


class StaleEntry(AutoVmError):
    """A state entry points at a VM that is not running.

    Detected and recovered by the reaper through deletion; never surfaced.
    """


# =============================================================================
# Coordination Errors
# =============================================================================


class LifecycleLockTimeout(TransientError):
    """The per-VM lifecycle lease could not be acquired in time."""


class PollTimeoutError(AutoVmError):
    """poll_until() gave up waiting.

    Attributes:
        description: What was being waited for
        elapsed: Seconds spent waiting
    """

    def __init__(self, message: str, *, description: str, elapsed: float):
        super().__init__(message, {"description": description, "elapsed": round(elapsed, 3)})
        self.description = description
        self.elapsed = elapsed


class StateStoreError(AutoVmError):
    """A persisted record could not be read or written."""


class ReaperAlreadyRunning(AutoVmError):
    """Another live reaper process holds the mutual-exclusion marker.

    Attributes:
        pid: Process id recorded in the marker
    """

    def __init__(self, message: str, pid: int):
        super().__init__(message, {"pid": pid})
        self.pid = pid
