"""auto-vm: on-demand per-user VMs on Proxmox VE.

Each identity (OS account vm_user_XX) owns one VM cloned from a template.
Logging in starts the VM (creating it on first use) and splices the SSH
session to it; a periodic reaper shuts down VMs idle past a threshold.

Login (SSH ForceCommand):
    ```python
    from auto_vm import LifecycleConfig, Provisioner, ResourceKey

    key = ResourceKey.from_identity("vm_user_07", config)
    address = await provisioner.acquire(key, public_key)
    ```

Reaper (cron, every minute):
    ```python
    from auto_vm import Reaper

    report = await reaper.sweep()
    print(report.evicted)
    ```

Requirements:
    - Proxmox VE host with `qm` and `cloud-localds`
    - A template VM with cloud-init and the QEMU guest agent
    - Python 3.12+
"""

from auto_vm.activity import ActivityTracker, PsutilSessionObserver, SessionObserver
from auto_vm.backend import QmBackend, ResourceBackend
from auto_vm.bootstrap import BootstrapBuilder, BootstrapParams, CloudLocalDsBuilder
from auto_vm.config import LifecycleConfig
from auto_vm.exceptions import (
    AddressResolutionFailed,
    AutoVmError,
    BackendCommandError,
    BackendUnavailable,
    BootstrapError,
    ConcurrentProvisionConflict,
    InvalidIdentityError,
    LifecycleLockTimeout,
    PermanentError,
    PollTimeoutError,
    PublicKeyNotFoundError,
    ReadinessTimeoutError,
    ReaperAlreadyRunning,
    ResourceNotReady,
    ServiceNotReady,
    StaleEntry,
    StateStoreError,
    TransientError,
)
from auto_vm.models import EvictionOutcome, EvictionResult, PowerState, StateEntry, SweepReport
from auto_vm.provisioner import Provisioner
from auto_vm.reaper import Reaper
from auto_vm.resource_key import ResourceKey
from auto_vm.settings import Settings
from auto_vm.state_store import FileStateStore, StateStore

__all__ = [
    "ActivityTracker",
    "AddressResolutionFailed",
    "AutoVmError",
    "BackendCommandError",
    "BackendUnavailable",
    "BootstrapBuilder",
    "BootstrapError",
    "BootstrapParams",
    "CloudLocalDsBuilder",
    "ConcurrentProvisionConflict",
    "EvictionOutcome",
    "EvictionResult",
    "FileStateStore",
    "InvalidIdentityError",
    "LifecycleConfig",
    "LifecycleLockTimeout",
    "PermanentError",
    "PollTimeoutError",
    "PowerState",
    "Provisioner",
    "PsutilSessionObserver",
    "PublicKeyNotFoundError",
    "QmBackend",
    "ReadinessTimeoutError",
    "Reaper",
    "ReaperAlreadyRunning",
    "ResourceBackend",
    "ResourceKey",
    "ResourceNotReady",
    "ServiceNotReady",
    "SessionObserver",
    "Settings",
    "StaleEntry",
    "StateEntry",
    "StateStore",
    "StateStoreError",
    "SweepReport",
    "TransientError",
]

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("auto-vm")
except PackageNotFoundError:
    __version__ = "0.0.0.dev0"
