"""Shared pytest fixtures for auto-vm tests.

No test here touches a real hypervisor: the backend, the session observer
and the bootstrap builder are in-memory fakes, and the state store writes
into tmp_path.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from auto_vm.activity import ActivityTracker
from auto_vm.bootstrap import BootstrapParams
from auto_vm.config import LifecycleConfig
from auto_vm.exceptions import BackendCommandError, BackendUnavailable, BootstrapError, ConcurrentProvisionConflict
from auto_vm.models import PowerState
from auto_vm.state_store import FileStateStore

# ============================================================================
# Clock
# ============================================================================


class FakeClock:
    """Wall clock under test control (epoch seconds)."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def advance_minutes(self, minutes: float) -> None:
        self.now += minutes * 60.0


# ============================================================================
# Backend
# ============================================================================


def guest_addr_output(address: str, prefix: int = 24) -> str:
    """Output of `ip -4 -o addr show` in a guest with one NIC."""
    return (
        "1: lo    inet 127.0.0.1/8 scope host lo\\       valid_lft forever preferred_lft forever\n"
        f"2: eth0    inet {address}/{prefix} brd 10.0.0.255 scope global dynamic eth0\\"
        "       valid_lft 86355sec preferred_lft 86355sec\n"
    )


class FakeBackend:
    """In-memory ResourceBackend with call counters and scripted behaviour.

    Attributes:
        vms: Current power state per VM id (absent VMs are missing)
        boot_polls: power_state() calls after start() that still report stopped
        agent_ready: Whether the guest agent answers pings
        graceful_stop_works: Whether graceful_stop() actually stops the VM
        forced_stop_works: Whether forced_stop() actually stops the VM
        clone_delay: Seconds clone() takes (widens race windows)
        unavailable_calls: Number of upcoming power_state() calls that raise
            BackendUnavailable
        guest_output: Per-VM override of the guest's address listing
    """

    def __init__(self) -> None:
        self.vms: dict[int, PowerState] = {}
        self.config: dict[int, dict[str, str]] = {}
        self.calls: list[tuple[str, int]] = []
        self.boot_polls = 0
        self.agent_ready = True
        self.graceful_stop_works = True
        self.forced_stop_works = True
        self.clone_delay = 0.0
        self.unavailable_calls = 0
        self.guest_output: dict[int, str] = {}
        self._pending_boot: dict[int, int] = {}

    def count(self, operation: str, vm_id: int | None = None) -> int:
        return sum(1 for op, vid in self.calls if op == operation and (vm_id is None or vid == vm_id))

    @staticmethod
    def address_of(vm_id: int) -> str:
        return f"10.0.{vm_id // 250}.{vm_id % 250 + 2}"

    async def clone(self, template_id: int, vm_id: int, name: str) -> None:
        self.calls.append(("clone", vm_id))
        if self.clone_delay:
            await asyncio.sleep(self.clone_delay)
        if vm_id in self.vms:
            raise ConcurrentProvisionConflict(f"VM {vm_id} already exists", context={"vm_id": vm_id})
        self.vms[vm_id] = PowerState.STOPPED
        self.config[vm_id] = {"name": name, "template": str(template_id)}

    async def set_config(self, vm_id: int, key: str, value: str) -> None:
        self.calls.append(("set_config", vm_id))
        self.config.setdefault(vm_id, {})[key] = value

    async def start(self, vm_id: int) -> None:
        self.calls.append(("start", vm_id))
        if vm_id not in self.vms:
            raise BackendCommandError(
                f"Configuration file for VM {vm_id} does not exist", argv=["qm", "start", str(vm_id)], returncode=2
            )
        if self.boot_polls:
            self._pending_boot[vm_id] = self.boot_polls
        else:
            self.vms[vm_id] = PowerState.RUNNING

    async def graceful_stop(self, vm_id: int) -> None:
        self.calls.append(("graceful_stop", vm_id))
        if self.graceful_stop_works and vm_id in self.vms:
            self.vms[vm_id] = PowerState.STOPPED

    async def forced_stop(self, vm_id: int) -> None:
        self.calls.append(("forced_stop", vm_id))
        if self.forced_stop_works and vm_id in self.vms:
            self.vms[vm_id] = PowerState.STOPPED

    async def destroy(self, vm_id: int) -> None:
        self.calls.append(("destroy", vm_id))
        self.vms.pop(vm_id, None)
        self.config.pop(vm_id, None)

    async def power_state(self, vm_id: int) -> PowerState:
        self.calls.append(("power_state", vm_id))
        if self.unavailable_calls > 0:
            self.unavailable_calls -= 1
            raise BackendUnavailable("qm did not respond", context={"vm_id": vm_id})
        pending = self._pending_boot.get(vm_id)
        if pending is not None:
            if pending <= 0:
                del self._pending_boot[vm_id]
                self.vms[vm_id] = PowerState.RUNNING
            else:
                self._pending_boot[vm_id] = pending - 1
        return self.vms.get(vm_id, PowerState.ABSENT)

    async def exec_in_guest(self, vm_id: int, argv: list[str]) -> str:
        self.calls.append(("exec_in_guest", vm_id))
        if self.vms.get(vm_id) != PowerState.RUNNING:
            raise BackendCommandError(f"VM {vm_id} not running", argv=argv, returncode=255)
        return self.guest_output.get(vm_id, guest_addr_output(self.address_of(vm_id)))

    async def ping_guest_channel(self, vm_id: int) -> bool:
        self.calls.append(("ping_guest_channel", vm_id))
        return self.agent_ready and self.vms.get(vm_id) == PowerState.RUNNING


# ============================================================================
# Session observer / bootstrap builder / port probe
# ============================================================================


class FakeSessionObserver:
    """SessionObserver reporting a fixed set of logged-in identities."""

    def __init__(self) -> None:
        self.live: set[str] = set()

    async def has_live_session(self, identity: str) -> bool:
        return identity in self.live


@dataclass
class FakeBootstrapBuilder:
    """BootstrapBuilder recording what it was asked to build."""

    built: list[BootstrapParams] = field(default_factory=list)
    removed: list[int] = field(default_factory=list)
    fail: bool = False

    async def build(self, params: BootstrapParams) -> str:
        self.built.append(params)
        if self.fail:
            raise BootstrapError(f"Failed to write seed image for VM {params.vm_id}")
        return f"local:iso/cloudinit_{params.vm_id}.iso"

    async def remove(self, vm_id: int) -> bool:
        self.removed.append(vm_id)
        return True


class FakePortProbe:
    """PortProbe that opens the port after a number of failed probes."""

    def __init__(self, closed_probes: int = 0, *, never: bool = False) -> None:
        self.closed_probes = closed_probes
        self.never = never
        self.probes: list[tuple[str, int]] = []

    async def __call__(self, address: str, port: int) -> bool:
        self.probes.append((address, port))
        if self.never:
            return False
        if self.closed_probes > 0:
            self.closed_probes -= 1
            return False
        return True


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def fast_config() -> LifecycleConfig:
    """Lifecycle config with deadlines short enough for unit tests."""
    return LifecycleConfig(
        boot_timeout_seconds=0.5,
        boot_poll_interval_seconds=0.01,
        address_timeout_seconds=0.3,
        address_poll_interval_seconds=0.01,
        service_timeout_seconds=0.3,
        service_poll_interval_seconds=0.01,
        shutdown_timeout_seconds=0.2,
        shutdown_poll_interval_seconds=0.01,
        forced_stop_timeout_seconds=0.2,
        lifecycle_lock_timeout_seconds=2.0,
        provision_max_attempts=3,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def state_dir(tmp_path: Path) -> Path:
    return tmp_path / "state"


@pytest.fixture
def store(state_dir: Path, clock: FakeClock) -> FileStateStore:
    return FileStateStore(state_dir, clock=clock, lock_poll_interval=0.005)


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def observer() -> FakeSessionObserver:
    return FakeSessionObserver()


@pytest.fixture
def builder() -> FakeBootstrapBuilder:
    return FakeBootstrapBuilder()


@pytest.fixture
def port_probe() -> FakePortProbe:
    return FakePortProbe()


@pytest.fixture
def activity(store: FileStateStore, observer: FakeSessionObserver, clock: FakeClock) -> ActivityTracker:
    return ActivityTracker(store, observer, clock=clock)
