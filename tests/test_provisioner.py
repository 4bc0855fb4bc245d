"""Tests for Provisioner.

Drives the provisioning algorithm against FakeBackend: creation on first use,
restart of a stopped VM, the cached-address fast path, readiness deadlines
and concurrent first use of the same identity.
"""

from __future__ import annotations

import asyncio

import pytest
from tenacity import wait_none

from auto_vm.config import LifecycleConfig
from auto_vm.exceptions import (
    AddressResolutionFailed,
    BackendCommandError,
    BackendUnavailable,
    BootstrapError,
    LifecycleLockTimeout,
    PublicKeyNotFoundError,
    ResourceNotReady,
    ServiceNotReady,
)
from auto_vm.models import PowerState
from auto_vm.provisioner import Provisioner, first_guest_ipv4
from auto_vm.resource_key import ResourceKey
from tests.conftest import FakeBackend, FakePortProbe, guest_addr_output

PUBLIC_KEY = "ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIGx0 vm_user_07@laptop"


@pytest.fixture
def key(fast_config: LifecycleConfig) -> ResourceKey:
    return ResourceKey.from_identity("vm_user_07", fast_config)


@pytest.fixture
def provisioner(backend, store, builder, port_probe, fast_config, activity) -> Provisioner:
    return Provisioner(backend, store, builder, port_probe, fast_config, activity=activity, retry_wait=wait_none())


# ============================================================================
# Address parsing
# ============================================================================


class TestFirstGuestIpv4:
    def test_skips_loopback(self) -> None:
        assert first_guest_ipv4(guest_addr_output("192.168.1.50")) == "192.168.1.50"

    def test_first_non_loopback_wins(self) -> None:
        output = (
            "1: lo    inet 127.0.0.1/8 scope host lo\n"
            "2: eth0    inet 10.0.0.5/24 scope global eth0\n"
            "3: docker0    inet 172.17.0.1/16 scope global docker0\n"
        )
        assert first_guest_ipv4(output) == "10.0.0.5"

    def test_only_loopback(self) -> None:
        assert first_guest_ipv4("1: lo    inet 127.0.0.1/8 scope host lo\n") is None

    def test_empty_output(self) -> None:
        assert first_guest_ipv4("") is None

    def test_ignores_garbage_lines(self) -> None:
        output = "garbage\n2: eth0    inet not-an-ip scope global eth0\n3: eth1    inet 10.1.2.3/16 scope global\n"
        assert first_guest_ipv4(output) == "10.1.2.3"


# ============================================================================
# Creation and restart
# ============================================================================


class TestProvisionNewVm:
    """First use of an identity creates its VM."""

    async def test_creates_configures_and_starts(self, provisioner, backend, builder, key) -> None:
        address = await provisioner.provision(key, PUBLIC_KEY)

        assert address == FakeBackend.address_of(207)
        assert backend.count("clone", 207) == 1
        assert backend.vms[207] == PowerState.RUNNING
        assert backend.config[207]["ide2"] == "local:iso/cloudinit_207.iso,media=cdrom"
        assert backend.config[207]["agent"] == "enabled=1"
        assert backend.config[207]["name"] == "user-vm-207"
        assert backend.config[207]["template"] == "9000"

    async def test_bootstrap_params(self, provisioner, builder, key) -> None:
        await provisioner.provision(key, PUBLIC_KEY)

        assert len(builder.built) == 1
        params = builder.built[0]
        assert params.identity == "vm_user_07"
        assert params.hostname == "user-vm-207"
        assert params.public_key == PUBLIC_KEY
        assert params.vm_id == 207

    async def test_stores_address_and_stamps_activity(self, provisioner, store, clock, key) -> None:
        address = await provisioner.provision(key, PUBLIC_KEY)

        entry = await store.get(207)
        assert entry is not None
        assert entry.resolved_address == address
        assert entry.last_active == pytest.approx(clock.now)

    async def test_missing_public_key_fails_before_clone(self, provisioner, backend, key) -> None:
        with pytest.raises(PublicKeyNotFoundError):
            await provisioner.provision(key, None)
        assert backend.count("clone") == 0

    async def test_bootstrap_failure_removes_clone(self, provisioner, backend, builder, store, key) -> None:
        builder.fail = True

        with pytest.raises(BootstrapError):
            await provisioner.provision(key, PUBLIC_KEY)

        assert backend.count("clone", 207) == 1
        assert backend.count("destroy", 207) == 1
        assert backend.count("start") == 0
        assert 207 not in backend.vms
        assert await store.get(207) is None

    async def test_waits_for_boot(self, provisioner, backend, key) -> None:
        backend.boot_polls = 5

        await provisioner.provision(key, PUBLIC_KEY)

        assert backend.vms[207] == PowerState.RUNNING


class TestProvisionExistingVm:
    async def test_stopped_vm_is_started_not_cloned(self, provisioner, backend, builder, key) -> None:
        backend.vms[207] = PowerState.STOPPED

        address = await provisioner.provision(key)

        assert address == FakeBackend.address_of(207)
        assert backend.count("clone") == 0
        assert backend.count("start", 207) == 1
        assert builder.built == []

    async def test_running_vm_without_entry_is_adopted(self, provisioner, backend, store, key) -> None:
        backend.vms[207] = PowerState.RUNNING

        address = await provisioner.provision(key)

        assert backend.count("start") == 0
        assert (await store.get(207)).resolved_address == address

    async def test_unknown_state_is_started(self, provisioner, backend, key) -> None:
        backend.vms[207] = PowerState.UNKNOWN

        await provisioner.provision(key)

        assert backend.count("start", 207) == 1


class TestCachedAddress:
    """A stored address is trusted without asking the backend."""

    async def test_no_backend_calls(self, provisioner, backend, store, key) -> None:
        await store.put(207, "10.9.9.9")

        address = await provisioner.provision(key)

        assert address == "10.9.9.9"
        assert backend.calls == []

    async def test_still_waits_for_service(self, provisioner, store, port_probe, key) -> None:
        await store.put(207, "10.9.9.9")

        await provisioner.provision(key)

        assert port_probe.probes == [("10.9.9.9", 22)]

    async def test_stamps_activity(self, provisioner, store, clock, key) -> None:
        await store.put(207, "10.9.9.9")
        clock.advance_minutes(30)

        await provisioner.provision(key)

        assert (await store.get(207)).last_active == pytest.approx(clock.now)


# ============================================================================
# Readiness deadlines
# ============================================================================


class TestReadiness:
    async def test_agent_never_answers(self, provisioner, backend, store, key) -> None:
        backend.agent_ready = False

        with pytest.raises(ResourceNotReady) as exc_info:
            await provisioner.provision(key, PUBLIC_KEY)

        assert exc_info.value.context["vm_id"] == 207
        assert await store.get(207) is None

    async def test_vm_never_runs(self, provisioner, backend, key) -> None:
        backend.boot_polls = 10_000

        with pytest.raises(ResourceNotReady):
            await provisioner.provision(key, PUBLIC_KEY)

    async def test_no_ipv4_is_not_cached(self, provisioner, backend, store, key) -> None:
        backend.guest_output[207] = "1: lo    inet 127.0.0.1/8 scope host lo\n"

        with pytest.raises(AddressResolutionFailed):
            await provisioner.provision(key, PUBLIC_KEY)

        assert await store.get(207) is None

    async def test_address_appears_late(self, provisioner, backend, key) -> None:
        calls = 0
        original = backend.exec_in_guest

        async def late_address(vm_id: int, argv: list[str]) -> str:
            nonlocal calls
            calls += 1
            if calls < 3:
                return "1: lo    inet 127.0.0.1/8 scope host lo\n"
            return await original(vm_id, argv)

        backend.exec_in_guest = late_address

        assert await provisioner.provision(key, PUBLIC_KEY) == FakeBackend.address_of(207)
        assert calls == 3

    async def test_ssh_never_opens(self, backend, store, builder, fast_config, activity, key) -> None:
        provisioner = Provisioner(backend, store, builder, FakePortProbe(never=True), fast_config, activity=activity)

        with pytest.raises(ServiceNotReady) as exc_info:
            await provisioner.provision(key, PUBLIC_KEY)

        # The address was resolved and stays cached for the next attempt
        assert (await store.get(207)).resolved_address == FakeBackend.address_of(207)
        assert exc_info.value.context["port"] == 22

    async def test_ssh_opens_after_retries(self, backend, store, builder, fast_config, key) -> None:
        probe = FakePortProbe(closed_probes=4)
        provisioner = Provisioner(backend, store, builder, probe, fast_config)

        await provisioner.provision(key, PUBLIC_KEY)

        assert len(probe.probes) == 5


# ============================================================================
# Concurrency
# ============================================================================


class TestConcurrentFirstUse:
    async def test_single_clone_and_same_address(self, provisioner, backend, key) -> None:
        """Ten simultaneous first logins clone once and agree on the address."""
        backend.clone_delay = 0.05

        addresses = await asyncio.gather(*(provisioner.provision(key, PUBLIC_KEY) for _ in range(10)))

        assert backend.count("clone") == 1
        assert len(set(addresses)) == 1

    async def test_separate_provisioners_share_the_store(
        self, backend, store, builder, port_probe, fast_config, activity, key
    ) -> None:
        """Two login processes (separate Provisioner objects) on one state directory."""
        backend.clone_delay = 0.05
        first = Provisioner(backend, store, builder, port_probe, fast_config, activity=activity)
        second = Provisioner(backend, store, builder, port_probe, fast_config, activity=activity)

        a, b = await asyncio.gather(first.provision(key, PUBLIC_KEY), second.provision(key, PUBLIC_KEY))

        assert a == b
        assert backend.count("clone") == 1

    async def test_clone_conflict_treated_as_existing(self, provisioner, backend, builder, key) -> None:
        """An out-of-band creator wins the race between status and clone."""
        original_clone = backend.clone

        async def racing_clone(template_id: int, vm_id: int, name: str) -> None:
            backend.vms[vm_id] = PowerState.STOPPED
            await original_clone(template_id, vm_id, name)

        backend.clone = racing_clone

        address = await provisioner.provision(key, PUBLIC_KEY)

        assert address == FakeBackend.address_of(207)
        assert backend.count("start", 207) == 1
        assert backend.count("set_config") == 0
        assert builder.built == []

    async def test_lease_held_too_long(self, backend, store, builder, port_probe, key) -> None:
        config = LifecycleConfig(lifecycle_lock_timeout_seconds=0.05)
        provisioner = Provisioner(backend, store, builder, port_probe, config)

        async with store.lifecycle_lock(207, timeout=1.0):
            with pytest.raises(LifecycleLockTimeout):
                await provisioner.provision(key, PUBLIC_KEY)


# ============================================================================
# Retries
# ============================================================================


class TestAcquire:
    async def test_retries_transient_backend_failure(self, provisioner, backend, key) -> None:
        backend.unavailable_calls = 2

        address = await provisioner.acquire(key, PUBLIC_KEY)

        assert address == FakeBackend.address_of(207)
        assert backend.count("clone") == 1

    async def test_gives_up_after_max_attempts(self, provisioner, backend, key) -> None:
        backend.unavailable_calls = 100

        with pytest.raises(BackendUnavailable):
            await provisioner.acquire(key, PUBLIC_KEY)

        assert backend.count("power_state") == 3

    async def test_permanent_errors_not_retried(self, provisioner, backend, key) -> None:
        backend.agent_ready = False

        with pytest.raises(ResourceNotReady):
            await provisioner.acquire(key, PUBLIC_KEY)

        assert backend.count("clone") == 1

    async def test_command_error_not_retried(self, provisioner, backend, key) -> None:
        async def failing_clone(template_id: int, vm_id: int, name: str) -> None:
            backend.calls.append(("clone", vm_id))
            raise BackendCommandError("storage full", argv=["qm", "clone"], returncode=1)

        backend.clone = failing_clone

        with pytest.raises(BackendCommandError):
            await provisioner.acquire(key, PUBLIC_KEY)

        assert backend.count("clone") == 1

