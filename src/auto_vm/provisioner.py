"""Provisioner: return a ready, reachable VM for an identity, idempotently.

Creating, starting and resolving a VM happen under the key's lifecycle
lease.  The lease is a local file lock, so reading a cached address under
it costs no backend round trip, while a login that arrives during an
eviction waits for the stop to be confirmed and then brings the VM back.

Example:
    ```python
    provisioner = Provisioner(QmBackend(settings), store, CloudLocalDsBuilder(settings), tcp_port_open, config)
    address = await provisioner.acquire(key, public_key)
    ```
"""

from __future__ import annotations

import ipaddress
import logging
import time
from typing import TYPE_CHECKING

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from auto_vm import constants
from auto_vm._logging import get_logger
from auto_vm.bootstrap import BootstrapParams
from auto_vm.exceptions import (
    AddressResolutionFailed,
    BackendCommandError,
    BackendUnavailable,
    BootstrapError,
    ConcurrentProvisionConflict,
    PollTimeoutError,
    PublicKeyNotFoundError,
    ResourceNotReady,
    ServiceNotReady,
)
from auto_vm.models import PowerState
from auto_vm.polling import poll_until

if TYPE_CHECKING:
    from tenacity.wait import wait_base

    from auto_vm.activity import ActivityTracker
    from auto_vm.backend import ResourceBackend
    from auto_vm.bootstrap import BootstrapBuilder
    from auto_vm.config import LifecycleConfig
    from auto_vm.port_probe import PortProbe
    from auto_vm.resource_key import ResourceKey
    from auto_vm.state_store import StateStore

logger = get_logger(__name__)


def first_guest_ipv4(output: str) -> str | None:
    """Pick the first non-loopback IPv4 address from `ip -4 -o addr show`.

    Each line looks like:
        2: eth0    inet 10.0.0.7/24 brd 10.0.0.255 scope global eth0\\ ...
    """
    for line in output.splitlines():
        fields = line.split()
        if len(fields) < 4 or fields[2] != "inet":
            continue
        if fields[1].rstrip(":") == "lo":
            continue
        try:
            interface = ipaddress.ip_interface(fields[3])
        except ValueError:
            continue
        if interface.version == 4 and not interface.ip.is_loopback:
            return str(interface.ip)
    return None


class Provisioner:
    """Brings an identity's VM to ready and returns its address.

    Attributes:
        config: Lifecycle deadlines and naming scheme
    """

    def __init__(
        self,
        backend: ResourceBackend,
        store: StateStore,
        bootstrap_builder: BootstrapBuilder,
        port_probe: PortProbe,
        config: LifecycleConfig,
        *,
        activity: ActivityTracker | None = None,
        retry_wait: wait_base | None = None,
    ) -> None:
        self.backend = backend
        self.store = store
        self.bootstrap_builder = bootstrap_builder
        self.port_probe = port_probe
        self.config = config
        self.activity = activity
        self._retry_wait = retry_wait or wait_random_exponential(
            min=constants.PROVISION_RETRY_MIN_SECONDS,
            max=constants.PROVISION_RETRY_MAX_SECONDS,
        )

    async def acquire(self, key: ResourceKey, public_key: str | None = None) -> str:
        """provision() with retries while the backend is unavailable.

        Only BackendUnavailable is retried; readiness timeouts, command
        failures and bootstrap errors propagate on the first occurrence.
        """
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.config.provision_max_attempts),
            wait=self._retry_wait,
            retry=retry_if_exception_type(BackendUnavailable),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        ):
            with attempt:
                return await self.provision(key, public_key)
        # Unreachable: AsyncRetrying either returns or raises
        raise AssertionError("Unreachable: AsyncRetrying exhausted without exception")

    async def provision(self, key: ResourceKey, public_key: str | None = None) -> str:
        """Return the address of the key's VM once its SSH port accepts connections.

        Args:
            key: Resource key of the identity
            public_key: Authorized key for a new VM; only needed when the VM
                does not exist yet

        Raises:
            ResourceNotReady: VM never became running with a responsive agent
            AddressResolutionFailed: Guest reported no usable IPv4 address
            ServiceNotReady: SSH port never opened
            PublicKeyNotFoundError: VM must be created but no key was given
            LifecycleLockTimeout: Another process held the lease too long
            BackendUnavailable: qm could not be run
        """
        started = time.monotonic()
        async with self.store.lifecycle_lock(key.vm_id, timeout=self.config.lifecycle_lock_timeout_seconds):
            entry = await self.store.get(key.vm_id)
            if entry is not None and entry.resolved_address is not None:
                address = entry.resolved_address
                logger.info("Retrieved VM IP from state", extra={"vm_id": key.vm_id, "address": address})
            else:
                address = await self._bring_up(key, public_key)
            if self.activity is not None:
                await self.activity.record_handoff(key)

        await self._wait_for_service(key, address)
        logger.info(
            "VM ready",
            extra={
                "vm_id": key.vm_id,
                "identity": key.identity,
                "address": address,
                "elapsed": round(time.monotonic() - started, 3),
            },
        )
        return address

    # -------------------------------------------------------------------------
    # Steps
    # -------------------------------------------------------------------------

    async def _bring_up(self, key: ResourceKey, public_key: str | None) -> str:
        state = await self.backend.power_state(key.vm_id)
        if state == PowerState.ABSENT:
            await self._create(key, public_key)
        elif state != PowerState.RUNNING:
            logger.info("Starting VM", extra={"vm_id": key.vm_id, "state": state.value})
            await self.backend.start(key.vm_id)
        else:
            logger.info("VM already running", extra={"vm_id": key.vm_id})

        await self._wait_for_guest(key)
        address = await self._resolve_address(key)
        return await self.store.put(key.vm_id, address)

    async def _create(self, key: ResourceKey, public_key: str | None) -> None:
        if public_key is None:
            raise PublicKeyNotFoundError(
                f"VM {key.vm_id} must be created but no public key is available for {key.identity}",
                context={"vm_id": key.vm_id, "identity": key.identity},
            )

        logger.info("VM does not exist; creating", extra={"vm_id": key.vm_id, "identity": key.identity})
        try:
            await self.backend.clone(self.config.template_id, key.vm_id, key.vm_name)
        except ConcurrentProvisionConflict as e:
            # Someone else created it between our status check and clone; its
            # seed image is left untouched
            logger.warning(e.message, extra={"vm_id": key.vm_id})
            if await self.backend.power_state(key.vm_id) != PowerState.RUNNING:
                await self.backend.start(key.vm_id)
            return

        try:
            image = await self.bootstrap_builder.build(
                BootstrapParams(identity=key.identity, hostname=key.vm_name, public_key=public_key, vm_id=key.vm_id)
            )
        except BootstrapError:
            # A clone without its seed image would boot without the user's account
            logger.error("Bootstrap failed; removing fresh clone", extra={"vm_id": key.vm_id})
            await self.backend.destroy(key.vm_id)
            raise

        await self.backend.set_config(key.vm_id, "ide2", f"{image},media=cdrom")
        await self.backend.set_config(key.vm_id, "agent", "enabled=1")
        logger.info("Starting VM", extra={"vm_id": key.vm_id, "state": PowerState.ABSENT.value})
        await self.backend.start(key.vm_id)

    async def _wait_for_guest(self, key: ResourceKey) -> None:
        async def guest_ready() -> bool:
            state = await self.backend.power_state(key.vm_id)
            if state != PowerState.RUNNING:
                logger.debug("VM not yet running", extra={"vm_id": key.vm_id, "state": state.value})
                return False
            return await self.backend.ping_guest_channel(key.vm_id)

        try:
            await poll_until(
                guest_ready,
                interval=self.config.boot_poll_interval_seconds,
                timeout=self.config.boot_timeout_seconds,
                description=f"VM {key.vm_id} running with guest agent",
                retry_on=(BackendCommandError,),
                context={"vm_id": key.vm_id},
            )
        except PollTimeoutError as e:
            raise ResourceNotReady(
                f"VM {key.vm_id} did not start with a responsive guest agent "
                f"within {self.config.boot_timeout_seconds:g}s",
                context={"vm_id": key.vm_id, **e.context},
            ) from e

    async def _resolve_address(self, key: ResourceKey) -> str:
        async def guest_address() -> str | None:
            output = await self.backend.exec_in_guest(key.vm_id, list(constants.GUEST_ADDRESS_COMMAND))
            return first_guest_ipv4(output)

        try:
            address = await poll_until(
                guest_address,
                interval=self.config.address_poll_interval_seconds,
                timeout=self.config.address_timeout_seconds,
                description=f"IPv4 address of VM {key.vm_id}",
                retry_on=(BackendCommandError,),
                context={"vm_id": key.vm_id},
            )
        except PollTimeoutError as e:
            raise AddressResolutionFailed(
                f"Failed to retrieve IP address for VM {key.vm_id}",
                context={"vm_id": key.vm_id, **e.context},
            ) from e
        logger.info("VM IP resolved", extra={"vm_id": key.vm_id, "address": address})
        return address

    async def _wait_for_service(self, key: ResourceKey, address: str) -> None:
        port = self.config.ssh_port
        try:
            await poll_until(
                lambda: self.port_probe(address, port),
                interval=self.config.service_poll_interval_seconds,
                timeout=self.config.service_timeout_seconds,
                description=f"SSH on {address}:{port}",
                context={"vm_id": key.vm_id, "address": address},
            )
        except PollTimeoutError as e:
            raise ServiceNotReady(
                f"SSH service on VM {key.vm_id} ({address}:{port}) not ready "
                f"after {self.config.service_timeout_seconds:g}s",
                context={"vm_id": key.vm_id, "address": address, "port": port, **e.context},
            ) from e
