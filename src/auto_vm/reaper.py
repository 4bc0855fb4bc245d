"""Reaper: reconcile state with the backend and shut down idle VMs.

One sweep runs two passes over the stored entries:

1. Reconciliation: an entry whose VM is not running (stopped, unknown or
   gone) is stale and is deleted.
2. Idleness: an identity with a live SSH session is refreshed and skipped;
   a VM idle for at least the threshold is evicted in the background.

Every eviction started by a sweep is awaited before the sweep returns, and an
error on one VM never stops the others.  The two passes are serialized
across processes by a pid marker, released before evictions are awaited.
Each eviction holds the VM's lifecycle lease, so it never overlaps a
provisioning or another sweep's eviction of the same VM.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from typing import TYPE_CHECKING

from auto_vm._logging import get_logger
from auto_vm.exceptions import (
    AutoVmError,
    BackendCommandError,
    LifecycleLockTimeout,
    PollTimeoutError,
    ReaperAlreadyRunning,
    StaleEntry,
)
from auto_vm.models import EvictionOutcome, EvictionResult, PowerState, SweepReport
from auto_vm.polling import poll_until
from auto_vm.process_lock import PidLock
from auto_vm.resource_key import ResourceKey

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

    from auto_vm.activity import ActivityTracker
    from auto_vm.backend import ResourceBackend
    from auto_vm.bootstrap import BootstrapBuilder
    from auto_vm.config import LifecycleConfig
    from auto_vm.state_store import StateStore

logger = get_logger(__name__)

_STOPPED_STATES = frozenset({PowerState.STOPPED, PowerState.ABSENT})


class Reaper:
    """Periodic idle-VM collector."""

    def __init__(
        self,
        backend: ResourceBackend,
        store: StateStore,
        activity: ActivityTracker,
        config: LifecycleConfig,
        lock_path: Path,
        *,
        bootstrap_builder: BootstrapBuilder | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.backend = backend
        self.store = store
        self.activity = activity
        self.config = config
        self.lock_path = lock_path
        self.bootstrap_builder = bootstrap_builder
        self._clock = clock
        self._eviction_tasks: dict[asyncio.Task[EvictionOutcome], int] = {}

    @property
    def eviction_task_count(self) -> int:
        """Number of in-flight evictions."""
        return len(self._eviction_tasks)

    # -------------------------------------------------------------------------
    # Sweep
    # -------------------------------------------------------------------------

    async def sweep(self) -> SweepReport:
        """Run one reconciliation + idleness sweep.

        The pid marker covers both passes only.  Evictions they started are
        awaited after it is released, so a slow shutdown never turns the
        next scheduled run away; that run skips the VM because the eviction
        holds its lifecycle lease.

        Raises:
            ReaperAlreadyRunning: Another live reaper holds the pid marker
        """
        started = time.monotonic()
        with PidLock(self.lock_path):
            report, scheduled = await self._scan()

        if scheduled:
            logger.info("Waiting for evictions", extra={"count": len(scheduled)})
            results = await asyncio.gather(*scheduled, return_exceptions=True)
            for vm_id, result in zip(scheduled.values(), results, strict=True):
                if isinstance(result, EvictionOutcome):
                    report.evictions[vm_id] = result
                else:
                    report.errors[vm_id] = str(result)

        logger.info(
            "Sweep finished",
            extra={
                "examined": len(report.examined),
                "stale_removed": len(report.stale_removed),
                "active": len(report.active),
                "idle_kept": len(report.idle_kept),
                "busy": len(report.busy),
                "evicted": len(report.evicted),
                "errors": len(report.errors),
                "elapsed": round(time.monotonic() - started, 3),
            },
        )
        return report

    async def _scan(self) -> tuple[SweepReport, dict[asyncio.Task[EvictionOutcome], int]]:
        """Reconciliation and idleness passes; return the report and the started evictions."""
        report = SweepReport()
        report.examined = await self.store.list_keys()
        logger.info("Checking state entries", extra={"count": len(report.examined)})

        survivors: list[ResourceKey] = []
        for vm_id in report.examined:
            try:
                key = ResourceKey.from_vm_id(vm_id, self.config)
                await self._reconcile(key)
            except StaleEntry as e:
                logger.info(e.message, extra=e.context)
                report.stale_removed.append(vm_id)
            except LifecycleLockTimeout:
                logger.info("VM is being provisioned; skipping", extra={"vm_id": vm_id})
                report.busy.append(vm_id)
            except (AutoVmError, OSError) as e:
                logger.error("Reconciliation failed", extra={"vm_id": vm_id, "error": str(e)})
                report.errors[vm_id] = str(e)
            else:
                survivors.append(key)

        scheduled: dict[asyncio.Task[EvictionOutcome], int] = {}
        for key in survivors:
            try:
                task = await self._check_idle(key, report)
            except (AutoVmError, OSError) as e:
                logger.error("Idle check failed", extra={"vm_id": key.vm_id, "error": str(e)})
                report.errors[key.vm_id] = str(e)
            else:
                if task is not None:
                    scheduled[task] = key.vm_id
        return report, scheduled

    async def _reconcile(self, key: ResourceKey) -> None:
        """Delete the entry if its VM is not running.

        Raises:
            StaleEntry: Entry was stale and has been deleted
            LifecycleLockTimeout: A provisioner holds the lease right now
        """
        state = await self.backend.power_state(key.vm_id)
        if state == PowerState.RUNNING:
            return
        async with self.store.lifecycle_lock(key.vm_id, timeout=0):
            # A provisioner may have started it since the first check
            state = await self.backend.power_state(key.vm_id)
            if state == PowerState.RUNNING:
                return
            await self.store.delete(key.vm_id)
        raise StaleEntry(
            f"VM {key.vm_id} is not running or does not exist. Deleted orphaned entry.",
            context={"vm_id": key.vm_id, "state": state.value},
        )

    async def _check_idle(self, key: ResourceKey, report: SweepReport) -> asyncio.Task[EvictionOutcome] | None:
        """Classify one surviving entry; return the eviction task if one was started."""
        if await self.activity.refresh_if_live(key):
            report.active.append(key.vm_id)
            return None

        entry = await self.store.get(key.vm_id)
        if entry is None:
            return None
        idle = await self.activity.idle_minutes(key, entry)
        extra = {"vm_id": key.vm_id, "identity": key.identity, "idle_minutes": round(idle, 1)}
        if idle < self.config.idle_threshold_minutes:
            logger.info("VM inactive below threshold; remains running", extra=extra)
            report.idle_kept.append(key.vm_id)
            return None

        logger.info("VM inactive past threshold; initiating shutdown", extra=extra)
        task = asyncio.create_task(self.evict(key), name=f"evict-{key.vm_id}")
        self._track_eviction(task, key.vm_id)
        return task

    def _track_eviction(self, task: asyncio.Task[EvictionOutcome], vm_id: int) -> None:
        """Register an eviction task; it is awaited by the sweep that started it."""
        self._eviction_tasks[task] = vm_id

        def _on_done(t: asyncio.Task[EvictionOutcome]) -> None:
            self._eviction_tasks.pop(t, None)
            if t.cancelled():
                logger.info("Eviction cancelled", extra={"vm_id": vm_id})
            elif t.exception():
                logger.warning("Eviction failed", extra={"vm_id": vm_id, "error": str(t.exception())})

        task.add_done_callback(_on_done)

    # -------------------------------------------------------------------------
    # Eviction
    # -------------------------------------------------------------------------

    async def evict(self, key: ResourceKey) -> EvictionOutcome:
        """Shut down an idle VM and delete its entry once the stop is confirmed.

        Never waits for the lifecycle lease: a held lease means the VM is being
        provisioned for a login, which is fresh use.
        """
        started = time.monotonic()

        def outcome(result: EvictionResult) -> EvictionOutcome:
            return EvictionOutcome(key.vm_id, result, round(time.monotonic() - started, 3))

        try:
            async with self.store.lifecycle_lock(key.vm_id, timeout=0):
                entry = await self.store.get(key.vm_id)
                if entry is not None:
                    idle = entry.idle_seconds(self._clock())
                    if idle is not None and idle < self.config.idle_threshold_seconds:
                        logger.info("VM became active; eviction aborted", extra={"vm_id": key.vm_id})
                        return outcome(EvictionResult.SKIPPED_ACTIVE)

                result = await self._stop(key)
                if result != EvictionResult.FAILED:
                    await self.store.delete(key.vm_id)
                    logger.info("VM has been shut down", extra={"vm_id": key.vm_id, "result": result.value})
                return outcome(result)
        except LifecycleLockTimeout:
            logger.info("VM lease held by another process; eviction skipped", extra={"vm_id": key.vm_id})
            return outcome(EvictionResult.SKIPPED_BUSY)

    async def _stop(self, key: ResourceKey) -> EvictionResult:
        """Graceful stop, escalating to a forced stop. Caller holds the lease."""
        if await self.backend.power_state(key.vm_id) in _STOPPED_STATES:
            return EvictionResult.ALREADY_STOPPED

        stop_task = asyncio.create_task(self.backend.graceful_stop(key.vm_id), name=f"shutdown-{key.vm_id}")
        try:
            await self._wait_stopped(
                key,
                timeout=self.config.shutdown_timeout_seconds,
                interval=self.config.shutdown_poll_interval_seconds,
            )
            return EvictionResult.STOPPED
        except PollTimeoutError:
            logger.warning(
                "VM did not shut down gracefully; forcing stop",
                extra={"vm_id": key.vm_id, "timeout": self.config.shutdown_timeout_seconds},
            )
        finally:
            if not stop_task.done():
                stop_task.cancel()
            with contextlib.suppress(asyncio.CancelledError, AutoVmError):
                await stop_task

        await self.backend.forced_stop(key.vm_id)
        try:
            await self._wait_stopped(
                key,
                timeout=self.config.forced_stop_timeout_seconds,
                interval=self.config.shutdown_poll_interval_seconds,
            )
        except PollTimeoutError:
            logger.error("Failed to shut down VM", extra={"vm_id": key.vm_id})
            return EvictionResult.FAILED
        return EvictionResult.FORCED

    async def _wait_stopped(self, key: ResourceKey, *, timeout: float, interval: float) -> None:
        async def stopped() -> bool:
            return await self.backend.power_state(key.vm_id) in _STOPPED_STATES

        await poll_until(
            stopped,
            interval=min(interval, timeout),
            timeout=timeout,
            description=f"VM {key.vm_id} stopped",
            retry_on=(BackendCommandError,),
            context={"vm_id": key.vm_id},
        )

    # -------------------------------------------------------------------------
    # Decommission
    # -------------------------------------------------------------------------

    async def decommission(self, key: ResourceKey) -> EvictionResult:
        """Stop and destroy the VM, then drop its seed image and state entry.

        Waits for the lifecycle lease, so an in-flight login finishes first.

        Raises:
            AutoVmError: The VM could not be stopped or destroyed
        """
        async with self.store.lifecycle_lock(key.vm_id, timeout=self.config.lifecycle_lock_timeout_seconds):
            logger.info("Decommissioning VM", extra={"vm_id": key.vm_id, "identity": key.identity})
            result = await self._stop(key)
            if result == EvictionResult.FAILED:
                raise AutoVmError(f"VM {key.vm_id} could not be stopped", context={"vm_id": key.vm_id})

            if await self.backend.power_state(key.vm_id) != PowerState.ABSENT:
                await self.backend.destroy(key.vm_id)
                logger.info("VM destroyed", extra={"vm_id": key.vm_id})
            if self.bootstrap_builder is not None:
                await self.bootstrap_builder.remove(key.vm_id)
            await self.store.delete(key.vm_id)
        return result

    # -------------------------------------------------------------------------
    # Loop mode
    # -------------------------------------------------------------------------

    async def run_forever(self, interval: float | None = None, stop_event: asyncio.Event | None = None) -> None:
        """Sweep every interval seconds until stop_event is set (or cancelled)."""
        period = interval if interval is not None else self.config.reaper_interval_seconds
        stop = stop_event or asyncio.Event()
        logger.info("Reaper loop started", extra={"interval_seconds": period})
        while not stop.is_set():
            try:
                await self.sweep()
            except ReaperAlreadyRunning as e:
                logger.warning(e.message, extra=e.context)
            except (AutoVmError, OSError) as e:
                logger.error("Sweep failed", extra={"error": str(e)}, exc_info=True)
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(stop.wait(), timeout=period)
        logger.info("Reaper loop stopped")
