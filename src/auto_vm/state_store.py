"""Persistent state store: resolved address and last-active watermark per VM.

Persisted layout (one directory shared by every login process and the reaper):

    vm_207.lock         resolved address ("10.0.0.7\\n")
    vm_207.last_active  last-active watermark (epoch seconds)
    vm_207.mutex        flocked while either record of VM 207 is mutated
    vm_207.lifecycle    flocked while VM 207 is being started or stopped

The address and watermark records are independent files: either can be
created, read or deleted without the other.  Writes go to a temporary file
that is fsynced and renamed over the record, so a crashed writer leaves
either the old or the new content, never a partial one.

Locking:
    All mutations of one VM's records hold an exclusive flock on its
    .mutex file, so concurrent writers to the same VM serialize while writers
    to different VMs never contend.  Lock files are never deleted: deleting
    after close lets two processes hold flocks on different inodes of the
    "same" path.
"""

from __future__ import annotations

import asyncio
import contextlib
import fcntl
import os
import time
from pathlib import Path
from typing import TYPE_CHECKING, Protocol, runtime_checkable
from uuid import uuid4

import aiofiles
import aiofiles.os

from auto_vm import constants
from auto_vm._logging import get_logger
from auto_vm.exceptions import LifecycleLockTimeout, PollTimeoutError, StateStoreError
from auto_vm.models import StateEntry
from auto_vm.polling import poll_until

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable

logger = get_logger(__name__)

_RECORD_PREFIX = "vm_"
_MUTEX_TIMEOUT_SECONDS = 10.0
_RECORD_MODE = 0o664


@runtime_checkable
class StateStore(Protocol):
    """Durable per-VM state shared by independent processes."""

    async def get(self, vm_id: int) -> StateEntry | None:
        """Entry for vm_id, or None when neither record exists."""
        ...

    async def put(self, vm_id: int, address: str) -> str:
        """Store the address unless one is already stored; return the stored address."""
        ...

    async def touch(self, vm_id: int, now: float | None = None) -> float:
        """Advance the watermark to now (never backwards); return the stored value."""
        ...

    async def delete(self, vm_id: int) -> None:
        """Remove both records of vm_id."""
        ...

    async def list_keys(self) -> list[int]:
        """VM ids with an address record."""
        ...

    def lifecycle_lock(self, vm_id: int, timeout: float) -> contextlib.AbstractAsyncContextManager[None]:
        """Exclusive lease over starting/stopping vm_id (timeout=0: try once)."""
        ...


class FileStateStore:
    """StateStore backed by files in one directory, coordinated with flock."""

    def __init__(
        self,
        state_dir: Path,
        *,
        clock: Callable[[], float] = time.time,
        lock_poll_interval: float = constants.LOCK_POLL_INTERVAL_SECONDS,
    ) -> None:
        self.state_dir = state_dir
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self._clock = clock
        self._lock_poll_interval = lock_poll_interval

    # -------------------------------------------------------------------------
    # Paths
    # -------------------------------------------------------------------------

    def address_path(self, vm_id: int) -> Path:
        return self.state_dir / f"{_RECORD_PREFIX}{vm_id}{constants.ADDRESS_RECORD_SUFFIX}"

    def watermark_path(self, vm_id: int) -> Path:
        return self.state_dir / f"{_RECORD_PREFIX}{vm_id}{constants.WATERMARK_RECORD_SUFFIX}"

    def _mutex_path(self, vm_id: int) -> Path:
        return self.state_dir / f"{_RECORD_PREFIX}{vm_id}{constants.MUTEX_SUFFIX}"

    def _lifecycle_path(self, vm_id: int) -> Path:
        return self.state_dir / f"{_RECORD_PREFIX}{vm_id}{constants.LIFECYCLE_SUFFIX}"

    # -------------------------------------------------------------------------
    # Locking
    # -------------------------------------------------------------------------

    async def _acquire_flock(self, path: Path, *, timeout: float, description: str) -> int:
        """Open path and take an exclusive flock on it; return the descriptor.

        Polls a non-blocking flock so the event loop is never blocked.  Each
        acquisition opens its own file description, so two tasks of the same
        process exclude each other exactly like two processes do.

        Raises:
            PollTimeoutError: Lock still held by another owner after timeout
        """
        fd = os.open(path, os.O_RDONLY | os.O_CREAT, 0o666)

        def try_lock() -> bool:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                return False
            return True

        try:
            if try_lock():
                return fd
            if timeout <= 0:
                raise PollTimeoutError(f"{description} is held by another owner", description=description, elapsed=0.0)
            await poll_until(try_lock, interval=self._lock_poll_interval, timeout=timeout, description=description)
        except BaseException:
            os.close(fd)
            raise
        return fd

    @contextlib.asynccontextmanager
    async def _mutex(self, vm_id: int) -> AsyncIterator[None]:
        try:
            fd = await self._acquire_flock(
                self._mutex_path(vm_id),
                timeout=_MUTEX_TIMEOUT_SECONDS,
                description=f"state mutex of VM {vm_id}",
            )
        except PollTimeoutError as e:
            raise StateStoreError(e.message, context={"vm_id": vm_id}) from e
        try:
            yield
        finally:
            os.close(fd)  # Closing the descriptor releases the flock

    @contextlib.asynccontextmanager
    async def lifecycle_lock(self, vm_id: int, timeout: float) -> AsyncIterator[None]:
        """Exclusive lease over starting/stopping vm_id.

        Held by the Provisioner while it creates/starts the VM and by the
        Reaper while it stops it, so the two never drive the same VM at once.

        Raises:
            LifecycleLockTimeout: Another owner held the lease past timeout
        """
        try:
            fd = await self._acquire_flock(
                self._lifecycle_path(vm_id),
                timeout=timeout,
                description=f"lifecycle lease of VM {vm_id}",
            )
        except PollTimeoutError as e:
            raise LifecycleLockTimeout(e.message, context={"vm_id": vm_id, "timeout": timeout}) from e
        logger.debug("Lifecycle lease acquired", extra={"vm_id": vm_id})
        try:
            yield
        finally:
            os.close(fd)

    # -------------------------------------------------------------------------
    # Record I/O
    # -------------------------------------------------------------------------

    async def _write_atomic(self, path: Path, content: str) -> None:
        tmp_path = path.with_name(f".{path.name}.{uuid4().hex}.tmp")
        try:
            async with aiofiles.open(tmp_path, "w") as f:
                await f.write(content)
                await f.flush()
                # Login processes of other identities share the records
                await asyncio.to_thread(os.fchmod, f.fileno(), _RECORD_MODE)
                await asyncio.to_thread(os.fsync, f.fileno())
            await aiofiles.os.replace(tmp_path, path)
        except OSError as e:
            with contextlib.suppress(OSError):
                await aiofiles.os.remove(tmp_path)
            raise StateStoreError(f"Cannot write {path}: {e}", context={"path": str(path)}) from e

    async def _read_text(self, path: Path) -> str | None:
        try:
            async with aiofiles.open(path) as f:
                return await f.read()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StateStoreError(f"Cannot read {path}: {e}", context={"path": str(path)}) from e

    async def _read_address(self, vm_id: int) -> str | None:
        text = await self._read_text(self.address_path(vm_id))
        if text is None:
            return None
        return text.strip() or None

    async def _read_watermark(self, vm_id: int) -> float | None:
        path = self.watermark_path(vm_id)
        text = await self._read_text(path)
        if text is None:
            return None
        try:
            return float(text.strip())
        except ValueError:
            # Record created with a plain touch: the watermark is its mtime
            try:
                stat = await aiofiles.os.stat(path)
            except FileNotFoundError:
                return None
            return stat.st_mtime

    # -------------------------------------------------------------------------
    # StateStore
    # -------------------------------------------------------------------------

    async def get(self, vm_id: int) -> StateEntry | None:
        address = await self._read_address(vm_id)
        watermark = await self._read_watermark(vm_id)
        if address is None and watermark is None:
            return None
        return StateEntry(vm_id=vm_id, resolved_address=address, last_active=watermark)

    async def put(self, vm_id: int, address: str) -> str:
        async with self._mutex(vm_id):
            existing = await self._read_address(vm_id)
            if existing is not None:
                if existing != address:
                    logger.warning(
                        "Address already stored, keeping it",
                        extra={"vm_id": vm_id, "stored": existing, "offered": address},
                    )
                return existing

            await self._write_atomic(self.address_path(vm_id), f"{address}\n")
            if await self._read_watermark(vm_id) is None:
                await self._write_atomic(self.watermark_path(vm_id), f"{self._clock():.6f}\n")
            logger.info("Address record created", extra={"vm_id": vm_id, "address": address})
            return address

    async def touch(self, vm_id: int, now: float | None = None) -> float:
        stamp = self._clock() if now is None else now
        async with self._mutex(vm_id):
            existing = await self._read_watermark(vm_id)
            if existing is not None and existing >= stamp:
                return existing
            await self._write_atomic(self.watermark_path(vm_id), f"{stamp:.6f}\n")
            return stamp

    async def delete(self, vm_id: int) -> None:
        async with self._mutex(vm_id):
            for path in (self.address_path(vm_id), self.watermark_path(vm_id)):
                try:
                    await aiofiles.os.remove(path)
                except FileNotFoundError:
                    pass
                except OSError as e:
                    raise StateStoreError(f"Cannot delete {path}: {e}", context={"vm_id": vm_id}) from e
        logger.info("State entry deleted", extra={"vm_id": vm_id})

    async def list_keys(self) -> list[int]:
        keys: list[int] = []
        for path in self.state_dir.glob(f"{_RECORD_PREFIX}*{constants.ADDRESS_RECORD_SUFFIX}"):
            number = path.name[len(_RECORD_PREFIX) : -len(constants.ADDRESS_RECORD_SUFFIX)]
            if number.isdigit():
                keys.append(int(number))
        return sorted(keys)
