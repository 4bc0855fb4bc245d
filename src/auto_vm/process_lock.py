"""Single-instance marker for the reaper.

The marker file holds the owner's pid.  A marker whose pid is no longer
alive (crash, kill -9, reboot) is stale and is replaced, so a dead reaper
never blocks the next scheduled run.
"""

from __future__ import annotations

import contextlib
import fcntl
import os
from pathlib import Path
from typing import Self

from auto_vm._logging import get_logger
from auto_vm.exceptions import ReaperAlreadyRunning
from auto_vm.platform_utils import pid_is_alive

logger = get_logger(__name__)


class PidLock:
    """Pid marker with stale-owner recovery.

    Check-and-replace of a stale marker runs under a flock on a sidecar
    guard file, so two processes healing the same stale marker cannot both
    end up believing they own it.

    Usage:
        with PidLock(settings.reaper_lock_path):
            ...
    """

    def __init__(self, path: Path, pid: int | None = None) -> None:
        self.path = path
        self.pid = pid if pid is not None else os.getpid()
        self._guard_path = path.with_name(f"{path.name}.guard")
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def read_owner(self) -> int | None:
        """Pid recorded in the marker, or None if absent/unparseable."""
        try:
            text = self.path.read_text().strip()
        except FileNotFoundError:
            return None
        return int(text) if text.isdigit() else None

    def acquire(self) -> None:
        """Create the marker.

        Raises:
            ReaperAlreadyRunning: The marker belongs to a live process,
                this one included (another sweep in the same process)
        """
        if self._held:
            raise ReaperAlreadyRunning(f"Reaper marker already held (pid {self.pid})", pid=self.pid)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self._guard():
            owner = self.read_owner()
            if owner is not None and pid_is_alive(owner):
                raise ReaperAlreadyRunning(f"Reaper already running (pid {owner})", pid=owner)
            if self.path.exists():
                logger.warning("Replacing stale reaper marker", extra={"path": str(self.path), "stale_pid": owner})
                self.path.unlink(missing_ok=True)

            fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
            with os.fdopen(fd, "w") as f:
                f.write(f"{self.pid}\n")
        self._held = True
        logger.debug("Reaper marker acquired", extra={"path": str(self.path), "pid": self.pid})

    def release(self) -> None:
        """Remove the marker if this process still owns it."""
        if not self._held:
            return
        with self._guard():
            if self.read_owner() == self.pid:
                self.path.unlink(missing_ok=True)
        self._held = False

    @contextlib.contextmanager
    def _guard(self):
        fd = os.open(self._guard_path, os.O_RDONLY | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX)
            yield
        finally:
            os.close(fd)

    def __enter__(self) -> Self:
        self.acquire()
        return self

    def __exit__(self, _exc_type: type[BaseException] | None, _exc_val: BaseException | None, _exc_tb: object) -> None:
        self.release()
