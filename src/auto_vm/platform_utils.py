"""Process utilities backed by psutil.

Provides a PID-reuse safe wrapper around asyncio subprocesses (used for qm
and cloud-localds invocations) and liveness checks for pid markers.
"""

import asyncio
import contextlib
import os

import psutil


def pid_is_alive(pid: int) -> bool:
    """Return True if a process with this pid exists and is not a zombie.

    Used to decide whether a pid marker left by a previous reaper is stale.
    """
    if pid <= 0:
        return False
    try:
        proc = psutil.Process(pid)
        return proc.is_running() and proc.status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        # Exists but owned by someone else
        return True


def current_username() -> str:
    """Name of the OS account running this process."""
    with contextlib.suppress(KeyError, OSError):
        return psutil.Process(os.getpid()).username()
    import getpass  # noqa: PLC0415

    return getpass.getuser()


class ProcessWrapper:
    """PID-reuse safe process wrapper using psutil.

    Wraps asyncio.subprocess.Process with psutil.Process so that terminate()
    and kill() never signal an unrelated process that recycled the pid.
    """

    def __init__(self, async_proc: asyncio.subprocess.Process) -> None:
        self.async_proc = async_proc
        self.psutil_proc: psutil.Process | None = None

        if async_proc.pid:
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                self.psutil_proc = psutil.Process(async_proc.pid)

    async def is_running(self) -> bool:
        """Check if process is still running (PID-reuse safe)."""
        if not self.psutil_proc:
            return self.async_proc.returncode is None

        try:
            return await asyncio.to_thread(self.psutil_proc.is_running)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return False

    @property
    def pid(self) -> int | None:
        """Process ID."""
        return self.async_proc.pid

    @property
    def returncode(self) -> int | None:
        """Process return code (None if still running)."""
        return self.async_proc.returncode

    async def wait(self) -> int:
        return await self.async_proc.wait()

    async def terminate(self) -> None:
        """Terminate process (SIGTERM)."""
        if self.psutil_proc and await self.is_running():
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                await asyncio.to_thread(self.psutil_proc.terminate)
        else:
            self.async_proc.terminate()

    async def kill(self) -> None:
        """Kill process (SIGKILL)."""
        if self.psutil_proc and await self.is_running():
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                await asyncio.to_thread(self.psutil_proc.kill)
        else:
            self.async_proc.kill()

    async def communicate(self, input: bytes | None = None) -> tuple[bytes, bytes]:
        """Wait for process to terminate and return stdout/stderr."""
        return await self.async_proc.communicate(input)

    async def wait_with_timeout(self, timeout: float) -> int:
        """Wait for process exit with a timeout.

        Raises:
            TimeoutError: Process did not exit within timeout
        """
        await asyncio.wait_for(self.wait(), timeout=timeout)
        return self.returncode  # type: ignore[return-value]
