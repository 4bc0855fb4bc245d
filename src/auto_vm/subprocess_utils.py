"""Subprocess helpers.

- run_command: run an external tool (qm, cloud-localds) with a hard timeout
- log_task_exception: done-callback that surfaces background task failures
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING

from auto_vm._logging import get_logger
from auto_vm.exceptions import BackendCommandError, BackendUnavailable
from auto_vm.platform_utils import ProcessWrapper
from auto_vm.resource_cleanup import cleanup_process

if TYPE_CHECKING:
    from collections.abc import Sequence

logger = get_logger(__name__)


@dataclass(frozen=True)
class CommandResult:
    """Completed command."""

    argv: list[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


async def run_command(
    argv: Sequence[str],
    *,
    timeout: float,
    context_id: str,
    check: bool = True,
) -> CommandResult:
    """Run a command, capturing output, bounded by timeout.

    stdout and stderr are collected with communicate(), which drains both
    pipes concurrently.

    Args:
        argv: Command and arguments (no shell)
        timeout: Seconds before the process is terminated
        context_id: Context for logging (e.g. VM id)
        check: Raise BackendCommandError on non-zero exit

    Returns:
        CommandResult with decoded output

    Raises:
        BackendUnavailable: Executable missing/not executable, or timeout hit
        BackendCommandError: Non-zero exit and check=True
    """
    args = [str(a) for a in argv]
    logger.debug("Running command", extra={"context_id": context_id, "argv": args})

    try:
        async_proc = await asyncio.create_subprocess_exec(
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except (FileNotFoundError, PermissionError) as e:
        raise BackendUnavailable(
            f"Cannot execute {args[0]}: {e}",
            context={"context_id": context_id, "argv": args},
        ) from e

    proc = ProcessWrapper(async_proc)
    try:
        stdout_b, stderr_b = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except TimeoutError:
        await cleanup_process(proc, name=args[0], context_id=context_id)
        raise BackendUnavailable(
            f"{args[0]} did not finish within {timeout}s",
            context={"context_id": context_id, "argv": args, "timeout": timeout},
        ) from None
    except asyncio.CancelledError:
        await cleanup_process(proc, name=args[0], context_id=context_id)
        raise

    result = CommandResult(
        argv=args,
        returncode=proc.returncode if proc.returncode is not None else -1,
        stdout=stdout_b.decode(errors="replace"),
        stderr=stderr_b.decode(errors="replace"),
    )

    if check and not result.ok:
        stderr_preview = result.stderr.strip()[:500]
        raise BackendCommandError(
            f"{' '.join(args)} exited with {result.returncode}: {stderr_preview or '(no stderr)'}",
            argv=args,
            returncode=result.returncode,
            stderr=result.stderr,
            context={"context_id": context_id},
        )
    return result


def log_task_exception(task: asyncio.Task[object]) -> None:
    """Log exceptions from background tasks.

    Callback for asyncio.Task.add_done_callback() so failures of untracked
    tasks are never lost.
    """
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(
            "Background task failed",
            extra={"task_name": task.get_name()},
            exc_info=exc,
        )
