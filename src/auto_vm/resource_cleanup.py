"""Resource cleanup utilities.

Cleanup operations that log errors but don't fail.  Used for subprocesses
that outlived their timeout and for temporary bootstrap files.
"""

from pathlib import Path

import aiofiles.os

from auto_vm._logging import get_logger
from auto_vm.platform_utils import ProcessWrapper

logger = get_logger(__name__)


async def cleanup_process(
    proc: ProcessWrapper | None,
    name: str,
    context_id: str,
    term_timeout: float = 3.0,
    kill_timeout: float = 2.0,
) -> bool:
    """Stop a subprocess (SIGTERM, then SIGKILL) and reap it.

    Args:
        proc: Process to stop (None safe)
        name: Process name for logging (e.g. "qm", "cloud-localds")
        context_id: Context for logging (e.g. VM id)
        term_timeout: Seconds to wait after SIGTERM before SIGKILL
        kill_timeout: Seconds to wait after SIGKILL before giving up

    Returns:
        True if the process is gone, False otherwise
    """
    if proc is None:
        return True

    try:
        if proc.returncode is not None:
            return True

        logger.debug(f"Sending SIGTERM to {name}", extra={"context_id": context_id})
        await proc.terminate()
        try:
            await proc.wait_with_timeout(timeout=term_timeout)
            return True
        except TimeoutError:
            logger.warning(
                f"{name} didn't respond to SIGTERM, force killing",
                extra={"context_id": context_id, "term_timeout": term_timeout},
            )

        await proc.kill()
        try:
            await proc.wait_with_timeout(timeout=kill_timeout)
            return True
        except TimeoutError:
            logger.error(
                f"{name} didn't respond to SIGKILL within timeout",
                extra={"context_id": context_id, "kill_timeout": kill_timeout, "pid": proc.pid},
            )
            return False

    except ProcessLookupError:
        return True

    except Exception as e:
        logger.error(
            f"{name} cleanup error",
            extra={"context_id": context_id, "error": str(e), "error_type": type(e).__name__},
            exc_info=True,
        )
        return False


async def cleanup_file(
    file_path: Path | None,
    context_id: str,
    description: str = "file",
) -> bool:
    """Delete a file; a missing file counts as success.

    Args:
        file_path: Path to delete (None safe)
        context_id: Context for logging (e.g. VM id)
        description: Description for logging (e.g. "cloud-init ISO")

    Returns:
        True if the file is gone, False if deletion failed
    """
    if file_path is None:
        return True

    try:
        await aiofiles.os.remove(file_path)
        logger.debug(f"{description} deleted", extra={"context_id": context_id, "path": str(file_path)})
        return True

    except FileNotFoundError:
        return True

    except PermissionError as e:
        logger.error(
            f"{description} permission denied",
            extra={"context_id": context_id, "path": str(file_path), "error": str(e)},
        )
        return False

    except OSError as e:
        logger.error(
            f"{description} OS error during deletion",
            extra={"context_id": context_id, "path": str(file_path), "error": str(e), "error_type": type(e).__name__},
        )
        return False
