"""TCP reachability probe for the guest's service port."""

from __future__ import annotations

import asyncio
import contextlib
from typing import Protocol

from auto_vm import constants
from auto_vm._logging import get_logger

logger = get_logger(__name__)


class PortProbe(Protocol):
    """Callable returning whether address:port accepts TCP connections."""

    async def __call__(self, address: str, port: int) -> bool: ...


async def tcp_port_open(
    address: str,
    port: int,
    timeout: float = constants.PORT_PROBE_TIMEOUT_SECONDS,
) -> bool:
    """Return True if a TCP connection to address:port succeeds within timeout.

    The connection is closed immediately; nothing is sent.
    """
    try:
        async with asyncio.timeout(timeout):
            _reader, writer = await asyncio.open_connection(address, port)
    except (TimeoutError, OSError) as e:
        logger.debug("Port not reachable", extra={"address": address, "port": port, "error": str(e)})
        return False

    writer.close()
    with contextlib.suppress(OSError):
        await writer.wait_closed()
    return True
