"""Handoff: splice the login's stdio to the VM's SSH port.

The login process runs as the SSH ForceCommand of the host account; once the
VM is ready its stdin/stdout carry the client's SSH stream, which is pumped
verbatim to guest:22.
"""

from __future__ import annotations

import asyncio
import contextlib
import sys
from typing import IO

from auto_vm._logging import get_logger
from auto_vm.subprocess_utils import log_task_exception

logger = get_logger(__name__)

_CHUNK_SIZE = 64 * 1024


async def pump(reader: asyncio.StreamReader, writer: asyncio.StreamWriter, *, half_close: bool) -> int:
    """Copy reader to writer until EOF; return the byte count.

    With half_close, EOF is propagated with write_eof() so the far side sees
    end-of-input while the other direction keeps flowing.
    """
    total = 0
    while chunk := await reader.read(_CHUNK_SIZE):
        writer.write(chunk)
        await writer.drain()
        total += len(chunk)
    if half_close and writer.can_write_eof():
        with contextlib.suppress(OSError):
            writer.write_eof()
    return total


async def splice_stdio(
    address: str,
    port: int,
    *,
    stdin: IO[bytes] | None = None,
    stdout: IO[bytes] | None = None,
) -> tuple[int, int]:
    """Connect to address:port and pump bytes both ways until the remote closes.

    Args:
        address: Guest address
        port: Guest port
        stdin: Source of client bytes (default: sys.stdin.buffer)
        stdout: Sink for guest bytes (default: sys.stdout.buffer)

    Returns:
        (bytes sent to the guest, bytes received from the guest)
    """
    loop = asyncio.get_running_loop()
    src = stdin if stdin is not None else sys.stdin.buffer
    dst = stdout if stdout is not None else sys.stdout.buffer

    remote_reader, remote_writer = await asyncio.open_connection(address, port)

    local_reader = asyncio.StreamReader()
    await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(local_reader), src)
    out_transport, out_protocol = await loop.connect_write_pipe(asyncio.streams.FlowControlMixin, dst)
    local_writer = asyncio.StreamWriter(out_transport, out_protocol, None, loop)

    logger.debug("Handoff started", extra={"address": address, "port": port})
    upstream = asyncio.create_task(pump(local_reader, remote_writer, half_close=True), name="handoff-upstream")
    upstream.add_done_callback(log_task_exception)
    sent = 0
    try:
        received = await pump(remote_reader, local_writer, half_close=False)
    finally:
        if upstream.done() and not upstream.cancelled() and upstream.exception() is None:
            sent = upstream.result()
        else:
            upstream.cancel()
            with contextlib.suppress(asyncio.CancelledError, OSError):
                await upstream
        remote_writer.close()
        with contextlib.suppress(OSError):
            await remote_writer.wait_closed()
        local_writer.close()

    logger.debug("Handoff finished", extra={"address": address, "sent": sent, "received": received})
    return sent, received
