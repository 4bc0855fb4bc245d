"""Poll-until-or-timeout primitive.

Every bounded wait in auto-vm (guest agent readiness, address discovery,
SSH port availability, shutdown confirmation, lock acquisition) is one call
to poll_until() with its own predicate, interval and deadline.  Callers map
PollTimeoutError to their domain error (ResourceNotReady, ServiceNotReady, ...).
"""

from __future__ import annotations

import asyncio
import inspect
import time
from typing import TYPE_CHECKING, TypeVar

from auto_vm._logging import get_logger
from auto_vm.exceptions import PollTimeoutError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = get_logger(__name__)

T = TypeVar("T")


async def poll_until(
    predicate: Callable[[], Awaitable[T] | T],
    *,
    interval: float,
    timeout: float,
    description: str,
    retry_on: tuple[type[BaseException], ...] = (),
    context: dict[str, object] | None = None,
) -> T:
    """Call predicate every interval seconds until it returns a truthy value.

    The predicate is evaluated once immediately, so an already-satisfied
    condition returns without sleeping.  A single slow predicate call is also
    bounded by the overall deadline.

    Args:
        predicate: Sync or async callable; a truthy return ends the wait.
        interval: Seconds between evaluations.
        timeout: Overall deadline in seconds.
        description: What is being waited for (used in logs and the error).
        retry_on: Exception types raised by predicate that count as "not yet".
        context: Extra fields for log records (e.g. {"vm_id": 207}).

    Returns:
        The first truthy predicate result.

    Raises:
        PollTimeoutError: Deadline elapsed without a truthy result.
    """
    extra = dict(context or {})
    started = time.monotonic()
    attempts = 0
    last_error: BaseException | None = None

    try:
        async with asyncio.timeout(timeout):
            while True:
                attempts += 1
                try:
                    result = predicate()
                    if inspect.isawaitable(result):
                        result = await result
                except retry_on as e:
                    last_error = e
                    result = None
                    logger.debug(
                        f"Waiting for {description}: {type(e).__name__}",
                        extra={**extra, "attempt": attempts, "error": str(e)},
                    )
                if result:
                    logger.debug(
                        f"{description} after {attempts} attempt(s)",
                        extra={**extra, "elapsed": round(time.monotonic() - started, 3)},
                    )
                    return result  # type: ignore[return-value]
                await asyncio.sleep(interval)
    except TimeoutError:
        elapsed = time.monotonic() - started
        message = f"Timed out after {elapsed:.1f}s waiting for {description}"
        if last_error is not None:
            message += f" (last error: {last_error})"
        raise PollTimeoutError(message, description=description, elapsed=elapsed) from None
