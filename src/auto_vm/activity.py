"""Activity tracking: keeps each VM's last-active watermark current.

Two sources of activity:
- Handoff: every accepted login stamps the watermark, even before the
  guest's SSH server has accepted the connection.
- Live sessions: during a reaper sweep, an identity with an established SSH
  session is stamped before idleness is evaluated, so it can never be evicted
  however old its stored watermark is.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Protocol, runtime_checkable

import psutil

from auto_vm._logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Callable

    from auto_vm.models import StateEntry
    from auto_vm.resource_key import ResourceKey
    from auto_vm.state_store import StateStore

logger = get_logger(__name__)

_SSHD_PROCESS_NAMES = frozenset({"sshd", "sshd-session"})


@runtime_checkable
class SessionObserver(Protocol):
    """Reports whether an identity currently has a live network session."""

    async def has_live_session(self, identity: str) -> bool: ...


class PsutilSessionObserver:
    """Detects established SSH sessions of an identity on this host.

    OpenSSH runs each session in a privilege-separated sshd process owned by
    the logged-in user; an identity is live when one of those processes holds
    an ESTABLISHED inet connection.  Requires root to inspect other users'
    sockets.
    """

    def __init__(self, process_names: frozenset[str] = _SSHD_PROCESS_NAMES) -> None:
        self._process_names = process_names

    def _scan(self, identity: str) -> bool:
        for proc in psutil.process_iter(["name", "username"]):
            info = proc.info
            if info.get("name") not in self._process_names or info.get("username") != identity:
                continue
            try:
                connections = proc.net_connections(kind="inet")
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                continue
            if any(conn.status == psutil.CONN_ESTABLISHED for conn in connections):
                return True
        return False

    async def has_live_session(self, identity: str) -> bool:
        return await asyncio.to_thread(self._scan, identity)


class ActivityTracker:
    """Maintains last_active as a per-VM monotonic watermark of real use."""

    def __init__(
        self,
        store: StateStore,
        observer: SessionObserver,
        *,
        clock: Callable[[], float],
    ) -> None:
        self._store = store
        self._observer = observer
        self._clock = clock

    async def record_handoff(self, key: ResourceKey) -> float:
        """Stamp the watermark for an accepted login."""
        stamp = await self._store.touch(key.vm_id, self._clock())
        logger.info("Activity recorded", extra={"vm_id": key.vm_id, "identity": key.identity})
        return stamp

    async def refresh_if_live(self, key: ResourceKey) -> bool:
        """Stamp the watermark if the identity has a live session.

        Returns:
            True if a live session was found
        """
        if not await self._observer.has_live_session(key.identity):
            return False
        await self._store.touch(key.vm_id, self._clock())
        logger.info(
            "User is logged in; VM remains running",
            extra={"vm_id": key.vm_id, "identity": key.identity},
        )
        return True

    async def idle_minutes(self, key: ResourceKey, entry: StateEntry) -> float:
        """Minutes since the entry's last activity.

        An entry without a watermark gets one stamped now and counts as
        freshly active.
        """
        now = self._clock()
        idle = entry.idle_seconds(now)
        if idle is None:
            logger.error(
                "Last active record missing; creating it",
                extra={"vm_id": key.vm_id, "identity": key.identity},
            )
            await self._store.touch(key.vm_id, now)
            return 0.0
        return idle / 60.0
