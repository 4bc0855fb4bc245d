"""Tests for ActivityTracker and the psutil session observer."""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import psutil
import pytest

from auto_vm.activity import ActivityTracker, PsutilSessionObserver, SessionObserver
from auto_vm.config import LifecycleConfig
from auto_vm.models import StateEntry
from auto_vm.resource_key import ResourceKey

KEY = ResourceKey.from_identity("vm_user_07", LifecycleConfig())


# ============================================================================
# ActivityTracker
# ============================================================================


class TestRecordHandoff:
    async def test_stamps_now(self, activity: ActivityTracker, store, clock) -> None:
        await activity.record_handoff(KEY)
        assert (await store.get(207)).last_active == pytest.approx(clock.now)

    async def test_stamps_without_address(self, activity: ActivityTracker, store) -> None:
        """A connection attempt counts even before the VM has an address."""
        await activity.record_handoff(KEY)
        entry = await store.get(207)
        assert entry.resolved_address is None
        assert entry.last_active is not None


class TestRefreshIfLive:
    async def test_no_session(self, activity: ActivityTracker, store) -> None:
        assert await activity.refresh_if_live(KEY) is False
        assert await store.get(207) is None

    async def test_live_session_stamps(self, activity: ActivityTracker, store, observer, clock) -> None:
        await store.put(207, "10.0.0.7")
        clock.advance_minutes(90)
        observer.live.add("vm_user_07")

        assert await activity.refresh_if_live(KEY) is True
        assert (await store.get(207)).last_active == pytest.approx(clock.now)


class TestIdleMinutes:
    async def test_elapsed_minutes(self, activity: ActivityTracker, clock) -> None:
        entry = StateEntry(vm_id=207, resolved_address="10.0.0.7", last_active=clock.now - 1500)
        assert await activity.idle_minutes(KEY, entry) == pytest.approx(25.0)

    async def test_future_watermark_is_zero(self, activity: ActivityTracker, clock) -> None:
        entry = StateEntry(vm_id=207, resolved_address="10.0.0.7", last_active=clock.now + 60)
        assert await activity.idle_minutes(KEY, entry) == 0.0

    async def test_missing_watermark_created(self, activity: ActivityTracker, store, clock) -> None:
        await store.put(207, "10.0.0.7")
        store.watermark_path(207).unlink()
        entry = await store.get(207)

        assert await activity.idle_minutes(KEY, entry) == 0.0
        assert (await store.get(207)).last_active == pytest.approx(clock.now)


# ============================================================================
# PsutilSessionObserver
# ============================================================================


def _proc(name: str, username: str, statuses: list[str]) -> MagicMock:
    proc = MagicMock()
    proc.info = {"name": name, "username": username}
    proc.net_connections.return_value = [SimpleNamespace(status=s) for s in statuses]
    return proc


class TestPsutilSessionObserver:
    def test_satisfies_protocol(self) -> None:
        assert isinstance(PsutilSessionObserver(), SessionObserver)

    async def test_established_sshd_session(self) -> None:
        procs = [
            _proc("bash", "vm_user_07", [psutil.CONN_ESTABLISHED]),
            _proc("sshd", "vm_user_07", [psutil.CONN_LISTEN, psutil.CONN_ESTABLISHED]),
        ]
        with patch("auto_vm.activity.psutil.process_iter", return_value=procs):
            assert await PsutilSessionObserver().has_live_session("vm_user_07") is True

    async def test_other_user_ignored(self) -> None:
        procs = [_proc("sshd", "vm_user_08", [psutil.CONN_ESTABLISHED])]
        with patch("auto_vm.activity.psutil.process_iter", return_value=procs):
            assert await PsutilSessionObserver().has_live_session("vm_user_07") is False

    async def test_non_sshd_process_ignored(self) -> None:
        procs = [_proc("python3", "vm_user_07", [psutil.CONN_ESTABLISHED])]
        with patch("auto_vm.activity.psutil.process_iter", return_value=procs):
            assert await PsutilSessionObserver().has_live_session("vm_user_07") is False

    async def test_only_listening_sockets(self) -> None:
        procs = [_proc("sshd-session", "vm_user_07", [psutil.CONN_CLOSE_WAIT])]
        with patch("auto_vm.activity.psutil.process_iter", return_value=procs):
            assert await PsutilSessionObserver().has_live_session("vm_user_07") is False

    async def test_vanished_process_skipped(self) -> None:
        gone = _proc("sshd", "vm_user_07", [])
        gone.net_connections.side_effect = psutil.NoSuchProcess(pid=4242)
        live = _proc("sshd-session", "vm_user_07", [psutil.CONN_ESTABLISHED])
        with patch("auto_vm.activity.psutil.process_iter", return_value=[gone, live]):
            assert await PsutilSessionObserver().has_live_session("vm_user_07") is True
