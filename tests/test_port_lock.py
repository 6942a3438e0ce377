"""Tests for esmon/port_lock.py: ownership, expiry and the audit hooks."""

from __future__ import annotations

import asyncio

import pytest

from esmon.errors import PortBusyError
from esmon.port_lock import PortLockRegistry, PortState

PORT = "/dev/ttyUSB0"


@pytest.fixture
def locks(clock):
    return PortLockRegistry(clock, lock_timeout=120.0)


class TestTryLock:
    def test_untracked_port_is_idle(self, locks):
        info = locks.get_state(PORT)
        assert info.state == PortState.IDLE
        assert info.locked_by is None
        assert locks.is_available(PORT)
        assert not locks.is_in_use(PORT)

    def test_lock_free_port(self, locks, clock):
        result = locks.try_lock(PORT, "monitor")
        assert result.success is True
        assert result.state == PortState.LOCKED

        info = locks.get_state(PORT)
        assert info.state == PortState.LOCKED
        assert info.locked_by == "monitor"
        assert info.locked_at == clock.timestamp()
        assert locks.is_in_use(PORT)

    def test_conflict_names_holder(self, locks):
        locks.try_lock(PORT, "monitor")
        locks.set_state(PORT, PortState.MONITORING)

        result = locks.try_lock(PORT, "upload")
        assert result.success is False
        assert result.previous_owner == "monitor"
        assert result.error == "Port is monitoring by monitor"
        assert result.reason == "conflict"
        assert result.state == PortState.MONITORING
        # Holder is untouched
        assert locks.get_state(PORT).locked_by == "monitor"

    def test_force_takes_over(self, locks):
        locks.try_lock(PORT, "monitor")
        result = locks.try_lock(PORT, "upload", force=True)
        assert result.success is True
        assert locks.get_state(PORT).locked_by == "upload"

    def test_expired_lock_is_reclaimed(self, locks, clock):
        locks.try_lock(PORT, "monitor")
        clock.advance(121)

        assert locks.is_available(PORT)
        result = locks.try_lock(PORT, "upload")
        assert result.success is True
        assert locks.get_state(PORT).locked_by == "upload"

    def test_not_yet_expired_still_conflicts(self, locks, clock):
        locks.try_lock(PORT, "monitor")
        clock.advance(119)
        assert locks.try_lock(PORT, "upload").success is False

    def test_error_state_is_lockable(self, locks):
        locks.set_state(PORT, PortState.ERROR, {"error": "reader exited"})
        assert locks.get_state(PORT).error == "reader exited"
        assert locks.try_lock(PORT, "upload").success is True

    def test_ports_are_independent(self, locks):
        assert locks.try_lock("/dev/ttyUSB0", "monitor").success
        assert locks.try_lock("/dev/ttyUSB1", "monitor").success


class TestStateTransitions:
    def test_release_returns_to_idle(self, locks):
        locks.try_lock(PORT, "monitor")
        locks.release(PORT)
        assert locks.get_state(PORT).state == PortState.IDLE
        assert locks.get_all_states() == []

    def test_release_unknown_port_is_noop(self, locks):
        locks.release("/dev/nothing")
        assert locks.get_all_states() == []

    def test_release_by_owner(self, locks):
        locks.try_lock(PORT, "monitor")
        assert locks.release(PORT, owner="monitor") is True
        assert locks.get_all_states() == []

    def test_release_skips_other_owner(self, locks, clock):
        locks.try_lock(PORT, "monitor")
        clock.advance(121)
        locks.try_lock(PORT, "upload")

        assert locks.release(PORT, owner="monitor") is False
        assert locks.get_state(PORT).locked_by == "upload"

    def test_release_untracked_port_by_owner(self, locks):
        assert locks.release(PORT, owner="monitor") is True

    def test_set_state_merges_metadata(self, locks):
        locks.try_lock(PORT, "monitor")
        locks.set_state(PORT, PortState.MONITORING, {"baud": 115200})
        locks.set_state(PORT, PortState.MONITORING, {"token": "abc"})
        info = locks.get_state(PORT)
        assert info.metadata == {"baud": 115200, "token": "abc"}
        assert info.locked_by == "monitor"

    def test_set_state_idle_clears_entry(self, locks):
        locks.try_lock(PORT, "monitor")
        locks.set_state(PORT, PortState.IDLE)
        assert locks.get_all_states() == []

    def test_touch_updates_activity_only(self, locks, clock):
        locks.try_lock(PORT, "monitor")
        locked_at = locks.get_state(PORT).locked_at
        clock.advance(10)
        locks.touch(PORT)
        info = locks.get_state(PORT)
        assert info.last_activity == clock.timestamp()
        assert info.locked_at == locked_at

    def test_get_state_returns_copy(self, locks):
        locks.try_lock(PORT, "monitor")
        snapshot = locks.get_state(PORT)
        snapshot.metadata["x"] = 1
        assert "x" not in locks.get_state(PORT).metadata

    def test_summary_counts(self, locks):
        locks.try_lock("/dev/a", "monitor")
        locks.set_state("/dev/a", PortState.MONITORING)
        locks.try_lock("/dev/b", "upload")
        summary = locks.get_summary()
        assert summary["total_ports"] == 2
        assert summary["monitoring"] == 1
        assert summary["locked"] == 1
        assert {"port": "/dev/b", "state": "locked", "owner": "upload"} in summary["ports"]


class TestSweep:
    def test_cleanup_removes_only_expired(self, locks, clock):
        locks.try_lock("/dev/old", "monitor")
        clock.advance(100)
        locks.try_lock("/dev/new", "monitor")
        clock.advance(30)

        removed = locks.cleanup_stale_locks()
        assert removed == ["/dev/old"]
        assert locks.get_state("/dev/new").state == PortState.LOCKED

    @pytest.mark.asyncio
    async def test_sweeper_runs_periodically(self, clock):
        locks = PortLockRegistry(clock, lock_timeout=1.0, sweep_interval=0.01)
        locks.try_lock(PORT, "monitor")
        clock.advance(5)
        locks.start_sweeper()
        await asyncio.sleep(0.05)
        assert locks.get_all_states() == []
        await locks.close()


class TestObservers:
    def test_transitions_are_reported(self, locks, clock):
        events = []
        locks.add_observer(lambda kind, info: events.append(kind))

        locks.try_lock(PORT, "monitor")
        locks.try_lock(PORT, "upload")
        locks.release(PORT)
        locks.try_lock(PORT, "monitor")
        clock.advance(200)
        locks.try_lock(PORT, "upload")

        assert events == ["locked", "denied", "released", "locked", "expired", "locked"]

    def test_failing_observer_does_not_break_locking(self, locks):
        def broken(kind, info):
            raise RuntimeError("boom")

        locks.add_observer(broken)
        assert locks.try_lock(PORT, "monitor").success


class TestHold:
    @pytest.mark.asyncio
    async def test_hold_releases_on_exit(self, locks):
        async with locks.hold(PORT, "upload", state=PortState.UPLOADING) as info:
            assert info.state == PortState.UPLOADING
            assert locks.is_in_use(PORT)
        assert locks.get_state(PORT).state == PortState.IDLE

    @pytest.mark.asyncio
    async def test_hold_raises_when_busy(self, locks):
        locks.try_lock(PORT, "monitor")
        with pytest.raises(PortBusyError) as exc_info:
            async with locks.hold(PORT, "upload"):
                pass
        assert exc_info.value.previous_owner == "monitor"

    @pytest.mark.asyncio
    async def test_hold_exit_keeps_new_owner(self, locks, clock):
        async with locks.hold(PORT, "monitor"):
            clock.advance(121)
            locks.try_lock(PORT, "upload")
        assert locks.get_state(PORT).locked_by == "upload"
