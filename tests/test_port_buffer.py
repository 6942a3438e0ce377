"""Tests for esmon/port_buffer.py: ring buffers and pattern captures."""

from __future__ import annotations

import asyncio

import pytest

from esmon.errors import InvalidPatternError
from esmon.port_buffer import PortBufferManager, PortRingBuffer

PORT = "/dev/ttyUSB0"


class TestPortRingBuffer:
    def test_evicts_oldest_and_keeps_numbering(self, clock):
        buf = PortRingBuffer(clock, max_size=3)
        for i in range(5):
            buf.push(f"line {i}")

        lines = buf.get_all()
        assert [l.line for l in lines] == ["line 2", "line 3", "line 4"]
        assert [l.line_number for l in lines] == [3, 4, 5]
        assert buf.total_lines == 5

    def test_numbering_survives_clear(self, clock):
        buf = PortRingBuffer(clock, max_size=10)
        buf.push("a")
        buf.push("b")
        buf.clear()
        entry = buf.push("c")
        assert entry.line_number == 3
        assert len(buf.get_all()) == 1

    def test_get_recent_and_since(self, clock):
        buf = PortRingBuffer(clock, max_size=10)
        for i in range(6):
            buf.push(str(i))
        assert [l.line for l in buf.get_recent(2)] == ["4", "5"]
        assert buf.get_recent(0) == []
        assert [l.line_number for l in buf.get_since(4)] == [5, 6]

    def test_timestamp_comes_from_clock(self, clock):
        buf = PortRingBuffer(clock)
        entry = buf.push("hello")
        assert entry.timestamp == clock.now().isoformat()
        assert entry.to_dict() == {"timestamp": entry.timestamp, "lineNumber": 1, "line": "hello"}

    def test_shrink_keeps_newest(self, clock):
        buf = PortRingBuffer(clock, max_size=10)
        for i in range(5):
            buf.push(str(i))
        buf.set_max_size(2)
        assert [l.line for l in buf.get_all()] == ["3", "4"]
        assert buf.max_size == 2

    def test_rejects_non_positive_size(self, clock):
        with pytest.raises(ValueError):
            PortRingBuffer(clock, max_size=0)

    def test_stats(self, clock):
        buf = PortRingBuffer(clock)
        assert buf.get_stats() == {"lineCount": 0, "oldestTimestamp": None, "newestTimestamp": None}
        buf.push("a")
        clock.advance(1)
        buf.push("b")
        stats = buf.get_stats()
        assert stats["lineCount"] == 2
        assert stats["oldestTimestamp"] < stats["newestTimestamp"]


class TestPortBufferManager:
    def test_buffers_are_created_lazily(self, clock):
        manager = PortBufferManager(clock, default_buffer_size=5)
        assert manager.get_buffer(PORT) == []
        assert manager.get_ports() == []
        manager.add_line(PORT, "boot")
        assert manager.get_ports() == [PORT]

    def test_default_size_applies(self, clock):
        manager = PortBufferManager(clock, default_buffer_size=2)
        for i in range(4):
            manager.add_line(PORT, str(i))
        assert [l.line for l in manager.get_buffer(PORT)] == ["2", "3"]

    def test_search(self, clock):
        manager = PortBufferManager(clock)
        manager.add_line(PORT, "WiFi connected")
        manager.add_line(PORT, "heap: 1234")
        manager.add_line(PORT, "wifi lost")
        assert [l.line for l in manager.search_buffer(PORT, "WiFi")] == ["WiFi connected"]
        assert manager.search_buffer("/dev/other", "x") == []

    def test_search_invalid_pattern(self, clock):
        manager = PortBufferManager(clock)
        with pytest.raises(InvalidPatternError):
            manager.search_buffer(PORT, "([")

    def test_clear_and_remove(self, clock):
        manager = PortBufferManager(clock)
        manager.add_line(PORT, "a")
        manager.clear_buffer(PORT)
        assert manager.get_buffer(PORT) == []
        assert manager.get_ports() == [PORT]
        manager.remove_buffer(PORT)
        assert manager.get_ports() == []

    def test_port_stats(self, clock):
        manager = PortBufferManager(clock, default_buffer_size=2)
        assert manager.get_port_stats(PORT) is None
        for i in range(3):
            manager.add_line(PORT, str(i))
        stats = manager.get_port_stats(PORT)
        assert stats["lineCount"] == 2
        assert stats["totalLines"] == 3
        assert stats["activeCaptures"] == 0


class TestCaptures:
    @pytest.mark.asyncio
    async def test_pattern_match_resolves(self, clock):
        manager = PortBufferManager(clock)
        handle = manager.start_capture(PORT, r"Ready", timeout_ms=5000)
        assert handle.capture_id == "capture_1"

        manager.add_line(PORT, "booting")
        clock.advance(0.25)
        manager.add_line(PORT, "System Ready")

        result = await handle
        assert result.success is True
        assert result.reason == "pattern_matched"
        assert result.matched_line.line == "System Ready"
        assert [l.line for l in result.captured_lines] == ["booting", "System Ready"]
        assert result.elapsed_ms == 250
        assert manager.get_active_captures() == []

    @pytest.mark.asyncio
    async def test_only_lines_from_capture_port_count(self, clock):
        manager = PortBufferManager(clock)
        handle = manager.start_capture(PORT, r"Ready", timeout_ms=5000)
        manager.add_line("/dev/ttyUSB1", "Ready")
        assert not handle.future.done()
        manager.add_line(PORT, "Ready")
        assert (await handle).success

    @pytest.mark.asyncio
    async def test_match_is_case_sensitive(self, clock):
        manager = PortBufferManager(clock)
        handle = manager.start_capture(PORT, r"Ready", timeout_ms=5000, max_lines=1)
        manager.add_line(PORT, "ready")
        result = await handle
        assert result.success is False
        assert result.reason == "max_lines"

    @pytest.mark.asyncio
    async def test_max_lines(self, clock):
        manager = PortBufferManager(clock)
        handle = manager.start_capture(PORT, r"never", timeout_ms=5000, max_lines=3)
        for i in range(5):
            manager.add_line(PORT, f"line {i}")
        result = await handle
        assert result.reason == "max_lines"
        assert len(result.captured_lines) == 3

    @pytest.mark.asyncio
    async def test_match_wins_on_last_allowed_line(self, clock):
        manager = PortBufferManager(clock)
        handle = manager.start_capture(PORT, r"done", timeout_ms=5000, max_lines=2)
        manager.add_line(PORT, "working")
        manager.add_line(PORT, "done")
        result = await handle
        assert result.reason == "pattern_matched"

    @pytest.mark.asyncio
    async def test_timeout(self, clock):
        manager = PortBufferManager(clock)
        handle = manager.start_capture(PORT, r"never", timeout_ms=20)
        manager.add_line(PORT, "noise")
        result = await asyncio.wait_for(handle.future, timeout=2)
        assert result.success is False
        assert result.reason == "timeout"
        assert [l.line for l in result.captured_lines] == ["noise"]

    @pytest.mark.asyncio
    async def test_cancel(self, clock):
        manager = PortBufferManager(clock)
        handle = manager.start_capture(PORT, r"x", timeout_ms=5000)
        assert manager.cancel_capture(handle.capture_id) is True
        result = await handle
        assert result.reason == "cancelled"
        assert manager.cancel_capture(handle.capture_id) is False
        assert manager.cancel_capture("capture_999") is False

    @pytest.mark.asyncio
    async def test_abandoned_future_drops_condition(self, clock):
        manager = PortBufferManager(clock)
        handle = manager.start_capture(PORT, r"never", timeout_ms=0)

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(handle.future, timeout=0.05)
        await asyncio.sleep(0)

        assert manager.get_active_captures() == []
        assert manager.cancel_capture(handle.capture_id) is False
        manager.add_line(PORT, "never mind")

    @pytest.mark.asyncio
    async def test_resolves_exactly_once(self, clock):
        manager = PortBufferManager(clock)
        handle = manager.start_capture(PORT, r"Ready", timeout_ms=30)
        manager.add_line(PORT, "Ready")
        await asyncio.sleep(0.06)  # timer would have fired by now
        result = await handle
        assert result.reason == "pattern_matched"

    @pytest.mark.asyncio
    async def test_remove_buffer_cancels_captures(self, clock):
        manager = PortBufferManager(clock)
        handle = manager.start_capture(PORT, r"x", timeout_ms=5000)
        manager.remove_buffer(PORT)
        assert (await handle).reason == "cancelled"

    @pytest.mark.asyncio
    async def test_active_captures_listing(self, clock):
        manager = PortBufferManager(clock)
        manager.start_capture(PORT, r"a", timeout_ms=5000)
        second = manager.start_capture("/dev/ttyUSB1", r"b", timeout_ms=5000)
        assert len(manager.get_active_captures()) == 2
        only = manager.get_active_captures("/dev/ttyUSB1")
        assert [c["id"] for c in only] == [second.capture_id]
        assert only[0]["pattern"] == "b"
        for c in manager.get_active_captures():
            manager.cancel_capture(c["id"])

    @pytest.mark.asyncio
    async def test_invalid_pattern_rejected(self, clock):
        manager = PortBufferManager(clock)
        with pytest.raises(InvalidPatternError):
            manager.start_capture(PORT, "(unclosed", timeout_ms=100)
        assert manager.get_active_captures() == []
