"""End-to-end tests for esmon/supervisor.py with a scripted reader."""

from __future__ import annotations

import asyncio
import json

import pytest

from esmon.config import MonitorConfig
from esmon.mocks import MockSerialPort
from esmon.port_buffer import CaptureResult
from esmon.supervisor import Supervisor

PORT = "/dev/ttyUSB0"
TIMEOUT = 10

BOOT_SCRIPT = """
import time
print('rst:0x1 (POWERON_RESET),boot:0x13 (SPI_FAST_FLASH_BOOT)')
print('WiFi connecting')
time.sleep(0.3)
print('System Ready')
time.sleep(60)
"""


@pytest.fixture
def make_supervisor(tmp_path, reader_script):
    def build(script=BOOT_SCRIPT, **config):
        cfg = MonitorConfig(run_dir=str(tmp_path), **config)
        return Supervisor(cfg, serial_factory=MockSerialPort, reader_command=reader_script(script))

    return build


class TestSupervisor:
    @pytest.mark.asyncio
    async def test_monitor_capture_and_health(self, make_supervisor):
        sup = make_supervisor()
        try:
            token = await sup.start_monitor(PORT, auto_baud=False)
            capture = sup.start_capture(PORT, r"Ready", timeout_ms=5000)

            result = await asyncio.wait_for(capture.future, TIMEOUT)
            assert isinstance(result, CaptureResult)
            assert result.success is True
            assert result.matched_line.line == "System Ready"

            assert sup.lock_state(PORT)["state"] == "monitoring"
            assert sup.sessions.list_tokens() == [token]
            assert [l["line"] for l in sup.recent_lines(PORT, 2)] == ["WiFi connecting", "System Ready"]

            report = sup.health_report(PORT)
            assert report["status"] == "unstable"
            assert report["details"]["reboot_count"] == 1
            assert sup.health(PORT)["last_reboot"]["reset_reason"] == "POWERON_RESET"
            assert [h["port"] for h in sup.health()] == [PORT]

            summary = await asyncio.wait_for(sup.stop_monitor(token=token), TIMEOUT)
            assert summary.reason.value == "manual"
            assert summary.reboot_detected is True
            assert summary.lines == 3
            assert sup.lock_state(PORT)["state"] == "idle"
        finally:
            await sup.close()

    @pytest.mark.asyncio
    async def test_tool_run_blocked_while_monitoring(self, make_supervisor):
        sup = make_supervisor()
        try:
            await sup.start_monitor(PORT, auto_baud=False)
            result = await sup.run_tool(["true"], port=PORT)
            assert result.exit_code is None
            assert result.error == "Port is monitoring by monitor"
        finally:
            await sup.close()

    @pytest.mark.asyncio
    async def test_wait_monitor_returns_summary(self, make_supervisor):
        sup = make_supervisor(script="print('only line')\n")
        try:
            token = await sup.start_monitor(PORT, auto_baud=False, max_lines=1)
            summary = await asyncio.wait_for(sup.wait_monitor(token), TIMEOUT)
            assert summary.reason.value == "line_limit"
            assert summary.last_line == "only line"
            assert await sup.wait_monitor("unknown-token") is None
        finally:
            await sup.close()

    @pytest.mark.asyncio
    async def test_default_baud_from_config(self, make_supervisor):
        sup = make_supervisor(script="import sys\nprint(sys.argv[2])\n", default_baud=74880)
        try:
            token = await sup.start_monitor(PORT, auto_baud=False)
            summary = await asyncio.wait_for(sup.wait_monitor(token), TIMEOUT)
            assert summary.baud == 74880
            assert summary.last_line == "74880"
        finally:
            await sup.close()

    @pytest.mark.asyncio
    async def test_audit_log_records_session_and_lock_events(self, make_supervisor, tmp_path):
        sup = make_supervisor(script="print('hi')\n")
        try:
            token = await sup.start_monitor(PORT, auto_baud=False)
            await asyncio.wait_for(sup.wait_monitor(token), TIMEOUT)
        finally:
            await sup.close()

        records = [json.loads(l) for l in (tmp_path / "events.jsonl").read_text().splitlines()]
        types = [r["type"] for r in records]
        assert types[0] == "lock_locked"
        assert "session_started" in types
        assert "lock_released" in types
        assert types[-1] == "session_ended"
        assert records[-1]["data"]["token"] == token
        assert [r["sequence"] for r in records] == list(range(1, len(records) + 1))

    @pytest.mark.asyncio
    async def test_close_stops_everything(self, make_supervisor):
        sup = make_supervisor()
        await sup.start_monitor(PORT, auto_baud=False)
        await sup.start_monitor("/dev/ttyUSB1", auto_baud=False)
        await asyncio.wait_for(sup.close(), TIMEOUT)
        assert sup.sessions.list_tokens() == []
        assert sup.lock_state() == []
