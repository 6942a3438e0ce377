"""Tests for reset reason parsing across ESP32, Zephyr and generic output."""

import pytest

from esmon.reset_reason import ResetReasonTracker, is_unexpected_reset, parse_reset_reason


@pytest.mark.parametrize("line,expected", [
    ("rst:0x1 (POWERON_RESET),boot:0x13 (SPI_FAST_FLASH_BOOT)", "POWERON_RESET"),
    ("rst:0x7 (TG0WDT_SYS_RESET),boot:0x13", "TG0WDT_SYS_RESET"),
    ("Reset reason: 0x00000004 (RESETPIN)", "RESETPIN"),
    ("Reset cause: PIN (RCC_CSR = 0x0C000000)", "PIN"),
    ("Boot reason: Watchdog timeout", "WATCHDOG TIMEOUT"),
])
def test_parse_reset_reason(line, expected):
    assert parse_reset_reason(line) == expected


def test_parse_reset_reason_no_match():
    assert parse_reset_reason("I (325) wifi: connected") is None


@pytest.mark.parametrize("reason,unexpected", [
    ("POWERON_RESET", False),
    ("RESETPIN", False),
    ("TG1WDT_SYS_RESET", True),
    ("BROWNOUT_RESET", True),
    ("WATCHDOG TIMEOUT", True),
])
def test_is_unexpected_reset(reason, unexpected):
    assert is_unexpected_reset(reason) is unexpected


class TestResetReasonTracker:
    def test_counts_and_last_reason(self, clock):
        tracker = ResetReasonTracker(clock)
        tracker.check_line("rst:0x1 (POWERON_RESET),boot:0x13")
        clock.advance(5)
        tracker.check_line("rst:0xf (BROWNOUT_RESET),boot:0x13")
        tracker.check_line("plain output")

        stats = tracker.get_statistics()
        assert stats["total"] == 2
        assert stats["last_reason"] == "BROWNOUT_RESET"
        assert stats["last_time"] == clock.now().isoformat()
        assert stats["history"] == {"POWERON_RESET": 1, "BROWNOUT_RESET": 1}
        assert stats["unexpected"] == 1

    def test_empty_statistics(self, clock):
        stats = ResetReasonTracker(clock).get_statistics()
        assert stats == {"last_reason": None, "last_time": None, "history": {}, "total": 0, "unexpected": 0}
