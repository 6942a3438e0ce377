"""
Reset reason tracking.

Pulls the named reset cause out of boot output across targets:
- ESP32/ESP-IDF: rst:0x patterns
- Zephyr (nRF5340): POWER.RESETREAS register
- Zephyr (STM32): RCC_CSR register
- Generic: "Reset cause:" patterns

The health classifier keeps one tracker per port so reports can show how
often each cause occurred.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from .interfaces import ClockInterface


# Format: rst:0x1 (POWERON_RESET),boot:0x13 (SPI_FAST_FLASH_BOOT)
ESP32_RESET_PATTERN = re.compile(r'rst:0x[0-9a-fA-F]+\s*\(([^)]+)\)', re.IGNORECASE)

# Example: "Reset reason: 0x00000004 (RESETPIN)"
ZEPHYR_NRF_RESET_PATTERN = re.compile(
    r'Reset\s+reason:\s*0x[0-9a-fA-F]+\s*\(([^)]+)\)', re.IGNORECASE
)

# Example: "Reset cause: PIN (RCC_CSR = 0x0C000000)"
ZEPHYR_STM32_RESET_PATTERN = re.compile(
    r'Reset\s+cause:\s*([A-Z_]+)(?:\s*\(RCC_CSR\s*=\s*0x[0-9a-fA-F]+\)|(?=\s*$))',
    re.IGNORECASE,
)

# Example: "Boot reason: Watchdog timeout"
GENERIC_RESET_PATTERN = re.compile(
    r'(?:Reset|Boot)\s+(?:cause|reason):\s*([^(]+?)(?:\s*\(|$)', re.IGNORECASE
)

# Most specific first
RESET_PATTERNS = (
    ESP32_RESET_PATTERN,
    ZEPHYR_NRF_RESET_PATTERN,
    ZEPHYR_STM32_RESET_PATTERN,
    GENERIC_RESET_PATTERN,
)

# Reset reasons that indicate something went wrong
ALERT_REASONS = {
    # Watchdog resets
    "WATCHDOG", "WDT", "TG0WDT_SYS_RESET", "TG1WDT_SYS_RESET",
    "RTCWDT_RTC_RESET", "INT_WDT", "TASK_WDT",
    # Brownout
    "BROWNOUT", "BROWNOUT_RESET",
    # Panic/crash
    "PANIC", "SW_CPU_RESET", "EXCEPTION",
    # Fault resets
    "LOCKUP", "SYSRESETREQ",
}


def parse_reset_reason(line: str) -> Optional[str]:
    """Return the upper-cased reset reason named on `line`, if any."""
    for pattern in RESET_PATTERNS:
        match = pattern.search(line)
        if match:
            return match.group(1).strip().upper()
    return None


def is_unexpected_reset(reason: str) -> bool:
    """True for watchdog, brownout, panic and fault resets (substring match)."""
    reason_upper = reason.upper()
    return any(alert in reason_upper for alert in ALERT_REASONS)


@dataclass
class ResetEvent:
    """Single reset event with timestamp and reason."""
    timestamp: datetime
    reason: str
    raw_line: str = ""


class ResetReasonTracker:
    """Counts reset reasons seen on one port."""

    def __init__(self, clock: ClockInterface):
        self._clock = clock
        self._history: list[ResetEvent] = []
        self._counts: dict[str, int] = {}

    def check_line(self, line: str) -> Optional[ResetEvent]:
        reason = parse_reset_reason(line)
        if not reason:
            return None
        event = ResetEvent(timestamp=self._clock.now(), reason=reason, raw_line=line.strip())
        self._history.append(event)
        self._counts[reason] = self._counts.get(reason, 0) + 1
        return event

    def get_statistics(self) -> dict:
        """
        Returns:
            {"last_reason": "POWERON_RESET", "last_time": "...",
             "history": {"POWERON_RESET": 5}, "total": 5, "unexpected": 0}
        """
        last = self._history[-1] if self._history else None
        return {
            "last_reason": last.reason if last else None,
            "last_time": last.timestamp.isoformat() if last else None,
            "history": self._counts.copy(),
            "total": len(self._history),
            "unexpected": sum(n for r, n in self._counts.items() if is_unexpected_reset(r)),
        }
