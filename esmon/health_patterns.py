"""
Pattern tables for the device health classifier.

Everything here is data: ordered regex tables the classifier walks line by
line. Order matters for REBOOT_PATTERNS, the first match wins.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional, Pattern


@dataclass(frozen=True)
class RebootPattern:
    """One row of the reboot/crash table."""
    regex: Pattern[str]
    category: str
    severity: str
    # Which RebootEvent field group(1) fills: "reset_code", "boot_mode" or None
    extract: Optional[str] = None


def _ci(pattern: str) -> Pattern[str]:
    return re.compile(pattern, re.IGNORECASE)


# ESP-IDF / Arduino-ESP32 boot and crash output.
# rst:0x1 (POWERON_RESET),boot:0x13 (SPI_FAST_FLASH_BOOT)
REBOOT_PATTERNS: list[RebootPattern] = [
    RebootPattern(_ci(r"rst:0x([0-9a-f]+)"), "reset", "info", "reset_code"),
    RebootPattern(_ci(r"ets [A-Za-z]+ \d+"), "boot", "info"),
    RebootPattern(_ci(r"boot:0x([0-9a-f]+)"), "boot", "info", "boot_mode"),
    RebootPattern(_ci(r"Brownout detector"), "brownout", "critical"),
    RebootPattern(_ci(r"Guru Meditation Error"), "guru_meditation", "critical"),
    RebootPattern(_ci(r"Backtrace:"), "backtrace", "critical"),
    RebootPattern(_ci(r"Task watchdog got triggered"), "wdt_task", "critical"),
    RebootPattern(_ci(r"Interrupt watchdog"), "wdt_interrupt", "critical"),
    RebootPattern(_ci(r"panic"), "panic", "critical"),
    RebootPattern(_ci(r"abort\(\)"), "abort", "critical"),
    RebootPattern(_ci(r"LoadProhibited"), "load_prohibited", "error"),
    RebootPattern(_ci(r"StoreProhibited"), "store_prohibited", "error"),
    RebootPattern(_ci(r"InstrFetchProhibited"), "instr_fetch_prohibited", "error"),
    RebootPattern(_ci(r"CPU halted"), "cpu_halted", "error"),
]

# Categories that count as a crash rather than a plain reboot
CRASH_CATEGORIES = frozenset({
    "guru_meditation",
    "backtrace",
    "wdt_task",
    "wdt_interrupt",
    "panic",
    "abort",
    "brownout",
})

# Lines that mean the firmware made it through boot
STARTUP_MARKERS: list[Pattern[str]] = [
    _ci(r"WiFi.*[Cc]onnect"),
    re.compile(r"::RegisteredInfo::"),
    _ci(r"setup\(\) complete"),
    _ci(r"Ready"),
    _ci(r"HTTP server started"),
]

# Output that is expected to repeat and must never count towards a loop
NORMAL_RETRY_PATTERNS: list[Pattern[str]] = [
    # WiFi connection attempts
    _ci(r"Attempt \d+/\d+"),
    _ci(r"Trying SSID"),
    _ci(r"WiFi\.begin"),
    _ci(r"status=\d"),
    _ci(r"Connecting to"),
    _ci(r"Reconnecting"),
    # NTP time sync
    _ci(r"NTP.*sync"),
    _ci(r"time.*server"),
    _ci(r"Waiting for NTP"),
    _ci(r"sntp"),
    # HTTP retries and redirects
    _ci(r"HTTP.*redirect"),
    re.compile(r"30[1237]"),
    _ci(r"Retry"),
    _ci(r"retrying"),
    # MQTT
    _ci(r"MQTT.*connect"),
    _ci(r"broker.*connect"),
    # mDNS and general network
    _ci(r"mDNS"),
    _ci(r"ping"),
    _ci(r"DNS.*resolv"),
    _ci(r"DNS\d+:"),
    # Periodic network status output
    _ci(r"Network Status"),
    _ci(r"IP:\s*\d+\.\d+\.\d+\.\d+"),
    _ci(r"Gateway:"),
    _ci(r"Subnet:"),
    _ci(r"RSSI:"),
    _ci(r"MAC:"),
    # ESP32 ROM bootloader lines
    _ci(r"^load:0x"),
    _ci(r"^entry 0x"),
    _ci(r"^configsip:"),
    _ci(r"^clk_drv:"),
    _ci(r"^mode:DIO"),
    _ci(r"^ets [A-Za-z]+"),
]

# Lines kept as the stack trace of a crash
STACK_TRACE_PATTERN = _ci(r"Backtrace:|0x[0-9a-f]+:0x[0-9a-f]+")

# Loop-key normalization, applied in order
NORMALIZE_RULES: list[tuple[Pattern[str], str]] = [
    (re.compile(r"\d{2}:\d{2}:\d{2}"), "TIME"),
    (re.compile(r"\d+\.\d+\.\d+\.\d+"), "IP"),
    (_ci(r"0x[0-9a-f]+"), "HEX"),
    (re.compile(r"\d+"), "N"),
]
NORMALIZED_MAX_CHARS = 100

SUGGESTIONS = {
    "wdt_task": "Task Watchdog triggered. Check for blocking operations, add yield()/delay() in loops.",
    "wdt_interrupt": "Interrupt Watchdog triggered. Keep ISRs short and avoid long critical sections.",
    "brownout": "Brownout detected. Check power supply, reduce WiFi TX power, or add capacitors.",
    "guru_meditation": "Memory access violation. Check pointer operations and array bounds.",
}
LOOP_SUGGESTION = (
    "Loop detected ({occurrences}x in {interval_ms}ms). "
    "Check for race conditions or async timing issues."
)
UNSTABLE_SUGGESTION = "Device rebooted recently. Monitor for stability."
