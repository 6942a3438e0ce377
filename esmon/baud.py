"""
Baud rate negotiation.

Boards often come up at a different rate than the one requested (ESP32 ROM
output at 74880 is the classic case). Each candidate rate is probed by
resetting the board and scoring what it prints; readable text with line
breaks and familiar boot keywords wins.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Union

from .device_control import pulse_reset
from .implementations import RealClock
from .interfaces import ClockInterface, SerialPortInterface
from .log_sanitize import preview_text

logger = logging.getLogger(__name__)

COMMON_BAUD_RATES = (115200, 74880, 57600, 9600)

KEYWORD_PATTERN = re.compile(
    r"rst:0x|wifi|rssi|http|webhook|esp32|guru|connecting|ip:", re.IGNORECASE
)

_PRINTABLE_WHITESPACE = frozenset(b"\n\r\t")
_MAX_SAMPLE_BYTES = 16 * 1024


def _is_printable(byte: int) -> bool:
    return 0x20 <= byte < 0x7F or byte in _PRINTABLE_WHITESPACE


def score_sample(data: Union[bytes, str]) -> float:
    """
    Score how much a raw sample looks like human-readable device output.

    0.6 * printable ratio + 0.25 * min(newlines, 10) / 10 + 0.15 * keyword
    hit, clamped to [0, 1]. Empty or whitespace-only samples score 0.
    """
    if isinstance(data, str):
        data = data.encode("utf-8", errors="replace")
    if not data:
        return 0.0

    printable = bytes(b for b in data if _is_printable(b))
    if not printable.strip():
        return 0.0

    ratio = len(printable) / len(data)
    newlines = printable.count(b"\n")
    keyword = 1.0 if KEYWORD_PATTERN.search(printable.decode("ascii")) else 0.0
    score = ratio * 0.6 + min(newlines, 10) / 10 * 0.25 + keyword * 0.15
    return max(0.0, min(1.0, score))


def build_candidates(current: Optional[int], common: Iterable[int] = COMMON_BAUD_RATES) -> list[int]:
    """Current rate first, then the common rates; no duplicates, no non-positive values."""
    candidates: list[int] = []
    for value in [current, *common]:
        if value is None or value <= 0 or value in candidates:
            continue
        candidates.append(value)
    return candidates


@dataclass
class ProbeResult:
    """What one candidate rate produced."""
    baud: int
    score: float
    sample: bytes


@dataclass
class BaudDetection:
    """The winning candidate."""
    baud: int
    score: float
    preview: str


SerialFactory = Callable[[], SerialPortInterface]


class BaudNegotiator:
    """
    Probes candidate baud rates on a port and picks the most readable one.

    Usage:
        negotiator = BaudNegotiator(RealSerialPort)
        detection = await negotiator.detect("/dev/ttyUSB0", 115200)
        baud = detection.baud if detection else 115200
    """

    def __init__(
        self,
        serial_factory: SerialFactory,
        clock: Optional[ClockInterface] = None,
        probe_seconds: float = 1.8,
        early_stop: float = 0.8,
        min_score: float = 0.3,
        inter_probe_delay: float = 0.15,
        common_rates: Iterable[int] = COMMON_BAUD_RATES,
    ):
        self._serial_factory = serial_factory
        self._clock = clock or RealClock()
        self._probe_seconds = probe_seconds
        self._early_stop = early_stop
        self._min_score = min_score
        self._inter_probe_delay = inter_probe_delay
        self._common_rates = tuple(common_rates)

    def probe(self, port: str, baud: int) -> ProbeResult:
        """Reset the board at `baud` and score what it prints (blocking)."""
        serial_port = self._serial_factory()
        if not serial_port.open(port, baud, timeout=0.1):
            logger.debug("Probe %s @ %d: open failed", port, baud)
            return ProbeResult(baud=baud, score=0.0, sample=b"")

        sample = bytearray()
        try:
            pulse_reset(serial_port, self._clock)
            deadline = time.monotonic() + self._probe_seconds
            while time.monotonic() < deadline and len(sample) < _MAX_SAMPLE_BYTES:
                sample.extend(serial_port.read_bytes(4096))
        except OSError as e:
            logger.debug("Probe %s @ %d: read failed: %s", port, baud, e)
        finally:
            serial_port.close()

        score = score_sample(bytes(sample))
        logger.debug("Probe %s @ %d: %d bytes, score %.2f", port, baud, len(sample), score)
        return ProbeResult(baud=baud, score=score, sample=bytes(sample))

    async def detect(self, port: str, current_baud: Optional[int]) -> Optional[BaudDetection]:
        """
        Probe each candidate in turn, stopping early on a confident score.

        Returns None when nothing scores at least min_score; the caller then
        keeps the requested rate.
        """
        best: Optional[ProbeResult] = None

        for index, baud in enumerate(build_candidates(current_baud, self._common_rates)):
            if index and self._inter_probe_delay > 0:
                await asyncio.sleep(self._inter_probe_delay)
            result = await asyncio.to_thread(self.probe, port, baud)
            if best is None or result.score > best.score:
                best = result
            if best.score >= self._early_stop:
                break

        if best is None or best.score < self._min_score:
            logger.info(
                "Auto-baud on %s found no confident rate (best %.2f)",
                port, best.score if best else 0.0,
            )
            return None

        preview = preview_text(best.sample.decode("utf-8", errors="replace"))
        logger.info("Auto-baud on %s selected %d (score %.2f)", port, best.baud, best.score)
        return BaudDetection(baud=best.baud, score=best.score, preview=preview)
