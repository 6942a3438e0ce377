"""
Mock implementations for testing.

These classes implement the abstract interfaces with in-memory behavior
suitable for unit testing without hardware.
"""

from collections import deque
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from .interfaces import SerialPortInterface, ClockInterface, PortInfo


class MockSerialPort(SerialPortInterface):
    """
    Mock serial port for testing.

    Provides a queue-based simulation of serial communication.
    Test code can inject data with inject_line(), or register what the
    device "sends" at a given baud rate with set_baud_data().
    """

    def __init__(self):
        self._is_open = False
        self._port = ""
        self._baud = 0
        self._rx_buffer: deque = deque()
        self._baud_data: Dict[int, bytes] = {}
        self._fail_on_open = False
        self._available_ports: List[PortInfo] = []
        self.opened: List[Tuple[str, int]] = []
        self.line_changes: List[Tuple[str, bool]] = []

    def open(self, port: str, baud: int, timeout: float = 0.1) -> bool:
        if self._fail_on_open:
            return False
        self._port = port
        self._baud = baud
        self._is_open = True
        self.opened.append((port, baud))
        if baud in self._baud_data:
            self._rx_buffer.append(self._baud_data[baud])
        return True

    def close(self) -> None:
        self._is_open = False
        self._rx_buffer.clear()

    def is_open(self) -> bool:
        return self._is_open

    def read_line(self) -> Optional[bytes]:
        if not self._is_open or not self._rx_buffer:
            return None
        return self._rx_buffer.popleft()

    def read_bytes(self, max_bytes: int) -> bytes:
        if not self._is_open or not self._rx_buffer:
            return b""
        chunk = self._rx_buffer.popleft()
        if len(chunk) > max_bytes:
            self._rx_buffer.appendleft(chunk[max_bytes:])
            chunk = chunk[:max_bytes]
        return chunk

    def set_dtr(self, value: bool) -> None:
        self.line_changes.append(("dtr", value))

    def set_rts(self, value: bool) -> None:
        self.line_changes.append(("rts", value))

    def list_ports(self) -> List[PortInfo]:
        return list(self._available_ports)

    # Test helper methods

    def inject_line(self, line: str) -> None:
        """Inject a line into the receive buffer (for testing)."""
        self._rx_buffer.append((line + "\n").encode())

    def inject_bytes(self, data: bytes) -> None:
        """Inject raw bytes into the receive buffer."""
        self._rx_buffer.append(data)

    def set_baud_data(self, baud: int, data: bytes) -> None:
        """Bytes that become readable whenever the port is opened at `baud`."""
        self._baud_data[baud] = data

    def set_fail_on_open(self, fail: bool) -> None:
        """Make open() fail (for testing error handling)."""
        self._fail_on_open = fail

    def set_available_ports(self, ports: List[PortInfo]) -> None:
        """Set the list returned by list_ports()."""
        self._available_ports = ports


class MockClock(ClockInterface):
    """
    Controllable clock for testing.

    Time can be advanced manually for deterministic testing of
    time-dependent behavior.
    """

    def __init__(self, start_time: Optional[datetime] = None):
        self._current_time = start_time or datetime(2025, 1, 1, 0, 0, 0)
        self._sleep_calls: List[float] = []

    def now(self) -> datetime:
        return self._current_time

    def timestamp(self) -> float:
        return self._current_time.timestamp()

    def sleep(self, seconds: float) -> None:
        self._sleep_calls.append(seconds)
        # Don't actually sleep, just record the call

    # Test helper methods

    def advance(self, seconds: float) -> None:
        """Advance time by specified seconds."""
        self._current_time += timedelta(seconds=seconds)

    def set_time(self, dt: datetime) -> None:
        """Set current time to specific datetime."""
        self._current_time = dt

    def get_sleep_calls(self) -> List[float]:
        """Get list of all sleep() calls made."""
        return self._sleep_calls.copy()
