"""
Real implementations of interfaces for production use.

These classes wrap actual system resources (serial ports, wall clock)
and implement the abstract interfaces.
"""

from typing import List, Optional
from datetime import datetime
import logging
import time

import serial
import serial.tools.list_ports

from .interfaces import SerialPortInterface, ClockInterface, PortInfo

logger = logging.getLogger(__name__)


class RealSerialPort(SerialPortInterface):
    """
    Real serial port implementation using pyserial.
    """

    def __init__(self):
        self._serial: Optional[serial.Serial] = None
        self.last_error: Optional[str] = None

    def open(self, port: str, baud: int, timeout: float = 0.1) -> bool:
        try:
            self._serial = serial.Serial(port, baud, timeout=timeout)
            self.last_error = None
            return True
        except (serial.SerialException, OSError, ValueError) as e:
            self.last_error = str(e)
            logger.debug("Open %s @ %d failed: %s", port, baud, e)
            self._serial = None
            return False

    def close(self) -> None:
        if self._serial:
            try:
                self._serial.close()
            except (serial.SerialException, OSError) as e:
                logger.debug("Close failed: %s", e)
            self._serial = None

    def is_open(self) -> bool:
        if self._serial is None:
            return False
        return bool(self._serial.is_open)

    def read_line(self) -> Optional[bytes]:
        if not self._serial:
            return None
        line = self._serial.readline()
        return line or None

    def read_bytes(self, max_bytes: int) -> bytes:
        if not self._serial or max_bytes <= 0:
            return b""
        waiting = self._serial.in_waiting
        # Block for up to the port timeout when nothing is buffered yet.
        return self._serial.read(min(waiting, max_bytes) if waiting else 1)

    def set_dtr(self, value: bool) -> None:
        if self._serial:
            self._serial.dtr = value

    def set_rts(self, value: bool) -> None:
        if self._serial:
            self._serial.rts = value

    @staticmethod
    def list_ports() -> List[PortInfo]:
        ports = []
        for p in serial.tools.list_ports.comports():
            ports.append(PortInfo(
                device=p.device,
                description=p.description or "",
                hwid=p.hwid or "",
            ))
        return ports


class RealClock(ClockInterface):
    """
    Real clock implementation using system time.
    """

    def now(self) -> datetime:
        return datetime.now()

    def timestamp(self) -> float:
        return time.time()

    def sleep(self, seconds: float) -> None:
        time.sleep(seconds)
