"""
Interfaces for the Embedded Serial Monitor.

Abstract base classes for the pluggable hardware and time sources.
This enables dependency injection and mock-based testing without hardware.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional


@dataclass
class PortInfo:
    """Information about a serial port."""
    device: str
    description: str
    hwid: str


class SerialPortInterface(ABC):
    """
    Abstract interface for serial port operations.

    Implementations:
    - RealSerialPort: Wraps pyserial for actual hardware
    - MockSerialPort: For unit testing without hardware
    """

    @abstractmethod
    def open(self, port: str, baud: int, timeout: float = 0.1) -> bool:
        """Open serial port. Returns True on success."""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close serial port."""
        pass

    @abstractmethod
    def is_open(self) -> bool:
        """Check if port is currently open."""
        pass

    @abstractmethod
    def read_line(self) -> Optional[bytes]:
        """Read a line. Returns None if no data available."""
        pass

    @abstractmethod
    def read_bytes(self, max_bytes: int) -> bytes:
        """Read up to max_bytes from serial. Returns b'' if no data."""
        pass

    @abstractmethod
    def set_dtr(self, value: bool) -> None:
        """Drive the DTR modem line."""
        pass

    @abstractmethod
    def set_rts(self, value: bool) -> None:
        """Drive the RTS modem line."""
        pass

    @staticmethod
    @abstractmethod
    def list_ports() -> List[PortInfo]:
        """List available serial ports."""
        pass


class ClockInterface(ABC):
    """
    Abstract interface for time operations.

    Allows tests to control time deterministically.
    """

    @abstractmethod
    def now(self) -> datetime:
        """Get current datetime."""
        pass

    @abstractmethod
    def timestamp(self) -> float:
        """Get current time as Unix timestamp."""
        pass

    @abstractmethod
    def sleep(self, seconds: float) -> None:
        """Sleep for specified seconds."""
        pass
