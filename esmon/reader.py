#!/usr/bin/env python3
"""
Serial reader subprocess.

A monitor session runs one of these per port and consumes its stdout line
by line. Keeping the blocking pyserial loop in a child process means the
supervisor's event loop never waits on hardware.

Usage:
    python -m esmon.reader /dev/ttyUSB0 115200 [--raw]
"""

import argparse
import signal
import sys

import serial

from .device_control import pulse_reset
from .implementations import RealClock, RealSerialPort


class SerialReader:
    """Copies a serial port to stdout until stopped."""

    def __init__(self, port: str, baud: int, raw: bool = False):
        self.port = port
        self.baud = baud
        self.raw = raw
        self.running = False
        self._serial = RealSerialPort()

    def connect(self) -> bool:
        if not self._serial.open(self.port, self.baud, timeout=0.05):
            sys.stderr.write(f"ERROR: Could not open {self.port}: {self._serial.last_error}\n")
            sys.stderr.flush()
            return False
        pulse_reset(self._serial, RealClock())
        return True

    def run(self) -> int:
        """Main loop. Returns the process exit code."""
        self.running = True
        out = sys.stdout.buffer
        try:
            while self.running:
                if self.raw:
                    data = self._serial.read_bytes(256)
                else:
                    data = self._serial.read_line() or b""
                if not data:
                    continue
                if not self.raw:
                    text = data.decode("utf-8", errors="replace")
                    data = text.rstrip("\r\n").encode("utf-8") + b"\n"
                out.write(data)
                out.flush()
        except (serial.SerialException, OSError) as e:
            sys.stderr.write(f"ERROR: Read failed on {self.port}: {e}\n")
            sys.stderr.flush()
            return 1
        finally:
            self._serial.close()
        return 0

    def stop(self) -> None:
        self.running = False


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Copy a serial port to stdout")
    parser.add_argument("port", help="Serial port path")
    parser.add_argument("baud", type=int, help="Baud rate")
    parser.add_argument("--raw", action="store_true", help="Pass bytes through unchanged")
    args = parser.parse_args(argv)

    reader = SerialReader(args.port, args.baud, raw=args.raw)
    if not reader.connect():
        return 1

    # Handle signals for clean shutdown
    def signal_handler(sig, frame):
        reader.stop()
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    return reader.run()


if __name__ == "__main__":
    sys.exit(main())
