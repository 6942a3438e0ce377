"""Shared pytest configuration for esmon tests."""

from __future__ import annotations

import sys
from datetime import datetime

import pytest

from esmon.mocks import MockClock


@pytest.fixture
def clock():
    return MockClock(datetime(2025, 1, 1, 12, 0, 0))


def python_reader(script: str):
    """Reader command that runs `script` with this interpreter, unbuffered.

    The script sees the usual reader arguments in sys.argv[1:]
    (port, baud and an optional --raw).
    """

    def build(port: str, baud: int, raw: bool) -> list[str]:
        argv = [sys.executable, "-u", "-c", script, port, str(baud)]
        if raw:
            argv.append("--raw")
        return argv

    return build


@pytest.fixture
def reader_script():
    """Factory fixture: reader_script(source) -> reader command."""
    return python_reader
