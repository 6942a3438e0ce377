"""
Device control helpers for the Embedded Serial Monitor.

Provides:
- Device reset via DTR/RTS
- ANSI escape code handling
"""

import logging
import re
from dataclasses import dataclass
from typing import Optional

from .interfaces import ClockInterface, SerialPortInterface

logger = logging.getLogger(__name__)


# ANSI escape code pattern
ANSI_ESCAPE = re.compile(r'\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])')


def strip_ansi(text: str) -> str:
    """Remove ANSI escape codes from text."""
    return ANSI_ESCAPE.sub('', text)


@dataclass
class ResetSequence:
    """A reset sequence step."""
    dtr: Optional[bool]
    rts: Optional[bool]
    delay: float = 0.0


# Named reset sequences
RESET_SEQUENCES = {
    # Pulse used before baud probing and before the reader starts
    "probe": [
        ResetSequence(dtr=False, rts=False, delay=0.05),
        ResetSequence(dtr=True, rts=True, delay=0.05),
    ],
}


def pulse_reset(
    serial_port: SerialPortInterface,
    clock: ClockInterface,
    sequence_name: str = "probe",
) -> bool:
    """
    Drive DTR/RTS through a named reset sequence on an open port.

    Returns False when the sequence is unknown or the port rejects the
    modem line change; the caller carries on either way.
    """
    if sequence_name not in RESET_SEQUENCES:
        logger.error("Unknown reset sequence: %s", sequence_name)
        return False

    try:
        for step in RESET_SEQUENCES[sequence_name]:
            if step.dtr is not None:
                serial_port.set_dtr(step.dtr)
            if step.rts is not None:
                serial_port.set_rts(step.rts)
            if step.delay > 0:
                clock.sleep(step.delay)
    except OSError as e:
        logger.warning("Reset pulse (%s) failed: %s", sequence_name, e)
        return False
    return True
