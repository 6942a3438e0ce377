"""
Embedded Serial Monitor.

Supervises serial ports attached to embedded boards: exclusive port
ownership, bounded line history with pattern captures, crash and boot-loop
classification, automatic baud negotiation and live event fan-out.
"""

__version__ = "0.3.0"

from .port_lock import PortLockRegistry, PortState, PortLockInfo, LockResult, PortBusyError
from .port_buffer import PortBufferManager, PortRingBuffer, BufferedLine, CaptureResult
from .device_health import DeviceHealthMonitor, DeviceHealthStatus, RebootEvent, LoopDetection
from .baud import BaudNegotiator, score_sample
from .broadcaster import EventBroadcaster
from .monitor import MonitorSession, MonitorOptions, MonitorSummary, StopReason
from .session_manager import MonitorManager
from .supervisor import Supervisor
from .errors import InvalidPatternError, SessionStartError

__all__ = [
    "PortLockRegistry",
    "PortState",
    "PortLockInfo",
    "LockResult",
    "PortBusyError",
    "PortBufferManager",
    "PortRingBuffer",
    "BufferedLine",
    "CaptureResult",
    "DeviceHealthMonitor",
    "DeviceHealthStatus",
    "RebootEvent",
    "LoopDetection",
    "BaudNegotiator",
    "score_sample",
    "EventBroadcaster",
    "MonitorSession",
    "MonitorOptions",
    "MonitorSummary",
    "StopReason",
    "MonitorManager",
    "Supervisor",
    "InvalidPatternError",
    "SessionStartError",
]
