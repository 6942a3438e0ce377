"""Exception types shared across the monitor."""

from __future__ import annotations


class InvalidPatternError(ValueError):
    """A user supplied regular expression failed to compile."""

    def __init__(self, pattern: str, detail: str, what: str = "stop_on") -> None:
        super().__init__(f"Invalid {what} regex: {detail}")
        self.pattern = pattern
        self.detail = detail


class SessionStartError(RuntimeError):
    """The serial reader subprocess could not be spawned."""


class PortBusyError(RuntimeError):
    """Raised by lock helpers when another owner holds the port."""

    def __init__(self, port: str, message: str, previous_owner: str | None = None) -> None:
        super().__init__(message)
        self.port = port
        self.previous_owner = previous_owner
