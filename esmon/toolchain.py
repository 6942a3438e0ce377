"""Running compile and flash tools against a locked port.

The build/flash tool itself (arduino-cli, esptool, idf.py, west, ...) is
opaque: it gets an argv and hands back an exit code plus its output. What
this module adds is the port lock discipline, so a flash never races a
monitor session on the same port.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from .port_lock import PortLockRegistry, PortState

logger = logging.getLogger(__name__)

OPERATION_STATES = {
    "upload": PortState.UPLOADING,
    "flash": PortState.UPLOADING,
    "compile": PortState.COMPILING,
}


def _find_in_sdk_dirs(name: str) -> Optional[str]:
    """Search for a tool in known install directories beyond PATH.

    Checks user-local bin directories and the ESP-IDF tools tree, which
    installers commonly leave off the user's PATH.

    Args:
        name: Binary name to search for (e.g., arduino-cli).

    Returns:
        Absolute path to the binary, or None if not found.
    """
    home = Path.home()
    for bin_dir in (home / ".local" / "bin", home / "bin"):
        candidate = bin_dir / name
        if candidate.is_file():
            return str(candidate)
    for tool_dir in sorted(home.glob(".espressif/tools/*/*/*/bin"), reverse=True):
        candidate = tool_dir / name
        if candidate.is_file():
            return str(candidate)
    return None


def which_or_sdk(name: str) -> Optional[str]:
    """Find a tool on PATH or in known install directories.

    Args:
        name: Binary name to search for.

    Returns:
        Absolute path to the binary, or None if not found.
    """
    return shutil.which(name) or _find_in_sdk_dirs(name)


@dataclass
class ToolResult:
    """Outcome of one tool run."""
    exit_code: Optional[int]
    stdout: str
    stderr: str
    duration_ms: int
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "exitCode": self.exit_code,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "durationMs": self.duration_ms,
            "error": self.error,
        }


class ToolRunner:
    """Runs external tools, holding the port lock while they touch a port."""

    def __init__(self, locks: PortLockRegistry):
        self._locks = locks

    async def run(
        self,
        argv: Sequence[str],
        *,
        port: Optional[str] = None,
        operation: str = "upload",
        timeout_s: Optional[float] = None,
        cwd: Optional[str] = None,
    ) -> ToolResult:
        """Run `argv`, locking `port` for the duration when one is given.

        Args:
            argv: Command line; argv[0] is resolved with which_or_sdk().
            port: Serial port the tool uses, if any.
            operation: Lock owner tag; "upload"/"flash" and "compile" also
                select the port state shown while the tool runs.
            timeout_s: Kill the tool after this many seconds.
            cwd: Working directory for the tool.

        Returns:
            ToolResult. A lock conflict or a missing binary yields
            exit_code None with `error` set; nothing is raised.
        """
        if not argv:
            raise ValueError("argv must not be empty")

        if port is not None:
            lock = self._locks.try_lock(port, operation)
            if not lock.success:
                return ToolResult(None, "", "", 0, error=lock.error)
            self._locks.set_state(port, OPERATION_STATES.get(operation, PortState.LOCKED), {"argv": list(argv)})
            locked_at = self._locks.get_state(port).locked_at

        try:
            return await self._execute(list(argv), timeout_s, cwd)
        finally:
            if port is not None and self._locks.get_state(port).locked_at in (None, locked_at):
                self._locks.release(port, owner=operation)

    async def _execute(self, argv: list[str], timeout_s: Optional[float], cwd: Optional[str]) -> ToolResult:
        binary = which_or_sdk(argv[0]) or argv[0]
        started = time.monotonic()

        def elapsed_ms() -> int:
            return int((time.monotonic() - started) * 1000)

        try:
            proc = await asyncio.create_subprocess_exec(
                binary, *argv[1:],
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
            )
        except OSError as e:
            logger.error("Could not start %s: %s", argv[0], e)
            return ToolResult(None, "", "", elapsed_ms(), error=str(e))

        logger.info("Running %s (pid %d)", " ".join(argv), proc.pid)
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout_s)
        except asyncio.TimeoutError:
            logger.warning("%s timed out after %.0fs; killing", argv[0], timeout_s)
            proc.kill()
            stdout, stderr = await proc.communicate()
            return ToolResult(
                None,
                stdout.decode("utf-8", errors="replace"),
                stderr.decode("utf-8", errors="replace"),
                elapsed_ms(),
                error="timeout",
            )

        result = ToolResult(
            proc.returncode,
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
            elapsed_ms(),
        )
        logger.info("%s exited with %s in %dms", argv[0], result.exit_code, result.duration_ms)
        return result
