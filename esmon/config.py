"""
Configuration for the Embedded Serial Monitor.

Defaults live on MonitorConfig. An optional YAML file overrides them, and
ESMON_* environment variables override the file.
"""

from __future__ import annotations

import dataclasses
import os
import sys
from dataclasses import dataclass, field
from typing import Any, Optional

import yaml


@dataclass
class MonitorConfig:
    """Every tunable the supervisor and its registries use."""

    # Port lock registry
    lock_timeout_s: float = 120.0
    lock_sweep_interval_s: float = 30.0

    # Ring buffers and captures
    buffer_size: int = 1000
    capture_timeout_ms: int = 30000

    # Event broadcaster
    replay_buffer_size: int = 500
    heartbeat_interval_s: float = 15.0

    # Health classifier
    health_history_size: int = 500
    loop_window_s: float = 60.0
    loop_min_occurrences: int = 3
    loop_confidence_cap: int = 10
    reboot_window_s: float = 300.0
    crash_loop_threshold: int = 5
    max_tracked_patterns: int = 100
    context_lines: int = 10
    stack_scan_lines: int = 50

    # Baud negotiation
    default_baud: int = 115200
    baud_candidates: list[int] = field(default_factory=lambda: [115200, 74880, 57600, 9600])
    probe_seconds: float = 1.8
    probe_early_stop: float = 0.8
    probe_min_score: float = 0.3
    probe_delay_s: float = 0.15

    # Monitor sessions
    stop_grace_s: float = 1.0
    python_executable: str = sys.executable

    # Files
    run_dir: str = field(default_factory=lambda: os.path.join(os.environ.get("TMPDIR", "/tmp"), "esmon"))
    install_log_name: str = "install_log.jsonl"
    events_name: str = "events.jsonl"

    @property
    def install_log_path(self) -> str:
        return os.path.join(self.run_dir, self.install_log_name)

    @property
    def events_path(self) -> str:
        return os.path.join(self.run_dir, self.events_name)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MonitorConfig":
        known = {f.name for f in dataclasses.fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown config keys: {', '.join(unknown)}")
        return cls(**data)

    @classmethod
    def load(cls, path: Optional[str] = None, env: Optional[dict[str, str]] = None) -> "MonitorConfig":
        """Build a config from an optional YAML file plus environment overrides."""
        data: dict[str, Any] = {}
        if path:
            with open(path, "r", encoding="utf-8") as f:
                loaded = yaml.safe_load(f) or {}
            if not isinstance(loaded, dict):
                raise ValueError(f"Config file {path} must contain a mapping")
            data.update(loaded)

        env = os.environ if env is None else env
        for name, key, conv in _ENV_OVERRIDES:
            raw = env.get(name)
            if raw is None or raw == "":
                continue
            try:
                data[key] = conv(raw)
            except ValueError as e:
                raise ValueError(f"{name}={raw!r} is not valid: {e}") from e

        return cls.from_dict(data)


_ENV_OVERRIDES = (
    ("ESMON_RUN_DIR", "run_dir", str),
    ("ESMON_LOCK_TIMEOUT", "lock_timeout_s", float),
    ("ESMON_BUFFER_SIZE", "buffer_size", int),
    ("ESMON_DEFAULT_BAUD", "default_baud", int),
    ("ESMON_PYTHON", "python_executable", str),
)
