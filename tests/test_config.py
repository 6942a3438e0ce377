"""Tests for esmon/config.py: defaults, YAML file and environment overrides."""

from __future__ import annotations

import os

import pytest

from esmon.config import MonitorConfig


class TestMonitorConfig:
    def test_defaults(self):
        cfg = MonitorConfig()
        assert cfg.lock_timeout_s == 120.0
        assert cfg.buffer_size == 1000
        assert cfg.replay_buffer_size == 500
        assert cfg.default_baud == 115200
        assert cfg.baud_candidates == [115200, 74880, 57600, 9600]
        assert cfg.capture_timeout_ms == 30000

    def test_paths_follow_run_dir(self, tmp_path):
        cfg = MonitorConfig(run_dir=str(tmp_path))
        assert cfg.install_log_path == os.path.join(str(tmp_path), "install_log.jsonl")
        assert cfg.events_path == os.path.join(str(tmp_path), "events.jsonl")

    def test_load_yaml(self, tmp_path):
        path = tmp_path / "esmon.yaml"
        path.write_text("buffer_size: 50\nbaud_candidates: [74880, 9600]\nheartbeat_interval_s: 5\n")
        cfg = MonitorConfig.load(str(path), env={})
        assert cfg.buffer_size == 50
        assert cfg.baud_candidates == [74880, 9600]
        assert cfg.heartbeat_interval_s == 5

    def test_empty_yaml_gives_defaults(self, tmp_path):
        path = tmp_path / "esmon.yaml"
        path.write_text("")
        assert MonitorConfig.load(str(path), env={}) == MonitorConfig.load(None, env={})

    def test_env_overrides_file(self, tmp_path):
        path = tmp_path / "esmon.yaml"
        path.write_text("lock_timeout_s: 10\n")
        cfg = MonitorConfig.load(
            str(path),
            env={"ESMON_LOCK_TIMEOUT": "45", "ESMON_RUN_DIR": str(tmp_path), "ESMON_DEFAULT_BAUD": "74880"},
        )
        assert cfg.lock_timeout_s == 45.0
        assert cfg.run_dir == str(tmp_path)
        assert cfg.default_baud == 74880

    def test_empty_env_value_ignored(self):
        assert MonitorConfig.load(env={"ESMON_BUFFER_SIZE": ""}).buffer_size == 1000

    def test_bad_env_value(self):
        with pytest.raises(ValueError, match="ESMON_BUFFER_SIZE"):
            MonitorConfig.load(env={"ESMON_BUFFER_SIZE": "lots"})

    def test_unknown_key_rejected(self, tmp_path):
        path = tmp_path / "esmon.yaml"
        path.write_text("buffer_sise: 10\n")
        with pytest.raises(ValueError, match="buffer_sise"):
            MonitorConfig.load(str(path), env={})

    def test_non_mapping_rejected(self, tmp_path):
        path = tmp_path / "esmon.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ValueError):
            MonitorConfig.load(str(path), env={})

    def test_missing_file(self, tmp_path):
        with pytest.raises(OSError):
            MonitorConfig.load(str(tmp_path / "nope.yaml"), env={})
