"""Tests for environment and YAML configuration."""
from __future__ import annotations

import os
from pathlib import Path

import pytest
import yaml

from agentloop.engine.config import COMPLETION_SENTINEL, LoopConfig, fire_event
from agentloop.engine.yaml_config import load_yaml_config


def test_defaults(monkeypatch):
    for key in list(os.environ):
        if key.startswith("AGENTLOOP_"):
            monkeypatch.delenv(key)
    config = LoopConfig.from_env()
    assert config.default_provider == "claude_code"
    assert config.completion_sentinel == COMPLETION_SENTINEL
    assert config.completion_scan_window == 3
    assert config.db_path == str(Path.home() / ".agentloop" / "agentloop.db")


def test_env_overrides(monkeypatch, tmp_path):
    monkeypatch.setenv("AGENTLOOP_PROVIDER", "amp")
    monkeypatch.setenv("AGENTLOOP_DB_PATH", str(tmp_path / "x.db"))
    monkeypatch.setenv("AGENTLOOP_SCAN_WINDOW", "5")
    monkeypatch.setenv("AGENTLOOP_STOP_TIMEOUT", "1.5")
    monkeypatch.setenv("AGENTLOOP_TASK_FILE", "tasks.json")

    config = LoopConfig.from_env()
    assert config.default_provider == "amp"
    assert config.db_path == str(tmp_path / "x.db")
    assert config.completion_scan_window == 5
    assert config.stop_timeout_seconds == 1.5
    assert config.task_file == "tasks.json"


def test_yaml_sections(tmp_path, monkeypatch):
    monkeypatch.setenv("PROJECT_ROOT", "/srv/app")
    path = tmp_path / "agentloop.yaml"
    path.write_text(
        """
loop:
  task_dir: work/tasks
  completion_scan_window: "4"
  not_a_setting: 1
providers:
  amp:
    command: /opt/amp
    args: [--no-color, 3]
  claude:
defaults:
  provider: amp
  cwd: ${PROJECT_ROOT}/src
"""
    )
    loaded = load_yaml_config(path, base=LoopConfig(db_path=str(tmp_path / "a.db")))

    assert loaded.loop.task_dir == "work/tasks"
    assert loaded.loop.completion_scan_window == 4
    assert loaded.loop.default_provider == "amp"
    assert loaded.loop.default_cwd == "/srv/app/src"
    assert loaded.providers["amp"].command == "/opt/amp"
    assert loaded.providers["amp"].args == ["--no-color", "3"]
    assert loaded.providers["claude"].command is None


def test_yaml_errors(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_yaml_config(tmp_path / "missing.yaml")

    bad = tmp_path / "bad.yaml"
    bad.write_text("loop: [unclosed")
    with pytest.raises(yaml.YAMLError):
        load_yaml_config(bad)

    scalar = tmp_path / "scalar.yaml"
    scalar.write_text("just a string")
    with pytest.raises(ValueError):
        load_yaml_config(scalar)


@pytest.mark.asyncio
async def test_fire_event_swallows_callback_errors():
    calls = []

    async def broken(event):
        calls.append(event)
        raise RuntimeError("boom")

    await fire_event(broken, {"event": "x"})
    await fire_event(None, {"event": "y"})
    assert calls == [{"event": "x"}]
