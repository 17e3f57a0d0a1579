"""YAML configuration loader.

Loads a single YAML file on top of the AGENTLOOP_* environment
defaults. Every section is optional.

Example YAML:
    loop:
      db_path: ~/.agentloop/agentloop.db
      task_dir: .agentloop/tasks
      task_file: prd.json
      completion_scan_window: 3
      stop_timeout_seconds: 5

    providers:
      claude_code:
        command: /opt/tools/claude
      amp:
        type: amp
        args: ["--no-color"]

    defaults:
      provider: claude_code
      cwd: ${HOME}/projects/app
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from .config import LoopConfig

logger = logging.getLogger(__name__)


@dataclass
class ProviderConfig:
    """Overrides for a single provider."""
    type: str | None = None  # "claude_code" or "amp"; defaults to the key
    command: str | None = None  # path to the CLI binary
    args: list[str] = field(default_factory=list)  # prepended to every launch


@dataclass
class DefaultsConfig:
    """Default settings from YAML."""
    provider: str | None = None
    cwd: str | None = None


@dataclass
class AgentLoopConfig:
    """Complete parsed YAML configuration."""
    loop: LoopConfig
    providers: dict[str, ProviderConfig] = field(default_factory=dict)
    defaults: DefaultsConfig = field(default_factory=DefaultsConfig)


def _expand(value: Any) -> Any:
    """Expand ${VAR} and ~ in strings, recursively."""
    if isinstance(value, str):
        return os.path.expanduser(os.path.expandvars(value))
    if isinstance(value, list):
        return [_expand(v) for v in value]
    if isinstance(value, dict):
        return {k: _expand(v) for k, v in value.items()}
    return value


def _build_loop_config(loop_raw: dict[str, Any], base: LoopConfig) -> LoopConfig:
    known = {f.name: f for f in fields(LoopConfig)}
    values = {f.name: getattr(base, f.name) for f in fields(LoopConfig)}
    for key, value in loop_raw.items():
        if key not in known:
            logger.warning("Unknown loop config key '%s', ignoring", key)
            continue
        current = values[key]
        if isinstance(current, bool):
            values[key] = bool(value)
        elif isinstance(current, int):
            values[key] = int(value)
        elif isinstance(current, float):
            values[key] = float(value)
        else:
            values[key] = str(value)
    return LoopConfig(**values)


def load_yaml_config(
    path: str | Path,
    base: LoopConfig | None = None,
) -> AgentLoopConfig:
    """Load and parse a YAML config file.

    Values from the file override *base* (by default the environment
    configuration from LoopConfig.from_env()).
    """
    path = Path(path)
    logger.info(
        "load_yaml_config: loading config from %s (exists=%s)",
        path, path.exists(),
    )
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error(
            "load_yaml_config: config file not found at %s (absolute path: %s)",
            path, path.absolute(),
        )
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise

    if not isinstance(raw, dict):
        raise ValueError(f"Config file {path} must contain a mapping")
    raw = _expand(raw)

    top_sections = sorted(raw.keys())
    logger.info(
        "Parsed YAML config %s, sections: %s",
        path.name, ", ".join(top_sections) if top_sections else "(empty)",
    )

    loop = _build_loop_config(
        raw.get("loop") or {}, base if base is not None else LoopConfig.from_env()
    )

    providers: dict[str, ProviderConfig] = {}
    for name, pcfg in (raw.get("providers") or {}).items():
        pcfg = pcfg or {}
        providers[name] = ProviderConfig(
            type=pcfg.get("type"),
            command=pcfg.get("command"),
            args=[str(a) for a in pcfg.get("args") or []],
        )

    defaults_raw = raw.get("defaults") or {}
    defaults = DefaultsConfig(
        provider=defaults_raw.get("provider"),
        cwd=defaults_raw.get("cwd"),
    )
    if defaults.provider:
        loop.default_provider = defaults.provider
    if defaults.cwd:
        loop.default_cwd = defaults.cwd

    return AgentLoopConfig(loop=loop, providers=providers, defaults=defaults)
