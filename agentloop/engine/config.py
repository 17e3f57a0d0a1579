"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via AGENTLOOP_* env vars.
"""
from __future__ import annotations

import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

COMPLETION_SENTINEL = "<promise>COMPLETE</promise>"


# Optional async callback for real-time event observation.
# Signature: async def callback(event: dict[str, Any]) -> None
EventCallback = Callable[[dict[str, Any]], Awaitable[None]]

# Fired when a process reports its real session id.
# Signature: async def callback(process_id, session_id) -> None
SessionIdCallback = Callable[[str, str], Awaitable[None]]

# Fired when a process exits.
# Signature: async def callback(process_id, session_id, messages, exit_code) -> None
ExitCallback = Callable[[str, str, tuple, int], Awaitable[None]]

# Fired when a provider failure is classified.
# Signature: async def callback(error: ProviderRuntimeError) -> None
ErrorCallback = Callable[[Any], Awaitable[None]]


async def fire_event(
    callback: Callable[..., Awaitable[None]] | None,
    *args: Any,
) -> None:
    """Fire a callback if set, logging instead of propagating errors."""
    if callback is None:
        return
    try:
        await callback(*args)
    except Exception:
        # Never let callback errors break the event pump
        logger.exception("Callback %r failed", callback)


def _default_db_path() -> str:
    return str(Path.home() / ".agentloop" / "agentloop.db")


@dataclass
class LoopConfig:
    """Agent loop configuration."""

    # Provider used when launch() is not given one explicitly.
    default_provider: str = "claude_code"
    default_cwd: str = "."

    # Durable store location (SQLite file).
    db_path: str = ""

    # Task artifacts live at <cwd>/<task_dir>/<task_id>/<task_file>.
    task_dir: str = ".agentloop/tasks"
    task_file: str = "prd.json"

    # Completion detection.
    completion_sentinel: str = COMPLETION_SENTINEL
    completion_scan_window: int = 3

    # Seconds to wait for a terminated process before killing it.
    stop_timeout_seconds: float = 5.0

    # Event bus capacity.
    event_queue_size: int = 5000

    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if not self.db_path:
            self.db_path = _default_db_path()

    @classmethod
    def from_env(cls) -> LoopConfig:
        """Load configuration from AGENTLOOP_* environment variables."""
        loop_vars = {
            k: v for k, v in os.environ.items() if k.startswith("AGENTLOOP_")
        }
        if loop_vars:
            logger.info(
                "LoopConfig.from_env: AGENTLOOP_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(loop_vars.items())),
            )
        else:
            logger.debug("LoopConfig.from_env: no AGENTLOOP_* env vars set, using defaults")

        config = cls(
            default_provider=os.getenv(
                "AGENTLOOP_PROVIDER", cls.default_provider
            ),
            default_cwd=os.getenv("AGENTLOOP_CWD", cls.default_cwd),
            db_path=os.getenv("AGENTLOOP_DB_PATH", ""),
            task_dir=os.getenv("AGENTLOOP_TASK_DIR", cls.task_dir),
            task_file=os.getenv("AGENTLOOP_TASK_FILE", cls.task_file),
            completion_sentinel=os.getenv(
                "AGENTLOOP_SENTINEL", cls.completion_sentinel
            ),
            completion_scan_window=int(os.getenv(
                "AGENTLOOP_SCAN_WINDOW", str(cls.completion_scan_window)
            )),
            stop_timeout_seconds=float(os.getenv(
                "AGENTLOOP_STOP_TIMEOUT", str(cls.stop_timeout_seconds)
            )),
            event_queue_size=int(os.getenv(
                "AGENTLOOP_QUEUE_SIZE", str(cls.event_queue_size)
            )),
            log_level=os.getenv("AGENTLOOP_LOG_LEVEL", cls.log_level),
        )
        logger.info(
            "LoopConfig.from_env: provider=%s cwd=%s db=%s log_level=%s",
            config.default_provider, config.default_cwd,
            config.db_path, config.log_level,
        )
        return config
