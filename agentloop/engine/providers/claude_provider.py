"""Claude Code CLI provider.

Runs `claude -p --output-format stream-json`, which prints one JSON
event per line and reports its session id in the first
`{"type": "system", "subtype": "init"}` event.
"""
from __future__ import annotations

from pathlib import Path

from ..models import ProviderKind
from .base import Provider


class ClaudeCodeProvider(Provider):
    """Provider backed by the `claude` CLI."""

    @property
    def kind(self) -> ProviderKind:
        return ProviderKind.CLAUDE_CODE

    @property
    def display_name(self) -> str:
        return "Claude Code"

    @property
    def binary_name(self) -> str:
        return "claude"

    @property
    def install_url(self) -> str:
        return "https://claude.com/product/claude-code"

    @property
    def auth_instructions(self) -> str:
        return "Run 'claude' in your terminal to authenticate"

    def candidate_paths(self, home: Path) -> list[Path]:
        return [
            home / ".local" / "bin" / "claude",
            Path("/usr/local/bin/claude"),
            Path("/opt/homebrew/bin/claude"),
            Path("/usr/bin/claude"),
        ]

    def credential_paths(self, home: Path) -> list[Path]:
        return [home / ".claude" / ".credentials.json", home / ".claude.json"]

    def auth_markers(self) -> tuple[str, ...]:
        return (*super().auth_markers(), "please run 'claude'")

    def build_args(self, message: str, session_id: str | None = None) -> list[str]:
        args = [
            "-p",
            "--output-format",
            "stream-json",
            "--verbose",
            "--dangerously-skip-permissions",
        ]
        if session_id:
            args.extend(["--resume", session_id])
        args.append(message)
        return args
