"""Amp CLI provider.

New threads run `amp -x <message> --stream-json`; continuing a thread
uses `amp threads continue <id> -x ...`.
"""
from __future__ import annotations

from pathlib import Path

from ..models import ProviderKind
from .base import Provider


class AmpProvider(Provider):
    """Provider backed by the `amp` CLI."""

    @property
    def kind(self) -> ProviderKind:
        return ProviderKind.AMP

    @property
    def display_name(self) -> str:
        return "Amp"

    @property
    def binary_name(self) -> str:
        return "amp"

    @property
    def install_url(self) -> str:
        return "https://ampcode.com"

    @property
    def auth_instructions(self) -> str:
        return "Run 'amp login' to authenticate"

    def candidate_paths(self, home: Path) -> list[Path]:
        return [
            home / ".amp" / "bin" / "amp",
            home / ".local" / "bin" / "amp",
            Path("/usr/local/bin/amp"),
            Path("/opt/homebrew/bin/amp"),
            Path("/usr/bin/amp"),
        ]

    def credential_paths(self, home: Path) -> list[Path]:
        # Login is browser based; the settings file appears afterwards.
        return [home / ".config" / "amp" / "settings.json"]

    def auth_markers(self) -> tuple[str, ...]:
        return (*super().auth_markers(), "amp login", "please login")

    def build_args(self, message: str, session_id: str | None = None) -> list[str]:
        if session_id:
            args = ["threads", "continue", session_id, "-x"]
        else:
            args = ["-x"]
        args.extend([message, "--stream-json", "--dangerously-allow-all"])
        return args
