"""Abstract base for agent CLI providers.

Each provider wraps a different agent CLI (Claude Code, Amp). The
registry asks a provider whether it is usable, then builds the command
line for a launch; output parsing is provider-independent because every
supported CLI streams newline-delimited JSON.
"""
from __future__ import annotations

import abc
import asyncio
import logging
import os
import shutil
from pathlib import Path

from ..models import ErrorKind, ProviderKind, ProviderStatus

logger = logging.getLogger(__name__)

# Substrings that identify an authentication failure in CLI output.
_COMMON_AUTH_MARKERS = (
    "not logged in",
    "authentication",
    "invalid api key",
    "unauthorized",
)


class Provider(abc.ABC):
    """Abstract provider interface."""

    def __init__(
        self,
        command: str | None = None,
        extra_args: list[str] | None = None,
    ) -> None:
        self._command = command
        self._extra_args = list(extra_args or [])

    @property
    @abc.abstractmethod
    def kind(self) -> ProviderKind:
        """Provider identifier used in persistence and config."""

    @property
    @abc.abstractmethod
    def display_name(self) -> str:
        """Human-readable name (e.g. 'Claude Code')."""

    @property
    @abc.abstractmethod
    def binary_name(self) -> str:
        """Executable name looked up on PATH (e.g. 'claude')."""

    @property
    @abc.abstractmethod
    def install_url(self) -> str:
        """Where users can install the CLI."""

    @property
    @abc.abstractmethod
    def auth_instructions(self) -> str:
        """One-line hint on how to authenticate."""

    @abc.abstractmethod
    def candidate_paths(self, home: Path) -> list[Path]:
        """Common install locations checked before PATH.

        GUI launchers frequently don't inherit the user's shell PATH, so
        PATH lookup alone misses CLIs installed under the home directory.
        """

    @abc.abstractmethod
    def build_args(self, message: str, session_id: str | None = None) -> list[str]:
        """Arguments for a streaming run, resuming session_id if given."""

    @abc.abstractmethod
    def credential_paths(self, home: Path) -> list[Path]:
        """Files whose presence indicates the CLI has been authenticated."""

    @property
    def name(self) -> str:
        return self.kind.value

    @property
    def not_installed_message(self) -> str:
        return (
            f"{self.display_name} is not installed. "
            f"Please install it from {self.install_url}"
        )

    @property
    def not_logged_in_message(self) -> str:
        return f"{self.display_name} is not logged in. {self.auth_instructions}."

    def auth_markers(self) -> tuple[str, ...]:
        return _COMMON_AUTH_MARKERS

    def find_binary(self) -> str | None:
        """Resolve the CLI binary: explicit command, known paths, then PATH."""
        if self._command:
            resolved = shutil.which(self._command)
            if resolved:
                return resolved
            if Path(self._command).is_file():
                return self._command
            logger.debug(
                "Configured command %s not found for provider %s",
                self._command, self.name,
            )
        for path in self.candidate_paths(Path.home()):
            if path.is_file() and os.access(path, os.X_OK):
                return str(path)
        return shutil.which(self.binary_name)

    def build_command(
        self, message: str, session_id: str | None = None
    ) -> tuple[str, list[str]]:
        """Return (binary, args) for a launch."""
        binary = self.find_binary() or self._command or self.binary_name
        return binary, [*self._extra_args, *self.build_args(message, session_id)]

    def check_authenticated(self) -> str | None:
        """Return None when authenticated, otherwise an error message."""
        home = Path.home()
        if any(path.exists() for path in self.credential_paths(home)):
            return None
        return self.not_logged_in_message

    def is_auth_error(self, output: str) -> bool:
        lower = output.lower()
        return any(marker in lower for marker in self.auth_markers())

    async def check_available(self) -> ProviderStatus:
        """Check that the CLI is installed, runs, and is authenticated."""
        binary = self.find_binary()
        if binary is None:
            return ProviderStatus(
                available=False,
                error=self.not_installed_message,
                error_kind=ErrorKind.NOT_INSTALLED,
            )

        try:
            # create_subprocess_exec passes args as an array, no shell
            proc = await asyncio.create_subprocess_exec(
                binary, "--version",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, stderr = await proc.communicate()
        except OSError as exc:
            return ProviderStatus(
                available=False,
                error=f"Failed to run {self.display_name}: {exc}",
                error_kind=ErrorKind.NOT_INSTALLED,
            )

        if proc.returncode != 0:
            err_text = stderr.decode("utf-8", errors="replace")
            combined = f"{err_text} {stdout.decode('utf-8', errors='replace')}"
            if self.is_auth_error(combined):
                return ProviderStatus(
                    available=False,
                    error=self.not_logged_in_message,
                    error_kind=ErrorKind.NOT_LOGGED_IN,
                    auth_instructions=self.auth_instructions,
                )
            return ProviderStatus(
                available=False,
                error=f"{self.display_name} error: {err_text.strip()}",
                error_kind=ErrorKind.UNKNOWN,
            )

        auth_error = self.check_authenticated()
        if auth_error is not None:
            return ProviderStatus(
                available=False,
                error=auth_error,
                error_kind=ErrorKind.NOT_LOGGED_IN,
                auth_instructions=self.auth_instructions,
            )
        return ProviderStatus(available=True)
