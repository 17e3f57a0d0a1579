"""Shared fixtures: in-process launcher and provider doubles."""
from __future__ import annotations

import asyncio
import json
from collections.abc import Sequence
from pathlib import Path

import pytest
import pytest_asyncio

from agentloop.engine.launcher import ProcessLauncher
from agentloop.engine.models import ErrorKind, ProviderKind, ProviderStatus
from agentloop.engine.process_registry import ProcessRegistry
from agentloop.engine.providers.base import Provider
from agentloop.engine.providers.registry import ProviderRegistry
from agentloop.engine.session_store import SessionStore
from agentloop.shared.services.persistence import SqliteDurableStore


def ndjson(*records: dict) -> str:
    """Encode records as newline-terminated JSON lines."""
    return "".join(json.dumps(r) + "\n" for r in records)


def init_event(session_id: str) -> dict:
    return {"type": "system", "subtype": "init", "session_id": session_id}


def assistant_text(text: str) -> dict:
    return {
        "type": "assistant",
        "message": {"role": "assistant", "content": [{"type": "text", "text": text}]},
    }


class FakeLauncher(ProcessLauncher):
    """Records launches; never starts anything."""

    def __init__(self) -> None:
        self.launches: list[tuple[str, list[str], str | None]] = []
        self.stops: list[str | None] = []
        self.stop_error: Exception | None = None
        # When set, stop() waits on it, like a process slow to terminate.
        self.stop_gate: asyncio.Event | None = None
        self._counter = 0

    async def launch(self, command: str, args: Sequence[str], cwd: str | None = None) -> str:
        self._counter += 1
        self.launches.append((command, list(args), cwd))
        return f"proc-{self._counter}"

    async def stop(self, process_id: str | None = None) -> None:
        self.stops.append(process_id)
        if self.stop_gate is not None:
            await self.stop_gate.wait()
        if self.stop_error is not None:
            raise self.stop_error


class FakeProvider(Provider):
    """Claude-shaped provider whose availability is set by the test."""

    def __init__(self, status: ProviderStatus | None = None) -> None:
        super().__init__(command="fake-agent")
        self.status = status or ProviderStatus(available=True)

    @property
    def kind(self) -> ProviderKind:
        return ProviderKind.CLAUDE_CODE

    @property
    def display_name(self) -> str:
        return "Fake Agent"

    @property
    def binary_name(self) -> str:
        return "fake-agent"

    @property
    def install_url(self) -> str:
        return "https://example.invalid/fake-agent"

    @property
    def auth_instructions(self) -> str:
        return "Run 'fake-agent login'"

    def candidate_paths(self, home: Path) -> list[Path]:
        return []

    def credential_paths(self, home: Path) -> list[Path]:
        return []

    def build_args(self, message: str, session_id: str | None = None) -> list[str]:
        args = ["--json"]
        if session_id:
            args += ["--resume", session_id]
        return [*args, message]

    def find_binary(self) -> str | None:
        return "fake-agent"

    async def check_available(self) -> ProviderStatus:
        return self.status


def unavailable(kind: ErrorKind = ErrorKind.NOT_LOGGED_IN) -> ProviderStatus:
    return ProviderStatus(available=False, error="Fake Agent is not logged in.", error_kind=kind)


@pytest.fixture
def launcher() -> FakeLauncher:
    return FakeLauncher()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def providers(provider: FakeProvider) -> ProviderRegistry:
    registry = ProviderRegistry()
    registry.register(provider)
    return registry


@pytest.fixture
def store() -> SessionStore:
    return SessionStore()


@pytest_asyncio.fixture
async def durable(tmp_path):
    db = SqliteDurableStore(tmp_path / "agentloop.db", str(tmp_path))
    await db.connect()
    yield db
    await db.close()


@pytest.fixture
def registry(launcher, store, providers) -> ProcessRegistry:
    return ProcessRegistry(launcher, store, providers)


@pytest.fixture
def journaled_registry(launcher, store, providers, durable) -> ProcessRegistry:
    return ProcessRegistry(launcher, store, providers, durable=durable)
