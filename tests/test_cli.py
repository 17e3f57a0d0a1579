"""Tests for the agentloop command line."""
from __future__ import annotations

import asyncio
import json
import sys

import pytest

from agentloop import cli
from agentloop.engine.models import IterationStatus
from agentloop.shared.services.persistence import SqliteDurableStore


def _run_cli(monkeypatch, *argv) -> int:
    monkeypatch.setattr(sys, "argv", ["agentloop", *argv])
    try:
        cli.main()
    except SystemExit as exc:
        return exc.code
    return 0


def test_tasks_lists_task_directories(tmp_path, monkeypatch, capsys):
    task = tmp_path / ".agentloop" / "tasks" / "login-flow" / "prd.json"
    task.parent.mkdir(parents=True)
    task.write_text(json.dumps({"items": []}))

    assert _run_cli(monkeypatch, "--cwd", str(tmp_path), "tasks") == 0
    assert capsys.readouterr().out.strip() == "login-flow"


def test_iterations_reads_durable_store(tmp_path, monkeypatch, capsys):
    db_path = tmp_path / "loop.db"
    monkeypatch.setenv("AGENTLOOP_DB_PATH", str(db_path))

    async def seed():
        async with SqliteDurableStore(db_path, str(tmp_path)) as durable:
            await durable.save_iteration_record("t1", 1, IterationStatus.COMPLETED)
            await durable.update_iteration_session_id("t1", 1, "S1")

    asyncio.run(seed())

    assert _run_cli(monkeypatch, "--cwd", str(tmp_path), "iterations", "t1") == 0
    out = capsys.readouterr().out
    assert "#1" in out
    assert "completed" in out
    assert "S1" in out


def test_rejects_unknown_provider(monkeypatch, capsys):
    assert _run_cli(monkeypatch, "--provider", "nope", "tasks") == 1
    assert "Unknown provider" in capsys.readouterr().out


def test_requires_subcommand(monkeypatch):
    assert _run_cli(monkeypatch) == 2
