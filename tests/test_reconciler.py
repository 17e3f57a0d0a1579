"""Tests for provisional-to-real session id migration."""
from __future__ import annotations

import pytest

from agentloop.engine.journal import MessageJournal
from agentloop.engine.line_buffer import LineBuffer
from agentloop.engine.models import ProcessHandle, SessionKind
from agentloop.engine.reconciler import SessionIdReconciler
from agentloop.engine.session_store import SessionStore


def _handle(store: SessionStore, process_id: str, resume: str | None = None) -> ProcessHandle:
    session_id = store.start_process(process_id, resume)
    return ProcessHandle(
        process_id=process_id,
        session_id=session_id,
        parse_buffer=LineBuffer(),
        kind=SessionKind.ITERATION,
        cwd="/w",
    )


@pytest.mark.asyncio
async def test_reconcile_is_idempotent():
    store = SessionStore()
    events = []

    async def on_event(event):
        events.append(event)

    reconciler = SessionIdReconciler(store, MessageJournal(None), on_event)
    handle = _handle(store, "p1")
    store.add_message({"type": "user", "content": "hi"}, "p1")

    assert await reconciler.reconcile(handle, "S1")
    version = store.snapshot().version
    assert not await reconciler.reconcile(handle, "S1")

    assert store.snapshot().version == version
    assert handle.session_id == "S1"
    assert store.get_session_messages("S1") == ({"type": "user", "content": "hi"},)
    assert [e["event"] for e in events] == ["session_resolved"]
    assert events[0]["session_id"] == "S1"


@pytest.mark.asyncio
async def test_reconcile_appends_to_retained_session():
    store = SessionStore()
    reconciler = SessionIdReconciler(store, MessageJournal(None))
    first = _handle(store, "p1")
    store.add_message({"n": 1}, "p1")
    await reconciler.reconcile(first, "S1")
    store.end_process("p1")

    second = _handle(store, "p2")
    store.add_message({"n": 2}, "p2")
    assert await reconciler.reconcile(second, "S1")

    assert store.get_session_messages("S1") == ({"n": 1}, {"n": 2})
    assert store.active_session_id == "S1"


@pytest.mark.asyncio
async def test_backlog_is_persisted_from_sequence_one(durable):
    store = SessionStore()
    reconciler = SessionIdReconciler(store, MessageJournal(durable))
    handle = _handle(store, "p1")
    store.add_message({"type": "user", "content": "go"}, "p1")
    store.add_message({"type": "system", "subtype": "init"}, "p1")

    await reconciler.reconcile(handle, "S1")

    assert await durable.get_session_messages("S1") == [
        {"type": "user", "content": "go"},
        {"type": "system", "subtype": "init"},
    ]
    assert await durable.get_next_sequence("S1") == 3
    sessions = await durable.get_folder_sessions("/w")
    assert sessions[0].kind == "iteration"


@pytest.mark.asyncio
async def test_listeners_run_before_reconcile_returns():
    store = SessionStore()
    reconciler = SessionIdReconciler(store, MessageJournal(None))
    observed = []

    async def listener(process_id, session_id):
        observed.append((process_id, session_id, store.get_process_session_id(process_id)))

    reconciler.add_listener(listener)
    handle = _handle(store, "p1")
    await reconciler.reconcile(handle, "S9")
    assert observed == [("p1", "S9", "S9")]
