"""Tests for the session store reducer and view projection."""
from __future__ import annotations

import pytest

from agentloop.engine.models import provisional_session_id
from agentloop.engine.session_store import SessionStore


def _msg(n: int) -> dict:
    return {"type": "assistant", "n": n}


def test_start_process_registers_provisional_live_view():
    store = SessionStore()
    sid = store.start_process("p1")

    assert sid == provisional_session_id("p1")
    assert store.active_session_id == sid
    assert store.is_viewing_running_session
    assert store.has_any_running()
    assert store.viewed_messages == ()


def test_messages_accumulate_for_sessions_not_in_view():
    store = SessionStore()
    store.start_process("p1")
    background = store.get_process_session_id("p1")
    store.start_process("p2")  # becomes the view

    assert store.add_message(_msg(1), "p1")
    assert store.add_message(_msg(2), "p2")
    assert store.get_session_messages(background) == (_msg(1),)
    assert store.viewed_messages == (_msg(2),)
    assert not store.add_message(_msg(3), "unknown")


def test_switching_view_does_not_mutate_previous_session():
    store = SessionStore()
    store.start_process("p1")
    store.reconcile_session("p1", "S1")
    store.add_message(_msg(1), "p1")
    before = store.get_session_messages("S1")

    store.view_session("OLD", [_msg(100), _msg(101)])
    assert store.viewed_messages == (_msg(100), _msg(101))
    assert not store.snapshot().is_view_live

    store.add_message(_msg(2), "p1")
    assert store.viewed_messages == (_msg(100), _msg(101))
    assert before == (_msg(1),)
    assert store.get_session_messages("S1") == (_msg(1), _msg(2))

    store.view_session("S1", [_msg(999)])  # running: history ignored
    assert store.viewed_messages == (_msg(1), _msg(2))
    assert store.snapshot().is_view_live


def test_reconcile_merges_into_existing_session_and_follows_view():
    store = SessionStore()
    store.start_process("p1")
    store.reconcile_session("p1", "S1")
    store.add_message(_msg(1), "p1")
    store.end_process("p1")

    pending = store.start_process("p2")
    store.add_message(_msg(2), "p2")
    assert store.reconcile_session("p2", "S1")

    assert store.get_session_messages(pending) is None
    assert store.get_session_messages("S1") == (_msg(1), _msg(2))
    assert store.active_session_id == "S1"
    assert store.viewed_messages == (_msg(1), _msg(2))
    assert not store.reconcile_session("p2", "S1")


def test_resume_of_viewed_session_keeps_visible_history():
    store = SessionStore()
    store.view_session("S1", [_msg(1)])
    sid = store.start_process("p1", resume_session_id="S1")

    assert sid == "S1"
    store.add_message(_msg(2), "p1")
    assert store.viewed_messages == (_msg(1), _msg(2))


def test_end_process_retains_messages_until_discarded():
    store = SessionStore()
    store.start_process("p1")
    store.reconcile_session("p1", "S1")
    store.add_message(_msg(1), "p1")

    assert store.end_process("p1")
    assert not store.end_process("p1")
    assert not store.is_session_running("S1")
    assert store.get_session_messages("S1") == (_msg(1),)

    store.view_session(None)
    store.view_session("S1")  # retained accumulator
    assert store.viewed_messages == (_msg(1),)

    assert store.discard_session("S1")
    assert store.get_session_messages("S1") is None
    assert store.viewed_messages == (_msg(1),)


def test_discard_refuses_running_session():
    store = SessionStore()
    store.start_process("p1")
    assert not store.discard_session(provisional_session_id("p1"))


def test_clear_view_detaches():
    store = SessionStore()
    store.start_process("p1")
    store.clear_view()
    assert store.active_session_id is None
    assert store.viewed_messages == ()
    assert store.has_any_running()


def test_subscribers_see_each_new_version():
    store = SessionStore()
    seen = []
    unsubscribe = store.subscribe(lambda snap: seen.append(snap.version))

    store.start_process("p1")
    store.add_message(_msg(1), "p1")
    assert seen == [1, 2]

    unsubscribe()
    store.add_message(_msg(2), "p1")
    assert seen == [1, 2]
    assert store.snapshot().version == 3


def test_failing_subscriber_does_not_block_commit():
    store = SessionStore()

    def broken(_snapshot):
        raise RuntimeError("listener bug")

    store.subscribe(broken)
    store.start_process("p1")
    assert store.has_any_running()


def test_snapshots_are_immutable():
    store = SessionStore()
    store.start_process("p1")
    snap = store.snapshot()
    with pytest.raises(TypeError):
        snap.running_processes["p2"] = "x"
    store.add_message(_msg(1), "p1")
    assert snap.viewed_messages == ()
