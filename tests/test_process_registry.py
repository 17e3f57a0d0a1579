"""Tests for process registration, output routing and failure handling."""
from __future__ import annotations

import asyncio

import pytest

from agentloop.adapters.event_bus import EventBus
from agentloop.adapters.events import ProcessErrored, ProcessExited, ProcessOutput
from agentloop.engine.errors import ProviderRuntimeError, ProviderUnavailableError
from agentloop.engine.models import ErrorKind, SessionKind, provisional_session_id
from agentloop.engine.process_registry import (
    ProcessRegistry,
    classify_launch_error,
    classify_message,
)

from conftest import assistant_text, init_event, ndjson, unavailable


@pytest.mark.asyncio
async def test_init_assistant_exit_scenario(registry, store, launcher):
    exits = []

    async def on_exit(process_id, session_id, messages, code):
        exits.append((process_id, session_id, messages, code))

    registry.add_exit_listener(on_exit)
    pid = await registry.launch("do things", "/work")

    assert launcher.launches == [("fake-agent", ["--json", "do things"], "/work")]
    assert store.get_process_session_id(pid) == provisional_session_id(pid)

    await registry.on_output(pid, ndjson(init_event("S1")))
    await registry.on_output(pid, ndjson(assistant_text("hi")))
    await registry.on_exit(pid, 0)

    messages = store.get_session_messages("S1")
    assert len(messages) == 2
    assert store.get_session_messages(provisional_session_id(pid)) is None
    assert not store.is_session_running("S1")
    assert not registry.is_registered(pid)
    assert exits == [(pid, "S1", messages, 0)]


@pytest.mark.asyncio
async def test_per_launch_exit_handler_replaces_listeners(registry):
    global_calls = []
    own_calls = []

    async def listener(*args):
        global_calls.append(args)

    async def own(messages):
        own_calls.append(messages)

    registry.add_exit_listener(listener)
    pid = await registry.launch("x", "/w", user_message="x", on_exit=own)
    await registry.on_exit(pid, 0)

    assert own_calls == [({"type": "user", "content": "x"},)]
    assert global_calls == []


@pytest.mark.asyncio
async def test_exit_flushes_unterminated_last_line(registry, store):
    pid = await registry.launch("x", "/w")
    await registry.on_output(pid, ndjson(init_event("S1")) + '{"type": "result"}')
    await registry.on_exit(pid, 0)
    assert store.get_session_messages("S1")[-1] == {"type": "result"}


@pytest.mark.asyncio
async def test_stream_user_messages_without_parent_are_skipped(registry, store):
    pid = await registry.launch("x", "/w", user_message="shown")
    await registry.on_output(pid, ndjson(
        {"type": "user", "message": {"content": "echo of prompt"}},
        {"type": "user", "parent_tool_use_id": "tool-1", "message": {"content": "sub"}},
    ))
    messages = store.viewed_messages
    assert messages[0] == {"type": "user", "content": "shown"}
    assert [m.get("parent_tool_use_id") for m in messages[1:]] == ["tool-1"]


@pytest.mark.asyncio
async def test_session_id_listener_fires_once(registry):
    seen = []

    async def on_session(process_id, session_id):
        seen.append((process_id, session_id))

    registry.add_session_id_listener(on_session)
    pid = await registry.launch("x", "/w")
    await registry.on_output(pid, ndjson(init_event("S1"), init_event("S1")))

    assert seen == [(pid, "S1")]
    assert registry.get_handle(pid).session_id == "S1"


@pytest.mark.asyncio
async def test_messages_are_journaled_with_sequence(journaled_registry, durable):
    pid = await journaled_registry.launch("prompt", "/w", user_message="prompt")
    await journaled_registry.on_output(pid, ndjson(init_event("S1"), assistant_text("a")))
    await journaled_registry.on_exit(pid, 0)

    stored = await durable.get_session_messages("S1")
    assert [m["type"] for m in stored] == ["user", "system", "assistant"]
    assert await durable.get_next_sequence("S1") == 4
    sessions = await durable.get_folder_sessions("/w")
    assert [s.session_id for s in sessions] == ["S1"]
    assert sessions[0].kind == SessionKind.PLAN.value


@pytest.mark.asyncio
async def test_resume_continues_sequence_numbers(journaled_registry, durable, store):
    await durable.create_session("S0", "/w", "claude_code", "plan")
    await durable.save_message("S0", {"type": "user", "content": "first"}, 1)
    await durable.save_message("S0", {"type": "assistant"}, 2)
    store.view_session("S0", await durable.get_session_messages("S0"))

    pid = await journaled_registry.launch(
        "again", "/w", resume_session_id="S0", user_message="again"
    )
    assert store.get_process_session_id(pid) == "S0"
    await journaled_registry.on_output(pid, ndjson(init_event("S0"), assistant_text("b")))

    stored = await durable.get_session_messages("S0")
    assert [m.get("content") for m in stored[:3]] == ["first", None, "again"]
    assert len(stored) == 5
    assert len(store.viewed_messages) == 5


@pytest.mark.asyncio
async def test_unavailable_provider_raises_before_registration(
    registry, provider, launcher, store
):
    provider.status = unavailable()
    with pytest.raises(ProviderUnavailableError) as info:
        await registry.launch("x", "/w")

    assert info.value.kind is ErrorKind.NOT_LOGGED_IN
    assert launcher.launches == []
    assert registry.handles == ()
    assert not store.has_any_running()
    assert registry.last_error is info.value


@pytest.mark.asyncio
async def test_stop_clears_bookkeeping_even_when_launcher_fails(registry, launcher, store):
    pid = await registry.launch("x", "/w")
    launcher.stop_error = RuntimeError("kill failed")

    assert await registry.stop(pid) is False
    assert not registry.is_registered(pid)
    assert not store.has_any_running()
    assert launcher.stops == [pid]

    # Late output from the stopped process is ignored.
    await registry.on_output(pid, ndjson(assistant_text("late")))
    await registry.on_exit(pid, 0)
    assert store.viewed_messages == ()


@pytest.mark.asyncio
async def test_stop_removes_bookkeeping_before_process_terminates(registry, launcher, store):
    pid = await registry.launch("x", "/w")
    exits = []

    async def on_exit(*args):
        exits.append(args)

    registry.add_exit_listener(on_exit)
    launcher.stop_gate = asyncio.Event()

    stopping = asyncio.create_task(registry.stop(pid))
    await asyncio.sleep(0)
    assert not stopping.done()
    assert not registry.is_registered(pid)
    assert not store.has_any_running()

    # The process exits while the launcher is still waiting on it.
    await registry.on_exit(pid, 143)
    assert exits == []

    launcher.stop_gate.set()
    assert await stopping is True
    assert launcher.stops == [pid]


@pytest.mark.asyncio
async def test_stop_all(registry, launcher, store):
    await registry.launch("a", "/w")
    await registry.launch("b", "/w")
    assert await registry.stop() is True
    assert launcher.stops == [None]
    assert registry.handles == ()
    assert not store.has_any_running()


@pytest.mark.asyncio
async def test_spawn_failure_is_not_installed_even_without_handle(registry):
    errors: list[ProviderRuntimeError] = []

    async def on_error(error):
        errors.append(error)

    registry.add_error_listener(on_error)
    await registry.on_error("ghost", "Failed to spawn claude: No such file or directory")

    assert len(errors) == 1
    assert errors[0].kind is ErrorKind.NOT_INSTALLED
    assert registry.last_error is errors[0]


@pytest.mark.asyncio
async def test_unknown_error_appends_system_message(registry, store):
    pid = await registry.launch("x", "/w")
    await registry.on_output(pid, ndjson(init_event("S1")))
    await registry.on_error(pid, "Read error: pipe closed")

    assert store.get_session_messages("S1")[-1] == {
        "type": "system", "content": "Error: Read error: pipe closed",
    }
    assert registry.last_error.kind is ErrorKind.UNKNOWN
    assert not registry.is_registered(pid)


@pytest.mark.asyncio
async def test_payment_error_result_tears_down(registry, launcher, store):
    pid = await registry.launch("x", "/w")
    await registry.on_output(pid, ndjson(
        init_event("S1"),
        {"type": "result", "is_error": True, "error": "HTTP 402: Payment Required"},
        assistant_text("never appended"),
    ))

    assert registry.last_error.kind is ErrorKind.PAYMENT_REQUIRED
    assert not registry.is_registered(pid)
    assert launcher.stops == [pid]
    assert len(store.get_session_messages("S1")) == 1


@pytest.mark.parametrize(
    "message, expected",
    [
        ({"type": "result", "is_error": True, "error": "Please add credits"}, ErrorKind.PAYMENT_REQUIRED),
        ({"type": "result", "is_error": True, "error": "Invalid API key provided"}, ErrorKind.NOT_LOGGED_IN),
        ({"type": "result", "is_error": True, "error": "401 Unauthorized"}, ErrorKind.NOT_LOGGED_IN),
        ({"type": "assistant", "error": "authentication_failed"}, ErrorKind.NOT_LOGGED_IN),
        ({"type": "result", "is_error": True, "result": "Invalid API key · Fix external API key"}, ErrorKind.NOT_LOGGED_IN),
        ({"type": "result", "is_error": True, "error": "tool crashed"}, None),
        ({"type": "result", "is_error": False, "error": "402"}, None),
        ({"type": "assistant"}, None),
    ],
)
def test_classify_message(message, expected):
    assert classify_message(message) is expected


def test_classify_launch_error():
    assert classify_launch_error("Failed to spawn amp: x") is ErrorKind.NOT_INSTALLED
    assert classify_launch_error("amp is not installed") is ErrorKind.NOT_INSTALLED
    assert classify_launch_error("Read error: EOF") is ErrorKind.UNKNOWN


@pytest.mark.asyncio
async def test_pump_handles_bus_events_in_order(launcher, store, providers):
    bus = EventBus()
    registry = ProcessRegistry(launcher, store, providers)
    pid = await registry.launch("x", "/w")
    pump = asyncio.create_task(registry.pump(bus))

    chunk = ndjson(init_event("S1"), assistant_text("one"))
    await bus.emit(ProcessOutput(process_id=pid, data=chunk[:30]))
    await bus.emit(ProcessOutput(process_id=pid, data=chunk[30:]))
    await bus.emit(ProcessExited(process_id=pid, code=0))
    await bus.emit(ProcessErrored(process_id=pid, error="after exit"))
    await bus.join()
    bus.close()
    await pump

    messages = store.get_session_messages("S1")
    assert [m["type"] for m in messages] == ["system", "assistant"]
    assert registry.last_error is None
    assert registry.status()["running"] == 0
