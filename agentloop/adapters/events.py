"""Event types flowing between the launcher, the engine and consumers.

Launcher events (output, exit, error) are keyed by process id and feed
the ProcessRegistry. Engine events report reconciliation, provider
failures and iteration transitions to UI consumers. Both travel as plain
dicts through callbacks and are parsed back into dataclasses here.
"""
from __future__ import annotations

from dataclasses import dataclass, fields
from typing import Any


@dataclass
class LoopEvent:
    """Base event."""
    event_type: str = ""


@dataclass
class ProcessOutput(LoopEvent):
    event_type: str = "process_output"
    process_id: str = ""
    data: str = ""


@dataclass
class ProcessExited(LoopEvent):
    event_type: str = "process_exited"
    process_id: str = ""
    code: int = 0


@dataclass
class ProcessErrored(LoopEvent):
    event_type: str = "process_errored"
    process_id: str = ""
    error: str = ""


@dataclass
class SessionResolved(LoopEvent):
    event_type: str = "session_resolved"
    process_id: str = ""
    old_session_id: str = ""
    session_id: str = ""


@dataclass
class ProviderFailed(LoopEvent):
    event_type: str = "provider_failed"
    process_id: str = ""
    kind: str = "unknown"
    message: str = ""


@dataclass
class IterationStarted(LoopEvent):
    event_type: str = "iteration_started"
    task_id: str = ""
    iteration_number: int = 0
    process_id: str = ""


@dataclass
class IterationFinished(LoopEvent):
    event_type: str = "iteration_finished"
    task_id: str = ""
    iteration_number: int = 0
    status: str = ""
    complete: bool = False


_EVENT_MAP: dict[str, type[LoopEvent]] = {
    "process_output": ProcessOutput,
    "process_exited": ProcessExited,
    "process_errored": ProcessErrored,
    "session_resolved": SessionResolved,
    "provider_failed": ProviderFailed,
    "iteration_started": IterationStarted,
    "iteration_finished": IterationFinished,
}


def event_to_dict(event: LoopEvent) -> dict[str, Any]:
    """Flatten an event into the dict handed to callbacks.

    None fields are left out and the type tag travels under "event".
    """
    data = {
        f.name: getattr(event, f.name)
        for f in fields(event)
        if getattr(event, f.name) is not None
    }
    data["event"] = data.pop("event_type", "")
    return data


def dict_to_event(data: dict[str, Any]) -> LoopEvent:
    """Rebuild an event from a callback dict; keys it lacks are ignored."""
    cls = _EVENT_MAP.get(data.get("event", ""), LoopEvent)
    accepted = {f.name for f in fields(cls)}
    kwargs = {key: value for key, value in data.items() if key in accepted}
    if "event" in data:
        kwargs.setdefault("event_type", data["event"])
    return cls(**kwargs)
