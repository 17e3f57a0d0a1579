"""Adapters package - event types and the event bus.

Connects the launcher's per-process reader tasks and the engine's
notifications to whichever frontend consumes them.
"""
from __future__ import annotations

__all__ = [
    "EventBus",
    "LoopEvent",
    "event_to_dict",
    "dict_to_event",
]

from agentloop.adapters.event_bus import EventBus
from agentloop.adapters.events import LoopEvent, dict_to_event, event_to_dict
