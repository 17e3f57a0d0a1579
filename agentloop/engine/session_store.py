"""Observable session state shared by the registry, controller and UI.

The store is a reducer over immutable snapshots. Each mutation builds a
new StoreSnapshot, bumps its version and notifies subscribers
synchronously, so a reader inside an event callback always sees the
state produced by the last mutation rather than a cached copy.

Running processes map to session ids; every session keeps its own
message accumulator whether or not it is being viewed. The view is
either backed by one of those accumulators (live) or by a frozen
historical snapshot.
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field, replace
from types import MappingProxyType

from .models import Message, provisional_session_id

logger = logging.getLogger(__name__)

StoreListener = Callable[["StoreSnapshot"], None]


@dataclass(frozen=True)
class StoreSnapshot:
    """One linearised state of the session store."""
    version: int = 0
    active_session_id: str | None = None
    # None means the view reads the live accumulator for active_session_id.
    view_snapshot: tuple[Message, ...] | None = ()
    running_processes: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    sessions: Mapping[str, tuple[Message, ...]] = field(default_factory=lambda: MappingProxyType({}))

    @property
    def viewed_messages(self) -> tuple[Message, ...]:
        if self.view_snapshot is not None:
            return self.view_snapshot
        if self.active_session_id is None:
            return ()
        return self.sessions.get(self.active_session_id, ())

    @property
    def is_view_live(self) -> bool:
        return self.view_snapshot is None

    def is_session_running(self, session_id: str | None) -> bool:
        if not session_id:
            return False
        return session_id in self.running_processes.values()


def _frozen(mapping: dict) -> Mapping:
    return MappingProxyType(mapping)


class SessionStore:
    """Single-writer session state container with change notification."""

    def __init__(self) -> None:
        self._state = StoreSnapshot()
        self._listeners: list[StoreListener] = []

    # ── Subscription ──

    def subscribe(self, listener: StoreListener) -> Callable[[], None]:
        """Register a listener; returns a function that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def snapshot(self) -> StoreSnapshot:
        return self._state

    def _commit(self, **changes) -> None:
        self._state = replace(
            self._state, version=self._state.version + 1, **changes
        )
        state = self._state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("Session store listener %r failed", listener)

    # ── Mutations ──

    def start_process(
        self, process_id: str, resume_session_id: str | None = None
    ) -> str:
        """Register a live session for a process and make it the view.

        Returns the session key the process was mapped to.
        """
        state = self._state
        session_id = resume_session_id or provisional_session_id(process_id)

        sessions = dict(state.sessions)
        if resume_session_id and resume_session_id == state.active_session_id:
            # Continuing the viewed conversation keeps what is on screen.
            sessions[session_id] = state.viewed_messages
        elif resume_session_id and resume_session_id in sessions:
            pass
        else:
            sessions[session_id] = ()

        running = dict(state.running_processes)
        running[process_id] = session_id

        self._commit(
            running_processes=_frozen(running),
            sessions=_frozen(sessions),
            active_session_id=session_id,
            view_snapshot=None,
        )
        logger.debug(
            "Process %s started as session %s", process_id[:8], session_id[:20]
        )
        return session_id

    def add_message(self, message: Message, process_id: str) -> bool:
        """Append a message to the session mapped to process_id."""
        state = self._state
        session_id = state.running_processes.get(process_id)
        if session_id is None:
            return False
        sessions = dict(state.sessions)
        sessions[session_id] = sessions.get(session_id, ()) + (message,)
        self._commit(sessions=_frozen(sessions))
        return True

    def reconcile_session(self, process_id: str, session_id: str) -> bool:
        """Move a process's messages to its real session id.

        Merges into session_id when it already has messages (a resumed
        conversation) and repoints the view if it followed the old key.
        Returns False when nothing changed.
        """
        state = self._state
        old_id = state.running_processes.get(process_id)
        if old_id is None or old_id == session_id:
            return False

        sessions = dict(state.sessions)
        moved = sessions.pop(old_id, ())
        sessions[session_id] = sessions.get(session_id, ()) + moved

        running = dict(state.running_processes)
        running[process_id] = session_id

        changes: dict = {
            "running_processes": _frozen(running),
            "sessions": _frozen(sessions),
        }
        if state.active_session_id == old_id:
            changes["active_session_id"] = session_id
            changes["view_snapshot"] = None
        self._commit(**changes)
        logger.info(
            "Session %s resolved to %s (%d messages moved)",
            old_id[:20], session_id, len(moved),
        )
        return True

    def end_process(self, process_id: str) -> bool:
        """Drop process bookkeeping; the session's messages are kept."""
        state = self._state
        if process_id not in state.running_processes:
            return False
        running = dict(state.running_processes)
        del running[process_id]
        self._commit(running_processes=_frozen(running))
        return True

    def view_session(
        self,
        session_id: str | None,
        messages: Iterable[Message] | None = None,
    ) -> None:
        """Switch the view atomically.

        A running session is always shown from the store's accumulator,
        ignoring messages. Otherwise the given history is adopted; with
        no history, a retained accumulator is shown if one exists.
        """
        state = self._state
        if session_id is None:
            self._commit(active_session_id=None, view_snapshot=())
        elif state.is_session_running(session_id):
            self._commit(active_session_id=session_id, view_snapshot=None)
        elif messages is not None:
            self._commit(
                active_session_id=session_id, view_snapshot=tuple(messages)
            )
        elif session_id in state.sessions:
            self._commit(active_session_id=session_id, view_snapshot=None)
        else:
            self._commit(active_session_id=session_id, view_snapshot=())

    def clear_view(self) -> None:
        """Detach the view, e.g. before a new session is launched."""
        self._commit(active_session_id=None, view_snapshot=())

    def discard_session(self, session_id: str) -> bool:
        """Forget a retained session's messages once it is no longer running."""
        state = self._state
        if session_id not in state.sessions or state.is_session_running(session_id):
            return False
        sessions = dict(state.sessions)
        removed = sessions.pop(session_id)
        changes: dict = {"sessions": _frozen(sessions)}
        if state.active_session_id == session_id and state.is_view_live:
            # Keep showing what was on screen.
            changes["view_snapshot"] = removed
        self._commit(**changes)
        return True

    # ── Queries ──

    @property
    def active_session_id(self) -> str | None:
        return self._state.active_session_id

    @property
    def viewed_messages(self) -> tuple[Message, ...]:
        return self._state.viewed_messages

    @property
    def is_viewing_running_session(self) -> bool:
        return self._state.is_session_running(self._state.active_session_id)

    def is_session_running(self, session_id: str | None) -> bool:
        return self._state.is_session_running(session_id)

    def has_any_running(self) -> bool:
        return bool(self._state.running_processes)

    def get_process_session_id(self, process_id: str) -> str | None:
        return self._state.running_processes.get(process_id)

    def get_session_messages(self, session_id: str) -> tuple[Message, ...] | None:
        """Messages accumulated for a live or retained session, else None."""
        return self._state.sessions.get(session_id)
