"""Session id reconciliation.

A process is registered under a provisional session key because the
agent only reports its real session id in its first init event. When
that event arrives the reconciler moves everything accumulated under the
provisional key to the real one, persists the backlog, and tells
listeners, all before the registry appends the next message.
"""
from __future__ import annotations

import logging

from agentloop.adapters.events import SessionResolved, event_to_dict

from .config import EventCallback, SessionIdCallback, fire_event
from .journal import MessageJournal
from .models import ProcessHandle, is_provisional
from .session_store import SessionStore

logger = logging.getLogger(__name__)


class SessionIdReconciler:
    """Renames a process's session from provisional to real id."""

    def __init__(
        self,
        store: SessionStore,
        journal: MessageJournal,
        event_callback: EventCallback | None = None,
    ) -> None:
        self._store = store
        self._journal = journal
        self._event_callback = event_callback
        self._listeners: list[SessionIdCallback] = []

    def add_listener(self, listener: SessionIdCallback) -> None:
        self._listeners.append(listener)

    async def reconcile(self, handle: ProcessHandle, real_session_id: str) -> bool:
        """Adopt real_session_id for handle. Returns False if nothing changed."""
        old_session_id = handle.session_id
        if not real_session_id or real_session_id == old_session_id:
            return False

        was_provisional = is_provisional(old_session_id)
        # Messages already under the real id were journaled when they
        # arrived; only what moves over from the old key is new there.
        backlog = self._store.get_session_messages(old_session_id) or ()

        if not self._store.reconcile_session(handle.process_id, real_session_id):
            return False
        handle.session_id = real_session_id

        if not self._journal.is_tracking(real_session_id):
            await self._journal.open_session(
                real_session_id,
                cwd=handle.cwd,
                provider=handle.provider.value,
                kind=handle.kind.value,
                backlog=backlog,
            )
        else:
            for message in backlog:
                await self._journal.record(real_session_id, message)
        if not was_provisional:
            self._journal.forget(old_session_id)

        logger.info(
            "Process %s reconciled %s -> %s",
            handle.process_id[:8], old_session_id[:20], real_session_id,
        )
        for listener in list(self._listeners):
            await fire_event(listener, handle.process_id, real_session_id)
        await fire_event(
            self._event_callback,
            event_to_dict(SessionResolved(
                process_id=handle.process_id,
                old_session_id=old_session_id,
                session_id=real_session_id,
            )),
        )
        return True
