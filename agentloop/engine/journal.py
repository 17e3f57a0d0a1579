"""Write-behind message journal.

Assigns per-session sequence numbers and forwards messages to the
durable store. The in-memory SessionStore stays authoritative: a failed
write is logged and the live stream carries on.
"""
from __future__ import annotations

import logging
from collections.abc import Iterable

from agentloop.shared.services.persistence import DurableStore, guarded

from .errors import PersistenceError
from .models import Message, is_provisional

logger = logging.getLogger(__name__)


class MessageJournal:
    """Sequence-numbered persistence of resolved sessions."""

    def __init__(self, durable: DurableStore | None) -> None:
        self._durable = durable
        self._sequences: dict[str, int] = {}

    @property
    def enabled(self) -> bool:
        return self._durable is not None

    def is_tracking(self, session_id: str) -> bool:
        return session_id in self._sequences

    async def open_session(
        self,
        session_id: str,
        cwd: str,
        provider: str,
        kind: str,
        backlog: Iterable[Message] = (),
    ) -> None:
        """Create the session row and persist messages received so far.

        Used when a provisional session resolves: its backlog is written
        with sequence numbers 1..n.
        """
        if self._durable is None or is_provisional(session_id):
            return
        await guarded(
            self._durable.create_session(session_id, cwd, provider, kind),
            f"create session {session_id}",
        )
        self._sequences.setdefault(session_id, 0)
        for message in backlog:
            await self.record(session_id, message)

    async def resume(self, session_id: str) -> None:
        """Continue numbering after what the store already holds."""
        if self._durable is None or is_provisional(session_id):
            return
        try:
            next_seq = await self._durable.get_next_sequence(session_id)
        except PersistenceError as exc:
            logger.error("Could not read next sequence for %s: %s", session_id, exc)
            next_seq = 1
        self._sequences[session_id] = next_seq - 1

    async def record(self, session_id: str, message: Message) -> None:
        """Persist one message. Provisional sessions are not journaled."""
        if self._durable is None or is_provisional(session_id):
            return
        sequence = self._sequences.get(session_id, 0) + 1
        self._sequences[session_id] = sequence
        await guarded(
            self._durable.save_message(session_id, message, sequence),
            f"save message {sequence} of {session_id}",
        )

    def forget(self, session_id: str) -> None:
        self._sequences.pop(session_id, None)
