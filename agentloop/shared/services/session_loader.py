"""Switch the session view to a persisted or in-memory session.

Task files can be linked to the session that wrote them, so opening a
task can bring its planning conversation back into view.
"""
from __future__ import annotations

import logging

from agentloop.engine.errors import PersistenceError
from agentloop.engine.models import LinkType
from agentloop.engine.session_store import SessionStore

from .persistence import DurableStore

logger = logging.getLogger(__name__)


async def load_session_to_view(
    session_id: str,
    store: SessionStore,
    durable: DurableStore | None,
) -> bool:
    """Show session_id in the store's view.

    Running and retained sessions are shown from memory. Anything else is
    loaded from the durable store; if that fails the view is switched to
    an empty history. Returns True when messages came from memory or disk.
    """
    if store.is_session_running(session_id) or store.get_session_messages(session_id) is not None:
        store.view_session(session_id)
        return True
    if durable is None:
        store.view_session(session_id, [])
        return False
    try:
        history = await durable.get_session_messages(session_id)
    except PersistenceError as exc:
        logger.error("Could not load session %s: %s", session_id, exc)
        store.view_session(session_id, [])
        return False
    store.view_session(session_id, history)
    logger.debug("Viewing session %s (%d messages)", session_id, len(history))
    return True


async def link_task_session(
    task_id: str,
    session_id: str,
    durable: DurableStore,
    link_type: LinkType = LinkType.TASK,
) -> None:
    """Remember session_id as the session that produced task_id's file."""
    await durable.save_session_link(session_id, task_id, link_type)
    logger.info("Linked %s %s to session %s", link_type.value, task_id, session_id)


async def load_task_session(
    task_id: str,
    store: SessionStore,
    durable: DurableStore,
    link_type: LinkType = LinkType.TASK,
) -> str | None:
    """View the session linked to task_id, if any; returns its id.

    With no link (or an unreadable one) the view is left untouched.
    """
    try:
        link = await durable.get_session_link(task_id, link_type)
    except PersistenceError as exc:
        logger.error("Could not load link for %s: %s", task_id, exc)
        return None
    if link is None:
        return None
    await load_session_to_view(link.session_id, store, durable)
    return link.session_id
