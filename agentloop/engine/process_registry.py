"""Process registry: launches agent CLIs and routes their output.

Owns one ProcessHandle per running process. Launcher events arrive on
the EventBus and are handled one at a time by pump(), so for any process
the order is output chunks, then exactly one exit or error, and session
reconciliation finishes before the next message is appended.

Failure classification (ErrorKind):
- launcher error text with "Failed to spawn", "No such file" or
  "not installed": not_installed
- result events with is_error and a 402 / credits error: payment_required
- result events with an authentication error, or the legacy
  "authentication_failed" / "Invalid API key" shapes: not_logged_in
- any other launcher error: unknown, after appending a system message
"""
from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

from agentloop.adapters.events import (
    LoopEvent,
    ProcessErrored,
    ProcessExited,
    ProcessOutput,
    ProviderFailed,
    event_to_dict,
)

from .config import (
    ErrorCallback,
    EventCallback,
    ExitCallback,
    SessionIdCallback,
    fire_event,
)
from .errors import ProviderRuntimeError, ProviderUnavailableError
from .journal import MessageJournal
from .line_buffer import LineBufferDemux
from .models import (
    ErrorKind,
    ExitHandler,
    Message,
    ProcessHandle,
    ProviderKind,
    SessionKind,
)
from .reconciler import SessionIdReconciler

if TYPE_CHECKING:
    from agentloop.adapters.event_bus import EventBus
    from agentloop.shared.services.persistence import DurableStore

    from .launcher import ProcessLauncher
    from .providers.registry import ProviderRegistry
    from .session_store import SessionStore

logger = logging.getLogger(__name__)

_SPAWN_FAILURE_MARKERS = ("Failed to spawn", "No such file", "not installed")
_PAYMENT_MARKERS = ("paid credits", "add credits")
_AUTH_MARKERS = ("authentication", "invalid api key", "unauthorized", "not logged in")

PAYMENT_REQUIRED_MESSAGE = (
    "This provider requires paid credits. Please add credits to your account."
)
NOT_LOGGED_IN_MESSAGE = (
    "Provider is not logged in. Please run the CLI in your terminal to authenticate."
)
NOT_INSTALLED_MESSAGE = "AI provider is not installed. Please install it first."


def classify_launch_error(error: str) -> ErrorKind:
    """Classify an error reported by the launcher."""
    if any(marker in error for marker in _SPAWN_FAILURE_MARKERS):
        return ErrorKind.NOT_INSTALLED
    return ErrorKind.UNKNOWN


def classify_message(message: Message) -> ErrorKind | None:
    """Return the failure a stream message signals, or None."""
    error = message.get("error")
    if message.get("type") == "result" and message.get("is_error") and error:
        text = str(error)
        lower = text.lower()
        if "402" in text or any(m in lower for m in _PAYMENT_MARKERS):
            return ErrorKind.PAYMENT_REQUIRED
        if any(m in lower for m in _AUTH_MARKERS):
            return ErrorKind.NOT_LOGGED_IN

    # Older CLI versions
    if error == "authentication_failed":
        return ErrorKind.NOT_LOGGED_IN
    result = message.get("result")
    if message.get("is_error") and isinstance(result, str) and "Invalid API key" in result:
        return ErrorKind.NOT_LOGGED_IN
    return None


def _failure_text(kind: ErrorKind, detail: str) -> str:
    if kind is ErrorKind.PAYMENT_REQUIRED:
        return PAYMENT_REQUIRED_MESSAGE
    if kind is ErrorKind.NOT_LOGGED_IN:
        return NOT_LOGGED_IN_MESSAGE
    if kind is ErrorKind.NOT_INSTALLED:
        return NOT_INSTALLED_MESSAGE
    return detail


class ProcessRegistry:
    """Tracks running agent processes and feeds the session store."""

    def __init__(
        self,
        launcher: ProcessLauncher,
        store: SessionStore,
        providers: ProviderRegistry,
        durable: DurableStore | None = None,
        event_callback: EventCallback | None = None,
        check_availability: bool = True,
    ) -> None:
        self._launcher = launcher
        self._store = store
        self._providers = providers
        self._event_callback = event_callback
        self._check_availability = check_availability
        self._journal = MessageJournal(durable)
        self._reconciler = SessionIdReconciler(store, self._journal, event_callback)
        self._demux = LineBufferDemux()
        self._handles: dict[str, ProcessHandle] = {}
        self._exit_listeners: list[ExitCallback] = []
        self._error_listeners: list[ErrorCallback] = []
        self.last_error: ProviderRuntimeError | ProviderUnavailableError | None = None

    # ── Listeners ──

    def add_session_id_listener(self, listener: SessionIdCallback) -> None:
        self._reconciler.add_listener(listener)

    def add_exit_listener(self, listener: ExitCallback) -> None:
        """Called on exit of processes launched without an on_exit handler."""
        self._exit_listeners.append(listener)

    def add_error_listener(self, listener: ErrorCallback) -> None:
        self._error_listeners.append(listener)

    # ── Launch ──

    async def launch(
        self,
        message: str,
        cwd: str,
        resume_session_id: str | None = None,
        *,
        provider: ProviderKind | str | None = None,
        kind: SessionKind = SessionKind.PLAN,
        user_message: str | None = None,
        on_exit: ExitHandler | None = None,
    ) -> str:
        """Start an agent run and return its process id.

        Raises ProviderUnavailableError before anything is registered
        when the provider fails its availability check. user_message is
        the prompt as shown to the user; None shows nothing.
        """
        agent = self._providers.get_or_raise(provider)
        if self._check_availability:
            status = await agent.check_available()
            if not status.available:
                error = ProviderUnavailableError(
                    agent.name,
                    status.error_kind or ErrorKind.UNKNOWN,
                    status.error or f"{agent.display_name} is not available",
                    auth_instructions=status.auth_instructions,
                )
                self.last_error = error
                logger.warning(
                    "Provider %s unavailable (%s): %s",
                    agent.name, error.kind.value, error.message,
                )
                raise error

        command, args = agent.build_command(message, resume_session_id)
        process_id = await self._launcher.launch(command, args, cwd)

        # Registration is synchronous: no launcher event for process_id
        # can be handled before the handle exists.
        handle = ProcessHandle(
            process_id=process_id,
            session_id="",
            parse_buffer=self._demux.register(process_id),
            kind=kind,
            provider=agent.kind,
            cwd=cwd,
            on_exit=on_exit,
        )
        self._handles[process_id] = handle
        handle.session_id = self._store.start_process(process_id, resume_session_id)
        logger.info(
            "Launched %s %s process %s in %s%s",
            agent.name, kind.value, process_id[:8], cwd,
            f" (resuming {resume_session_id})" if resume_session_id else "",
        )

        if resume_session_id:
            await self._journal.resume(resume_session_id)
        if user_message is not None:
            displayed = {"type": "user", "content": user_message}
            self._store.add_message(displayed, process_id)
            # Provisional sessions persist this with their backlog later.
            await self._journal.record(handle.session_id, displayed)
        return process_id

    # ── Launcher events ──

    async def dispatch(self, event: LoopEvent) -> None:
        """Route one launcher event to its handler."""
        if isinstance(event, ProcessOutput):
            await self.on_output(event.process_id, event.data)
        elif isinstance(event, ProcessExited):
            await self.on_exit(event.process_id, event.code)
        elif isinstance(event, ProcessErrored):
            await self.on_error(event.process_id, event.error)
        else:
            logger.debug("Ignoring event %s", event.event_type)

    async def pump(self, bus: EventBus) -> None:
        """Consume launcher events until the bus is closed."""
        async for event in bus.consume():
            try:
                await self.dispatch(event)
            except Exception:
                logger.exception("Handling %s failed", event.event_type)

    async def on_output(self, process_id: str, chunk: str | bytes) -> None:
        handle = self._handles.get(process_id)
        if handle is None:
            logger.debug("Output for unknown process %s dropped", process_id[:8])
            return
        for record in self._demux.feed(process_id, chunk):
            await self._handle_message(handle, record)
            if process_id not in self._handles:
                # Torn down by a classified failure.
                break

    async def _handle_message(self, handle: ProcessHandle, message: Message) -> None:
        if message.get("type") == "system" and message.get("subtype") == "init":
            session_id = message.get("session_id")
            if isinstance(session_id, str) and session_id:
                await self._reconciler.reconcile(handle, session_id)

        failure = classify_message(message)
        if failure is not None:
            detail = str(message.get("error") or message.get("result") or "")
            await self._fail(handle.process_id, failure, _failure_text(failure, detail))
            return

        # The registry appended the displayed prompt itself.
        if message.get("type") == "user" and not message.get("parent_tool_use_id"):
            return

        if self._store.add_message(message, handle.process_id):
            await self._journal.record(handle.session_id, message)

    async def on_exit(self, process_id: str, code: int) -> None:
        handle = self._handles.get(process_id)
        if handle is None:
            return
        for record in self._demux.flush(process_id):
            await self._handle_message(handle, record)
            if process_id not in self._handles:
                return

        session_id = handle.session_id
        messages = self._store.get_session_messages(session_id) or ()
        logger.info(
            "Process %s exited with code %d (%d messages in %s)",
            process_id[:8], code, len(messages), session_id[:20],
        )
        try:
            # Listeners still see the process mapped to its session.
            if handle.on_exit is not None:
                await fire_event(handle.on_exit, messages)
            else:
                for listener in list(self._exit_listeners):
                    await fire_event(listener, process_id, session_id, messages, code)
        finally:
            self._teardown(process_id)

    async def on_error(self, process_id: str, error: str) -> None:
        kind = classify_launch_error(error)
        if kind is ErrorKind.NOT_INSTALLED:
            # Spawn failures can arrive before or without a handle.
            await self._fail(process_id, kind, _failure_text(kind, error))
            return

        handle = self._handles.get(process_id)
        if handle is None:
            return
        self._store.add_message(
            {"type": "system", "content": f"Error: {error}"}, process_id
        )
        await self._fail(process_id, ErrorKind.UNKNOWN, error)

    async def _fail(self, process_id: str, kind: ErrorKind, message: str) -> None:
        known = process_id in self._handles
        self._teardown(process_id)
        if known and kind is not ErrorKind.UNKNOWN:
            # The CLI may still be running after reporting the failure.
            await self._stop_quietly(process_id)

        error = ProviderRuntimeError(process_id, kind, message)
        self.last_error = error
        logger.warning(
            "Process %s failed (%s): %s", process_id[:8], kind.value, message
        )
        for listener in list(self._error_listeners):
            await fire_event(listener, error)
        await fire_event(
            self._event_callback,
            event_to_dict(ProviderFailed(
                process_id=process_id, kind=kind.value, message=message,
            )),
        )

    # ── Stop ──

    async def stop(self, process_id: str | None = None) -> bool:
        """Stop one process, or all of them.

        Bookkeeping is removed before the launcher is asked to stop, so a
        late exit of a stopped process reaches no listener. The return
        value reports only the launcher call.
        """
        targets = list(self._handles) if process_id is None else [process_id]
        for pid in targets:
            self._teardown(pid)
        return await self._stop_quietly(process_id)

    async def _stop_quietly(self, process_id: str | None) -> bool:
        try:
            await self._launcher.stop(process_id)
        except Exception as exc:
            logger.warning(
                "Stopping %s failed: %s",
                process_id[:8] if process_id else "all processes", exc,
            )
            return False
        return True

    def _teardown(self, process_id: str) -> None:
        self._handles.pop(process_id, None)
        self._demux.discard(process_id)
        self._store.end_process(process_id)

    # ── Queries ──

    def is_registered(self, process_id: str) -> bool:
        return process_id in self._handles

    @property
    def handles(self) -> Sequence[ProcessHandle]:
        return tuple(self._handles.values())

    def get_handle(self, process_id: str) -> ProcessHandle | None:
        return self._handles.get(process_id)

    def status(self) -> dict[str, Any]:
        """Summary for logging and the CLI."""
        return {
            "running": len(self._handles),
            "processes": {
                pid: handle.session_id for pid, handle in self._handles.items()
            },
            "last_error": str(self.last_error) if self.last_error else None,
        }
