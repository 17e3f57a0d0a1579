"""Iteration controller: reruns the agent against one task until done.

Each iteration is a fresh agent session started with the same prompt.
When a session exits, its last few assistant messages are scanned for
the completion sentinel. Found: the loop stops. Not found: the next
iteration starts immediately.

State machine:
    Idle --start_iteration--> Starting(task) --launched--> Running(task, n, process)
    Running --exit, no sentinel--> Running(task, n + 1, new process)
    Running --exit with sentinel | stop_iteration | failure--> Idle
    Starting --stop_iteration | failure--> Idle

Every transition that awaits re-checks that the state object it started
from is still current; if a stop intervened it abandons its work.

Iteration records are persisted at every transition so an interrupted
loop can be resumed: a trailing stopped record is closed out as
completed and numbering continues after it.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Union

from agentloop.adapters.events import IterationFinished, IterationStarted, event_to_dict
from agentloop.shared.services.tasks import task_artifact_path

from .config import COMPLETION_SENTINEL, EventCallback, LoopConfig, fire_event
from .errors import AgentLoopError, IterationError, PersistenceError, ProviderRuntimeError
from .models import (
    IterationRecord,
    IterationStatus,
    Message,
    ProviderKind,
    SessionKind,
    is_provisional,
)
from .prompts import build_iteration_prompt
from .providers.registry import parse_provider_kind

if TYPE_CHECKING:
    from agentloop.shared.services.persistence import DurableStore

    from .process_registry import ProcessRegistry
    from .session_store import SessionStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Idle:
    """No iteration loop is running."""


@dataclass(frozen=True)
class Starting:
    """start_iteration is preparing the first launch of task_id."""
    task_id: str


@dataclass(frozen=True)
class Running:
    task_id: str
    iteration_number: int
    process_id: str


IterationState = Union[Idle, Starting, Running]


def _contains(value: Any, sentinel: str) -> bool:
    return isinstance(value, str) and sentinel in value


def _message_has_sentinel(message: Mapping[str, Any], sentinel: str) -> bool:
    inner = message.get("message")
    if isinstance(inner, Mapping):
        content = inner.get("content")
        if _contains(content, sentinel):
            return True
        if isinstance(content, list):
            for item in content:
                if (
                    isinstance(item, Mapping)
                    and item.get("type") == "text"
                    and _contains(item.get("text"), sentinel)
                ):
                    return True
    return _contains(message.get("content"), sentinel)


def is_complete(
    messages: Iterable[Message],
    sentinel: str = COMPLETION_SENTINEL,
    window: int = 3,
) -> bool:
    """True if one of the last `window` assistant messages holds the sentinel."""
    assistant = [m for m in messages if m.get("type") == "assistant"]
    if window <= 0:
        return False
    return any(_message_has_sentinel(m, sentinel) for m in assistant[-window:])


class IterationController:
    """Drives the iteration loop for one workspace."""

    def __init__(
        self,
        registry: ProcessRegistry,
        store: SessionStore,
        durable: DurableStore,
        config: LoopConfig | None = None,
        cwd: str | None = None,
        provider: ProviderKind | str | None = None,
        event_callback: EventCallback | None = None,
    ) -> None:
        self._registry = registry
        self._store = store
        self._durable = durable
        self._config = config or LoopConfig()
        self._cwd = cwd or self._config.default_cwd
        self._provider = parse_provider_kind(provider) if provider else None
        self._event_callback = event_callback

        self._state: IterationState = Idle()
        self._idle = asyncio.Event()
        self._idle.set()
        self._selected: tuple[str, int] | None = None
        self.iterations: dict[str, list[IterationRecord]] = {}
        self.last_error: Exception | None = None

        registry.add_session_id_listener(self.handle_session_id)
        registry.add_exit_listener(self.handle_exit)
        registry.add_error_listener(self.handle_error)

    # ── State ──

    @property
    def state(self) -> IterationState:
        return self._state

    @property
    def is_running(self) -> bool:
        return isinstance(self._state, (Starting, Running))

    @property
    def running_task(self) -> str | None:
        state = self._state
        return state.task_id if isinstance(state, (Starting, Running)) else None

    @property
    def current_iteration(self) -> int | None:
        if isinstance(self._state, Running):
            return self._state.iteration_number
        return None

    @property
    def current_process_id(self) -> str | None:
        return self._state.process_id if isinstance(self._state, Running) else None

    @property
    def selected_iteration(self) -> tuple[str, int] | None:
        return self._selected

    def _set_state(self, state: IterationState) -> None:
        self._state = state
        if isinstance(state, Idle):
            self._idle.set()
        else:
            self._idle.clear()

    async def wait_idle(self) -> None:
        """Block until the loop reaches Idle."""
        await self._idle.wait()

    def _fail(self, task_id: str, exc: Exception) -> None:
        self._set_state(Idle())
        self.last_error = exc
        logger.error("Iteration loop for %s stopped: %s", task_id, exc)

    # ── Local mirror ──

    def _mirror_upsert(self, record: IterationRecord) -> None:
        records = self.iterations.setdefault(record.task_id, [])
        for i, existing in enumerate(records):
            if existing.iteration_number == record.iteration_number:
                records[i] = record
                return
        records.append(record)

    def _mirror_update(self, task_id: str, number: int, **changes: Any) -> None:
        for record in self.iterations.get(task_id, []):
            if record.iteration_number == number:
                for key, value in changes.items():
                    setattr(record, key, value)
                return

    async def load_all_iterations(self) -> dict[str, list[IterationRecord]]:
        """Refresh the local mirror from the durable store."""
        try:
            self.iterations = await self._durable.get_all_iterations()
        except PersistenceError as exc:
            logger.error("Could not load iterations: %s", exc)
        return self.iterations

    # ── Transitions ──

    async def start_iteration(self, task_id: str) -> bool:
        """Start (or resume) the loop for task_id.

        Returns False when the task is already starting or running, or
        when the start failed; the failure is kept in last_error.
        """
        state = self._state
        if isinstance(state, (Starting, Running)):
            if state.task_id == task_id:
                logger.debug("Task %s is already running", task_id)
                return False
            await self.stop_iteration()
            if not isinstance(self._state, Idle):
                logger.debug("Loop restarted while stopping; not starting %s", task_id)
                return False

        # Set before the first await so a second start sees it.
        starting = Starting(task_id)
        self._set_state(starting)
        self.last_error = None
        try:
            prior = await self._durable.get_iterations(task_id)
            if self._state is not starting:
                return False
            self.iterations[task_id] = list(prior)
            if prior and prior[-1].status is not IterationStatus.COMPLETED:
                # A stopped (or crashed while running) iteration is closed
                # out before numbering continues.
                last = prior[-1]
                await self._durable.update_iteration_status(
                    task_id, last.iteration_number, IterationStatus.COMPLETED
                )
                self._mirror_update(
                    task_id, last.iteration_number, status=IterationStatus.COMPLETED
                )
                if self._state is not starting:
                    return False
            self._selected = None
            return await self._start_next(starting, task_id, len(prior) + 1)
        except (AgentLoopError, KeyError) as exc:
            if self._state is starting:
                self._fail(task_id, exc)
            else:
                logger.error("Abandoned start of %s failed: %s", task_id, exc)
            return False

    async def _start_next(
        self, expected: IterationState, task_id: str, number: int
    ) -> bool:
        """Persist iteration `number` as running and launch it.

        `expected` is the state the caller transitions from. If the state
        changes while this awaits, the iteration is recorded stopped, any
        launched process is stopped, and False is returned.
        """
        await self._durable.save_iteration_record(
            task_id, number, IterationStatus.RUNNING
        )
        self._mirror_upsert(IterationRecord(
            task_id=task_id,
            iteration_number=number,
            status=IterationStatus.RUNNING,
            provider=self._provider.value if self._provider else None,
        ))
        if self._state is not expected:
            await self._abandon(task_id, number)
            return False

        prompt = build_iteration_prompt(
            task_artifact_path(task_id, self._config),
            self._config.completion_sentinel,
        )
        try:
            process_id = await self._registry.launch(
                prompt,
                self._cwd,
                provider=self._provider,
                kind=SessionKind.ITERATION,
            )
        except (AgentLoopError, KeyError):
            await self._abandon(task_id, number)
            raise

        if self._state is not expected:
            await self._registry.stop(process_id)
            await self._abandon(task_id, number)
            return False

        # Set before yielding so the exit of this process is recognised.
        self._set_state(Running(task_id, number, process_id))
        self._selected = (task_id, number)
        logger.info(
            "Iteration %d of %s started as process %s",
            number, task_id, process_id[:8],
        )
        await fire_event(
            self._event_callback,
            event_to_dict(IterationStarted(
                task_id=task_id, iteration_number=number, process_id=process_id,
            )),
        )
        return True

    async def _abandon(self, task_id: str, number: int) -> None:
        """Record an iteration that will not run to completion as stopped."""
        self._mirror_update(task_id, number, status=IterationStatus.STOPPED)
        try:
            await self._durable.update_iteration_status(
                task_id, number, IterationStatus.STOPPED
            )
        except PersistenceError as exc:
            logger.error(
                "Could not mark iteration %d of %s stopped: %s", number, task_id, exc
            )

    async def stop_iteration(self) -> bool:
        """Stop the loop and its running agent process."""
        state = self._state
        if isinstance(state, Starting):
            # The pending start notices and cleans up after itself.
            self._set_state(Idle())
            logger.info("Start of %s cancelled", state.task_id)
            return True
        if not isinstance(state, Running):
            return False
        self._set_state(Idle())

        self._mirror_update(
            state.task_id, state.iteration_number, status=IterationStatus.STOPPED
        )
        try:
            await self._durable.update_iteration_status(
                state.task_id, state.iteration_number, IterationStatus.STOPPED
            )
        except PersistenceError as exc:
            self.last_error = exc
            logger.error(
                "Could not mark iteration %d of %s stopped: %s",
                state.iteration_number, state.task_id, exc,
            )
        await self._registry.stop(state.process_id)
        logger.info(
            "Iteration %d of %s stopped", state.iteration_number, state.task_id
        )
        await fire_event(
            self._event_callback,
            event_to_dict(IterationFinished(
                task_id=state.task_id,
                iteration_number=state.iteration_number,
                status=IterationStatus.STOPPED.value,
            )),
        )
        return True

    # ── Registry callbacks ──

    async def handle_session_id(self, process_id: str, session_id: str) -> None:
        """Persist the session id of the running iteration as soon as it is known."""
        state = self._state
        if not isinstance(state, Running) or state.process_id != process_id:
            return
        self._mirror_update(
            state.task_id, state.iteration_number, session_id=session_id
        )
        try:
            await self._durable.update_iteration_session_id(
                state.task_id, state.iteration_number, session_id
            )
        except PersistenceError as exc:
            self.last_error = exc
            logger.error("Could not persist session id %s: %s", session_id, exc)

    async def handle_exit(
        self,
        process_id: str,
        session_id: str,
        messages: tuple[Message, ...],
        exit_code: int,
    ) -> None:
        state = self._state
        if not isinstance(state, Running) or state.process_id != process_id:
            return
        task_id, number = state.task_id, state.iteration_number
        complete = is_complete(
            messages,
            self._config.completion_sentinel,
            self._config.completion_scan_window,
        )
        logger.info(
            "Iteration %d of %s exited (code=%d, complete=%s)",
            number, task_id, exit_code, complete,
        )
        try:
            if session_id and not is_provisional(session_id):
                self._mirror_update(task_id, number, session_id=session_id)
                await self._durable.update_iteration_session_id(
                    task_id, number, session_id
                )
                if self._state is not state:
                    return
            await self._durable.update_iteration_status(
                task_id, number, IterationStatus.COMPLETED
            )
            if self._state is not state:
                # stop_iteration ran during the write; its status wins.
                await self._abandon(task_id, number)
                return
            self._mirror_update(task_id, number, status=IterationStatus.COMPLETED)
            await fire_event(
                self._event_callback,
                event_to_dict(IterationFinished(
                    task_id=task_id,
                    iteration_number=number,
                    status=IterationStatus.COMPLETED.value,
                    complete=complete,
                )),
            )
            if self._state is not state:
                return
            if complete:
                self._set_state(Idle())
                logger.info("Task %s complete after %d iterations", task_id, number)
                return
            await self._start_next(state, task_id, number + 1)
        except (AgentLoopError, KeyError) as exc:
            if self._state is state:
                self._fail(task_id, exc)
            else:
                logger.error("Iteration loop for %s failed after stop: %s", task_id, exc)

    async def handle_error(self, error: ProviderRuntimeError) -> None:
        """A classified provider failure ends the loop."""
        state = self._state
        if not isinstance(state, Running) or state.process_id != error.process_id:
            return
        self._fail(
            state.task_id,
            IterationError(state.task_id, f"{error.kind.value}: {error.message}"),
        )
        await self._abandon(state.task_id, state.iteration_number)

    # ── Selection ──

    async def select_iteration(self, task_id: str, iteration_number: int) -> bool:
        """View an iteration's session. Returns False if it has none yet."""
        self._selected = (task_id, iteration_number)
        try:
            records = await self._durable.get_iterations(task_id)
        except PersistenceError as exc:
            logger.error("Could not load iterations of %s: %s", task_id, exc)
            return False
        record = next(
            (r for r in records if r.iteration_number == iteration_number), None
        )
        if record is None:
            return False

        state = self._state
        if (
            isinstance(state, Running)
            and state.task_id == task_id
            and state.iteration_number == iteration_number
        ):
            session_id = self._store.get_process_session_id(state.process_id)
            if session_id is None:
                return False
            self._store.view_session(session_id)
            return True

        if not record.session_id:
            return False
        try:
            history = await self._durable.get_session_messages(record.session_id)
        except PersistenceError as exc:
            logger.error("Could not load session %s: %s", record.session_id, exc)
            return False
        # The first stored user message is the hidden iteration prompt.
        if history and history[0].get("type") == "user":
            history = history[1:]
        self._store.view_session(record.session_id, history)
        return True

    def clear_iteration_selection(self) -> None:
        self._selected = None
