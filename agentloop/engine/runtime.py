"""Top-level wiring of the agent loop.

Builds the event bus, launcher, session store, process registry and
iteration controller for one workspace, and runs the event pump.

Usage:
    loop = AgentLoop(LoopConfig.from_env(), cwd="/path/to/project")
    await loop.start()
    await loop.controller.start_iteration("my-task")
    await loop.controller.wait_idle()
    await loop.shutdown()
"""
from __future__ import annotations

import asyncio
import logging
import os

from agentloop.adapters.event_bus import EventBus
from agentloop.shared.services.persistence import DurableStore, SqliteDurableStore

from .config import EventCallback, LoopConfig
from .iteration import IterationController
from .launcher import ProcessLauncher, SubprocessLauncher
from .process_registry import ProcessRegistry
from .providers.registry import ProviderRegistry, build_provider_registry
from .session_store import SessionStore

logger = logging.getLogger(__name__)


class AgentLoop:
    """One workspace's registry, store and controller around one pump."""

    def __init__(
        self,
        config: LoopConfig | None = None,
        cwd: str | None = None,
        providers: ProviderRegistry | None = None,
        durable: DurableStore | None = None,
        launcher: ProcessLauncher | None = None,
        event_callback: EventCallback | None = None,
        bus: EventBus | None = None,
    ) -> None:
        self._config = config or LoopConfig.from_env()
        self._cwd = os.path.abspath(cwd or self._config.default_cwd)
        self.bus = bus or EventBus(maxsize=self._config.event_queue_size)
        self.providers = providers or build_provider_registry(
            default=self._config.default_provider
        )
        self.durable = durable or SqliteDurableStore(self._config.db_path, self._cwd)
        self.launcher = launcher or SubprocessLauncher(
            self.bus, stop_timeout=self._config.stop_timeout_seconds
        )
        self.store = SessionStore()
        self.registry = ProcessRegistry(
            self.launcher,
            self.store,
            self.providers,
            durable=self.durable,
            event_callback=event_callback,
        )
        self.controller = IterationController(
            self.registry,
            self.store,
            self.durable,
            config=self._config,
            cwd=self._cwd,
            provider=self._config.default_provider,
            event_callback=event_callback,
        )
        self._pump_task: asyncio.Task | None = None

    @property
    def cwd(self) -> str:
        return self._cwd

    @property
    def config(self) -> LoopConfig:
        return self._config

    async def start(self) -> None:
        """Start the event pump and load the iteration mirror."""
        if self._pump_task is not None:
            return
        self._pump_task = asyncio.create_task(self.registry.pump(self.bus))
        await self.controller.load_all_iterations()
        logger.info("Agent loop started for %s", self._cwd)

    async def shutdown(self) -> None:
        """Stop the loop and every process, then close storage."""
        await self.controller.stop_iteration()
        await self.registry.stop()
        if isinstance(self.launcher, SubprocessLauncher):
            await self.launcher.shutdown()
        self.bus.close()
        if self._pump_task is not None:
            try:
                await self._pump_task
            finally:
                self._pump_task = None
        await self.durable.close()
        logger.info("Agent loop shut down")
