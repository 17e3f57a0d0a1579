"""Process launchers for agent CLIs.

A launcher starts an external command, hands back an opaque process id
immediately, and reports what happens afterwards as events on an
EventBus: output chunks, then exactly one exit or error.
"""
from __future__ import annotations

import abc
import asyncio
import codecs
import logging
import uuid
from collections.abc import Sequence

from agentloop.adapters.event_bus import EventBus
from agentloop.adapters.events import ProcessErrored, ProcessExited, ProcessOutput

from .errors import LaunchError

logger = logging.getLogger(__name__)


class ProcessLauncher(abc.ABC):
    """Starts and stops external processes, reporting via events."""

    @abc.abstractmethod
    async def launch(
        self,
        command: str,
        args: Sequence[str],
        cwd: str | None = None,
    ) -> str:
        """Start command and return its process id.

        Spawn failures are reported as a ProcessErrored event for the
        returned id rather than raised.
        """

    @abc.abstractmethod
    async def stop(self, process_id: str | None = None) -> None:
        """Terminate one process, or every process when process_id is None."""


class SubprocessLauncher(ProcessLauncher):
    """Launcher backed by asyncio subprocesses."""

    def __init__(
        self,
        bus: EventBus,
        *,
        stop_timeout: float = 5.0,
        read_size: int = 4096,
    ) -> None:
        self._bus = bus
        self._stop_timeout = stop_timeout
        self._read_size = read_size
        self._processes: dict[str, asyncio.subprocess.Process] = {}
        self._readers: dict[str, asyncio.Task] = {}

    async def launch(
        self,
        command: str,
        args: Sequence[str],
        cwd: str | None = None,
    ) -> str:
        process_id = str(uuid.uuid4())
        try:
            # create_subprocess_exec passes args as an array, no shell
            proc = await asyncio.create_subprocess_exec(
                command, *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
            )
        except OSError as exc:
            error = LaunchError(command, str(exc))
            logger.warning("Launch %s failed: %s", process_id[:8], error)
            self._readers[process_id] = asyncio.create_task(
                self._report_spawn_failure(process_id, str(error))
            )
            return process_id

        logger.info(
            "Launched %s as process %s (pid=%d, cwd=%s)",
            command, process_id[:8], proc.pid, cwd or ".",
        )
        self._processes[process_id] = proc
        # No awaits after this point: the caller registers the id before
        # the reader can deliver anything.
        self._readers[process_id] = asyncio.create_task(
            self._read_output(process_id, proc)
        )
        return process_id

    async def _report_spawn_failure(self, process_id: str, error: str) -> None:
        try:
            await self._bus.emit(ProcessErrored(process_id=process_id, error=error))
        finally:
            self._readers.pop(process_id, None)

    async def _drain_stderr(
        self, process_id: str, stream: asyncio.StreamReader
    ) -> str:
        # Chunked reads: a single huge stderr line must not hit the
        # StreamReader line limit.
        tail = ""
        while True:
            chunk = await stream.read(self._read_size)
            if not chunk:
                break
            text = chunk.decode("utf-8", errors="replace")
            logger.debug("process %s stderr: %s", process_id[:8], text.rstrip())
            tail = (tail + text)[-2000:]
        return tail.strip()

    async def _read_output(
        self, process_id: str, proc: asyncio.subprocess.Process
    ) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        stderr_task = asyncio.create_task(
            self._drain_stderr(process_id, proc.stderr)
        )
        try:
            while True:
                chunk = await proc.stdout.read(self._read_size)
                if not chunk:
                    break
                text = decoder.decode(chunk)
                if text:
                    await self._bus.emit(
                        ProcessOutput(process_id=process_id, data=text)
                    )
            tail = decoder.decode(b"", final=True)
            if tail:
                await self._bus.emit(ProcessOutput(process_id=process_id, data=tail))

            code = await proc.wait()
            stderr_tail = await stderr_task
            if code != 0 and stderr_tail:
                logger.warning(
                    "Process %s exited with code %d: %s",
                    process_id[:8], code, stderr_tail[-500:],
                )
            else:
                logger.info("Process %s exited with code %d", process_id[:8], code)
            await self._bus.emit(ProcessExited(process_id=process_id, code=code))
        except asyncio.CancelledError:
            stderr_task.cancel()
            raise
        except Exception as exc:
            stderr_task.cancel()
            logger.exception("Reading output of process %s failed", process_id[:8])
            await self._bus.emit(
                ProcessErrored(process_id=process_id, error=f"Read error: {exc}")
            )
        finally:
            self._processes.pop(process_id, None)
            self._readers.pop(process_id, None)

    async def stop(self, process_id: str | None = None) -> None:
        if process_id is None:
            targets = list(self._processes.items())
        else:
            proc = self._processes.get(process_id)
            targets = [(process_id, proc)] if proc is not None else []

        for pid, proc in targets:
            if proc.returncode is not None:
                continue
            try:
                proc.terminate()
                try:
                    await asyncio.wait_for(proc.wait(), timeout=self._stop_timeout)
                except asyncio.TimeoutError:
                    proc.kill()
                    await proc.wait()
                logger.info("Process %s stopped (pid=%d)", pid[:8], proc.pid)
            except ProcessLookupError:
                pass

    def is_alive(self, process_id: str) -> bool:
        proc = self._processes.get(process_id)
        return proc is not None and proc.returncode is None

    async def shutdown(self) -> None:
        """Stop every process and wait for the readers to finish."""
        await self.stop()
        readers = list(self._readers.values())
        if readers:
            await asyncio.gather(*readers, return_exceptions=True)
