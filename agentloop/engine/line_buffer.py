"""Newline-delimited JSON reassembly for agent output streams.

Agent CLIs write one JSON event per line, but the launcher delivers
output in arbitrary chunks. A LineBuffer keeps the unterminated tail of
the stream between chunks; LineBufferDemux keeps one buffer per process
so concurrent streams never share state.
"""
from __future__ import annotations

import codecs
import json
import logging
from typing import Any

logger = logging.getLogger(__name__)


def parse_line(line: str) -> dict[str, Any] | None:
    """Parse one line into a JSON object, or None if it isn't one.

    Malformed lines are expected: agent CLIs occasionally interleave
    plain text (warnings, progress output) with their JSON events.
    """
    stripped = line.strip()
    if not stripped:
        return None
    try:
        parsed = json.loads(stripped)
    except (json.JSONDecodeError, ValueError):
        logger.debug("Dropping non-JSON line: %.80s", stripped)
        return None
    if not isinstance(parsed, dict):
        logger.debug("Dropping non-object JSON line: %.80s", stripped)
        return None
    return parsed


class LineBuffer:
    """Incremental line splitter for a single output stream."""

    def __init__(self) -> None:
        self._pending = ""
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    @property
    def pending(self) -> str:
        """Text received after the last newline."""
        return self._pending

    def feed(self, chunk: str | bytes) -> list[dict[str, Any]]:
        """Append a chunk and return the records it completed, in order."""
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        if not chunk:
            return []

        self._pending += chunk
        *lines, self._pending = self._pending.split("\n")

        records: list[dict[str, Any]] = []
        for line in lines:
            record = parse_line(line)
            if record is not None:
                records.append(record)
        return records

    def flush(self) -> list[dict[str, Any]]:
        """Parse whatever is left once the stream has ended."""
        tail = self._pending + self._decoder.decode(b"", final=True)
        self._pending = ""
        record = parse_line(tail)
        return [record] if record is not None else []


class LineBufferDemux:
    """Per-process LineBuffers keyed by process id."""

    def __init__(self) -> None:
        self._buffers: dict[str, LineBuffer] = {}

    def register(self, process_id: str) -> LineBuffer:
        buffer = self._buffers.get(process_id)
        if buffer is None:
            buffer = LineBuffer()
            self._buffers[process_id] = buffer
        return buffer

    def __contains__(self, process_id: object) -> bool:
        return process_id in self._buffers

    def feed(self, process_id: str, chunk: str | bytes) -> list[dict[str, Any]]:
        """Feed a chunk for a process. Unknown processes yield nothing."""
        buffer = self._buffers.get(process_id)
        if buffer is None:
            logger.debug(
                "Ignoring output for unregistered process %s", process_id[:8]
            )
            return []
        return buffer.feed(chunk)

    def flush(self, process_id: str) -> list[dict[str, Any]]:
        buffer = self._buffers.get(process_id)
        if buffer is None:
            return []
        return buffer.flush()

    def discard(self, process_id: str) -> None:
        self._buffers.pop(process_id, None)
