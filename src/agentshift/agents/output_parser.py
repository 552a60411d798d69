"""Streaming output parser: bytes from a live process in, classified events out.

Bytes are buffered and split on newlines; the trailing partial fragment is
held back until the next chunk (or flushed when the stream ends), so the
emitted event sequence does not depend on where chunk boundaries fall.
"""

from __future__ import annotations

import asyncio
import json
from datetime import datetime
from typing import Any, AsyncIterable, AsyncIterator, Callable, Union

from .limits import DEFAULT_DETECTOR, LimitDetector
from .types import AgentOutputEvent, local_now

CHUNK_SIZE = 64 * 1024

ByteStream = Union[asyncio.StreamReader, AsyncIterable[bytes]]


async def _iter_chunks(stream: ByteStream) -> AsyncIterator[bytes]:
    if isinstance(stream, asyncio.StreamReader):
        while True:
            chunk = await stream.read(CHUNK_SIZE)
            if not chunk:
                return
            yield chunk
    else:
        async for chunk in stream:
            yield chunk.encode("utf-8") if isinstance(chunk, str) else chunk


def _decode(raw: bytes) -> str:
    return raw.decode("utf-8", errors="replace").rstrip("\r")


async def iter_lines(stream: ByteStream) -> AsyncIterator[str]:
    """Yield complete decoded lines from a byte stream, then any residual fragment."""
    buffer = b""
    async for chunk in _iter_chunks(stream):
        buffer += chunk
        *complete, buffer = buffer.split(b"\n")
        for raw in complete:
            yield _decode(raw)
    if buffer:
        yield _decode(buffer)


def error_text(obj: dict[str, Any], fallback: str) -> str:
    """Pull a human-readable message out of a JSON error payload."""
    error = obj.get("error")
    if isinstance(error, str) and error:
        return error
    if isinstance(error, dict):
        message = error.get("message")
        if message:
            return str(message)
    message = obj.get("message")
    if isinstance(message, str) and message:
        return message
    return fallback


class OutputParser:
    """Line classifier for backends that emit JSON-lines mixed with plain text.

    Subclasses override ``parse_json`` (or ``parse_line``) for backend-specific
    payloads; every subclass still emits the shared ``AgentOutputEvent`` kinds.
    """

    def __init__(
        self,
        detector: LimitDetector = DEFAULT_DETECTOR,
        clock: Callable[[], datetime] = local_now,
    ):
        self.detector = detector
        self.clock = clock

    def event(self, kind, message: str, **fields) -> AgentOutputEvent:
        return AgentOutputEvent(kind=kind, message=message, timestamp=self.clock(), **fields)

    def classify_error_text(self, text: str) -> AgentOutputEvent:
        """Usage-limit, then rate-limit, otherwise a plain error."""
        match = self.detector.classify(text, now=self.clock())
        if match.kind == "usage-limit":
            return self.event("usage-limit", text, reset_at=match.reset_at)
        if match.kind == "rate-limit":
            return self.event("rate-limit", text)
        return self.event("error", text)

    def parse_text(self, line: str) -> list[AgentOutputEvent]:
        match = self.detector.classify(line, now=self.clock())
        if match.kind == "usage-limit":
            return [self.event("usage-limit", line, reset_at=match.reset_at)]
        if match.kind == "rate-limit":
            return [self.event("rate-limit", line)]
        if "error" in line.lower():
            return [self.event("error", line)]
        return [self.event("log", line)]

    def parse_json(self, obj: dict[str, Any], line: str) -> list[AgentOutputEvent]:
        if obj.get("type") == "error" or obj.get("error"):
            return [self.classify_error_text(error_text(obj, line))]
        if obj.get("type") == "result" or obj.get("done"):
            return [self.event("complete", line, conversation_id=obj.get("session_id"))]
        return [self.event("log", line)]

    def parse_line(self, line: str) -> list[AgentOutputEvent]:
        if not line.strip():
            return []
        try:
            obj = json.loads(line)
        except ValueError:
            return self.parse_text(line)
        if not isinstance(obj, dict):
            return self.parse_text(line)
        return self.parse_json(obj, line)

    async def parse(self, stream: ByteStream) -> AsyncIterator[AgentOutputEvent]:
        """Lazily classify every line of ``stream`` in order."""
        async for line in iter_lines(stream):
            for event in self.parse_line(line):
                yield event


class StderrParser(OutputParser):
    """Standard error carries diagnostics only: usage-limit, rate-limit or error."""

    def parse_line(self, line: str) -> list[AgentOutputEvent]:
        if not line.strip():
            return []
        return [self.classify_error_text(line)]
