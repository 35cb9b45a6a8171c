"""Shared runner pipeline helpers.

Turns a unit's raw stdout into discrete frames:
- newline-delimited JSON, tolerating arbitrary chunk boundaries
- a pass-through path for backends that already deliver structured messages

Both paths yield the same `("message", dict)` / `("raw", str)` frames so the
session runtime handles them identically.
"""

from __future__ import annotations

import asyncio
import codecs
import json
import logging
from dataclasses import dataclass, field
from typing import AsyncIterable, AsyncIterator

from claude_relay.errors import DecodeFailure
from claude_relay.runners.ports import RunnerEvent

log = logging.getLogger("relay.pipeline")

Frame = RunnerEvent

_READ_CHUNK = 64 * 1024
_MAX_KEPT_RAW_LINES = 50


def parse_line(line: str) -> dict:
    """Parse one stripped line into a message object or raise DecodeFailure."""
    try:
        payload = json.loads(line)
    except json.JSONDecodeError as e:
        raise DecodeFailure(f"Unparseable output line: {e.msg}", line_preview=line[:200]) from e
    if not isinstance(payload, dict):
        raise DecodeFailure("Output line is JSON but not an object", line_preview=line[:200])
    return payload


def decode_line(line: str) -> Frame | None:
    """Decode one complete line. Blank lines yield None."""
    line = line.strip()
    if not line:
        return None
    try:
        return ("message", parse_line(line))
    except DecodeFailure as e:
        log.warning(str(e))
        return ("raw", line)


class JsonLineDecoder:
    """Incremental newline-delimited JSON decoder.

    The incomplete trailing line of each chunk is held back and prefixed onto
    the next one. Bytes are decoded incrementally so multibyte characters split
    across chunks survive.
    """

    def __init__(self, encoding: str = "utf-8"):
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes | str) -> list[Frame]:
        if isinstance(chunk, bytes):
            text = self._decoder.decode(chunk)
        else:
            text = chunk
        if not text:
            return []

        self._buffer += text
        *complete, self._buffer = self._buffer.split("\n")

        frames: list[Frame] = []
        for line in complete:
            frame = decode_line(line)
            if frame is not None:
                frames.append(frame)
        return frames

    def flush(self) -> list[Frame]:
        """Decode whatever is left at end of stream."""
        tail = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        frame = decode_line(tail)
        return [frame] if frame is not None else []


@dataclass
class JSONLineStats:
    emitted_any: bool = False
    non_json_lines: list[str] = field(default_factory=list)

    def record(self, frame: Frame) -> None:
        kind, payload = frame
        if kind == "message":
            self.emitted_any = True
        elif kind == "raw" and len(self.non_json_lines) < _MAX_KEPT_RAW_LINES:
            self.non_json_lines.append(str(payload))


async def iter_json_line_pipeline(
    *,
    byte_stream: asyncio.StreamReader,
    stats: JSONLineStats | None = None,
    chunk_size: int = _READ_CHUNK,
) -> AsyncIterator[Frame]:
    """Read a byte stream to EOF, yielding frames in arrival order."""
    decoder = JsonLineDecoder()
    while True:
        chunk = await byte_stream.read(chunk_size)
        if not chunk:
            break
        for frame in decoder.feed(chunk):
            if stats is not None:
                stats.record(frame)
            yield frame

    for frame in decoder.flush():
        if stats is not None:
            stats.record(frame)
        yield frame


async def iter_structured(
    messages: AsyncIterable[dict],
    stats: JSONLineStats | None = None,
) -> AsyncIterator[Frame]:
    """Zero-framing path: pre-structured messages pass through unchanged."""
    async for message in messages:
        frame: Frame = ("message", message)
        if stats is not None:
            stats.record(frame)
        yield frame
