"""Incremental parser for the ``data: <json>`` event stream of the chat endpoint."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from contextlib import aclosing

from pydantic import ValidationError

from app.core.errors import StreamParseError
from app.schemas.chat import DoneChunk, StreamChunk, stream_chunk_adapter

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"


def parse_frame_line(line: str) -> StreamChunk | None:
    stripped = line.strip()
    if not stripped or not stripped.startswith(DATA_PREFIX):
        return None

    payload = stripped[len(DATA_PREFIX) :].strip()
    if payload == DONE_SENTINEL:
        return DoneChunk()

    try:
        raw = json.loads(payload)
    except json.JSONDecodeError as exc:
        raise StreamParseError("Failed to parse stream response") from exc

    try:
        return stream_chunk_adapter.validate_python(raw)
    except ValidationError as exc:
        raise StreamParseError(f"Unexpected stream frame: {payload[:120]}") from exc


class StreamFrameParser:
    """Turns arbitrarily split text into chunks; a line may span several feeds."""

    def __init__(self) -> None:
        self._buffer = ""

    def feed(self, text: str) -> list[StreamChunk]:
        self._buffer += text
        *lines, self._buffer = self._buffer.split("\n")
        return [chunk for chunk in map(parse_frame_line, lines) if chunk is not None]

    def close(self) -> list[StreamChunk]:
        remainder, self._buffer = self._buffer, ""
        chunk = parse_frame_line(remainder)
        return [chunk] if chunk is not None else []


async def iter_stream_chunks(raw: AsyncIterator[str]) -> AsyncIterator[StreamChunk]:
    parser = StreamFrameParser()
    async with aclosing(raw) as pieces:
        async for piece in pieces:
            for chunk in parser.feed(piece):
                yield chunk
    for chunk in parser.close():
        yield chunk
