"""
Server-sent-event decoding for chat completion streams.

Two pieces:
  1. FrameDecoder: raw byte chunks -> complete `data: ` frames. Chunks may end
     anywhere (mid-line, mid-UTF-8 character); the decoder keeps the partial
     tail and finishes it with the next chunk.
  2. extract_delta(): one frame payload -> incremental content fragment.

The wire format is OpenAI-compatible:

    data: {"choices":[{"delta":{"content":"Hel"}}]}
    data: {"choices":[{"delta":{"content":"lo"}}]}
    data: [DONE]
"""

from __future__ import annotations

import codecs
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterable, AsyncIterator

logger = logging.getLogger(__name__)

DATA_PREFIX = "data: "
DONE_SENTINEL = "[DONE]"


@dataclass(frozen=True)
class Frame:
    """One logical event line, with the `data: ` prefix stripped."""
    data: str = ""
    terminal: bool = False


TERMINAL_FRAME = Frame(terminal=True)


class FrameDecoder:
    """
    Incremental line splitter for one SSE response.
    Create a fresh decoder per stream; it holds the partial-line buffer.
    """

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""

    def feed(self, chunk: bytes) -> list[Frame]:
        """Consume one chunk, return every frame it completed."""
        if not chunk:
            return []
        text = self._pending + self._decoder.decode(chunk)
        lines = text.split("\n")
        self._pending = lines.pop()
        return [f for f in (self._parse_line(line) for line in lines) if f is not None]

    def flush(self) -> list[Frame]:
        """End of stream: emit the retained fragment if it is a complete frame."""
        tail = self._pending + self._decoder.decode(b"", final=True)
        self._pending = ""
        frame = self._parse_line(tail)
        return [frame] if frame is not None else []

    @staticmethod
    def _parse_line(line: str) -> Frame | None:
        line = line.rstrip("\r")
        if not line.startswith(DATA_PREFIX):
            return None
        data = line[len(DATA_PREFIX):]
        if data.strip() == DONE_SENTINEL:
            return TERMINAL_FRAME
        return Frame(data=data)

    async def iter_frames(self, chunks: AsyncIterable[bytes]) -> AsyncIterator[Frame]:
        """Pump an async byte iterator through the decoder."""
        async for chunk in chunks:
            for frame in self.feed(chunk):
                yield frame
        for frame in self.flush():
            yield frame


# ---------------------------------------------------------------------------
# Delta extraction
# ---------------------------------------------------------------------------

class DeltaKind(str, Enum):
    TEXT = "text"
    EMPTY = "empty"
    INVALID = "invalid"


@dataclass(frozen=True)
class Delta:
    """Result of inspecting one frame payload."""
    kind: DeltaKind
    text: str = ""
    error: str = ""

    @classmethod
    def of_text(cls, text: str) -> "Delta":
        return cls(DeltaKind.TEXT, text=text)

    @classmethod
    def empty(cls) -> "Delta":
        return cls(DeltaKind.EMPTY)

    @classmethod
    def invalid(cls, error: str) -> "Delta":
        return cls(DeltaKind.INVALID, error=error)


def extract_delta(payload: str) -> Delta:
    """
    Pull choices[0].delta.content out of a frame payload.
    Never raises: malformed JSON comes back as an INVALID delta, any other
    shape (role-only frames, usage frames, heartbeats) as EMPTY.
    """
    try:
        chunk = json.loads(payload)
    except (json.JSONDecodeError, TypeError) as e:
        logger.debug("Skipping malformed frame: %s", e)
        return Delta.invalid(str(e))

    if not isinstance(chunk, dict):
        return Delta.empty()
    choices = chunk.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return Delta.empty()
    delta = choices[0].get("delta")
    if not isinstance(delta, dict):
        return Delta.empty()
    content = delta.get("content")
    if isinstance(content, str) and content:
        return Delta.of_text(content)
    return Delta.empty()
