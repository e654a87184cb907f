"""
Data models for conversations.
These define the shape of data flowing between the store and the front end.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from uuid import uuid4

PREVIEW_LENGTH = 30
NEW_CHAT_PREVIEW = "New conversation"

_clock_lock = threading.Lock()
_last_timestamp = 0


def next_timestamp() -> int:
    """Millisecond wall clock, bumped so that successive values strictly increase."""
    global _last_timestamp
    with _clock_lock:
        now = int(time.time() * 1000)
        _last_timestamp = max(now, _last_timestamp + 1)
        return _last_timestamp


def make_preview(text: str) -> str:
    """First 30 chars of the text, with '...' appended when cut."""
    if len(text) > PREVIEW_LENGTH:
        return text[:PREVIEW_LENGTH] + "..."
    return text


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


@dataclass
class Message:
    """A single message in a conversation. Content only grows by append()."""
    role: Role
    id: str = field(default_factory=lambda: uuid4().hex)
    timestamp: int = field(default_factory=next_timestamp)
    _parts: list[str] = field(default_factory=list, repr=False)

    @classmethod
    def create(cls, role: Role | str, content: str = "") -> "Message":
        msg = cls(role=Role(role))
        if content:
            msg.append(content)
        return msg

    @property
    def content(self) -> str:
        if len(self._parts) > 1:
            self._parts[:] = ["".join(self._parts)]
        return self._parts[0] if self._parts else ""

    def append(self, fragment: str):
        if fragment:
            self._parts.append(fragment)

    def replace(self, text: str):
        self._parts[:] = [text] if text else []

    def to_openai_format(self) -> dict:
        """Export in OpenAI messages array format."""
        return {"role": self.role.value, "content": self.content}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "role": self.role.value,
            "content": self.content,
            "timestamp": self.timestamp,
        }


@dataclass
class Conversation:
    """An ordered list of user/assistant messages with a fixed preview."""
    preview: str
    id: str = field(default_factory=lambda: uuid4().hex)
    messages: list[Message] = field(default_factory=list)

    def find(self, message_id: str) -> Message | None:
        for msg in self.messages:
            if msg.id == message_id:
                return msg
        return None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "preview": self.preview,
            "messages": [m.to_dict() for m in self.messages],
        }
