"""
Conversation Store — every conversation thread the client knows about.

Most-recent-first list of Conversation objects plus the active selection.
All operations are synchronous and meant to be called from one event loop;
observers read snapshots (to_dict / export) or subscribe to StoreEvents, and
never mutate messages themselves.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

from relaychat.errors import ConversationNotFound
from relaychat.models import NEW_CHAT_PREVIEW, Conversation, Message, Role, make_preview

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoreEvent:
    """What changed. fragment is set only for "append" events."""
    kind: str
    conversation_id: str | None = None
    message_id: str | None = None
    fragment: str = ""


StoreListener = Callable[[StoreEvent], None]


class ConversationStore:
    """In-memory, ordered collection of conversations."""

    def __init__(self):
        self._conversations: list[Conversation] = []
        self._active_id: str | None = None
        self._listeners: list[StoreListener] = []

    def __len__(self) -> int:
        return len(self._conversations)

    def __contains__(self, conversation_id: str) -> bool:
        return self.get(conversation_id) is not None

    @property
    def conversations(self) -> list[Conversation]:
        """Snapshot of the ordering (most recent first)."""
        return list(self._conversations)

    @property
    def active_id(self) -> str | None:
        return self._active_id

    @property
    def active(self) -> Conversation | None:
        return self.get(self._active_id) if self._active_id else None

    def get(self, conversation_id: str | None) -> Conversation | None:
        for conv in self._conversations:
            if conv.id == conversation_id:
                return conv
        return None

    def _require(self, conversation_id: str) -> Conversation:
        conv = self.get(conversation_id)
        if conv is None:
            raise ConversationNotFound(conversation_id)
        return conv

    def add_listener(self, listener: StoreListener):
        self._listeners.append(listener)

    def remove_listener(self, listener: StoreListener):
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self, kind: str, conversation_id: str | None = None,
                message_id: str | None = None, fragment: str = ""):
        if not self._listeners:
            return
        event = StoreEvent(kind, conversation_id, message_id, fragment)
        for listener in list(self._listeners):
            listener(event)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def create_conversation(self, preview_seed: str) -> str:
        """Insert a new conversation at the head and return its id."""
        conv = Conversation(preview=preview_seed)
        self._conversations.insert(0, conv)
        logger.debug("Created conversation %s (%r)", conv.id, conv.preview)
        self._notify("create", conv.id)
        return conv.id

    def select(self, conversation_id: str | None):
        """Make a conversation active (None to deselect)."""
        if conversation_id is not None:
            self._require(conversation_id)
        self._active_id = conversation_id
        self._notify("select", conversation_id)

    def set_preview(self, conversation_id: str, text: str) -> bool:
        """
        Derive the preview of a placeholder conversation from its first
        message. Only the NEW_CHAT_PREVIEW placeholder is ever replaced.
        """
        conv = self._require(conversation_id)
        if conv.preview != NEW_CHAT_PREVIEW or conv.messages:
            return False
        conv.preview = make_preview(text)
        self._notify("preview", conversation_id)
        return True

    def append_messages(self, conversation_id: str, messages: list[Message]):
        self._require(conversation_id).messages.extend(messages)
        for msg in messages:
            self._notify("message", conversation_id, msg.id)

    def update_message_content(self, conversation_id: str, message_id: str, fragment: str) -> bool:
        """
        Append a fragment to one message. Returns False when the target is
        gone (its conversation was deleted mid-stream); that is not an error.
        """
        msg = self._find_message(conversation_id, message_id)
        if msg is None:
            logger.debug("Dropping fragment for missing message %s/%s", conversation_id, message_id)
            return False
        msg.append(fragment)
        self._notify("append", conversation_id, message_id, fragment)
        return True

    def replace_message_content(self, conversation_id: str, message_id: str, text: str) -> bool:
        msg = self._find_message(conversation_id, message_id)
        if msg is None:
            return False
        msg.replace(text)
        self._notify("replace", conversation_id, message_id)
        return True

    def delete_conversation(self, conversation_id: str) -> bool:
        before = len(self._conversations)
        self._conversations = [c for c in self._conversations if c.id != conversation_id]
        if self._active_id == conversation_id:
            self._active_id = None
        deleted = len(self._conversations) < before
        if deleted:
            self._notify("delete", conversation_id)
        return deleted

    def clear_all(self):
        self._conversations = []
        self._active_id = None
        self._notify("clear")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _find_message(self, conversation_id: str, message_id: str) -> Message | None:
        conv = self.get(conversation_id)
        return conv.find(message_id) if conv else None

    def user_messages(self, conversation_id: str) -> list[Message]:
        """Prior user-role messages of a conversation, in order."""
        conv = self.get(conversation_id)
        if conv is None:
            return []
        return [m for m in conv.messages if m.role is Role.USER]

    def snapshot(self, conversation_id: str) -> dict | None:
        conv = self.get(conversation_id)
        return conv.to_dict() if conv else None

    def export(self) -> list[dict]:
        """All conversations as plain dicts, most recent first."""
        return [c.to_dict() for c in self._conversations]
