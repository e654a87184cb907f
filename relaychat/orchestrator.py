"""
Chat Orchestrator — one user turn from submit to terminal state.

    IDLE -> SUBMITTING -> STREAMING -> COMPLETED | CANCELLED | FAILED -> IDLE

submit() creates the user/assistant message pair, builds the outbound
context, runs the StreamController and routes every delta into the
assistant message of *this* turn by id. Only the session the orchestrator is
currently tracking may write; anything else is dropped.

Outbound context contains prior USER messages only. Earlier assistant
replies are not sent back to the model. This is deliberate for now and is
flagged in DESIGN.md rather than silently changed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum

from relaychat.catalog import ModelCatalog
from relaychat.config import Config, ConfigStore, MemoryConfigStore
from relaychat.errors import ChatError, ConfigError, SubmissionRejected
from relaychat.models import NEW_CHAT_PREVIEW, Message, Role, make_preview
from relaychat.store import ConversationStore
from relaychat.stream import (
    DEFAULT_MAX_TOKENS,
    CancellationToken,
    StreamController,
    StreamResult,
    StreamStatus,
)

logger = logging.getLogger(__name__)


class Phase(str, Enum):
    IDLE = "idle"
    SUBMITTING = "submitting"
    STREAMING = "streaming"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (Phase.COMPLETED, Phase.CANCELLED, Phase.FAILED)


_TERMINAL_PHASES = {
    StreamStatus.COMPLETED: Phase.COMPLETED,
    StreamStatus.CANCELLED: Phase.CANCELLED,
    StreamStatus.FAILED: Phase.FAILED,
}


@dataclass
class StreamSession:
    """Bookkeeping for the one in-flight request."""
    conversation_id: str
    message_id: str
    token: CancellationToken = field(default_factory=CancellationToken)
    buffer: list[str] = field(default_factory=list)


@dataclass
class Turn:
    """A submission and where it got to."""
    text: str
    conversation_id: str
    user_message_id: str
    assistant_message_id: str
    phase: Phase = Phase.SUBMITTING
    error: ChatError | None = None
    result: StreamResult | None = None


class ChatOrchestrator:
    """
    Owns the turn state machine. One active turn per instance: a second
    submit() while not IDLE raises SubmissionRejected.
    """

    def __init__(
        self,
        store: ConversationStore | None = None,
        config_store: ConfigStore | None = None,
        controller: StreamController | None = None,
        catalog: ModelCatalog | None = None,
    ):
        self.store = store or ConversationStore()
        self.config_store = config_store or MemoryConfigStore()
        self.controller = controller or StreamController()
        self.catalog = catalog
        self._phase = Phase.IDLE
        self._session: StreamSession | None = None
        self._turn: Turn | None = None
        self.last_turn: Turn | None = None

    @property
    def phase(self) -> Phase:
        return self._phase

    @property
    def current_turn(self) -> Turn | None:
        return self._turn

    @property
    def is_busy(self) -> bool:
        return self._phase is not Phase.IDLE

    def _set_phase(self, phase: Phase):
        logger.debug("Turn phase %s -> %s", self._phase.value, phase.value)
        self._phase = phase
        if self._turn is not None:
            self._turn.phase = phase

    def _load_config(self) -> Config:
        config = self.config_store.load()
        if config is None:
            raise SubmissionRejected("No connection config; run setup first")
        try:
            return config.validate()
        except ConfigError as e:
            raise SubmissionRejected(str(e)) from e

    def _resolve_max_tokens(self, config: Config) -> int:
        if config.max_tokens:
            return config.max_tokens
        if self.catalog is not None:
            return self.catalog.default_max_tokens(config.model)
        return DEFAULT_MAX_TOKENS

    # ------------------------------------------------------------------
    # Conversation management
    # ------------------------------------------------------------------

    def new_chat(self) -> str:
        conversation_id = self.store.create_conversation(NEW_CHAT_PREVIEW)
        self.store.select(conversation_id)
        return conversation_id

    def select(self, conversation_id: str | None):
        self.store.select(conversation_id)

    def delete(self, conversation_id: str) -> bool:
        return self.store.delete_conversation(conversation_id)

    def clear_history(self):
        self.store.clear_all()

    # ------------------------------------------------------------------
    # Turn lifecycle
    # ------------------------------------------------------------------

    async def submit(self, text: str) -> Turn:
        """Run one turn to its terminal phase and return it. Back to IDLE afterwards."""
        if not text or not text.strip():
            raise SubmissionRejected("Message is empty")
        if self.is_busy:
            raise SubmissionRejected(f"A reply is already in progress ({self._phase.value})")
        config = self._load_config()

        conversation_id = self.store.active_id
        if conversation_id is None:
            conversation_id = self.store.create_conversation(make_preview(text))
            self.store.select(conversation_id)
        else:
            self.store.set_preview(conversation_id, text)

        # Context is captured before this turn's messages are appended.
        context = [m.to_openai_format() for m in self.store.user_messages(conversation_id)]

        user_msg = Message.create(Role.USER, text)
        assistant_msg = Message.create(Role.ASSISTANT)
        self.store.append_messages(conversation_id, [user_msg, assistant_msg])

        session = StreamSession(conversation_id=conversation_id, message_id=assistant_msg.id)
        self._session = session
        self._turn = Turn(
            text=text,
            conversation_id=conversation_id,
            user_message_id=user_msg.id,
            assistant_message_id=assistant_msg.id,
        )
        self._set_phase(Phase.SUBMITTING)

        turn = self._turn
        try:
            self._set_phase(Phase.STREAMING)
            await self.controller.stream(
                config,
                context,
                text,
                session.token,
                on_delta=lambda fragment: self._on_delta(session, fragment),
                on_finish=lambda result: self._on_finish(session, result),
                max_tokens=self._resolve_max_tokens(config),
            )
        finally:
            self.reset()
        return turn

    def _on_delta(self, session: StreamSession, fragment: str):
        if session is not self._session or session.token.is_cancelled:
            return
        session.buffer.append(fragment)
        self.store.update_message_content(session.conversation_id, session.message_id, fragment)

    def _on_finish(self, session: StreamSession, result: StreamResult):
        if session is not self._session:
            return
        turn = self._turn
        turn.result = result
        if result.status is StreamStatus.FAILED:
            turn.error = result.error
            self.store.replace_message_content(
                session.conversation_id, session.message_id, result.error.user_message,
            )
        self._set_phase(_TERMINAL_PHASES[result.status])

    def cancel(self) -> bool:
        """Abort the in-flight reply. Partial content stays as it is."""
        if self._session is None or self._phase is not Phase.STREAMING:
            return False
        logger.info("Cancelling reply for conversation %s", self._session.conversation_id)
        self._session.token.cancel()
        return True

    def reset(self):
        """Back to IDLE from anywhere; drops the active stream handle."""
        if self._session is not None:
            self._session.token.cancel()
        if self._turn is not None:
            if not self._turn.phase.is_terminal:
                self._turn.phase = Phase.CANCELLED
            self.last_turn = self._turn
        self._session = None
        self._turn = None
        self._phase = Phase.IDLE
