# ABOUTME: Entity store for conversations, messages and tool calls
# ABOUTME: Defines the store interface the relay writes finished turns to, plus an in-memory implementation

"""Entity store for conversations, messages and tool calls."""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Protocol

from .errors import ConversationNotFound

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class StoredToolCall:
    """A tool invocation attached to an assistant message."""

    tool_use_id: str
    tool_name: str
    input_json: str
    status: str = "pending"
    output_json: str | None = None


@dataclass
class StoredMessage:
    """A finalized chat message."""

    role: str
    content: str
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=_now)
    input_tokens: int = 0
    output_tokens: int = 0
    model_id: str | None = None
    stop_reason: str | None = None
    tool_calls: list[StoredToolCall] = field(default_factory=list)


@dataclass
class Conversation:
    """A chat and its transcript."""

    title: str
    project_path: str
    id: str = field(default_factory=_new_id)
    worktree_path: str | None = None
    session_id: str | None = None
    sort_order: int = 0
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)
    messages: list[StoredMessage] = field(default_factory=list)

    @property
    def working_directory(self) -> str:
        return self.worktree_path or self.project_path

    def sorted_messages(self) -> list[StoredMessage]:
        return sorted(self.messages, key=lambda m: m.created_at)


class EntityStore(Protocol):
    """What the relay needs from persistence."""

    def create_conversation(
        self,
        title: str,
        project_path: str,
        worktree_path: str | None = None,
        conversation_id: str | None = None,
    ) -> Conversation: ...

    def get_conversation(self, conversation_id: str) -> Conversation: ...

    def list_conversations(self) -> list[Conversation]: ...

    def save_message(self, conversation_id: str, message: StoredMessage) -> StoredMessage: ...

    def save_finalized_message(self, conversation_id: str, message: StoredMessage) -> StoredMessage: ...

    def last_session_id(self, conversation_id: str) -> str | None: ...

    def set_session_id(self, conversation_id: str, session_id: str | None) -> None: ...


class MemoryStore:
    """Process-local EntityStore."""

    def __init__(self) -> None:
        self.conversations: dict[str, Conversation] = {}

    def create_conversation(
        self,
        title: str,
        project_path: str,
        worktree_path: str | None = None,
        conversation_id: str | None = None,
    ) -> Conversation:
        conversation = Conversation(
            title=title,
            project_path=project_path,
            worktree_path=worktree_path,
            sort_order=len(self.conversations),
        )
        if conversation_id is not None:
            conversation.id = conversation_id
        if conversation.id in self.conversations:
            raise ValueError(f"Conversation already exists: {conversation.id}")

        self.conversations[conversation.id] = conversation
        logger.debug("Created conversation %s (%s)", conversation.id, title)
        return conversation

    def get_conversation(self, conversation_id: str) -> Conversation:
        try:
            return self.conversations[conversation_id]
        except KeyError:
            raise ConversationNotFound(conversation_id) from None

    def list_conversations(self) -> list[Conversation]:
        return sorted(self.conversations.values(), key=lambda c: c.sort_order)

    def save_message(self, conversation_id: str, message: StoredMessage) -> StoredMessage:
        conversation = self.get_conversation(conversation_id)
        conversation.messages.append(message)
        conversation.updated_at = _now()
        return message

    def save_finalized_message(self, conversation_id: str, message: StoredMessage) -> StoredMessage:
        self.save_message(conversation_id, message)
        logger.info(
            "Saved %s message with %d tool calls to conversation %s",
            message.role,
            len(message.tool_calls),
            conversation_id,
        )
        return message

    def last_session_id(self, conversation_id: str) -> str | None:
        return self.get_conversation(conversation_id).session_id

    def set_session_id(self, conversation_id: str, session_id: str | None) -> None:
        conversation = self.get_conversation(conversation_id)
        conversation.session_id = session_id
        conversation.updated_at = _now()
