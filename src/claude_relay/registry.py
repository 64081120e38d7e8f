# ABOUTME: Session registry mapping conversations to CLI session ids
# ABOUTME: Supports resume lookups and forking a transcript into a fresh lineage

"""Session registry mapping conversations to CLI session ids."""

import logging

from .store import EntityStore, StoredMessage

logger = logging.getLogger(__name__)


class SessionRegistry:
    """
    Tracks the last CLI session id seen for each conversation.

    The registry is a thin layer over an EntityStore and is passed explicitly
    to whatever needs it. Writes are last-writer-wins per conversation.
    """

    def __init__(self, store: EntityStore):
        self.store = store

    def record_session_id(self, conversation_id: str, session_id: str) -> None:
        """Store the session id reported by ``system/init``."""
        if self.store.last_session_id(conversation_id) == session_id:
            return
        self.store.set_session_id(conversation_id, session_id)
        logger.info("Conversation %s now on session %s", conversation_id, session_id)

    def current_session_id(self, conversation_id: str) -> str | None:
        return self.store.last_session_id(conversation_id)

    def fork_transcript(self, source_conversation_id: str) -> str:
        """
        Copy a conversation's messages into a new conversation.

        The fork starts without a session id, so its first turn opens a new
        CLI session rather than resuming the source's. It shares the project
        directory but not the source's worktree. Tool calls are not copied.

        Returns:
            The id of the new conversation
        """
        source = self.store.get_conversation(source_conversation_id)
        fork = self.store.create_conversation(
            title=f"{source.title} (fork)",
            project_path=source.project_path,
        )

        for message in source.sorted_messages():
            self.store.save_message(
                fork.id,
                StoredMessage(
                    role=message.role,
                    content=message.content,
                    created_at=message.created_at,
                    input_tokens=message.input_tokens,
                    output_tokens=message.output_tokens,
                    model_id=message.model_id,
                    stop_reason=message.stop_reason,
                ),
            )

        logger.info(
            "Forked conversation %s into %s (%d messages)",
            source_conversation_id,
            fork.id,
            len(source.messages),
        )
        return fork.id
