# ABOUTME: Session management for Claude Relay
# ABOUTME: Manages per-conversation turn state with idle cleanup, cancel and fork

"""Session management for Claude Relay."""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncIterator

from .errors import ClaudeRelayError, ConversationNotFound, TurnInProgress
from .protocol import (
    DoneMessage,
    ErrorMessage,
    OutboundMessage,
    QueryMessage,
    SessionMessage,
    TextMessage,
    ToolProgressMessage,
    ToolUseMessage,
    UsageMessage,
)
from .reducer import (
    SessionStarted,
    TextAppended,
    ToolCallCompleted,
    ToolCallStarted,
    ToolProgressed,
    TurnResult,
    TurnUpdate,
    UsageUpdated,
)
from .registry import SessionRegistry
from .store import EntityStore, MemoryStore
from .turn import Turn

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "claude-sonnet-4-20250514"


@dataclass
class ConversationSession:
    """Runtime state for a specific conversation."""

    conversation_id: str
    workspace: Path
    last_activity: float = field(default_factory=time.time)
    active_turn: Turn | None = None

    def touch(self) -> None:
        """Update last activity timestamp."""
        self.last_activity = time.time()

    async def close(self) -> None:
        """Cancel any running turn."""
        if self.active_turn is not None:
            self.active_turn.cancel()
        logger.info("Closed session for conversation %s", self.conversation_id)


def _result_error_text(update: TurnResult) -> str:
    result = update.result
    if result.errors:
        return "; ".join(result.errors)
    return result.result or f"Claude reported {result.subtype}"


class SessionManager:
    """Manages Claude turns for multiple conversations."""

    def __init__(
        self,
        store: EntityStore | None = None,
        idle_timeout_seconds: int = 900,
        executable: str | None = None,
        default_model: str | None = DEFAULT_MODEL,
    ):
        self.store = store if store is not None else MemoryStore()
        self.registry = SessionRegistry(self.store)
        self.sessions: dict[str, ConversationSession] = {}
        self.idle_timeout = idle_timeout_seconds
        self.executable = executable
        self.default_model = default_model
        self._cleanup_task: asyncio.Task | None = None

    async def start(self) -> None:
        """Start the session manager and cleanup task."""
        self._cleanup_task = asyncio.create_task(self._cleanup_loop())
        logger.info("Session manager started with %ds idle timeout", self.idle_timeout)

    async def stop(self) -> None:
        """Stop the session manager and close all sessions."""
        if self._cleanup_task:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass

        for session in list(self.sessions.values()):
            await session.close()
        self.sessions.clear()
        logger.info("Session manager stopped")

    async def _cleanup_loop(self) -> None:
        """Periodically clean up idle sessions."""
        while True:
            await asyncio.sleep(60)  # Check every minute
            await self._cleanup_idle_sessions()

    async def _cleanup_idle_sessions(self) -> None:
        """Drop runtime state for conversations that have been idle too long."""
        now = time.time()
        to_close = [
            conversation_id
            for conversation_id, session in self.sessions.items()
            if session.active_turn is None and now - session.last_activity > self.idle_timeout
        ]

        for conversation_id in to_close:
            session = self.sessions.pop(conversation_id)
            await session.close()
            logger.info("Closed idle session for conversation %s", conversation_id)

    def get_or_create_session(
        self,
        conversation_id: str,
        workspace: str,
        title: str | None = None,
    ) -> ConversationSession:
        """Get existing session or create a new one, creating the conversation if needed."""
        # Return existing session if available
        if conversation_id in self.sessions:
            session = self.sessions[conversation_id]
            session.touch()
            logger.debug("Reusing existing session for conversation %s", conversation_id)
            return session

        try:
            conversation = self.store.get_conversation(conversation_id)
        except ConversationNotFound:
            conversation = self.store.create_conversation(
                title=title or "New chat",
                project_path=workspace,
                conversation_id=conversation_id,
            )

        session = ConversationSession(
            conversation_id=conversation_id,
            workspace=Path(conversation.working_directory),
        )

        self.sessions[conversation_id] = session
        logger.info("Created new session for conversation %s", conversation_id)

        return session

    async def close_session(self, conversation_id: str) -> None:
        """Explicitly close a session."""
        if conversation_id in self.sessions:
            session = self.sessions.pop(conversation_id)
            await session.close()

    def cancel(self, conversation_id: str) -> bool:
        """Cancel the running turn, if any. Returns whether one was running."""
        session = self.sessions.get(conversation_id)
        if session is None or session.active_turn is None:
            return False
        session.active_turn.cancel()
        return True

    def fork(self, conversation_id: str) -> str:
        """Fork a conversation's transcript into a new conversation."""
        return self.registry.fork_transcript(conversation_id)

    async def process_query(self, query: QueryMessage) -> AsyncIterator[OutboundMessage]:
        """
        Process a query and yield response messages.

        Args:
            query: The query to run; every response echoes its query_id

        Yields:
            OutboundMessage instances, ending with DoneMessage or ErrorMessage
        """
        query_id = query.query_id
        conversation_id = query.conversation_id

        try:
            session = self.get_or_create_session(
                conversation_id,
                query.workspace,
                title=query.title or _title_from_prompt(query.prompt),
            )
            if session.active_turn is not None:
                raise TurnInProgress(conversation_id)

            turn = Turn.for_conversation(
                self.store,
                self.registry,
                conversation_id,
                query.prompt,
                model=query.model or self.default_model,
                resume_session_id=query.session_id,
                system_prompt=query.system_prompt,
                max_turns=query.max_turns,
                max_budget_usd=query.max_budget_usd,
                allowed_tools=query.allowed_tools,
                permission_mode=query.permission_mode,
                executable=self.executable,
            )
        except ClaudeRelayError as e:
            yield ErrorMessage(query_id=query_id, conversation_id=conversation_id, message=str(e))
            return

        session.active_turn = turn
        session.touch()
        try:
            async for update in turn.run():
                message = self._to_outbound(query, update)
                if message is not None:
                    yield message

            finalized = turn.finalized
            yield DoneMessage(
                query_id=query_id,
                conversation_id=conversation_id,
                session_id=turn.reducer.session_id or self.registry.current_session_id(conversation_id) or "",
                message_id=finalized.id if finalized else None,
                stop_reason=turn.reducer.stop_reason,
                input_tokens=turn.reducer.input_tokens,
                output_tokens=turn.reducer.output_tokens,
                cancelled=turn.cancelled,
            )

        except ClaudeRelayError as e:
            logger.warning("Turn failed for conversation %s: %s", conversation_id, e)
            yield ErrorMessage(query_id=query_id, conversation_id=conversation_id, message=str(e))
        except Exception as e:
            logger.exception("Error processing query for conversation %s", conversation_id)
            yield ErrorMessage(query_id=query_id, conversation_id=conversation_id, message=str(e))
        finally:
            session.active_turn = None
            session.touch()

    def _to_outbound(self, query: QueryMessage, update: TurnUpdate) -> OutboundMessage | None:
        ids = {"query_id": query.query_id, "conversation_id": query.conversation_id}

        if isinstance(update, TextAppended):
            return TextMessage(content=update.text, **ids)
        elif isinstance(update, ToolCallStarted):
            return ToolUseMessage(tool_use_id=update.tool_use_id, tool=update.name, **ids)
        elif isinstance(update, ToolCallCompleted):
            return ToolUseMessage(
                tool_use_id=update.tool_use_id,
                tool=update.name,
                input=_parse_tool_input(update.input_json),
                complete=True,
                **ids,
            )
        elif isinstance(update, ToolProgressed):
            return ToolProgressMessage(
                tool_use_id=update.tool_use_id,
                elapsed_seconds=update.elapsed_seconds,
                **ids,
            )
        elif isinstance(update, UsageUpdated):
            return UsageMessage(input_tokens=update.input_tokens, output_tokens=update.output_tokens, **ids)
        elif isinstance(update, SessionStarted):
            return SessionMessage(session_id=update.session_id, **ids)
        elif isinstance(update, TurnResult) and update.result.is_error:
            return ErrorMessage(message=_result_error_text(update), **ids)
        return None


def _title_from_prompt(prompt: str) -> str | None:
    lines = prompt.strip().splitlines()
    return lines[0][:50] if lines else None


def _parse_tool_input(input_json: str) -> dict | None:
    if not input_json:
        return {}
    try:
        value = json.loads(input_json)
    except json.JSONDecodeError:
        logger.warning("Tool input is not valid JSON: %s", input_json[:200])
        return None
    return value if isinstance(value, dict) else {"value": value}
