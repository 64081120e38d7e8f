# ABOUTME: WebSocket protocol message types for Claude Relay
# ABOUTME: Pydantic models for front-end <-> Claude Relay communication

"""WebSocket protocol message types for Claude Relay."""

from typing import Any, Literal

from pydantic import BaseModel


# --- Inbound messages (front-end -> Claude Relay) ---


class QueryMessage(BaseModel):
    """Request to run one turn in a conversation."""

    type: Literal["query"] = "query"
    query_id: str  # Unique ID for this query (prevents race conditions)
    conversation_id: str
    workspace: str
    prompt: str
    title: str | None = None  # Used only when the conversation is new
    session_id: str | None = None  # Overrides the registry's resume id
    model: str | None = None
    system_prompt: str | None = None
    permission_mode: str | None = None
    max_turns: int | None = None
    max_budget_usd: float | None = None
    allowed_tools: list[str] | None = None


class CancelMessage(BaseModel):
    """Request to cancel the running turn of a conversation."""

    type: Literal["cancel"] = "cancel"
    conversation_id: str


class ForkMessage(BaseModel):
    """Request to copy a conversation into a new, independent one."""

    type: Literal["fork"] = "fork"
    conversation_id: str


class CloseSessionMessage(BaseModel):
    """Request to explicitly close a session."""

    type: Literal["close_session"] = "close_session"
    conversation_id: str


InboundMessage = QueryMessage | CancelMessage | ForkMessage | CloseSessionMessage


# --- Outbound messages (Claude Relay -> front-end) ---


class SessionMessage(BaseModel):
    """The CLI reported the session id for this turn."""

    type: Literal["session"] = "session"
    query_id: str
    conversation_id: str
    session_id: str


class TextMessage(BaseModel):
    """Streaming text chunk from Claude."""

    type: Literal["text"] = "text"
    query_id: str  # Echo back the query_id
    conversation_id: str
    content: str


class ToolUseMessage(BaseModel):
    """A tool call started, or its input finished streaming."""

    type: Literal["tool_use"] = "tool_use"
    query_id: str
    conversation_id: str
    tool_use_id: str
    tool: str
    input: dict[str, Any] | None = None  # Present once complete
    complete: bool = False


class ToolProgressMessage(BaseModel):
    """A long-running tool call is still going."""

    type: Literal["tool_progress"] = "tool_progress"
    query_id: str
    conversation_id: str
    tool_use_id: str
    elapsed_seconds: float


class UsageMessage(BaseModel):
    """Running token counts for the turn."""

    type: Literal["usage"] = "usage"
    query_id: str
    conversation_id: str
    input_tokens: int
    output_tokens: int


class DoneMessage(BaseModel):
    """Turn complete (or cancelled) and persisted."""

    type: Literal["done"] = "done"
    query_id: str
    conversation_id: str
    session_id: str
    message_id: str | None = None  # Id of the saved assistant message, if any
    stop_reason: str | None = None
    input_tokens: int = 0
    output_tokens: int = 0
    cancelled: bool = False


class ForkedMessage(BaseModel):
    """A conversation was forked."""

    type: Literal["forked"] = "forked"
    source_conversation_id: str
    conversation_id: str


class ErrorMessage(BaseModel):
    """Error occurred during processing."""

    type: Literal["error"] = "error"
    query_id: str | None = None
    conversation_id: str | None = None
    message: str


OutboundMessage = (
    SessionMessage
    | TextMessage
    | ToolUseMessage
    | ToolProgressMessage
    | UsageMessage
    | DoneMessage
    | ForkedMessage
    | ErrorMessage
)


def parse_inbound(data: dict[str, Any]) -> InboundMessage:
    """Parse a JSON dict into an inbound message."""
    msg_type = data.get("type")
    if msg_type == "query":
        return QueryMessage.model_validate(data)
    elif msg_type == "cancel":
        return CancelMessage.model_validate(data)
    elif msg_type == "fork":
        return ForkMessage.model_validate(data)
    elif msg_type == "close_session":
        return CloseSessionMessage.model_validate(data)
    else:
        raise ValueError(f"Unknown message type: {msg_type}")
