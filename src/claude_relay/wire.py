# ABOUTME: Wire message types emitted by the claude CLI in stream-json mode
# ABOUTME: Pydantic models for every event kind plus the line decoder

"""Wire message types for the claude CLI stream-json output."""

import json
import logging
from enum import Enum
from typing import Annotated, Any, Callable, Iterable, Iterator, Literal

from pydantic import (
    BaseModel,
    ConfigDict,
    Discriminator,
    Field,
    JsonValue,
    Tag,
    TypeAdapter,
    ValidationError,
)

from .errors import DecodeError

logger = logging.getLogger(__name__)

_UNKNOWN = "__unknown__"


class WireModel(BaseModel):
    """Base for all wire records. Unrecognised fields are ignored."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True, protected_namespaces=())


def _tag_on(field: str, known: Iterable[str]) -> Callable[[Any], str | None]:
    """Build a discriminator that maps unrecognised tags to the unknown variant."""
    known_tags = frozenset(known)

    def discriminate(value: Any) -> str | None:
        if isinstance(value, dict):
            tag = value.get(field)
        else:
            tag = getattr(value, field, None)
        if not isinstance(tag, str):
            return None
        return tag if tag in known_tags else _UNKNOWN

    return discriminate


class StopReason(str, Enum):
    """Stop reasons the API is known to report."""

    END_TURN = "end_turn"
    MAX_TOKENS = "max_tokens"
    STOP_SEQUENCE = "stop_sequence"
    TOOL_USE = "tool_use"
    PAUSE_TURN = "pause_turn"
    COMPACTION = "compaction"
    REFUSAL = "refusal"
    MODEL_CONTEXT_WINDOW_EXCEEDED = "model_context_window_exceeded"


# --- Usage ---


class CacheCreation(WireModel):
    ephemeral_1h_input_tokens: int | None = None
    ephemeral_5m_input_tokens: int | None = None


class ServerToolUsage(WireModel):
    web_search_requests: int | None = None
    web_fetch_requests: int | None = None


class Usage(WireModel):
    """Token usage attached to a single assistant message."""

    input_tokens: int | None = None
    output_tokens: int | None = None
    cache_read_input_tokens: int | None = None
    cache_creation_input_tokens: int | None = None
    cache_creation: CacheCreation | None = None
    service_tier: str | None = None
    inference_geo: str | None = None
    server_tool_use: ServerToolUsage | None = None


class AggregateUsage(WireModel):
    """Token usage summed over a whole turn, reported on the result."""

    input_tokens: int | None = None
    output_tokens: int | None = None
    cache_read_input_tokens: int | None = None
    cache_creation_input_tokens: int | None = None
    service_tier: str | None = None
    speed: str | None = None
    inference_geo: str | None = None
    server_tool_use: ServerToolUsage | None = None


class ModelUsage(WireModel):
    """Per-model usage breakdown. The CLI writes these keys in camelCase."""

    input_tokens: int = Field(0, alias="inputTokens")
    output_tokens: int = Field(0, alias="outputTokens")
    cache_read_input_tokens: int = Field(0, alias="cacheReadInputTokens")
    cache_creation_input_tokens: int = Field(0, alias="cacheCreationInputTokens")
    web_search_requests: int | None = Field(None, alias="webSearchRequests")
    cost_usd: float = Field(0.0, alias="costUSD")
    context_window: int | None = Field(None, alias="contextWindow")
    max_output_tokens: int | None = Field(None, alias="maxOutputTokens")


# --- Content blocks ---


class TextBlock(WireModel):
    type: Literal["text"] = "text"
    text: str
    citations: list[JsonValue] | None = None


class ThinkingBlock(WireModel):
    type: Literal["thinking"] = "thinking"
    thinking: str
    signature: str = ""  # Usually empty at block start


class RedactedThinkingBlock(WireModel):
    type: Literal["redacted_thinking"] = "redacted_thinking"
    data: str


class ToolUseBlock(WireModel):
    """A client-side tool invocation. ``input`` is empty at block start."""

    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: dict[str, JsonValue] = Field(default_factory=dict)


class ServerToolUseBlock(WireModel):
    type: Literal["server_tool_use"] = "server_tool_use"
    id: str
    name: str
    input: dict[str, JsonValue] = Field(default_factory=dict)


class McpToolUseBlock(WireModel):
    type: Literal["mcp_tool_use"] = "mcp_tool_use"
    id: str
    name: str
    server_name: str
    input: JsonValue = None


class McpToolResultBlock(WireModel):
    type: Literal["mcp_tool_result"] = "mcp_tool_result"
    tool_use_id: str
    content: JsonValue = None  # str or list of text blocks
    is_error: bool = False


class CompactionBlock(WireModel):
    type: Literal["compaction"] = "compaction"
    content: str | None = None


class WebSearchResultBlock(WireModel):
    type: Literal["web_search_tool_result"] = "web_search_tool_result"
    tool_use_id: str | None = None
    content: JsonValue = None


class WebFetchResultBlock(WireModel):
    type: Literal["web_fetch_tool_result"] = "web_fetch_tool_result"
    tool_use_id: str | None = None
    content: JsonValue = None


class UnknownContentBlock(WireModel):
    type: str


ContentBlock = Annotated[
    Annotated[TextBlock, Tag("text")]
    | Annotated[ThinkingBlock, Tag("thinking")]
    | Annotated[RedactedThinkingBlock, Tag("redacted_thinking")]
    | Annotated[ToolUseBlock, Tag("tool_use")]
    | Annotated[ServerToolUseBlock, Tag("server_tool_use")]
    | Annotated[McpToolUseBlock, Tag("mcp_tool_use")]
    | Annotated[McpToolResultBlock, Tag("mcp_tool_result")]
    | Annotated[CompactionBlock, Tag("compaction")]
    | Annotated[WebSearchResultBlock, Tag("web_search_tool_result")]
    | Annotated[WebFetchResultBlock, Tag("web_fetch_tool_result")]
    | Annotated[UnknownContentBlock, Tag(_UNKNOWN)],
    Discriminator(
        _tag_on(
            "type",
            [
                "text",
                "thinking",
                "redacted_thinking",
                "tool_use",
                "server_tool_use",
                "mcp_tool_use",
                "mcp_tool_result",
                "compaction",
                "web_search_tool_result",
                "web_fetch_tool_result",
            ],
        )
    ),
]


# --- Content block deltas ---


class TextDelta(WireModel):
    type: Literal["text_delta"] = "text_delta"
    text: str


class InputJsonDelta(WireModel):
    """A fragment of a tool's input JSON. Fragments concatenate, they do not merge."""

    type: Literal["input_json_delta"] = "input_json_delta"
    partial_json: str


class ThinkingDelta(WireModel):
    type: Literal["thinking_delta"] = "thinking_delta"
    thinking: str


class SignatureDelta(WireModel):
    type: Literal["signature_delta"] = "signature_delta"
    signature: str


class CitationsDelta(WireModel):
    type: Literal["citations_delta"] = "citations_delta"
    citation: JsonValue = None


class CompactionDelta(WireModel):
    type: Literal["compaction_delta"] = "compaction_delta"
    content: str | None = None


class UnknownDelta(WireModel):
    type: str


ContentBlockDelta = Annotated[
    Annotated[TextDelta, Tag("text_delta")]
    | Annotated[InputJsonDelta, Tag("input_json_delta")]
    | Annotated[ThinkingDelta, Tag("thinking_delta")]
    | Annotated[SignatureDelta, Tag("signature_delta")]
    | Annotated[CitationsDelta, Tag("citations_delta")]
    | Annotated[CompactionDelta, Tag("compaction_delta")]
    | Annotated[UnknownDelta, Tag(_UNKNOWN)],
    Discriminator(
        _tag_on(
            "type",
            [
                "text_delta",
                "input_json_delta",
                "thinking_delta",
                "signature_delta",
                "citations_delta",
                "compaction_delta",
            ],
        )
    ),
]


# --- Assistant / user payloads ---


class AssistantMessageContent(WireModel):
    """The API message wrapped by ``assistant`` lines and ``message_start`` events."""

    id: str = ""
    model: str = ""
    role: str = "assistant"
    content: list[ContentBlock] = Field(default_factory=list)
    stop_reason: str | None = None
    stop_sequence: str | None = None
    usage: Usage | None = None
    context_management: JsonValue = None

    @property
    def text_content(self) -> str:
        return "".join(block.text for block in self.content if isinstance(block, TextBlock))

    @property
    def tool_use_calls(self) -> list[ToolUseBlock]:
        return [block for block in self.content if isinstance(block, ToolUseBlock)]


class UserMessageContent(WireModel):
    role: str = "user"
    content: JsonValue = None  # str or list of content block params


# --- Stream events ---


class MessageStartEvent(WireModel):
    type: Literal["message_start"] = "message_start"
    message: AssistantMessageContent


class MessageDeltaBody(WireModel):
    stop_reason: str | None = None
    stop_sequence: str | None = None


class MessageDeltaUsage(WireModel):
    input_tokens: int | None = None
    output_tokens: int
    cache_read_input_tokens: int | None = None
    cache_creation_input_tokens: int | None = None


class MessageDeltaEvent(WireModel):
    type: Literal["message_delta"] = "message_delta"
    delta: MessageDeltaBody = Field(default_factory=MessageDeltaBody)
    usage: MessageDeltaUsage | None = None


class MessageStopEvent(WireModel):
    type: Literal["message_stop"] = "message_stop"


class ContentBlockStartEvent(WireModel):
    type: Literal["content_block_start"] = "content_block_start"
    index: int
    content_block: ContentBlock


class ContentBlockDeltaEvent(WireModel):
    type: Literal["content_block_delta"] = "content_block_delta"
    index: int
    delta: ContentBlockDelta


class ContentBlockStopEvent(WireModel):
    type: Literal["content_block_stop"] = "content_block_stop"
    index: int


class UnknownStreamEvent(WireModel):
    type: str


StreamEventPayload = Annotated[
    Annotated[MessageStartEvent, Tag("message_start")]
    | Annotated[MessageDeltaEvent, Tag("message_delta")]
    | Annotated[MessageStopEvent, Tag("message_stop")]
    | Annotated[ContentBlockStartEvent, Tag("content_block_start")]
    | Annotated[ContentBlockDeltaEvent, Tag("content_block_delta")]
    | Annotated[ContentBlockStopEvent, Tag("content_block_stop")]
    | Annotated[UnknownStreamEvent, Tag(_UNKNOWN)],
    Discriminator(
        _tag_on(
            "type",
            [
                "message_start",
                "message_delta",
                "message_stop",
                "content_block_start",
                "content_block_delta",
                "content_block_stop",
            ],
        )
    ),
]


# --- System messages (type: "system", discriminated by subtype) ---


class McpServerInfo(WireModel):
    name: str
    status: str


class PluginInfo(WireModel):
    name: str
    path: str


class SystemInit(WireModel):
    """First event of every invocation. Carries the authoritative session id."""

    type: Literal["system"] = "system"
    subtype: Literal["init"] = "init"
    session_id: str
    cwd: str = ""
    tools: list[str] = Field(default_factory=list)
    mcp_servers: list[McpServerInfo] = Field(default_factory=list)
    model: str = ""
    permission_mode: str = Field("", alias="permissionMode")
    slash_commands: list[str] = Field(default_factory=list)
    output_style: str = ""
    agents: list[str] | None = None
    skills: list[str] | None = None
    plugins: list[PluginInfo] | None = None
    claude_code_version: str = ""
    api_key_source: str = Field("", alias="apiKeySource")
    uuid: str | None = None
    fast_mode_state: str | None = None


class CompactMetadata(WireModel):
    trigger: str  # "manual" | "auto"
    pre_tokens: int


class CompactBoundary(WireModel):
    type: Literal["system"] = "system"
    subtype: Literal["compact_boundary"] = "compact_boundary"
    compact_metadata: CompactMetadata
    uuid: str | None = None
    session_id: str | None = None


class SystemStatus(WireModel):
    type: Literal["system"] = "system"
    subtype: Literal["status"] = "status"
    status: str | None = None  # "compacting" or null
    permission_mode: str | None = Field(None, alias="permissionMode")
    uuid: str | None = None
    session_id: str | None = None


class HookStarted(WireModel):
    type: Literal["system"] = "system"
    subtype: Literal["hook_started"] = "hook_started"
    hook_id: str
    hook_name: str
    hook_event: str
    uuid: str | None = None
    session_id: str | None = None


class HookProgress(WireModel):
    type: Literal["system"] = "system"
    subtype: Literal["hook_progress"] = "hook_progress"
    hook_id: str
    hook_name: str
    hook_event: str
    stdout: str = ""
    stderr: str = ""
    output: str = ""
    uuid: str | None = None
    session_id: str | None = None


class HookResponse(WireModel):
    type: Literal["system"] = "system"
    subtype: Literal["hook_response"] = "hook_response"
    hook_id: str
    hook_name: str
    hook_event: str
    output: str = ""
    stdout: str = ""
    stderr: str = ""
    exit_code: int | None = None
    outcome: str  # "success" | "error" | "cancelled"
    uuid: str | None = None
    session_id: str | None = None


class TaskStarted(WireModel):
    type: Literal["system"] = "system"
    subtype: Literal["task_started"] = "task_started"
    task_id: str
    tool_use_id: str | None = None
    description: str = ""
    task_type: str | None = None
    uuid: str | None = None
    session_id: str | None = None


class TaskNotification(WireModel):
    type: Literal["system"] = "system"
    subtype: Literal["task_notification"] = "task_notification"
    task_id: str
    tool_use_id: str | None = None
    status: str  # "completed" | "failed" | "stopped"
    output_file: str = ""
    summary: str = ""
    uuid: str | None = None
    session_id: str | None = None


class PersistedFile(WireModel):
    filename: str
    file_id: str


class PersistedFileFailure(WireModel):
    filename: str
    error: str


class FilesPersisted(WireModel):
    type: Literal["system"] = "system"
    subtype: Literal["files_persisted"] = "files_persisted"
    files: list[PersistedFile] = Field(default_factory=list)
    failed: list[PersistedFileFailure] = Field(default_factory=list)
    processed_at: str = ""
    uuid: str | None = None
    session_id: str | None = None


class UnknownSystemMessage(WireModel):
    type: Literal["system"] = "system"
    subtype: str


SystemMessage = Annotated[
    Annotated[SystemInit, Tag("init")]
    | Annotated[CompactBoundary, Tag("compact_boundary")]
    | Annotated[SystemStatus, Tag("status")]
    | Annotated[HookStarted, Tag("hook_started")]
    | Annotated[HookProgress, Tag("hook_progress")]
    | Annotated[HookResponse, Tag("hook_response")]
    | Annotated[TaskStarted, Tag("task_started")]
    | Annotated[TaskNotification, Tag("task_notification")]
    | Annotated[FilesPersisted, Tag("files_persisted")]
    | Annotated[UnknownSystemMessage, Tag(_UNKNOWN)],
    Discriminator(
        _tag_on(
            "subtype",
            [
                "init",
                "compact_boundary",
                "status",
                "hook_started",
                "hook_progress",
                "hook_response",
                "task_started",
                "task_notification",
                "files_persisted",
            ],
        )
    ),
]


# --- Remaining top-level messages ---


class AssistantMessage(WireModel):
    """A complete assistant API message."""

    type: Literal["assistant"] = "assistant"
    message: AssistantMessageContent
    parent_tool_use_id: str | None = None
    error: str | None = None
    uuid: str | None = None
    session_id: str | None = None


class UserMessage(WireModel):
    """A user turn echoed back by the CLI, usually carrying tool results."""

    type: Literal["user"] = "user"
    message: UserMessageContent
    parent_tool_use_id: str | None = None
    is_synthetic: bool | None = Field(None, alias="isSynthetic")
    uuid: str | None = None
    session_id: str | None = None
    is_replay: bool | None = Field(None, alias="isReplay")


class PermissionDenial(WireModel):
    tool_name: str
    tool_use_id: str
    tool_input: dict[str, JsonValue] | None = None


class ResultMessage(WireModel):
    """Terminal event of a turn."""

    type: Literal["result"] = "result"
    # "success" | "error_during_execution" | "error_max_turns" | "error_max_budget_usd"
    subtype: str
    is_error: bool = False
    duration_ms: int = 0
    duration_api_ms: int | None = None
    num_turns: int = 0
    result: str | None = None
    errors: list[str] | None = None
    stop_reason: str | None = None
    session_id: str | None = None
    total_cost_usd: float = 0.0
    usage: AggregateUsage | None = None
    model_usage: dict[str, ModelUsage] | None = Field(None, alias="modelUsage")
    permission_denials: list[PermissionDenial] | None = None
    uuid: str | None = None

    @property
    def is_success(self) -> bool:
        return self.subtype == "success"


class StreamEventMessage(WireModel):
    """Wrapper for a raw API streaming event (requires --verbose)."""

    type: Literal["stream_event"] = "stream_event"
    event: StreamEventPayload
    parent_tool_use_id: str | None = None
    uuid: str | None = None
    session_id: str | None = None


class ToolProgressMessage(WireModel):
    type: Literal["tool_progress"] = "tool_progress"
    tool_use_id: str
    tool_name: str
    parent_tool_use_id: str | None = None
    elapsed_time_seconds: float
    task_id: str | None = None
    uuid: str | None = None
    session_id: str | None = None


class ToolUseSummaryMessage(WireModel):
    type: Literal["tool_use_summary"] = "tool_use_summary"
    summary: str
    preceding_tool_use_ids: list[str] = Field(default_factory=list)
    uuid: str | None = None
    session_id: str | None = None


class AuthStatusMessage(WireModel):
    type: Literal["auth_status"] = "auth_status"
    is_authenticating: bool = Field(False, alias="isAuthenticating")
    output: list[str] = Field(default_factory=list)
    error: str | None = None
    uuid: str | None = None
    session_id: str | None = None


class RateLimitInfo(WireModel):
    status: str  # "allowed" | "rate_limited"
    resets_at: int | None = Field(None, alias="resetsAt")
    rate_limit_type: str | None = Field(None, alias="rateLimitType")
    overage_status: str | None = Field(None, alias="overageStatus")
    overage_disabled_reason: str | None = Field(None, alias="overageDisabledReason")
    is_using_overage: bool | None = Field(None, alias="isUsingOverage")


class RateLimitMessage(WireModel):
    type: Literal["rate_limit_event"] = "rate_limit_event"
    rate_limit_info: RateLimitInfo
    uuid: str | None = None
    session_id: str | None = None


class UnknownMessage(WireModel):
    """A top-level type this client does not know. ``raw`` is the original line."""

    type: str
    raw: str = ""


WireMessage = (
    SystemInit
    | CompactBoundary
    | SystemStatus
    | HookStarted
    | HookProgress
    | HookResponse
    | TaskStarted
    | TaskNotification
    | FilesPersisted
    | UnknownSystemMessage
    | AssistantMessage
    | UserMessage
    | ResultMessage
    | StreamEventMessage
    | ToolProgressMessage
    | ToolUseSummaryMessage
    | AuthStatusMessage
    | RateLimitMessage
    | UnknownMessage
)

_SYSTEM_ADAPTER: TypeAdapter[Any] = TypeAdapter(SystemMessage)

_MESSAGE_TYPES: dict[str, type[WireModel]] = {
    "assistant": AssistantMessage,
    "user": UserMessage,
    "result": ResultMessage,
    "stream_event": StreamEventMessage,
    "tool_progress": ToolProgressMessage,
    "tool_use_summary": ToolUseSummaryMessage,
    "auth_status": AuthStatusMessage,
    "rate_limit_event": RateLimitMessage,
}


def decode_line(line: str) -> WireMessage:
    """
    Decode one stdout line into a wire message.

    Args:
        line: A single line of CLI output, with or without surrounding whitespace

    Returns:
        The decoded message. Unknown top-level types come back as UnknownMessage,
        unknown nested tags as the matching Unknown* leaf.

    Raises:
        DecodeError: The line is blank, not a JSON object, has no ``type``, or
            misses a required field.
    """
    text = line.strip()
    if not text:
        raise DecodeError("Empty line", line)

    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise DecodeError(f"Invalid JSON: {e}", line) from e

    if not isinstance(data, dict):
        raise DecodeError("Line is not a JSON object", line)

    msg_type = data.get("type")
    if not isinstance(msg_type, str):
        raise DecodeError("Missing message type", line)

    try:
        if msg_type == "system":
            return _SYSTEM_ADAPTER.validate_python(data)
        model = _MESSAGE_TYPES.get(msg_type)
        if model is None:
            return UnknownMessage(type=msg_type, raw=text)
        return model.model_validate(data)  # type: ignore[return-value]
    except ValidationError as e:
        raise DecodeError(f"Invalid {msg_type} message: {e}", line) from e


def decode_lines(lines: Iterable[str]) -> Iterator[WireMessage]:
    """Decode lines, silently dropping blank and undecodable ones."""
    for line in lines:
        if not line.strip():
            continue
        try:
            yield decode_line(line)
        except DecodeError as e:
            logger.debug("Dropping undecodable line: %s", e)
