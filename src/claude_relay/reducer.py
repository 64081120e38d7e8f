# ABOUTME: Stream reducer folding decoded wire messages into one assistant turn
# ABOUTME: Tracks streamed text, tool-call accumulators, token usage and session metadata

"""Stream reducer folding decoded wire messages into one assistant turn."""

import json
import logging
from dataclasses import dataclass, field
from enum import Enum

from .errors import DecodeError
from .registry import SessionRegistry
from .store import StoredMessage, StoredToolCall
from .wire import (
    AssistantMessage,
    ContentBlockDeltaEvent,
    ContentBlockStartEvent,
    ContentBlockStopEvent,
    InputJsonDelta,
    MessageDeltaEvent,
    MessageStartEvent,
    ResultMessage,
    StreamEventMessage,
    SystemInit,
    TextDelta,
    ToolProgressMessage,
    ToolUseBlock,
    WireMessage,
    decode_line,
)

logger = logging.getLogger(__name__)


class TurnPhase(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    DONE = "done"


@dataclass
class ToolCallAccumulator:
    """A tool call being reconstructed from stream events."""

    id: str
    name: str
    index: int | None = None
    input_json: str = ""
    complete: bool = False
    elapsed_seconds: float = 0.0


# --- Incremental updates handed to the caller ---


@dataclass(frozen=True)
class SessionStarted:
    session_id: str


@dataclass(frozen=True)
class TextAppended:
    text: str


@dataclass(frozen=True)
class ToolCallStarted:
    tool_use_id: str
    name: str


@dataclass(frozen=True)
class ToolCallCompleted:
    tool_use_id: str
    name: str
    input_json: str


@dataclass(frozen=True)
class ToolProgressed:
    tool_use_id: str
    elapsed_seconds: float


@dataclass(frozen=True)
class UsageUpdated:
    input_tokens: int
    output_tokens: int


@dataclass(frozen=True)
class TurnResult:
    result: ResultMessage


TurnUpdate = (
    SessionStarted
    | TextAppended
    | ToolCallStarted
    | ToolCallCompleted
    | ToolProgressed
    | UsageUpdated
    | TurnResult
)


# --- Finalized records ---


@dataclass
class FinalizedToolCall:
    tool_use_id: str
    tool_name: str
    input_json: str
    status: str  # "completed" | "pending"
    elapsed_seconds: float = 0.0

    def to_stored(self) -> StoredToolCall:
        return StoredToolCall(
            tool_use_id=self.tool_use_id,
            tool_name=self.tool_name,
            input_json=self.input_json,
            status=self.status,
        )


@dataclass
class FinalizedMessage:
    """The record produced once a turn's stream ends."""

    content: str
    input_tokens: int
    output_tokens: int
    model_id: str | None
    stop_reason: str | None
    tool_calls: list[FinalizedToolCall] = field(default_factory=list)
    role: str = "assistant"

    def to_stored(self) -> StoredMessage:
        return StoredMessage(
            role=self.role,
            content=self.content,
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            model_id=self.model_id,
            stop_reason=self.stop_reason,
            tool_calls=[tc.to_stored() for tc in self.tool_calls],
        )


class TurnReducer:
    """
    Folds one turn's wire messages into accumulated state.

    Lifecycle: IDLE -> STREAMING on the first line, STREAMING -> FINALIZING on
    ``result``, and -> DONE once ``finish()`` has produced the final record.
    One reducer serves exactly one turn; the caller guarantees only one turn
    runs per conversation at a time.

    Tool blocks are assumed not to interleave within a turn. Each
    accumulator remembers its content-block index and JSON fragments only go
    to the open tool block with a matching index, so an out-of-order fragment
    is dropped instead of landing in the wrong call.
    """

    def __init__(
        self,
        conversation_id: str,
        registry: SessionRegistry | None = None,
        model: str | None = None,
    ):
        self.conversation_id = conversation_id
        self.registry = registry
        self.model = model

        self.phase = TurnPhase.IDLE
        self.text = ""
        self.tool_calls: list[ToolCallAccumulator] = []
        self.input_tokens = 0
        self.output_tokens = 0
        self.session_id: str | None = None
        self.stop_reason: str | None = None
        self.result: ResultMessage | None = None

        self._saw_text_delta = False
        self._saw_stream_events = False

    def feed_line(self, line: str) -> list[TurnUpdate]:
        """Decode and apply one raw stdout line. Bad lines are ignored."""
        if self.phase is TurnPhase.IDLE:
            self.phase = TurnPhase.STREAMING

        if not line.strip():
            return []

        try:
            message = decode_line(line)
        except DecodeError as e:
            logger.debug("Ignoring undecodable line: %s", e)
            return []

        return self.apply(message)

    def apply(self, message: WireMessage) -> list[TurnUpdate]:
        """Apply one decoded message and return the resulting updates."""
        if self.phase is TurnPhase.IDLE:
            self.phase = TurnPhase.STREAMING
        elif self.phase is not TurnPhase.STREAMING:
            return []

        if isinstance(message, SystemInit):
            return self._on_init(message)
        elif isinstance(message, StreamEventMessage):
            self._saw_stream_events = True
            return self._on_stream_event(message)
        elif isinstance(message, AssistantMessage):
            return self._on_assistant(message)
        elif isinstance(message, ToolProgressMessage):
            return self._on_tool_progress(message)
        elif isinstance(message, ResultMessage):
            return self._on_result(message)

        return []

    # --- Handlers ---

    def _record_session(self, session_id: str) -> None:
        self.session_id = session_id
        if self.registry is not None:
            self.registry.record_session_id(self.conversation_id, session_id)

    def _on_init(self, message: SystemInit) -> list[TurnUpdate]:
        self._record_session(message.session_id)
        return [SessionStarted(message.session_id)]

    def _on_stream_event(self, message: StreamEventMessage) -> list[TurnUpdate]:
        event = message.event

        if isinstance(event, ContentBlockStartEvent):
            block = event.content_block
            if isinstance(block, ToolUseBlock):
                self.tool_calls.append(ToolCallAccumulator(id=block.id, name=block.name, index=event.index))
                return [ToolCallStarted(block.id, block.name)]

        elif isinstance(event, ContentBlockDeltaEvent):
            delta = event.delta
            if isinstance(delta, TextDelta):
                self._saw_text_delta = True
                self.text += delta.text
                return [TextAppended(delta.text)]
            if isinstance(delta, InputJsonDelta):
                call = self._open_tool_call(event.index)
                if call is None:
                    logger.warning("input_json_delta for index %d with no open tool block, dropping", event.index)
                    return []
                call.input_json += delta.partial_json

        elif isinstance(event, ContentBlockStopEvent):
            call = self._open_tool_call(event.index)
            if call is not None:
                call.complete = True
                return [ToolCallCompleted(call.id, call.name, call.input_json)]

        elif isinstance(event, MessageDeltaEvent):
            if event.usage is not None:
                self.output_tokens += event.usage.output_tokens
                return [UsageUpdated(self.input_tokens, self.output_tokens)]

        elif isinstance(event, MessageStartEvent):
            usage = event.message.usage
            if usage is not None:
                self.input_tokens = usage.input_tokens or 0
                return [UsageUpdated(self.input_tokens, self.output_tokens)]

        return []

    def _on_assistant(self, message: AssistantMessage) -> list[TurnUpdate]:
        updates: list[TurnUpdate] = []
        content = message.message

        # Without partial-message streaming the full messages are all we get.
        if not self._saw_text_delta:
            text = content.text_content
            if text:
                appended = f"\n\n{text}" if self.text else text
                self.text += appended
                updates.append(TextAppended(appended))

        if not self._saw_stream_events:
            known = {call.id for call in self.tool_calls}
            for block in content.tool_use_calls:
                if block.id in known:
                    continue
                input_json = json.dumps(block.input)
                self.tool_calls.append(
                    ToolCallAccumulator(id=block.id, name=block.name, input_json=input_json, complete=True)
                )
                updates.append(ToolCallStarted(block.id, block.name))
                updates.append(ToolCallCompleted(block.id, block.name, input_json))

        usage = content.usage
        if usage is not None:
            if usage.input_tokens is not None:
                self.input_tokens = usage.input_tokens
            if usage.output_tokens is not None:
                self.output_tokens = usage.output_tokens
            updates.append(UsageUpdated(self.input_tokens, self.output_tokens))

        return updates

    def _on_tool_progress(self, message: ToolProgressMessage) -> list[TurnUpdate]:
        for call in self.tool_calls:
            if call.id == message.tool_use_id:
                call.elapsed_seconds = message.elapsed_time_seconds
                return [ToolProgressed(call.id, call.elapsed_seconds)]
        return []

    def _on_result(self, message: ResultMessage) -> list[TurnUpdate]:
        updates: list[TurnUpdate] = []

        if message.usage is not None:
            if message.usage.input_tokens is not None:
                self.input_tokens = message.usage.input_tokens
            if message.usage.output_tokens is not None:
                self.output_tokens = message.usage.output_tokens
            updates.append(UsageUpdated(self.input_tokens, self.output_tokens))

        if self.session_id is None and message.session_id:
            self._record_session(message.session_id)
            updates.append(SessionStarted(message.session_id))

        self.stop_reason = message.stop_reason
        self.result = message
        self.phase = TurnPhase.FINALIZING
        updates.append(TurnResult(message))
        return updates

    def _open_tool_call(self, index: int) -> ToolCallAccumulator | None:
        for call in reversed(self.tool_calls):
            if not call.complete and call.index == index:
                return call
        return None

    # --- Finalization ---

    def finish(self) -> FinalizedMessage | None:
        """
        End the turn and build its record.

        Called on ``result``, EOF, cancellation or process error alike. Returns
        None if the turn produced neither text nor tool calls, or if the turn
        was already finished.
        """
        if self.phase is TurnPhase.DONE:
            return None
        self.phase = TurnPhase.DONE

        if not self.text and not self.tool_calls:
            return None

        return FinalizedMessage(
            content=self.text,
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            model_id=self.model,
            stop_reason=self.stop_reason,
            tool_calls=[
                FinalizedToolCall(
                    tool_use_id=call.id,
                    tool_name=call.name,
                    input_json=call.input_json,
                    status="completed" if call.complete else "pending",
                    elapsed_seconds=call.elapsed_seconds,
                )
                for call in self.tool_calls
            ],
        )
