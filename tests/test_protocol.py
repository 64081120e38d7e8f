# ABOUTME: Tests for protocol message types
# ABOUTME: Validates serialization/deserialization of WebSocket messages

"""Tests for protocol message types."""

import json

import pytest
from pydantic import ValidationError

from claude_relay.protocol import (
    CancelMessage,
    CloseSessionMessage,
    DoneMessage,
    ErrorMessage,
    ForkedMessage,
    ForkMessage,
    QueryMessage,
    TextMessage,
    ToolUseMessage,
    parse_inbound,
)


class TestInboundMessages:
    """Tests for parsing inbound messages."""

    def test_parse_query_message(self) -> None:
        """Parse a valid query message."""
        data = {
            "type": "query",
            "query_id": "q1",
            "conversation_id": "c1",
            "workspace": "/path/to/workspace",
            "prompt": "Hello Claude",
        }
        msg = parse_inbound(data)

        assert isinstance(msg, QueryMessage)
        assert msg.conversation_id == "c1"
        assert msg.workspace == "/path/to/workspace"
        assert msg.prompt == "Hello Claude"
        assert msg.session_id is None
        assert msg.model is None

    def test_parse_query_message_with_options(self) -> None:
        """Parse a query message with resume and CLI options."""
        data = {
            "type": "query",
            "query_id": "q2",
            "conversation_id": "c1",
            "workspace": "/w",
            "prompt": "Continue please",
            "session_id": "session-uuid-123",
            "model": "claude-opus-4-20250514",
            "permission_mode": "plan",
            "max_turns": 5,
            "allowed_tools": ["Read"],
        }
        msg = parse_inbound(data)

        assert isinstance(msg, QueryMessage)
        assert msg.session_id == "session-uuid-123"
        assert msg.permission_mode == "plan"
        assert msg.max_turns == 5
        assert msg.allowed_tools == ["Read"]

    def test_parse_query_missing_prompt_raises(self) -> None:
        """A query without a prompt fails validation, which is a ValueError."""
        data = {"type": "query", "query_id": "q1", "conversation_id": "c1", "workspace": "/w"}

        with pytest.raises(ValidationError):
            parse_inbound(data)
        with pytest.raises(ValueError):
            parse_inbound(data)

    def test_parse_cancel_fork_and_close(self) -> None:
        """Parse the conversation-level control messages."""
        cancel = parse_inbound({"type": "cancel", "conversation_id": "c1"})
        fork = parse_inbound({"type": "fork", "conversation_id": "c1"})
        close = parse_inbound({"type": "close_session", "conversation_id": "c1"})

        assert isinstance(cancel, CancelMessage)
        assert isinstance(fork, ForkMessage)
        assert isinstance(close, CloseSessionMessage)
        assert close.conversation_id == "c1"

    def test_parse_unknown_type_raises(self) -> None:
        """Unknown message type raises ValueError."""
        data = {"type": "unknown", "foo": "bar"}

        with pytest.raises(ValueError, match="Unknown message type"):
            parse_inbound(data)


class TestOutboundMessages:
    """Tests for outbound message serialization."""

    def test_text_message_json(self) -> None:
        """TextMessage serializes correctly."""
        msg = TextMessage(query_id="q1", conversation_id="c1", content="Hello world")
        data = msg.model_dump()

        assert data == {
            "type": "text",
            "query_id": "q1",
            "conversation_id": "c1",
            "content": "Hello world",
        }

    def test_tool_use_message_json(self) -> None:
        """ToolUseMessage carries input only once complete."""
        started = ToolUseMessage(query_id="q1", conversation_id="c1", tool_use_id="t1", tool="Read")
        done = ToolUseMessage(
            query_id="q1",
            conversation_id="c1",
            tool_use_id="t1",
            tool="Read",
            input={"path": "a.txt"},
            complete=True,
        )

        assert started.model_dump()["input"] is None
        assert started.complete is False
        assert json.loads(done.model_dump_json())["input"] == {"path": "a.txt"}

    def test_done_message_json(self) -> None:
        """DoneMessage serializes with session and usage."""
        msg = DoneMessage(
            query_id="q1",
            conversation_id="c1",
            session_id="s1",
            message_id="m1",
            stop_reason="end_turn",
            input_tokens=12,
            output_tokens=7,
        )
        data = msg.model_dump()

        assert data["type"] == "done"
        assert data["session_id"] == "s1"
        assert data["message_id"] == "m1"
        assert data["cancelled"] is False

    def test_forked_message_json(self) -> None:
        msg = ForkedMessage(source_conversation_id="c1", conversation_id="c2")

        assert msg.model_dump() == {"type": "forked", "source_conversation_id": "c1", "conversation_id": "c2"}

    def test_error_message_json(self) -> None:
        """ErrorMessage may omit the query it belongs to."""
        msg = ErrorMessage(conversation_id="c1", message="Something went wrong")
        data = msg.model_dump()

        assert data == {
            "type": "error",
            "query_id": None,
            "conversation_id": "c1",
            "message": "Something went wrong",
        }
