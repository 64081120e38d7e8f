# ABOUTME: Tests for the session manager
# ABOUTME: Drives queries through fake CLIs and checks the outbound protocol stream

"""Tests for the session manager."""

import json
import time
from pathlib import Path
from typing import Callable

import pytest

from claude_relay.errors import ConversationNotFound
from claude_relay.protocol import (
    DoneMessage,
    ErrorMessage,
    QueryMessage,
    SessionMessage,
    TextMessage,
    ToolUseMessage,
    UsageMessage,
)
from claude_relay.session import SessionManager
from claude_relay.store import MemoryStore, StoredMessage


def query(workspace: Path, prompt: str = "Say hello", **fields) -> QueryMessage:
    return QueryMessage(query_id="q1", conversation_id="c1", workspace=str(workspace), prompt=prompt, **fields)


def script(*messages: dict, tail: str = "") -> str:
    lines = "\n".join(json.dumps(m) for m in messages)
    return f"cat <<'EOF'\n{lines}\nEOF\n{tail}"


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    path = tmp_path / "project"
    path.mkdir()
    return path


class TestProcessQuery:
    """Tests for running queries end to end."""

    @pytest.mark.anyio
    async def test_text_turn(self, workspace: Path, replay_cli: Callable[[str], str]) -> None:
        manager = SessionManager(executable=replay_cli("text_turn.jsonl"))

        responses = [r async for r in manager.process_query(query(workspace, prompt="Say hello\nplease"))]

        assert isinstance(responses[0], SessionMessage)
        assert responses[0].session_id == "sess-42"
        assert [r.content for r in responses if isinstance(r, TextMessage)] == ["Hello", " world"]
        assert any(isinstance(r, UsageMessage) for r in responses)
        assert all(r.query_id == "q1" for r in responses)

        done = responses[-1]
        assert isinstance(done, DoneMessage)
        assert done.session_id == "sess-42"
        assert done.stop_reason == "end_turn"
        assert (done.input_tokens, done.output_tokens) == (12, 7)
        assert done.cancelled is False

        conversation = manager.store.get_conversation("c1")
        assert conversation.title == "Say hello"
        assert conversation.project_path == str(workspace)
        assert done.message_id == conversation.messages[-1].id
        assert manager.sessions["c1"].active_turn is None

    @pytest.mark.anyio
    async def test_tool_turn(self, workspace: Path, replay_cli: Callable[[str], str]) -> None:
        manager = SessionManager(executable=replay_cli("tool_turn.jsonl"))

        responses = [r async for r in manager.process_query(query(workspace))]
        tool_messages = [r for r in responses if isinstance(r, ToolUseMessage)]

        assert [(m.tool_use_id, m.complete) for m in tool_messages] == [("t1", False), ("t1", True)]
        assert tool_messages[1].input == {"path": "a.txt"}
        assert isinstance(responses[-1], DoneMessage)

    @pytest.mark.anyio
    async def test_existing_conversation_resumes_session(
        self, workspace: Path, fake_cli: Callable[[str], str]
    ) -> None:
        store = MemoryStore()
        conversation = store.create_conversation(title="Old", project_path=str(workspace), conversation_id="c1")
        conversation.session_id = "prior"
        # Echo the --resume argument back as the session id
        cli = fake_cli(
            'while [ "$#" -gt 0 ]; do\n'
            '  if [ "$1" = "--resume" ]; then\n'
            '    echo "{\\"type\\":\\"system\\",\\"subtype\\":\\"init\\",\\"session_id\\":\\"$2\\"}"\n'
            "  fi\n"
            "  shift\n"
            "done"
        )
        manager = SessionManager(store=store, executable=cli, default_model="m")

        responses = [r async for r in manager.process_query(query(workspace))]

        assert isinstance(responses[0], SessionMessage)
        assert responses[0].session_id == "prior"
        assert isinstance(responses[-1], DoneMessage)
        assert responses[-1].session_id == "prior"
        assert conversation.title == "Old"
        assert conversation.messages[0].model_id == "m"

    @pytest.mark.anyio
    async def test_error_result(self, workspace: Path, fake_cli: Callable[[str], str]) -> None:
        cli = fake_cli(
            script(
                {"type": "system", "subtype": "init", "session_id": "s1"},
                {
                    "type": "result",
                    "subtype": "error_max_turns",
                    "is_error": True,
                    "errors": ["Reached max turns (1)"],
                    "session_id": "s1",
                },
            )
        )
        manager = SessionManager(executable=cli)

        responses = [r async for r in manager.process_query(query(workspace, max_turns=1))]

        errors = [r for r in responses if isinstance(r, ErrorMessage)]
        assert [e.message for e in errors] == ["Reached max turns (1)"]
        assert isinstance(responses[-1], DoneMessage)

    @pytest.mark.anyio
    async def test_process_error(self, workspace: Path, fake_cli: Callable[[str], str]) -> None:
        manager = SessionManager(executable=fake_cli("echo 'boom' >&2; exit 4"))

        responses = [r async for r in manager.process_query(query(workspace))]

        assert len(responses) == 1
        assert isinstance(responses[0], ErrorMessage)
        assert responses[0].message == "Claude CLI exited with code 4: boom"
        assert responses[0].query_id == "q1"
        assert manager.sessions["c1"].active_turn is None

    @pytest.mark.anyio
    async def test_missing_executable(self, workspace: Path, tmp_path: Path) -> None:
        manager = SessionManager(executable=str(tmp_path / "nope"))

        responses = [r async for r in manager.process_query(query(workspace))]

        assert isinstance(responses[0], ErrorMessage)
        assert "Claude CLI not found" in responses[0].message
        assert manager.store.get_conversation("c1").messages == []


class TestCancelAndConcurrency:
    """Tests for cancel and the one-turn-per-conversation rule."""

    @pytest.mark.anyio
    async def test_second_query_rejected_then_cancel(self, workspace: Path, fake_cli: Callable[[str], str]) -> None:
        cli = fake_cli(script({"type": "system", "subtype": "init", "session_id": "s1"}, tail="exec sleep 30"))
        manager = SessionManager(executable=cli)

        first = manager.process_query(query(workspace))
        started = await first.__anext__()
        assert isinstance(started, SessionMessage)

        rejected = [r async for r in manager.process_query(query(workspace, prompt="again"))]
        assert len(rejected) == 1
        assert isinstance(rejected[0], ErrorMessage)
        assert "already in progress" in rejected[0].message

        assert manager.cancel("c1") is True
        rest = [r async for r in first]

        done = rest[-1]
        assert isinstance(done, DoneMessage)
        assert done.cancelled is True
        assert manager.sessions["c1"].active_turn is None
        assert manager.cancel("c1") is False

    def test_cancel_unknown_conversation(self) -> None:
        assert SessionManager().cancel("nobody") is False


class TestSessionLifecycle:
    """Tests for fork, close and idle cleanup."""

    def test_fork(self, workspace: Path) -> None:
        manager = SessionManager()
        manager.store.create_conversation(title="Chat", project_path=str(workspace), conversation_id="c1")
        manager.store.save_message("c1", StoredMessage(role="user", content="hi"))

        new_id = manager.fork("c1")

        fork = manager.store.get_conversation(new_id)
        assert fork.title == "Chat (fork)"
        assert [m.content for m in fork.messages] == ["hi"]

    def test_fork_unknown(self) -> None:
        with pytest.raises(ConversationNotFound):
            SessionManager().fork("missing")

    @pytest.mark.anyio
    async def test_close_session(self, workspace: Path) -> None:
        manager = SessionManager()
        manager.get_or_create_session("c1", str(workspace))

        await manager.close_session("c1")
        await manager.close_session("c1")

        assert "c1" not in manager.sessions
        # The conversation itself survives
        assert manager.store.get_conversation("c1").project_path == str(workspace)

    @pytest.mark.anyio
    async def test_idle_cleanup(self, workspace: Path) -> None:
        manager = SessionManager(idle_timeout_seconds=10)
        idle = manager.get_or_create_session("idle", str(workspace))
        manager.get_or_create_session("fresh", str(workspace))
        idle.last_activity = time.time() - 60

        await manager._cleanup_idle_sessions()

        assert list(manager.sessions) == ["fresh"]

    @pytest.mark.anyio
    async def test_start_and_stop(self, workspace: Path) -> None:
        manager = SessionManager()
        await manager.start()
        manager.get_or_create_session("c1", str(workspace))

        await manager.stop()

        assert manager.sessions == {}
