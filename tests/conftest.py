# ABOUTME: Shared pytest fixtures for Claude Relay tests
# ABOUTME: Provides stores, conversations and fake claude CLI scripts

"""Shared pytest fixtures for Claude Relay tests."""

import stat
from pathlib import Path
from typing import Callable

import pytest

from claude_relay.registry import SessionRegistry
from claude_relay.store import Conversation, MemoryStore

FIXTURES_DIR = Path(__file__).parent / "fixtures"


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def registry(store: MemoryStore) -> SessionRegistry:
    return SessionRegistry(store)


@pytest.fixture
def conversation(store: MemoryStore, tmp_path: Path) -> Conversation:
    workspace = tmp_path / "workspace"
    workspace.mkdir()
    return store.create_conversation(title="Demo", project_path=str(workspace))


@pytest.fixture
def fake_cli(tmp_path: Path) -> Callable[[str], str]:
    """Write a /bin/sh script standing in for the claude CLI and return its path."""
    counter = iter(range(1000))

    def make(body: str) -> str:
        path = tmp_path / f"fake-claude-{next(counter)}"
        path.write_text("#!/bin/sh\n" + body + "\n")
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return str(path)

    return make


@pytest.fixture
def replay_cli(fake_cli: Callable[[str], str]) -> Callable[[str], str]:
    """Fake CLI that prints one of the JSONL fixtures and exits 0."""

    def make(fixture_name: str) -> str:
        return fake_cli(f'cat "{FIXTURES_DIR / fixture_name}"')

    return make
