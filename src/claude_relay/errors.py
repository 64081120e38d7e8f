# ABOUTME: Error types for Claude Relay
# ABOUTME: Covers CLI discovery, process failures, decode failures and store lookups

"""Error types for Claude Relay."""

import re


class ClaudeRelayError(Exception):
    """Base class for all relay errors. ``str(exc)`` is user-facing."""


class ExecutableNotFound(ClaudeRelayError):
    """The claude CLI could not be located."""

    def __init__(self) -> None:
        super().__init__("Claude CLI not found. Install it from https://claude.ai/download")


class WorkingDirectoryNotFound(ClaudeRelayError):
    """The requested working directory does not exist."""

    def __init__(self, path: str) -> None:
        self.path = path
        super().__init__(f"Working directory does not exist: {path}")


class ProcessError(ClaudeRelayError):
    """The CLI exited non-zero and wrote diagnostics to stderr."""

    def __init__(self, exit_code: int, stderr: str) -> None:
        self.exit_code = exit_code
        self.stderr = stderr
        super().__init__(f"Claude CLI exited with code {exit_code}: {stderr.strip()}")


class NotLoggedIn(ProcessError):
    """The CLI refused to run because no account is logged in."""

    def __str__(self) -> str:
        return "Not logged in. Run 'claude login' in your terminal."


class DecodeError(ClaudeRelayError):
    """A stdout line could not be decoded. Callers drop the line."""

    def __init__(self, message: str, line: str = "") -> None:
        self.line = line
        super().__init__(message)


class ConversationNotFound(ClaudeRelayError, KeyError):
    """No conversation with the given id exists in the store."""

    def __init__(self, conversation_id: str) -> None:
        self.conversation_id = conversation_id
        super().__init__(f"Unknown conversation: {conversation_id}")

    def __str__(self) -> str:
        return f"Unknown conversation: {self.conversation_id}"


class TurnInProgress(ClaudeRelayError):
    """A turn is already running for this conversation."""

    def __init__(self, conversation_id: str) -> None:
        self.conversation_id = conversation_id
        super().__init__(
            f"A response is already in progress for conversation {conversation_id}. "
            "Cancel it or wait for it to finish."
        )


_NOT_LOGGED_IN = re.compile(r"not logged in|please run /login|invalid api key", re.IGNORECASE)


def classify_process_error(error: ProcessError) -> ProcessError:
    """Narrow a generic ProcessError to NotLoggedIn when stderr says so."""
    if isinstance(error, NotLoggedIn):
        return error
    if _NOT_LOGGED_IN.search(error.stderr):
        return NotLoggedIn(error.exit_code, error.stderr)
    return error
