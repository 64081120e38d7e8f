# ABOUTME: Process session for the claude CLI
# ABOUTME: Resolves the executable, builds argv, spawns the child and streams stdout lines

"""Process session for the claude CLI."""

import asyncio
import contextlib
import logging
import os
import shutil
import signal
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import AsyncIterator, Mapping, Sequence

from .errors import ExecutableNotFound, ProcessError, WorkingDirectoryNotFound

logger = logging.getLogger(__name__)

CLI_NAME = "claude"

# Markers the CLI sets for its own children. Left in place, a relay launched
# from inside a claude session would spawn a CLI that thinks it is nested.
SESSION_MARKER_VARS = ("CLAUDECODE", "CLAUDE_CODE")

# stream-json lines carry whole tool results and can be very long.
STREAM_LIMIT = 16 * 1024 * 1024

TERMINATE_GRACE_SECONDS = 5.0


class PermissionMode(str, Enum):
    """Permission modes understood by ``--permission-mode``."""

    DEFAULT = "default"
    ACCEPT_EDITS = "acceptEdits"
    PLAN = "plan"
    BYPASS_PERMISSIONS = "bypassPermissions"


@dataclass(frozen=True)
class TurnRequest:
    """Parameters for one CLI invocation."""

    prompt: str
    working_directory: str
    model: str | None = None
    resume_session_id: str | None = None
    continue_session: bool = False
    system_prompt: str | None = None
    max_turns: int | None = None
    max_budget_usd: float | None = None
    allowed_tools: Sequence[str] | None = None
    permission_mode: PermissionMode | str | None = None


def default_candidates() -> list[Path]:
    """Well-known install locations, checked before PATH."""
    home = Path.home()
    return [
        Path("/usr/local/bin") / CLI_NAME,
        Path("/opt/homebrew/bin") / CLI_NAME,
        home / ".local" / "bin" / CLI_NAME,
        home / ".npm-global" / "bin" / CLI_NAME,
    ]


def find_executable(candidates: Sequence[str | Path] | None = None) -> str | None:
    """Return the path of the claude CLI, or None if it is not installed."""
    if candidates is None:
        candidates = default_candidates()

    for candidate in candidates:
        path = Path(candidate)
        if path.is_file() and os.access(path, os.X_OK):
            return str(path)

    return shutil.which(CLI_NAME)


def is_cli_installed() -> bool:
    return find_executable() is not None


def build_command(executable: str, request: TurnRequest) -> list[str]:
    """Build the argv for a stream-json invocation."""
    args = [
        executable,
        "-p",
        request.prompt,
        "--output-format",
        "stream-json",
        "--verbose",
    ]

    if request.model is not None:
        args.extend(["--model", request.model])
    if request.resume_session_id is not None:
        args.extend(["--resume", request.resume_session_id])
    if request.continue_session:
        args.append("--continue")
    if request.system_prompt is not None:
        args.extend(["--system-prompt", request.system_prompt])
    if request.max_turns is not None:
        args.extend(["--max-turns", str(request.max_turns)])
    if request.max_budget_usd is not None:
        args.extend(["--max-budget-usd", str(request.max_budget_usd)])
    if request.allowed_tools:
        args.extend(["--allowedTools", ",".join(request.allowed_tools)])
    if request.permission_mode is not None:
        mode = request.permission_mode
        args.extend(["--permission-mode", mode.value if isinstance(mode, PermissionMode) else mode])

    return args


def child_environment(base: Mapping[str, str] | None = None) -> dict[str, str]:
    """Copy of the environment with the nested-session markers removed."""
    source = os.environ if base is None else base
    return {k: v for k, v in source.items() if k not in SESSION_MARKER_VARS}


class ProcessSession:
    """
    One claude CLI invocation.

    Use as an async context manager so the child is terminated and reaped on
    every exit path:

        async with ProcessSession(request) as proc:
            async for line in proc.lines():
                ...
            await proc.wait()
    """

    def __init__(
        self,
        request: TurnRequest,
        executable: str | None = None,
        env: Mapping[str, str] | None = None,
    ):
        self.request = request
        self.argv: list[str] = []
        self._executable = executable
        self._env = env
        self._process: asyncio.subprocess.Process | None = None
        self._stderr_task: asyncio.Task[str] | None = None
        self._stderr_text = ""
        self._cancelled = False
        self._cancel_event = asyncio.Event()
        self._terminate_sent = False
        self._kill_task: asyncio.Task[None] | None = None

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    @property
    def returncode(self) -> int | None:
        return self._process.returncode if self._process else None

    @property
    def stderr_text(self) -> str:
        return self._stderr_text

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    async def __aenter__(self) -> "ProcessSession":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def start(self) -> None:
        """
        Spawn the CLI.

        Raises:
            ExecutableNotFound: No claude binary could be located or executed
            WorkingDirectoryNotFound: The request's working directory is missing
        """
        if self._process is not None:
            raise RuntimeError("Process session already started")

        executable = self._executable or find_executable()
        if executable is None:
            raise ExecutableNotFound()

        cwd = Path(self.request.working_directory).expanduser()
        if not cwd.is_dir():
            raise WorkingDirectoryNotFound(str(cwd))

        self.argv = build_command(executable, self.request)

        try:
            self._process = await asyncio.create_subprocess_exec(
                *self.argv,
                cwd=str(cwd),
                env=child_environment(self._env),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT,
                # Own process group, so signals also reach tools the CLI spawned
                start_new_session=True,
            )
        except FileNotFoundError as e:
            raise ExecutableNotFound() from e

        self._stderr_task = asyncio.create_task(self._drain_stderr())
        logger.info("Started %s (pid %d) in %s", executable, self._process.pid, cwd)

    async def _drain_stderr(self) -> str:
        # Read concurrently with stdout so a chatty stderr cannot fill the pipe.
        assert self._process is not None and self._process.stderr is not None
        data = await self._process.stderr.read()
        self._stderr_text = data.decode("utf-8", errors="replace")
        return self._stderr_text

    async def lines(self) -> AsyncIterator[str]:
        """
        Yield stdout lines as they arrive, without the trailing newline.

        Stops at EOF, or as soon as cancel() is called even if the child (or
        something it spawned) still holds stdout open.
        """
        if self._process is None or self._process.stdout is None:
            raise RuntimeError("Process session not started")

        stdout = self._process.stdout
        cancelled = asyncio.ensure_future(self._cancel_event.wait())
        read: asyncio.Future[bytes] | None = None
        try:
            while not self._cancel_event.is_set():
                read = asyncio.ensure_future(stdout.readline())
                await asyncio.wait({read, cancelled}, return_when=asyncio.FIRST_COMPLETED)
                if not read.done():
                    break

                try:
                    raw = read.result()
                except ValueError:
                    logger.warning("Skipping stdout line longer than %d bytes", STREAM_LIMIT)
                    continue

                if not raw:
                    break

                yield raw.decode("utf-8", errors="replace").rstrip("\r\n")
        finally:
            cancelled.cancel()
            if read is not None and not read.done():
                read.cancel()

    async def wait(self) -> int:
        """
        Wait for exit after stdout reached EOF.

        Returns:
            The exit code

        Raises:
            ProcessError: Non-zero exit with diagnostics on stderr. A non-zero
                exit with empty stderr, or any exit after cancel(), is a clean end.
        """
        if self._process is None:
            raise RuntimeError("Process session not started")

        returncode = await self._process.wait()
        stderr = await self._stderr_task if self._stderr_task else ""

        if returncode != 0:
            if self._cancelled:
                logger.info("CLI (pid %d) exited with %d after cancel", self._process.pid, returncode)
            elif stderr:
                raise ProcessError(returncode, stderr)
            else:
                logger.info(
                    "CLI (pid %d) exited with %d and empty stderr, treating as end of stream",
                    self._process.pid,
                    returncode,
                )

        return returncode

    def _signal(self, sig: signal.Signals) -> None:
        assert self._process is not None
        with contextlib.suppress(ProcessLookupError, PermissionError):
            os.killpg(self._process.pid, sig)

    def cancel(self) -> None:
        """
        Stop the child: lines() returns at once, SIGTERM goes to the process
        group, and SIGKILL follows after TERMINATE_GRACE_SECONDS. Safe to call
        repeatedly.
        """
        self._cancelled = True
        self._cancel_event.set()
        proc = self._process
        if proc is None or proc.returncode is not None or self._terminate_sent:
            return

        self._terminate_sent = True
        self._signal(signal.SIGTERM)
        logger.info("Sent terminate to CLI (pid %d)", proc.pid)
        self._kill_task = asyncio.create_task(self._kill_after_grace())

    async def _kill_after_grace(self) -> None:
        assert self._process is not None
        try:
            await asyncio.wait_for(self._process.wait(), timeout=TERMINATE_GRACE_SECONDS)
        except TimeoutError:
            logger.warning("CLI (pid %d) ignored terminate, killing", self._process.pid)
            self._signal(signal.SIGKILL)

    async def close(self) -> None:
        """Terminate (then kill) the child if needed and reap it."""
        proc = self._process
        if proc is None:
            return

        if proc.returncode is None:
            if not self._terminate_sent:
                self._terminate_sent = True
                self._signal(signal.SIGTERM)
            try:
                await asyncio.wait_for(proc.wait(), timeout=TERMINATE_GRACE_SECONDS)
            except TimeoutError:
                logger.warning("CLI (pid %d) ignored terminate, killing", proc.pid)
                self._signal(signal.SIGKILL)
                await proc.wait()

        if self._kill_task is not None and not self._kill_task.done():
            self._kill_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._kill_task

        if self._stderr_task is not None and not self._stderr_task.done():
            self._stderr_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._stderr_task
