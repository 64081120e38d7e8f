# ABOUTME: One cancellable request/response cycle with the claude CLI
# ABOUTME: Wires the process session, line decoding, reducer and entity store together

"""One cancellable request/response cycle with the claude CLI."""

import contextlib
import logging
from typing import AsyncIterator, Mapping, Sequence

from .errors import ClaudeRelayError, ProcessError, classify_process_error
from .process import PermissionMode, ProcessSession, TurnRequest
from .reducer import TurnPhase, TurnReducer, TurnUpdate
from .registry import SessionRegistry
from .store import EntityStore, StoredMessage

logger = logging.getLogger(__name__)


class Turn:
    """
    Runs one prompt through the CLI and persists the resulting message.

    Iterate ``run()`` for incremental updates. Whatever happens (normal end,
    cancel(), process error, the consumer walking away) the partial turn is
    finalized and saved before the iterator finishes. A ProcessError is
    re-raised only after that save.
    """

    def __init__(
        self,
        conversation_id: str,
        request: TurnRequest,
        store: EntityStore,
        registry: SessionRegistry,
        executable: str | None = None,
        env: Mapping[str, str] | None = None,
    ):
        self.conversation_id = conversation_id
        self.request = request
        self.store = store
        self.registry = registry
        self.reducer = TurnReducer(conversation_id, registry, model=request.model)
        self.process = ProcessSession(request, executable=executable, env=env)

        self.finalized: StoredMessage | None = None
        self.error: ClaudeRelayError | None = None
        self._cancelled = False
        self._started = False

    @classmethod
    def for_conversation(
        cls,
        store: EntityStore,
        registry: SessionRegistry,
        conversation_id: str,
        prompt: str,
        *,
        model: str | None = None,
        resume_session_id: str | None = None,
        continue_session: bool = False,
        system_prompt: str | None = None,
        max_turns: int | None = None,
        max_budget_usd: float | None = None,
        allowed_tools: Sequence[str] | None = None,
        permission_mode: PermissionMode | str | None = None,
        executable: str | None = None,
        env: Mapping[str, str] | None = None,
    ) -> "Turn":
        """Build a turn that resumes the conversation's last known session."""
        conversation = store.get_conversation(conversation_id)
        request = TurnRequest(
            prompt=prompt,
            working_directory=conversation.working_directory,
            model=model,
            resume_session_id=resume_session_id or registry.current_session_id(conversation_id),
            continue_session=continue_session,
            system_prompt=system_prompt,
            max_turns=max_turns,
            max_budget_usd=max_budget_usd,
            allowed_tools=allowed_tools,
            permission_mode=permission_mode,
        )
        return cls(conversation_id, request, store, registry, executable=executable, env=env)

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def phase(self) -> TurnPhase:
        return self.reducer.phase

    def cancel(self) -> None:
        """Stop reading output and terminate the CLI. Safe to call repeatedly."""
        if not self._cancelled:
            logger.info("Cancelling turn for conversation %s", self.conversation_id)
        self._cancelled = True
        self.process.cancel()

    async def run(self) -> AsyncIterator[TurnUpdate]:
        """
        Spawn the CLI and yield updates as output arrives.

        Raises:
            ExecutableNotFound: Before anything is spawned or saved
            WorkingDirectoryNotFound: Before anything is spawned or saved
            ProcessError: After the partial turn has been saved
        """
        if self._started:
            raise RuntimeError("Turn already started")
        self._started = True

        if self._cancelled:
            self.reducer.finish()
            return

        async with self.process:
            self.store.save_message(
                self.conversation_id,
                StoredMessage(role="user", content=self.request.prompt, model_id=self.request.model),
            )
            try:
                async with contextlib.aclosing(self.process.lines()) as lines:
                    async for line in lines:
                        if self._cancelled:
                            break
                        for update in self.reducer.feed_line(line):
                            yield update

                if not self._cancelled:
                    await self.process.wait()
            except ProcessError as e:
                self.error = classify_process_error(e)
                logger.warning("Turn for conversation %s failed: %s", self.conversation_id, e)
            finally:
                self._finalize()

        if self.error is not None:
            raise self.error

    def _finalize(self) -> None:
        message = self.reducer.finish()
        if message is None:
            logger.debug("Turn for conversation %s produced no output", self.conversation_id)
            return
        self.finalized = self.store.save_finalized_message(self.conversation_id, message.to_stored())
