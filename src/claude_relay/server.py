# ABOUTME: WebSocket server entrypoint for Claude Relay
# ABOUTME: Handles front-end connections and routes them to the SessionManager

"""WebSocket server entrypoint for Claude Relay."""

import asyncio
import json
import logging
import os
import signal
from typing import NoReturn

import websockets
from websockets import ServerConnection

from .errors import ConversationNotFound
from .protocol import (
    CancelMessage,
    CloseSessionMessage,
    ErrorMessage,
    ForkedMessage,
    ForkMessage,
    QueryMessage,
    parse_inbound,
)
from .session import DEFAULT_MODEL, SessionManager

logger = logging.getLogger(__name__)


class ClaudeRelayServer:
    """WebSocket server for Claude Relay."""

    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int = 31337,
        idle_timeout: int = 900,
        executable: str | None = None,
        default_model: str | None = DEFAULT_MODEL,
    ):
        self.host = host
        self.port = port
        self.session_manager = SessionManager(
            idle_timeout_seconds=idle_timeout,
            executable=executable,
            default_model=default_model,
        )
        self._server: websockets.Server | None = None
        self._shutdown_event = asyncio.Event()

    async def start(self) -> None:
        """Start the WebSocket server."""
        await self.session_manager.start()

        self._server = await websockets.serve(
            self._handle_connection,
            self.host,
            self.port,
        )

        logger.info("Claude Relay listening on ws://%s:%d", self.host, self.port)

    async def stop(self) -> None:
        """Stop the WebSocket server."""
        if self._server:
            self._server.close()
            await self._server.wait_closed()

        await self.session_manager.stop()
        logger.info("Claude Relay stopped")

    async def _handle_connection(self, websocket: ServerConnection) -> None:
        """Handle a WebSocket connection from a front-end."""
        client_addr = websocket.remote_address
        logger.info("New connection from %s", client_addr)

        # Queries run as tasks so cancel/fork can arrive while a turn streams.
        query_tasks: set[asyncio.Task] = set()

        try:
            async for raw_message in websocket:
                await self._handle_message(websocket, raw_message, query_tasks)
        except websockets.exceptions.ConnectionClosed:
            logger.info("Connection closed from %s", client_addr)
        except Exception as e:
            logger.exception("Error handling connection from %s: %s", client_addr, e)
        finally:
            for task in query_tasks:
                task.cancel()
            if query_tasks:
                await asyncio.gather(*query_tasks, return_exceptions=True)

    async def _handle_message(
        self,
        websocket: ServerConnection,
        raw_message: str | bytes,
        query_tasks: set[asyncio.Task],
    ) -> None:
        """Handle a single message from a front-end."""
        try:
            if isinstance(raw_message, bytes):
                raw_message = raw_message.decode("utf-8")

            data = json.loads(raw_message)
            message = parse_inbound(data)

            if isinstance(message, QueryMessage):
                task = asyncio.create_task(self._handle_query(websocket, message))
                query_tasks.add(task)
                task.add_done_callback(query_tasks.discard)
            elif isinstance(message, CancelMessage):
                self._handle_cancel(message)
            elif isinstance(message, ForkMessage):
                await self._handle_fork(websocket, message)
            elif isinstance(message, CloseSessionMessage):
                await self._handle_close_session(message)
            else:
                logger.warning("Unknown message type: %s", type(message))

        except json.JSONDecodeError as e:
            logger.error("Invalid JSON: %s", e)
        except ValueError as e:
            logger.error("Invalid message: %s", e)

    async def _handle_query(
        self,
        websocket: ServerConnection,
        message: QueryMessage,
    ) -> None:
        """Handle a query message."""
        logger.info(
            "Query for conversation %s: %s...",
            message.conversation_id,
            message.prompt[:50] if len(message.prompt) > 50 else message.prompt,
        )

        async for response in self.session_manager.process_query(message):
            await websocket.send(response.model_dump_json())

    def _handle_cancel(self, message: CancelMessage) -> None:
        """Handle a cancel message."""
        if not self.session_manager.cancel(message.conversation_id):
            logger.info("No running turn to cancel for conversation %s", message.conversation_id)

    async def _handle_fork(self, websocket: ServerConnection, message: ForkMessage) -> None:
        """Handle a fork message."""
        try:
            new_id = self.session_manager.fork(message.conversation_id)
        except ConversationNotFound as e:
            response = ErrorMessage(conversation_id=message.conversation_id, message=str(e))
        else:
            response = ForkedMessage(
                source_conversation_id=message.conversation_id,
                conversation_id=new_id,
            )
        await websocket.send(response.model_dump_json())

    async def _handle_close_session(self, message: CloseSessionMessage) -> None:
        """Handle a close session message."""
        logger.info("Closing session for conversation %s", message.conversation_id)
        await self.session_manager.close_session(message.conversation_id)

    async def run_forever(self) -> NoReturn:
        """Run the server until shutdown signal."""
        await self.start()

        # Set up signal handlers
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._shutdown_event.set)

        await self._shutdown_event.wait()
        await self.stop()


def main() -> None:
    """Main entrypoint for Claude Relay."""
    # Configure logging
    log_level = os.environ.get("CLAUDE_RELAY_LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    # Get configuration from environment
    host = os.environ.get("CLAUDE_RELAY_HOST", "127.0.0.1")
    port = int(os.environ.get("CLAUDE_RELAY_PORT", "31337"))
    idle_timeout = int(os.environ.get("CLAUDE_RELAY_IDLE_TIMEOUT", "900"))
    executable = os.environ.get("CLAUDE_BIN") or None
    default_model = os.environ.get("CLAUDE_RELAY_DEFAULT_MODEL", DEFAULT_MODEL)

    logger.info("Starting Claude Relay...")
    logger.info("  Host: %s", host)
    logger.info("  Port: %d", port)
    logger.info("  Idle timeout: %ds", idle_timeout)
    logger.info("  CLI: %s", executable or "auto-detect")

    server = ClaudeRelayServer(
        host=host,
        port=port,
        idle_timeout=idle_timeout,
        executable=executable,
        default_model=default_model,
    )

    asyncio.run(server.run_forever())


if __name__ == "__main__":
    main()
