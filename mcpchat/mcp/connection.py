"""
Managed connection to a single MCP server.

The MCP SDK builds its transports and sessions on anyio task groups, whose
context managers must be entered and exited by the same task. Request
handlers that connect and disconnect a server are different tasks, so each
connection runs its session inside a dedicated owner task:

    open()  -> spawn owner task -> enter transport + session -> ready
    close() -> signal stop      -> owner task exits contexts  -> done

The owner task is the only place a session is created or torn down.
"""

from __future__ import annotations

import asyncio
from contextlib import AbstractAsyncContextManager, suppress
from typing import Any, Callable

import structlog

from mcpchat.mcp.errors import ConnectFailure, error_message
from mcpchat.mcp.types import ConnectionStatus, ServerConfig, ServerSnapshot

logger = structlog.get_logger(__name__)

SessionFactory = Callable[[ServerConfig], AbstractAsyncContextManager[Any]]


class ManagedConnection:
    """Runtime record for one server: config, status, last error, session."""

    def __init__(self, config: ServerConfig, session_factory: SessionFactory):
        self.config = config
        self.status = ConnectionStatus.DISCONNECTED
        self.last_error: str | None = None
        self.session: Any = None
        self._session_factory = session_factory
        self._task: asyncio.Task | None = None
        self._ready = asyncio.Event()
        self._stop = asyncio.Event()
        self._open_error: BaseException | None = None
        self._close_error: BaseException | None = None
        self._logger = logger.bind(server_id=config.id, server_name=config.name)

    @property
    def server_id(self) -> str:
        return self.config.id

    @property
    def connected(self) -> bool:
        return self.status == ConnectionStatus.CONNECTED and self.session is not None

    def snapshot(self) -> ServerSnapshot:
        return ServerSnapshot(
            id=self.config.id,
            name=self.config.name,
            status=self.status,
            error=self.last_error,
        )

    # ─────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────

    async def open(self, timeout: float) -> None:
        """Start the owner task and wait for the handshake.

        Raises:
            ConnectFailure: transport, handshake or timeout failure. The
                connection is left in ``error`` with no live session.
        """
        if self._task is not None:
            raise ConnectFailure("Connection already opened")

        self.status = ConnectionStatus.CONNECTING
        self.last_error = None
        self._task = asyncio.create_task(
            self._run(), name=f"mcp-session-{self.config.id}"
        )

        try:
            await asyncio.wait_for(self._ready.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            await self._cancel_task()
            self._mark_error(f"Connection timed out after {timeout:g}s")
            raise ConnectFailure(self.last_error)
        except asyncio.CancelledError:
            await self._cancel_task()
            self._mark_error("Connection attempt cancelled")
            raise

        if self._open_error is not None or self.session is None:
            await self._cancel_task()
            message = (
                error_message(self._open_error)
                if self._open_error is not None
                else "Session closed during handshake"
            )
            self._mark_error(message)
            raise ConnectFailure(message) from self._open_error

        self.status = ConnectionStatus.CONNECTED

    async def close(self, timeout: float) -> None:
        """Stop the owner task and wait for the session to be torn down.

        The connection ends ``disconnected`` whatever happens; a teardown
        failure is re-raised after the state has been updated.
        """
        task = self._task
        if task is None:
            self.status = ConnectionStatus.DISCONNECTED
            return

        self._stop.set()
        try:
            await asyncio.wait_for(task, timeout=timeout)
        except asyncio.TimeoutError:
            self._close_error = self._close_error or TimeoutError(
                f"Session teardown timed out after {timeout:g}s"
            )
        except asyncio.CancelledError:
            if not task.done():
                raise

        self.session = None
        self.status = ConnectionStatus.DISCONNECTED
        self._task = None

        if self._close_error is not None:
            error, self._close_error = self._close_error, None
            raise error

    async def _run(self) -> None:
        """Owner task: hold the transport and session open until stopped."""
        try:
            async with self._session_factory(self.config) as session:
                self.session = session
                self._ready.set()
                await self._stop.wait()
        except Exception as e:
            if not self._ready.is_set():
                self._open_error = e
            elif self._stop.is_set():
                self._close_error = e
                self._logger.warning("MCP session teardown failed", error=error_message(e))
            else:
                # Remote side went away while we were connected.
                self._mark_error(f"Connection lost: {error_message(e)}")
                self._logger.warning("MCP connection lost", error=error_message(e))
        finally:
            self.session = None
            self._ready.set()

    async def _cancel_task(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        if not task.done():
            task.cancel()
        with suppress(asyncio.CancelledError):
            await task
        self.session = None

    def _mark_error(self, message: str) -> None:
        self.session = None
        self.status = ConnectionStatus.ERROR
        self.last_error = message
