"""
Connection registry for MCP servers.

The registry is the sole owner of live sessions and subprocess handles. It
is constructed explicitly at process start, passed to the components that
need it, and swept with ``aclose()`` on shutdown.

State machine per server id:

    disconnected -> connecting -> connected | error
    connected    -> disconnected                     (disconnect)
    connected    -> connecting -> connected | error  (reconnect)

Operations on one id serialize on a per-id lock; different ids never share
a lock, so a slow handshake on one server does not hold up the others.

Usage:
    async with ConnectionRegistry() as registry:
        result = await registry.connect(config)
        registry.get_status(config.id)
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator

import structlog

from mcpchat.mcp.connection import ManagedConnection, SessionFactory
from mcpchat.mcp.errors import ConnectFailure, ServerNotFound, error_message
from mcpchat.mcp.transports import open_session
from mcpchat.mcp.types import ConnectionStatus, ConnectResult, ServerConfig, ServerSnapshot

logger = structlog.get_logger(__name__)

DEFAULT_CONNECT_TIMEOUT = 30.0
DEFAULT_CLOSE_TIMEOUT = 10.0


class ConnectionRegistry:
    """Process-wide table of managed MCP connections keyed by server id."""

    def __init__(
        self,
        session_factory: SessionFactory = open_session,
        *,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        close_timeout: float = DEFAULT_CLOSE_TIMEOUT,
    ):
        self._session_factory = session_factory
        self._connect_timeout = connect_timeout
        self._close_timeout = close_timeout
        self._connections: dict[str, ManagedConnection] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}
        self._logger = logger.bind(component="ConnectionRegistry")

    async def __aenter__(self) -> ConnectionRegistry:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    @asynccontextmanager
    async def hold(self, server_id: str) -> AsyncIterator[None]:
        """Serialize the enclosed block with every other operation on ``server_id``.

        The lock is dropped once nobody holds or waits on it and the id is
        no longer registered, so the table stays bounded by live entries.
        """
        lock = self._locks.get(server_id)
        if lock is None:
            lock = self._locks[server_id] = asyncio.Lock()
        self._lock_users[server_id] = self._lock_users.get(server_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[server_id] -= 1
            if not self._lock_users[server_id]:
                del self._lock_users[server_id]
                if server_id not in self._connections:
                    self._locks.pop(server_id, None)

    # ─────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────

    async def connect(self, config: ServerConfig) -> ConnectResult:
        """Connect to a server, replacing any existing entry for its id.

        Never raises for connection problems: failures leave the entry in
        ``error`` with the failure message.
        """
        log = self._logger.bind(server_id=config.id, server_name=config.name)

        async with self.hold(config.id):
            existing = self._connections.get(config.id)
            if existing is not None:
                log.info("Server already registered, disconnecting first")
                await self._teardown(existing)
                self._connections.pop(config.id, None)

            connection = ManagedConnection(config, self._session_factory)
            self._connections[config.id] = connection

            try:
                await connection.open(self._connect_timeout)
            except ConnectFailure as e:
                log.error("Failed to connect to MCP server", error=e.message)
                return ConnectResult(success=False, error=e.message)

        log.info("Connected to MCP server", transport=config.transport.value)
        return ConnectResult(success=True)

    async def disconnect(self, server_id: str) -> ConnectResult:
        """Close a server's session and forget it.

        The entry is removed even when closing fails; the failure is
        reported in the result.
        """
        log = self._logger.bind(server_id=server_id)

        if server_id not in self._connections and server_id not in self._locks:
            return ConnectResult(success=False, error=ServerNotFound().message)

        async with self.hold(server_id):
            connection = self._connections.get(server_id)
            if connection is None:
                return ConnectResult(success=False, error=ServerNotFound().message)
            try:
                error = await self._teardown(connection)
            finally:
                self._connections.pop(server_id, None)

        if error:
            return ConnectResult(success=False, error=error)
        log.info("Disconnected from MCP server")
        return ConnectResult(success=True)

    async def aclose(self) -> None:
        """Disconnect every tracked server (process shutdown)."""
        server_ids = list(self._connections)
        if not server_ids:
            return
        self._logger.info("Disconnecting all MCP servers", count=len(server_ids))
        await asyncio.gather(*(self.disconnect(sid) for sid in server_ids))

    async def _teardown(self, connection: ManagedConnection) -> str | None:
        try:
            await connection.close(self._close_timeout)
        except Exception as e:
            message = error_message(e)
            self._logger.warning(
                "Failed to close MCP session cleanly",
                server_id=connection.server_id,
                error=message,
            )
            return message
        return None

    # ─────────────────────────────────────────────────────────────────────
    # Queries
    # ─────────────────────────────────────────────────────────────────────

    def get_status(self, server_id: str) -> ConnectionStatus:
        """Current status; unknown ids report ``disconnected``."""
        connection = self._connections.get(server_id)
        if connection is None:
            return ConnectionStatus.DISCONNECTED
        return connection.status

    def get_all_servers(self) -> list[ServerSnapshot]:
        """Snapshot of every tracked entry."""
        return [connection.snapshot() for connection in list(self._connections.values())]

    def connected_servers(self) -> list[ServerSnapshot]:
        return [s for s in self.get_all_servers() if s.status == ConnectionStatus.CONNECTED]

    def get_connection(self, server_id: str) -> ManagedConnection | None:
        """Live record for the capability layer. Not for use outside mcpchat.mcp."""
        return self._connections.get(server_id)

    def get_config(self, server_id: str) -> ServerConfig | None:
        connection = self._connections.get(server_id)
        return connection.config if connection else None

    def get_health_summary(self) -> dict[str, int]:
        """Count of servers per status."""
        summary = {status.value: 0 for status in ConnectionStatus}
        for snapshot in self.get_all_servers():
            summary[snapshot.status.value] += 1
        return summary
