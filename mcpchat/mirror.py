"""
Client-side presence mirror.

Keeps the user's configured servers and their last known status the way the
web client does: configurations and the ids that were connected in the last
session are persisted under the ``mcp-servers`` and ``mcp-connected-servers``
keys, and on start-up the mirror reconciles them with the registry's status
snapshot, replaying connects for servers that were connected before.

The mirror never owns a session. It only reflects registry state and asks the
registry to connect or disconnect. Reconnect-by-replay is best effort: the
status it shows can go stale the moment another caller touches the registry,
and ``sync_status()`` is the way back to the authoritative view.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Protocol

import httpx
import structlog

from mcpchat.mcp.config import export_server_configs, import_server_configs
from mcpchat.mcp.errors import MCPError
from mcpchat.mcp.registry import ConnectionRegistry
from mcpchat.mcp.types import (
    ConnectionStatus,
    ConnectResult,
    ServerConfig,
    ServerSnapshot,
    parse_server_config,
)

logger = structlog.get_logger(__name__)

SERVERS_KEY = "mcp-servers"
CONNECTED_SERVERS_KEY = "mcp-connected-servers"


class StatusUnavailable(MCPError):
    """The registry status snapshot could not be fetched."""

    default_message = "Registry status unavailable"


# ─────────────────────────────────────────────────────────────────────────────
# Persistence
# ─────────────────────────────────────────────────────────────────────────────


class ConfigStore:
    """Small JSON key-value store.

    Backed by a file when ``path`` is given, otherwise kept in memory.
    """

    def __init__(self, path: str | Path | None = None):
        self._path = Path(path) if path else None
        self._memory: dict[str, Any] = {}

    def _read(self) -> dict[str, Any]:
        if self._path is None:
            return dict(self._memory)
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text())
        except json.JSONDecodeError as e:
            logger.error("Config store is not valid JSON", path=str(self._path), error=e.msg)
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, key: str, value: Any) -> None:
        data = self._read()
        data[key] = value
        if self._path is None:
            self._memory = data
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(json.dumps(data, indent=2))

    def load_configs(self) -> list[ServerConfig]:
        raw = self._read().get(SERVERS_KEY) or []
        try:
            return [parse_server_config(item) for item in raw]
        except MCPError as e:
            logger.error("Failed to load saved servers", error=e.message)
            return []

    def save_configs(self, configs: list[ServerConfig]) -> None:
        self._write(SERVERS_KEY, [config.to_dict() for config in configs])

    def load_connected_ids(self) -> list[str]:
        ids = self._read().get(CONNECTED_SERVERS_KEY) or []
        return [str(i) for i in ids] if isinstance(ids, list) else []

    def save_connected_ids(self, ids: list[str]) -> None:
        self._write(CONNECTED_SERVERS_KEY, ids)


# ─────────────────────────────────────────────────────────────────────────────
# Registry backends
# ─────────────────────────────────────────────────────────────────────────────


class RegistryBackend(Protocol):
    async def fetch_statuses(self) -> list[ServerSnapshot]: ...

    async def connect(self, config: ServerConfig) -> ConnectResult: ...

    async def disconnect(self, server_id: str) -> ConnectResult: ...


class LocalRegistryBackend:
    """Backend talking to an in-process registry."""

    def __init__(self, registry: ConnectionRegistry):
        self._registry = registry

    async def fetch_statuses(self) -> list[ServerSnapshot]:
        return self._registry.get_all_servers()

    async def connect(self, config: ServerConfig) -> ConnectResult:
        return await self._registry.connect(config)

    async def disconnect(self, server_id: str) -> ConnectResult:
        return await self._registry.disconnect(server_id)


def _snapshot(item: dict[str, Any]) -> ServerSnapshot:
    return ServerSnapshot(
        id=item["id"],
        name=item.get("name", item["id"]),
        status=ConnectionStatus(item.get("status", ConnectionStatus.DISCONNECTED.value)),
        error=item.get("error"),
    )


class HttpRegistryBackend:
    """Backend talking to the HTTP API (``/api/mcp/*``)."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            transport=self._transport,
        )

    async def fetch_statuses(self) -> list[ServerSnapshot]:
        try:
            async with self._client() as client:
                response = await client.get("/api/mcp/status")
                response.raise_for_status()
                payload = response.json()
            return [_snapshot(item) for item in payload.get("servers", [])]
        except (httpx.HTTPError, ValueError) as e:
            raise StatusUnavailable(str(e) or type(e).__name__) from e
        except (KeyError, TypeError, AttributeError) as e:
            raise StatusUnavailable(f"Malformed status response: {e!r}") from e

    async def _post(self, path: str, body: dict[str, Any]) -> ConnectResult:
        try:
            async with self._client() as client:
                response = await client.post(path, json=body)
                payload = response.json()
        except (httpx.HTTPError, ValueError) as e:
            return ConnectResult(success=False, error=str(e) or type(e).__name__)
        if not isinstance(payload, dict):
            return ConnectResult(
                success=False, error=f"Malformed response from {path} ({response.status_code})"
            )
        return ConnectResult(success=bool(payload.get("success")), error=payload.get("error"))

    async def connect(self, config: ServerConfig) -> ConnectResult:
        return await self._post("/api/mcp/connect", {"config": config.to_dict()})

    async def disconnect(self, server_id: str) -> ConnectResult:
        return await self._post("/api/mcp/disconnect", {"serverId": server_id})


# ─────────────────────────────────────────────────────────────────────────────
# Mirror
# ─────────────────────────────────────────────────────────────────────────────


@dataclass
class ServerState:
    config: ServerConfig
    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"config": self.config.to_dict(), "status": self.status.value}
        if self.error:
            data["error"] = self.error
        return data


class PresenceMirror:
    """Configured servers plus the status the client believes they have."""

    def __init__(self, store: ConfigStore, backend: RegistryBackend):
        self._store = store
        self._backend = backend
        self._servers: list[ServerState] = []
        self._logger = logger.bind(component="PresenceMirror")

    @property
    def servers(self) -> list[ServerState]:
        return [replace(state) for state in self._servers]

    @property
    def connected_count(self) -> int:
        return sum(1 for s in self._servers if s.status == ConnectionStatus.CONNECTED)

    def _find(self, server_id: str) -> ServerState | None:
        return next((s for s in self._servers if s.config.id == server_id), None)

    def _set(self, server_id: str, status: ConnectionStatus, error: str | None = None) -> None:
        state = self._find(server_id)
        if state is not None:
            state.status = status
            state.error = error

    def _save_configs(self) -> None:
        self._store.save_configs([s.config for s in self._servers])

    def _save_connected(self) -> None:
        self._store.save_connected_ids(
            [s.config.id for s in self._servers if s.status == ConnectionStatus.CONNECTED]
        )

    # ─────────────────────────────────────────────────────────────────────
    # Restore
    # ─────────────────────────────────────────────────────────────────────

    async def initialize(self) -> None:
        """Restore saved servers and reconcile them with the registry.

        Servers the registry reports connected are adopted as connected.
        Servers remembered as connected but not connected server-side get one
        reconnect attempt. If the status query fails, every remembered server
        gets a reconnect attempt.
        """
        configs = self._store.load_configs()
        previously_connected = set(self._store.load_connected_ids())
        self._servers = [ServerState(config=config) for config in configs]

        try:
            snapshots = await self._backend.fetch_statuses()
        except StatusUnavailable as e:
            self._logger.warning("Status sync failed, replaying connects", error=e.message)
            for config in configs:
                if config.id in previously_connected:
                    await self._reconnect(config)
            return

        server_connected = {s.id for s in snapshots if s.status == ConnectionStatus.CONNECTED}
        for config in configs:
            if config.id in server_connected:
                self._set(config.id, ConnectionStatus.CONNECTED)
            elif config.id in previously_connected:
                await self._reconnect(config)

    async def _reconnect(self, config: ServerConfig) -> None:
        self._logger.info("Auto-reconnecting server", server_id=config.id, name=config.name)
        self._set(config.id, ConnectionStatus.CONNECTING)
        result = await self._backend.connect(config)
        if result.success:
            self._set(config.id, ConnectionStatus.CONNECTED)
        else:
            self._logger.warning("Auto-reconnect failed", server_id=config.id, error=result.error)
            self._set(config.id, ConnectionStatus.ERROR, result.error)

    # ─────────────────────────────────────────────────────────────────────
    # Configured set
    # ─────────────────────────────────────────────────────────────────────

    def add_server(self, config: ServerConfig) -> None:
        if self._find(config.id) is not None:
            raise ValueError(f"Server already configured: {config.id}")
        self._servers.append(ServerState(config=config))
        self._save_configs()

    def remove_server(self, server_id: str) -> None:
        self._servers = [s for s in self._servers if s.config.id != server_id]
        self._save_configs()
        self._save_connected()

    def update_server(self, config: ServerConfig) -> None:
        """Replace a stored config. A live connection keeps the old one until reconnected."""
        state = self._find(config.id)
        if state is not None:
            state.config = config
            self._save_configs()

    # ─────────────────────────────────────────────────────────────────────
    # Connection requests
    # ─────────────────────────────────────────────────────────────────────

    async def connect_server(self, server_id: str) -> bool:
        state = self._find(server_id)
        if state is None:
            return False

        self._set(server_id, ConnectionStatus.CONNECTING)
        result = await self._backend.connect(state.config)
        if result.success:
            self._set(server_id, ConnectionStatus.CONNECTED)
            self._save_connected()
        else:
            self._set(server_id, ConnectionStatus.ERROR, result.error or "Connection failed")
        return result.success

    async def disconnect_server(self, server_id: str) -> bool:
        result = await self._backend.disconnect(server_id)
        if result.success:
            self._set(server_id, ConnectionStatus.DISCONNECTED)
            self._save_connected()
        else:
            self._logger.warning("Disconnect failed", server_id=server_id, error=result.error)
        return result.success

    async def sync_status(self) -> None:
        """Overwrite local statuses with the registry's snapshot."""
        try:
            snapshots = await self._backend.fetch_statuses()
        except StatusUnavailable as e:
            self._logger.error("Sync status error", error=e.message)
            return

        by_id = {s.id: s for s in snapshots}
        for state in self._servers:
            snapshot = by_id.get(state.config.id)
            if snapshot is None:
                state.status, state.error = ConnectionStatus.DISCONNECTED, None
            else:
                state.status, state.error = snapshot.status, snapshot.error

    # ─────────────────────────────────────────────────────────────────────
    # Import / export
    # ─────────────────────────────────────────────────────────────────────

    def export_config(self) -> str:
        return export_server_configs(s.config for s in self._servers)

    def import_config(self, text: str) -> bool:
        """Replace the whole configured set; every imported server starts disconnected."""
        try:
            configs = import_server_configs(text)
        except MCPError as e:
            self._logger.error("Failed to import config", error=e.message)
            return False

        self._servers = [ServerState(config=config) for config in configs]
        self._save_configs()
        return True
