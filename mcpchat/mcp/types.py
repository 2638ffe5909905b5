"""
Data model for MCP server connections.

Server configurations cross the wire (API requests, import/export files) and
are validated with pydantic. Runtime descriptors and operation results are
plain dataclasses with ``to_dict()`` helpers producing the camelCase keys the
web client expects.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError, model_validator

from mcpchat.mcp.errors import ConfigurationError, UnsupportedTransportKind


class TransportType(str, Enum):
    """MCP transport types."""

    STDIO = "stdio"
    HTTP = "http"
    SSE = "sse"


class ConnectionStatus(str, Enum):
    """Connection state of one server in the registry."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


# ─────────────────────────────────────────────────────────────────────────────
# Server configuration
# ─────────────────────────────────────────────────────────────────────────────


class StdioConfig(BaseModel):
    """Subprocess transport: command, arguments and an environment overlay."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    command: str
    args: list[str] = []
    env: dict[str, str] | None = None


class HttpConfig(BaseModel):
    """Streamable HTTP transport endpoint."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    url: str


class SseConfig(BaseModel):
    """Server-sent events transport endpoint."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    url: str


TransportParams = StdioConfig | HttpConfig | SseConfig

PARAMS_BY_TRANSPORT: dict[TransportType, type[BaseModel]] = {
    TransportType.STDIO: StdioConfig,
    TransportType.HTTP: HttpConfig,
    TransportType.SSE: SseConfig,
}


class ServerConfig(BaseModel):
    """Identity and connection recipe for one tool server.

    ``config`` is a tagged union selected by ``transport``; its shape is
    checked against the tag when the model is built.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    transport: TransportType
    config: TransportParams

    @model_validator(mode="before")
    @classmethod
    def _select_params(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        try:
            transport = TransportType(data.get("transport"))
        except ValueError:
            return data
        params = data.get("config")
        params_cls = PARAMS_BY_TRANSPORT[transport]
        if isinstance(params, BaseModel) and not isinstance(params, params_cls):
            params = params.model_dump()
        if not isinstance(params, params_cls):
            try:
                params = params_cls.model_validate(params if params is not None else {})
            except ValidationError as e:
                problems = "; ".join(
                    f"{'.'.join(str(p) for p in err['loc']) or 'config'} {err['msg'].lower()}"
                    for err in e.errors()
                )
                raise ValueError(f"{transport.value} config: {problems}") from e
        return {**data, "config": params}

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the JSON shape used for storage and export."""
        return self.model_dump(mode="json", exclude_none=True)


def parse_server_config(data: Any) -> ServerConfig:
    """Build a ServerConfig from untrusted input.

    Raises:
        UnsupportedTransportKind: transport tag is not stdio/http/sse
        ConfigurationError: anything else is missing or malformed
    """
    if isinstance(data, ServerConfig):
        return data
    if not isinstance(data, dict):
        raise ConfigurationError("Server configuration must be an object")

    transport = data.get("transport")
    if not transport:
        raise ConfigurationError("Server configuration is missing 'transport'")
    if not isinstance(transport, str):
        raise ConfigurationError("Server configuration 'transport' must be a string")
    if transport not in {t.value for t in TransportType}:
        raise UnsupportedTransportKind(str(transport))

    try:
        return ServerConfig.model_validate(data)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'config'}: {err['msg']}"
            for err in e.errors()
        )
        raise ConfigurationError(f"Invalid server configuration: {problems}") from e


# ─────────────────────────────────────────────────────────────────────────────
# Registry snapshots and capability descriptors
# ─────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ServerSnapshot:
    """Read-only view of a registry entry."""

    id: str
    name: str
    status: ConnectionStatus
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "status": self.status.value,
        }
        if self.error:
            data["error"] = self.error
        return data


@dataclass
class ToolInfo:
    """Tool advertised by a connected server."""

    name: str
    description: str | None = None
    input_schema: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema,
        }


@dataclass
class PromptArgument:
    name: str
    description: str | None = None
    required: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "required": self.required,
        }


@dataclass
class PromptInfo:
    """Prompt template advertised by a connected server."""

    name: str
    description: str | None = None
    arguments: list[PromptArgument] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "arguments": [arg.to_dict() for arg in self.arguments],
        }


@dataclass
class ResourceInfo:
    """Resource advertised by a connected server."""

    uri: str
    name: str | None = None
    description: str | None = None
    mime_type: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "uri": self.uri,
            "name": self.name,
            "description": self.description,
            "mimeType": self.mime_type,
        }


# ─────────────────────────────────────────────────────────────────────────────
# Operation results
# ─────────────────────────────────────────────────────────────────────────────


@dataclass
class ConnectResult:
    """Outcome of connect/disconnect."""

    success: bool
    error: str | None = None


@dataclass
class ListResult:
    """Outcome of list_tools / list_prompts / list_resources."""

    success: bool
    data: list[Any] = field(default_factory=list)
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        if not self.success:
            return {"success": False, "error": self.error}
        return {
            "success": True,
            "data": [item.to_dict() for item in self.data],
        }


@dataclass
class ToolCallResult:
    """Result from executing an MCP tool."""

    tool_name: str
    success: bool
    result: Any = None
    error: str | None = None
    duration_ms: int = 0


@dataclass
class PromptResult:
    success: bool
    messages: list[dict[str, Any]] = field(default_factory=list)
    error: str | None = None


@dataclass
class ResourceResult:
    success: bool
    contents: list[dict[str, Any]] = field(default_factory=list)
    error: str | None = None
