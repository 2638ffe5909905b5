"""
MCP (Model Context Protocol) Connection Layer.

Connects to and manages multiple MCP tool servers over stdio, streamable
HTTP and SSE, and exposes a uniform capability surface over them.

Architecture:
    ConnectionRegistry -> ManagedConnection -> ClientSession -> Transport
    CapabilityService  -> ConnectionRegistry (lookup + per-server lock)

Components:
    - ConnectionRegistry: connect/disconnect lifecycle and status queries
    - CapabilityService: list/call/get/read with structured results
    - load_server_configs / import_server_configs: configuration sources
"""

from mcpchat.mcp.capabilities import CapabilityService
from mcpchat.mcp.config import (
    export_server_configs,
    import_server_configs,
    load_server_configs,
)
from mcpchat.mcp.errors import (
    ConfigurationError,
    ConnectFailure,
    MCPError,
    ProtocolCallFailure,
    ServerNotConnected,
    ServerNotFound,
    UnknownFunctionName,
    UnsupportedTransportKind,
)
from mcpchat.mcp.registry import ConnectionRegistry
from mcpchat.mcp.types import (
    ConnectionStatus,
    ConnectResult,
    HttpConfig,
    ListResult,
    PromptResult,
    ResourceResult,
    ServerConfig,
    ServerSnapshot,
    SseConfig,
    StdioConfig,
    ToolCallResult,
    ToolInfo,
    TransportType,
    parse_server_config,
)

__all__ = [
    # Registry
    "ConnectionRegistry",
    "ConnectionStatus",
    "ServerSnapshot",
    "ConnectResult",
    # Capabilities
    "CapabilityService",
    "ListResult",
    "ToolCallResult",
    "ToolInfo",
    "PromptResult",
    "ResourceResult",
    # Config
    "ServerConfig",
    "StdioConfig",
    "HttpConfig",
    "SseConfig",
    "TransportType",
    "parse_server_config",
    "load_server_configs",
    "import_server_configs",
    "export_server_configs",
    # Errors
    "MCPError",
    "ConfigurationError",
    "UnsupportedTransportKind",
    "ConnectFailure",
    "ServerNotFound",
    "ServerNotConnected",
    "ProtocolCallFailure",
    "UnknownFunctionName",
]
