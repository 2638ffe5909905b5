"""
Error taxonomy for the MCP connection layer.

The registry and the capability service never let these escape their public
methods; they are converted into structured ``{success, error}`` results.
They are raised internally (and by config parsing) so that each failure
keeps a precise type until it reaches that boundary.
"""

from __future__ import annotations


class MCPError(Exception):
    """Base class for connection-layer errors."""

    default_message = "MCP error"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ConfigurationError(MCPError):
    """Server configuration is malformed (e.g. params don't match transport)."""

    default_message = "Invalid server configuration"


class UnsupportedTransportKind(ConfigurationError):
    """The configuration names a transport no adapter implements."""

    def __init__(self, transport: str):
        self.transport = transport
        super().__init__(f"Unsupported transport type: {transport}")


class ConnectFailure(MCPError):
    """Transport construction or protocol handshake failed."""

    default_message = "Connection failed"


class ServerNotFound(MCPError):
    default_message = "Server not found"


class ServerNotConnected(MCPError):
    default_message = "Server not connected"


class ProtocolCallFailure(MCPError):
    """A list/call/get/read request failed on the remote side or timed out."""

    default_message = "Protocol call failed"


class UnknownFunctionName(MCPError):
    """The model asked for a function that maps to no aggregated tool."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Unknown tool function: {name}")


def error_message(exc: BaseException) -> str:
    """Human-readable message for an exception.

    anyio task groups inside the MCP SDK wrap failures in exception groups;
    the first leaf carries the useful message.
    """
    while isinstance(exc, BaseExceptionGroup) and exc.exceptions:
        exc = exc.exceptions[0]
    if isinstance(exc, MCPError):
        return exc.message
    if isinstance(exc, TimeoutError):
        return str(exc) or "Operation timed out"
    text = str(exc)
    return text if text else type(exc).__name__
