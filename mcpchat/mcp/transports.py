"""
Transport adapters for MCP servers.

Each adapter is an async context manager yielding the ``(read, write)``
stream pair that ``mcp.ClientSession`` runs on. Leaving the context closes
the channel: the stdio adapter terminates its subprocess, the HTTP and SSE
adapters close their connections.

Security Note: the stdio adapter goes through the MCP SDK, which spawns the
server with an argument vector (no shell), so arguments are never
interpolated by a shell.
"""

from __future__ import annotations

import os
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import structlog
from mcp import ClientSession, StdioServerParameters
from mcp import types as mcp_types
from mcp.client.sse import sse_client
from mcp.client.stdio import stdio_client
from mcp.client.streamable_http import streamablehttp_client

from mcpchat.mcp.errors import UnsupportedTransportKind
from mcpchat.mcp.types import HttpConfig, ServerConfig, SseConfig, StdioConfig, TransportType

logger = structlog.get_logger(__name__)

CLIENT_NAME = "mcpchat"
CLIENT_VERSION = "1.0.0"


def build_stdio_parameters(params: StdioConfig) -> StdioServerParameters:
    """Subprocess parameters with the overlay merged over the host environment."""
    env = {**os.environ, **(params.env or {})}
    return StdioServerParameters(
        command=params.command,
        args=list(params.args),
        env=env,
    )


@asynccontextmanager
async def open_transport(config: ServerConfig) -> AsyncIterator[tuple[Any, Any]]:
    """Open the message channel described by ``config``.

    Raises:
        UnsupportedTransportKind: no adapter for ``config.transport``
    """
    log = logger.bind(server_id=config.id, transport=config.transport.value)
    params = config.config

    if config.transport == TransportType.STDIO and isinstance(params, StdioConfig):
        log.info("Starting MCP server process", command=params.command, args=params.args)
        async with stdio_client(build_stdio_parameters(params)) as (read, write):
            yield read, write

    elif config.transport == TransportType.HTTP and isinstance(params, HttpConfig):
        log.info("Opening streamable HTTP transport", url=params.url)
        async with streamablehttp_client(params.url) as (read, write, _get_session_id):
            yield read, write

    elif config.transport == TransportType.SSE and isinstance(params, SseConfig):
        log.info("Opening SSE transport", url=params.url)
        async with sse_client(params.url) as (read, write):
            yield read, write

    else:
        raise UnsupportedTransportKind(str(getattr(config.transport, "value", config.transport)))


@asynccontextmanager
async def open_session(config: ServerConfig) -> AsyncIterator[ClientSession]:
    """Open a transport, wrap it in a ClientSession and run the handshake."""
    async with open_transport(config) as (read, write):
        client_info = mcp_types.Implementation(
            name=f"{CLIENT_NAME}-{config.id}", version=CLIENT_VERSION
        )
        async with ClientSession(read, write, client_info=client_info) as session:
            result = await session.initialize()
            logger.info(
                "MCP handshake complete",
                server_id=config.id,
                server_name=getattr(result.serverInfo, "name", None),
                protocol_version=result.protocolVersion,
            )
            yield session
