"""
Capability operations against connected MCP servers.

Every operation follows the same path: look up the registry entry, refuse
anything that is not ``connected`` (no implicit connect), run exactly one
attempt under the per-call timeout while holding the server's lock, and
normalize the payload or the failure into a structured result.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, TypeVar

import structlog
from pydantic import AnyUrl

from mcpchat.mcp.errors import MCPError, ProtocolCallFailure, ServerNotConnected, error_message
from mcpchat.mcp.registry import ConnectionRegistry
from mcpchat.mcp.types import (
    ListResult,
    PromptArgument,
    PromptInfo,
    PromptResult,
    ResourceInfo,
    ResourceResult,
    ToolCallResult,
    ToolInfo,
)

logger = structlog.get_logger(__name__)

DEFAULT_CALL_TIMEOUT = 60.0

T = TypeVar("T")


def _dump(value: Any) -> Any:
    """Convert SDK models into JSON-ready structures."""
    if hasattr(value, "model_dump"):
        return value.model_dump(mode="json", by_alias=True, exclude_none=True)
    if isinstance(value, list):
        return [_dump(item) for item in value]
    return value


class CapabilityService:
    """Uniform list/call/get/read surface over the registry's sessions."""

    def __init__(self, registry: ConnectionRegistry, *, call_timeout: float = DEFAULT_CALL_TIMEOUT):
        self._registry = registry
        self._call_timeout = call_timeout
        self._logger = logger.bind(component="CapabilityService")

    @property
    def registry(self) -> ConnectionRegistry:
        return self._registry

    async def _invoke(
        self,
        server_id: str,
        operation: str,
        call: Callable[[Any], Awaitable[T]],
    ) -> T:
        connection = self._registry.get_connection(server_id)
        if connection is None or not connection.connected:
            raise ServerNotConnected()

        async with self._registry.hold(server_id):
            # A disconnect may have won the lock while we waited.
            connection = self._registry.get_connection(server_id)
            if connection is None or not connection.connected:
                raise ServerNotConnected()
            try:
                return await asyncio.wait_for(call(connection.session), timeout=self._call_timeout)
            except asyncio.TimeoutError as e:
                raise ProtocolCallFailure(
                    f"{operation} timed out after {self._call_timeout:g}s"
                ) from e
            except MCPError:
                raise
            except Exception as e:
                raise ProtocolCallFailure(error_message(e)) from e

    def _log_failure(self, server_id: str, operation: str, error: MCPError) -> None:
        self._logger.warning(
            "MCP operation failed",
            server_id=server_id,
            operation=operation,
            error=error.message,
        )

    # ─────────────────────────────────────────────────────────────────────
    # Discovery
    # ─────────────────────────────────────────────────────────────────────

    async def list_tools(self, server_id: str) -> ListResult:
        try:
            result = await self._invoke(server_id, "tools/list", lambda s: s.list_tools())
        except MCPError as e:
            self._log_failure(server_id, "tools/list", e)
            return ListResult(success=False, error=e.message)

        tools = [
            ToolInfo(
                name=tool.name,
                description=tool.description,
                input_schema=dict(tool.inputSchema or {}),
            )
            for tool in result.tools
        ]
        return ListResult(success=True, data=tools)

    async def list_prompts(self, server_id: str) -> ListResult:
        try:
            result = await self._invoke(server_id, "prompts/list", lambda s: s.list_prompts())
        except MCPError as e:
            self._log_failure(server_id, "prompts/list", e)
            return ListResult(success=False, error=e.message)

        prompts = [
            PromptInfo(
                name=prompt.name,
                description=prompt.description,
                arguments=[
                    PromptArgument(
                        name=arg.name,
                        description=arg.description,
                        required=bool(arg.required),
                    )
                    for arg in (prompt.arguments or [])
                ],
            )
            for prompt in result.prompts
        ]
        return ListResult(success=True, data=prompts)

    async def list_resources(self, server_id: str) -> ListResult:
        try:
            result = await self._invoke(server_id, "resources/list", lambda s: s.list_resources())
        except MCPError as e:
            self._log_failure(server_id, "resources/list", e)
            return ListResult(success=False, error=e.message)

        resources = [
            ResourceInfo(
                uri=str(resource.uri),
                name=resource.name,
                description=resource.description,
                mime_type=resource.mimeType,
            )
            for resource in result.resources
        ]
        return ListResult(success=True, data=resources)

    # ─────────────────────────────────────────────────────────────────────
    # Execution
    # ─────────────────────────────────────────────────────────────────────

    async def call_tool(
        self,
        server_id: str,
        tool_name: str,
        arguments: dict[str, Any] | None = None,
    ) -> ToolCallResult:
        """Execute a tool once. Retrying is the caller's decision."""
        start = time.monotonic()
        try:
            result = await self._invoke(
                server_id,
                f"tools/call {tool_name}",
                lambda s: s.call_tool(tool_name, arguments=arguments or {}),
            )
        except MCPError as e:
            self._log_failure(server_id, f"tools/call {tool_name}", e)
            return ToolCallResult(
                tool_name=tool_name,
                success=False,
                error=e.message,
                duration_ms=int((time.monotonic() - start) * 1000),
            )

        duration_ms = int((time.monotonic() - start) * 1000)
        self._logger.debug(
            "Tool call complete",
            server_id=server_id,
            tool=tool_name,
            duration_ms=duration_ms,
        )
        return ToolCallResult(
            tool_name=tool_name,
            success=True,
            result=_dump(result),
            duration_ms=duration_ms,
        )

    async def get_prompt(
        self,
        server_id: str,
        prompt_name: str,
        arguments: dict[str, str] | None = None,
    ) -> PromptResult:
        try:
            result = await self._invoke(
                server_id,
                f"prompts/get {prompt_name}",
                lambda s: s.get_prompt(prompt_name, arguments=arguments),
            )
        except MCPError as e:
            self._log_failure(server_id, f"prompts/get {prompt_name}", e)
            return PromptResult(success=False, error=e.message)

        return PromptResult(success=True, messages=_dump(list(result.messages)))

    async def read_resource(self, server_id: str, uri: str) -> ResourceResult:
        try:
            result = await self._invoke(
                server_id,
                f"resources/read {uri}",
                lambda s: s.read_resource(AnyUrl(uri)),
            )
        except MCPError as e:
            self._log_failure(server_id, f"resources/read {uri}", e)
            return ResourceResult(success=False, error=e.message)

        return ResourceResult(success=True, contents=_dump(list(result.contents)))
