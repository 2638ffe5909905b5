"""
Tool aggregation across connected MCP servers.

Gathers tool descriptors from every connected server, namespaces each one by
its owning server (``serverId__toolName``) so the model's flat function
namespace cannot collide, and converts input schemas into Gemini function
declarations.
"""

from __future__ import annotations

import asyncio
import json
import re
from dataclasses import dataclass, field
from typing import Any

import structlog
from google.genai import types

from mcpchat.mcp.capabilities import CapabilityService
from mcpchat.mcp.errors import UnknownFunctionName
from mcpchat.mcp.types import ToolInfo

logger = structlog.get_logger(__name__)

NAME_SEPARATOR = "__"
MAX_FUNCTION_NAME_LENGTH = 64

BASE_SYSTEM_INSTRUCTION = (
    "You are a helpful assistant. Answer clearly and accurately, "
    "and format your answers with Markdown where it helps readability."
)


@dataclass
class ServerTools:
    """Tools advertised by one connected server."""

    server_id: str
    server_name: str
    tools: list[ToolInfo] = field(default_factory=list)


@dataclass(frozen=True)
class NamespacedTool:
    """A declared function name resolved back to its server and tool."""

    function_name: str
    server_id: str
    server_name: str
    tool: ToolInfo

    def decode_arguments(self, args: dict[str, Any]) -> dict[str, Any]:
        """Undo the JSON-text encoding of free-form object arguments."""
        properties = (self.tool.input_schema or {}).get("properties") or {}
        decoded = dict(args)
        for name, value in args.items():
            prop = properties.get(name)
            if isinstance(value, str) and isinstance(prop, dict) and _is_free_form_object(prop):
                try:
                    decoded[name] = json.loads(value)
                except json.JSONDecodeError:
                    # Left as text; the server reports the type mismatch.
                    continue
        return decoded


async def get_all_tools(capabilities: CapabilityService) -> list[ServerTools]:
    """List tools on every connected server.

    A server whose listing fails is skipped so it cannot block the others.
    """
    servers = capabilities.registry.connected_servers()
    results = await asyncio.gather(*(capabilities.list_tools(s.id) for s in servers))

    aggregated: list[ServerTools] = []
    for server, result in zip(servers, results):
        if not result.success:
            logger.warning(
                "Skipping server in tool aggregation",
                server_id=server.id,
                error=result.error,
            )
            continue
        aggregated.append(ServerTools(server_id=server.id, server_name=server.name, tools=result.data))
    return aggregated


# ─────────────────────────────────────────────────────────────────────────────
# Schema conversion
# ─────────────────────────────────────────────────────────────────────────────

_TYPE_MAP = {
    "string": types.Type.STRING,
    "integer": types.Type.INTEGER,
    "number": types.Type.NUMBER,
    "boolean": types.Type.BOOLEAN,
    "array": types.Type.ARRAY,
    "object": types.Type.OBJECT,
}


def _json_type_to_schema_type(json_type: str | list | None) -> types.Type:
    """Convert a JSON schema type to the model API's type enum."""
    if isinstance(json_type, list):
        # Handle union types like ["string", "null"]
        non_null = [t for t in json_type if t != "null"]
        if non_null:
            return _json_type_to_schema_type(non_null[0])
        return types.Type.STRING
    return _TYPE_MAP.get(json_type or "string", types.Type.STRING)


def _is_free_form_object(prop: dict[str, Any]) -> bool:
    properties = prop.get("properties")
    return _json_type_to_schema_type(prop.get("type")) == types.Type.OBJECT and not (
        isinstance(properties, dict) and properties
    )


def _property_schema(prop: dict[str, Any]) -> types.Schema:
    schema_type = _json_type_to_schema_type(prop.get("type"))
    kwargs: dict[str, Any] = {"type": schema_type}

    if prop.get("description"):
        kwargs["description"] = str(prop["description"])
    if prop.get("enum") and schema_type == types.Type.STRING:
        kwargs["enum"] = [str(v) for v in prop["enum"]]

    if schema_type == types.Type.ARRAY:
        items = prop.get("items")
        kwargs["items"] = _property_schema(items if isinstance(items, dict) else {})
    elif schema_type == types.Type.OBJECT:
        nested = _object_schema(prop)
        if nested is not None:
            return nested.model_copy(update={"description": kwargs.get("description")})
        # The model API rejects OBJECT without properties; free-form maps go as JSON text.
        description = kwargs.get("description")
        kwargs["type"] = types.Type.STRING
        kwargs["description"] = f"{description} (JSON object)" if description else "JSON object"

    return types.Schema(**kwargs)


def _object_schema(schema: dict[str, Any]) -> types.Schema | None:
    properties = schema.get("properties") or {}
    if not isinstance(properties, dict) or not properties:
        return None

    required = [name for name in schema.get("required", []) if name in properties]
    return types.Schema(
        type=types.Type.OBJECT,
        properties={
            name: _property_schema(prop if isinstance(prop, dict) else {})
            for name, prop in properties.items()
        },
        required=required or None,
    )


def build_parameters(input_schema: dict[str, Any] | None) -> types.Schema | None:
    """Function parameters for a tool; None when the tool takes no arguments."""
    return _object_schema(input_schema or {})


# ─────────────────────────────────────────────────────────────────────────────
# Declarations
# ─────────────────────────────────────────────────────────────────────────────


def namespaced_name(server_id: str, tool_name: str) -> str:
    """Function name exposed to the model for a server's tool."""
    return f"{server_id}{NAME_SEPARATOR}{tool_name}"


def _sanitize(name: str) -> str:
    # Only letters/numbers/_/-/. allowed; trim to the API's length limit.
    return re.sub(r"[^a-zA-Z0-9_.-]", "_", name)[:MAX_FUNCTION_NAME_LENGTH]


class ToolIndex:
    """Function declarations plus the reverse map used to dispatch calls."""

    def __init__(self) -> None:
        self._handles: dict[str, NamespacedTool] = {}
        self._declarations: list[types.FunctionDeclaration] = []

    @classmethod
    def build(cls, server_tools: list[ServerTools]) -> ToolIndex:
        index = cls()
        for server in server_tools:
            for tool in server.tools:
                index.add(server.server_id, server.server_name, tool)
        return index

    def add(self, server_id: str, server_name: str, tool: ToolInfo) -> NamespacedTool:
        base = _sanitize(namespaced_name(server_id, tool.name))
        function_name = base
        suffix = 2
        while function_name in self._handles:
            tail = f"_{suffix}"
            function_name = base[: MAX_FUNCTION_NAME_LENGTH - len(tail)] + tail
            suffix += 1

        handle = NamespacedTool(
            function_name=function_name,
            server_id=server_id,
            server_name=server_name,
            tool=tool,
        )
        self._handles[function_name] = handle
        self._declarations.append(
            types.FunctionDeclaration(
                name=function_name,
                description=f"[{server_name}] {tool.description or tool.name}",
                parameters=build_parameters(tool.input_schema),
            )
        )
        return handle

    @property
    def declarations(self) -> list[types.FunctionDeclaration]:
        return list(self._declarations)

    @property
    def handles(self) -> list[NamespacedTool]:
        return list(self._handles.values())

    def resolve(self, function_name: str) -> NamespacedTool:
        """Map a requested function name back to its server and tool.

        Raises:
            UnknownFunctionName: no declared function has this name
        """
        handle = self._handles.get(function_name)
        if handle is None:
            raise UnknownFunctionName(function_name)
        return handle

    def __len__(self) -> int:
        return len(self._handles)


def build_system_instruction(index: ToolIndex) -> str:
    """Base instruction, plus the tool list and tool-use directives when tools exist."""
    if not len(index):
        return BASE_SYSTEM_INSTRUCTION

    lines = [
        BASE_SYSTEM_INSTRUCTION,
        "",
        "You can use the following tools provided by connected MCP servers:",
    ]
    for handle in index.handles:
        description = handle.tool.description or "No description"
        lines.append(f"- {handle.function_name} ({handle.server_name}): {description}")
    lines.extend(
        [
            "",
            "When tools are available:",
            "- If a tool can answer the request or fetch the needed data, call it instead of guessing.",
            "- Base your answer on the tool results; never invent tool output.",
            "- If a tool returns an error, say so and answer with what you have.",
        ]
    )
    return "\n".join(lines)
