"""FastAPI API Server for mcpchat.

Provides REST API endpoints for:
- MCP server connect/disconnect and status
- Listing and executing tools, prompts and resources
- Chat turns with tool calling across every connected server

The registry, capability service and chat engine are created once per app
and kept on ``app.state``; the lifespan connects the servers from the YAML
configuration at start-up and sweeps every live connection on shutdown.

Usage:
    python -m mcpchat.main --port 3000
"""

from __future__ import annotations

import asyncio
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

import structlog
from fastapi import APIRouter, FastAPI, Query, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from mcpchat import __version__
from mcpchat.chat.loop import ChatEngine
from mcpchat.chat.model import ChatMessage, GeminiModelClient, ModelClient, ModelError
from mcpchat.mcp.capabilities import CapabilityService
from mcpchat.mcp.config import load_server_configs
from mcpchat.mcp.errors import ConfigurationError
from mcpchat.mcp.registry import ConnectionRegistry
from mcpchat.mcp.types import ServerConfig, parse_server_config
from mcpchat.settings import Settings

logger = structlog.get_logger(__name__)


# ═══════════════════════════════════════════════════════════════════════════════
# Request/Response Models
# ═══════════════════════════════════════════════════════════════════════════════


class ConnectRequest(BaseModel):
    config: dict[str, Any] | None = Field(None, description="Server configuration record")


class DisconnectRequest(BaseModel):
    serverId: str | None = None


class ListRequest(BaseModel):
    serverId: str | None = None
    type: str | None = Field(None, description="tools, prompts or resources")


class ExecuteRequest(BaseModel):
    """Body for every ``/api/mcp/execute`` action; fields depend on the action."""

    serverId: str | None = None
    toolName: str | None = None
    promptName: str | None = None
    uri: str | None = None
    arguments: dict[str, Any] | None = None


class ChatMessageModel(BaseModel):
    role: str = Field(..., description="user or assistant")
    content: str = ""


class ChatRequest(BaseModel):
    messages: list[ChatMessageModel] = Field(default_factory=list)


class HealthResponse(BaseModel):
    status: str
    timestamp: str
    version: str = __version__
    servers: dict[str, int] = Field(default_factory=dict)
    model_configured: bool = False


def _error(message: str | None, status_code: int, **extra: Any) -> JSONResponse:
    return JSONResponse({"success": False, **extra, "error": message}, status_code=status_code)


def _registry(request: Request) -> ConnectionRegistry:
    return request.app.state.registry


def _capabilities(request: Request) -> CapabilityService:
    return request.app.state.capabilities


# ═══════════════════════════════════════════════════════════════════════════════
# MCP Endpoints
# ═══════════════════════════════════════════════════════════════════════════════

router = APIRouter()


@router.post("/api/mcp/connect", tags=["MCP"])
async def connect_server(body: ConnectRequest, request: Request):
    """Connect (or reconnect) a server from its configuration."""
    if not body.config:
        return _error("Invalid server configuration", status.HTTP_400_BAD_REQUEST, serverId="")

    try:
        config = parse_server_config(body.config)
    except ConfigurationError as e:
        return _error(
            e.message,
            status.HTTP_400_BAD_REQUEST,
            serverId=str(body.config.get("id") or ""),
        )

    result = await _registry(request).connect(config)
    if not result.success:
        return _error(result.error, status.HTTP_500_INTERNAL_SERVER_ERROR, serverId=config.id)
    return {"success": True, "serverId": config.id}


@router.post("/api/mcp/disconnect", tags=["MCP"])
async def disconnect_server(body: DisconnectRequest, request: Request):
    if not body.serverId:
        return _error("Server ID is required", status.HTTP_400_BAD_REQUEST)

    result = await _registry(request).disconnect(body.serverId)
    if not result.success:
        return _error(result.error, status.HTTP_500_INTERNAL_SERVER_ERROR)
    return {"success": True}


@router.post("/api/mcp/list", tags=["MCP"])
async def list_capabilities(body: ListRequest, request: Request):
    if not body.serverId or not body.type:
        return _error("Server ID and type are required", status.HTTP_400_BAD_REQUEST)

    capabilities = _capabilities(request)
    operations = {
        "tools": capabilities.list_tools,
        "prompts": capabilities.list_prompts,
        "resources": capabilities.list_resources,
    }
    operation = operations.get(body.type)
    if operation is None:
        return _error(
            "Invalid type. Must be tools, prompts, or resources",
            status.HTTP_400_BAD_REQUEST,
        )

    result = await operation(body.serverId)
    if not result.success:
        return _error(result.error, status.HTTP_500_INTERNAL_SERVER_ERROR)
    return result.to_dict()


@router.post("/api/mcp/execute", tags=["MCP"])
async def execute(
    body: ExecuteRequest,
    request: Request,
    action: str | None = Query(None, description="tool, prompt or resource"),
):
    """Run a tool, fetch a prompt or read a resource on one server."""
    capabilities = _capabilities(request)

    if action == "tool":
        if not body.serverId or not body.toolName:
            return _error("Server ID and tool name are required", status.HTTP_400_BAD_REQUEST)
        result = await capabilities.call_tool(body.serverId, body.toolName, body.arguments)
        if not result.success:
            return _error(result.error, status.HTTP_500_INTERNAL_SERVER_ERROR)
        return {"success": True, "result": result.result, "durationMs": result.duration_ms}

    if action == "prompt":
        if not body.serverId or not body.promptName:
            return _error("Server ID and prompt name are required", status.HTTP_400_BAD_REQUEST)
        arguments = {k: str(v) for k, v in (body.arguments or {}).items()}
        result = await capabilities.get_prompt(body.serverId, body.promptName, arguments or None)
        if not result.success:
            return _error(result.error, status.HTTP_500_INTERNAL_SERVER_ERROR)
        return {"success": True, "messages": result.messages}

    if action == "resource":
        if not body.serverId or not body.uri:
            return _error("Server ID and URI are required", status.HTTP_400_BAD_REQUEST)
        result = await capabilities.read_resource(body.serverId, body.uri)
        if not result.success:
            return _error(result.error, status.HTTP_500_INTERNAL_SERVER_ERROR)
        return {"success": True, "contents": result.contents}

    return _error("Invalid action. Use ?action=tool|prompt|resource", status.HTTP_400_BAD_REQUEST)


@router.get("/api/mcp/status", tags=["MCP"])
async def server_status(request: Request):
    return {"servers": [s.to_dict() for s in _registry(request).get_all_servers()]}


# ═══════════════════════════════════════════════════════════════════════════════
# Chat & Health
# ═══════════════════════════════════════════════════════════════════════════════


@router.post("/api/chat", tags=["Chat"])
async def chat(body: ChatRequest, request: Request):
    """Run one chat turn; the reply carries every tool call made along the way."""
    engine: ChatEngine | None = request.app.state.engine
    if engine is None:
        return JSONResponse(
            {"error": "GEMINI_API_KEY is not set"},
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        )
    if not body.messages:
        return JSONResponse(
            {"error": "At least one message is required"},
            status_code=status.HTTP_400_BAD_REQUEST,
        )

    history = [ChatMessage(role=m.role, content=m.content) for m in body.messages]
    try:
        result = await engine.run_chat_turn(history)
    except ModelError as e:
        return JSONResponse({"error": str(e)}, status_code=status.HTTP_502_BAD_GATEWAY)
    return result.to_dict()


@router.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check(request: Request) -> HealthResponse:
    summary = _registry(request).get_health_summary()
    return HealthResponse(
        status="degraded" if summary.get("error") else "healthy",
        timestamp=datetime.now(timezone.utc).isoformat(),
        servers=summary,
        model_configured=request.app.state.engine is not None,
    )


# ═══════════════════════════════════════════════════════════════════════════════
# Application Factory
# ═══════════════════════════════════════════════════════════════════════════════


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Connect configured servers at start-up, sweep all connections on shutdown."""
    logger.info("API server starting up")
    registry: ConnectionRegistry = app.state.registry

    configs: list[ServerConfig] = app.state.server_configs
    if configs:
        results = await asyncio.gather(*(registry.connect(c) for c in configs))
        for config, result in zip(configs, results):
            if not result.success:
                logger.warning("Configured server failed to connect", server_id=config.id, error=result.error)
        logger.info(
            "Configured MCP servers connected",
            connected=sum(1 for r in results if r.success),
            total=len(configs),
        )

    yield

    logger.info("API server shutting down")
    await registry.aclose()


def create_app(
    settings: Settings | None = None,
    *,
    registry: ConnectionRegistry | None = None,
    model: ModelClient | None = None,
    server_configs: list[ServerConfig] | None = None,
) -> FastAPI:
    """Build the API app.

    Args:
        settings: runtime settings (default: read from the environment)
        registry: connection registry (default: a new one using ``settings`` timeouts)
        model: model client (default: Gemini when an API key is configured)
        server_configs: servers to connect at start-up (default: the YAML file)
    """
    settings = settings or Settings.from_env()
    registry = registry or ConnectionRegistry(
        connect_timeout=settings.connect_timeout,
        close_timeout=settings.close_timeout,
    )
    capabilities = CapabilityService(registry, call_timeout=settings.call_timeout)

    if model is None and settings.gemini_api_key:
        model = GeminiModelClient(api_key=settings.gemini_api_key, model=settings.gemini_model)
    if model is None:
        logger.warning("No model configured, /api/chat is disabled")

    engine = (
        ChatEngine(
            capabilities,
            model,
            max_rounds=settings.max_tool_rounds,
            max_result_chars=settings.max_tool_result_chars,
        )
        if model is not None
        else None
    )

    app = FastAPI(
        title="mcpchat API",
        description="Multi-server MCP client with tool-calling chat",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.registry = registry
    app.state.capabilities = capabilities
    app.state.engine = engine
    app.state.server_configs = (
        server_configs
        if server_configs is not None
        else load_server_configs(settings.servers_config_path)
    )

    # CORS middleware for web clients
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_request_id(request: Request, call_next):
        """Add request ID to all requests."""
        request_id = str(uuid.uuid4())[:8]
        start_time = time.time()
        response: Response = await call_next(request)
        duration_ms = int((time.time() - start_time) * 1000)

        response.headers["X-Request-ID"] = request_id
        logger.info(
            "Request completed",
            request_id=request_id,
            method=request.method,
            path=request.url.path,
            status=response.status_code,
            duration_ms=duration_ms,
        )
        return response

    app.include_router(router)
    return app
