"""Runtime settings read from the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


def _float_env(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value else default


def _int_env(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value else default


@dataclass(frozen=True)
class Settings:
    """Application settings.

    Environment variables:
    - MCP_CONNECT_TIMEOUT: seconds for transport + handshake (default 30)
    - MCP_CALL_TIMEOUT: seconds for one list/call/get/read (default 60)
    - MCP_CLOSE_TIMEOUT: seconds to wait for a session teardown (default 10)
    - MCP_SERVERS_CONFIG: path to the YAML server file
    - CHAT_MAX_TOOL_ROUNDS: model round-trips per chat turn (default 5)
    - CHAT_MAX_TOOL_RESULT_CHARS: bound on a tool result sent back to the model
    - GEMINI_API_KEY / GEMINI_MODEL: model client
    """

    connect_timeout: float = 30.0
    call_timeout: float = 60.0
    close_timeout: float = 10.0
    servers_config_path: Path | None = None
    max_tool_rounds: int = 5
    max_tool_result_chars: int = 20_000
    gemini_api_key: str | None = None
    gemini_model: str = "gemini-2.0-flash-001"

    @classmethod
    def from_env(cls) -> Settings:
        config_path = os.getenv("MCP_SERVERS_CONFIG")
        return cls(
            connect_timeout=_float_env("MCP_CONNECT_TIMEOUT", cls.connect_timeout),
            call_timeout=_float_env("MCP_CALL_TIMEOUT", cls.call_timeout),
            close_timeout=_float_env("MCP_CLOSE_TIMEOUT", cls.close_timeout),
            servers_config_path=Path(config_path) if config_path else None,
            max_tool_rounds=_int_env("CHAT_MAX_TOOL_ROUNDS", cls.max_tool_rounds),
            max_tool_result_chars=_int_env(
                "CHAT_MAX_TOOL_RESULT_CHARS", cls.max_tool_result_chars
            ),
            gemini_api_key=os.getenv("GEMINI_API_KEY") or None,
            gemini_model=os.getenv("GEMINI_MODEL", cls.gemini_model),
        )
