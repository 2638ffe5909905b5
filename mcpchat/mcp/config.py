"""
MCP Server Configuration Loader.

Two sources of server configurations:

- a YAML file (``config/mcp_servers.yaml``) read at startup; every enabled
  server in it is connected when the API starts
- JSON import/export of ``ServerConfig`` records, the format the web client
  keeps in local storage and lets users download/upload

Usage:
    from mcpchat.mcp.config import load_server_configs

    for config in load_server_configs():
        print(config.id, config.transport)
"""

from __future__ import annotations

import json
import os
import re
from pathlib import Path
from typing import Any, Iterable

import structlog
import yaml

from mcpchat.mcp.errors import ConfigurationError, MCPError
from mcpchat.mcp.types import ServerConfig, TransportType, parse_server_config

logger = structlog.get_logger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).parent.parent.parent / "config" / "mcp_servers.yaml"


def expand_bash_vars(value: str) -> str:
    """Expand bash-style environment variables with default values.

    Handles the following patterns:
    - $VAR or ${VAR} - standard variable expansion
    - ${VAR:-default} - use default if VAR is unset or empty
    - ${VAR-default} - use default if VAR is unset (but not if empty)
    """
    if not value or "$" not in value:
        return value

    pattern = r"\$\{([^}:-]+)(:-|-)?([^}]*)?\}"

    def replace_var(match: re.Match) -> str:
        var_name = match.group(1)
        operator = match.group(2)
        default = match.group(3) or ""

        env_value = os.environ.get(var_name)

        if operator == ":-":
            return env_value if env_value else default
        elif operator == "-":
            return env_value if env_value is not None else default
        return env_value or ""

    result = re.sub(pattern, replace_var, value)
    return os.path.expandvars(result)


def _expand(value: Any) -> Any:
    if isinstance(value, str):
        return os.path.expanduser(expand_bash_vars(value))
    return value


def _entry_to_config(server_id: str, entry: dict[str, Any]) -> ServerConfig:
    """Convert a flat YAML entry into a ServerConfig."""
    transport = entry.get("transport", TransportType.STDIO.value)
    if transport == TransportType.STDIO.value:
        params: dict[str, Any] = {
            "command": _expand(entry.get("command")),
            "args": [_expand(arg) for arg in entry.get("args", [])],
        }
        if entry.get("env"):
            params["env"] = {k: str(_expand(v)) for k, v in entry["env"].items()}
    else:
        params = {"url": _expand(entry.get("url"))}

    return parse_server_config(
        {
            "id": server_id,
            "name": entry.get("name") or server_id,
            "transport": transport,
            "config": params,
        }
    )


def load_server_configs(config_path: str | Path | None = None) -> list[ServerConfig]:
    """Load enabled server configurations from YAML.

    A missing file yields an empty list. Entries that fail validation are
    skipped with a warning so one bad entry does not block the others.
    """
    path = Path(config_path) if config_path else DEFAULT_CONFIG_PATH

    if not path.exists():
        logger.warning("MCP config file not found, using empty configuration", path=str(path))
        return []

    logger.info("Loading MCP configuration", path=str(path))
    with open(path) as f:
        data = yaml.safe_load(f) or {}

    configs: list[ServerConfig] = []
    for server_id, entry in (data.get("servers") or {}).items():
        if not entry or not entry.get("enabled", True):
            continue
        try:
            configs.append(_entry_to_config(str(server_id), entry))
        except MCPError as e:
            logger.warning("Skipping invalid server entry", server_id=server_id, error=e.message)

    logger.info("MCP configuration loaded", servers=[c.id for c in configs])
    return configs


# ─────────────────────────────────────────────────────────────────────────────
# JSON import / export
# ─────────────────────────────────────────────────────────────────────────────


def export_server_configs(configs: Iterable[ServerConfig]) -> str:
    """Serialize configurations as a pretty-printed JSON array."""
    return json.dumps([config.to_dict() for config in configs], indent=2)


def import_server_configs(payload: str | list[Any]) -> list[ServerConfig]:
    """Parse an exported JSON array back into configurations.

    All-or-nothing: any problem raises and nothing is returned.

    Raises:
        ConfigurationError: payload is not JSON, not an array, contains an
            invalid record or repeats an id
    """
    if isinstance(payload, str):
        try:
            payload = json.loads(payload)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Config is not valid JSON: {e.msg}") from e

    if not isinstance(payload, list):
        raise ConfigurationError("Config must be a JSON array of server configurations")

    configs = [parse_server_config(item) for item in payload]

    seen: set[str] = set()
    for config in configs:
        if config.id in seen:
            raise ConfigurationError(f"Duplicate server id: {config.id}")
        seen.add(config.id)

    return configs
