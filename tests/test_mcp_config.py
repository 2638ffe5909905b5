"""Tests for server configuration parsing, YAML loading and import/export."""

import json

import pytest
from pydantic import ValidationError

from mcpchat.mcp.config import (
    expand_bash_vars,
    export_server_configs,
    import_server_configs,
    load_server_configs,
)
from mcpchat.mcp.errors import ConfigurationError, UnsupportedTransportKind
from mcpchat.mcp.types import (
    HttpConfig,
    SseConfig,
    StdioConfig,
    TransportType,
    parse_server_config,
)


class TestParseServerConfig:
    """Tagged transport parameters."""

    def test_stdio_defaults(self):
        config = parse_server_config(
            {"id": "fs", "name": "Files", "transport": "stdio", "config": {"command": "npx"}}
        )

        assert config.transport == TransportType.STDIO
        assert isinstance(config.config, StdioConfig)
        assert config.config.args == []
        assert config.config.env is None

    def test_http_and_sse_select_their_params(self):
        http = parse_server_config(
            {"id": "h", "name": "H", "transport": "http", "config": {"url": "http://localhost/mcp"}}
        )
        sse = parse_server_config(
            {"id": "s", "name": "S", "transport": "sse", "config": {"url": "http://localhost/sse"}}
        )

        assert type(http.config) is HttpConfig
        assert type(sse.config) is SseConfig

    def test_params_must_match_transport(self):
        with pytest.raises(ConfigurationError):
            parse_server_config(
                {"id": "x", "name": "X", "transport": "stdio", "config": {"url": "http://x"}}
            )

    def test_http_requires_url(self):
        with pytest.raises(ConfigurationError):
            parse_server_config({"id": "x", "name": "X", "transport": "http", "config": {}})

    def test_unknown_transport(self):
        with pytest.raises(UnsupportedTransportKind) as exc_info:
            parse_server_config(
                {"id": "x", "name": "X", "transport": "websocket", "config": {"url": "ws://x"}}
            )

        assert exc_info.value.message == "Unsupported transport type: websocket"

    @pytest.mark.parametrize("transport", [{"k": 1}, ["stdio"], 7])
    def test_non_string_transport(self, transport):
        with pytest.raises(ConfigurationError, match="must be a string"):
            parse_server_config(
                {"id": "x", "name": "X", "transport": transport, "config": {"command": "echo"}}
            )

    def test_missing_transport(self):
        with pytest.raises(ConfigurationError):
            parse_server_config({"id": "x", "name": "X", "config": {"command": "echo"}})

    def test_not_an_object(self):
        with pytest.raises(ConfigurationError):
            parse_server_config(["stdio"])

    def test_config_is_immutable(self):
        config = parse_server_config(
            {"id": "x", "name": "X", "transport": "stdio", "config": {"command": "echo"}}
        )

        with pytest.raises(ValidationError):
            config.name = "Y"

    def test_to_dict_wire_shape(self):
        raw = {
            "id": "fs",
            "name": "Files",
            "transport": "stdio",
            "config": {"command": "npx", "args": ["-y", "server"], "env": {"A": "1"}},
        }

        assert parse_server_config(raw).to_dict() == raw


class TestImportExport:
    """JSON array import/export."""

    def _configs(self):
        return [
            parse_server_config(
                {"id": "a", "name": "A", "transport": "stdio", "config": {"command": "echo", "args": ["hi"]}}
            ),
            parse_server_config(
                {"id": "b", "name": "B", "transport": "sse", "config": {"url": "http://localhost:9000/sse"}}
            ),
        ]

    def test_export_then_import_reproduces_configs(self):
        configs = self._configs()

        exported = export_server_configs(configs)
        imported = import_server_configs(exported)

        assert imported == configs
        assert json.loads(exported)[0]["config"]["args"] == ["hi"]

    def test_import_rejects_non_array(self):
        with pytest.raises(ConfigurationError):
            import_server_configs('{"id": "a"}')

    def test_import_rejects_invalid_json(self):
        with pytest.raises(ConfigurationError):
            import_server_configs("[not json")

    def test_import_rejects_duplicate_ids(self):
        payload = [c.to_dict() for c in self._configs()] * 2

        with pytest.raises(ConfigurationError, match="Duplicate server id"):
            import_server_configs(payload)

    def test_import_is_all_or_nothing(self):
        payload = [self._configs()[0].to_dict(), {"id": "bad", "name": "Bad", "transport": "http"}]

        with pytest.raises(ConfigurationError):
            import_server_configs(payload)


class TestYamlLoading:
    """config/mcp_servers.yaml loading."""

    def test_missing_file_yields_empty_list(self, tmp_path):
        assert load_server_configs(tmp_path / "absent.yaml") == []

    def test_loads_enabled_servers(self, tmp_path, monkeypatch):
        monkeypatch.setenv("MCP_TEST_URL", "http://example.test/mcp")
        monkeypatch.delenv("MCP_TEST_TZ", raising=False)
        path = tmp_path / "servers.yaml"
        path.write_text(
            """
servers:
  time:
    name: Time
    command: uvx
    args: [mcp-server-time]
    env:
      LOCAL_TIMEZONE: "${MCP_TEST_TZ:-UTC}"
  remote:
    transport: http
    url: "${MCP_TEST_URL}"
  off:
    transport: stdio
    enabled: false
    command: echo
  broken:
    transport: sse
"""
        )

        configs = {c.id: c for c in load_server_configs(path)}

        assert set(configs) == {"time", "remote"}
        assert configs["time"].transport == TransportType.STDIO
        assert configs["time"].config.env == {"LOCAL_TIMEZONE": "UTC"}
        assert configs["remote"].name == "remote"
        assert configs["remote"].config.url == "http://example.test/mcp"


class TestExpandBashVars:
    def test_default_when_unset(self, monkeypatch):
        monkeypatch.delenv("MCPCHAT_UNSET", raising=False)
        assert expand_bash_vars("${MCPCHAT_UNSET:-fallback}") == "fallback"

    def test_colon_default_when_empty(self, monkeypatch):
        monkeypatch.setenv("MCPCHAT_EMPTY", "")
        assert expand_bash_vars("${MCPCHAT_EMPTY:-fallback}") == "fallback"
        assert expand_bash_vars("${MCPCHAT_EMPTY-fallback}") == ""

    def test_plain_reference(self, monkeypatch):
        monkeypatch.setenv("MCPCHAT_SET", "value")
        assert expand_bash_vars("pre-${MCPCHAT_SET}-post") == "pre-value-post"
        assert expand_bash_vars("$MCPCHAT_SET") == "value"

    def test_no_variables(self):
        assert expand_bash_vars("plain") == "plain"
