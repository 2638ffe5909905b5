"""mcpchat - multi-server MCP client with a tool-calling chat loop."""

__version__ = "0.1.0"
