"""Minimal stdio MCP server used by the integration tests.

Run with ``--with-tools`` to expose an ``echo`` tool; without it the server
advertises no tools.
"""

import sys

from mcp.server.fastmcp import FastMCP

server = FastMCP("echo")

if "--with-tools" in sys.argv:

    @server.tool()
    def echo(text: str) -> str:
        """Return the given text."""
        return text


if __name__ == "__main__":
    server.run()
