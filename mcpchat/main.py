#!/usr/bin/env python
"""mcpchat - Main Entry Point.

Starts the HTTP API with the MCP connection registry and the chat engine.

Usage:
    python -m mcpchat.main
    python -m mcpchat.main --port 8080
    python -m mcpchat.main --config config/mcp_servers.yaml
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import logging
import os
import sys
from pathlib import Path

# Load environment from .env.local, then .env
from dotenv import load_dotenv

_root = Path(__file__).parent.parent
for env_file in (_root / ".env.local", _root / ".env"):
    if env_file.exists():
        load_dotenv(env_file)

import structlog

from mcpchat.settings import Settings


NOISY_LOGGERS = ("httpx", "httpcore", "mcp", "google_genai")


class _StdoutHandler(logging.StreamHandler):
    """Marks the handler installed by configure_logging()."""


def configure_logging(level: int = logging.INFO, json_logs: bool = False) -> None:
    """Route structlog and stdlib logging through one stdout handler.

    ``json_logs`` switches the console renderer for one JSON object per line,
    which is what log shippers expect when the API runs under a supervisor.
    Client libraries are held at WARNING unless ``level`` is DEBUG. Calling
    this again replaces the handler instead of stacking a second one.
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=json_logs),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if json_logs:
        renderer_chain = [
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        # ConsoleRenderer formats exceptions itself
        renderer_chain = [
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()),
        ]

    structlog.configure(
        processors=shared_processors + [
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in list(root_logger.handlers):
        if isinstance(handler, _StdoutHandler):
            root_logger.removeHandler(handler)

    handler = _StdoutHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=renderer_chain,
            foreign_pre_chain=shared_processors,
        )
    )
    root_logger.addHandler(handler)

    library_level = logging.DEBUG if level <= logging.DEBUG else logging.WARNING
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(library_level)


logger = structlog.get_logger(__name__)


async def run_api(settings: Settings, host: str, port: int) -> None:
    """Serve the API until interrupted; the app lifespan sweeps MCP connections."""
    import uvicorn

    from mcpchat.api.main import create_app

    logger.info("Starting API server", host=host, port=port)

    config = uvicorn.Config(
        create_app(settings),
        host=host,
        port=port,
        log_level="info",
    )
    server = uvicorn.Server(config)
    await server.serve()


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Multi-server MCP client with tool-calling chat",
    )
    parser.add_argument(
        "--host",
        default="127.0.0.1",
        help="Bind address (default: 127.0.0.1)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=3000,
        help="API server port (default: 3000)",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="YAML file listing MCP servers to connect at start-up",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument(
        "--log-format",
        choices=["console", "json"],
        default=os.getenv("MCPCHAT_LOG_FORMAT", "console"),
        help="Log output format (default: console, or MCPCHAT_LOG_FORMAT)",
    )

    args = parser.parse_args()

    # Configure logging FIRST so start-up connects are captured
    configure_logging(
        logging.DEBUG if args.debug else logging.INFO,
        json_logs=args.log_format == "json",
    )

    settings = Settings.from_env()
    if args.config is not None:
        settings = dataclasses.replace(settings, servers_config_path=args.config)

    try:
        asyncio.run(run_api(settings, args.host, args.port))
    except KeyboardInterrupt:
        logger.info("Shutting down...")


if __name__ == "__main__":
    main()
