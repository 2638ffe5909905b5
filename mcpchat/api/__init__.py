"""HTTP API for mcpchat."""

from mcpchat.api.main import create_app

__all__ = ["create_app"]
