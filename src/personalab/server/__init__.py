"""HTTP surface: application context and aiohttp routes."""

from .context import AppContext, build_context
from .http_api import create_app, register_routes

__all__ = ["AppContext", "build_context", "create_app", "register_routes"]
