# src/chorus_chat/api/v1/__init__.py
"""Version 1 API endpoints."""

from .endpoints import channels_router

__all__ = [
    "channels_router",
]
