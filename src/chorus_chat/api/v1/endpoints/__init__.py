# src/chorus_chat/api/v1/endpoints/__init__.py
"""API endpoint modules for version 1."""

from .channels import router as channels_router

__all__ = [
    "channels_router",
]
