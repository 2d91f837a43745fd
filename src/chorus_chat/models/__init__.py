# src/chorus_chat/models/__init__.py
"""SQLAlchemy models for the Chorus Chat application."""

from .message import ChatMessage

__all__ = ["ChatMessage"]
