"""Conversation REST endpoints (history, metadata, membership)."""

from .router import router

__all__ = ["router"]
