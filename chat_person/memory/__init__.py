"""Memory components for chat-person."""

from .history import ChatMessage, HistoryStore

__all__ = ["ChatMessage", "HistoryStore"]
