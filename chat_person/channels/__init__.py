"""Chat platform channels (delivery endpoints) for chat-person."""

from .base import BaseChannel, ContentItem, IncomingMessage

__all__ = ["BaseChannel", "ContentItem", "IncomingMessage"]
