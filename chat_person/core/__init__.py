"""Core components of chat-person."""
