"""Exceptions raised by the orchestration core."""


class ChatPersonError(Exception):
    """Base class for chat-person errors."""


class MessageNotFoundError(ChatPersonError):
    """A tool referenced a message id that is not in the history mirror."""

    def __init__(self, message_id: str) -> None:
        super().__init__(f"Message not found: {message_id}")
        self.message_id = message_id


class ResponseValidationError(ChatPersonError):
    """The model's final payload did not match the response schema."""

    def __init__(self, reason: str, raw: str = "") -> None:
        super().__init__(reason)
        self.reason = reason
        self.raw = raw


class DeliveryError(ChatPersonError):
    """An endpoint could not deliver a message or reaction."""


class PersistenceError(ChatPersonError):
    """The history store failed to load or upsert messages."""


class GenerationError(ChatPersonError):
    """The model call failed or exceeded its tool-call budget."""
