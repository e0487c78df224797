"""Base channel interface for chat platforms the persona lives on."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Coroutine

from ..utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class IncomingMessage:
    """Snapshot of a message (or its latest edit) as seen by a channel."""

    id: str
    endpoint: str
    channel_id: str
    user_id: str
    content: str = ""
    user_name: str | None = None
    guild_id: str | None = None
    quote_id: str | None = None
    # Platform-level sender id, compared against our own endpoints for loopback
    origin_id: str = ""
    raw: Any = None  # Original event from the platform


@dataclass
class ContentItem:
    """One message bubble to deliver."""

    text: str
    quote_id: str | None = None


# Type for message handler callbacks
MessageHandler = Callable[[IncomingMessage], Coroutine[Any, Any, None]]


class BaseChannel(ABC):
    """
    Abstract base class for delivery endpoints.

    A channel is both an inbound source (new messages and edits) and an
    outbound transport (send, react). It also answers identity questions
    about the platform it is connected to.
    """

    def __init__(self, name: str) -> None:
        """
        Initialize the channel.

        Args:
            name: Unique name for this channel
        """
        self.name = name
        self._connected = False
        self._message_handlers: list[MessageHandler] = []
        self._edit_handlers: list[MessageHandler] = []

    @property
    def is_connected(self) -> bool:
        """Check if the channel is connected."""
        return self._connected

    @property
    def self_identifiers(self) -> list[str]:
        """Ids that mean "this bot" when they appear in message text."""
        return []

    def on_message(self, handler: MessageHandler) -> None:
        """Register a handler for new messages."""
        self._message_handlers.append(handler)

    def on_message_edit(self, handler: MessageHandler) -> None:
        """Register a handler for message edits."""
        self._edit_handlers.append(handler)

    async def _dispatch_message(self, message: IncomingMessage) -> None:
        await self._dispatch(self._message_handlers, message)

    async def _dispatch_edit(self, message: IncomingMessage) -> None:
        await self._dispatch(self._edit_handlers, message)

    async def _dispatch(self, handlers: list[MessageHandler], message: IncomingMessage) -> None:
        if not handlers:
            logger.warning(
                "No handlers registered, message dropped",
                channel=self.name,
                message_id=message.id,
            )
            return

        for handler in handlers:
            try:
                await handler(message)
            except Exception as e:
                logger.error(
                    "Error in message handler",
                    channel=self.name,
                    message_id=message.id,
                    error=str(e),
                    exc_info=True,
                )

    @abstractmethod
    async def start(self) -> None:
        """Connect and begin listening for messages."""
        pass

    @abstractmethod
    async def stop(self) -> None:
        """Disconnect and clean up resources."""
        pass

    @abstractmethod
    async def send(self, channel_id: str, items: list[ContentItem]) -> list[str]:
        """
        Send a sequence of message bubbles to a channel.

        Args:
            channel_id: Platform channel id
            items: Bubbles in delivery order

        Returns:
            The platform message id of every delivered bubble, in order

        Raises:
            DeliveryError: if any bubble could not be sent
        """
        pass

    @abstractmethod
    async def react(self, channel_id: str, message_id: str, emoji: str) -> None:
        """
        Add a reaction to a message.

        Raises:
            DeliveryError: if the reaction could not be added
        """
        pass

    @abstractmethod
    def is_self(self, origin_id: str) -> bool:
        """Whether a sender id belongs to this endpoint's own bot account."""
        pass

    async def get_user_name(self, user_id: str) -> str | None:
        """
        Look up a user's display name.

        Default implementation returns None. Override if channel supports it.
        """
        return None

    async def get_channel_name(self, channel_id: str) -> str | None:
        """Look up a channel's name. Default returns None."""
        return None

    async def get_guild_name(self, guild_id: str) -> str | None:
        """Look up a guild/workspace name. Default returns None."""
        return None

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name} connected={self._connected}>"
