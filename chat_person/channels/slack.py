"""Slack channel implementation using Bolt SDK."""

from typing import Any

from slack_bolt.adapter.socket_mode.async_handler import AsyncSocketModeHandler
from slack_bolt.async_app import AsyncApp
from slack_sdk.errors import SlackApiError
from slack_sdk.web.async_client import AsyncWebClient

from ..core.errors import DeliveryError
from ..utils.config import get_settings
from ..utils.logging import get_logger
from .base import BaseChannel, ContentItem, IncomingMessage

logger = get_logger(__name__)


class SlackChannel(BaseChannel):
    """
    Slack channel using the Bolt SDK with Socket Mode.

    Features:
    - Real-time messages and edits via Socket Mode
    - Threaded replies stand in for quotes
    - Reactions by emoji name
    """

    def __init__(self, app: AsyncApp | None = None) -> None:
        super().__init__("slack")
        self.settings = get_settings()

        self.app = app or AsyncApp(
            token=self.settings.slack_bot_token or self.settings.channels.slack.bot_token,
            # Socket mode doesn't need signing secret
        )

        self.client: AsyncWebClient = self.app.client
        self._handler: AsyncSocketModeHandler | None = None
        self._bot_user_id: str | None = None
        self._bot_id: str | None = None

        self._setup_handlers()

    def _setup_handlers(self) -> None:
        """Set up Slack event handlers."""

        @self.app.event("message")
        async def handle_message(event: dict[str, Any]) -> None:
            """Handle new and edited messages."""
            await self._handle_message_event(event)

    @property
    def self_identifiers(self) -> list[str]:
        return [self._bot_user_id] if self._bot_user_id else []

    def is_self(self, origin_id: str) -> bool:
        return bool(origin_id) and origin_id in (self._bot_user_id, self._bot_id)

    async def _handle_message_event(self, event: dict[str, Any]) -> None:
        """Route a raw message event to the new-message or edit handlers."""
        subtype = event.get("subtype")
        if subtype == "message_deleted":
            return

        if subtype == "message_changed":
            inner = dict(event.get("message") or {})
            inner.setdefault("channel", event.get("channel"))
            inner.setdefault("team", event.get("team"))
            message = self._build_message(inner)
            if message is not None:
                await self._dispatch_edit(message)
            return

        message = self._build_message(event)
        if message is None:
            return

        logger.info(
            "Received Slack message",
            user=message.user_id,
            channel_id=message.channel_id,
            content_preview=message.content[:80],
        )
        await self._dispatch_message(message)

    def _build_message(self, event: dict[str, Any]) -> IncomingMessage | None:
        """Build an IncomingMessage from a Slack event, or None for foreign bots."""
        bot_id = event.get("bot_id")
        user_id = event.get("user") or ""
        if bot_id and not self.is_self(bot_id) and not self.is_self(user_id):
            return None

        message_ts = event.get("ts", "")
        thread_ts = event.get("thread_ts")
        return IncomingMessage(
            id=message_ts,
            endpoint=self.name,
            channel_id=event.get("channel", ""),
            user_id=user_id or bot_id or "",
            content=event.get("text", ""),
            guild_id=event.get("team"),
            quote_id=thread_ts if thread_ts and thread_ts != message_ts else None,
            origin_id=user_id or bot_id or "",
            raw=event,
        )

    async def start(self) -> None:
        """Start the Slack channel."""
        if self._connected:
            return

        app_token = self.settings.slack_app_token or self.settings.channels.slack.app_token
        if not app_token:
            raise ValueError("Slack app token not configured")

        try:
            auth_result = await self.client.auth_test()
            self._bot_user_id = auth_result.get("user_id")
            self._bot_id = auth_result.get("bot_id")
            logger.info("Slack bot authenticated", bot_user_id=self._bot_user_id)
        except Exception as e:
            logger.error("Failed to authenticate Slack bot", error=str(e))
            raise

        self._handler = AsyncSocketModeHandler(self.app, app_token)
        await self._handler.connect_async()

        self._connected = True
        logger.info("Slack channel started")

    async def stop(self) -> None:
        """Stop the Slack channel."""
        if not self._connected:
            return

        if self._handler:
            await self._handler.close_async()
            self._handler = None

        self._connected = False
        logger.info("Slack channel stopped")

    async def send(self, channel_id: str, items: list[ContentItem]) -> list[str]:
        """Post each bubble; a quoted bubble is posted as a thread reply."""
        sent: list[str] = []
        for item in items:
            kwargs: dict[str, Any] = {"channel": channel_id, "text": item.text}
            if item.quote_id:
                kwargs["thread_ts"] = item.quote_id
            try:
                result = await self.client.chat_postMessage(**kwargs)
            except SlackApiError as e:
                raise DeliveryError(f"Slack send failed after {len(sent)} bubble(s): {e}") from e
            ts = result.get("ts")
            if not ts:
                raise DeliveryError("Slack send returned no message ts")
            sent.append(ts)
        return sent

    async def react(self, channel_id: str, message_id: str, emoji: str) -> None:
        """Add a reaction; Slack expects the emoji name without colons."""
        try:
            await self.client.reactions_add(
                channel=channel_id,
                timestamp=message_id,
                name=emoji.strip(":"),
            )
        except SlackApiError as e:
            raise DeliveryError(f"Slack reaction failed: {e}") from e

    async def get_user_name(self, user_id: str) -> str | None:
        result = await self.client.users_info(user=user_id)
        if not result.get("ok"):
            return None
        user = result["user"]
        profile = user.get("profile", {})
        return profile.get("display_name") or user.get("real_name") or user.get("name")

    async def get_channel_name(self, channel_id: str) -> str | None:
        result = await self.client.conversations_info(channel=channel_id)
        if not result.get("ok"):
            return None
        return result["channel"].get("name")

    async def get_guild_name(self, guild_id: str) -> str | None:
        result = await self.client.team_info(team=guild_id)
        if not result.get("ok"):
            return None
        return result["team"].get("name")
