"""Discord channel implementation using discord.py."""

import asyncio

import discord

from ..core.errors import DeliveryError
from ..utils.config import get_settings
from ..utils.logging import get_logger
from .base import BaseChannel, ContentItem, IncomingMessage

logger = get_logger(__name__)


class DiscordChannel(BaseChannel):
    """
    Discord channel backed by a discord.py gateway client.

    Quotes become message references; reactions take unicode emoji.
    """

    def __init__(self, client: discord.Client | None = None) -> None:
        super().__init__("discord")
        self.settings = get_settings()

        if client is None:
            intents = discord.Intents.default()
            intents.message_content = self.settings.channels.discord.message_content_intent
            client = discord.Client(intents=intents)
        self.client = client
        self._runner: asyncio.Task[None] | None = None

        self._setup_handlers()

    def _setup_handlers(self) -> None:
        @self.client.event
        async def on_message(message: discord.Message) -> None:
            await self._dispatch_message(self._build_message(message))

        @self.client.event
        async def on_message_edit(before: discord.Message, after: discord.Message) -> None:
            await self._dispatch_edit(self._build_message(after))

    @property
    def self_identifiers(self) -> list[str]:
        user = self.client.user
        return [str(user.id)] if user else []

    def is_self(self, origin_id: str) -> bool:
        user = self.client.user
        return user is not None and origin_id == str(user.id)

    def _build_message(self, message: discord.Message) -> IncomingMessage:
        reference = message.reference
        return IncomingMessage(
            id=str(message.id),
            endpoint=self.name,
            channel_id=str(message.channel.id),
            user_id=str(message.author.id),
            user_name=getattr(message.author, "display_name", None) or message.author.name,
            content=message.content,
            guild_id=str(message.guild.id) if message.guild else None,
            quote_id=str(reference.message_id) if reference and reference.message_id else None,
            origin_id=str(message.author.id),
            raw=message,
        )

    async def start(self) -> None:
        """Log in and run the gateway connection in the background."""
        if self._connected:
            return

        token = self.settings.discord_token or self.settings.channels.discord.token
        if not token:
            raise ValueError("Discord token not configured")

        await self.client.login(token)
        runner = asyncio.create_task(self.client.connect())
        ready = asyncio.create_task(self.client.wait_until_ready())
        done, _ = await asyncio.wait({runner, ready}, return_when=asyncio.FIRST_COMPLETED)

        if runner in done:
            # connect() gave up before the gateway ever reported ready
            ready.cancel()
            await self.client.close()
            error = None if runner.cancelled() else runner.exception()
            logger.error("Discord gateway failed to connect", error=str(error))
            if error is not None:
                raise error
            raise ConnectionError("Discord gateway closed before becoming ready")

        self._runner = runner
        runner.add_done_callback(self._on_runner_done)

        self._connected = True
        logger.info("Discord channel started", bot_user_id=self.self_identifiers)

    async def stop(self) -> None:
        if not self._connected:
            return

        await self.client.close()
        if self._runner:
            self._runner.cancel()
            await asyncio.wait({self._runner})
            self._runner = None

        self._connected = False
        logger.info("Discord channel stopped")

    def _on_runner_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled() or task.exception() is None:
            return
        logger.error("Discord gateway connection lost", error=str(task.exception()))

    async def _messageable(self, channel_id: str) -> discord.abc.Messageable:
        channel = self.client.get_channel(int(channel_id))
        if channel is None:
            channel = await self.client.fetch_channel(int(channel_id))
        if not isinstance(channel, discord.abc.Messageable):
            raise DeliveryError(f"Discord channel {channel_id} is not messageable")
        return channel

    async def send(self, channel_id: str, items: list[ContentItem]) -> list[str]:
        try:
            channel = await self._messageable(channel_id)
            sent: list[str] = []
            for item in items:
                kwargs = {}
                if item.quote_id:
                    kwargs["reference"] = discord.MessageReference(
                        message_id=int(item.quote_id),
                        channel_id=int(channel_id),
                        fail_if_not_exists=False,
                    )
                message = await channel.send(item.text, **kwargs)
                sent.append(str(message.id))
            return sent
        except (discord.DiscordException, ValueError) as e:
            raise DeliveryError(f"Discord send failed: {e}") from e

    async def react(self, channel_id: str, message_id: str, emoji: str) -> None:
        try:
            channel = await self._messageable(channel_id)
            message = channel.get_partial_message(int(message_id))
            await message.add_reaction(emoji)
        except (discord.DiscordException, ValueError, AttributeError) as e:
            raise DeliveryError(f"Discord reaction failed: {e}") from e

    async def get_user_name(self, user_id: str) -> str | None:
        user = self.client.get_user(int(user_id)) or await self.client.fetch_user(int(user_id))
        return user.display_name if user else None

    async def get_channel_name(self, channel_id: str) -> str | None:
        channel = self.client.get_channel(int(channel_id)) or await self.client.fetch_channel(int(channel_id))
        return getattr(channel, "name", None)

    async def get_guild_name(self, guild_id: str) -> str | None:
        guild = self.client.get_guild(int(guild_id)) or await self.client.fetch_guild(int(guild_id))
        return guild.name if guild else None
