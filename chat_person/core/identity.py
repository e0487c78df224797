"""Cached user/channel/guild name lookup with placeholder fallback."""

from collections import OrderedDict
from typing import Awaitable, Callable

from ..channels.base import BaseChannel
from ..utils.config import IdentityConfig, get_settings
from ..utils.logging import get_logger

logger = get_logger(__name__)


class IdentityResolver:
    """
    Resolves display names through the channel that saw the message.

    Successful lookups are cached per (endpoint, kind, id), keeping at most
    ``cache_size`` names. Failures fall back to the configured placeholder and
    are retried on the next message.
    """

    def __init__(self, config: IdentityConfig | None = None) -> None:
        self.config = config or get_settings().identity
        self._cache: OrderedDict[tuple[str, str, str], str] = OrderedDict()

    async def _resolve(
        self,
        channel: BaseChannel,
        kind: str,
        key: str | None,
        lookup: Callable[[str], Awaitable[str | None]],
        placeholder: str,
    ) -> str:
        if not key:
            return placeholder

        cache_key = (channel.name, kind, key)
        cached = self._cache.get(cache_key)
        if cached is not None:
            self._cache.move_to_end(cache_key)
            return cached

        try:
            name = await lookup(key)
        except Exception as e:
            logger.warning(
                "identity_lookup_failed",
                endpoint=channel.name,
                kind=kind,
                id=key,
                error=str(e),
            )
            return placeholder

        if not name:
            return placeholder

        self._cache[cache_key] = name
        while len(self._cache) > self.config.cache_size:
            self._cache.popitem(last=False)
        return name

    async def resolve_user(self, channel: BaseChannel, user_id: str, hint: str | None = None) -> str:
        """User display name; ``hint`` is a name the platform already supplied."""
        if hint:
            return hint
        return await self._resolve(
            channel, "user", user_id, channel.get_user_name, self.config.unknown_user
        )

    async def resolve_channel(self, channel: BaseChannel, channel_id: str) -> str:
        return await self._resolve(
            channel, "channel", channel_id, channel.get_channel_name, self.config.unknown_channel
        )

    async def resolve_guild(self, channel: BaseChannel, guild_id: str | None) -> str | None:
        """Guild name, or None for direct/ungrouped channels."""
        if not guild_id:
            return None
        return await self._resolve(
            channel, "guild", guild_id, channel.get_guild_name, self.config.unknown_guild
        )

    def clear(self) -> None:
        self._cache.clear()
