"""Tests for cached identity resolution."""

import pytest
from structlog.testing import capture_logs

from chat_person.core.identity import IdentityResolver
from chat_person.utils.config import IdentityConfig

from conftest import FakeChannel


class CountingChannel(FakeChannel):
    def __init__(self):
        super().__init__()
        self.lookups = 0
        self.fail = False

    async def get_user_name(self, user_id):
        self.lookups += 1
        if self.fail:
            raise ConnectionError("platform down")
        return await super().get_user_name(user_id)


@pytest.mark.asyncio
async def test_successful_lookup_is_cached():
    channel = CountingChannel()
    channel.user_names["u1"] = "Alice"
    resolver = IdentityResolver(IdentityConfig())

    assert await resolver.resolve_user(channel, "u1") == "Alice"
    assert await resolver.resolve_user(channel, "u1") == "Alice"
    assert channel.lookups == 1


@pytest.mark.asyncio
async def test_failure_degrades_to_placeholder_and_retries_later():
    channel = CountingChannel()
    channel.fail = True
    resolver = IdentityResolver(IdentityConfig(unknown_user="someone"))

    with capture_logs() as logs:
        assert await resolver.resolve_user(channel, "u1") == "someone"
    assert any(e["event"] == "identity_lookup_failed" and e["kind"] == "user" for e in logs)

    channel.fail = False
    channel.user_names["u1"] = "Alice"
    assert await resolver.resolve_user(channel, "u1") == "Alice"


@pytest.mark.asyncio
async def test_platform_supplied_name_wins():
    channel = CountingChannel()
    resolver = IdentityResolver(IdentityConfig())
    assert await resolver.resolve_user(channel, "u1", hint="Bob") == "Bob"
    assert channel.lookups == 0


@pytest.mark.asyncio
async def test_unknown_channel_and_guild_placeholders():
    resolver = IdentityResolver(IdentityConfig())
    channel = FakeChannel()

    assert await resolver.resolve_channel(channel, "c9") == "unknown channel"
    assert await resolver.resolve_guild(channel, "g9") == "unknown server"
    assert await resolver.resolve_guild(channel, None) is None


@pytest.mark.asyncio
async def test_cache_is_per_endpoint():
    slack = FakeChannel("slack")
    discord = FakeChannel("discord")
    slack.channel_names["c1"] = "general"
    discord.channel_names["c1"] = "lobby"
    resolver = IdentityResolver(IdentityConfig())

    assert await resolver.resolve_channel(slack, "c1") == "general"
    assert await resolver.resolve_channel(discord, "c1") == "lobby"


@pytest.mark.asyncio
async def test_cache_is_bounded():
    channel = CountingChannel()
    channel.user_names.update({"u1": "Alice", "u2": "Bob", "u3": "Carol"})
    resolver = IdentityResolver(IdentityConfig(cache_size=2))

    for user_id in ("u1", "u2", "u3"):
        await resolver.resolve_user(channel, user_id)
    assert channel.lookups == 3

    # u1 was evicted when u3 arrived; u3 is still cached
    assert await resolver.resolve_user(channel, "u3") == "Carol"
    assert channel.lookups == 3
    assert await resolver.resolve_user(channel, "u1") == "Alice"
    assert channel.lookups == 4
