"""Shared fakes for chat-person tests."""

import asyncio
from typing import Any

import pytest

from chat_person.channels.base import BaseChannel, ContentItem, IncomingMessage
from chat_person.core.errors import DeliveryError, PersistenceError
from chat_person.core.llm_client import (
    BaseLLMClient,
    ContentDelta,
    FinalText,
    ToolCall,
    ToolCallResult,
)
from chat_person.memory.history import ChatMessage
from chat_person.utils.config import Settings


class FakeChannel(BaseChannel):
    """In-memory endpoint that records sends and reactions."""

    def __init__(
        self,
        name: str = "fake",
        bot_id: str = "bot-1",
        fail_send: bool = False,
        fail_react: bool = False,
    ) -> None:
        super().__init__(name)
        self.bot_id = bot_id
        self.fail_send = fail_send
        self.fail_react = fail_react
        self.sent: list[tuple[str, ContentItem, str]] = []
        self.send_calls = 0
        self.reactions: list[tuple[str, str, str]] = []
        self.user_names: dict[str, str] = {}
        self.channel_names: dict[str, str] = {}
        self.guild_names: dict[str, str] = {}
        self._next_id = 0

    @property
    def self_identifiers(self) -> list[str]:
        return [f"<@{self.bot_id}>"]

    def is_self(self, origin_id: str) -> bool:
        return origin_id == self.bot_id

    async def start(self) -> None:
        self._connected = True

    async def stop(self) -> None:
        self._connected = False

    async def send(self, channel_id: str, items: list[ContentItem]) -> list[str]:
        self.send_calls += 1
        if self.fail_send:
            raise DeliveryError(f"{self.name} refused to send")
        ids = []
        for item in items:
            self._next_id += 1
            message_id = f"{self.name}-{self._next_id}"
            self.sent.append((channel_id, item, message_id))
            ids.append(message_id)
        return ids

    async def react(self, channel_id: str, message_id: str, emoji: str) -> None:
        if self.fail_react:
            raise DeliveryError(f"{self.name} refused to react")
        self.reactions.append((channel_id, message_id, emoji))

    async def get_user_name(self, user_id: str) -> str | None:
        return self.user_names.get(user_id)

    async def get_channel_name(self, channel_id: str) -> str | None:
        return self.channel_names.get(channel_id)

    async def get_guild_name(self, guild_id: str) -> str | None:
        return self.guild_names.get(guild_id)

    async def receive(self, message: IncomingMessage) -> None:
        await self._dispatch_message(message)

    async def receive_edit(self, message: IncomingMessage) -> None:
        await self._dispatch_edit(message)


class FakeStore:
    """History store keeping rows in a dict keyed like the real table."""

    def __init__(self, messages: list[ChatMessage] | None = None) -> None:
        self.rows: dict[tuple[int, str], ChatMessage] = {m.key: m for m in messages or []}
        self.fail = False
        self.upsert_calls = 0
        self.closed = False

    async def initialize(self) -> None:
        return None

    async def bulk_load(self) -> list[ChatMessage]:
        return [self.rows[k] for k in sorted(self.rows)]

    async def upsert(self, messages: list[ChatMessage]) -> None:
        self.upsert_calls += 1
        if self.fail:
            raise PersistenceError("disk full")
        for message in messages:
            self.rows[message.key] = ChatMessage(**message.to_dict())

    async def close(self) -> None:
        self.closed = True


class FakeLLMClient(BaseLLMClient):
    """Model stand-in that runs scripted tool calls, then answers ``final_text``."""

    def __init__(
        self,
        final_text: str = '{"channels": []}',
        tool_calls: list[tuple[str, str]] | None = None,
        gate: asyncio.Event | None = None,
    ) -> None:
        self.final_text = final_text
        self.tool_calls = tool_calls or []
        self.gate = gate
        self.calls: list[list[Any]] = []
        self.tool_names: list[list[str]] = []
        self.running = 0
        self.max_running = 0
        self.closed = False

    async def run_tools(self, messages, tools, dispatch, response_format=None):
        self.calls.append(list(messages))
        self.tool_names.append([t.name for t in tools])
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            if self.gate is not None:
                await self.gate.wait()
            for i, (name, arguments) in enumerate(self.tool_calls):
                yield ToolCall(id=f"call_{i}", name=name, arguments=arguments)
                result = await dispatch(name, arguments)
                yield ToolCallResult(id=f"call_{i}", name=name, content=result)
            yield ContentDelta(text=self.final_text)
            yield FinalText(text=self.final_text)
        finally:
            self.running -= 1

    async def close(self) -> None:
        self.closed = True


def make_message(
    message_id: str,
    content: str = "hello",
    timestamp: int = 1,
    channel_id: str = "c1",
    **kwargs: Any,
) -> ChatMessage:
    defaults: dict[str, Any] = {
        "name": "alice",
        "user_id": "u1",
        "origin_id": "u1",
        "need_reply": True,
        "endpoint": "fake",
    }
    defaults.update(kwargs)
    return ChatMessage(
        timestamp=timestamp,
        message_id=message_id,
        channel_id=channel_id,
        content=content,
        **defaults,
    )


async def drain(rounds: int = 10) -> None:
    """Let every ready task run a few steps."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def settings() -> Settings:
    return Settings()


@pytest.fixture
def channel() -> FakeChannel:
    return FakeChannel()


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()
