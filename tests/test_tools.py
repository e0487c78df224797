"""Tests for the model-callable tools."""

import json

import pytest

from chat_person.core.tools import ToolExecutor

from conftest import FakeChannel, make_message


class FakeLookup:
    def __init__(self, meanings=None, failing=()):
        self.meanings = meanings or {}
        self.failing = set(failing)
        self.calls = []

    async def lookup(self, normalized):
        self.calls.append(normalized)
        if normalized in self.failing:
            raise RuntimeError(f"lookup failed for {normalized}")
        return self.meanings.get(normalized, [])


class RecordingAudit:
    def __init__(self):
        self.executed = []
        self.failed = []

    def tool_executed(self, tool, arguments, **kwargs):
        self.executed.append(tool)

    def tool_failed(self, tool, error, **kwargs):
        self.failed.append((tool, error))


def make_executor(channels=None, lookup=None, audit=None):
    history = {"m1": make_message("m1", content="yyds", guild_id="g1", guild_name="Guild", endpoint="second")}
    channels = channels if channels is not None else [FakeChannel()]
    return ToolExecutor(history.get, channels, abbreviations=lookup, audit_logger=audit)


@pytest.mark.asyncio
async def test_get_message_returns_redacted_view():
    executor = make_executor()
    payload = json.loads(await executor.dispatch("get_message", '{"message_id": "m1"}'))

    assert payload["success"] is True
    assert payload["message"]["content"] == "yyds"
    assert payload["message"]["guild_name"] == "Guild"
    assert "origin_id" not in payload["message"]
    assert "guild_id" not in payload["message"]


@pytest.mark.asyncio
async def test_get_message_missing_is_error_payload():
    executor = make_executor()
    payload = json.loads(await executor.dispatch("get_message", '{"message_id": "nope"}'))
    assert payload == {"error": "Message not found: nope"}


@pytest.mark.asyncio
async def test_invalid_arguments_are_reported_to_model():
    executor = make_executor()

    missing = json.loads(await executor.dispatch("get_message", "{}"))
    assert missing["error"].startswith("Invalid arguments")

    broken = json.loads(await executor.dispatch("create_reaction", "{not json"))
    assert broken["error"].startswith("Invalid arguments")

    empty = json.loads(await executor.dispatch("create_reaction", '{"message_id": "m1", "emojis": []}'))
    assert empty["error"].startswith("Invalid arguments")


@pytest.mark.asyncio
async def test_unknown_tool():
    payload = json.loads(await make_executor().dispatch("delete_everything", "{}"))
    assert payload == {"error": "Unknown tool: delete_everything"}


@pytest.mark.asyncio
async def test_create_reaction_falls_back_to_working_endpoint():
    broken = FakeChannel("first", fail_react=True)
    working = FakeChannel("second")
    executor = make_executor(channels=[broken, working])

    payload = json.loads(
        await executor.dispatch("create_reaction", '{"message_id": "m1", "emojis": ["👍", "🎉"]}')
    )

    assert payload == {"success": True, "endpoint": "second"}
    assert working.reactions == [("c1", "m1", "👍"), ("c1", "m1", "🎉")]


@pytest.mark.asyncio
async def test_create_reaction_prefers_endpoint_that_saw_message():
    first = FakeChannel("first")
    second = FakeChannel("second")
    executor = make_executor(channels=[first, second])

    await executor.dispatch("create_reaction", '{"message_id": "m1", "emojis": ["👍"]}')

    assert first.reactions == []
    assert second.reactions == [("c1", "m1", "👍")]


@pytest.mark.asyncio
async def test_create_reaction_all_endpoints_fail():
    audit = RecordingAudit()
    executor = make_executor(channels=[FakeChannel("a", fail_react=True)], audit=audit)

    payload = json.loads(await executor.dispatch("create_reaction", '{"message_id": "m1", "emojis": ["👍"]}'))

    assert "error" in payload
    assert audit.failed and audit.failed[0][0] == "create_reaction"


@pytest.mark.asyncio
async def test_create_reaction_missing_message():
    channel = FakeChannel()
    executor = make_executor(channels=[channel])

    payload = json.loads(await executor.dispatch("create_reaction", '{"message_id": "zzz", "emojis": ["👍"]}'))

    assert payload == {"error": "Message not found: zzz"}
    assert channel.reactions == []


@pytest.mark.asyncio
async def test_search_abbreviation_reports_failures_inline():
    lookup = FakeLookup(meanings={"yyds": ["永远的神"]}, failing={"xswl"})
    executor = make_executor(lookup=lookup)

    payload = json.loads(
        await executor.dispatch("search_abbreviation", '{"tokens": ["YYDS", "xswl", "!"]}')
    )

    assert payload["success"] is True
    results = payload["results"]
    assert results[0] == {"token": "YYDS", "meanings": ["永远的神"]}
    assert "lookup failed" in results[1]["error"]
    assert results[2] == {"token": "!", "error": "Not an abbreviation"}
    assert lookup.calls == ["yyds", "xswl"]


def test_definitions_follow_argument_models():
    tools = {t.name: t for t in make_executor(lookup=FakeLookup()).definitions()}

    assert set(tools) == {"create_reaction", "get_message", "search_abbreviation"}
    assert tools["create_reaction"].parameters["required"] == ["message_id", "emojis"]
    assert "title" not in tools["get_message"].parameters
    assert tools["get_message"].description


def test_search_abbreviation_only_offered_with_lookup():
    names = [t.name for t in make_executor().definitions()]
    assert "search_abbreviation" not in names


@pytest.mark.asyncio
async def test_successful_calls_are_audited():
    audit = RecordingAudit()
    executor = make_executor(audit=audit)
    await executor.dispatch("get_message", '{"message_id": "m1"}')
    assert audit.executed == ["get_message"]


class FlakyReactChannel(FakeChannel):
    """Accepts a fixed number of reactions, then starts failing."""

    def __init__(self, name, accept):
        super().__init__(name)
        self.accept = accept

    async def react(self, channel_id, message_id, emoji):
        if len(self.reactions) >= self.accept:
            raise ConnectionError("rate limited")
        await super().react(channel_id, message_id, emoji)


@pytest.mark.asyncio
async def test_create_reaction_does_not_repeat_emojis_after_partial_failure():
    backup = FakeChannel("first")
    flaky = FlakyReactChannel("second", accept=1)
    executor = make_executor(channels=[backup, flaky])

    payload = json.loads(
        await executor.dispatch("create_reaction", '{"message_id": "m1", "emojis": ["👍", "🎉", "🔥"]}')
    )

    assert payload == {"success": True, "endpoint": "first"}
    assert flaky.reactions == [("c1", "m1", "👍")]
    assert backup.reactions == [("c1", "m1", "🎉"), ("c1", "m1", "🔥")]
