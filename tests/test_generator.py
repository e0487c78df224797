"""Tests for the tool-augmented generator."""

import json

import pytest
from structlog.testing import capture_logs

from chat_person.core.errors import GenerationError, ResponseValidationError
from chat_person.core.events import EventBus
from chat_person.core.generator import ChatResponse, ResponseGenerator, response_format
from chat_person.core.llm_client import BaseLLMClient, LLMMessage
from chat_person.core.tools import ToolExecutor

from conftest import FakeChannel, FakeLLMClient, make_message

VALID = json.dumps({
    "channels": [
        {
            "channel_id": "c1",
            "segments": [
                {"quote_message_id": "m1", "contents": ["hi", "how are you"], "reaction_emojis": ["🌞"]},
            ],
        }
    ]
})


def make_generator(client, bus=None):
    history = {"m1": make_message("m1")}
    tools = ToolExecutor(history.get, [FakeChannel()])
    return ResponseGenerator(client, tools, event_bus=bus)


PROMPT = [LLMMessage(role="system", content="persona")]


@pytest.mark.asyncio
async def test_valid_payload_is_returned():
    response = await make_generator(FakeLLMClient(final_text=VALID)).generate(PROMPT)

    assert isinstance(response, ChatResponse)
    segment = response.channels[0].segments[0]
    assert segment.quote_message_id == "m1"
    assert segment.contents == ["hi", "how are you"]


@pytest.mark.asyncio
async def test_invalid_payload_logs_one_validation_error():
    with capture_logs() as logs:
        response = await make_generator(FakeLLMClient(final_text='{"channels": "nope"}')).generate(PROMPT)

    assert response is None
    assert [e["event"] for e in logs].count("response_validation_failed") == 1


@pytest.mark.asyncio
async def test_non_json_payload_is_rejected():
    with capture_logs() as logs:
        response = await make_generator(FakeLLMClient(final_text="Sure! Here you go")).generate(PROMPT)

    assert response is None
    assert any(e["event"] == "response_validation_failed" for e in logs)


@pytest.mark.parametrize(
    "payload",
    [
        {"channels": [{"channel_id": "c1", "segments": [{"contents": []}]}]},
        {"channels": [{"channel_id": "c1", "segments": [{"contents": ["x"], "extra": 1}]}]},
        {"channels": [{"segments": [{"contents": ["x"]}]}]},
    ],
)
def test_parse_rejects_malformed_shapes(payload):
    with pytest.raises(ResponseValidationError):
        ResponseGenerator.parse(json.dumps(payload))


def test_parse_accepts_silence():
    assert ResponseGenerator.parse('{"channels": []}').channels == []


@pytest.mark.asyncio
async def test_stream_events_are_published():
    bus = EventBus()
    seen = []
    bus.on("*", lambda event: seen.append(event.name))
    client = FakeLLMClient(final_text=VALID, tool_calls=[("get_message", '{"message_id": "m1"}')])

    await make_generator(client, bus).generate(PROMPT)

    assert seen == ["tool_called", "tool_result", "llm_content"]
    result = bus.get_history("tool_result")[0].data["content"]
    assert json.loads(result)["success"] is True


@pytest.mark.asyncio
async def test_generation_error_yields_no_response():
    class ExhaustedClient(BaseLLMClient):
        async def run_tools(self, messages, tools, dispatch, response_format=None):
            raise GenerationError("too many tool rounds")
            yield  # pragma: no cover

    with capture_logs() as logs:
        assert await make_generator(ExhaustedClient()).generate(PROMPT) is None
    assert any(e["event"] == "Generation failed" for e in logs)


def test_response_format_carries_schema():
    fmt = response_format()
    assert fmt["type"] == "json_schema"
    assert "channels" in fmt["json_schema"]["schema"]["properties"]
