"""Drives one tool-augmented model call and validates its structured reply."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..utils.logging import get_logger
from .errors import GenerationError, ResponseValidationError
from .events import EventBus
from .llm_client import (
    BaseLLMClient,
    ContentDelta,
    FinalText,
    LLMMessage,
    ToolCall,
    ToolCallResult,
)
from .tools import ToolExecutor

logger = get_logger(__name__)


class ResponseSegment(BaseModel):
    """A run of messages sent together, optionally quoting one message."""

    model_config = ConfigDict(extra="forbid")

    quote_message_id: str | None = Field(
        default=None, description="Id of the message to quote, or null"
    )
    contents: list[str] = Field(min_length=1, description="Messages to send, one bubble each")
    reaction_emojis: list[str] | None = Field(
        default=None, description="Reactions for the last message of this segment, or null"
    )


class ChannelResponse(BaseModel):
    """Everything to send to one channel."""

    model_config = ConfigDict(extra="forbid")

    channel_id: str
    segments: list[ResponseSegment]


class ChatResponse(BaseModel):
    """The model's final structured answer."""

    model_config = ConfigDict(extra="forbid")

    channels: list[ChannelResponse]


def response_format() -> dict[str, Any]:
    """JSON-schema structured-output request for ChatResponse."""
    return {
        "type": "json_schema",
        "json_schema": {
            "name": "chat_response",
            "schema": ChatResponse.model_json_schema(),
        },
    }


class ResponseGenerator:
    """
    Runs the model with the bounded tool set and returns a validated reply.

    Stream events are logged and published on the event bus as
    ``llm_content``, ``tool_called`` and ``tool_result``; nothing from the
    stream is persisted.
    """

    def __init__(
        self,
        llm_client: BaseLLMClient,
        tools: ToolExecutor,
        event_bus: EventBus | None = None,
    ) -> None:
        self.llm_client = llm_client
        self.tools = tools
        self.event_bus = event_bus

    async def _publish(self, name: str, data: dict[str, Any]) -> None:
        if self.event_bus is not None:
            await self.event_bus.emit(name, data, source="generator")

    async def generate(self, prompt: list[LLMMessage]) -> ChatResponse | None:
        """
        Run one generation attempt.

        Returns:
            The validated response, or None if the model failed or its
            payload did not validate. Nothing may be delivered in that case.
        """
        final_text: str | None = None
        stream = self.llm_client.run_tools(
            prompt,
            self.tools.definitions(),
            self.tools.dispatch,
            response_format=response_format(),
        )
        try:
            async for event in stream:
                if isinstance(event, ContentDelta):
                    await self._publish("llm_content", {"text": event.text})
                elif isinstance(event, ToolCall):
                    logger.info("Tool called", tool=event.name, arguments=event.arguments)
                    await self._publish(
                        "tool_called",
                        {"id": event.id, "name": event.name, "arguments": event.arguments},
                    )
                elif isinstance(event, ToolCallResult):
                    logger.info("Tool result", tool=event.name, result=event.content[:200])
                    await self._publish(
                        "tool_result",
                        {"id": event.id, "name": event.name, "content": event.content},
                    )
                elif isinstance(event, FinalText):
                    final_text = event.text
        except GenerationError as e:
            logger.error("Generation failed", error=str(e))
            return None

        if final_text is None:
            logger.error("Generation ended without a final answer")
            return None

        try:
            return self.parse(final_text)
        except ResponseValidationError as e:
            logger.error(
                "response_validation_failed",
                reason=e.reason,
                raw=e.raw[:500],
            )
            return None

    @staticmethod
    def parse(raw: str) -> ChatResponse:
        """
        Parse and validate a final payload.

        Raises:
            ResponseValidationError: if the payload is not valid JSON or does
                not match the response schema
        """
        try:
            return ChatResponse.model_validate_json(raw)
        except ValidationError as e:
            raise ResponseValidationError(
                f"{e.error_count()} validation error(s): {e.errors(include_url=False)}",
                raw=raw,
            ) from e
