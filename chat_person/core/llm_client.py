"""Streaming tool-calling client for OpenAI-compatible chat completion APIs."""

import asyncio
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Union

from openai import AsyncOpenAI

from ..utils.config import LLMConfig, get_settings
from ..utils.logging import get_logger
from .errors import GenerationError

logger = get_logger(__name__)


@dataclass
class LLMMessage:
    """A message in a conversation."""

    role: str  # "user", "assistant", "system", "tool"
    content: str
    name: str | None = None
    tool_calls: list[dict[str, Any]] | None = None
    tool_call_id: str | None = None


@dataclass
class Tool:
    """Tool definition for function calling."""

    name: str
    description: str
    parameters: dict[str, Any]


@dataclass
class ContentDelta:
    """A fragment of assistant text as it streams in."""

    text: str


@dataclass
class ToolCall:
    """A complete tool call requested by the model."""

    id: str
    name: str
    arguments: str


@dataclass
class ToolCallResult:
    """What a tool call returned to the model."""

    id: str
    name: str
    content: str


@dataclass
class FinalText:
    """The assistant's final text once no more tools are requested."""

    text: str


StreamEvent = Union[ContentDelta, ToolCall, ToolCallResult, FinalText]

# (tool name, raw JSON arguments) -> JSON result handed back to the model
ToolDispatcher = Callable[[str, str], Awaitable[str]]


class BaseLLMClient(ABC):
    """Abstract base class for LLM clients."""

    @abstractmethod
    def run_tools(
        self,
        messages: list[LLMMessage],
        tools: list[Tool],
        dispatch: ToolDispatcher,
        response_format: dict[str, Any] | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """
        Run the model with tools until it produces a final answer.

        Yields every content delta, tool call and tool result as it happens,
        then exactly one FinalText.

        Raises:
            GenerationError: if the tool-call budget is exhausted
        """
        pass

    async def close(self) -> None:
        """Release network resources."""
        return None


class OpenAIClient(BaseLLMClient):
    """Client for any OpenAI-compatible endpoint (OpenAI, SiliconFlow, DeepSeek, ...)."""

    def __init__(
        self,
        api_key: str | None = None,
        config: LLMConfig | None = None,
        client: AsyncOpenAI | None = None,
    ) -> None:
        settings = get_settings()
        self.config = config or settings.llm
        self.api_key = api_key if api_key is not None else settings.openai_api_key
        self._client = client

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(
                base_url=self.config.base_url,
                api_key=self.api_key,
                timeout=self.config.timeout,
            )
        return self._client

    def _messages_to_openai(self, messages: list[LLMMessage]) -> list[dict[str, Any]]:
        out = []
        for m in messages:
            if m.role == "tool":
                out.append({"role": "tool", "tool_call_id": m.tool_call_id, "content": m.content})
                continue
            role = m.role if m.role in ("user", "assistant", "system") else "user"
            msg: dict[str, Any] = {"role": role, "content": m.content or ""}
            if m.role == "assistant" and m.tool_calls:
                msg["tool_calls"] = [
                    {
                        "id": tc.get("id", f"call_{i}"),
                        "type": "function",
                        "function": {
                            "name": tc.get("name", ""),
                            "arguments": (
                                json.dumps(tc["arguments"])
                                if isinstance(tc.get("arguments"), dict)
                                else str(tc.get("arguments", "{}"))
                            ),
                        },
                    }
                    for i, tc in enumerate(m.tool_calls)
                ]
            out.append(msg)
        return out

    def _tools_to_openai(self, tools: list[Tool]) -> list[dict[str, Any]]:
        return [
            {
                "type": "function",
                "function": {
                    "name": t.name,
                    "description": t.description,
                    "parameters": t.parameters,
                },
            }
            for t in tools
        ]

    async def _create_with_retry(self, **kwargs: Any) -> Any:
        """Open a completion stream with retries on 429/502/503."""
        client = self._get_client()
        max_attempts = max(1, self.config.max_retries)
        last_error: Exception | None = None
        for attempt in range(max_attempts):
            try:
                return await client.chat.completions.create(**kwargs)
            except Exception as e:
                last_error = e
                msg = str(e).lower()
                if attempt < max_attempts - 1 and (
                    "429" in msg or "502" in msg or "503" in msg or "rate limit" in msg
                ):
                    delay = 2**attempt
                    logger.warning("LLM request failed, retrying", attempt=attempt + 1, delay_s=delay, error=msg[:100])
                    await asyncio.sleep(delay)
                else:
                    raise
        raise last_error or GenerationError("completion request failed")

    async def run_tools(
        self,
        messages: list[LLMMessage],
        tools: list[Tool],
        dispatch: ToolDispatcher,
        response_format: dict[str, Any] | None = None,
    ) -> AsyncIterator[StreamEvent]:
        conversation = self._messages_to_openai(messages)
        base_kwargs: dict[str, Any] = {
            "model": self.config.model,
            "temperature": self.config.temperature,
            "max_tokens": self.config.max_tokens,
            "stream": True,
        }
        if tools:
            base_kwargs["tools"] = self._tools_to_openai(tools)
            base_kwargs["tool_choice"] = "auto"
        if response_format:
            base_kwargs["response_format"] = response_format

        for round_index in range(self.config.max_tool_iterations + 1):
            stream = await self._create_with_retry(messages=conversation, **base_kwargs)

            content_parts: list[str] = []
            # Tool call fragments arrive spread over chunks, keyed by index
            pending: dict[int, dict[str, str]] = {}
            async for chunk in stream:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta
                if delta.content:
                    content_parts.append(delta.content)
                    yield ContentDelta(text=delta.content)
                for tc in delta.tool_calls or []:
                    slot = pending.setdefault(tc.index, {"id": "", "name": "", "arguments": ""})
                    if tc.id:
                        slot["id"] = tc.id
                    if tc.function is not None:
                        if tc.function.name:
                            slot["name"] = tc.function.name
                        if tc.function.arguments:
                            slot["arguments"] += tc.function.arguments

            content = "".join(content_parts)
            if not pending:
                yield FinalText(text=content)
                return

            calls = [pending[i] for i in sorted(pending)]
            for i, call in enumerate(calls):
                if not call["id"]:
                    call["id"] = f"call_{round_index}_{i}"

            conversation.append({
                "role": "assistant",
                "content": content or None,
                "tool_calls": [
                    {
                        "id": call["id"],
                        "type": "function",
                        "function": {"name": call["name"], "arguments": call["arguments"] or "{}"},
                    }
                    for call in calls
                ],
            })

            for call in calls:
                yield ToolCall(id=call["id"], name=call["name"], arguments=call["arguments"])
                result = await dispatch(call["name"], call["arguments"])
                yield ToolCallResult(id=call["id"], name=call["name"], content=result)
                conversation.append({"role": "tool", "tool_call_id": call["id"], "content": result})

        raise GenerationError(
            f"Model kept calling tools after {self.config.max_tool_iterations} rounds"
        )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None
