"""Tools the model may call while composing a reply."""

import json
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Sequence

from pydantic import BaseModel, Field, ValidationError

from ..channels.base import BaseChannel
from ..integrations.abbreviation import AbbreviationLookup, normalize_token
from ..memory.history import ChatMessage
from ..utils.logging import AuditLogger, get_logger
from .context_manager import redact
from .errors import MessageNotFoundError
from .llm_client import Tool

logger = get_logger(__name__)


class CreateReactionArgs(BaseModel):
    """Add emoji reactions to a message in the chat history."""

    message_id: str = Field(description="Id of the message to react to")
    emojis: list[str] = Field(min_length=1, description="Emojis to add, one reaction each")


class GetMessageArgs(BaseModel):
    """Read a message from the chat history by id."""

    message_id: str = Field(description="Id of the message to read")


class SearchAbbreviationArgs(BaseModel):
    """Look up the meaning of slang abbreviations such as pinyin initials."""

    tokens: list[str] = Field(min_length=1, description="Abbreviations to look up, e.g. ['yyds', 'xswl']")


@dataclass
class ToolResult:
    """Result of a tool execution."""

    success: bool = False
    output: dict[str, Any] = field(default_factory=dict)
    error: str | None = None

    def to_payload(self) -> dict[str, Any]:
        """The JSON object handed back to the model."""
        if not self.success:
            return {"error": self.error or "unknown error"}
        return {"success": True, **self.output}


MessageFinder = Callable[[str], ChatMessage | None]
ToolHandler = Callable[[Any], Awaitable[ToolResult]]


class ToolExecutor:
    """
    Validates and runs tool calls against the live history and endpoints.

    Handlers never raise: every failure becomes an ``{"error": ...}`` payload
    the model can read and react to.
    """

    def __init__(
        self,
        find_message: MessageFinder,
        channels: Sequence[BaseChannel],
        abbreviations: AbbreviationLookup | None = None,
        audit_logger: AuditLogger | None = None,
    ) -> None:
        self._find_message = find_message
        self._channels = channels
        self._abbreviations = abbreviations
        self._audit = audit_logger

        self._registry: dict[str, tuple[type[BaseModel], ToolHandler]] = {
            "create_reaction": (CreateReactionArgs, self.create_reaction),
            "get_message": (GetMessageArgs, self.get_message),
        }
        if abbreviations is not None:
            self._registry["search_abbreviation"] = (SearchAbbreviationArgs, self.search_abbreviation)

    def definitions(self) -> list[Tool]:
        """Function-calling definitions for every registered tool."""
        tools = []
        for name, (model, _) in self._registry.items():
            schema = model.model_json_schema()
            schema.pop("title", None)
            description = schema.pop("description", "") or name
            tools.append(Tool(name=name, description=description, parameters=schema))
        return tools

    async def dispatch(self, name: str, raw_arguments: str) -> str:
        """Run one tool call and return its JSON payload."""
        entry = self._registry.get(name)
        if entry is None:
            result = ToolResult(error=f"Unknown tool: {name}")
        else:
            model, handler = entry
            try:
                args = model.model_validate_json(raw_arguments or "{}")
            except ValidationError as e:
                result = ToolResult(error=f"Invalid arguments: {e.errors(include_url=False)}")
            else:
                try:
                    result = await handler(args)
                except Exception as e:
                    logger.error("Tool handler crashed", tool=name, error=str(e), exc_info=True)
                    result = ToolResult(error=str(e))

        if self._audit is not None:
            if result.success:
                self._audit.tool_executed(name, {"raw": raw_arguments})
            else:
                self._audit.tool_failed(name, result.error or "")

        return json.dumps(result.to_payload(), ensure_ascii=False, default=str)

    def _require_message(self, message_id: str) -> ChatMessage:
        message = self._find_message(message_id)
        if message is None:
            raise MessageNotFoundError(message_id)
        return message

    async def create_reaction(self, args: CreateReactionArgs) -> ToolResult:
        try:
            message = self._require_message(args.message_id)
        except MessageNotFoundError as e:
            return ToolResult(error=str(e))

        # The endpoint that saw the message is the most likely to host its channel
        ordered = sorted(self._channels, key=lambda c: c.name != message.endpoint)
        remaining = list(args.emojis)
        errors: dict[str, str] = {}
        for channel in ordered:
            try:
                while remaining:
                    await channel.react(message.channel_id, message.message_id, remaining[0])
                    remaining.pop(0)
            except Exception as e:
                errors[channel.name] = str(e)
                logger.warning(
                    "reaction_failed",
                    endpoint=channel.name,
                    message_id=message.message_id,
                    error=str(e),
                    remaining=len(remaining),
                )
                continue
            return ToolResult(success=True, output={"endpoint": channel.name})

        return ToolResult(error=f"Could not add reactions on any endpoint: {errors}")

    async def get_message(self, args: GetMessageArgs) -> ToolResult:
        try:
            message = self._require_message(args.message_id)
        except MessageNotFoundError as e:
            return ToolResult(error=str(e))
        return ToolResult(success=True, output={"message": redact(message)})

    async def search_abbreviation(self, args: SearchAbbreviationArgs) -> ToolResult:
        """Look tokens up one by one; a failing token does not abort the rest."""
        results: list[dict[str, Any]] = []
        for token in args.tokens:
            normalized = normalize_token(token)
            if normalized is None:
                results.append({"token": token, "error": "Not an abbreviation"})
                continue
            try:
                meanings = await self._abbreviations.lookup(normalized)
            except Exception as e:
                logger.warning("Abbreviation lookup failed", token=normalized, error=str(e))
                results.append({"token": token, "error": str(e)})
                continue
            results.append({"token": token, "meanings": meanings})
        return ToolResult(success=True, output={"results": results})
