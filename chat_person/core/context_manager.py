"""Prompt context: the rolling history window and the persona system prompt."""

import json
from typing import Any

from ..memory.history import ChatMessage
from ..utils.config import ContextConfig, PersonaConfig
from ..utils.logging import get_logger
from .llm_client import LLMMessage

logger = get_logger(__name__)


def redact(message: ChatMessage) -> dict[str, Any]:
    """
    The view of a message the model is allowed to see.

    Drops routing internals (origin id, guild id, role, endpoint) and keeps
    what a person reading the chat would know.
    """
    return {
        "name": message.name,
        "content": message.content,
        "message_id": message.message_id,
        "channel_id": message.channel_id,
        "channel_name": message.channel_name,
        "guild_name": message.guild_name,
        "quote": message.quote,
        "need_reply": message.need_reply,
    }


class ContextWindow:
    """
    How many of the most recent messages go into the prompt.

    The count grows by one per appended message. Once it passes
    ``max_context`` it drops back to ``fit_context``, so the prompt slides
    in steps instead of growing without bound.
    """

    def __init__(self, max_context: int, fit_context: int, initial: int = 0) -> None:
        if not 0 < fit_context < max_context:
            raise ValueError(
                f"fit_context must be between 0 and max_context, got {fit_context}/{max_context}"
            )
        self.max_context = max_context
        self.fit_context = fit_context
        self.count = max(0, initial)

    @classmethod
    def from_history(cls, config: ContextConfig, history_length: int) -> "ContextWindow":
        """Window for a freshly loaded history."""
        return cls(
            config.max_context,
            config.fit_context,
            initial=min(config.fit_context, history_length),
        )

    def on_append(self) -> int:
        self.count += 1
        if self.count > self.max_context:
            logger.debug("Context window reset", count=self.count, fit=self.fit_context)
            self.count = self.fit_context
        return self.count

    def select(self, messages: list[ChatMessage]) -> list[ChatMessage]:
        """The most recent ``min(count, len(messages))`` messages, oldest first."""
        size = min(self.count, len(messages))
        if size <= 0:
            return []
        return list(messages[-size:])


class PromptBuilder:
    """Renders the persona and a history slice into model messages."""

    def __init__(self, persona: PersonaConfig) -> None:
        self.persona = persona
        self._system_prompt = self._build_system_prompt()

    @property
    def system_prompt(self) -> str:
        return self._system_prompt

    def _build_system_prompt(self) -> str:
        """System prompt (modular sections)."""
        p = self.persona
        sections: list[str] = []

        # --- Identity ---
        sections.append(
            f"You are {p.name}, a {p.age}-year-old {p.gender} {p.profession}."
        )
        sections.append(f"Your personality: {p.personality}.")
        if p.hobbies:
            sections.append(f"You like {', '.join(p.hobbies)}.")
        if p.hates:
            sections.append(f"You dislike {', '.join(p.hates)}.")
        sections.append("")

        # --- Behaviour ---
        sections.append("## How you chat")
        sections.append("You take part in several group chats at once, like a real member of each.")
        sections.append("Keep replies short and natural. Split long thoughts into several short messages.")
        sections.append("Keep code and formatted text together in a single message.")
        sections.append("Each chat message you receive is a JSON object. Messages with need_reply=true have not been answered yet.")
        sections.append("You do not have to answer everything. Reply only where a person in your place would.")
        sections.append("")

        # --- Tooling ---
        sections.append("## Tools")
        sections.append("- create_reaction: add emoji reactions to someone else's message")
        sections.append("- get_message: read a message by id, e.g. one that was quoted")
        sections.append("- search_abbreviation: look up what slang abbreviations (pinyin initials like yyds) mean")
        sections.append("")

        # --- Response format ---
        sections.append("## Response format")
        sections.append("Answer with a single JSON object and nothing else:")
        sections.append(
            '{"channels": [{"channel_id": "<target channel id>", "segments": '
            '[{"quote_message_id": "<message id to quote or null>", '
            '"contents": ["message", "another message"], '
            '"reaction_emojis": ["<emoji for your own last message>"] or null}]}]}'
        )
        sections.append("- channels: one entry per chat you reply in; an empty list means you stay silent")
        sections.append("- quote_message_id: quote a message when replying to it directly, otherwise null")
        sections.append("- contents: at least one message; each item is sent as its own chat message")
        sections.append("- reaction_emojis: reactions to put on your own last message of the segment, or null")

        return "\n".join(sections)

    def build_messages(self, history: list[ChatMessage]) -> list[LLMMessage]:
        """System prompt followed by one JSON envelope per history message."""
        messages = [LLMMessage(role="system", content=self._system_prompt)]
        for message in history:
            role = message.role if message.role in ("user", "assistant", "system") else "user"
            messages.append(
                LLMMessage(
                    role=role,
                    content=json.dumps(redact(message), ensure_ascii=False),
                )
            )
        return messages
