"""Main orchestrator - wires intake, history, triggering, generation and delivery."""

import asyncio
import random
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from ..channels.base import BaseChannel, IncomingMessage
from ..integrations.abbreviation import AbbreviationLookup
from ..memory.history import ChatMessage, HistoryStore
from ..utils.config import Settings, get_settings
from ..utils.logging import AuditLogger, get_audit_logger, get_logger
from .context_manager import ContextWindow, PromptBuilder
from .debounce import DebounceAggregator
from .delivery import DeliveryFanout
from .errors import PersistenceError
from .events import EventBus, get_event_bus
from .generator import ResponseGenerator
from .identity import IdentityResolver
from .llm_client import BaseLLMClient
from .scheduler import GenerationScheduler
from .tools import ToolExecutor
from .trigger import TriggerController

logger = get_logger(__name__)


@dataclass
class AgentState:
    """
    Everything one running persona knows.

    ``messages`` mirrors the history store in persisted order. Only the
    orchestrator mutates this state, always from the event loop.
    """

    window: ContextWindow
    trigger: TriggerController
    messages: list[ChatMessage] = field(default_factory=list)
    last_timestamp: int = 0

    def next_timestamp(self, now_ms: int) -> int:
        """A timestamp strictly after everything already recorded."""
        return max(now_ms, self.last_timestamp + 1)

    def append(self, message: ChatMessage) -> None:
        self.messages.append(message)
        self.last_timestamp = message.timestamp
        self.window.on_append()

    def find_message(self, message_id: str) -> ChatMessage | None:
        for message in reversed(self.messages):
            if message.message_id == message_id:
                return message
        return None


class Orchestrator:
    """
    Coordinates all chat-person components.

    Responsibilities:
    - Debounce messages from every registered channel
    - Record settled messages in history, persist first
    - Decide whether to reply and schedule generation attempts
    - Build the prompt, run the model with tools, deliver the reply
    """

    def __init__(
        self,
        store: HistoryStore,
        llm_client: BaseLLMClient,
        abbreviations: AbbreviationLookup | None = None,
        settings: Settings | None = None,
        rng: Callable[[], float] = random.random,
        event_bus: EventBus | None = None,
        audit_logger: AuditLogger | None = None,
        identity: IdentityResolver | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.settings = settings or get_settings()
        self.store = store
        self.llm_client = llm_client
        self.abbreviations = abbreviations
        self.event_bus = event_bus or get_event_bus()
        self.audit_logger = audit_logger or get_audit_logger()
        self.identity = identity or IdentityResolver(self.settings.identity)

        self.channels: list[BaseChannel] = []
        self._running = False
        self._stopping = False
        self._ingest_lock = asyncio.Lock()

        self.state = AgentState(
            window=ContextWindow(
                self.settings.context.max_context,
                self.settings.context.fit_context,
            ),
            trigger=TriggerController(self.settings.trigger, rng=rng),
        )

        self.debouncer = DebounceAggregator(
            self.ingest,
            delay=self.settings.debounce.delay_seconds,
            sleep=sleep,
        )
        self.scheduler = GenerationScheduler(self._run_attempt)
        self.prompt_builder = PromptBuilder(self.settings.persona)
        self.tools = ToolExecutor(
            self.state.find_message,
            self.channels,
            abbreviations=abbreviations,
            audit_logger=self.audit_logger,
        )
        self.generator = ResponseGenerator(llm_client, self.tools, event_bus=self.event_bus)
        self.delivery = DeliveryFanout(
            self.channels,
            audit_logger=self.audit_logger,
            event_bus=self.event_bus,
        )

    async def initialize(self) -> None:
        """Load history into the mirror and size the window from it."""
        messages = await self.store.bulk_load()
        self.state.messages = messages
        self.state.last_timestamp = messages[-1].timestamp if messages else 0
        self.state.window = ContextWindow.from_history(self.settings.context, len(messages))
        logger.info(
            "Orchestrator initialized",
            history=len(messages),
            window=self.state.window.count,
        )

    def register_channel(self, channel: BaseChannel) -> None:
        """Register a messaging channel and route its traffic through the debouncer."""
        self.channels.append(channel)
        channel.on_message(self.debouncer.on_message)
        channel.on_message_edit(self.debouncer.on_message_edit)
        logger.info("Registered channel", channel=channel.name)

    def get_channel(self, name: str) -> BaseChannel | None:
        for channel in self.channels:
            if channel.name == name:
                return channel
        return None

    def is_loopback(self, origin_id: str) -> bool:
        """Whether a sender id belongs to any of our own endpoints."""
        return any(channel.is_self(origin_id) for channel in self.channels)

    def _mentions(self) -> list[str]:
        names = [self.settings.persona.name]
        for channel in self.channels:
            names.extend(channel.self_identifiers)
        return names

    async def start(self) -> None:
        """Start the orchestrator and all channels."""
        if self._running:
            return

        logger.info("Starting orchestrator")

        for channel in self.channels:
            try:
                await channel.start()
                logger.info("Started channel", channel=channel.name)
            except Exception as e:
                logger.error("Failed to start channel", channel=channel.name, error=str(e))

        self._running = True
        logger.info("Orchestrator started")

    async def stop(self) -> None:
        """Drain in-flight work and stop all components."""
        if not self._running:
            return

        logger.info("Stopping orchestrator")
        self._stopping = True

        # Ingestions already past their timer finish, but may no longer trigger
        self.debouncer.cancel_all()
        await self.debouncer.wait_settled()
        await self.scheduler.wait_idle()

        for channel in self.channels:
            try:
                await channel.stop()
                logger.info("Stopped channel", channel=channel.name)
            except Exception as e:
                logger.error("Failed to stop channel", channel=channel.name, error=str(e))

        await self.llm_client.close()
        if self.abbreviations is not None:
            await self.abbreviations.close()
        await self.store.close()

        self._running = False
        logger.info("Orchestrator stopped")

    async def ingest(self, snapshot: IncomingMessage) -> ChatMessage | None:
        """
        Record a settled message and decide whether to reply.

        Returns the recorded message, or None if it was filtered out or could
        not be persisted.
        """
        if self._stopping:
            logger.debug("Message ignored during shutdown", message_id=snapshot.id)
            return None

        allowed = self.settings.persona.allowed_channels
        if allowed and snapshot.channel_id not in allowed:
            logger.debug("Message from channel outside allowlist", channel_id=snapshot.channel_id)
            return None

        channel = self.get_channel(snapshot.endpoint)
        if channel is None:
            logger.warning("Message from unregistered endpoint", endpoint=snapshot.endpoint)
            return None

        async with self._ingest_lock:
            loopback = self.is_loopback(snapshot.origin_id)
            if loopback:
                name = self.settings.persona.name
            else:
                name = await self.identity.resolve_user(channel, snapshot.user_id, snapshot.user_name)
            channel_name = await self.identity.resolve_channel(channel, snapshot.channel_id)
            guild_name = await self.identity.resolve_guild(channel, snapshot.guild_id)

            message = ChatMessage(
                timestamp=self.state.next_timestamp(int(time.time() * 1000)),
                message_id=snapshot.id,
                name=name,
                user_id=snapshot.user_id,
                channel_id=snapshot.channel_id,
                content=snapshot.content,
                origin_id=snapshot.origin_id,
                role="assistant" if loopback else "user",
                channel_name=channel_name,
                guild_id=snapshot.guild_id,
                guild_name=guild_name,
                quote=snapshot.quote_id,
                need_reply=not loopback,
                endpoint=snapshot.endpoint,
            )

            try:
                await self.store.upsert([message])
            except PersistenceError as e:
                logger.error("Failed to persist message", message_id=message.message_id, error=str(e))
                return None

            self.state.append(message)
            probability = self.state.trigger.observe(message.content, self._mentions(), loopback)
            triggered = not loopback and not self._stopping and self.state.trigger.should_trigger()

            logger.info(
                "Message recorded",
                message_id=message.message_id,
                endpoint=message.endpoint,
                loopback=loopback,
                probability=round(probability, 3),
                triggered=triggered,
            )
            await self.event_bus.emit(
                "message_settled",
                {"message_id": message.message_id, "probability": probability, "triggered": triggered},
                source="orchestrator",
            )

            if triggered:
                self.scheduler.request()

        return message

    async def _clear_need_reply(self) -> None:
        pending = [m for m in self.state.messages if m.need_reply]
        if not pending:
            return
        for message in pending:
            message.need_reply = False
        try:
            await self.store.upsert(pending)
        except PersistenceError as e:
            logger.error("Failed to persist need_reply reset", count=len(pending), error=str(e))

    async def _run_attempt(self) -> bool:
        """One generation attempt. Returns True if a reply went out."""
        window = self.state.window.select(self.state.messages)
        if not window:
            logger.debug("Empty context window, skipping generation")
            return False

        # Snapshot the prompt before the flags are cleared so the model still sees them
        prompt = self.prompt_builder.build_messages(window)
        await self._clear_need_reply()

        await self.event_bus.emit(
            "generation_started",
            {"window": len(window)},
            source="orchestrator",
        )

        response = await self.generator.generate(prompt)
        if response is None:
            return False

        report = await self.delivery.deliver(response)
        if not report.any_delivered:
            return False

        self.state.trigger.on_success()
        return True
