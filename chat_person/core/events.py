"""Publish/subscribe hooks for observing the persona at work.

Components emit events; anything (tests, dashboards, extra logging) can
listen without the emitter knowing. Supports both sync and async handlers.

Usage:
    bus = EventBus()
    bus.on("tool_called", my_handler)
    await bus.emit("tool_called", {"name": "get_message", "arguments": "{}"})
"""

import asyncio
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Coroutine

from ..utils.logging import get_logger

logger = get_logger(__name__)

# Type alias for event handlers
EventHandler = Callable[..., Coroutine[Any, Any, None]] | Callable[..., None]


@dataclass
class Event:
    """An event that flows through the system."""

    name: str
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    source: str = ""


# Well-known event names (not enforced, just documented)
# message_settled    - A debounced message was recorded in history
# generation_started - A generation attempt began
# llm_content        - A fragment of model output streamed in
# tool_called        - The model called a tool
# tool_result        - A tool returned its payload to the model
# message_sent       - A channel group was delivered
# delivery_failed    - No endpoint could deliver a channel group


class EventBus:
    """
    Publish/subscribe bus for observing a running persona.

    Handlers subscribe by event name or to ``"*"`` for everything. A failing
    handler is logged and never affects the emitter or other handlers. Recent
    events are kept so tests and debugging tools can inspect what happened.
    """

    def __init__(self, max_history: int = 200) -> None:
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)
        self._history: list[Event] = []
        self._max_history = max_history

    def on(self, event_name: str, handler: EventHandler) -> Callable[[], None]:
        """Subscribe to an event. Returns an unsubscribe function."""
        self._handlers[event_name].append(handler)

        def unsubscribe() -> None:
            self.off(event_name, handler)

        return unsubscribe

    def off(self, event_name: str, handler: EventHandler) -> None:
        """Unsubscribe a handler."""
        try:
            self._handlers[event_name].remove(handler)
        except ValueError:
            pass

    async def emit(self, event_name: str, data: dict[str, Any] | None = None, source: str = "") -> None:
        """Emit an event to its subscribers and to wildcard subscribers."""
        event = Event(name=event_name, data=data or {}, source=source)

        self._history.append(event)
        if len(self._history) > self._max_history:
            self._history = self._history[-self._max_history:]

        handlers = list(self._handlers.get(event_name, [])) + list(self._handlers.get("*", []))
        for handler in handlers:
            try:
                result = handler(event)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(
                    "Event handler error",
                    event=event_name,
                    handler=getattr(handler, "__name__", str(handler)),
                    error=str(e),
                    exc_info=True,
                )

    def get_history(self, event_name: str | None = None, limit: int = 50) -> list[Event]:
        """Get recent event history, optionally filtered by name."""
        if event_name:
            filtered = [e for e in self._history if e.name == event_name]
        else:
            filtered = list(self._history)
        return filtered[-limit:]

    def clear(self) -> None:
        """Remove all handlers and history."""
        self._handlers.clear()
        self._history.clear()


# Global singleton
_bus: EventBus | None = None


def get_event_bus() -> EventBus:
    """Get the global event bus singleton."""
    global _bus
    if _bus is None:
        _bus = EventBus()
    return _bus
