"""Debounced intake: a burst of edits to one message settles into one event."""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Coroutine

from ..channels.base import IncomingMessage
from ..utils.logging import get_logger

logger = get_logger(__name__)

SettleHandler = Callable[[IncomingMessage], Coroutine[Any, Any, Any]]


def debounce_key(message: IncomingMessage) -> str:
    """Message ids are only unique within one channel of one endpoint."""
    return f"{message.endpoint}:{message.channel_id}:{message.id}"


@dataclass
class DebounceEntry:
    """The single pending settle task for one message."""

    key: str
    snapshot: IncomingMessage
    task: asyncio.Task[None]


class DebounceAggregator:
    """
    Holds at most one pending settle task per message.

    ``on_message`` starts or restarts the timer; ``on_message_edit`` only
    restarts an existing one, so edits to already-settled messages are ignored.
    When the timer expires the entry is removed and ``on_settle`` runs once
    with the latest snapshot. Settle handlers that are still running can be
    awaited with ``wait_settled``.
    """

    def __init__(
        self,
        on_settle: SettleHandler,
        delay: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._on_settle = on_settle
        self._delay = delay
        self._sleep = sleep
        self._entries: dict[str, DebounceEntry] = {}
        self._settling: set[asyncio.Task[Any]] = set()

    @property
    def pending(self) -> list[str]:
        """Keys of messages waiting to settle."""
        return list(self._entries)

    @property
    def settling(self) -> int:
        """How many settle handlers are running right now."""
        return len(self._settling)

    async def on_message(self, message: IncomingMessage) -> None:
        self._schedule(message)

    async def on_message_edit(self, message: IncomingMessage) -> None:
        if debounce_key(message) not in self._entries:
            logger.debug("Edit after settle ignored", message_id=message.id)
            return
        self._schedule(message)

    def _schedule(self, message: IncomingMessage) -> None:
        key = debounce_key(message)
        previous = self._entries.pop(key, None)
        if previous is not None:
            previous.task.cancel()

        task = asyncio.create_task(self._settle_later(key))
        self._entries[key] = DebounceEntry(key=key, snapshot=message, task=task)

    async def _settle_later(self, key: str) -> None:
        try:
            await self._sleep(self._delay)
        finally:
            # Purge on external cancellation too, but never a newer entry for the same key
            entry = self._entries.get(key)
            if entry is not None and entry.task is asyncio.current_task():
                del self._entries[key]
            else:
                entry = None

        if entry is None:
            return

        self._settling.add(entry.task)
        try:
            await self._on_settle(entry.snapshot)
        except Exception as e:
            logger.error(
                "Settle handler failed",
                message_id=entry.snapshot.id,
                key=key,
                error=str(e),
                exc_info=True,
            )
        finally:
            self._settling.discard(entry.task)

    def cancel(self, key: str) -> bool:
        """Drop a pending message without processing it."""
        entry = self._entries.pop(key, None)
        if entry is None:
            return False
        entry.task.cancel()
        return True

    def cancel_all(self) -> int:
        """Drop every pending message. Returns how many were dropped."""
        entries = list(self._entries.values())
        self._entries.clear()
        for entry in entries:
            entry.task.cancel()
        if entries:
            logger.info("Cancelled pending messages", count=len(entries))
        return len(entries)

    async def wait_settled(self) -> None:
        """Wait for settle handlers that already started to finish."""
        while self._settling:
            await asyncio.wait(set(self._settling))
