"""Single-flight scheduling of generation attempts.

At most one attempt runs at a time. Requests that arrive while one is running
collapse into a single follow-up, which starts as soon as the current attempt
finishes and sees whatever context exists at that moment.

    Idle            + request  -> Running (attempt starts)
    Running         + request  -> RunningQueued
    RunningQueued   + request  -> RunningQueued (no-op)
    Running         + complete -> Idle
    RunningQueued   + complete -> Running (follow-up starts)
"""

import asyncio
from enum import Enum
from typing import Any, Awaitable, Callable

from ..utils.logging import get_logger

logger = get_logger(__name__)


class SchedulerState(str, Enum):
    """Generation scheduler states."""

    IDLE = "idle"
    RUNNING = "running"
    RUNNING_QUEUED = "running_queued"


class GenerationScheduler:
    """Serializes calls to ``attempt`` with at most one queued re-trigger."""

    def __init__(self, attempt: Callable[[], Awaitable[Any]]) -> None:
        self._attempt = attempt
        self._state = SchedulerState.IDLE
        self._task: asyncio.Task[None] | None = None
        self.attempts_started = 0

    @property
    def state(self) -> SchedulerState:
        return self._state

    def request(self) -> SchedulerState:
        """Ask for a generation attempt. Returns the resulting state."""
        if self._state == SchedulerState.IDLE:
            self._state = SchedulerState.RUNNING
            self._task = asyncio.create_task(self._run())
        elif self._state == SchedulerState.RUNNING:
            self._state = SchedulerState.RUNNING_QUEUED
            logger.debug("Generation re-trigger queued")
        return self._state

    async def _run(self) -> None:
        try:
            while True:
                self.attempts_started += 1
                try:
                    await self._attempt()
                except Exception as e:
                    logger.error("Generation attempt failed", error=str(e), exc_info=True)

                if self._state == SchedulerState.RUNNING_QUEUED:
                    self._state = SchedulerState.RUNNING
                    continue
                break
        finally:
            self._state = SchedulerState.IDLE

    async def wait_idle(self) -> None:
        """Wait until no attempt is running or queued."""
        while self._task is not None and not self._task.done():
            await asyncio.wait({self._task})
