"""Reply probability: decays under chatter, jumps on mentions, zero on our own echoes."""

import random
from typing import Callable

from ..utils.config import TriggerConfig
from ..utils.logging import get_logger

logger = get_logger(__name__)


class TriggerController:
    """
    Decides whether a settled message should start a generation attempt.

    The probability starts at ``baseline`` and is only ever changed by
    ``observe`` and ``on_success``.
    """

    def __init__(
        self,
        config: TriggerConfig,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.baseline = config.baseline
        self.decay_step = config.decay_step
        self.reengage_threshold = config.reengage_threshold
        self._rng = rng
        self.probability = config.baseline

    def observe(self, content: str, mentions: list[str], loopback: bool) -> float:
        """
        Update the probability for one settled message.

        Args:
            content: Message text
            mentions: Names that force a reply when found in the text
            loopback: True when the message was sent by one of our own endpoints

        Returns:
            The updated probability
        """
        if loopback:
            self.probability = 0.0
        elif any(m and m in content for m in mentions):
            self.probability = 1.0
        else:
            self.probability = max(self.baseline, self.probability - self.decay_step)
        return self.probability

    def should_trigger(self) -> bool:
        return self._rng() < self.probability

    def on_success(self) -> None:
        """Keep an active conversation going after a reply went out."""
        if self.probability < self.reengage_threshold:
            logger.debug("Re-engaging conversation", previous=self.probability)
            self.probability = 1.0
