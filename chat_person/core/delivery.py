"""Fan-out delivery of a validated reply across the configured endpoints."""

from dataclasses import dataclass, field
from typing import Sequence

from ..channels.base import BaseChannel, ContentItem
from ..utils.logging import AuditLogger, get_logger
from .events import EventBus
from .generator import ChannelResponse, ChatResponse

logger = get_logger(__name__)


@dataclass
class GroupOutcome:
    """What happened to one channel group."""

    channel_id: str
    delivered: bool = False
    endpoint: str | None = None
    message_ids: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)


@dataclass
class DeliveryReport:
    """Outcome of delivering one ChatResponse."""

    groups: list[GroupOutcome] = field(default_factory=list)

    @property
    def delivered_count(self) -> int:
        return sum(1 for g in self.groups if g.delivered)

    @property
    def any_delivered(self) -> bool:
        return self.delivered_count > 0


def flatten_group(group: ChannelResponse) -> tuple[list[ContentItem], list[int]]:
    """
    Turn a channel group into bubbles.

    Returns the bubbles and, per segment, the index of its last bubble. Only
    the first bubble of a segment carries the segment's quote.
    """
    items: list[ContentItem] = []
    segment_ends: list[int] = []
    for segment in group.segments:
        for i, text in enumerate(segment.contents):
            items.append(ContentItem(text=text, quote_id=segment.quote_message_id if i == 0 else None))
        segment_ends.append(len(items) - 1)
    return items, segment_ends


class DeliveryFanout:
    """
    Sends each channel group through the first endpoint that accepts it.

    Endpoints are tried in order. A group that no endpoint can send is logged
    as a delivery failure and the remaining groups still go out. Reactions are
    added after a successful send on the same endpoint; failures there are
    logged and never undo the send.
    """

    def __init__(
        self,
        channels: Sequence[BaseChannel],
        audit_logger: AuditLogger | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        self.channels = channels
        self._audit = audit_logger
        self._event_bus = event_bus

    async def deliver(self, response: ChatResponse) -> DeliveryReport:
        report = DeliveryReport()
        for group in response.channels:
            report.groups.append(await self._deliver_group(group))

        logger.info(
            "Delivery finished",
            groups=len(report.groups),
            delivered=report.delivered_count,
        )
        return report

    async def _deliver_group(self, group: ChannelResponse) -> GroupOutcome:
        outcome = GroupOutcome(channel_id=group.channel_id)
        items, segment_ends = flatten_group(group)
        if not items:
            return outcome

        for channel in self.channels:
            try:
                message_ids = await channel.send(group.channel_id, items)
            except Exception as e:
                outcome.errors[channel.name] = str(e)
                logger.warning(
                    "Endpoint failed to send",
                    endpoint=channel.name,
                    channel_id=group.channel_id,
                    error=str(e),
                )
                continue

            outcome.delivered = True
            outcome.endpoint = channel.name
            outcome.message_ids = list(message_ids)
            await self._attach_reactions(channel, group, segment_ends, outcome.message_ids)
            if self._event_bus is not None:
                await self._event_bus.emit(
                    "message_sent",
                    {"endpoint": channel.name, "channel_id": group.channel_id, "message_ids": outcome.message_ids},
                    source="delivery",
                )
            return outcome

        logger.error(
            "delivery_failed",
            channel_id=group.channel_id,
            errors=outcome.errors,
        )
        if self._audit is not None:
            self._audit.delivery_failed(group.channel_id, outcome.errors)
        if self._event_bus is not None:
            await self._event_bus.emit(
                "delivery_failed",
                {"channel_id": group.channel_id, "errors": outcome.errors},
                source="delivery",
            )
        return outcome

    async def _attach_reactions(
        self,
        channel: BaseChannel,
        group: ChannelResponse,
        segment_ends: list[int],
        message_ids: list[str],
    ) -> None:
        for segment, end in zip(group.segments, segment_ends):
            if not segment.reaction_emojis:
                continue
            if end >= len(message_ids):
                logger.warning(
                    "reaction_failed",
                    endpoint=channel.name,
                    channel_id=group.channel_id,
                    error="no message id for segment",
                )
                continue
            target = message_ids[end]
            for emoji in segment.reaction_emojis:
                try:
                    await channel.react(group.channel_id, target, emoji)
                except Exception as e:
                    logger.warning(
                        "reaction_failed",
                        endpoint=channel.name,
                        channel_id=group.channel_id,
                        message_id=target,
                        emoji=emoji,
                        error=str(e),
                    )
