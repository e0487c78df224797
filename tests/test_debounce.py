"""Tests for debounced message intake."""

import asyncio

import pytest
from structlog.testing import capture_logs

from chat_person.channels.base import IncomingMessage
from chat_person.core.debounce import DebounceAggregator

from conftest import drain


class ManualSleep:
    """Sleep replacement that only wakes when the test says so."""

    def __init__(self) -> None:
        self.waiters: list[asyncio.Future] = []

    async def __call__(self, delay: float) -> None:
        future = asyncio.get_running_loop().create_future()
        self.waiters.append(future)
        await future

    def expire(self) -> None:
        for future in self.waiters:
            if not future.done():
                future.set_result(None)
        self.waiters.clear()


def snapshot(message_id: str, content: str, channel_id: str = "c1") -> IncomingMessage:
    return IncomingMessage(id=message_id, endpoint="fake", channel_id=channel_id, user_id="u1", content=content)


def make_aggregator():
    settled: list[IncomingMessage] = []

    async def on_settle(message: IncomingMessage) -> None:
        settled.append(message)

    sleep = ManualSleep()
    return DebounceAggregator(on_settle, delay=1.0, sleep=sleep), sleep, settled


@pytest.mark.asyncio
async def test_burst_of_edits_settles_once_with_final_content():
    """Rapid edits collapse into one ingestion of the last version."""
    aggregator, sleep, settled = make_aggregator()

    await aggregator.on_message(snapshot("m1", "v1"))
    await drain()
    await aggregator.on_message_edit(snapshot("m1", "v2"))
    await drain()
    await aggregator.on_message_edit(snapshot("m1", "v3"))
    await drain()
    assert aggregator.pending == ["fake:c1:m1"]

    sleep.expire()
    await drain()

    assert [m.content for m in settled] == ["v3"]
    assert aggregator.pending == []


@pytest.mark.asyncio
async def test_edit_of_unknown_message_is_ignored():
    aggregator, sleep, settled = make_aggregator()

    await aggregator.on_message_edit(snapshot("m1", "edited"))
    await drain()
    sleep.expire()
    await drain()

    assert settled == []
    assert aggregator.pending == []


@pytest.mark.asyncio
async def test_edit_after_settle_is_not_reprocessed():
    aggregator, sleep, settled = make_aggregator()

    await aggregator.on_message(snapshot("m1", "first"))
    await drain()
    sleep.expire()
    await drain()
    await aggregator.on_message_edit(snapshot("m1", "late edit"))
    await drain()
    sleep.expire()
    await drain()

    assert [m.content for m in settled] == ["first"]


@pytest.mark.asyncio
async def test_different_messages_settle_independently():
    aggregator, sleep, settled = make_aggregator()

    await aggregator.on_message(snapshot("m1", "a"))
    await aggregator.on_message(snapshot("m2", "b"))
    await drain()
    assert sorted(aggregator.pending) == ["fake:c1:m1", "fake:c1:m2"]

    sleep.expire()
    await drain()

    assert sorted(m.id for m in settled) == ["m1", "m2"]


@pytest.mark.asyncio
async def test_externally_cancelled_timer_is_purged():
    """A timer cancelled from outside must not leave its entry behind."""
    aggregator, sleep, settled = make_aggregator()

    await aggregator.on_message(snapshot("m1", "a"))
    await drain()
    aggregator._entries["fake:c1:m1"].task.cancel()
    await drain()

    assert aggregator.pending == []
    assert settled == []


@pytest.mark.asyncio
async def test_cancel_all_drops_pending_messages():
    aggregator, sleep, settled = make_aggregator()

    await aggregator.on_message(snapshot("m1", "a"))
    await aggregator.on_message(snapshot("m2", "b"))
    await drain()

    assert aggregator.cancel_all() == 2
    sleep.expire()
    await drain()

    assert settled == []
    assert aggregator.pending == []


@pytest.mark.asyncio
async def test_failing_settle_handler_is_logged():
    async def on_settle(message: IncomingMessage) -> None:
        raise RuntimeError("boom")

    sleep = ManualSleep()
    aggregator = DebounceAggregator(on_settle, sleep=sleep)

    with capture_logs() as logs:
        await aggregator.on_message(snapshot("m1", "a"))
        await drain()
        sleep.expire()
        await drain()

    assert aggregator.pending == []
    assert any(e["event"] == "Settle handler failed" and e["message_id"] == "m1" for e in logs)


@pytest.mark.asyncio
async def test_real_sleep_settles_after_delay():
    settled: list[str] = []

    async def on_settle(message: IncomingMessage) -> None:
        settled.append(message.content)

    aggregator = DebounceAggregator(on_settle, delay=0.01)
    await aggregator.on_message(snapshot("m1", "a"))
    await aggregator.on_message_edit(snapshot("m1", "b"))
    await asyncio.sleep(0.1)

    assert settled == ["b"]


@pytest.mark.asyncio
async def test_same_id_in_different_channels_settles_separately():
    """Slack timestamps repeat across channels; neither snapshot may be lost."""
    aggregator, sleep, settled = make_aggregator()

    await aggregator.on_message(snapshot("1700000000.000100", "in general", channel_id="c1"))
    await aggregator.on_message(snapshot("1700000000.000100", "in random", channel_id="c2"))
    await drain()
    assert len(aggregator.pending) == 2

    sleep.expire()
    await drain()

    assert sorted(m.content for m in settled) == ["in general", "in random"]


@pytest.mark.asyncio
async def test_wait_settled_blocks_until_running_handler_finishes():
    gate = asyncio.Event()
    finished: list[str] = []

    async def on_settle(message: IncomingMessage) -> None:
        await gate.wait()
        finished.append(message.id)

    sleep = ManualSleep()
    aggregator = DebounceAggregator(on_settle, sleep=sleep)

    await aggregator.on_message(snapshot("m1", "a"))
    await drain()
    sleep.expire()
    await drain()
    assert aggregator.pending == []
    assert aggregator.settling == 1

    waiter = asyncio.create_task(aggregator.wait_settled())
    await drain()
    assert not waiter.done()

    gate.set()
    await waiter
    assert finished == ["m1"]
    assert aggregator.settling == 0
