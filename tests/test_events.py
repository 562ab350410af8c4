"""Tests for the event channel."""

import anyio
import pytest
from specrun.events import EventChannel


async def _drain(receive):
    events = []
    async with receive:
        async for event in receive:
            events.append(event)
    return events


@pytest.mark.asyncio
async def test_subscribers_receive_published_events():
    channel = EventChannel()
    first = channel.subscribe()
    second = channel.subscribe()
    channel.emit("chunk_start", spec_id="s", chunk_id="c", data={"title": "A"})
    channel.close()

    for receive in (first, second):
        [event] = await _drain(receive)
        assert event.type == "chunk_start"
        assert event.data == {"title": "A"}
        assert event.timestamp


@pytest.mark.asyncio
async def test_late_subscriber_gets_bounded_replay():
    channel = EventChannel(history=3)
    for i in range(5):
        channel.emit("text", data={"i": i})
    receive = channel.subscribe()
    channel.close()
    assert [e.data["i"] for e in await _drain(receive)] == [2, 3, 4]


@pytest.mark.asyncio
async def test_subscribe_without_replay():
    channel = EventChannel()
    channel.emit("old")
    receive = channel.subscribe(replay=False)
    channel.emit("new")
    channel.close()
    assert [e.type for e in await _drain(receive)] == ["new"]


@pytest.mark.asyncio
async def test_subscribe_after_close_replays_then_ends():
    channel = EventChannel()
    channel.emit("done")
    channel.close()
    channel.emit("ignored")
    assert [e.type for e in await _drain(channel.subscribe())] == ["done"]
    assert channel.closed


@pytest.mark.asyncio
async def test_full_subscriber_drops_instead_of_blocking():
    channel = EventChannel(history=2, subscriber_buffer=2)
    receive = channel.subscribe()
    with anyio.fail_after(1):
        for i in range(10):
            channel.emit("text", data={"i": i})
    channel.close()
    assert len(await _drain(receive)) == 2


@pytest.mark.asyncio
async def test_closed_subscriber_is_removed():
    channel = EventChannel()
    receive = channel.subscribe()
    await receive.aclose()
    channel.emit("text")
    assert channel.recent()[-1].type == "text"
