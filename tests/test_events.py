"""Test ProgressChannel and the SSE transport."""

import asyncio
import json

from storylab.errors import ParseError
from storylab.events import ProgressChannel
from storylab.models import Event
from storylab.recipes.runner import CancellationToken
from storylab.sse import SSE_HEADERS, encode_event, event_stream, run_producer


def drain(channel):
    async def collect():
        return [event async for event in channel.drain()]

    return asyncio.run(collect())


def test_emit_and_recent():
    channel = ProgressChannel("t")
    channel.emit(Event(type="start", data={"message": "go"}))
    channel.emit_simple("progress", message="half", progress=50)

    recent = channel.recent(limit=10)
    assert len(recent) == 2
    assert recent[0].type == "start"
    assert recent[1].data["progress"] == 50


def test_recent_pagination():
    channel = ProgressChannel("t")
    for i in range(10):
        channel.progress(f"step {i}", i * 10)

    assert len(channel.recent(limit=3)) == 3
    assert len(channel.recent(limit=100)) == 10


def test_progress_is_clamped():
    channel = ProgressChannel("t")
    channel.progress("low", -5)
    channel.progress("high", 250)
    assert [e.data["progress"] for e in channel.history] == [0, 100]


def test_complete_closes_channel():
    channel = ProgressChannel("t")
    channel.start("begin")
    assert channel.complete(count=1)
    assert channel.closed
    assert channel.progress("late", 90) is False
    assert [e.type for e in channel.history] == ["start", "complete"]


def test_non_fatal_error_keeps_channel_open():
    channel = ProgressChannel("t")
    channel.error("one image failed", fatal=False, index=2)
    assert not channel.closed
    channel.error("everything failed", fatal=True)
    assert channel.closed
    assert channel.history[0].data == {"message": "one image failed", "error": "one image failed", "fatal": False, "index": 2}


def test_drain_stops_at_close():
    channel = ProgressChannel("t")
    channel.start("begin")
    channel.item("image", 0, 2, url="a")
    channel.complete()
    events = drain(channel)
    assert [e.type for e in events] == ["start", "image", "complete"]


# -- SSE --------------------------------------------------------------------


def test_encode_event():
    frame = encode_event("theme", {"index": 0, "theme": {"name": "Bold"}})
    assert frame.startswith("event: theme\ndata: ")
    assert frame.endswith("\n\n")
    assert json.loads(frame.split("data: ", 1)[1]) == {"index": 0, "theme": {"name": "Bold"}}


def test_sse_headers_disable_buffering():
    assert SSE_HEADERS["Cache-Control"].startswith("no-cache")
    assert SSE_HEADERS["X-Accel-Buffering"] == "no"


def test_run_producer_turns_error_into_fatal_event():
    async def producer(channel, token):
        channel.start("begin")
        raise ParseError("model refused")

    async def go():
        channel = ProgressChannel("t")
        await run_producer(producer, channel, CancellationToken())
        return channel

    channel = asyncio.run(go())
    assert channel.closed
    last = channel.history[-1]
    assert last.type == "error"
    assert last.data["fatal"] is True
    assert last.data["message"] == "model refused"


def test_run_producer_handles_unexpected_exception():
    async def producer(channel, token):
        raise RuntimeError("boom")

    async def go():
        channel = ProgressChannel("t")
        await run_producer(producer, channel, CancellationToken())
        return channel

    channel = asyncio.run(go())
    assert channel.history[-1].data["error"] == "boom"
    assert channel.history[-1].data["fatal"] is True


def test_event_stream_ends_after_terminal_event():
    async def producer(channel, token):
        channel.start("begin")
        channel.item("theme", 0, 1, theme={"name": "x"})
        channel.complete(count=1)
        channel.progress("ignored", 100)

    async def go():
        channel = ProgressChannel("t")
        await run_producer(producer, channel, CancellationToken())
        return [frame async for frame in event_stream(channel, keepalive=1)]

    frames = asyncio.run(go())
    assert [f.split("\n", 1)[0] for f in frames] == ["event: start", "event: theme", "event: complete"]
