"""Server-Sent Events transport for progress channels."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import AsyncIterator, Awaitable, Callable

from fastapi import Request
from fastapi.responses import StreamingResponse

from storylab import config
from storylab.errors import StoryLabError
from storylab.events import ProgressChannel
from storylab.recipes.runner import CancellationToken

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # Disable nginx buffering
}

Producer = Callable[[ProgressChannel, CancellationToken], Awaitable[None]]


def encode_event(event_type: str, data: dict) -> str:
    return f"event: {event_type}\ndata: {json.dumps(data, default=str)}\n\n"


async def run_producer(producer: Producer, channel: ProgressChannel, token: CancellationToken):
    """Run a generation coroutine and make sure the channel always ends with a terminal event."""
    try:
        await producer(channel, token)
    except StoryLabError as e:
        logger.error(f"Generation failed on {channel.name}: {e.message}")
        channel.error(e.message, error=e.code, fatal=True)
    except Exception as e:
        logger.error(f"Generation crashed on {channel.name}: {e}", exc_info=True)
        channel.error("Generation failed", error=str(e), fatal=True)
    finally:
        channel.close()


async def event_stream(
    channel: ProgressChannel,
    request: Request | None = None,
    token: CancellationToken | None = None,
    keepalive: float | None = None,
) -> AsyncIterator[str]:
    """Drain a channel into SSE frames until it closes or the client goes away."""
    keepalive = keepalive or config.SSE_KEEPALIVE_SECONDS
    try:
        while True:
            if request is not None and await request.is_disconnected():
                logger.info(f"SSE client disconnected from {channel.name}")
                if token:
                    token.cancel("client disconnected")
                break
            try:
                event = await asyncio.wait_for(channel.next(), timeout=keepalive)
            except asyncio.TimeoutError:
                yield ": keepalive\n\n"
                continue
            if event is None:
                break
            yield encode_event(event.type, event.data)
    except asyncio.CancelledError:
        logger.info(f"SSE stream cancelled for {channel.name}")
        if token:
            token.cancel("stream cancelled")
        raise


def sse_response(producer: Producer, request: Request | None, name: str) -> StreamingResponse:
    """Start ``producer`` in the background and stream its channel as SSE."""
    channel = ProgressChannel(name)
    token = CancellationToken()

    async def frames():
        task = asyncio.create_task(run_producer(producer, channel, token))
        try:
            async for frame in event_stream(channel, request, token):
                yield frame
        finally:
            if not task.done():
                # Let the current item finish; the token stops the rest
                token.cancel("stream closed")
            await task

    return StreamingResponse(frames(), media_type="text/event-stream", headers=SSE_HEADERS)
