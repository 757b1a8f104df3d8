"""Progress channel — typed events pushed by the core, drained by the transport.

Generation services and the recipe runner send events; the SSE layer (or a
test) drains them. A ``complete`` event or an ``error`` with ``fatal=True``
closes the channel: nothing sent afterwards is delivered.
"""

from __future__ import annotations

import asyncio
import logging

from storylab.models import Event

logger = logging.getLogger(__name__)

_CLOSED = None  # queue sentinel


class ProgressChannel:
    """Append-only event log with a single draining consumer."""

    def __init__(self, name: str = ""):
        self.name = name
        self._queue: asyncio.Queue = asyncio.Queue()
        self._history: list[Event] = []
        self.closed = False

    def emit(self, event: Event) -> bool:
        """Queue an event. Returns False (and drops it) once the channel is closed."""
        if self.closed:
            logger.warning(f"Dropped '{event.type}' on closed channel {self.name}")
            return False
        self._history.append(event)
        self._queue.put_nowait(event)
        logger.debug(f"Event: {event.type} [{self.name}] {event.data}")
        if event.is_terminal:
            self.close()
        return True

    def emit_simple(self, type: str, **data) -> bool:
        return self.emit(Event(type=type, data=data))

    # -- typed helpers -------------------------------------------------------

    def start(self, message: str, **data) -> bool:
        return self.emit_simple("start", message=message, **data)

    def progress(self, message: str, progress: int, **data) -> bool:
        return self.emit_simple("progress", message=message, progress=max(0, min(100, int(progress))), **data)

    def item(self, type: str, index: int, total: int, **payload) -> bool:
        return self.emit_simple(type, index=index, total=total, **payload)

    def complete(self, **summary) -> bool:
        return self.emit_simple("complete", **summary)

    def error(self, message: str, error: str = "", fatal: bool = False, **data) -> bool:
        return self.emit_simple("error", message=message, error=error or message, fatal=fatal, **data)

    # -- consumer side -------------------------------------------------------

    def close(self):
        if not self.closed:
            self.closed = True
            self._queue.put_nowait(_CLOSED)

    async def next(self) -> Event | None:
        """Next event, or None once the channel is closed and drained."""
        return await self._queue.get()

    async def drain(self):
        """Yield events until the channel closes."""
        while True:
            event = await self.next()
            if event is _CLOSED:
                return
            yield event

    @property
    def history(self) -> list[Event]:
        return list(self._history)

    def recent(self, limit: int = 50) -> list[Event]:
        return self._history[-limit:]
