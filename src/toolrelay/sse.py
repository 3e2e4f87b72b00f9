"""Server-Sent Events transport for orchestrator events."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import AsyncIterator

from toolrelay.errors import ErrorKind
from toolrelay.events import DoneEvent, ErrorEvent, StreamEvent

logger = logging.getLogger(__name__)


def as_sse_message(event: StreamEvent) -> dict[str, str]:
    """Shape expected by ``sse_starlette.EventSourceResponse``."""
    return {"event": event.type, "data": event.data}


class EventChannel:
    """Bounded, non-blocking buffer between an orchestrator and a client.

    ``publish`` never waits.  When the buffer is full, non-terminal
    events are dropped and counted; once space frees up a single
    ``error`` event reports how many were lost.  ``done`` is always
    delivered.  ``close`` marks the client as gone.

    Args:
        maxsize: Events held before dropping starts.
    """

    def __init__(self, maxsize: int = 1024):
        self.maxsize = maxsize
        self.dropped = 0
        self.total_dropped = 0
        self.closed = False
        self.finished = False
        self._buffer: deque[StreamEvent] = deque()
        self._ready = asyncio.Event()

    def __len__(self) -> int:
        return len(self._buffer)

    def publish(self, event: StreamEvent) -> bool:
        """Queue ``event``.  Returns False if it was dropped."""
        if self.closed or self.finished:
            return False

        if isinstance(event, DoneEvent):
            self._report_drops(force=True)
            self._buffer.append(event)
            self.finished = True
            self._ready.set()
            return True

        self._report_drops()
        if len(self._buffer) >= self.maxsize:
            self.dropped += 1
            self.total_dropped += 1
            return False
        self._buffer.append(event)
        self._ready.set()
        return True

    def _report_drops(self, force: bool = False) -> None:
        if not self.dropped:
            return
        if not force and len(self._buffer) >= self.maxsize:
            return
        logger.warning(f"Client too slow; dropped {self.dropped} event(s)")
        self._buffer.append(ErrorEvent(
            message=f"Client too slow; dropped {self.dropped} event(s)",
            kind=ErrorKind.TRANSPORT.value,
        ))
        self.dropped = 0

    def close(self) -> None:
        self.closed = True
        self._ready.set()

    async def __aiter__(self) -> AsyncIterator[StreamEvent]:
        while True:
            while not self._buffer:
                if self.closed:
                    return
                self._ready.clear()
                await self._ready.wait()
            event = self._buffer.popleft()
            yield event
            if isinstance(event, DoneEvent):
                return


async def relay(
    events: AsyncIterator[StreamEvent], channel: EventChannel,
) -> None:
    """Pump orchestrator events into ``channel`` until done or closed.

    Stops consuming as soon as the channel is closed, and always closes
    ``events`` so the provider stream is released.
    """
    try:
        async for event in events:
            if channel.closed:
                logger.info("Client disconnected; stopping orchestration")
                break
            channel.publish(event)
            # Let the consumer run between events.
            await asyncio.sleep(0)
    except Exception as e:
        logger.error(f"Orchestration failed: {e}")
        channel.publish(ErrorEvent(message=str(e), kind=ErrorKind.TRANSPORT.value))
    finally:
        aclose = getattr(events, "aclose", None)
        if aclose is not None:
            await aclose()
        if not channel.closed and not channel.finished:
            channel.publish(DoneEvent())
