"""Live sync gateway: relays a report's events to connected viewers over SSE."""

import asyncio
from collections import defaultdict
from collections.abc import AsyncIterator, Awaitable, Callable

from app.core.broadcast import BroadcastBus
from app.core.events import sse_frame, to_wire_frames
from app.core.logging import get_logger

logger = get_logger(__name__)

HEARTBEAT_FRAME = ": heartbeat\n\n"
CONNECTED_FRAME = ": connected\n\n"

# Returned when the subscription ends, e.g. a dropped Redis connection
_SUBSCRIPTION_CLOSED = object()


async def _next_event(events: AsyncIterator):
    return await anext(events, _SUBSCRIPTION_CLOSED)


class LiveSyncGateway:
    """Fans bus events out to viewer streams and counts viewers per report."""

    def __init__(self, bus: BroadcastBus, heartbeat_seconds: float = 15.0):
        self.bus = bus
        self.heartbeat_seconds = heartbeat_seconds
        self._connections: dict[str, int] = defaultdict(int)

    def connection_count(self, report_id: str) -> int:
        return self._connections.get(report_id, 0)

    async def stream(
        self,
        report_id: str,
        is_disconnected: Callable[[], Awaitable[bool]] | None = None,
    ) -> AsyncIterator[str]:
        """
        Yield SSE frames for every event published on the report.

        The stream has no natural end; it stops when the viewer goes away.
        A comment frame is sent whenever no event arrives within the
        heartbeat interval.
        """
        self._connections[report_id] += 1
        logger.info(
            f"Live viewer connected to report {report_id} "
            f"({self._connections[report_id]} connected)"
        )
        pending: asyncio.Future | None = None
        try:
            async with self.bus.subscribe(report_id) as events:
                yield CONNECTED_FRAME
                while True:
                    if pending is None:
                        pending = asyncio.ensure_future(_next_event(events))
                    done, _ = await asyncio.wait({pending}, timeout=self.heartbeat_seconds)
                    if not done:
                        if is_disconnected is not None and await is_disconnected():
                            break
                        yield HEARTBEAT_FRAME
                        continue

                    event = pending.result()
                    pending = None
                    if event is _SUBSCRIPTION_CLOSED:
                        logger.warning(f"Broadcast subscription for report {report_id} closed")
                        break
                    for frame in to_wire_frames(event):
                        yield sse_frame(frame)
        finally:
            if pending is not None and not pending.done():
                pending.cancel()
                await asyncio.gather(pending, return_exceptions=True)
            self._connections[report_id] -= 1
            if self._connections[report_id] <= 0:
                del self._connections[report_id]
            logger.info(f"Live viewer left report {report_id}")
