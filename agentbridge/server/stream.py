import asyncio
from collections.abc import AsyncGenerator

from agentbridge.bus import EventBus
from agentbridge.constants import SSE_KEEPALIVE_SECONDS
from agentbridge.events import OUTWARD_EVENTS, BridgeEvent
from agentbridge.logging import get_logger

_logger = get_logger(__name__)


class Broadcaster:
    """Fans outward events out to every connected viewer.

    Each viewer owns an unbounded queue, so a slow viewer delays only
    itself and never loses an event.
    """

    def __init__(self, bus: EventBus):
        self._bus = bus
        self._viewers: set[asyncio.Queue[BridgeEvent]] = set()
        self._attached = False

    def attach(self) -> None:
        if self._attached:
            return
        for event_type in OUTWARD_EVENTS:
            self._bus.subscribe(event_type, self._on_event)
        self._attached = True

    def detach(self) -> None:
        for event_type in OUTWARD_EVENTS:
            self._bus.unsubscribe(event_type, self._on_event)
        self._attached = False

    @property
    def viewer_count(self) -> int:
        return len(self._viewers)

    def connect(self) -> asyncio.Queue[BridgeEvent]:
        queue: asyncio.Queue[BridgeEvent] = asyncio.Queue()
        self._viewers.add(queue)
        _logger.debug("Viewer connected", viewers=len(self._viewers))
        return queue

    def disconnect(self, queue: asyncio.Queue[BridgeEvent]) -> None:
        self._viewers.discard(queue)
        _logger.debug("Viewer disconnected", viewers=len(self._viewers))

    async def _on_event(self, event: BridgeEvent) -> None:
        for queue in self._viewers:
            queue.put_nowait(event)

    async def listen(
        self,
        chat_id: str | None = None,
        keepalive: float = SSE_KEEPALIVE_SECONDS,
    ) -> AsyncGenerator[str]:
        """Yield SSE frames for one viewer, optionally filtered to a single chat."""
        queue = self.connect()
        try:
            while True:
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=keepalive)
                except TimeoutError:
                    yield ": keep-alive\n\n"
                    continue
                if chat_id is not None and event.chat_id != chat_id:
                    continue
                yield event.to_sse_string()
        finally:
            self.disconnect(queue)
