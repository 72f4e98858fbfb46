from collections import defaultdict
from collections.abc import Callable, Coroutine
from typing import Any

from agentbridge.logging import get_logger

type Handler[T] = Callable[[T], Coroutine[Any, Any, None]]

_logger = get_logger(__name__)


class EventBus:
    """Ordered pub/sub for outward events.

    publish() awaits every handler in subscription order before returning, so
    a single producer's events reach each subscriber in the order they were
    published. A failing handler is logged and does not stop the others.
    Handlers must not call back into the publisher and wait on it.
    """

    def __init__(self) -> None:
        self._handlers: dict[type, list[Handler]] = defaultdict(list)

    def subscribe[T](self, event_type: type[T], handler: Handler[T]) -> None:
        self._handlers[event_type].append(handler)

    def unsubscribe[T](self, event_type: type[T], handler: Handler[T]) -> None:
        handlers = self._handlers.get(event_type)
        if handlers and handler in handlers:
            handlers.remove(handler)

    async def publish[T](self, event: T) -> None:
        for handler in list(self._handlers.get(type(event), [])):
            try:
                await handler(event)
            except Exception:
                _logger.exception(
                    "Event handler %s failed for %s",
                    getattr(handler, "__qualname__", repr(handler)),
                    type(event).__name__,
                )
