"""
Observer-style event bus used by the engine.

Handlers run synchronously in emit order, so events for a given piece index
reach every subscriber in the order they happened.
"""
import logging
from enum import Enum
from typing import Callable, Dict, List

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    READY = "ready"
    PIECE_VERIFIED = "piece-verified"
    PIECE_CORRUPT = "piece-corrupt"
    DONE = "done"
    WARNING = "warning"
    ERROR = "error"
    PEER_CONNECTED = "peer-connected"
    PEER_DISCONNECTED = "peer-disconnected"
    INTERESTED = "interested"
    UNINTERESTED = "uninterested"


class Subscription:
    """Handle returned by EventBus.subscribe; call cancel() to unsubscribe."""

    def __init__(self, bus, event, handler):
        self._bus = bus
        self.event = event
        self.handler = handler
        self.active = True

    def cancel(self):
        if self.active:
            self._bus._remove(self)
            self.active = False


class EventBus:
    def __init__(self):
        self._handlers: Dict[EventType, List[Subscription]] = {}
        self.closed = False

    def subscribe(self, event, handler: Callable) -> Subscription:
        if self.closed:
            raise RuntimeError("EventBus is closed")
        event = EventType(event)
        sub = Subscription(self, event, handler)
        self._handlers.setdefault(event, []).append(sub)
        return sub

    def _remove(self, sub: Subscription):
        subs = self._handlers.get(sub.event, [])
        if sub in subs:
            subs.remove(sub)

    def emit(self, event, *args):
        event = EventType(event)
        # copy: handlers may unsubscribe while we iterate
        for sub in list(self._handlers.get(event, ())):
            try:
                sub.handler(*args)
            except Exception:
                logger.exception("Handler %r for %s raised", sub.handler, event.value)

    def subscriber_count(self, event=None) -> int:
        if event is not None:
            return len(self._handlers.get(EventType(event), ()))
        return sum(len(subs) for subs in self._handlers.values())

    def close(self):
        """Drop every subscription; used at engine shutdown."""
        for subs in self._handlers.values():
            for sub in subs:
                sub.active = False
        self._handlers.clear()
        self.closed = True
