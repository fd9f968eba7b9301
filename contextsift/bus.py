"""Event bus for signaling between the engine, model services and caches.

The bus is created by the composition root and passed by reference to the
components that publish or listen; there is no module-level instance.

Event types follow the pattern ``category.action``, for example
``search.started``, ``channel.unavailable`` or ``model.status``.
"""

import fnmatch
import logging
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from time import time
from typing import Any

logger = logging.getLogger(__name__)


@dataclass
class Event:
    """A published event."""

    type: str
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time)


Handler = Callable[[Event], Any]


class EventBus:
    """Synchronous in-process pub/sub.

    Handlers run in subscription order on the publisher's thread. A failing
    handler is logged and does not stop delivery to the others.
    """

    def __init__(self):
        self._subscribers: dict[str, list[Handler]] = defaultdict(list)
        self._stats: dict[str, int] = defaultdict(int)

    def subscribe(self, pattern: str, handler: Handler) -> None:
        """Subscribe to events matching pattern.

        Pattern can use wildcards: 'search.*' matches all search events, '*'
        matches everything.
        """
        self._subscribers[pattern].append(handler)
        logger.debug(f"Subscribed handler to pattern: {pattern}")

    def unsubscribe(self, pattern: str, handler: Handler) -> None:
        self._subscribers[pattern] = [
            h for h in self._subscribers[pattern] if h != handler
        ]

    def emit(self, event_type: str, **data: Any) -> Event:
        event = Event(type=event_type, data=data)
        self._stats["emitted"] += 1
        for pattern, handlers in list(self._subscribers.items()):
            if not fnmatch.fnmatchcase(event_type, pattern):
                continue
            for handler in list(handlers):
                try:
                    handler(event)
                except Exception as e:
                    self._stats["handler_errors"] += 1
                    logger.warning(f"Event handler for {event_type} failed: {e}")
        return event

    @property
    def stats(self) -> dict[str, int]:
        return dict(self._stats)
