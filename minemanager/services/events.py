# minemanager/services/events.py
"""
Push channel for the dashboard.

Subscribers are async callbacks; every published event is delivered to all
of them immediately (no batching). A subscriber that raises is dropped.
"""

import logging
from typing import Awaitable, Callable, List

logger = logging.getLogger(__name__)

Subscriber = Callable[[dict], Awaitable[None]]


class EventHub:
    def __init__(self):
        self._subscribers: List[Subscriber] = []

    def subscribe(self, callback: Subscriber):
        self._subscribers.append(callback)

    def unsubscribe(self, callback: Subscriber):
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def publish(self, event: dict):
        for callback in list(self._subscribers):
            try:
                await callback(event)
            except Exception:
                logger.debug("Failed to deliver %s event, removing subscriber", event.get("type"))
                self.unsubscribe(callback)
