"""
Outcome event stream.

Publishing an event stores it, writes it as one structured log line and hands
it to every live subscriber. Subscribers get a bounded asyncio queue; a
subscriber that falls behind loses its oldest events, never blocks the
publisher.
"""

import asyncio
from typing import List, Optional

from mesh_router.core.logging import get_logger

from .models.outcome_event import OutcomeEvent
from .store import OutcomeStore, get_outcome_store

logger = get_logger(__name__)


class OutcomeStream:
    """Fan-out of outcome events to the store, the log and subscribers."""

    def __init__(self, store: Optional[OutcomeStore] = None, queue_size: int = 100):
        self.store = store or get_outcome_store()
        self.queue_size = queue_size
        self._subscribers: List[asyncio.Queue] = []
        self.dropped_events = 0

    def publish(self, event: OutcomeEvent) -> None:
        self.store.add_event(event)

        fields = event.to_log_fields()
        if event.success:
            logger.info("request_outcome", **fields)
        else:
            logger.warning("request_outcome", **fields)

        for queue in list(self._subscribers):
            if queue.full():
                try:
                    queue.get_nowait()
                except asyncio.QueueEmpty:
                    pass
                self.dropped_events += 1
            queue.put_nowait(event)

    def subscribe(self) -> asyncio.Queue:
        """Register a subscriber and return its queue."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)
