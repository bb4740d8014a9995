"""
In-memory outcome event store for the mesh router.

This module provides a thread-safe, singleton store that keeps the most recent
outcome events for the admin API. The store is bounded: once it holds
``capacity`` events, adding a new one discards the oldest.
"""

import threading
from collections import deque
from typing import Any, Deque, Dict, List, Optional

from mesh_router.core.config import get_settings

from .models.outcome_event import OutcomeEvent


class OutcomeStore:
    """
    Thread-safe bounded store for outcome events.

    Example:
        store = OutcomeStore.get_instance()
        store.add_event(event)

        recent = store.get_events(limit=50)
        failures = store.get_events(limit=20, success=False)
    """

    _instance: Optional['OutcomeStore'] = None
    _lock = threading.Lock()

    def __init__(self, capacity: int = 1000):
        """
        Initialize the outcome store.

        Note: Use get_instance() instead of direct instantiation outside tests.
        """
        self._events: Deque[OutcomeEvent] = deque(maxlen=capacity)
        self._store_lock = threading.Lock()
        self.total_recorded = 0

    @classmethod
    def get_instance(cls) -> 'OutcomeStore':
        """Get the singleton instance, sized by EVENT_BUFFER_SIZE."""
        if cls._instance is None:
            with cls._lock:
                # Double-check locking pattern
                if cls._instance is None:
                    cls._instance = cls(capacity=get_settings().EVENT_BUFFER_SIZE)
        return cls._instance

    @property
    def capacity(self) -> int:
        return self._events.maxlen or 0

    def add_event(self, event: OutcomeEvent) -> None:
        with self._store_lock:
            self._events.append(event)
            self.total_recorded += 1

    def get_events(self,
                   limit: int = 100,
                   service: Optional[str] = None,
                   success: Optional[bool] = None) -> List[OutcomeEvent]:
        """
        Retrieve the latest events, newest first.

        Args:
            limit: Maximum number of events to return
            service: Only events for this service
            success: Only successful (True) or failed (False) requests
        """
        with self._store_lock:
            events = list(self._events)

        matched = []
        for event in reversed(events):
            if service is not None and event.service != service:
                continue
            if success is not None and event.success != success:
                continue
            matched.append(event)
            if len(matched) >= limit:
                break
        return matched

    def count(self) -> int:
        with self._store_lock:
            return len(self._events)

    def clear(self) -> None:
        """Remove all events (used by tests and the admin API)."""
        with self._store_lock:
            self._events.clear()
            self.total_recorded = 0

    def get_stats(self) -> Dict[str, Any]:
        """
        Aggregate the stored events.

        Returns per-service request counts broken down by version, the
        observed version distribution and the overall success rate.
        """
        with self._store_lock:
            events = list(self._events)

        services: Dict[str, Dict[str, Any]] = {}
        success_count = 0
        for event in events:
            entry = services.setdefault(event.service, {"requests": 0, "failures": 0, "versions": {}})
            entry["requests"] += 1
            if event.success:
                success_count += 1
            else:
                entry["failures"] += 1
            version = event.version or "none"
            entry["versions"][version] = entry["versions"].get(version, 0) + 1

        for entry in services.values():
            entry["distribution"] = {
                version: count / entry["requests"]
                for version, count in entry["versions"].items()
            }

        total = len(events)
        return {
            "stored_events": total,
            "total_recorded": self.total_recorded,
            "capacity": self.capacity,
            "success_rate": success_count / total if total > 0 else 0.0,
            "services": services
        }


def get_outcome_store() -> OutcomeStore:
    """Convenience accessor for the singleton outcome store."""
    return OutcomeStore.get_instance()
