"""Outcome events for the mesh router."""

from .models.outcome_event import OutcomeEvent
from .store import OutcomeStore, get_outcome_store
from .stream import OutcomeStream

__all__ = [
    "OutcomeEvent",
    "OutcomeStore",
    "OutcomeStream",
    "get_outcome_store",
]
