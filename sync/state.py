"""
Sync state machine for one (local event, provider) pair.

Only ``unsynced``, ``synced`` and ``error`` are persisted. ``pushing`` and
``pulling_update`` exist while a round trip is in flight.
"""

from typing import Dict, FrozenSet

from core import InvalidSyncTransition

UNSYNCED = "unsynced"
PUSHING = "pushing"
SYNCED = "synced"
ERROR = "error"
PULLING_UPDATE = "pulling_update"

PERSISTED_STATES = frozenset({UNSYNCED, SYNCED, ERROR})

TRANSITIONS: Dict[str, FrozenSet[str]] = {
    UNSYNCED: frozenset({PUSHING, PULLING_UPDATE}),
    PUSHING: frozenset({SYNCED, ERROR}),
    ERROR: frozenset({PUSHING, PULLING_UPDATE}),
    SYNCED: frozenset({PUSHING, PULLING_UPDATE}),
    PULLING_UPDATE: frozenset({SYNCED}),
}


def can_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


def transition(current: str, target: str) -> str:
    """Return ``target`` if the edge exists, otherwise raise InvalidSyncTransition."""
    if not can_transition(current, target):
        raise InvalidSyncTransition(current, target)
    return target
