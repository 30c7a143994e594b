"""Deterministic identifiers for rows that must upsert idempotently."""

import uuid

_EVENT_NAMESPACE = uuid.UUID("6f1c2f43-3c8a-4f44-9d8e-2a9c51a7d7b1")


def new_event_id() -> str:
    return str(uuid.uuid4())


def remote_event_uuid(provider: str, owner_id: str, remote_event_id: str) -> str:
    """Local id for a provider-originated event."""
    return str(uuid.uuid5(_EVENT_NAMESPACE, f"remote:{provider}:{owner_id}:{remote_event_id}"))


def instance_uuid(master_id: str, occurrence_index: int) -> str:
    """Local id for the n-th occurrence (counted from dtstart) of a recurring master."""
    return str(uuid.uuid5(_EVENT_NAMESPACE, f"instance:{master_id}:{occurrence_index}"))
