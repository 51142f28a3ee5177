"""
Track Storage

Storage-decision gate, per-entity last-known state and the Redis/PostgreSQL
persistence layer.
"""

from .gate import GateDecision, StorageDecisionGate
from .persistence import InMemoryTrackStore, TrackStore
from .state import EntityLastKnownState, EntityStateStore

__all__ = [
    "GateDecision",
    "StorageDecisionGate",
    "InMemoryTrackStore",
    "TrackStore",
    "EntityLastKnownState",
    "EntityStateStore",
]
