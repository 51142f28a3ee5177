"""
Entity Last-Known State

Per entity: last fused record, last persisted snapshot and when it was
persisted. Created on first sighting, updated on every gate decision, purged
after the class's inactivity timeout. Callers hold the entity's KeyedLock.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Iterator, List, Optional

from ..schema import EntityClass, FusedTrackRecord, utcnow

logger = logging.getLogger(__name__)


@dataclass
class EntityLastKnownState:
    entity_id: str
    entity_class: EntityClass
    last_fused: FusedTrackRecord
    last_seen: datetime
    last_persisted: Optional[FusedTrackRecord] = None
    last_persisted_at: Optional[datetime] = None


class EntityStateStore:
    def __init__(self):
        self._states: Dict[str, EntityLastKnownState] = {}

    def get(self, entity_id: str) -> Optional[EntityLastKnownState]:
        return self._states.get(entity_id)

    def update(
        self,
        record: FusedTrackRecord,
        persisted: bool,
        now: Optional[datetime] = None,
    ) -> EntityLastKnownState:
        """Record a gate decision for the record's entity"""
        now = now or utcnow()
        state = self._states.get(record.entity_id)

        if state is None:
            state = EntityLastKnownState(
                entity_id=record.entity_id,
                entity_class=record.entity_class,
                last_fused=record,
                last_seen=now,
            )
            self._states[record.entity_id] = state
        else:
            state.last_fused = record
            state.last_seen = now

        if persisted:
            state.last_persisted = record
            state.last_persisted_at = now

        return state

    def inactive(
        self,
        timeout_for: Callable[[EntityClass], float],
        now: Optional[datetime] = None,
    ) -> List[str]:
        """Entity ids not seen within their class's inactivity timeout"""
        now = now or utcnow()
        return [
            entity_id for entity_id, state in self._states.items()
            if (now - state.last_seen).total_seconds() > timeout_for(state.entity_class)
        ]

    def remove(self, entity_id: str) -> Optional[EntityLastKnownState]:
        return self._states.pop(entity_id, None)

    def current(self) -> Iterator[FusedTrackRecord]:
        """Latest fused record of every tracked entity"""
        for state in list(self._states.values()):
            yield state.last_fused

    def count_by_class(self) -> Dict[str, int]:
        counts = {cls.value: 0 for cls in EntityClass}
        for state in self._states.values():
            counts[state.entity_class.value] += 1
        return counts

    def __len__(self) -> int:
        return len(self._states)

    def __contains__(self, entity_id: str) -> bool:
        return entity_id in self._states
