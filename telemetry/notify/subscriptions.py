"""
Subscription Registry

In-process index of who is watching what:
    entity id   -> session ids
    area key    -> session ids (+ the BoundingBox behind the key)
    session id  -> its entity ids / area keys, last activity time

All methods are synchronous, so each call is atomic on the event loop.
"""

from datetime import datetime
from typing import Dict, List, Optional, Set, Tuple

from ..schema import BoundingBox, utcnow


class SubscriptionRegistry:
    def __init__(self):
        self.entity_sessions: Dict[str, Set[str]] = {}
        self.area_sessions: Dict[str, Set[str]] = {}
        self.areas: Dict[str, BoundingBox] = {}
        self.session_entities: Dict[str, Set[str]] = {}
        self.session_areas: Dict[str, Set[str]] = {}
        self.last_active: Dict[str, datetime] = {}

    def touch(self, session_id: str, now: Optional[datetime] = None):
        self.last_active[session_id] = now or utcnow()

    # Entities

    def add_entity(self, session_id: str, entity_id: str):
        self.entity_sessions.setdefault(entity_id, set()).add(session_id)
        self.session_entities.setdefault(session_id, set()).add(entity_id)
        self.touch(session_id)

    def remove_entity(self, session_id: str, entity_id: str) -> bool:
        sessions = self.entity_sessions.get(entity_id)
        if not sessions or session_id not in sessions:
            return False
        sessions.discard(session_id)
        if not sessions:
            del self.entity_sessions[entity_id]
        self.session_entities.get(session_id, set()).discard(entity_id)
        self.touch(session_id)
        return True

    def sessions_for_entity(self, entity_id: str) -> Set[str]:
        return set(self.entity_sessions.get(entity_id, ()))

    # Areas

    def add_area(self, session_id: str, box: BoundingBox):
        self.areas.setdefault(box.key, box)
        self.area_sessions.setdefault(box.key, set()).add(session_id)
        self.session_areas.setdefault(session_id, set()).add(box.key)
        self.touch(session_id)

    def remove_area(self, session_id: str, area_key: str) -> bool:
        sessions = self.area_sessions.get(area_key)
        if not sessions or session_id not in sessions:
            return False
        sessions.discard(session_id)
        if not sessions:
            # Last subscriber gone: box is no longer active
            del self.area_sessions[area_key]
            self.areas.pop(area_key, None)
        self.session_areas.get(session_id, set()).discard(area_key)
        self.touch(session_id)
        return True

    def matching_areas(self, latitude: float, longitude: float) -> List[Tuple[BoundingBox, Set[str]]]:
        """Active boxes containing the point, with their sessions"""
        return [
            (box, set(self.area_sessions.get(key, ())))
            for key, box in list(self.areas.items())
            if box.contains(latitude, longitude)
        ]

    def active_areas(self) -> List[Tuple[BoundingBox, Set[str]]]:
        return [
            (box, set(self.area_sessions.get(key, ())))
            for key, box in list(self.areas.items())
        ]

    # Sessions

    def remove_session(self, session_id: str) -> int:
        """Drop every subscription held by a session; returns how many"""
        removed = 0
        for entity_id in list(self.session_entities.get(session_id, ())):
            removed += self.remove_entity(session_id, entity_id)
        for area_key in list(self.session_areas.get(session_id, ())):
            removed += self.remove_area(session_id, area_key)

        self.session_entities.pop(session_id, None)
        self.session_areas.pop(session_id, None)
        self.last_active.pop(session_id, None)
        return removed

    def idle_sessions(self, timeout_s: float, now: Optional[datetime] = None) -> List[str]:
        now = now or utcnow()
        return [
            session_id for session_id, seen in self.last_active.items()
            if (now - seen).total_seconds() > timeout_s
        ]

    def sessions(self) -> Set[str]:
        return set(self.last_active)

    def counts(self) -> Dict[str, int]:
        return {
            "sessions": len(self.last_active),
            "entity_subscriptions": sum(len(s) for s in self.entity_sessions.values()),
            "area_subscriptions": sum(len(s) for s in self.area_sessions.values()),
            "active_areas": len(self.areas),
        }
