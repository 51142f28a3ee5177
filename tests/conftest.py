"""Shared fakes and record builders for the tracking tests."""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

import pytest

from telemetry.schema import EntityClass, FusedTrackRecord, RawTrackRecord

T0 = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


def at(seconds: float) -> datetime:
    return T0 + timedelta(seconds=seconds)


def make_raw(
    entity_id: str = "7C1B72",
    source: str = "flightradar24",
    latitude: Optional[float] = 11.68,
    longitude: Optional[float] = 109.20,
    received_at: Optional[datetime] = None,
    quality: float = 0.8,
    entity_class: EntityClass = EntityClass.AIRCRAFT,
    **fields: Any,
) -> RawTrackRecord:
    return RawTrackRecord(
        entity_id=entity_id,
        entity_class=entity_class,
        source=source,
        latitude=latitude,
        longitude=longitude,
        received_at=received_at or T0,
        quality=quality,
        **fields,
    )


def make_fused(
    entity_id: str = "7C1B72",
    latitude: Optional[float] = 11.68,
    longitude: Optional[float] = 109.20,
    sources: Tuple[str, ...] = ("flightradar24",),
    quality: float = 0.8,
    entity_class: EntityClass = EntityClass.AIRCRAFT,
    fused_at: Optional[datetime] = None,
    **fields: Any,
) -> FusedTrackRecord:
    return FusedTrackRecord(
        entity_id=entity_id,
        entity_class=entity_class,
        latitude=latitude,
        longitude=longitude,
        quality=quality,
        sources=sources,
        fused_at=fused_at or T0,
        **fields,
    )


class FakePipeline:
    """Queues calls and replays them against FakeRedis on execute()"""

    def __init__(self, redis):
        self.redis = redis
        self.ops: List[Tuple[str, tuple, dict]] = []

    def __getattr__(self, name):
        def queue(*args, **kwargs):
            self.ops.append((name, args, kwargs))
            return self
        return queue

    async def execute(self):
        results = []
        for name, args, kwargs in self.ops:
            results.append(await getattr(self.redis, name)(*args, **kwargs))
        self.ops = []
        return results


class FakeRedis:
    """In-memory subset of redis.asyncio.Redis (decode_responses=True)"""

    def __init__(self):
        self.hashes: Dict[str, Dict[str, str]] = {}
        self.sets: Dict[str, set] = {}
        self.streams: Dict[str, List[Tuple[str, Dict[str, str]]]] = {}
        self.groups: Dict[Tuple[str, str], int] = {}
        self.pending: Dict[Tuple[str, str], Dict[str, Dict[str, str]]] = {}
        self.acked: List[Tuple[str, str, str]] = []
        self.published: List[Tuple[str, str]] = []

    def pipeline(self):
        return FakePipeline(self)

    async def ping(self):
        return True

    async def hset(self, name, key=None, value=None, mapping=None):
        data = self.hashes.setdefault(name, {})
        if mapping:
            data.update({k: str(v) for k, v in mapping.items()})
        if key is not None:
            data[key] = str(value)
        return len(mapping or {}) + (key is not None)

    async def hgetall(self, name):
        return dict(self.hashes.get(name, {}))

    async def sadd(self, name, *values):
        self.sets.setdefault(name, set()).update(values)
        return len(values)

    async def srem(self, name, *values):
        members = self.sets.get(name, set())
        members.difference_update(values)
        return len(values)

    async def smembers(self, name):
        return set(self.sets.get(name, set()))

    async def delete(self, *names):
        removed = 0
        for name in names:
            removed += self.hashes.pop(name, None) is not None
            removed += self.sets.pop(name, None) is not None
        return removed

    async def publish(self, channel, message):
        self.published.append((channel, message))
        return 1

    async def xadd(self, name, fields, maxlen=None, approximate=True):
        entries = self.streams.setdefault(name, [])
        msg_id = f"{len(entries) + 1}-0"
        entries.append((msg_id, {k: str(v) for k, v in fields.items()}))
        return msg_id

    async def xgroup_create(self, name, groupname, id="0", mkstream=False):
        if (name, groupname) in self.groups:
            raise Exception("BUSYGROUP Consumer Group name already exists")
        self.streams.setdefault(name, [])
        self.groups[(name, groupname)] = 0
        return True

    async def xreadgroup(self, groupname, consumername, streams, count=None, block=None):
        result = []
        for stream in streams:
            if (stream, groupname) not in self.groups:
                raise Exception("NOGROUP No such key or consumer group")
            position = self.groups[(stream, groupname)]
            entries = self.streams.get(stream, [])
            batch = entries[position:position + (count or len(entries))]
            self.groups[(stream, groupname)] = position + len(batch)
            pending = self.pending.setdefault((stream, groupname), {})
            for msg_id, data in batch:
                pending[msg_id] = data
            if batch:
                result.append([stream, batch])
        return result

    async def xautoclaim(self, name, groupname, consumername, min_idle_time, start_id="0-0", count=None):
        # Every pending entry counts as idle
        pending = self.pending.get((name, groupname), {})
        return ["0-0", list(pending.items()), []]

    async def xack(self, name, groupname, *ids):
        pending = self.pending.get((name, groupname), {})
        for msg_id in ids:
            pending.pop(msg_id, None)
            self.acked.append((name, groupname, msg_id))
        return len(ids)


class RecordingDelivery:
    """Delivery that records messages; sessions in `failing` raise"""

    def __init__(self, failing=()):
        self.sent: List[Tuple[str, Dict[str, Any]]] = []
        self.failing = set(failing)

    async def send(self, session_id: str, message: Dict[str, Any]) -> None:
        if session_id in self.failing:
            raise ConnectionError(f"{session_id} went away")
        self.sent.append((session_id, message))

    def to(self, session_id: str) -> List[Dict[str, Any]]:
        return [message for sid, message in self.sent if sid == session_id]


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def delivery():
    return RecordingDelivery()
