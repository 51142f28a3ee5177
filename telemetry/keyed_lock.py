"""
Striped asyncio locks keyed by entity id.

At most one coroutine may read-modify-write the state of a given entity at a
time. Keys hash onto a fixed pool of locks so memory stays bounded no matter
how many entities are tracked.
"""

import asyncio
import zlib
from typing import List


class KeyedLock:
    def __init__(self, stripes: int = 256):
        if stripes < 1:
            raise ValueError("stripes must be >= 1")
        self._locks: List[asyncio.Lock] = [asyncio.Lock() for _ in range(stripes)]

    def _index(self, key: str) -> int:
        # crc32 is stable across processes, unlike hash() on str
        return zlib.crc32(key.encode("utf-8")) % len(self._locks)

    def lock(self, key: str) -> asyncio.Lock:
        """Lock guarding `key`; use as `async with keyed.lock(entity_id):`"""
        return self._locks[self._index(key)]

    def __len__(self) -> int:
        return len(self._locks)
