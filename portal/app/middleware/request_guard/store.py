"""Lock-striped in-memory key/value store.

Keys are hashed onto a fixed number of shards, each a plain dict with
its own lock. A read-modify-write on one key holds only that key's shard
lock, so requests for unrelated clients rarely contend.
"""

import math
import threading
from contextlib import contextmanager
from typing import Callable, Dict, Generic, Iterator, List, Optional, TypeVar

V = TypeVar("V")


class _Shard(Generic[V]):
    __slots__ = ("lock", "data")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.data: Dict[str, V] = {}


class ShardedStore(Generic[V]):
    """Process-local map guarded by per-shard locks.

    With ``max_entries`` set, each shard holds at most its share of the
    total; ``make_room`` evicts from a full shard before an insert.
    """

    def __init__(self, shards: int = 16, max_entries: Optional[int] = None):
        if shards < 1:
            raise ValueError("shards must be at least 1")
        if max_entries is not None and max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self._shards: List[_Shard[V]] = [_Shard() for _ in range(shards)]
        self._shard_capacity = (
            None if max_entries is None else max(1, math.ceil(max_entries / shards))
        )

    def _shard_for(self, key: str) -> _Shard[V]:
        return self._shards[hash(key) % len(self._shards)]

    @contextmanager
    def locked(self, key: str) -> Iterator[Dict[str, V]]:
        """Hold the lock owning ``key`` and yield the shard's dict.

        Callers must only touch ``key`` in the yielded dict.
        """
        shard = self._shard_for(key)
        with shard.lock:
            yield shard.data

    def make_room(self, data: Dict[str, V], is_expired: Callable[[V], bool]) -> int:
        """Evict from a full shard before a new key is inserted.

        Must be called with the shard lock held, on the dict yielded by
        ``locked``. Expired values go first; if the shard is still full
        the oldest 20% of its keys are dropped (insertion order).

        Returns:
            Number of evicted entries
        """
        if self._shard_capacity is None or len(data) < self._shard_capacity:
            return 0

        expired = [key for key, value in data.items() if is_expired(value)]
        for key in expired:
            del data[key]
        evicted = len(expired)

        if len(data) >= self._shard_capacity:
            remove_count = max(1, int(self._shard_capacity * 0.2))
            for _ in range(remove_count):
                del data[next(iter(data))]
            evicted += remove_count
        return evicted

    def get(self, key: str) -> Optional[V]:
        with self.locked(key) as data:
            return data.get(key)

    def purge(self, is_expired: Callable[[V], bool]) -> int:
        """Remove every value for which ``is_expired`` returns True.

        Shards are locked one at a time.

        Returns:
            Number of removed entries
        """
        removed = 0
        for shard in self._shards:
            with shard.lock:
                expired = [key for key, value in shard.data.items() if is_expired(value)]
                for key in expired:
                    del shard.data[key]
                removed += len(expired)
        return removed

    def clear(self) -> None:
        for shard in self._shards:
            with shard.lock:
                shard.data.clear()

    def __len__(self) -> int:
        total = 0
        for shard in self._shards:
            with shard.lock:
                total += len(shard.data)
        return total
