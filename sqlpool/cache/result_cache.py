"""
Result-set cache

Keyed by the fingerprint of the normalized query text; every entry
remembers the version of each table it read so a stale entry is never
returned.
"""

import logging
import math
import pickle
import threading
import time
from dataclasses import dataclass
from enum import IntEnum
from typing import Callable, Dict, List, Optional, Set

from ..core import ResultSet
from ..errors import CacheInconsistency
from .eviction import EvictionPolicy, TimeAwareLRUPolicy

logger = logging.getLogger(__name__)

PAGE_BYTES = 8192


class CacheOutcome(IntEnum):
    """Value reported as result_cache_hit"""
    HIT = 1
    MISS = 0
    DATABASE_DISABLED = -1
    SESSION_DISABLED = -2
    NO_DATA_SOURCE = -4
    NON_DETERMINISTIC = -8
    RESULT_TOO_LARGE = -16
    SYSTEM_OBJECT = -32


@dataclass
class CacheEntry:
    """Cached result with metadata"""
    fingerprint: str
    command: str
    payload: bytes
    versions: Dict[str, int]
    row_count: int
    created_at: float
    last_accessed_at: float
    hit_count: int = 0
    stale: bool = False

    @property
    def data_bytes(self) -> int:
        return len(self.payload)

    @property
    def index_bytes(self) -> int:
        return (len(self.fingerprint) + len(self.command.encode('utf-8'))
                + sum(len(t) + 8 for t in self.versions))

    @property
    def size_bytes(self) -> int:
        return self.data_bytes + self.index_bytes

    def result(self) -> ResultSet:
        columns, types, rows = pickle.loads(self.payload)
        return ResultSet(columns=columns, types=types, rows=rows)


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    stores: int = 0
    evictions: int = 0
    expirations: int = 0
    invalidations: int = 0
    inconsistencies: int = 0
    rejected: int = 0


class ResultSetCache:
    """
    Result-set cache with lazy invalidation and pluggable eviction

    Stores serialize the result before taking the lock and publish the
    finished entry with a single dict assignment, so readers never see a
    partial entry; concurrent stores of one fingerprint resolve last
    writer wins.
    """

    def __init__(self, capacity_bytes: int, max_result_bytes: int,
                 policy: Optional[EvictionPolicy] = None,
                 high_watermark: float = 0.9, low_watermark: float = 0.8,
                 clock: Callable[[], float] = time.time):
        """
        Initialize cache

        Args:
            capacity_bytes: Total cache size cap
            max_result_bytes: Largest result that may be stored
            policy: Eviction policy (TimeAwareLRUPolicy by default)
            high_watermark: Usage fraction that triggers proactive eviction
            low_watermark: Usage fraction proactive eviction brings the cache down to
            clock: Time source in seconds
        """
        self.capacity_bytes = capacity_bytes
        self.max_result_bytes = max_result_bytes
        self.policy = policy or TimeAwareLRUPolicy()
        self.high_watermark = high_watermark
        self.low_watermark = low_watermark
        self.clock = clock

        self._entries: Dict[str, CacheEntry] = {}
        self._by_table: Dict[str, Set[str]] = {}
        self._size_bytes = 0
        self._lock = threading.Lock()
        self.stats = CacheStats()

    @classmethod
    def from_config(cls, config, clock: Callable[[], float] = time.time) -> "ResultSetCache":
        """Build a cache from the 'cache' section of a Config"""
        policy = TimeAwareLRUPolicy(
            max_idle_seconds=config.get('cache.max_idle_seconds', 48 * 3600),
            age_weight=config.get('cache.age_weight', 0.25),
        )
        return cls(
            capacity_bytes=config.get('cache.capacity_bytes'),
            max_result_bytes=config.get('cache.max_result_bytes'),
            policy=policy,
            high_watermark=config.get('cache.high_watermark', 0.9),
            low_watermark=config.get('cache.low_watermark', 0.8),
            clock=clock,
        )

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, fingerprint: str) -> bool:
        return fingerprint in self._entries

    @property
    def size_bytes(self) -> int:
        return self._size_bytes

    # ------------------------------------------------------------------
    # Lookup / store
    # ------------------------------------------------------------------

    def _remove(self, fingerprint: str) -> Optional[CacheEntry]:
        entry = self._entries.pop(fingerprint, None)
        if entry is None:
            return None
        self._size_bytes -= entry.size_bytes
        for table in entry.versions:
            keys = self._by_table.get(table)
            if keys is not None:
                keys.discard(fingerprint)
                if not keys:
                    del self._by_table[table]
        return entry

    def _check(self, entry: CacheEntry, versions: Dict[str, int]):
        """
        Raises:
            CacheInconsistency: Entry is stale or a table version changed
        """
        if entry.stale:
            raise CacheInconsistency(entry.fingerprint)
        if set(entry.versions) != set(versions):
            raise CacheInconsistency(entry.fingerprint)
        for table, version in versions.items():
            if entry.versions[table] != version:
                raise CacheInconsistency(entry.fingerprint, table)

    def lookup(self, fingerprint: str, versions: Dict[str, int]) -> Optional[ResultSet]:
        """
        Cached result for a fingerprint, valid for the given table versions

        Args:
            fingerprint: Normalized query fingerprint
            versions: Current version of every referenced table

        Returns:
            ResultSet on a hit, None on a miss
        """
        now = self.clock()
        with self._lock:
            entry = self._entries.get(fingerprint)
            if entry is None:
                self.stats.misses += 1
                return None
            if self.policy.is_expired(entry, now):
                self._remove(fingerprint)
                self.stats.expirations += 1
                self.stats.misses += 1
                return None
            try:
                self._check(entry, versions)
            except CacheInconsistency as e:
                self._remove(fingerprint)
                if not entry.stale:
                    self.stats.inconsistencies += 1
                    logger.warning("%s; treating as a miss", e)
                self.stats.misses += 1
                return None
            entry.last_accessed_at = now
            entry.hit_count += 1
            self.stats.hits += 1
        return entry.result()

    def store(self, fingerprint: str, command: str, result: ResultSet,
              versions: Dict[str, int]) -> bool:
        """
        Cache a complete result

        Returns:
            False when the result exceeds max_result_bytes (not stored)
        """
        payload = pickle.dumps((list(result.columns), list(result.types), list(result.rows)),
                               protocol=pickle.HIGHEST_PROTOCOL)
        if len(payload) > self.max_result_bytes:
            with self._lock:
                self.stats.rejected += 1
            logger.info("Result of %s is %d bytes; not cached (limit %d)",
                        fingerprint[:12], len(payload), self.max_result_bytes)
            return False

        now = self.clock()
        entry = CacheEntry(
            fingerprint=fingerprint,
            command=command,
            payload=payload,
            versions={table.lower(): version for table, version in versions.items()},
            row_count=result.row_count,
            created_at=now,
            last_accessed_at=now,
        )
        with self._lock:
            self._remove(fingerprint)
            self._entries[fingerprint] = entry
            self._size_bytes += entry.size_bytes
            for table in entry.versions:
                self._by_table.setdefault(table, set()).add(fingerprint)
            self.stats.stores += 1
            if self._size_bytes > self.high_watermark * self.capacity_bytes:
                self._evict_to(self.low_watermark * self.capacity_bytes, now)
        return True

    # ------------------------------------------------------------------
    # Invalidation / eviction
    # ------------------------------------------------------------------

    def invalidate(self, table: str) -> int:
        """
        Mark every entry that read a table as stale

        Entries are removed lazily, at their next lookup or maintenance pass.

        Returns:
            Number of entries marked
        """
        marked = 0
        with self._lock:
            for fingerprint in self._by_table.get(table.lower(), ()):
                entry = self._entries[fingerprint]
                if not entry.stale:
                    entry.stale = True
                    marked += 1
            self.stats.invalidations += marked
        if marked:
            logger.debug("Invalidated %d cached result(s) of table %s", marked, table)
        return marked

    def _evict_to(self, target_bytes: float, now: float):
        ranked = sorted(self._entries.values(),
                        key=lambda e: (not e.stale, -self.policy.score(e, now)))
        for entry in ranked:
            if self._size_bytes <= target_bytes:
                break
            self._remove(entry.fingerprint)
            self.stats.evictions += 1
        logger.info("Result cache evicted down to %d bytes", self._size_bytes)

    def purge_expired(self) -> int:
        """
        Remove expired and stale entries, then evict if above the high watermark

        Returns:
            Number of entries removed
        """
        now = self.clock()
        with self._lock:
            before = len(self._entries)
            for fingerprint, entry in list(self._entries.items()):
                if entry.stale:
                    self._remove(fingerprint)
                elif self.policy.is_expired(entry, now):
                    self._remove(fingerprint)
                    self.stats.expirations += 1
            if self._size_bytes > self.high_watermark * self.capacity_bytes:
                self._evict_to(self.low_watermark * self.capacity_bytes, now)
            return before - len(self._entries)

    def drop_all(self) -> int:
        """
        Empty the cache unconditionally

        Returns:
            Number of entries dropped
        """
        with self._lock:
            dropped = len(self._entries)
            self._entries.clear()
            self._by_table.clear()
            self._size_bytes = 0
        logger.info("Dropped %d result cache entries", dropped)
        return dropped

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def space_used(self) -> Dict[str, int]:
        """
        DBCC SHOWRESULTCACHESPACEUSED

        Returns:
            reserved_space, data_space, index_space, unused_space in KB
        """
        with self._lock:
            data = sum(e.data_bytes for e in self._entries.values())
            index = sum(e.index_bytes for e in self._entries.values())
            reserved = sum(math.ceil(e.size_bytes / PAGE_BYTES) * PAGE_BYTES
                           for e in self._entries.values())
        return {
            'reserved_space': reserved // 1024,
            'data_space': math.ceil(data / 1024),
            'index_space': math.ceil(index / 1024),
            'unused_space': max(0, reserved - data - index) // 1024,
        }

    def entries(self) -> List[Dict]:
        with self._lock:
            return [{
                'fingerprint': e.fingerprint,
                'command': e.command,
                'row_count': e.row_count,
                'size_bytes': e.size_bytes,
                'hit_count': e.hit_count,
                'stale': e.stale,
                'tables': sorted(e.versions),
            } for e in self._entries.values()]

    def stats_dict(self) -> Dict:
        return {
            'entries': len(self._entries),
            'size_bytes': self._size_bytes,
            'capacity_bytes': self.capacity_bytes,
            **self.stats.__dict__,
        }
