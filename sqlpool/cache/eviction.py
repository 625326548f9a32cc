"""
Result cache eviction policies
"""

from abc import ABC, abstractmethod


class EvictionPolicy(ABC):
    """
    Decides which cache entries expire and in which order entries are
    evicted when the cache nears its capacity
    """

    @abstractmethod
    def is_expired(self, entry, now: float) -> bool:
        """Entry must be removed regardless of cache pressure"""
        pass

    @abstractmethod
    def score(self, entry, now: float) -> float:
        """Eviction priority; the highest score is evicted first"""
        pass


class TimeAwareLRUPolicy(EvictionPolicy):
    """
    LRU weighted by absolute age

    score = idle + age_weight * age, where idle is the time since the last
    hit and age the time since creation. An old entry that is still hit
    now and then is evicted before an equally idle young one. Entries idle
    for max_idle_seconds (48 hours by default) expire.
    """

    def __init__(self, max_idle_seconds: float = 48 * 3600, age_weight: float = 0.25):
        """
        Initialize policy

        Args:
            max_idle_seconds: Idle time after which an entry expires
            age_weight: Weight of entry age relative to idle time
        """
        self.max_idle_seconds = max_idle_seconds
        self.age_weight = age_weight

    def is_expired(self, entry, now: float) -> bool:
        return now - entry.last_accessed_at >= self.max_idle_seconds

    def score(self, entry, now: float) -> float:
        idle = now - entry.last_accessed_at
        age = now - entry.created_at
        return idle + self.age_weight * age
