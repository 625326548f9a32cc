"""
Result-set caching
"""

from .eviction import EvictionPolicy, TimeAwareLRUPolicy
from .result_cache import ResultSetCache, CacheEntry, CacheOutcome, CacheStats

__all__ = ['EvictionPolicy', 'TimeAwareLRUPolicy',
           'ResultSetCache', 'CacheEntry', 'CacheOutcome', 'CacheStats']
