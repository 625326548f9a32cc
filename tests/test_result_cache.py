from decimal import Decimal

import pytest

from sqlpool.cache import CacheOutcome, ResultSetCache, TimeAwareLRUPolicy
from sqlpool.core import ResultSet

from conftest import FakeClock

HOUR = 3600
VERSIONS = {'sales': 1}


def result(n=3):
    return ResultSet(['region', 'total'], ['INTEGER', 'DECIMAL(18,2)'],
                     [(i, Decimal(f"{i}.50")) for i in range(n)])


@pytest.fixture
def clock():
    return FakeClock(now=0.0)


@pytest.fixture
def cache(clock):
    return ResultSetCache(capacity_bytes=10 ** 9, max_result_bytes=10 ** 6, clock=clock)


def test_outcome_codes():
    assert [int(c) for c in CacheOutcome] == [1, 0, -1, -2, -4, -8, -16, -32]


def test_miss_then_hit(cache):
    assert cache.lookup('fp', VERSIONS) is None
    assert cache.store('fp', 'SELECT ...', result(), VERSIONS)
    cached = cache.lookup('fp', VERSIONS)
    assert cached.columns == ['region', 'total']
    assert cached.rows == result().rows
    assert (cache.stats.hits, cache.stats.misses, cache.stats.stores) == (1, 1, 1)
    assert cache.entries()[0]['hit_count'] == 1


def test_invalidation_is_lazy(cache):
    cache.store('fp', 'q', result(), {'sales': 1, 'region': 4})
    cache.store('other', 'q2', result(), {'region': 4})
    assert cache.invalidate('Sales') == 1
    assert cache.invalidate('sales') == 0
    assert 'fp' in cache
    assert cache.lookup('fp', {'sales': 1, 'region': 4}) is None
    assert 'fp' not in cache
    assert cache.stats.inconsistencies == 0
    assert cache.lookup('other', {'region': 4}) is not None


def test_version_mismatch_is_a_miss(cache):
    cache.store('fp', 'q', result(), VERSIONS)
    assert cache.lookup('fp', {'sales': 2}) is None
    assert cache.stats.inconsistencies == 1
    assert len(cache) == 0


def test_expires_after_idle_period(cache, clock):
    cache.store('fp', 'q', result(), VERSIONS)
    clock.advance(47 * HOUR)
    assert cache.lookup('fp', VERSIONS) is not None
    clock.advance(47 * HOUR)
    assert cache.lookup('fp', VERSIONS) is not None
    clock.advance(48 * HOUR)
    assert cache.lookup('fp', VERSIONS) is None
    assert cache.stats.expirations == 1


def test_purge_removes_stale_and_expired(cache, clock):
    cache.store('old', 'q', result(), VERSIONS)
    clock.advance(HOUR)
    cache.store('stale', 'q', result(), {'region': 1})
    cache.store('fresh', 'q', result(), {'customers': 1})
    cache.invalidate('region')
    clock.advance(47 * HOUR)
    assert cache.purge_expired() == 2
    assert 'fresh' in cache and len(cache) == 1


def test_oversized_result_rejected(clock):
    cache = ResultSetCache(capacity_bytes=10 ** 9, max_result_bytes=64, clock=clock)
    assert not cache.store('fp', 'q', result(100), VERSIONS)
    assert len(cache) == 0
    assert cache.stats.rejected == 1


def test_watermark_eviction_prefers_idle_entries(clock):
    probe = ResultSetCache(capacity_bytes=10 ** 9, max_result_bytes=10 ** 6, clock=clock)
    probe.store('fp0', 'q', result(), VERSIONS)
    size = probe.size_bytes

    cache = ResultSetCache(capacity_bytes=10 * size + size // 2, max_result_bytes=10 ** 6,
                           clock=clock)
    for i in range(9):
        cache.store(f"fp{i}", 'q', result(), VERSIONS)
        clock.advance(1)
    clock.advance(-0.5)
    assert cache.lookup('fp0', VERSIONS) is not None
    clock.advance(0.5)
    assert cache.stats.evictions == 0

    cache.store('fp9', 'q', result(), VERSIONS)
    assert cache.stats.evictions == 2
    assert cache.size_bytes == 8 * size
    assert 'fp0' in cache
    assert 'fp1' not in cache and 'fp2' not in cache


def test_score_weights_age():
    policy = TimeAwareLRUPolicy(max_idle_seconds=100, age_weight=0.5)

    class Entry:
        created_at = 0.0
        last_accessed_at = 40.0

    assert policy.score(Entry, 50.0) == 10.0 + 25.0
    assert not policy.is_expired(Entry, 139.0)
    assert policy.is_expired(Entry, 140.0)


def test_space_used_and_drop(cache):
    cache.store('fp', 'q', result(), VERSIONS)
    space = cache.space_used()
    assert space['reserved_space'] == 8
    assert space['data_space'] == 1
    assert space['index_space'] == 1
    assert space['unused_space'] == 7
    assert cache.drop_all() == 1
    assert cache.space_used()['reserved_space'] == 0
    assert cache.size_bytes == 0
