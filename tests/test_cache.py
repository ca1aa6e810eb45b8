import pytest

from tokenledger.cache import CacheStatus, StatisticsCache
from tokenledger.models import AggregateStatistics, DateRange, QueryKey

KEY = QueryKey(DateRange("2025-06-01", "2025-06-30"))
STATS = AggregateStatistics(
    total_cost=1.0,
    total_input_tokens=10,
    total_output_tokens=20,
    total_cache_write_tokens=0,
    total_cache_read_tokens=0,
    total_requests=1,
    session_ids=frozenset({"s1"}),
)


class FakeClock:
    """
    A settable clock for TTL tests.
    """

    def __init__(self, now: "float" = 1_000.0) -> "None":
        self.now = now

    def __call__(self) -> "float":
        return self.now


@pytest.fixture()
def clock() -> "FakeClock":
    return FakeClock()


@pytest.fixture()
def cache(clock: "FakeClock") -> "StatisticsCache":
    return StatisticsCache(ttl_seconds=1800, near_expiry_seconds=300, clock=clock)


class TestTransitions:
    def test_unknown_key_is_empty(self, cache: "StatisticsCache") -> "None":
        assert cache.status(KEY) is CacheStatus.EMPTY
        assert cache.lookup(KEY) is None

    def test_loading_then_fresh(
        self, cache: "StatisticsCache", clock: "FakeClock"
    ) -> "None":
        assert cache.begin_loading(KEY).status is CacheStatus.LOADING
        entry = cache.complete(KEY, STATS)
        assert entry.status is CacheStatus.FRESH
        assert entry.cache_time == clock.now
        assert entry.expiry_time == clock.now + 1800
        assert entry.approx_size > 0

    def test_ages_through_stale_to_expired(
        self, cache: "StatisticsCache", clock: "FakeClock"
    ) -> "None":
        cache.complete(KEY, STATS)

        clock.now += 1499
        assert cache.status(KEY) is CacheStatus.FRESH
        clock.now += 1
        assert cache.status(KEY) is CacheStatus.STALE
        clock.now += 300
        assert cache.status(KEY) is CacheStatus.EXPIRED

    def test_time_never_moves_backwards(
        self, cache: "StatisticsCache", clock: "FakeClock"
    ) -> "None":
        cache.complete(KEY, STATS)
        clock.now += 1800
        assert cache.status(KEY) is CacheStatus.EXPIRED
        clock.now -= 1000
        assert cache.status(KEY) is CacheStatus.EXPIRED

    def test_refresh_returns_to_loading(
        self, cache: "StatisticsCache", clock: "FakeClock"
    ) -> "None":
        cache.complete(KEY, STATS)
        clock.now += 5000
        entry = cache.begin_loading(KEY)
        assert entry.status is CacheStatus.LOADING
        # last known-good data survives a reload
        assert entry.statistics == STATS

    def test_fail_keeps_data(self, cache: "StatisticsCache") -> "None":
        cache.complete(KEY, STATS)
        entry = cache.fail(KEY, RuntimeError("disk full"))
        assert entry.status is CacheStatus.ERROR
        assert entry.statistics == STATS
        assert entry.last_error == "disk full"

    def test_error_does_not_age(
        self, cache: "StatisticsCache", clock: "FakeClock"
    ) -> "None":
        cache.complete(KEY, STATS)
        cache.fail(KEY, "boom")
        clock.now += 10_000
        assert cache.status(KEY) is CacheStatus.ERROR

    def test_fail_all(self, cache: "StatisticsCache") -> "None":
        other = QueryKey()
        cache.complete(KEY, STATS)
        cache.complete(other, STATS)
        assert cache.fail_all("log directory gone") == 2
        assert cache.status(KEY) is CacheStatus.ERROR
        assert cache.status(other) is CacheStatus.ERROR

    def test_keys_are_independent(
        self, cache: "StatisticsCache", clock: "FakeClock"
    ) -> "None":
        other = QueryKey(project_path="/app")
        cache.complete(KEY, STATS)
        clock.now += 1000
        cache.complete(other, STATS)
        clock.now += 900
        assert cache.status(KEY) is CacheStatus.EXPIRED
        assert cache.status(other) is CacheStatus.FRESH


class TestBookkeeping:
    def test_lookup_counts_hits(self, cache: "StatisticsCache") -> "None":
        cache.complete(KEY, STATS)
        cache.lookup(KEY)
        assert cache.lookup(KEY).hit_count == 2
        assert cache.peek(KEY).hit_count == 2

    def test_complete_keeps_hit_count(self, cache: "StatisticsCache") -> "None":
        cache.complete(KEY, STATS)
        cache.lookup(KEY)
        assert cache.complete(KEY, STATS).hit_count == 1

    def test_lru_eviction(self, clock: "FakeClock") -> "None":
        cache = StatisticsCache(max_entries=2, clock=clock)
        first, second, third = QueryKey(), QueryKey(project_path="/a"), QueryKey(
            project_path="/b"
        )
        cache.complete(first, STATS)
        cache.complete(second, STATS)
        cache.lookup(first)
        cache.complete(third, STATS)
        assert set(cache.keys()) == {first, third}

    def test_discard_and_clear(self, cache: "StatisticsCache") -> "None":
        cache.complete(KEY, STATS)
        cache.complete(QueryKey(), STATS)
        cache.discard(KEY)
        assert cache.keys() == [QueryKey()]
        cache.clear()
        assert len(cache) == 0

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"ttl_seconds": 0},
            {"ttl_seconds": 60, "near_expiry_seconds": 120},
            {"max_entries": 0},
        ],
    )
    def test_invalid_settings(self, kwargs: "dict") -> "None":
        with pytest.raises(ValueError):
            StatisticsCache(**kwargs)


class TestCacheStatus:
    def test_flags(self) -> "None":
        assert CacheStatus.FRESH.can_show_data
        assert not CacheStatus.FRESH.needs_refresh
        assert CacheStatus.EXPIRED.can_show_data
        assert CacheStatus.EXPIRED.needs_refresh
        assert not CacheStatus.LOADING.needs_refresh
        assert not CacheStatus.ERROR.can_show_data
