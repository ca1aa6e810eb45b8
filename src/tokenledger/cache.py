import json
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable

import structlog

from tokenledger.models import AggregateStatistics, QueryKey

logger = structlog.get_logger()

DEFAULT_TTL_SECONDS = 1800
DEFAULT_NEAR_EXPIRY_SECONDS = 300
DEFAULT_MAX_ENTRIES = 64


class CacheStatus(str, Enum):
    EMPTY = "empty"
    LOADING = "loading"
    FRESH = "fresh"
    STALE = "stale"
    EXPIRED = "expired"
    ERROR = "error"

    @property
    def needs_refresh(self) -> "bool":
        return self in (
            CacheStatus.EMPTY,
            CacheStatus.STALE,
            CacheStatus.EXPIRED,
            CacheStatus.ERROR,
        )

    @property
    def can_show_data(self) -> "bool":
        return self in (CacheStatus.FRESH, CacheStatus.STALE, CacheStatus.EXPIRED)


# time only moves an entry forward through these
_AGE_RANK = {CacheStatus.FRESH: 0, CacheStatus.STALE: 1, CacheStatus.EXPIRED: 2}


@dataclass(frozen=True, slots=True)
class CacheEntry:
    """
    CacheEntry is an immutable snapshot of the cache state of one
    query. statistics keeps the last known-good result across
    loading and error states.
    """

    query_key: "QueryKey"
    status: "CacheStatus"
    cache_time: "float | None" = None
    expiry_time: "float | None" = None
    hit_count: "int" = 0
    approx_size: "int" = 0
    statistics: "AggregateStatistics | None" = None
    last_error: "str | None" = None

    @property
    def has_data(self) -> "bool":
        return self.statistics is not None


class StatisticsCache:
    """
    StatisticsCache: Is a thread-safe, per-query freshness state
    machine over computed statistics.

    Entries age lazily: every read compares the clock with the
    entry's expiry time, moving it fresh -> stale inside the
    near-expiry window and stale -> expired once the TTL is over.
    Only begin_loading() moves an entry back to loading.

    Least recently used entries beyond max_entries are evicted.
    """

    def __init__(
        self,
        ttl_seconds: "float" = DEFAULT_TTL_SECONDS,
        near_expiry_seconds: "float" = DEFAULT_NEAR_EXPIRY_SECONDS,
        max_entries: "int" = DEFAULT_MAX_ENTRIES,
        clock: "Callable[[], float]" = time.time,
    ) -> "None":
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        if near_expiry_seconds < 0 or near_expiry_seconds > ttl_seconds:
            raise ValueError("near_expiry_seconds must be within [0, ttl_seconds]")
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")

        self._ttl = ttl_seconds
        self._near_expiry = near_expiry_seconds
        self._max_entries = max_entries
        self._clock = clock
        self._lock: "threading.Lock" = threading.Lock()
        self._entries: "OrderedDict[QueryKey, CacheEntry]" = OrderedDict()

    @property
    def ttl_seconds(self) -> "float":
        return self._ttl

    def _age(self, entry: "CacheEntry", now: "float") -> "CacheEntry":
        if entry.status not in _AGE_RANK or entry.expiry_time is None:
            return entry

        if now >= entry.expiry_time:
            observed = CacheStatus.EXPIRED
        elif now >= entry.expiry_time - self._near_expiry:
            observed = CacheStatus.STALE
        else:
            observed = CacheStatus.FRESH

        if _AGE_RANK[observed] <= _AGE_RANK[entry.status]:
            return entry
        return replace(entry, status=observed)

    def lookup(self, key: "QueryKey") -> "CacheEntry | None":
        """
        returns the aged entry for key and counts the hit, or None.
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            aged = self._age(entry, self._clock())
            entry = replace(aged, hit_count=aged.hit_count + 1)
            self._entries[key] = entry
            self._entries.move_to_end(key)
            return entry

    def peek(self, key: "QueryKey") -> "CacheEntry | None":
        """
        like lookup() but without counting a hit or touching LRU order.
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            entry = self._age(entry, self._clock())
            self._entries[key] = entry
            return entry

    def status(self, key: "QueryKey") -> "CacheStatus":
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return CacheStatus.EMPTY
            entry = self._age(entry, self._clock())
            self._entries[key] = entry
            return entry.status

    def begin_loading(self, key: "QueryKey") -> "CacheEntry":
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                entry = CacheEntry(query_key=key, status=CacheStatus.LOADING)
            else:
                entry = replace(entry, status=CacheStatus.LOADING)
            self._store(key, entry)
            return entry

    def complete(
        self, key: "QueryKey", statistics: "AggregateStatistics"
    ) -> "CacheEntry":
        """
        stores a freshly computed result: fresh until now + TTL.
        """
        now = self._clock()
        size = len(json.dumps(statistics.to_dict()))
        with self._lock:
            previous = self._entries.get(key)
            entry = CacheEntry(
                query_key=key,
                status=CacheStatus.FRESH,
                cache_time=now,
                expiry_time=now + self._ttl,
                hit_count=previous.hit_count if previous is not None else 0,
                approx_size=size,
                statistics=statistics,
            )
            self._store(key, entry)
            return entry

    def fail(self, key: "QueryKey", error: "BaseException | str") -> "CacheEntry":
        """
        moves key to error, keeping its last known-good statistics.
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                entry = CacheEntry(
                    query_key=key, status=CacheStatus.ERROR, last_error=str(error)
                )
            else:
                entry = replace(entry, status=CacheStatus.ERROR, last_error=str(error))
            self._store(key, entry)
            return entry

    def fail_all(self, error: "BaseException | str") -> "int":
        with self._lock:
            for key, entry in list(self._entries.items()):
                self._entries[key] = replace(
                    entry, status=CacheStatus.ERROR, last_error=str(error)
                )
            return len(self._entries)

    def discard(self, key: "QueryKey") -> "None":
        with self._lock:
            self._entries.pop(key, None)

    def keys(self) -> "list[QueryKey]":
        with self._lock:
            return list(self._entries)

    def clear(self) -> "None":
        with self._lock:
            self._entries.clear()

    def __len__(self) -> "int":
        with self._lock:
            return len(self._entries)

    def _store(self, key: "QueryKey", entry: "CacheEntry") -> "None":
        # caller holds the lock
        self._entries[key] = entry
        self._entries.move_to_end(key)
        while len(self._entries) > self._max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug("cache_entry_evicted", query=evicted.cache_key)
