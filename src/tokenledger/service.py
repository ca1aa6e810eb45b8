from typing import Iterable

import structlog

from tokenledger.cache import CacheEntry, CacheStatus, StatisticsCache
from tokenledger.errors import StatisticsUnavailableError, StorageError
from tokenledger.metrics import MetricsUpdater
from tokenledger.models import (
    AggregateStatistics,
    DateRange,
    IntegrityReport,
    ProjectSessions,
    QueryKey,
    SessionSortOrder,
    StoreStats,
)
from tokenledger.storage import UsageStore

logger = structlog.get_logger()


class StatisticsService:
    """
    StatisticsService answers statistics queries from the cache,
    computing from the store on a miss. Every answer carries the
    cache status so callers can decide whether to refresh.

    When a computation fails, the last known-good result is served
    as stale; only a query with no previous result raises.
    """

    def __init__(
        self,
        store: "UsageStore",
        cache: "StatisticsCache",
        metrics: "MetricsUpdater | None" = None,
    ) -> "None":
        self._store = store
        self._cache = cache
        self._metrics = metrics

    @property
    def cache(self) -> "StatisticsCache":
        return self._cache

    def get_statistics(
        self,
        date_range: "DateRange | None" = None,
        project_path: "str | None" = None,
    ) -> "tuple[AggregateStatistics, CacheStatus]":
        key = QueryKey(date_range or DateRange(), project_path)
        result = self._get(key)
        if self._metrics is not None:
            self._metrics.inc_cache_lookup(result[1].value)
        return result

    def _get(self, key: "QueryKey") -> "tuple[AggregateStatistics, CacheStatus]":
        entry = self._cache.lookup(key)

        if entry is None:
            return self._compute(key, prior=None)

        if entry.status.can_show_data and entry.statistics is not None:
            return entry.statistics, entry.status

        if entry.status is CacheStatus.LOADING:
            return entry.statistics or AggregateStatistics.empty(), CacheStatus.LOADING

        if entry.status is CacheStatus.ERROR and entry.statistics is not None:
            logger.info(
                "cache_served_stale",
                query=key.cache_key,
                error=entry.last_error,
            )
            return entry.statistics, CacheStatus.STALE

        # error without data, retry
        return self._compute(key, prior=entry.statistics)

    def refresh(
        self,
        date_range: "DateRange | None" = None,
        project_path: "str | None" = None,
    ) -> "tuple[AggregateStatistics, CacheStatus]":
        """
        recomputes the query regardless of its current status.
        """
        key = QueryKey(date_range or DateRange(), project_path)
        entry = self._cache.peek(key)
        return self._compute(key, prior=entry.statistics if entry else None)

    def _compute(
        self, key: "QueryKey", prior: "AggregateStatistics | None"
    ) -> "tuple[AggregateStatistics, CacheStatus]":
        self._cache.begin_loading(key)
        try:
            statistics = self._store.query_statistics(key.date_range, key.project_path)
        except StorageError as exc:
            self._cache.fail(key, exc)
            if prior is not None:
                logger.warning(
                    "cache_served_stale",
                    query=key.cache_key,
                    error=str(exc),
                )
                return prior, CacheStatus.STALE
            logger.error("statistics_unavailable", query=key.cache_key, error=str(exc))
            raise StatisticsUnavailableError(
                f"no statistics for {key.cache_key}: {exc}"
            ) from exc

        if statistics.is_empty and prior is None:
            # no data yet is not cached
            self._cache.discard(key)
            return statistics, CacheStatus.EMPTY

        self._cache.complete(key, statistics)
        logger.debug(
            "cache_refreshed",
            query=key.cache_key,
            requests=statistics.total_requests,
        )
        return statistics, CacheStatus.FRESH

    def refresh_affected(
        self, dates: "Iterable[str] | None" = None
    ) -> "list[QueryKey]":
        """
        refreshes every cached query whose date range covers one of
        dates, or every cached query when dates is None. Entries left
        in error by a failed sync are refreshed regardless of dates.
        """
        wanted = None if dates is None else set(dates)
        refreshed: "list[QueryKey]" = []
        for key in self._cache.keys():
            entry = self._cache.peek(key)
            failed = entry is not None and entry.status is CacheStatus.ERROR
            if (
                wanted is not None
                and not failed
                and not any(key.date_range.contains(d) for d in wanted)
            ):
                continue
            try:
                self._compute(key, prior=entry.statistics if entry else None)
            except StatisticsUnavailableError:
                # recorded on the entry, the next query retries
                continue
            refreshed.append(key)
        return refreshed

    def get_session_statistics(
        self,
        date_range: "DateRange | None" = None,
        sort_order: "SessionSortOrder" = SessionSortOrder.COST_DESCENDING,
        project_path: "str | None" = None,
    ) -> "list[ProjectSessions]":
        """
        per-project session breakdown, read straight from the store.
        """
        try:
            return self._store.session_statistics(date_range, project_path, sort_order)
        except StorageError as exc:
            logger.error("session_statistics_unavailable", error=str(exc))
            raise StatisticsUnavailableError(f"no session statistics: {exc}") from exc

    def store_stats(self) -> "StoreStats":
        return self._store.stats()

    def validate_integrity(self) -> "IntegrityReport":
        return self._store.validate_integrity()

    def mark_ingestion_failed(self, error: "BaseException | str") -> "None":
        count = self._cache.fail_all(error)
        if count:
            logger.warning("cache_marked_failed", entries=count, error=str(error))

    def cache_entry(
        self,
        date_range: "DateRange | None" = None,
        project_path: "str | None" = None,
    ) -> "CacheEntry | None":
        key = QueryKey(date_range or DateRange(), project_path)
        return self._cache.peek(key)

    def clear_cache(self) -> "None":
        self._cache.clear()
