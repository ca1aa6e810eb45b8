import asyncio
import time
import uuid
from dataclasses import dataclass, replace
from datetime import tzinfo
from enum import Enum
from pathlib import Path
from typing import Callable

import structlog

from tokenledger.aggregation import Bucket, BucketKey, add_event
from tokenledger.checkpoints import CheckpointTracker
from tokenledger.dedup import DeduplicationIndex
from tokenledger.errors import (
    CatastrophicSyncError,
    FileScanError,
    StorageError,
    SyncInProgressError,
)
from tokenledger.metrics import MetricsUpdater
from tokenledger.pricing import DEFAULT_RATE_CARD, RateCard
from tokenledger.scanner import FileScanResult, LogFile, discover_log_files, scan_file
from tokenledger.service import StatisticsService
from tokenledger.storage import UsageStore

logger = structlog.get_logger()


class SyncStatus(str, Enum):
    IDLE = "idle"
    PREPARING = "preparing"
    SCANNING = "scanning"
    PARSING = "parsing"
    VALIDATING = "validating"
    SYNCING = "syncing"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> "bool":
        return self in (SyncStatus.COMPLETED, SyncStatus.FAILED, SyncStatus.CANCELLED)

    @property
    def is_active(self) -> "bool":
        return self is not SyncStatus.IDLE and not self.is_terminal


class SyncMode(str, Enum):
    INCREMENTAL = "incremental"
    FULL = "full"


@dataclass(slots=True)
class SyncRun:
    """
    SyncRun tracks one sync pass. Callers only ever receive copies.
    """

    run_id: "str"
    mode: "SyncMode"
    status: "SyncStatus" = SyncStatus.PREPARING
    # processed_items / total_items, at file granularity
    progress: "float" = 0.0
    processed_items: "int" = 0
    total_items: "int" = 0
    started_at: "float" = 0.0
    finished_at: "float | None" = None
    last_error: "str | None" = None
    retryable: "bool" = False
    paused_from: "SyncStatus | None" = None
    events_ingested: "int" = 0
    duplicates_skipped: "int" = 0
    parse_failures: "int" = 0
    records_filtered: "int" = 0
    files_failed: "int" = 0

    def to_dict(self) -> "dict[str, object]":
        return {
            "run_id": self.run_id,
            "mode": self.mode.value,
            "status": self.status.value,
            "progress": self.progress,
            "processed_items": self.processed_items,
            "total_items": self.total_items,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "last_error": self.last_error,
            "retryable": self.retryable,
            "events_ingested": self.events_ingested,
            "duplicates_skipped": self.duplicates_skipped,
            "parse_failures": self.parse_failures,
            "records_filtered": self.records_filtered,
            "files_failed": self.files_failed,
        }


@dataclass(slots=True)
class SyncStatistics:
    """
    SyncStatistics sums up every run an orchestrator has finished.
    """

    total_syncs: "int" = 0
    successful_syncs: "int" = 0
    failed_syncs: "int" = 0
    cancelled_syncs: "int" = 0
    total_duration: "float" = 0.0
    last_duration: "float" = 0.0
    events_ingested: "int" = 0

    @property
    def average_duration(self) -> "float":
        if self.total_syncs == 0:
            return 0.0
        return self.total_duration / self.total_syncs

    def record(self, run: "SyncRun", duration: "float") -> "None":
        self.total_syncs += 1
        if run.status is SyncStatus.COMPLETED:
            self.successful_syncs += 1
        elif run.status is SyncStatus.FAILED:
            self.failed_syncs += 1
        else:
            self.cancelled_syncs += 1
        self.total_duration += duration
        self.last_duration = duration
        self.events_ingested += run.events_ingested

    def to_dict(self) -> "dict[str, object]":
        return {
            "total_syncs": self.total_syncs,
            "successful_syncs": self.successful_syncs,
            "failed_syncs": self.failed_syncs,
            "cancelled_syncs": self.cancelled_syncs,
            "average_duration": self.average_duration,
            "last_duration": self.last_duration,
            "events_ingested": self.events_ingested,
        }


class _SyncCancelled(Exception):
    pass


class SyncOrchestrator:
    """
    SyncOrchestrator is responsible for ingesting the log directory
    into the store. It owns the dedup index and the file checkpoints,
    runs at most one sync at a time and processes files in batches,
    committing every batch in a single transaction.

    Pause and cancel are cooperative: they are observed between files
    and between batches, never while a batch is being committed. The
    run() loop repeats incremental syncs on a fixed interval, retrying
    failed runs with exponential backoff.
    """

    def __init__(
        self,
        log_dir: "str | Path",
        store: "UsageStore",
        metrics: "MetricsUpdater",
        *,
        service: "StatisticsService | None" = None,
        batch_size: "int" = 10,
        rate_card: "RateCard" = DEFAULT_RATE_CARD,
        tz: "tzinfo | None" = None,
        max_retries: "int" = 3,
        retry_delay: "float" = 5.0,
        sync_interval: "float" = 900,
    ) -> "None":
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")

        self._log_dir = Path(log_dir)
        self._store = store
        self._metrics = metrics
        self._service = service
        self._batch_size = batch_size
        self._rate_card = rate_card
        self._tz = tz
        self._max_retries = max_retries
        self._retry_delay = retry_delay
        self._interval = sync_interval

        self._index = DeduplicationIndex()
        self._checkpoints = CheckpointTracker()
        # True once the in-memory index mirrors the store
        self._loaded = False

        self._run: "SyncRun | None" = None
        self._last_run: "SyncRun | None" = None
        self._statistics = SyncStatistics()
        self._listeners: "list[Callable[[SyncRun], None]]" = []
        self._cancel_requested = False
        # cleared while paused
        self._resume_event: "asyncio.Event" = asyncio.Event()
        self._resume_event.set()
        self._stop_event: "asyncio.Event" = asyncio.Event()

    @property
    def status(self) -> "SyncStatus":
        if self._run is None:
            return SyncStatus.IDLE
        return self._run.status

    @property
    def current_run(self) -> "SyncRun | None":
        return replace(self._run) if self._run is not None else None

    @property
    def last_run(self) -> "SyncRun | None":
        return replace(self._last_run) if self._last_run is not None else None

    @property
    def sync_statistics(self) -> "SyncStatistics":
        return replace(self._statistics)

    @property
    def dedup_index(self) -> "DeduplicationIndex":
        return self._index

    def add_listener(self, callback: "Callable[[SyncRun], None]") -> "None":
        """
        registers a callback receiving a SyncRun copy on every
        status or progress change.
        """
        self._listeners.append(callback)

    def _notify(self, run: "SyncRun") -> "None":
        snapshot = replace(run)
        for callback in list(self._listeners):
            try:
                callback(snapshot)
            except Exception:
                logger.exception("sync_listener_error", run_id=run.run_id)

    def _set_status(self, run: "SyncRun", status: "SyncStatus") -> "None":
        run.status = status
        self._notify(run)

    def pause(self) -> "SyncRun | None":
        """
        asks the active run to pause at its next checkpoint.
        """
        if self._run is None:
            return None
        self._resume_event.clear()
        logger.info("sync_pause_requested", run_id=self._run.run_id)
        return self.current_run

    def resume(self) -> "SyncRun | None":
        if self._run is None:
            return None
        self._resume_event.set()
        logger.info("sync_resume_requested", run_id=self._run.run_id)
        return self.current_run

    def cancel(self) -> "SyncRun | None":
        """
        asks the active run to stop at its next checkpoint. Batches
        already committed stay committed.
        """
        if self._run is None:
            return None
        self._cancel_requested = True
        # a paused run must wake up to observe the cancel
        self._resume_event.set()
        logger.info("sync_cancel_requested", run_id=self._run.run_id)
        return self.current_run

    def stop(self) -> "None":
        """
        signals the auto-sync loop to stop after the current cycle.
        """
        self._stop_event.set()

    async def perform_incremental_sync(self) -> "SyncRun":
        """
        ingests only files and file tails not covered by a checkpoint.
        """
        return await self._sync(SyncMode.INCREMENTAL)

    async def perform_full_sync(self) -> "SyncRun":
        """
        clears the store, the dedup index and every checkpoint, then
        rescans the whole log directory.
        """
        return await self._sync(SyncMode.FULL)

    async def sync_with_retry(
        self, mode: "SyncMode" = SyncMode.INCREMENTAL
    ) -> "SyncRun | None":
        """
        runs one sync, retrying retryable failures up to max_retries
        times with exponential backoff. Returns None when another run
        was already active.
        """
        attempt = 0
        while True:
            try:
                run = await self._sync(mode)
            except SyncInProgressError:
                logger.info("sync_skipped", reason="in_progress")
                return None

            if (
                run.status is not SyncStatus.FAILED
                or not run.retryable
                or attempt >= self._max_retries
            ):
                return run

            delay = self._retry_delay * 2**attempt
            attempt += 1
            logger.warning(
                "sync_retry_scheduled",
                run_id=run.run_id,
                attempt=attempt,
                delay_seconds=delay,
            )
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
                return run
            except TimeoutError:
                pass

    async def run(self) -> "None":
        """
        runs the auto-sync loop. Runs until stop() is called.
        """
        while not self._stop_event.is_set():
            logger.info("sync_cycle_start", interval=self._interval)
            await self.sync_with_retry(SyncMode.INCREMENTAL)
            logger.info("sync_cycle_end")

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
            except TimeoutError:
                pass

    async def _sync(self, mode: "SyncMode") -> "SyncRun":
        if self._run is not None:
            raise SyncInProgressError(
                f"sync {self._run.run_id} is {self._run.status.value}"
            )

        run = SyncRun(run_id=uuid.uuid4().hex, mode=mode, started_at=time.time())
        self._run = run
        self._cancel_requested = False
        self._resume_event.set()
        log = logger.bind(run_id=run.run_id, mode=mode.value)
        log.info("sync_started", log_dir=str(self._log_dir))
        self._notify(run)

        started = time.monotonic()
        affected_dates: "set[str]" = set()
        try:
            await self._execute(run, affected_dates)
        except _SyncCancelled:
            self._index.rollback()
            self._checkpoints.rollback()
            run.status = SyncStatus.CANCELLED
            log.info("sync_cancelled", processed=run.processed_items)
        except CatastrophicSyncError as exc:
            self._index.rollback()
            self._checkpoints.rollback()
            run.status = SyncStatus.FAILED
            run.last_error = str(exc)
            run.retryable = exc.retryable
            self._metrics.inc_sync_error("catastrophic")
            log.error("sync_failed", error=str(exc), retryable=exc.retryable)
            if self._service is not None:
                self._service.mark_ingestion_failed(exc)
        except Exception as exc:
            self._index.rollback()
            self._checkpoints.rollback()
            run.status = SyncStatus.FAILED
            run.last_error = str(exc) or type(exc).__name__
            run.retryable = False
            self._metrics.inc_sync_error("unexpected")
            log.exception("sync_failed", error=run.last_error)
            if self._service is not None:
                self._service.mark_ingestion_failed(exc)
        else:
            run.status = SyncStatus.COMPLETED
            run.progress = 1.0
            self._metrics.set_last_sync_success(mode.value, time.time())
            log.info(
                "sync_completed",
                events=run.events_ingested,
                duplicates=run.duplicates_skipped,
                parse_failures=run.parse_failures,
                filtered=run.records_filtered,
                files_failed=run.files_failed,
            )
        finally:
            run.paused_from = None
            run.finished_at = time.time()
            duration = time.monotonic() - started
            self._metrics.observe_sync_duration(mode.value, duration)
            self._statistics.record(run, duration)
            self._last_run = run
            self._run = None

        if run.status is SyncStatus.COMPLETED and self._service is not None:
            # with no new dates only entries left in error are refreshed
            dates = None if mode is SyncMode.FULL else affected_dates
            refreshed = await asyncio.to_thread(self._service.refresh_affected, dates)
            log.debug("cache_entries_refreshed", count=len(refreshed))

        self._notify(run)
        return replace(run)

    async def _checkpoint(self, run: "SyncRun") -> "None":
        """
        the only place a run observes pause and cancel requests.
        """
        if self._cancel_requested:
            raise _SyncCancelled()
        if self._resume_event.is_set():
            return

        run.paused_from = run.status
        self._set_status(run, SyncStatus.PAUSED)
        logger.info("sync_paused", run_id=run.run_id, paused_from=run.paused_from.value)
        await self._resume_event.wait()
        if self._cancel_requested:
            raise _SyncCancelled()

        resumed = run.paused_from
        run.paused_from = None
        self._set_status(run, resumed)
        logger.info("sync_resumed", run_id=run.run_id, status=resumed.value)

    async def _prepare(self, run: "SyncRun") -> "None":
        try:
            await asyncio.to_thread(self._store.initialize_schema)
            if run.mode is SyncMode.FULL:
                await asyncio.to_thread(self._store.reset)
                self._index.clear()
                self._checkpoints.clear()
                self._loaded = True
            elif not self._loaded:
                keys = await asyncio.to_thread(self._store.load_seen_keys)
                checkpoints = await asyncio.to_thread(self._store.load_checkpoints)
                self._index.load(keys)
                self._checkpoints.load(checkpoints)
                self._loaded = True
                logger.debug(
                    "sync_state_loaded",
                    run_id=run.run_id,
                    keys=len(keys),
                    checkpoints=len(checkpoints),
                )
        except StorageError:
            self._loaded = False
            raise

    async def _execute(self, run: "SyncRun", affected_dates: "set[str]") -> "None":
        await self._prepare(run)

        self._set_status(run, SyncStatus.SCANNING)
        files = await asyncio.to_thread(discover_log_files, self._log_dir)
        forgotten = self._checkpoints.forget_missing(f.path for f in files)

        work: "list[tuple[LogFile, int]]" = []
        for log_file in files:
            offset = self._checkpoints.start_offset(
                log_file.path, log_file.size, log_file.modified
            )
            if offset is not None:
                work.append((log_file, offset))

        run.total_items = len(work)
        logger.info(
            "sync_plan",
            run_id=run.run_id,
            files=len(files),
            to_scan=len(work),
            forgotten=len(forgotten),
        )
        await self._checkpoint(run)

        if not work and forgotten:
            await self._commit(run, {}, forgotten)

        for start in range(0, len(work), self._batch_size):
            batch = work[start : start + self._batch_size]
            results = await self._parse_batch(run, batch)
            buckets = self._validate_batch(run, results)
            await self._commit(run, buckets, forgotten)
            forgotten = []

            for result in results:
                for event in result.events:
                    self._metrics.update_event(event)
                    affected_dates.add(event.date_string)
            run.processed_items += len(batch)
            run.progress = run.processed_items / run.total_items
            self._notify(run)
            await self._checkpoint(run)

        if work and run.files_failed == len(work):
            raise CatastrophicSyncError(
                f"all {len(work)} log files failed to scan, "
                f"last error: {run.last_error}"
            )

    async def _parse_batch(
        self, run: "SyncRun", batch: "list[tuple[LogFile, int]]"
    ) -> "list[FileScanResult]":
        self._set_status(run, SyncStatus.PARSING)
        results: "list[FileScanResult]" = []
        for log_file, offset in batch:
            await self._checkpoint(run)
            try:
                result = await asyncio.to_thread(
                    scan_file,
                    log_file,
                    offset,
                    rate_card=self._rate_card,
                    tz=self._tz,
                )
            except FileScanError as exc:
                run.files_failed += 1
                run.last_error = str(exc)
                self._metrics.inc_sync_error("file")
                self._checkpoints.mark_failed(
                    log_file.path, log_file.size, log_file.modified, exc.reason
                )
                logger.warning(
                    "file_scan_failed",
                    run_id=run.run_id,
                    path=exc.path,
                    reason=exc.reason,
                )
                continue

            run.parse_failures += result.parse_failures
            run.records_filtered += result.records_filtered
            self._metrics.inc_skipped("parse_error", result.parse_failures)
            for reason, count in result.filtered.items():
                self._metrics.inc_skipped(reason, count)
            results.append(result)
        return results

    def _validate_batch(
        self, run: "SyncRun", results: "list[FileScanResult]"
    ) -> "dict[BucketKey, Bucket]":
        """
        drops events already seen and folds the rest into bucket
        deltas. Keys stay pending until the batch is committed.
        """
        self._set_status(run, SyncStatus.VALIDATING)
        buckets: "dict[BucketKey, Bucket]" = {}
        for result in results:
            accepted = []
            for event in result.events:
                key = self._index.make_key(event)
                if self._index.seen(key):
                    run.duplicates_skipped += 1
                    self._metrics.inc_skipped("duplicate")
                    continue
                add_event(buckets, event)
                self._index.mark_seen(key, event.source_file)
                accepted.append(event)
            # only events that count stay on the result
            result.events = accepted

            log_file = result.log_file
            self._checkpoints.advance(
                log_file.path,
                max(log_file.size, result.end_offset),
                log_file.modified,
                result.end_offset,
                len(accepted),
            )
        return buckets

    async def _commit(
        self,
        run: "SyncRun",
        buckets: "dict[BucketKey, Bucket]",
        forgotten: "list[str]",
    ) -> "None":
        self._set_status(run, SyncStatus.SYNCING)
        await self._checkpoint(run)
        seen_keys = self._index.pending()
        try:
            await asyncio.to_thread(
                self._store.commit_batch,
                list(buckets.values()),
                seen_keys,
                self._checkpoints.pending(),
                forgotten,
            )
        except StorageError:
            self._index.rollback()
            self._checkpoints.rollback()
            raise

        self._index.commit()
        self._checkpoints.commit()
        run.events_ingested += sum(b.request_count for b in buckets.values())
        logger.debug(
            "sync_batch_committed",
            run_id=run.run_id,
            buckets=len(buckets),
            keys=len(seen_keys),
        )
