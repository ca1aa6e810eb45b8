import sqlite3
from pathlib import Path

import pytest

from tokenledger.aggregation import Bucket, to_cost_units
from tokenledger.checkpoints import STATUS_COMPLETED, STATUS_ERROR, FileCheckpoint
from tokenledger.errors import StorageError
from tokenledger.models import DateRange, SessionSortOrder
from tokenledger.storage import UsageStore, get_connection


def _bucket(
    date_string: "str" = "2025-06-01",
    model: "str" = "claude-3-haiku",
    project_path: "str" = "/app",
    sessions: "set[str] | None" = None,
    cost: "float" = 0.5,
) -> "Bucket":
    return Bucket(
        date_string=date_string,
        model=model,
        project_path=project_path,
        project_name=project_path.strip("/") or "Unknown Project",
        request_count=2,
        input_tokens=100,
        output_tokens=200,
        cache_write_tokens=10,
        cache_read_tokens=20,
        cost_units=to_cost_units(cost),
        session_ids=sessions if sessions is not None else {"s1"},
    )


@pytest.fixture()
def store(tmp_path: "Path") -> "UsageStore":
    store = UsageStore(tmp_path / "nested" / "usage.db")
    store.initialize_schema()
    return store


class TestSchema:
    def test_tables_created(self, store: "UsageStore") -> "None":
        conn = get_connection(store.db_path)
        try:
            names = {
                row[0]
                for row in conn.execute(
                    "SELECT name FROM sqlite_master WHERE type='table'"
                )
            }
        finally:
            conn.close()
        assert {
            "usage_buckets",
            "bucket_sessions",
            "seen_keys",
            "file_checkpoints",
        } <= names

    def test_initialize_is_idempotent(self, store: "UsageStore") -> "None":
        store.initialize_schema()

    def test_unwritable_location_raises(self, tmp_path: "Path") -> "None":
        blocker = tmp_path / "file"
        blocker.write_text("not a directory")
        with pytest.raises(StorageError):
            UsageStore(blocker / "usage.db").initialize_schema()


class TestCommitBatch:
    def test_buckets_accumulate(self, store: "UsageStore") -> "None":
        store.commit_batch([_bucket(sessions={"s1"})], {}, [])
        store.commit_batch([_bucket(sessions={"s2"}, cost=0.25)], {}, [])

        [bucket] = store.load_buckets()
        assert bucket.request_count == 4
        assert bucket.input_tokens == 200
        assert bucket.cost == 0.75
        assert bucket.cost_units == 750_000_000
        assert bucket.session_ids == {"s1", "s2"}

    def test_keys_and_checkpoints_persisted(self, store: "UsageStore") -> "None":
        checkpoint = FileCheckpoint("/logs/a.jsonl", 50, 1.0, 50, 2, STATUS_COMPLETED)
        store.commit_batch(
            [_bucket()],
            {"req:1": "/logs/a.jsonl", "req:2": "/logs/a.jsonl"},
            [checkpoint],
        )
        assert sorted(store.load_seen_keys()) == ["req:1", "req:2"]
        assert store.load_checkpoints() == [checkpoint]

    def test_forgotten_files_removed(self, store: "UsageStore") -> "None":
        checkpoint = FileCheckpoint("/logs/a.jsonl", 50, 1.0, 50, 2, STATUS_COMPLETED)
        store.commit_batch([], {}, [checkpoint])
        store.commit_batch([], {}, [], forgotten_files=["/logs/a.jsonl"])
        assert store.load_checkpoints() == []

    def test_failed_batch_writes_nothing(self, store: "UsageStore") -> "None":
        conn = sqlite3.connect(store.db_path)
        conn.execute("DROP TABLE seen_keys")
        conn.commit()
        conn.close()

        with pytest.raises(StorageError):
            store.commit_batch([_bucket()], {"req:1": "/logs/a.jsonl"}, [])
        assert store.load_buckets() == []

    def test_reset(self, store: "UsageStore") -> "None":
        store.commit_batch([_bucket()], {"req:1": "/a"}, [])
        store.reset()
        assert store.load_buckets() == []
        assert store.load_seen_keys() == []


class TestQuery:
    def test_filters(self, store: "UsageStore") -> "None":
        store.commit_batch(
            [
                _bucket(date_string="2025-06-01"),
                _bucket(date_string="2025-06-02", project_path="/other"),
                _bucket(date_string="2025-06-03"),
            ],
            {},
            [],
        )
        in_range = store.load_buckets(DateRange("2025-06-02", "2025-06-03"))
        assert [b.date_string for b in in_range] == ["2025-06-02", "2025-06-03"]

        by_project = store.load_buckets(project_path="/other")
        assert [b.date_string for b in by_project] == ["2025-06-02"]

    def test_query_statistics(self, store: "UsageStore") -> "None":
        store.commit_batch(
            [
                _bucket(sessions={"s1", "s2"}),
                _bucket(model="claude-4-opus", sessions={"s2"}, cost=2.0),
            ],
            {},
            [],
        )
        stats = store.query_statistics()
        assert stats.total_requests == 4
        assert stats.total_cost == 2.5
        assert stats.total_sessions == 2
        assert [g.key for g in stats.by_model] == ["claude-4-opus", "claude-3-haiku"]
        assert stats.by_project[0].label == "app"

    def test_empty_store(self, store: "UsageStore") -> "None":
        assert store.query_statistics().is_empty

    def test_cost_sum_is_exact_across_batches(self, store: "UsageStore") -> "None":
        for cost in (0.1, 0.2, 0.3):
            store.commit_batch([_bucket(cost=cost)], {}, [])
        assert store.query_statistics().total_cost == 0.6


class TestSessionStatistics:
    def test_breakdown_per_project(self, store: "UsageStore") -> "None":
        store.commit_batch(
            [
                _bucket(sessions={"s1", "s2"}, cost=1.0),
                _bucket(date_string="2025-06-03", sessions={"s3"}, cost=0.5),
                _bucket(project_path="/other", sessions={"s4"}, cost=2.0),
            ],
            {},
            [],
        )

        rows = store.session_statistics()

        assert [r.project_path for r in rows] == ["/other", "/app"]
        app = rows[1]
        assert app.session_count == 3
        assert app.request_count == 4
        assert app.total_cost == 1.5
        assert app.last_used == "2025-06-03"

    def test_filters_and_order(self, store: "UsageStore") -> "None":
        store.commit_batch(
            [
                _bucket(date_string="2025-06-01", project_path="/old"),
                _bucket(date_string="2025-06-05", project_path="/new"),
            ],
            {},
            [],
        )
        rows = store.session_statistics(sort_order=SessionSortOrder.DATE_DESCENDING)
        assert [r.project_path for r in rows] == ["/new", "/old"]

        june_first = store.session_statistics(DateRange("2025-06-01", "2025-06-01"))
        assert [r.project_path for r in june_first] == ["/old"]
        assert store.session_statistics(project_path="/new")[0].last_used == (
            "2025-06-05"
        )


class TestStats:
    def test_counts(self, store: "UsageStore") -> "None":
        store.commit_batch(
            [_bucket(sessions={"s1", "s2"}), _bucket(model="claude-4-opus")],
            {"req:1": "/logs/a.jsonl", "req:2": "/logs/b.jsonl"},
            [
                FileCheckpoint("/logs/a.jsonl", 50, 1.0, 50, 1, STATUS_COMPLETED),
                FileCheckpoint("/logs/b.jsonl", 50, 1.0, 0, 0, STATUS_ERROR, "eio"),
            ],
        )

        stats = store.stats()

        assert stats.buckets == 2
        assert stats.sessions == 2
        assert stats.seen_keys == 2
        assert stats.checkpoints == 2
        assert stats.failed_checkpoints == 1
        assert stats.total_records == 6

    def test_empty_store(self, store: "UsageStore") -> "None":
        assert store.stats().to_dict() == {
            "buckets": 0,
            "sessions": 0,
            "seen_keys": 0,
            "checkpoints": 0,
            "failed_checkpoints": 0,
            "total_records": 0,
        }


class TestValidateIntegrity:
    def test_consistent_store(self, store: "UsageStore") -> "None":
        checkpoint = FileCheckpoint("/logs/a.jsonl", 50, 1.0, 50, 2, STATUS_COMPLETED)
        store.commit_batch([_bucket(sessions={"s1", "s2"})], {}, [checkpoint])

        report = store.validate_integrity()

        assert report.is_valid
        assert report.checked_items == 4

    def test_inconsistencies_are_reported(self, store: "UsageStore") -> "None":
        store.commit_batch(
            [_bucket(), _bucket(date_string="2025-06-02")],
            {},
            [FileCheckpoint("/logs/a.jsonl", 10, 1.0, 50, 2, STATUS_COMPLETED)],
        )
        conn = get_connection(store.db_path)
        try:
            conn.execute("DELETE FROM usage_buckets WHERE date = '2025-06-01'")
            conn.execute("DELETE FROM bucket_sessions WHERE date = '2025-06-02'")
            conn.execute("UPDATE usage_buckets SET cost_units = -1")
        finally:
            conn.close()

        report = store.validate_integrity()

        assert not report.is_valid
        assert report.issues == (
            "1 session rows without a bucket",
            "1 buckets without a session",
            "1 buckets with negative sums",
            "1 checkpoints past the end of their file",
        )
