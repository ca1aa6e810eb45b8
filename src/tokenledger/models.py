import re
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum

_DAYS_PATTERN = re.compile(r"^(\d+)d$")
_DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")


@dataclass(frozen=True, slots=True)
class UsageEvent:
    """
    UsageEvent is one priced, attributable unit of CLI usage,
    produced from a single log line by the normalizer.
    """

    timestamp: "datetime"
    # local calendar day used for date bucketing
    date_string: "str"
    model: "str"
    input_tokens: "int"
    output_tokens: "int"
    cache_write_tokens: "int"
    cache_read_tokens: "int"
    cost: "float"
    session_id: "str"
    project_path: "str"
    project_name: "str"
    request_id: "str | None"
    message_id: "str | None"
    message_type: "str"
    source_file: "str"
    # byte offset of the line inside source_file
    source_offset: "int | None" = None
    # True when no timestamp was present and ingestion time was used
    timestamp_inferred: "bool" = False
    # rate card key used for pricing, None for pass-through or unresolved
    pricing_key: "str | None" = None

    @property
    def total_tokens(self) -> "int":
        return (
            self.input_tokens
            + self.output_tokens
            + self.cache_write_tokens
            + self.cache_read_tokens
        )


@dataclass(frozen=True, slots=True)
class UsageGroup:
    """
    UsageGroup is one entry of a breakdown (by model, date or project).
    """

    key: "str"
    # human readable label, the project name for project groups
    label: "str"
    total_cost: "float"
    input_tokens: "int"
    output_tokens: "int"
    cache_write_tokens: "int"
    cache_read_tokens: "int"
    request_count: "int"
    session_ids: "frozenset[str]" = frozenset()
    models_used: "frozenset[str]" = frozenset()

    @property
    def total_tokens(self) -> "int":
        return (
            self.input_tokens
            + self.output_tokens
            + self.cache_write_tokens
            + self.cache_read_tokens
        )

    @property
    def session_count(self) -> "int":
        return len(self.session_ids)

    def to_dict(self) -> "dict[str, object]":
        return {
            "key": self.key,
            "label": self.label,
            "total_cost": self.total_cost,
            "total_tokens": self.total_tokens,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "cache_write_tokens": self.cache_write_tokens,
            "cache_read_tokens": self.cache_read_tokens,
            "session_count": self.session_count,
            "request_count": self.request_count,
            "models_used": sorted(self.models_used),
        }


@dataclass(frozen=True, slots=True)
class AggregateStatistics:
    """
    AggregateStatistics is the result of folding usage events for
    one query filter. Every breakdown sums to the top-level totals.
    """

    total_cost: "float"
    total_input_tokens: "int"
    total_output_tokens: "int"
    total_cache_write_tokens: "int"
    total_cache_read_tokens: "int"
    total_requests: "int"
    session_ids: "frozenset[str]" = frozenset()
    by_model: "tuple[UsageGroup, ...]" = ()
    by_date: "tuple[UsageGroup, ...]" = ()
    by_project: "tuple[UsageGroup, ...]" = ()

    @classmethod
    def empty(cls) -> "AggregateStatistics":
        return cls(
            total_cost=0.0,
            total_input_tokens=0,
            total_output_tokens=0,
            total_cache_write_tokens=0,
            total_cache_read_tokens=0,
            total_requests=0,
        )

    @property
    def total_tokens(self) -> "int":
        return (
            self.total_input_tokens
            + self.total_output_tokens
            + self.total_cache_write_tokens
            + self.total_cache_read_tokens
        )

    @property
    def total_sessions(self) -> "int":
        return len(self.session_ids)

    @property
    def is_empty(self) -> "bool":
        return self.total_requests == 0

    @property
    def average_cost_per_request(self) -> "float":
        if self.total_requests == 0:
            return 0.0
        return self.total_cost / self.total_requests

    @property
    def average_cost_per_session(self) -> "float":
        if not self.session_ids:
            return 0.0
        return self.total_cost / len(self.session_ids)

    def to_dict(self) -> "dict[str, object]":
        return {
            "total_cost": self.total_cost,
            "total_tokens": self.total_tokens,
            "total_input_tokens": self.total_input_tokens,
            "total_output_tokens": self.total_output_tokens,
            "total_cache_write_tokens": self.total_cache_write_tokens,
            "total_cache_read_tokens": self.total_cache_read_tokens,
            "total_sessions": self.total_sessions,
            "total_requests": self.total_requests,
            "average_cost_per_request": self.average_cost_per_request,
            "by_model": [g.to_dict() for g in self.by_model],
            "by_date": [g.to_dict() for g in self.by_date],
            "by_project": [g.to_dict() for g in self.by_project],
        }


@dataclass(frozen=True, slots=True)
class DateRange:
    """
    DateRange is an inclusive range of local calendar days in
    YYYY-MM-DD form. Either bound may be open.
    """

    start: "str | None" = None
    end: "str | None" = None

    def __post_init__(self) -> "None":
        for bound in (self.start, self.end):
            if bound is not None and not _DATE_PATTERN.match(bound):
                raise ValueError(f"invalid date bound: {bound!r}")
        if self.start and self.end and self.start > self.end:
            raise ValueError(f"start {self.start} is after end {self.end}")

    @classmethod
    def all_time(cls) -> "DateRange":
        return cls()

    @classmethod
    def last_days(cls, days: "int", today: "date | None" = None) -> "DateRange":
        """
        the last `days` calendar days, today included.
        """
        if days < 1:
            raise ValueError("days must be >= 1")
        today = today or date.today()
        start = today - timedelta(days=days - 1)
        return cls(start=start.isoformat(), end=today.isoformat())

    @classmethod
    def parse(cls, text: "str", today: "date | None" = None) -> "DateRange":
        """
        parses 'all', 'today', '<N>d' or 'YYYY-MM-DD..YYYY-MM-DD'
        (either side of '..' may be empty).
        """
        value = text.strip().lower()
        if value in ("", "all"):
            return cls.all_time()
        if value == "today":
            return cls.last_days(1, today)

        match = _DAYS_PATTERN.match(value)
        if match:
            return cls.last_days(int(match.group(1)), today)

        if ".." in value:
            start, end = value.split("..", 1)
            return cls(start=start or None, end=end or None)

        raise ValueError(f"unrecognised date range: {text!r}")

    def contains(self, date_string: "str") -> "bool":
        if self.start is not None and date_string < self.start:
            return False
        if self.end is not None and date_string > self.end:
            return False
        return True

    @property
    def key(self) -> "str":
        return f"{self.start or '*'}..{self.end or '*'}"


@dataclass(frozen=True, slots=True)
class QueryKey:
    """
    QueryKey identifies one cached statistics query.
    """

    date_range: "DateRange" = field(default_factory=DateRange)
    project_path: "str | None" = None

    @property
    def cache_key(self) -> "str":
        return f"{self.date_range.key}|{self.project_path or '*'}"


class SessionSortOrder(str, Enum):
    COST_DESCENDING = "cost_desc"
    COST_ASCENDING = "cost_asc"
    DATE_DESCENDING = "date_desc"
    DATE_ASCENDING = "date_asc"
    NAME_ASCENDING = "name_asc"
    NAME_DESCENDING = "name_desc"


@dataclass(frozen=True, slots=True)
class ProjectSessions:
    """
    ProjectSessions is one row of the session breakdown: the usage of
    a project together with how many sessions it saw and when it was
    last used.
    """

    project_path: "str"
    project_name: "str"
    total_cost: "float"
    total_tokens: "int"
    session_count: "int"
    request_count: "int"
    # latest local day with usage
    last_used: "str"

    @property
    def average_cost_per_session(self) -> "float":
        if self.session_count == 0:
            return 0.0
        return self.total_cost / self.session_count

    def to_dict(self) -> "dict[str, object]":
        return {
            "project_path": self.project_path,
            "project_name": self.project_name,
            "total_cost": self.total_cost,
            "total_tokens": self.total_tokens,
            "session_count": self.session_count,
            "request_count": self.request_count,
            "last_used": self.last_used,
        }


@dataclass(frozen=True, slots=True)
class StoreStats:
    """
    StoreStats counts the rows of every table in the store.
    """

    buckets: "int"
    sessions: "int"
    seen_keys: "int"
    checkpoints: "int"
    failed_checkpoints: "int"

    @property
    def total_records(self) -> "int":
        return self.buckets + self.seen_keys + self.checkpoints

    def to_dict(self) -> "dict[str, int]":
        return {
            "buckets": self.buckets,
            "sessions": self.sessions,
            "seen_keys": self.seen_keys,
            "checkpoints": self.checkpoints,
            "failed_checkpoints": self.failed_checkpoints,
            "total_records": self.total_records,
        }


@dataclass(frozen=True, slots=True)
class IntegrityReport:
    """
    IntegrityReport lists the inconsistencies found in the store.
    """

    checked_items: "int"
    issues: "tuple[str, ...]" = ()

    @property
    def is_valid(self) -> "bool":
        return not self.issues

    def to_dict(self) -> "dict[str, object]":
        return {
            "is_valid": self.is_valid,
            "checked_items": self.checked_items,
            "issues": list(self.issues),
        }
