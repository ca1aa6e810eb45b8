from dataclasses import dataclass, field
from typing import Iterable

from tokenledger.models import (
    AggregateStatistics,
    DateRange,
    ProjectSessions,
    SessionSortOrder,
    UsageEvent,
    UsageGroup,
)

# (date_string, model, project_path)
BucketKey = tuple[str, str, str]

# costs are summed as integer nano-dollars so totals do not depend on
# the order or the batching of additions
COST_SCALE = 1_000_000_000


def to_cost_units(cost: "float") -> "int":
    return round(cost * COST_SCALE)


def from_cost_units(units: "int") -> "float":
    return units / COST_SCALE


@dataclass(slots=True)
class Bucket:
    """
    Bucket holds the running sums for one (date, model, project).
    """

    date_string: "str"
    model: "str"
    project_path: "str"
    project_name: "str"
    request_count: "int" = 0
    input_tokens: "int" = 0
    output_tokens: "int" = 0
    cache_write_tokens: "int" = 0
    cache_read_tokens: "int" = 0
    cost_units: "int" = 0
    session_ids: "set[str]" = field(default_factory=set)

    @property
    def key(self) -> "BucketKey":
        return (self.date_string, self.model, self.project_path)

    @property
    def cost(self) -> "float":
        return from_cost_units(self.cost_units)

    def add(self, event: "UsageEvent") -> "None":
        self.request_count += 1
        self.input_tokens += event.input_tokens
        self.output_tokens += event.output_tokens
        self.cache_write_tokens += event.cache_write_tokens
        self.cache_read_tokens += event.cache_read_tokens
        self.cost_units += to_cost_units(event.cost)
        self.session_ids.add(event.session_id)


def add_event(buckets: "dict[BucketKey, Bucket]", event: "UsageEvent") -> "None":
    """
    folds one event into its bucket, creating the bucket if needed.
    """
    key = (event.date_string, event.model, event.project_path)
    bucket = buckets.get(key)
    if bucket is None:
        bucket = Bucket(
            date_string=event.date_string,
            model=event.model,
            project_path=event.project_path,
            project_name=event.project_name,
        )
        buckets[key] = bucket
    bucket.add(event)


def bucketize(events: "Iterable[UsageEvent]") -> "dict[BucketKey, Bucket]":
    buckets: "dict[BucketKey, Bucket]" = {}
    for event in events:
        add_event(buckets, event)
    return buckets


def filter_events(
    events: "Iterable[UsageEvent]",
    date_range: "DateRange | None" = None,
    project_path: "str | None" = None,
) -> "list[UsageEvent]":
    return [
        e
        for e in events
        if (date_range is None or date_range.contains(e.date_string))
        and (project_path is None or e.project_path == project_path)
    ]


class _GroupAccumulator:
    __slots__ = (
        "key",
        "label",
        "cost_units",
        "input_tokens",
        "output_tokens",
        "cache_write_tokens",
        "cache_read_tokens",
        "request_count",
        "session_ids",
        "models",
    )

    def __init__(self, key: "str", label: "str") -> "None":
        self.key = key
        self.label = label
        self.cost_units = 0
        self.input_tokens = 0
        self.output_tokens = 0
        self.cache_write_tokens = 0
        self.cache_read_tokens = 0
        self.request_count = 0
        self.session_ids: "set[str]" = set()
        self.models: "set[str]" = set()

    def add_bucket(self, bucket: "Bucket") -> "None":
        self.cost_units += bucket.cost_units
        self.input_tokens += bucket.input_tokens
        self.output_tokens += bucket.output_tokens
        self.cache_write_tokens += bucket.cache_write_tokens
        self.cache_read_tokens += bucket.cache_read_tokens
        self.request_count += bucket.request_count
        self.session_ids |= bucket.session_ids
        self.models.add(bucket.model)

    def add_group(self, group: "UsageGroup") -> "None":
        self.cost_units += to_cost_units(group.total_cost)
        self.input_tokens += group.input_tokens
        self.output_tokens += group.output_tokens
        self.cache_write_tokens += group.cache_write_tokens
        self.cache_read_tokens += group.cache_read_tokens
        self.request_count += group.request_count
        self.session_ids |= group.session_ids
        self.models |= group.models_used

    def freeze(self) -> "UsageGroup":
        return UsageGroup(
            key=self.key,
            label=self.label,
            total_cost=from_cost_units(self.cost_units),
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            cache_write_tokens=self.cache_write_tokens,
            cache_read_tokens=self.cache_read_tokens,
            request_count=self.request_count,
            session_ids=frozenset(self.session_ids),
            models_used=frozenset(self.models),
        )


def _by_cost(groups: "Iterable[UsageGroup]") -> "tuple[UsageGroup, ...]":
    return tuple(sorted(groups, key=lambda g: (-g.total_cost, g.key)))


def _by_key(groups: "Iterable[UsageGroup]") -> "tuple[UsageGroup, ...]":
    return tuple(sorted(groups, key=lambda g: g.key))


def summarize(buckets: "Iterable[Bucket]") -> "AggregateStatistics":
    """
    rolls buckets up into totals and the three breakdowns.
    """
    by_model: "dict[str, _GroupAccumulator]" = {}
    by_date: "dict[str, _GroupAccumulator]" = {}
    by_project: "dict[str, _GroupAccumulator]" = {}
    total = _GroupAccumulator("", "")

    for bucket in sorted(buckets, key=lambda b: b.key):
        total.add_bucket(bucket)
        for groups, key, label in (
            (by_model, bucket.model, bucket.model),
            (by_date, bucket.date_string, bucket.date_string),
            (by_project, bucket.project_path, bucket.project_name),
        ):
            if key not in groups:
                groups[key] = _GroupAccumulator(key, label)
            groups[key].add_bucket(bucket)

    return AggregateStatistics(
        total_cost=from_cost_units(total.cost_units),
        total_input_tokens=total.input_tokens,
        total_output_tokens=total.output_tokens,
        total_cache_write_tokens=total.cache_write_tokens,
        total_cache_read_tokens=total.cache_read_tokens,
        total_requests=total.request_count,
        session_ids=frozenset(total.session_ids),
        by_model=_by_cost(g.freeze() for g in by_model.values()),
        by_date=_by_key(g.freeze() for g in by_date.values()),
        by_project=_by_cost(g.freeze() for g in by_project.values()),
    )


def project_sessions(
    buckets: "Iterable[Bucket]",
    sort_order: "SessionSortOrder" = SessionSortOrder.COST_DESCENDING,
) -> "list[ProjectSessions]":
    """
    rolls buckets up per project, counting distinct sessions and the
    last day with usage. Ties are broken by project path.
    """
    projects: "dict[str, _GroupAccumulator]" = {}
    last_used: "dict[str, str]" = {}
    for bucket in buckets:
        path = bucket.project_path
        if path not in projects:
            projects[path] = _GroupAccumulator(path, bucket.project_name)
        projects[path].add_bucket(bucket)
        last_used[path] = max(last_used.get(path, ""), bucket.date_string)

    rows = [
        ProjectSessions(
            project_path=group.key,
            project_name=group.label,
            total_cost=from_cost_units(group.cost_units),
            total_tokens=group.input_tokens
            + group.output_tokens
            + group.cache_write_tokens
            + group.cache_read_tokens,
            session_count=len(group.session_ids),
            request_count=group.request_count,
            last_used=last_used[group.key],
        )
        for group in projects.values()
    ]
    rows.sort(key=lambda r: r.project_path)
    if sort_order is SessionSortOrder.COST_DESCENDING:
        rows.sort(key=lambda r: r.total_cost, reverse=True)
    elif sort_order is SessionSortOrder.COST_ASCENDING:
        rows.sort(key=lambda r: r.total_cost)
    elif sort_order is SessionSortOrder.DATE_DESCENDING:
        rows.sort(key=lambda r: r.last_used, reverse=True)
    elif sort_order is SessionSortOrder.DATE_ASCENDING:
        rows.sort(key=lambda r: r.last_used)
    elif sort_order is SessionSortOrder.NAME_DESCENDING:
        rows.sort(key=lambda r: r.project_name, reverse=True)
    else:
        rows.sort(key=lambda r: r.project_name)
    return rows


def fold(events: "Iterable[UsageEvent]") -> "AggregateStatistics":
    """
    full recompute over a set of events.
    """
    return summarize(bucketize(events).values())


def combine(
    a: "AggregateStatistics", b: "AggregateStatistics"
) -> "AggregateStatistics":
    """
    adds two statistics covering disjoint event sets.
    """

    def _merge_groups(
        left: "tuple[UsageGroup, ...]", right: "tuple[UsageGroup, ...]"
    ) -> "list[UsageGroup]":
        merged: "dict[str, _GroupAccumulator]" = {}
        for group in (*left, *right):
            if group.key not in merged:
                merged[group.key] = _GroupAccumulator(group.key, group.label)
            merged[group.key].add_group(group)
        return [g.freeze() for g in merged.values()]

    return AggregateStatistics(
        total_cost=from_cost_units(
            to_cost_units(a.total_cost) + to_cost_units(b.total_cost)
        ),
        total_input_tokens=a.total_input_tokens + b.total_input_tokens,
        total_output_tokens=a.total_output_tokens + b.total_output_tokens,
        total_cache_write_tokens=a.total_cache_write_tokens
        + b.total_cache_write_tokens,
        total_cache_read_tokens=a.total_cache_read_tokens + b.total_cache_read_tokens,
        total_requests=a.total_requests + b.total_requests,
        session_ids=a.session_ids | b.session_ids,
        by_model=_by_cost(_merge_groups(a.by_model, b.by_model)),
        by_date=_by_key(_merge_groups(a.by_date, b.by_date)),
        by_project=_by_cost(_merge_groups(a.by_project, b.by_project)),
    )


def merge(
    existing: "AggregateStatistics", events: "Iterable[UsageEvent]"
) -> "AggregateStatistics":
    """
    incremental update: existing statistics plus events not yet folded.
    """
    return combine(existing, fold(events))
