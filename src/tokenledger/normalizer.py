import math
import re
from datetime import date, datetime, timezone, tzinfo
from typing import Callable

import structlog

from tokenledger.decoder import RawRecord, RawUsage
from tokenledger.models import UsageEvent
from tokenledger.pricing import DEFAULT_RATE_CARD, RateCard

logger = structlog.get_logger()

UNKNOWN_SESSION = "unknown"
UNKNOWN_PROJECT = "Unknown Project"
# model values that never denote a billable model
INVALID_MODELS = frozenset({"", "unknown", "<synthetic>"})

REASON_NO_SIGNAL = "no_signal"
REASON_INVALID_MODEL = "invalid_model"

_DATE_PREFIX = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_EPOCH = re.compile(r"^\d{9,13}(\.\d+)?$")
# tried in order after datetime.fromisoformat
_FALLBACK_FORMATS = (
    "%Y-%m-%dT%H:%M:%S.%f%z",
    "%Y-%m-%dT%H:%M:%S%z",
    "%Y-%m-%d %H:%M:%S.%f%z",
    "%Y-%m-%d %H:%M:%S%z",
    "%Y/%m/%d %H:%M:%S",
    "%a, %d %b %Y %H:%M:%S %z",
)


def resolve_usage(raw: "RawRecord") -> "RawUsage | None":
    """
    prefers the top-level usage block, then message.usage, then
    token fields written flat on the record.
    """
    if raw.usage is not None:
        return raw.usage
    if raw.message is not None and raw.message.usage is not None:
        return raw.message.usage
    return raw.flat_usage


def resolve_model(raw: "RawRecord") -> "str":
    if raw.model:
        return raw.model
    if raw.message is not None and raw.message.model:
        return raw.message.model
    return ""


def has_valid_session(raw: "RawRecord") -> "bool":
    return bool(raw.session_id) and raw.session_id != UNKNOWN_SESSION


def rejection_reason(raw: "RawRecord") -> "str | None":
    """
    returns why a record would be dropped, or None if it becomes an
    event. The two filters are independent and both applied.
    """
    usage = resolve_usage(raw)
    total_tokens = usage.total_tokens if usage is not None else 0
    total_cost = raw.raw_cost or 0.0

    if not has_valid_session(raw) and total_tokens == 0 and total_cost == 0:
        return REASON_NO_SIGNAL
    if resolve_model(raw) in INVALID_MODELS:
        return REASON_INVALID_MODEL
    return None


def normalize(
    raw: "RawRecord",
    project_path: "str",
    source_file: "str",
    *,
    rate_card: "RateCard" = DEFAULT_RATE_CARD,
    tz: "tzinfo | None" = None,
    source_offset: "int | None" = None,
    now: "Callable[[], datetime] | None" = None,
) -> "UsageEvent | None":
    """
    converts a decoded record into a UsageEvent, or returns None when
    the record carries no signal or has an unusable model.

    tz selects the timezone used for date bucketing (local time when
    None). now stands in for timestamps that are missing or
    unparseable.
    """
    reason = rejection_reason(raw)
    if reason is not None:
        logger.debug(
            "record_filtered",
            reason=reason,
            model=resolve_model(raw),
            session_id=raw.session_id,
            source_file=source_file,
            offset=source_offset,
        )
        return None

    clock = now or (lambda: datetime.now(timezone.utc))
    usage = resolve_usage(raw) or RawUsage()
    model = resolve_model(raw)
    input_tokens = usage.input_tokens or 0
    output_tokens = usage.output_tokens or 0
    cache_write_tokens = usage.effective_cache_write_tokens
    cache_read_tokens = usage.effective_cache_read_tokens

    request_id = raw.request_id or raw.request_id_underscore or raw.message_id
    message_id = raw.message_id
    if not message_id and raw.message is not None:
        message_id = raw.message.id

    timestamp_text = raw.timestamp or raw.date
    parsed = parse_timestamp(timestamp_text) if timestamp_text else None
    timestamp_inferred = parsed is None
    if parsed is None:
        parsed = clock()
        if timestamp_text is None:
            logger.info(
                "timestamp_inferred",
                source_file=source_file,
                offset=source_offset,
                session_id=raw.session_id,
            )
        else:
            logger.debug(
                "timestamp_unparseable",
                value=timestamp_text,
                source_file=source_file,
                offset=source_offset,
            )

    if timestamp_text:
        day = date_string(
            timestamp_text, tz=tz, today=lambda: _to_local(clock(), tz).date()
        )
    else:
        day = _to_local(parsed, tz).date().isoformat()

    cost, pricing_key = _resolve_cost(
        raw,
        model,
        rate_card,
        input_tokens,
        output_tokens,
        cache_write_tokens,
        cache_read_tokens,
    )

    return UsageEvent(
        timestamp=parsed,
        date_string=day,
        model=model,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        cache_write_tokens=cache_write_tokens,
        cache_read_tokens=cache_read_tokens,
        cost=cost,
        session_id=raw.session_id or UNKNOWN_SESSION,
        project_path=project_path,
        project_name=project_name(project_path),
        request_id=request_id,
        message_id=message_id,
        message_type=raw.type or raw.message_type or "",
        source_file=source_file,
        source_offset=source_offset,
        timestamp_inferred=timestamp_inferred,
        pricing_key=pricing_key,
    )


def project_name(project_path: "str") -> "str":
    """
    last path segment of the project path.
    """
    segments = [s for s in project_path.split("/") if s]
    if not segments:
        return UNKNOWN_PROJECT
    return segments[-1]


def parse_timestamp(text: "str") -> "datetime | None":
    """
    parses a timestamp with a tolerant chain of formats. Naive values
    are taken as UTC. Returns None when nothing matches.
    """
    value = text.strip()
    if not value:
        return None

    if _EPOCH.match(value):
        seconds = float(value)
        # 13 digit values are milliseconds
        if seconds > 1e11:
            seconds /= 1000
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None

    parsed = None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        for fmt in _FALLBACK_FORMATS:
            try:
                parsed = datetime.strptime(value, fmt)
                break
            except ValueError:
                continue

    if parsed is None:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def date_string(
    text: "str",
    tz: "tzinfo | None" = None,
    today: "Callable[[], date] | None" = None,
) -> "str":
    """
    local YYYY-MM-DD for a raw timestamp. Falls back to the first ten
    characters when they look like a date, then to today's date.
    """
    value = text.strip()
    # a bare calendar date is already a bucket, never shift it
    if _DATE_PREFIX.match(value):
        return value

    parsed = parse_timestamp(value)
    if parsed is not None:
        try:
            return _to_local(parsed, tz).date().isoformat()
        except OverflowError:
            # shifted past datetime.min or datetime.max
            pass

    prefix = value[:10]
    if _DATE_PREFIX.match(prefix):
        return prefix

    current = today() if today is not None else date.today()
    return current.isoformat()


def _to_local(value: "datetime", tz: "tzinfo | None") -> "datetime":
    # astimezone(None) converts to the system local timezone
    return value.astimezone(tz)


def _resolve_cost(
    raw: "RawRecord",
    model: "str",
    rate_card: "RateCard",
    input_tokens: "int",
    output_tokens: "int",
    cache_write_tokens: "int",
    cache_read_tokens: "int",
) -> "tuple[float, str | None]":
    # a cost written by the CLI itself is authoritative
    supplied = raw.raw_cost
    if supplied is not None and math.isfinite(supplied) and supplied >= 0:
        return supplied, None

    cost, breakdown = rate_card.price(
        model, input_tokens, output_tokens, cache_write_tokens, cache_read_tokens
    )
    return cost, breakdown.pricing_key
