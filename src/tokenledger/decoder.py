import json
import math
from dataclasses import dataclass
from typing import Any, Mapping

from tokenledger.errors import LineDecodeError

# alias lists are ordered by preference, first non-empty value wins
_MESSAGE_TYPE_KEYS = ("message_type", "messageType")
_MODEL_KEYS = ("model", "model_name", "modelName")
_TIMESTAMP_KEYS = ("timestamp", "created_at", "createdAt", "time")
_SESSION_KEYS = ("sessionId", "session_id", "session")
_MESSAGE_ID_KEYS = ("message_id", "messageId")
_COST_KEYS = ("cost", "price")
_COST_USD_KEYS = ("costUSD", "cost_usd")

_INPUT_KEYS = ("input_tokens", "inputTokens", "input", "in_tokens")
_OUTPUT_KEYS = ("output_tokens", "outputTokens", "output", "out_tokens")
_CACHE_CREATION_INPUT_KEYS = (
    "cache_creation_input_tokens",
    "cacheCreationInputTokens",
)
_CACHE_READ_INPUT_KEYS = ("cache_read_input_tokens", "cacheReadInputTokens")
_CACHE_CREATION_LEGACY_KEYS = (
    "cache_creation_tokens",
    "cacheCreationTokens",
    "cache_write_tokens",
    "cacheWriteTokens",
    "cache_write_input_tokens",
    "cacheWriteInputTokens",
)
_CACHE_READ_LEGACY_KEYS = ("cache_read_tokens", "cacheReadTokens")


@dataclass(frozen=True, slots=True)
class RawUsage:
    """
    RawUsage is a token-usage block as found in the log, keeping
    the precise and the legacy cache field spellings apart.
    """

    input_tokens: "int | None" = None
    output_tokens: "int | None" = None
    cache_creation_input_tokens: "int | None" = None
    cache_read_input_tokens: "int | None" = None
    cache_creation_tokens: "int | None" = None
    cache_read_tokens: "int | None" = None

    @property
    def effective_cache_write_tokens(self) -> "int":
        if self.cache_creation_input_tokens is not None:
            return self.cache_creation_input_tokens
        return self.cache_creation_tokens or 0

    @property
    def effective_cache_read_tokens(self) -> "int":
        if self.cache_read_input_tokens is not None:
            return self.cache_read_input_tokens
        return self.cache_read_tokens or 0

    @property
    def total_tokens(self) -> "int":
        return (
            (self.input_tokens or 0)
            + (self.output_tokens or 0)
            + self.effective_cache_write_tokens
            + self.effective_cache_read_tokens
        )


@dataclass(frozen=True, slots=True)
class RawMessage:
    """
    RawMessage is the optional `message` wrapper used by newer
    transcript schemas.
    """

    usage: "RawUsage | None" = None
    model: "str | None" = None
    id: "str | None" = None


@dataclass(frozen=True, slots=True)
class RawRecord:
    """
    RawRecord is a loosely-typed view over one decoded log line.
    Every field is optional; all schema-version skew is resolved
    later by the normalizer.
    """

    type: "str | None" = None
    message_type: "str | None" = None
    model: "str | None" = None
    # top-level `usage` object
    usage: "RawUsage | None" = None
    # token fields written directly on the record by the oldest schema
    flat_usage: "RawUsage | None" = None
    message: "RawMessage | None" = None
    cost: "float | None" = None
    cost_usd: "float | None" = None
    timestamp: "str | None" = None
    date: "str | None" = None
    session_id: "str | None" = None
    # `requestId`, unqualified spelling
    request_id: "str | None" = None
    # `request_id`, underscore-qualified spelling
    request_id_underscore: "str | None" = None
    message_id: "str | None" = None
    uuid: "str | None" = None

    @property
    def raw_cost(self) -> "float | None":
        if self.cost is not None:
            return self.cost
        return self.cost_usd


def decode_line(line: "str | bytes") -> "RawRecord":
    """
    decodes one JSONL line. Raises LineDecodeError for anything that
    is not a non-empty JSON object.
    """
    if isinstance(line, bytes):
        try:
            line = line.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise LineDecodeError(f"invalid utf-8: {exc}") from exc

    text = line.strip()
    if not text:
        raise LineDecodeError("blank line")

    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise LineDecodeError(f"invalid json: {exc.msg}") from exc

    if not isinstance(data, dict):
        raise LineDecodeError(f"expected object, got {type(data).__name__}")
    if not data:
        raise LineDecodeError("empty object")

    return from_mapping(data)


def from_mapping(data: "Mapping[str, Any]") -> "RawRecord":
    """
    builds a RawRecord from an already decoded JSON object.
    """
    message = None
    message_data = data.get("message")
    if isinstance(message_data, dict):
        nested_usage = message_data.get("usage")
        message = RawMessage(
            usage=_usage(nested_usage) if isinstance(nested_usage, dict) else None,
            model=_string(message_data, ("model",)),
            id=_string(message_data, ("id",)),
        )

    usage_data = data.get("usage")
    usage = _usage(usage_data) if isinstance(usage_data, dict) else None

    return RawRecord(
        type=_string(data, ("type",)),
        message_type=_string(data, _MESSAGE_TYPE_KEYS),
        model=_string(data, _MODEL_KEYS),
        usage=usage,
        flat_usage=_usage(data),
        message=message,
        cost=_float(data, _COST_KEYS),
        cost_usd=_float(data, _COST_USD_KEYS),
        timestamp=_string(data, _TIMESTAMP_KEYS) or _epoch(data, _TIMESTAMP_KEYS),
        date=_string(data, ("date",)),
        session_id=_string(data, _SESSION_KEYS),
        request_id=_string(data, ("requestId",)),
        request_id_underscore=_string(data, ("request_id",)),
        message_id=_string(data, _MESSAGE_ID_KEYS),
        uuid=_string(data, ("uuid", "id")),
    )


def _usage(data: "Mapping[str, Any]") -> "RawUsage | None":
    usage = RawUsage(
        input_tokens=_int(data, _INPUT_KEYS),
        output_tokens=_int(data, _OUTPUT_KEYS),
        cache_creation_input_tokens=_int(data, _CACHE_CREATION_INPUT_KEYS),
        cache_read_input_tokens=_int(data, _CACHE_READ_INPUT_KEYS),
        cache_creation_tokens=_int(data, _CACHE_CREATION_LEGACY_KEYS),
        cache_read_tokens=_int(data, _CACHE_READ_LEGACY_KEYS),
    )
    # a block without a single token field carries no usage at all
    if usage == RawUsage():
        return None
    return usage


def _string(data: "Mapping[str, Any]", keys: "tuple[str, ...]") -> "str | None":
    for key in keys:
        value = data.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def _epoch(data: "Mapping[str, Any]", keys: "tuple[str, ...]") -> "str | None":
    # numeric timestamps are kept as text and parsed by the normalizer
    for key in keys:
        value = data.get(key)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
    return None


def _int(data: "Mapping[str, Any]", keys: "tuple[str, ...]") -> "int | None":
    for key in keys:
        value = _number(data.get(key))
        if value is None:
            continue
        try:
            return max(int(value), 0)
        except (OverflowError, ValueError):
            continue
    return None


def _float(data: "Mapping[str, Any]", keys: "tuple[str, ...]") -> "float | None":
    for key in keys:
        value = _number(data.get(key))
        if value is None:
            continue
        try:
            result = float(value)
        except ValueError:
            continue
        if math.isfinite(result):
            return result
    return None


def _number(value: "Any") -> "int | float | str | None":
    # Infinity and NaN are valid to json.loads but never a usable number
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    if isinstance(value, (int, str)):
        return value
    return None
