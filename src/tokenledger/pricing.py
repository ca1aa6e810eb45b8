import re
import threading
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping

import structlog

logger = structlog.get_logger()

_PER_MILLION = 1_000_000
# release dates appended to model ids, e.g. claude-3-haiku-20240307
_DATE_SUFFIX = re.compile(r"[-_@]?\d{8}$")
_VENDOR_PREFIX = re.compile(r"^(?:[a-z]{2}\.)?(?:anthropic[./])")
_COMPACT_STRIP = re.compile(r"[-_.\s]")


@dataclass(frozen=True, slots=True)
class PricingEntry:
    """
    PricingEntry is the rate card for one model, in USD per
    1,000,000 tokens of each kind.
    """

    input_rate: "float"
    output_rate: "float"
    cache_write_rate: "float"
    cache_read_rate: "float"

    def breakdown(
        self,
        input_tokens: "int",
        output_tokens: "int",
        cache_write_tokens: "int",
        cache_read_tokens: "int",
        pricing_key: "str | None" = None,
    ) -> "CostBreakdown":
        return CostBreakdown(
            input_cost=input_tokens / _PER_MILLION * self.input_rate,
            output_cost=output_tokens / _PER_MILLION * self.output_rate,
            cache_write_cost=cache_write_tokens / _PER_MILLION * self.cache_write_rate,
            cache_read_cost=cache_read_tokens / _PER_MILLION * self.cache_read_rate,
            pricing_key=pricing_key,
        )


@dataclass(frozen=True, slots=True)
class CostBreakdown:
    """
    CostBreakdown splits the cost of one event by token kind.
    pricing_key is None when the model could not be resolved.
    """

    input_cost: "float" = 0.0
    output_cost: "float" = 0.0
    cache_write_cost: "float" = 0.0
    cache_read_cost: "float" = 0.0
    pricing_key: "str | None" = None

    @property
    def total(self) -> "float":
        return (
            self.input_cost
            + self.output_cost
            + self.cache_write_cost
            + self.cache_read_cost
        )


@dataclass(frozen=True)
class RateCard:
    """
    RateCard is a versioned, immutable pricing table plus the alias
    table used to map historical and short-form model spellings onto
    its keys.
    """

    version: "str"
    entries: "Mapping[str, PricingEntry]"
    # compact spelling (lower-case, separators removed) -> entry key
    aliases: "Mapping[str, str]" = field(default_factory=dict)
    _unresolved: "set[str]" = field(
        default_factory=set, init=False, repr=False, compare=False
    )
    _lock: "threading.Lock" = field(
        default_factory=threading.Lock, init=False, repr=False, compare=False
    )

    def __post_init__(self) -> "None":
        for alias, target in self.aliases.items():
            if target not in self.entries:
                raise ValueError(f"alias {alias!r} points to unknown key {target!r}")
        object.__setattr__(self, "entries", MappingProxyType(dict(self.entries)))
        object.__setattr__(self, "aliases", MappingProxyType(dict(self.aliases)))

    def get_pricing(self, key: "str") -> "PricingEntry":
        """
        returns the entry for an exact rate card key.

        Raises:
            ValueError: if the key is not in the table
        """
        if key not in self.entries:
            raise ValueError(f"Unsupported model: {key}")
        return self.entries[key]

    def resolve(self, model: "str") -> "str | None":
        """
        maps a raw model identifier to a rate card key: exact match,
        then alias table, then a family/version heuristic. Returns None
        when nothing matches.
        """
        if not model:
            return None
        if model in self.entries:
            return model

        cleaned = _clean(model)
        if cleaned in self.entries:
            return cleaned

        alias = self.aliases.get(_COMPACT_STRIP.sub("", cleaned))
        if alias is not None:
            return alias

        guess = _family_heuristic(cleaned)
        if guess is not None and guess in self.entries:
            return guess
        return None

    def price(
        self,
        model: "str",
        input_tokens: "int",
        output_tokens: "int",
        cache_write_tokens: "int",
        cache_read_tokens: "int",
    ) -> "tuple[float, CostBreakdown]":
        """
        computes the cost of one event. An unresolved model costs 0
        and is reported once through the log.
        """
        key = self.resolve(model)
        if key is None:
            self._report_unresolved(
                model,
                input_tokens + output_tokens + cache_write_tokens + cache_read_tokens,
            )
            return 0.0, CostBreakdown()

        breakdown = self.entries[key].breakdown(
            input_tokens,
            output_tokens,
            cache_write_tokens,
            cache_read_tokens,
            pricing_key=key,
        )
        return breakdown.total, breakdown

    def _report_unresolved(self, model: "str", tokens: "int") -> "None":
        with self._lock:
            if model in self._unresolved:
                return
            self._unresolved.add(model)
        logger.warning(
            "pricing_unresolved_model",
            model=model,
            tokens=tokens,
            rate_card=self.version,
        )


def _clean(model: "str") -> "str":
    cleaned = model.strip().lower()
    cleaned = _VENDOR_PREFIX.sub("", cleaned)
    # bedrock/vertex style revision suffixes
    cleaned = re.sub(r"(-v\d+(:\d+)?|@.*)$", "", cleaned)
    return _DATE_SUFFIX.sub("", cleaned)


def _family_heuristic(model: "str") -> "str | None":
    """
    classifies unseen ids by family name and a version-digit hint,
    e.g. 'claude-opus-4-1' -> 'claude-4-opus'.
    """
    is_35 = any(hint in model for hint in ("3.5", "3-5", "35"))
    for family in ("opus", "sonnet", "haiku"):
        if family not in model:
            continue
        if "4" in model:
            return f"claude-4-{family}"
        if is_35:
            return f"claude-3-5-{family}"
        if "3" in model:
            return f"claude-3-{family}"
        return None
    return None


_OPUS_4 = PricingEntry(15.0, 75.0, 18.75, 1.5)
_SONNET = PricingEntry(3.0, 15.0, 3.75, 0.3)
_HAIKU_4 = PricingEntry(1.0, 5.0, 1.25, 0.1)

# no dynamic fetching, rates change only with a new version
DEFAULT_RATE_CARD = RateCard(
    version="2025-06",
    entries={
        "claude-4-opus": _OPUS_4,
        "claude-4-sonnet": _SONNET,
        "claude-4-haiku": _HAIKU_4,
        "claude-3-5-sonnet": _SONNET,
        "claude-3-5-haiku": PricingEntry(0.8, 4.0, 1.0, 0.08),
        "claude-3-opus": _OPUS_4,
        "claude-3-sonnet": _SONNET,
        "claude-3-haiku": PricingEntry(0.25, 1.25, 0.3, 0.03),
        "gemini-2.5-pro": PricingEntry(1.25, 10.0, 0.31, 0.25),
    },
    aliases={
        "claude4opus": "claude-4-opus",
        "claude4sonnet": "claude-4-sonnet",
        "claude4haiku": "claude-4-haiku",
        "claudeopus4": "claude-4-opus",
        "claudesonnet4": "claude-4-sonnet",
        "claudehaiku4": "claude-4-haiku",
        "opus4": "claude-4-opus",
        "sonnet4": "claude-4-sonnet",
        "haiku4": "claude-4-haiku",
        "claude35sonnet": "claude-3-5-sonnet",
        "claude3sonnet35": "claude-3-5-sonnet",
        "claudesonnet35": "claude-3-5-sonnet",
        "claude35haiku": "claude-3-5-haiku",
        "claudehaiku35": "claude-3-5-haiku",
        "claude3opus": "claude-3-opus",
        "claude3sonnet": "claude-3-sonnet",
        "claude3haiku": "claude-3-haiku",
        "claudeopus3": "claude-3-opus",
        "claudesonnet3": "claude-3-sonnet",
        "claudehaiku3": "claude-3-haiku",
        "gemini25pro": "gemini-2.5-pro",
    },
)


def price(
    model: "str",
    input_tokens: "int",
    output_tokens: "int",
    cache_write_tokens: "int",
    cache_read_tokens: "int",
) -> "tuple[float, CostBreakdown]":
    """
    prices one event against the default rate card.
    """
    return DEFAULT_RATE_CARD.price(
        model, input_tokens, output_tokens, cache_write_tokens, cache_read_tokens
    )
