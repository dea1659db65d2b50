"""
Usage aggregation over the ledger.

Aggregates are recomputed from the full record sequence on every call;
nothing is cached, so each total equals a linear scan grouped by key.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from llmsh.storage.models import UsageRecord

DAY_FORMAT = "%Y-%m-%d"


@dataclass
class DayStats:
    """Totals for one local calendar day."""
    day: str
    count: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0


@dataclass
class MethodStats:
    """Totals for one request kind."""
    method: str
    count: int = 0
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass
class ProviderModelStats:
    """Totals for one (provider, model) pair."""
    provider: str
    model: str
    count: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0


@dataclass(frozen=True)
class UsageSummary:
    """Grand totals across all records."""
    total_requests: int
    input_tokens: int
    output_tokens: int
    cache_read_tokens: int

    @property
    def cache_savings_percent(self) -> Optional[float]:
        """Share of prompt tokens served from the provider's cache.

        None when no cache reads were recorded.
        """
        if self.cache_read_tokens <= 0:
            return None
        return self.cache_read_tokens / (self.input_tokens + self.cache_read_tokens) * 100


def local_day(timestamp: datetime) -> str:
    """Calendar date of a timestamp in local time.

    Aware timestamps are converted to the local zone; naive ones are taken
    as already local.
    """
    if timestamp.tzinfo is not None:
        timestamp = timestamp.astimezone()
    return timestamp.strftime(DAY_FORMAT)


def aggregate_by_day(records: Sequence[UsageRecord]) -> Dict[str, DayStats]:
    """Group records by local calendar day, independent of time of day."""
    stats: Dict[str, DayStats] = {}
    for record in records:
        day = local_day(record.timestamp)
        entry = stats.setdefault(day, DayStats(day=day))
        entry.count += 1
        entry.input_tokens += record.input_tokens
        entry.output_tokens += record.output_tokens
        entry.cache_read_tokens += record.cache_read_tokens
    return stats


def aggregate_by_method(records: Sequence[UsageRecord]) -> Dict[str, MethodStats]:
    """Group records by request method."""
    stats: Dict[str, MethodStats] = {}
    for record in records:
        entry = stats.setdefault(record.method, MethodStats(method=record.method))
        entry.count += 1
        entry.input_tokens += record.input_tokens
        entry.output_tokens += record.output_tokens
    return stats


def aggregate_by_provider_model(records: Sequence[UsageRecord]) -> List[ProviderModelStats]:
    """One entry per distinct (provider, model) pair; order is unspecified."""
    stats: Dict[Tuple[str, str], ProviderModelStats] = {}
    for record in records:
        key = (record.provider, record.model)
        entry = stats.setdefault(key, ProviderModelStats(provider=record.provider, model=record.model))
        entry.count += 1
        entry.input_tokens += record.input_tokens
        entry.output_tokens += record.output_tokens
        entry.cache_read_tokens += record.cache_read_tokens
    return list(stats.values())


def summarize(records: Sequence[UsageRecord]) -> UsageSummary:
    """Totals across every record."""
    return UsageSummary(
        total_requests=len(records),
        input_tokens=sum(r.input_tokens for r in records),
        output_tokens=sum(r.output_tokens for r in records),
        cache_read_tokens=sum(r.cache_read_tokens for r in records),
    )
