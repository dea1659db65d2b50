"""
Data models for storage layer.

Defines the cache entry and usage record entities.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class Method(Enum):
    """Request kinds that consume tokens."""
    PREDICT = "predict"
    COMPLETE = "complete"
    NL2CMD = "nl2cmd"


@dataclass(frozen=True)
class CacheEntry:
    """A cached prediction keyed by its context fingerprint.

    Timestamps are epoch seconds, as stored in the cache table.
    """
    fingerprint: str
    command: str
    created_at: int
    hit_count: int
    last_used: int


@dataclass(frozen=True)
class UsageRecord:
    """Immutable record of token usage for a single successful LLM call.

    Append-only events that form the usage ledger.
    Once written, these records must never be modified.
    """
    id: str
    timestamp: datetime
    method: str
    provider: str
    model: str
    input_tokens: int
    output_tokens: int
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0

    def __post_init__(self):
        """Validate method and token counts."""
        valid_methods = {m.value for m in Method}
        if self.method not in valid_methods:
            raise ValueError(f"method must be one of: {sorted(valid_methods)}")
        for name in ("input_tokens", "output_tokens",
                     "cache_creation_tokens", "cache_read_tokens"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} cannot be negative")

    def to_dict(self) -> dict:
        """Serialize to the ledger's JSON shape."""
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "method": self.method,
            "provider": self.provider,
            "model": self.model,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "cache_creation_tokens": self.cache_creation_tokens,
            "cache_read_tokens": self.cache_read_tokens,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "UsageRecord":
        """Build a record from its ledger JSON shape."""
        return cls(
            id=str(data["id"]),
            timestamp=datetime.fromisoformat(data["timestamp"]),
            method=data["method"],
            provider=data.get("provider", ""),
            model=data.get("model", ""),
            input_tokens=int(data.get("input_tokens", 0)),
            output_tokens=int(data.get("output_tokens", 0)),
            cache_creation_tokens=int(data.get("cache_creation_tokens", 0)),
            cache_read_tokens=int(data.get("cache_read_tokens", 0)),
        )
