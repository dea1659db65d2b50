"""
Token usage reported by a provider call.
"""

from dataclasses import asdict, dataclass
from typing import Dict


@dataclass(frozen=True)
class TokenUsage:
    """Token counts for one LLM call.

    Contains the counts as reported by the provider, without estimation.
    """
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0

    def __post_init__(self):
        """Validate counts are non-negative."""
        for name, value in asdict(self).items():
            if value < 0:
                raise ValueError(f"{name} cannot be negative")

    @property
    def total_tokens(self) -> int:
        """Total tokens used (input + output)."""
        return self.input_tokens + self.output_tokens

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)
