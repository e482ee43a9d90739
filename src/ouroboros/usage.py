"""Token and cost accounting for agent runs."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .backends.types import RunResult


@dataclass
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_creation_tokens: int = 0

    def add(self, other: "TokenUsage") -> None:
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens
        self.cache_read_tokens += other.cache_read_tokens
        self.cache_creation_tokens += other.cache_creation_tokens

    @property
    def total(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass
class TokenUsageAggregate:
    """Totals for one pipeline run; created per run, never shared."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_creation_tokens: int = 0
    cost_usd: float = 0.0
    duration_ms: int = 0
    step_count: int = 0
    tracked_steps: int = 0

    def add(self, result: "RunResult") -> None:
        self.step_count += 1
        self.duration_ms += result.duration_ms
        if result.token_usage is not None:
            self.tracked_steps += 1
            self.input_tokens += result.token_usage.input_tokens
            self.output_tokens += result.token_usage.output_tokens
            self.cache_read_tokens += result.token_usage.cache_read_tokens
            self.cache_creation_tokens += result.token_usage.cache_creation_tokens
        if result.cost_usd is not None:
            self.cost_usd += result.cost_usd

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    @property
    def has_usage(self) -> bool:
        return self.tracked_steps > 0

    def to_dict(self) -> dict[str, int | float]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "cache_read_tokens": self.cache_read_tokens,
            "cache_creation_tokens": self.cache_creation_tokens,
            "cost_usd": round(self.cost_usd, 6),
            "duration_ms": self.duration_ms,
            "step_count": self.step_count,
        }
