"""Token usage and cost reported by agent `result` events."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

DEFAULT_CONTEXT_WINDOW = 200_000


@dataclass(slots=True)
class AgentUsage:
    """Final usage of one agent invocation."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_read: int = 0
    cache_creation: int = 0
    cost_usd: float = 0.0
    context_window: int = DEFAULT_CONTEXT_WINDOW

    @classmethod
    def from_result_event(
        cls,
        event: dict[str, Any],
        *,
        default_context_window: int = DEFAULT_CONTEXT_WINDOW,
    ) -> AgentUsage | None:
        """Build usage from a `result` event; None when the event has no usage block."""

        usage = event.get("usage")
        if not isinstance(usage, dict):
            return None
        context_window = default_context_window
        model_usage = event.get("modelUsage")
        if isinstance(model_usage, dict) and model_usage:
            first_model = next(iter(model_usage.values()))
            if isinstance(first_model, dict):
                context_window = _as_int(first_model.get("contextWindow")) or context_window
        return cls(
            input_tokens=_as_int(usage.get("input_tokens")),
            output_tokens=_as_int(usage.get("output_tokens")),
            cache_read=_as_int(usage.get("cache_read_input_tokens")),
            cache_creation=_as_int(usage.get("cache_creation_input_tokens")),
            cost_usd=_as_float(event.get("total_cost_usd")),
            context_window=context_window,
        )

    @property
    def context_tokens(self) -> int:
        """Tokens occupying the context window."""

        return self.input_tokens + self.cache_creation

    @property
    def context_percentage(self) -> int:
        if self.context_window <= 0:
            return 0
        return round(self.context_tokens / self.context_window * 100)

    def to_dict(self) -> dict[str, Any]:
        return {
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
            "cacheRead": self.cache_read,
            "cacheCreation": self.cache_creation,
            "costUsd": self.cost_usd,
            "contextWindow": self.context_window,
        }


def live_context_tokens(assistant_usage: dict[str, Any]) -> int:
    """Estimate context occupancy from the partial usage of an `assistant` event."""

    return _as_int(assistant_usage.get("input_tokens")) + _as_int(
        assistant_usage.get("cache_creation_input_tokens"),
    )


@dataclass(slots=True)
class UsageAccumulator:
    """Running usage totals owned by a single engine run."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_read: int = 0
    cache_creation: int = 0
    cost_usd: float = 0.0
    invocation_count: int = 0
    context_window: int = DEFAULT_CONTEXT_WINDOW

    def add(self, usage: AgentUsage | None) -> None:
        if usage is None:
            return
        self.input_tokens += usage.input_tokens
        self.output_tokens += usage.output_tokens
        self.cache_read += usage.cache_read
        self.cache_creation += usage.cache_creation
        self.cost_usd += usage.cost_usd
        self.invocation_count += 1
        self.context_window = usage.context_window

    def merge(self, other: UsageAccumulator) -> None:
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens
        self.cache_read += other.cache_read
        self.cache_creation += other.cache_creation
        self.cost_usd += other.cost_usd
        self.invocation_count += other.invocation_count
        if other.invocation_count:
            self.context_window = other.context_window

    def describe(self) -> str:
        return (
            f"invocations={self.invocation_count} input_tokens={self.input_tokens} "
            f"output_tokens={self.output_tokens} cache_read={self.cache_read} "
            f"cache_creation={self.cache_creation} cost_usd={self.cost_usd:.4f}"
        )


def _as_int(raw: object) -> int:
    if isinstance(raw, bool):
        return 0
    if isinstance(raw, int):
        return raw
    if isinstance(raw, float):
        return int(raw)
    return 0


def _as_float(raw: object) -> float:
    if isinstance(raw, bool):
        return 0.0
    if isinstance(raw, int | float):
        return float(raw)
    return 0.0
