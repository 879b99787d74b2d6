"""In-process counters for layered context runs."""

from typing import Any, Dict

from .types import ContextLayer, LayeredRetrievalResult


class LayeredContextMetrics:
    def __init__(self):
        self.total_runs = 0
        self.total_savings_tokens = 0
        self.total_savings_ratio = 0.0
        self.fallback_events = 0
        self.layer_counts = {layer.value: 0 for layer in ContextLayer}

    def record_retrieval(self, result: LayeredRetrievalResult) -> None:
        self.total_runs += 1
        self.total_savings_tokens += result.token_usage.savings
        self.total_savings_ratio += result.token_usage.savings_ratio
        self.layer_counts[result.decision.reached_layer.value] += 1

    def record_fallback(self, count: int = 1) -> None:
        self.fallback_events += count

    def snapshot(self) -> Dict[str, Any]:
        runs = self.total_runs
        return {
            "total_runs": runs,
            "total_savings_tokens": self.total_savings_tokens,
            "avg_savings_tokens": self.total_savings_tokens / runs if runs else 0.0,
            "avg_savings_ratio": self.total_savings_ratio / runs if runs else 0.0,
            "fallback_events": self.fallback_events,
            "layer_counts": dict(self.layer_counts),
        }
