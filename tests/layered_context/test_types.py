import pytest

from layered_context.metrics import LayeredContextMetrics
from layered_context.types import (
    ContextLayer,
    EscalationDecision,
    LayeredContextIndexDocument,
    LayeredRetrievalResult,
    QueryMode,
    TokenUsage,
)


@pytest.mark.asyncio
async def test_index_document_round_trip(seed_index, topic_entries):
    document = await seed_index("test:chat", topic_entries)

    restored = LayeredContextIndexDocument.from_dict(document.to_dict())

    assert restored.to_dict() == document.to_dict()
    assert restored.max_recency_rank() == 5
    assert restored.get_node("node_2").abstract == topic_entries[1]["abstract"]
    assert restored.get_node("missing") is None


def test_duplicate_node_ids_rejected():
    node = {
        "id": "node_x",
        "full_content_path": "s/archives/node_x.json",
        "metadata": {"recency_rank": 1},
    }
    with pytest.raises(ValueError):
        LayeredContextIndexDocument.from_dict({"session_key": "s", "nodes": [node, dict(node)]})


def test_empty_document():
    document = LayeredContextIndexDocument.empty("s")
    assert document.nodes == []
    assert document.archived_message_count == 0
    assert document.max_recency_rank() == 0


def test_context_layer_ordering():
    assert ContextLayer.L0 < ContextLayer.L1 < ContextLayer.L2
    assert sorted([ContextLayer.L2, ContextLayer.L0, ContextLayer.L1]) == list(ContextLayer)
    assert ContextLayer.L2.depth == 2


def _result(layer, savings, ratio):
    return LayeredRetrievalResult(
        selections=[],
        decision=EscalationDecision(layer, "reason", 0.5, 0.1, QueryMode.BROAD),
        token_usage=TokenUsage(total=10, baseline_l2=100, savings=savings, savings_ratio=ratio),
    )


def test_metrics_snapshot():
    metrics = LayeredContextMetrics()
    assert metrics.snapshot()["avg_savings_tokens"] == 0.0

    metrics.record_retrieval(_result(ContextLayer.L0, 90, 0.9))
    metrics.record_retrieval(_result(ContextLayer.L2, 50, 0.5))
    metrics.record_fallback()
    metrics.record_fallback(2)

    snapshot = metrics.snapshot()
    assert snapshot["total_runs"] == 2
    assert snapshot["total_savings_tokens"] == 140
    assert snapshot["avg_savings_tokens"] == pytest.approx(70.0)
    assert snapshot["avg_savings_ratio"] == pytest.approx(0.7)
    assert snapshot["fallback_events"] == 3
    assert snapshot["layer_counts"] == {"L0": 1, "L1": 0, "L2": 1}
