import pytest

from layered_context.config import LayeredContextConfig, RetrievalEscalationThresholds
from layered_context.errors import DenseScoreError
from layered_context.retriever import (
    NO_NODES_REASON,
    ROOT_NODE_ID,
    LayeredContextRetriever,
    adapt_thresholds,
    classify_query,
    layered_budget,
)
from layered_context.types import ContextLayer, LayeredContextIndexDocument, QueryMode

SESSION = "test:chat"
BROAD_QUERY = "kubernetes cluster upgrade plan"
PRECISE_QUERY = "stack trace from the kubernetes cluster upgrade"
STRUCTURED_QUERY = "architecture overview of kubernetes cluster upgrade"


# --- Fixtures ---

@pytest.fixture
def retriever(storage):
    return LayeredContextRetriever(storage)


@pytest.fixture
def config():
    return LayeredContextConfig()


# --- Query classification and thresholds ---

class TestClassifyQuery:
    @pytest.mark.parametrize("query", [
        "show the stack trace", "what was the exact error", "open src/app.py",
        "which API did we call", "the `retry` helper",
    ])
    def test_precise(self, query):
        assert classify_query(query) is QueryMode.PRECISE

    @pytest.mark.parametrize("query", ["give me an overview", "project roadmap", "summary of the design"])
    def test_structured(self, query):
        assert classify_query(query) is QueryMode.STRUCTURED

    def test_broad(self):
        assert classify_query("what did we decide about holidays") is QueryMode.BROAD
        assert classify_query("") is QueryMode.BROAD

    def test_precise_wins_over_structured(self):
        assert classify_query("overview of the error") is QueryMode.PRECISE

    def test_deterministic(self):
        assert [classify_query(BROAD_QUERY) for _ in range(5)] == [QueryMode.BROAD] * 5


class TestAdaptThresholds:
    def test_broad_medium_query_unchanged(self):
        threshold, margin = adapt_thresholds(RetrievalEscalationThresholds(), QueryMode.BROAD, 8)
        assert threshold == pytest.approx(0.64)
        assert margin == pytest.approx(0.08)

    def test_precise_short_query(self):
        threshold, margin = adapt_thresholds(RetrievalEscalationThresholds(), QueryMode.PRECISE, 3)
        assert threshold == pytest.approx(0.64 * 0.92 * 0.88)
        assert margin == pytest.approx(0.08 * 0.8 * 0.72)

    def test_structured_long_query(self):
        threshold, margin = adapt_thresholds(RetrievalEscalationThresholds(), QueryMode.STRUCTURED, 12)
        assert threshold == pytest.approx(0.64 * 0.97 * 1.04)
        assert margin == pytest.approx(0.08 * 1.1)

    def test_results_are_clamped(self):
        base = RetrievalEscalationThresholds(score_threshold_high=0.99, top1_top2_margin=0.8)
        threshold, margin = adapt_thresholds(base, QueryMode.BROAD, 20)
        assert threshold == 0.99
        assert margin == 0.8

        low = RetrievalEscalationThresholds(score_threshold_high=0.1, top1_top2_margin=0.01)
        threshold, margin = adapt_thresholds(low, QueryMode.PRECISE, 1)
        assert threshold == 0.1
        assert margin == 0.01


def test_layered_budget_floor_and_share():
    assert layered_budget(LayeredContextConfig(max_prompt_tokens=32000)) == 14400
    assert layered_budget(LayeredContextConfig(max_prompt_tokens=500)) == 400


# --- Retrieval ---

@pytest.mark.asyncio
async def test_empty_index_returns_no_selections(retriever, config):
    """An index without nodes yields an empty L0 result."""
    result = await retriever.retrieve(LayeredContextIndexDocument.empty(SESSION), BROAD_QUERY, config)

    assert result.selections == []
    assert result.decision.reached_layer is ContextLayer.L0
    assert result.decision.reason == NO_NODES_REASON
    assert result.token_usage.total == 0
    assert result.token_usage.savings_ratio == 0.0


@pytest.mark.asyncio
async def test_confident_broad_query_stays_at_l0(retriever, config, seed_index, topic_entries):
    """A broad query matching one abstract strongly is answered from abstracts."""
    index = await seed_index(SESSION, topic_entries)

    result = await retriever.retrieve(index, BROAD_QUERY, config)

    assert result.decision.reached_layer is ContextLayer.L0
    assert result.decision.query_mode is QueryMode.BROAD
    assert result.decision.top1_score == pytest.approx(1.0)
    assert all(s.layer is ContextLayer.L0 for s in result.selections)
    assert result.selections[0].node_id == ROOT_NODE_ID
    assert result.selections[1].node_id == "node_3"
    # root plus at most three abstracts
    assert len(result.selections) == 4
    assert result.token_usage.l1 == 0
    assert result.token_usage.l2 == 0


@pytest.mark.asyncio
async def test_precise_query_escalates_to_l2(retriever, config, seed_index, topic_entries):
    """Precise queries always reach the transcripts, with overviews carried first."""
    index = await seed_index(SESSION, topic_entries)

    result = await retriever.retrieve(index, PRECISE_QUERY, config)

    assert result.decision.reached_layer is ContextLayer.L2
    assert result.decision.query_mode is QueryMode.PRECISE
    layers = [s.layer for s in result.selections]
    assert layers[0] is ContextLayer.L0
    l1 = [s for s in result.selections if s.layer is ContextLayer.L1]
    l2 = [s for s in result.selections if s.layer is ContextLayer.L2]
    assert len(l1) == 2  # max_items_for_l1 - max_items_for_l2
    assert l1[0].node_id == "node_3"
    assert [s.node_id for s in l2][0] == "node_3"
    assert "stack trace" in l2[0].content
    # layers appear in escalation order
    assert layers == sorted(layers, key=lambda layer: layer.depth)


@pytest.mark.asyncio
async def test_structured_query_settles_at_l1(retriever, config, seed_index, topic_entries):
    """Structured queries skip L0 but stop at L1 when overviews are decisive."""
    index = await seed_index(SESSION, topic_entries)

    result = await retriever.retrieve(index, STRUCTURED_QUERY, config)

    assert result.decision.reached_layer is ContextLayer.L1
    assert result.decision.query_mode is QueryMode.STRUCTURED
    l1 = [s for s in result.selections if s.layer is ContextLayer.L1]
    assert l1[0].node_id == "node_3"
    assert len(l1) == config.retrieval_escalation_thresholds.max_items_for_l1
    assert not [s for s in result.selections if s.layer is ContextLayer.L2]


@pytest.mark.asyncio
async def test_unmatched_query_falls_through_to_l2(retriever, config, seed_index, topic_entries):
    index = await seed_index(SESSION, topic_entries)

    result = await retriever.retrieve(index, "something unrelated entirely", config)

    assert result.decision.reached_layer is ContextLayer.L2
    assert result.decision.query_mode is QueryMode.BROAD
    assert "Low confidence" in result.decision.reason


@pytest.mark.asyncio
async def test_missing_archive_is_skipped(retriever, storage, config, seed_index, topic_entries):
    """A node whose archive cannot be read contributes no L2 evidence."""
    index = await seed_index(SESSION, topic_entries)
    node = index.get_node("node_3")
    archive_file = storage.base_dir / node.full_content_path
    archive_file.unlink()

    result = await retriever.retrieve(index, PRECISE_QUERY, config)

    assert result.decision.reached_layer is ContextLayer.L2
    assert "node_3" not in [s.node_id for s in result.selections if s.layer is ContextLayer.L2]


@pytest.mark.asyncio
async def test_budget_stops_at_first_overflow(retriever, seed_index, topic_entries):
    """Transcripts larger than the budget are not selected, nor anything after them."""
    long_entries = []
    for entry in topic_entries:
        padded = dict(entry)
        padded["transcript"] = entry["transcript"] + "\n\n" + ("ASSISTANT: more detail on the stack trace. " * 120)
        long_entries.append(padded)
    index = await seed_index(SESSION, long_entries)
    config = LayeredContextConfig(max_prompt_tokens=4000)

    result = await retriever.retrieve(index, PRECISE_QUERY, config)

    assert result.decision.reached_layer is ContextLayer.L2
    assert result.token_usage.total <= layered_budget(config)
    assert result.token_usage.l2 == 0
    assert result.token_usage.l1 > 0


@pytest.mark.asyncio
@pytest.mark.parametrize("query", [BROAD_QUERY, PRECISE_QUERY, STRUCTURED_QUERY, "unrelated words"])
@pytest.mark.parametrize("max_prompt_tokens", [4000, 8000, 32000])
async def test_selection_never_exceeds_budget(retriever, seed_index, topic_entries, query, max_prompt_tokens):
    index = await seed_index(SESSION, topic_entries)
    config = LayeredContextConfig(max_prompt_tokens=max_prompt_tokens, l0_target_tokens=300)

    result = await retriever.retrieve(index, query, config)

    usage = result.token_usage
    assert usage.total <= layered_budget(config)
    assert usage.total == sum(s.estimated_tokens for s in result.selections)
    assert usage.total == usage.l0 + usage.l1 + usage.l2


@pytest.mark.asyncio
async def test_savings_accounting(retriever, config, seed_index, topic_entries):
    index = await seed_index(SESSION, topic_entries)

    result = await retriever.retrieve(index, PRECISE_QUERY, config)

    usage = result.token_usage
    baseline = sum(node.token_estimate.l2 for node in index.nodes)
    assert usage.baseline_l2 == baseline
    assert usage.savings == baseline - usage.total
    assert usage.savings_ratio == pytest.approx(usage.savings / baseline)


@pytest.mark.asyncio
async def test_root_abstract_trimmed_to_l0_target(retriever, seed_index, topic_entries):
    index = await seed_index(SESSION, topic_entries)
    index.root.abstract = " ".join(["long root abstract sentence"] * 200)
    config = LayeredContextConfig(l0_target_tokens=40)

    result = await retriever.retrieve(index, BROAD_QUERY, config)

    root = result.selections[0]
    assert root.node_id == ROOT_NODE_ID
    assert root.estimated_tokens <= 40


@pytest.mark.asyncio
async def test_retrieval_is_deterministic(retriever, config, seed_index, topic_entries):
    index = await seed_index(SESSION, topic_entries)

    first = await retriever.retrieve(index, PRECISE_QUERY, config)
    second = await retriever.retrieve(index, PRECISE_QUERY, config)

    assert first.to_dict() == second.to_dict()


# --- Dense scores ---

@pytest.mark.asyncio
async def test_dense_provider_receives_candidates(storage, config, seed_index, topic_entries, make_dense_provider):
    index = await seed_index(SESSION, topic_entries)
    provider = make_dense_provider(scores={"node_3": 0.95})
    retriever = LayeredContextRetriever(storage, dense_score_provider=provider)

    result = await retriever.retrieve(index, BROAD_QUERY, config)

    assert provider.calls
    query, node_ids = provider.calls[0]
    assert query == BROAD_QUERY
    assert set(node_ids) == {node.id for node in index.nodes}
    assert result.selections[1].node_id == "node_3"


@pytest.mark.asyncio
async def test_dense_failure_falls_back_to_sparse(storage, config, seed_index, topic_entries, make_dense_provider):
    """A non-strict provider failure leaves the sparse ranking untouched."""
    index = await seed_index(SESSION, topic_entries)
    failing = LayeredContextRetriever(
        storage, dense_score_provider=make_dense_provider(error=DenseScoreError("embedding service down"))
    )
    sparse_only = LayeredContextRetriever(storage)

    degraded = await failing.retrieve(index, PRECISE_QUERY, config)
    expected = await sparse_only.retrieve(index, PRECISE_QUERY, config)

    assert degraded.to_dict() == expected.to_dict()


@pytest.mark.asyncio
async def test_dense_unexpected_error_falls_back(storage, config, seed_index, topic_entries, make_dense_provider):
    index = await seed_index(SESSION, topic_entries)
    retriever = LayeredContextRetriever(storage, dense_score_provider=make_dense_provider(error=RuntimeError("boom")))

    result = await retriever.retrieve(index, BROAD_QUERY, config)

    assert result.decision.reached_layer is ContextLayer.L0


@pytest.mark.asyncio
async def test_strict_dense_failure_propagates(storage, config, seed_index, topic_entries, make_dense_provider):
    index = await seed_index(SESSION, topic_entries)
    provider = make_dense_provider(error=DenseScoreError("embedding service down"), strict_mode=True)
    retriever = LayeredContextRetriever(storage, dense_score_provider=provider)

    with pytest.raises(DenseScoreError):
        await retriever.retrieve(index, BROAD_QUERY, config)


@pytest.mark.asyncio
async def test_dense_timeout(storage, config, seed_index, topic_entries, make_dense_provider):
    """A stalled provider is cut off at its timeout; strict mode turns that into an error."""
    index = await seed_index(SESSION, topic_entries)

    lenient = LayeredContextRetriever(
        storage, dense_score_provider=make_dense_provider(delay=1.0, request_timeout_ms=20)
    )
    result = await lenient.retrieve(index, BROAD_QUERY, config)
    assert result.decision.reached_layer is ContextLayer.L0

    strict = LayeredContextRetriever(
        storage, dense_score_provider=make_dense_provider(delay=1.0, request_timeout_ms=20, strict_mode=True)
    )
    with pytest.raises(DenseScoreError):
        await strict.retrieve(index, BROAD_QUERY, config)
