"""
Retriever: decides how deep into the archive a query needs to go.

Scoring is hybrid. Every candidate gets a BM25 score normalized against the
query's ceiling, optionally blended in logit space with a dense embedding
score, plus a bounded recency bonus. Escalation is monotonic: the retriever
stays at L0 only for confident broad queries, reranks overviews at L1, and
falls through to full transcripts at L2 for precise or ambiguous queries.
Selection then greedily fills the layered token budget.
"""

import asyncio
import logging
import math
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from opentelemetry import trace

from host.observability import get_tracer
from storage.storage_interface import LayeredContextStorage
from .config import LayeredContextConfig, RetrievalEscalationThresholds
from .dense_scores import DenseScoreCandidate, DenseScoreProvider
from .errors import DenseScoreError
from .text_utils import (
    DEFAULT_DENSE_ALPHA,
    blend_dense_sparse_scores,
    build_bm25_model,
    clamp01,
    estimate_similarity,
    normalize_bm25_scores,
    score_bm25_batch,
    tokenize,
    trim_to_token_target,
)
from .token_estimator import estimate_text_tokens
from .types import (
    ContextLayer,
    EscalationDecision,
    IndexNode,
    LayeredContextIndexDocument,
    LayeredContextSelection,
    LayeredRetrievalResult,
    QueryMode,
    TokenUsage,
)

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)

ROOT_NODE_ID = "root"
NO_NODES_REASON = "No archived nodes are available."
MAX_RECENCY_BONUS = 0.08
L0_SELECTION_LIMIT = 3
BUDGET_SHARE = 0.45
MIN_LAYERED_BUDGET = 400
L1_THRESHOLD_FACTOR = 0.9
L1_MARGIN_FACTOR = 0.5

PRECISE_SIGNALS = (
    "exact", "line", "stack", "error", "exception", "snippet", "parameter",
    "argument", "function", "class", "api", "status code", "trace", "`",
    ".ts", ".js", ".py", ".json", "/",
)
STRUCTURED_SIGNALS = ("overview", "summary", "architecture", "flow", "design", "scope", "roadmap")


def classify_query(query: str) -> QueryMode:
    normalized = (query or "").lower()
    if any(signal in normalized for signal in PRECISE_SIGNALS):
        return QueryMode.PRECISE
    if any(signal in normalized for signal in STRUCTURED_SIGNALS):
        return QueryMode.STRUCTURED
    return QueryMode.BROAD


def adapt_thresholds(base: RetrievalEscalationThresholds,
                     mode: QueryMode,
                     query_token_count: int) -> Tuple[float, float]:
    """
    Scale the base confidence threshold and margin for this query.

    Returns:
        ``(score_threshold, margin)`` clamped to [0.1, 0.99] and [0.01, 0.8]
    """
    threshold = base.score_threshold_high
    margin = base.top1_top2_margin

    if mode is QueryMode.PRECISE:
        threshold *= 0.92
        margin *= 0.8
    elif mode is QueryMode.STRUCTURED:
        threshold *= 0.97

    if query_token_count <= 5:
        threshold *= 0.88
        margin *= 0.72
    elif query_token_count >= 12:
        threshold *= 1.04
        margin *= 1.1

    return min(0.99, max(0.1, threshold)), min(0.8, max(0.01, margin))


def layered_budget(config: LayeredContextConfig) -> int:
    return max(MIN_LAYERED_BUDGET, math.floor(config.max_prompt_tokens * BUDGET_SHARE))


@dataclass
class ScoredNode:
    node: IndexNode
    score: float
    sparse: float
    dense: Optional[float]


def _top_scores(ranked: Sequence[ScoredNode]) -> Tuple[float, float]:
    top1 = ranked[0].score if ranked else 0.0
    top2 = ranked[1].score if len(ranked) > 1 else 0.0
    return top1, top1 - top2


class LayeredContextRetriever:
    """Read-only consumer of index snapshots; never takes the indexer's locks."""

    def __init__(self,
                 storage: LayeredContextStorage,
                 dense_score_provider: Optional[DenseScoreProvider] = None,
                 dense_alpha: float = DEFAULT_DENSE_ALPHA):
        self.storage = storage
        self.dense_score_provider = dense_score_provider
        self.dense_alpha = dense_alpha

    # ===== Scoring =====

    def _recency_bonus(self, node: IndexNode, rank_range: Tuple[int, int]) -> float:
        low, high = rank_range
        if high <= low:
            return MAX_RECENCY_BONUS
        return MAX_RECENCY_BONUS * (node.metadata.recency_rank - low) / (high - low)

    def _sparse_scores(self, query: str, docs: List[Tuple[str, str]],
                       extra_docs: Sequence[Tuple[str, str]] = ()) -> Dict[str, float]:
        """
        Normalized BM25 scores for ``docs``; ``extra_docs`` join the corpus
        statistics but are not returned. Falls back to overlap similarity for
        degenerate corpora.
        """
        corpus = list(extra_docs) + docs
        if len(corpus) >= 2:
            model = build_bm25_model(corpus)
            raw = score_bm25_batch(model, query)
            if any(raw[doc_id] > 0 for doc_id, _ in docs):
                normalized = normalize_bm25_scores(model, raw, query)
                return {doc_id: normalized[doc_id] for doc_id, _ in docs}
        return {doc_id: estimate_similarity(query, content) for doc_id, content in docs}

    async def _dense_scores(self, query: str, docs: List[Tuple[str, str]]) -> Dict[str, float]:
        provider = self.dense_score_provider
        if provider is None or not docs:
            return {}

        candidates = [DenseScoreCandidate(node_id=doc_id, content=content) for doc_id, content in docs]
        timeout = max(0.001, provider.request_timeout_ms / 1000.0)
        try:
            scores = await asyncio.wait_for(provider.get_dense_scores(query, candidates), timeout=timeout)
        except asyncio.TimeoutError as e:
            failure: Exception = DenseScoreError(f"Dense scoring timed out after {provider.request_timeout_ms}ms")
            failure.__cause__ = e
        except DenseScoreError as e:
            failure = e
        except Exception as e:
            failure = DenseScoreError(f"Dense scoring failed: {e}")
            failure.__cause__ = e
        else:
            wanted = {doc_id for doc_id, _ in docs}
            return {doc_id: clamp01(score) for doc_id, score in scores.items() if doc_id in wanted}

        if provider.strict_mode:
            raise failure
        logger.warning(f"Dense scoring unavailable, using sparse scores only: {failure}")
        return {}

    async def _rank(self, query: str, nodes: Sequence[IndexNode], texts: Dict[str, str],
                    rank_range: Tuple[int, int],
                    extra_docs: Sequence[Tuple[str, str]] = ()) -> List[ScoredNode]:
        docs = [(node.id, texts[node.id]) for node in nodes]
        sparse = self._sparse_scores(query, docs, extra_docs)
        dense = await self._dense_scores(query, docs)

        ranked = []
        for node in nodes:
            dense_score = dense.get(node.id)
            blended = blend_dense_sparse_scores(dense_score, sparse[node.id], self.dense_alpha)
            score = clamp01(blended + self._recency_bonus(node, rank_range))
            ranked.append(ScoredNode(node=node, score=score, sparse=sparse[node.id], dense=dense_score))

        ranked.sort(key=lambda item: (-item.score, -item.node.metadata.recency_rank))
        return ranked

    # ===== Retrieval =====

    async def retrieve(self,
                       index: LayeredContextIndexDocument,
                       query: str,
                       config: LayeredContextConfig) -> LayeredRetrievalResult:
        """
        Select layered context for ``query`` from an index snapshot.

        Raises:
            DenseScoreError: Only when a strict dense provider fails
        """
        mode = classify_query(query)
        with tracer.start_as_current_span("layered_context.retrieve", attributes={
            "layered_context.session_key": index.session_key,
            "layered_context.node_count": len(index.nodes),
            "layered_context.query_mode": mode.value,
        }) as span:
            try:
                result = await self._retrieve(index, query, config, mode)
            except DenseScoreError as e:
                span.record_exception(e)
                span.set_status(trace.Status(trace.StatusCode.ERROR, str(e)))
                raise

            span.set_attribute("layered_context.reached_layer", result.decision.reached_layer.value)
            span.set_attribute("layered_context.tokens.total", result.token_usage.total)
            span.set_attribute("layered_context.tokens.savings", result.token_usage.savings)
            return result

    async def _retrieve(self, index: LayeredContextIndexDocument, query: str,
                        config: LayeredContextConfig, mode: QueryMode) -> LayeredRetrievalResult:
        if not index.nodes:
            return LayeredRetrievalResult(
                selections=[],
                decision=EscalationDecision(ContextLayer.L0, NO_NODES_REASON, 0.0, 0.0, mode),
                token_usage=TokenUsage(),
            )

        thresholds = config.retrieval_escalation_thresholds
        score_threshold, margin_threshold = adapt_thresholds(thresholds, mode, len(tokenize(query)))
        budget = layered_budget(config)
        ranks = [node.metadata.recency_rank for node in index.nodes]
        rank_range = (min(ranks), max(ranks))

        # L0: abstracts + keywords, with the root abstract in the corpus
        l0_texts = {node.id: f"{node.abstract}\n{' '.join(node.keywords)}" for node in index.nodes}
        root_text = f"{index.root.abstract}\n{' '.join(index.root.keywords)}".strip()
        extra_docs = [(ROOT_NODE_ID, root_text)] if root_text else []
        l0_ranked = await self._rank(query, index.nodes, l0_texts, rank_range, extra_docs)
        top1, margin = _top_scores(l0_ranked)

        high_confidence = top1 >= score_threshold and margin >= margin_threshold
        if high_confidence and mode is QueryMode.BROAD:
            decision = EscalationDecision(
                ContextLayer.L0,
                f"High-confidence L0 match (top1={top1:.3f}, margin={margin:.3f}).",
                top1, margin, mode,
            )
            candidates = [
                (item, ContextLayer.L0, item.node.abstract, "High L0 match.")
                for item in l0_ranked[:L0_SELECTION_LIMIT]
            ]
            return self._select(index, config, decision, candidates, budget)

        # L1: rerank the best L0 candidates by their overviews
        l1_pool = [item.node for item in l0_ranked[:thresholds.max_items_for_l1]]
        l1_texts = {node.id: f"{node.overview}\n{' '.join(node.keywords)}" for node in l1_pool}
        l1_ranked = await self._rank(query, l1_pool, l1_texts, rank_range)
        l1_top1, l1_margin = _top_scores(l1_ranked)
        l1_confident = (l1_top1 >= score_threshold * L1_THRESHOLD_FACTOR
                        and l1_margin >= margin_threshold * L1_MARGIN_FACTOR)

        if mode is not QueryMode.PRECISE and l1_confident:
            decision = EscalationDecision(
                ContextLayer.L1,
                f"L0 confidence insufficient for a {mode.value} query; L1 confidence acceptable "
                f"(top1={l1_top1:.3f}, margin={l1_margin:.3f}).",
                l1_top1, l1_margin, mode,
            )
            candidates = [
                (item, ContextLayer.L1, item.node.overview, "L1 contextual understanding required.")
                for item in l1_ranked
            ]
            return self._select(index, config, decision, candidates, budget)

        # L2: carry a few overviews for scope, then full transcripts
        reason = ("Precise query; L2 evidence required." if mode is QueryMode.PRECISE
                  else f"Low confidence after L1 (top1={l1_top1:.3f}, margin={l1_margin:.3f}); "
                       f"L2 escalation required.")
        decision = EscalationDecision(ContextLayer.L2, reason, l1_top1, l1_margin, mode)

        carry = max(1, thresholds.max_items_for_l1 - thresholds.max_items_for_l2)
        candidates = [
            (item, ContextLayer.L1, item.node.overview, "Carry L1 scope context before L2 evidence.")
            for item in l1_ranked[:carry]
        ]

        l2_nodes: List[IndexNode] = []
        transcripts: Dict[str, str] = {}
        for item in l1_ranked[:thresholds.max_items_for_l2]:
            archive = await self.storage.read_archive(item.node.full_content_path)
            if archive is None or not archive.transcript:
                logger.warning(f"Archive missing for node {item.node.id} at {item.node.full_content_path}")
                continue
            l2_nodes.append(item.node)
            transcripts[item.node.id] = archive.transcript

        if l2_nodes:
            l2_ranked = await self._rank(query, l2_nodes, transcripts, rank_range)
            candidates.extend(
                (item, ContextLayer.L2, transcripts[item.node.id], "L2 exact evidence retrieval.")
                for item in l2_ranked
            )

        return self._select(index, config, decision, candidates, budget)

    def _select(self, index: LayeredContextIndexDocument, config: LayeredContextConfig,
                decision: EscalationDecision, candidates, budget: int) -> LayeredRetrievalResult:
        """Root abstract first, then candidates in order until one would overflow the budget."""
        selections: List[LayeredContextSelection] = []
        used = 0

        root_abstract = trim_to_token_target(index.root.abstract, config.l0_target_tokens)
        if root_abstract:
            root_tokens = estimate_text_tokens(root_abstract)
            selections.append(LayeredContextSelection(
                node_id=ROOT_NODE_ID,
                layer=ContextLayer.L0,
                content=root_abstract,
                score=decision.top1_score,
                estimated_tokens=root_tokens,
                reason="Global context summary for navigation.",
            ))
            used += root_tokens

        for scored, layer, content, reason in candidates:
            if not content:
                continue
            tokens = estimate_text_tokens(content)
            if used + tokens > budget:
                logger.debug(f"Layered budget {budget} reached at node {scored.node.id} ({layer.value}, {tokens} tokens)")
                break
            used += tokens
            selections.append(LayeredContextSelection(
                node_id=scored.node.id,
                layer=layer,
                content=content,
                score=scored.score,
                estimated_tokens=tokens,
                reason=reason,
            ))

        usage = self._account(index, selections)
        logger.debug(
            f"Retrieval for {index.session_key}: {decision.reached_layer.value}, "
            f"{len(selections)} selections, {usage.total}/{budget} tokens"
        )
        return LayeredRetrievalResult(selections=selections, decision=decision, token_usage=usage)

    @staticmethod
    def _account(index: LayeredContextIndexDocument,
                 selections: Sequence[LayeredContextSelection]) -> TokenUsage:
        per_layer = {layer: 0 for layer in ContextLayer}
        for selection in selections:
            per_layer[selection.layer] += selection.estimated_tokens
        total = sum(per_layer.values())
        baseline = sum(node.token_estimate.l2 for node in index.nodes)
        savings = baseline - total
        return TokenUsage(
            l0=per_layer[ContextLayer.L0],
            l1=per_layer[ContextLayer.L1],
            l2=per_layer[ContextLayer.L2],
            total=total,
            baseline_l2=baseline,
            savings=savings,
            savings_ratio=savings / baseline if baseline > 0 else 0.0,
        )
