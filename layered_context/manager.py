"""
Manager: the entry point hosts call once per inbound turn.

``apply`` composes two independent phases, ``maybe_archive`` (mutation, via
the indexer) and ``retrieve`` (read-only, via the retriever), and then
rewrites the outgoing message list:

    [layered context block] + un-archived history + [current query turn]
"""

import logging
from typing import Any, Dict, List, Optional

from opentelemetry import trace

from host.observability import get_tracer
from storage.storage_interface import LayeredContextStorage
from .config import LayeredContextConfig, normalize_layered_config
from .errors import DenseScoreError
from .indexer import LayeredContextIndexer
from .message_utils import get_latest_user_query
from .metrics import LayeredContextMetrics
from .retriever import LayeredContextRetriever
from .token_estimator import estimate_messages_tokens
from .types import (
    ArchiveOutcome,
    ContextLayer,
    LayeredContextApplication,
    LayeredContextIndexDocument,
    LayeredRetrievalResult,
)

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)

FALLBACK_DENSE_SCORES_FAILED = "dense_scores_failed"


def build_layered_prompt_block(retrieval: LayeredRetrievalResult) -> str:
    """Render selections grouped L0 -> L1 -> L2, with the decision and token usage."""
    decision = retrieval.decision
    usage = retrieval.token_usage
    lines = [
        "Layered context package (L0/L1/L2) generated from archived history.",
        f"Escalation decision: {decision.reached_layer.value} ({decision.reason})",
        "",
    ]

    for layer in ContextLayer:
        items = [s for s in retrieval.selections if s.layer is layer]
        if not items:
            continue
        lines.append(f"{layer.value} context:")
        for item in items:
            lines.append(f"- [{layer.value}] node={item.node_id}, score={item.score:.3f}, tokens={item.estimated_tokens}")
            lines.append(item.content)
        lines.append("")

    lines.append(f"Layer token usage: L0={usage.l0}, L1={usage.l1}, L2={usage.l2}, total={usage.total}")
    lines.append(
        f"Baseline L2={usage.baseline_l2}, savings={usage.savings} ({usage.savings_ratio * 100:.1f}%)"
    )
    return "\n".join(lines)


def _has_block(message: Dict[str, Any], block_type: str) -> bool:
    content = message.get("content")
    return isinstance(content, list) and any(
        isinstance(block, dict) and block.get("type") == block_type for block in content
    )


def trim_to_prompt_budget(messages: List[Dict[str, Any]], max_prompt_tokens: int) -> List[Dict[str, Any]]:
    """
    Drop the oldest verbatim turns (index 1 onward) while over budget.

    The layered block at index 0 and the final query turn are never dropped.
    A tool_result left without its tool_use is dropped with it.
    """
    trimmed = list(messages)
    while len(trimmed) > 2 and estimate_messages_tokens(trimmed) > max_prompt_tokens:
        removed = trimmed.pop(1)
        if _has_block(removed, "tool_use") and len(trimmed) > 2 and _has_block(trimmed[1], "tool_result"):
            trimmed.pop(1)
    return trimmed


class LayeredContextManager:
    """Orchestrates archiving, retrieval and prompt rewriting."""

    def __init__(self,
                 storage: LayeredContextStorage,
                 indexer: LayeredContextIndexer,
                 retriever: LayeredContextRetriever,
                 default_config: Optional[LayeredContextConfig] = None):
        self.storage = storage
        self.indexer = indexer
        self.retriever = retriever
        self.default_config = normalize_layered_config(default_config)
        self.metrics = LayeredContextMetrics()

    def get_metrics_snapshot(self) -> Dict[str, Any]:
        return self.metrics.snapshot()

    def _resolve_config(self, config: Optional[LayeredContextConfig]) -> LayeredContextConfig:
        return normalize_layered_config(config) if config is not None else self.default_config

    async def maybe_archive(self,
                            session_key: str,
                            messages: List[Dict[str, Any]],
                            config: Optional[LayeredContextConfig] = None,
                            platform: str = "",
                            chat_id: Optional[str] = None) -> Optional[ArchiveOutcome]:
        """
        Archive whatever part of ``messages`` has aged out of the verbatim window.

        ``messages`` is the full list including the trailing query turn. The
        query turn and the last ``max_recent_messages`` turns are never archived.

        Returns:
            The indexer outcome, or None when nothing is old enough
        """
        config = self._resolve_config(config)
        historical = messages[:-1]
        if len(historical) <= config.max_recent_messages:
            return None

        archivable = historical[:-config.max_recent_messages]
        outcome = await self.indexer.archive_messages(session_key, archivable, config,
                                                      platform=platform, chat_id=chat_id)
        if outcome.fallback_events:
            self.metrics.record_fallback(len(outcome.fallback_events))
        return outcome

    async def retrieve(self,
                       session_key: str,
                       query: str,
                       config: Optional[LayeredContextConfig] = None,
                       index: Optional[LayeredContextIndexDocument] = None) -> Optional[LayeredRetrievalResult]:
        """
        Retrieve layered context from a snapshot of the session's index.

        Args:
            index: Snapshot to use; loaded from storage when None

        Returns:
            The retrieval result, or None when the session has no archived nodes

        Raises:
            DenseScoreError: When a strict dense provider fails
        """
        config = self._resolve_config(config)
        if index is None:
            index = await self.storage.read_index(session_key)
        if index is None or not index.nodes:
            return None
        return await self.retriever.retrieve(index, query, config)

    async def apply(self,
                    session_key: str,
                    platform: str,
                    chat_id: Optional[str],
                    query: str,
                    messages: List[Dict[str, Any]],
                    config: Optional[LayeredContextConfig] = None) -> LayeredContextApplication:
        """
        Replace archived history in ``messages`` with layered context.

        Args:
            session_key: Session key, usually from ``build_session_key``
            platform: Messaging platform name, recorded on new nodes
            chat_id: Chat identifier, recorded on new nodes
            query: Current user query; the latest user turn is used when empty
            messages: Full message list, oldest first, ending with the query turn
            config: Per-call configuration; the manager default when None

        Returns:
            ``updated_messages`` equals ``messages`` whenever ``applied`` is False
        """
        config = self._resolve_config(config)
        unchanged = LayeredContextApplication(updated_messages=messages, applied=False)

        if not config.enable_session_compression or len(messages) <= config.max_recent_messages + 1:
            return unchanged

        with tracer.start_as_current_span("layered_context.apply", attributes={
            "layered_context.session_key": session_key,
            "layered_context.platform": platform,
            "layered_context.message_count": len(messages),
        }) as span:
            outcome = await self.maybe_archive(session_key, messages, config,
                                               platform=platform, chat_id=chat_id)
            fallback_events = list(outcome.fallback_events) if outcome else []
            index = outcome.index if outcome else None
            archived_count = index.archived_message_count if index else 0
            unchanged = LayeredContextApplication(
                updated_messages=messages,
                applied=False,
                fallback_events=fallback_events,
                archived_message_count=archived_count,
            )

            historical = messages[:-1]
            archivable_count = len(historical) - config.max_recent_messages
            if index is None or not index.nodes or archived_count > archivable_count:
                span.set_attribute("layered_context.applied", False)
                return unchanged

            effective_query = query.strip() if query else ""
            if not effective_query:
                effective_query = get_latest_user_query(messages)

            try:
                retrieval = await self.retrieve(session_key, effective_query, config, index=index)
            except DenseScoreError as e:
                logger.warning(f"Session {session_key}: strict dense scoring failed, skipping layering this turn: {e}")
                self.metrics.record_fallback()
                unchanged.fallback_events.append(FALLBACK_DENSE_SCORES_FAILED)
                span.record_exception(e)
                span.set_status(trace.Status(trace.StatusCode.ERROR, str(e)))
                span.set_attribute("layered_context.applied", False)
                return unchanged

            if retrieval is None:
                return unchanged
            self.metrics.record_retrieval(retrieval)

            kept = historical[archived_count:]
            current = messages[-1]
            anchor = kept[0] if kept else current
            synthetic_role = "user" if anchor.get("role") == "assistant" else "assistant"
            layered_message = {"role": synthetic_role, "content": build_layered_prompt_block(retrieval)}

            updated = trim_to_prompt_budget([layered_message] + kept + [current], config.max_prompt_tokens)

            span.set_attribute("layered_context.applied", True)
            span.set_attribute("layered_context.reached_layer", retrieval.decision.reached_layer.value)
            span.set_attribute("layered_context.verbatim_messages", len(updated) - 2)
            logger.info(
                f"Session {session_key}: layered context applied at {retrieval.decision.reached_layer.value}, "
                f"{len(messages)} -> {len(updated)} messages, savings {retrieval.token_usage.savings} tokens"
            )
            return LayeredContextApplication(
                updated_messages=updated,
                applied=True,
                retrieval=retrieval,
                fallback_events=fallback_events,
                archived_message_count=archived_count,
            )
