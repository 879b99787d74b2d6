"""
Shared fixtures for layered context tests.
"""

import asyncio
import time
from typing import Any, Dict, List, Optional

import pytest

from layered_context.config import LayeredContextConfig
from layered_context.dense_scores import DenseScoreProvider
from layered_context.text_utils import merge_keywords
from layered_context.token_estimator import estimate_text_tokens
from layered_context.types import (
    ArchivePayload,
    IndexNode,
    IndexRoot,
    LayeredContextIndexDocument,
    NodeMetadata,
    TokenEstimate,
)
from storage.file_storage import FileStorage


class StubDenseProvider(DenseScoreProvider):
    """Dense provider returning canned scores, failing, or stalling on demand."""

    def __init__(self, scores: Optional[Dict[str, float]] = None, error: Optional[Exception] = None,
                 delay: float = 0.0, strict_mode: bool = False, request_timeout_ms: int = 1200):
        self.scores = scores or {}
        self.error = error
        self.delay = delay
        self.strict_mode = strict_mode
        self.request_timeout_ms = request_timeout_ms
        self.calls = []

    async def get_dense_scores(self, query, candidates):
        self.calls.append((query, [candidate.node_id for candidate in candidates]))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return {c.node_id: self.scores[c.node_id] for c in candidates if c.node_id in self.scores}


# --- Fixtures ---

@pytest.fixture
def storage(tmp_path):
    """
    File storage rooted in a temporary directory.
    """
    return FileStorage({'base_dir': str(tmp_path / 'layered'), 'fsync_writes': False})


@pytest.fixture
def small_config():
    """
    Config small enough that a handful of messages triggers archiving.
    """
    return LayeredContextConfig(
        max_recent_messages=4,
        archive_chunk_size=4,
        max_prompt_tokens=4000,
    )


@pytest.fixture
def make_messages():
    """
    Factory for alternating user/assistant messages, user first.
    """
    def _make(count: int, topic: str = "topic", start: int = 0) -> List[Dict[str, Any]]:
        messages = []
        for i in range(start, start + count):
            role = "user" if i % 2 == 0 else "assistant"
            messages.append({"role": role, "content": f"Message {i} talks about {topic} number {i}."})
        return messages
    return _make


@pytest.fixture
def make_dense_provider():
    """
    Factory for StubDenseProvider instances.
    """
    return StubDenseProvider


@pytest.fixture
def seed_index(storage):
    """
    Write an index document and its archives straight into storage.

    Each entry is a dict with ``abstract``, ``overview``, ``transcript`` and
    optional ``keywords``; entries get recency ranks 1..n in order.
    """
    async def _seed(session_key: str, entries: List[Dict[str, Any]]) -> LayeredContextIndexDocument:
        now = time.time()
        nodes = []
        for rank, entry in enumerate(entries, start=1):
            node_id = entry.get("id", f"node_{rank}")
            path = storage.archive_path(session_key, node_id)
            written = await storage.write_archive(path, ArchivePayload(
                session_key=session_key,
                node_id=node_id,
                transcript=entry["transcript"],
                messages=[{"role": "user", "content": entry["transcript"]}],
                created_at=now,
            ))
            assert written
            nodes.append(IndexNode(
                id=node_id,
                abstract=entry["abstract"],
                overview=entry["overview"],
                full_content_path=path,
                keywords=list(entry.get("keywords", [])),
                checksum=f"checksum-{rank}",
                token_estimate=TokenEstimate(
                    l0=estimate_text_tokens(entry["abstract"]),
                    l1=estimate_text_tokens(entry["overview"]),
                    l2=estimate_text_tokens(entry["transcript"]),
                ),
                metadata=NodeMetadata(
                    recency_rank=rank,
                    platform="test",
                    chat_id="chat",
                    start_message_index=(rank - 1) * 4,
                    end_message_index=rank * 4 - 1,
                    message_count=4,
                ),
                created_at=now,
            ))

        document = LayeredContextIndexDocument(
            session_key=session_key,
            root=IndexRoot(
                abstract="\n".join(entry["abstract"] for entry in entries),
                keywords=merge_keywords(*[entry.get("keywords", []) for entry in entries]),
                child_ids=[node.id for node in nodes],
                updated_at=now,
            ),
            nodes=nodes,
            archived_message_count=4 * len(entries),
        )
        assert await storage.write_index(session_key, document)
        return document
    return _seed


@pytest.fixture
def topic_entries():
    """
    Five archived chunks on unrelated topics; the third one covers the
    Kubernetes cluster upgrade.
    """
    return [
        {
            "abstract": "Gardening chat about tomatoes and watering schedules.",
            "overview": "Archive summary:\n- USER: asked how often tomatoes need watering\n- ASSISTANT: every morning in summer",
            "transcript": "USER: How often should tomatoes get watered?\n\nASSISTANT: Every morning in summer, less in spring.",
            "keywords": ["gardening", "tomatoes", "watering"],
        },
        {
            "abstract": "Travel plans for a weekend trip to Lisbon by train.",
            "overview": "Archive summary:\n- USER: wants a weekend in Lisbon\n- ASSISTANT: suggested the night train",
            "transcript": "USER: I want a weekend in Lisbon.\n\nASSISTANT: Take the night train and book early.",
            "keywords": ["travel", "lisbon", "train"],
        },
        {
            "abstract": "Kubernetes cluster upgrade plan agreed with ops team.",
            "overview": "Archive summary:\n- USER: the Kubernetes cluster upgrade starts Friday\n- ASSISTANT: drain nodes one by one during the cluster upgrade",
            "transcript": (
                "USER: The Kubernetes cluster upgrade starts Friday and the stack trace from staging worries me.\n\n"
                "ASSISTANT: Drain nodes one by one during the Kubernetes cluster upgrade and keep the stack trace for the ops team."
            ),
            "keywords": ["kubernetes", "cluster", "upgrade"],
        },
        {
            "abstract": "Recipe swap covering sourdough starters and baking times.",
            "overview": "Archive summary:\n- USER: sourdough starter feeding\n- ASSISTANT: feed twice daily",
            "transcript": "USER: How do I keep a sourdough starter alive?\n\nASSISTANT: Feed it twice daily at room temperature.",
            "keywords": ["recipe", "sourdough", "baking"],
        },
        {
            "abstract": "Budget review of monthly household spending categories.",
            "overview": "Archive summary:\n- USER: groceries went over\n- ASSISTANT: move savings target",
            "transcript": "USER: Groceries went over again this month.\n\nASSISTANT: Move part of the savings target to groceries.",
            "keywords": ["budget", "spending", "household"],
        },
    ]
