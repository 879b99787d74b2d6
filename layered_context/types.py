"""
Data model for the layered context engine.

Persisted records (index nodes, index documents, archive payloads) carry
``to_dict``/``from_dict`` pairs so that every storage backend can round-trip
them through JSON. Retrieval records are ephemeral and only expose ``to_dict``
for diagnostics.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Any, List, Optional


INDEX_DOCUMENT_VERSION = 1


def _mapping(data: Any, record: str) -> Dict[str, Any]:
    if not isinstance(data, dict):
        raise ValueError(f"{record} must be a JSON object, got {type(data).__name__}")
    return data


class ContextLayer(Enum):
    """Context tiers, ordered by specificity and cost."""
    L0 = "L0"  # session-wide root abstract and per-node abstracts
    L1 = "L1"  # per-node overview
    L2 = "L2"  # full archived transcript

    @property
    def depth(self) -> int:
        return int(self.value[1])

    def __lt__(self, other: "ContextLayer") -> bool:
        if not isinstance(other, ContextLayer):
            return NotImplemented
        return self.depth < other.depth


class QueryMode(Enum):
    """How a query is expected to be answered."""
    BROAD = "broad"
    STRUCTURED = "structured"
    PRECISE = "precise"


@dataclass
class TokenEstimate:
    l0: int = 0
    l1: int = 0
    l2: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {"l0": self.l0, "l1": self.l1, "l2": self.l2}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TokenEstimate":
        data = _mapping(data, "TokenEstimate")
        return cls(
            l0=int(data.get("l0", 0)),
            l1=int(data.get("l1", 0)),
            l2=int(data.get("l2", 0)),
        )


@dataclass
class NodeMetadata:
    """Bookkeeping attached to an archived node."""
    recency_rank: int
    platform: str = ""
    chat_id: Optional[str] = None
    start_message_index: int = 0
    end_message_index: int = 0
    message_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recency_rank": self.recency_rank,
            "platform": self.platform,
            "chat_id": self.chat_id,
            "start_message_index": self.start_message_index,
            "end_message_index": self.end_message_index,
            "message_count": self.message_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NodeMetadata":
        data = _mapping(data, "NodeMetadata")
        return cls(
            recency_rank=int(data["recency_rank"]),
            platform=data.get("platform", ""),
            chat_id=data.get("chat_id"),
            start_message_index=int(data.get("start_message_index", 0)),
            end_message_index=int(data.get("end_message_index", 0)),
            message_count=int(data.get("message_count", 0)),
        )


@dataclass(frozen=True)
class IndexNode:
    """
    One archived chunk of conversation.

    Nodes are created once by the indexer and never mutated afterwards; the
    L2 transcript lives in storage under ``full_content_path``.
    """
    id: str
    abstract: str
    overview: str
    full_content_path: str
    keywords: List[str]
    checksum: str
    token_estimate: TokenEstimate
    metadata: NodeMetadata
    created_at: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "abstract": self.abstract,
            "overview": self.overview,
            "full_content_path": self.full_content_path,
            "keywords": list(self.keywords),
            "checksum": self.checksum,
            "token_estimate": self.token_estimate.to_dict(),
            "metadata": self.metadata.to_dict(),
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IndexNode":
        data = _mapping(data, "IndexNode")
        return cls(
            id=data["id"],
            abstract=data.get("abstract", ""),
            overview=data.get("overview", ""),
            full_content_path=data["full_content_path"],
            keywords=list(data.get("keywords", [])),
            checksum=data.get("checksum", ""),
            token_estimate=TokenEstimate.from_dict(data.get("token_estimate", {})),
            metadata=NodeMetadata.from_dict(data["metadata"]),
            created_at=float(data.get("created_at", 0.0)),
        )


@dataclass
class IndexRoot:
    """The single L0 summary covering a session's whole archive."""
    abstract: str = ""
    keywords: List[str] = field(default_factory=list)
    child_ids: List[str] = field(default_factory=list)
    updated_at: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "abstract": self.abstract,
            "keywords": list(self.keywords),
            "child_ids": list(self.child_ids),
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IndexRoot":
        data = _mapping(data, "IndexRoot")
        return cls(
            abstract=data.get("abstract", ""),
            keywords=list(data.get("keywords", [])),
            child_ids=list(data.get("child_ids", [])),
            updated_at=float(data.get("updated_at", 0.0)),
        )


@dataclass
class LayeredContextIndexDocument:
    """
    Per-session index: the root abstract plus the append-only node list.

    ``archived_message_count`` is the cursor into the session's history; every
    message before it is covered by some node.
    """
    session_key: str
    root: IndexRoot = field(default_factory=IndexRoot)
    nodes: List[IndexNode] = field(default_factory=list)
    archived_message_count: int = 0
    version: int = INDEX_DOCUMENT_VERSION
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    @classmethod
    def empty(cls, session_key: str) -> "LayeredContextIndexDocument":
        return cls(session_key=session_key)

    def max_recency_rank(self) -> int:
        return max((node.metadata.recency_rank for node in self.nodes), default=0)

    def get_node(self, node_id: str) -> Optional[IndexNode]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "session_key": self.session_key,
            "root": self.root.to_dict(),
            "nodes": [node.to_dict() for node in self.nodes],
            "archived_message_count": self.archived_message_count,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LayeredContextIndexDocument":
        data = _mapping(data, "LayeredContextIndexDocument")
        raw_nodes = data.get("nodes", [])
        if not isinstance(raw_nodes, list):
            raise ValueError("Index document nodes must be a list")
        nodes = [IndexNode.from_dict(item) for item in raw_nodes]
        seen = set()
        for node in nodes:
            if node.id in seen:
                raise ValueError(f"Duplicate node id in index document: {node.id}")
            seen.add(node.id)
        return cls(
            session_key=data["session_key"],
            root=IndexRoot.from_dict(data.get("root", {})),
            nodes=nodes,
            archived_message_count=int(data.get("archived_message_count", 0)),
            version=int(data.get("version", INDEX_DOCUMENT_VERSION)),
            created_at=float(data.get("created_at", 0.0)),
            updated_at=float(data.get("updated_at", 0.0)),
        )


@dataclass(frozen=True)
class ArchivePayload:
    """Immutable L2 transcript blob for one node."""
    session_key: str
    node_id: str
    transcript: str
    messages: List[Dict[str, Any]]
    created_at: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_key": self.session_key,
            "node_id": self.node_id,
            "transcript": self.transcript,
            "messages": list(self.messages),
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ArchivePayload":
        data = _mapping(data, "ArchivePayload")
        return cls(
            session_key=data["session_key"],
            node_id=data["node_id"],
            transcript=data.get("transcript", ""),
            messages=list(data.get("messages", [])),
            created_at=float(data.get("created_at", 0.0)),
        )


@dataclass
class ChunkSummary:
    """What a summarizer returns for one chunk of raw messages."""
    overview: str
    abstract_delta: str
    keywords: List[str] = field(default_factory=list)


@dataclass
class EscalationDecision:
    reached_layer: ContextLayer
    reason: str
    top1_score: float
    top1_top2_margin: float
    query_mode: QueryMode

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reached_layer": self.reached_layer.value,
            "reason": self.reason,
            "top1_score": self.top1_score,
            "top1_top2_margin": self.top1_top2_margin,
            "query_mode": self.query_mode.value,
        }


@dataclass
class LayeredContextSelection:
    node_id: str
    layer: ContextLayer
    content: str
    score: float
    estimated_tokens: int
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "node_id": self.node_id,
            "layer": self.layer.value,
            "content": self.content,
            "score": self.score,
            "estimated_tokens": self.estimated_tokens,
            "reason": self.reason,
        }


@dataclass
class TokenUsage:
    l0: int = 0
    l1: int = 0
    l2: int = 0
    total: int = 0
    baseline_l2: int = 0
    savings: int = 0
    savings_ratio: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "l0": self.l0,
            "l1": self.l1,
            "l2": self.l2,
            "total": self.total,
            "baseline_l2": self.baseline_l2,
            "savings": self.savings,
            "savings_ratio": self.savings_ratio,
        }


@dataclass
class LayeredRetrievalResult:
    selections: List[LayeredContextSelection]
    decision: EscalationDecision
    token_usage: TokenUsage

    def to_dict(self) -> Dict[str, Any]:
        return {
            "selections": [s.to_dict() for s in self.selections],
            "decision": self.decision.to_dict(),
            "token_usage": self.token_usage.to_dict(),
        }


@dataclass
class ArchiveOutcome:
    """Result of one indexer run for a session."""
    index: LayeredContextIndexDocument
    archived_node_ids: List[str] = field(default_factory=list)
    archived_message_count: int = 0
    fallback_events: List[str] = field(default_factory=list)


@dataclass
class LayeredContextApplication:
    """Result of ``LayeredContextManager.apply``."""
    updated_messages: List[Dict[str, Any]]
    applied: bool
    retrieval: Optional[LayeredRetrievalResult] = None
    fallback_events: List[str] = field(default_factory=list)
    archived_message_count: int = 0
