"""
Layered context engine.

Compresses long conversation histories into a three-tier index (L0 root
abstract, L1 per-chunk overviews, L2 archived transcripts) and retrieves
just enough of it to answer each new query within a token budget.

Entry points live in submodules: ``layered_context.manager`` for the
``LayeredContextManager`` and ``layered_context.factory`` for default wiring.
Only the dependency-free data model is re-exported here, since storage
backends import it.
"""

from .types import (
    ContextLayer,
    QueryMode,
    IndexNode,
    IndexRoot,
    LayeredContextIndexDocument,
    ArchivePayload,
    ChunkSummary,
    EscalationDecision,
    LayeredContextSelection,
    TokenUsage,
    LayeredRetrievalResult,
    LayeredContextApplication,
)
from .config import LayeredContextConfig, RetrievalEscalationThresholds, normalize_layered_config
from .errors import LayeredContextError, SummarizerError, DenseScoreError, ConfigurationError

__all__ = [
    "ContextLayer",
    "QueryMode",
    "IndexNode",
    "IndexRoot",
    "LayeredContextIndexDocument",
    "ArchivePayload",
    "ChunkSummary",
    "EscalationDecision",
    "LayeredContextSelection",
    "TokenUsage",
    "LayeredRetrievalResult",
    "LayeredContextApplication",
    "LayeredContextConfig",
    "RetrievalEscalationThresholds",
    "normalize_layered_config",
    "LayeredContextError",
    "SummarizerError",
    "DenseScoreError",
    "ConfigurationError",
]
