"""
Indexer: archives aging conversation into the layered index.

Every chunk becomes exactly one ``IndexNode``:

1. the summarizer produces the overview, abstract contribution and keywords;
2. the transcript is written to a new, write-once archive path;
3. the node is appended with the next recency rank;
4. the contribution is merged into the root abstract and keywords;
5. the index document is rewritten atomically.

A failure at any step abandons the chunk without touching the stored index,
and the chunk's messages stay raw until a later call retries them. All
read-modify-write cycles for one session run under that session's lock.
"""

import asyncio
import hashlib
import logging
import time
import uuid
import weakref
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional

from opentelemetry import trace

from host.observability import get_tracer
from storage.storage_interface import LayeredContextStorage
from .config import LayeredContextConfig
from .errors import SummarizerError
from .message_utils import split_complete_chunks, to_transcript
from .summarizer import Summarizer
from .text_utils import merge_keywords, normalize_whitespace, trim_to_token_target
from .token_estimator import estimate_text_tokens
from .types import (
    ArchiveOutcome,
    ArchivePayload,
    IndexNode,
    IndexRoot,
    LayeredContextIndexDocument,
    NodeMetadata,
    TokenEstimate,
)

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)

RetentionPolicy = Callable[[LayeredContextIndexDocument, LayeredContextConfig], LayeredContextIndexDocument]

FALLBACK_SUMMARIZER_FAILED = "summarizer_failed"
FALLBACK_ARCHIVE_WRITE_FAILED = "archive_write_failed"
FALLBACK_INDEX_WRITE_FAILED = "index_write_failed"
FALLBACK_HISTORY_RESET = "history_reset"


def checksum_of_text(text: str) -> str:
    return hashlib.sha1(text.encode("utf-8")).hexdigest()


def merge_root_abstract(current: str, delta: str, target_tokens: int) -> str:
    """
    Append ``delta`` as a new line, dropping the oldest lines until the
    abstract fits ``target_tokens``. The newest line is trimmed if it alone
    does not fit.
    """
    lines = [line for line in normalize_whitespace(current).split("\n") if line.strip()]
    delta = normalize_whitespace(delta).replace("\n", " ")
    if delta:
        lines.append(delta)
    while len(lines) > 1 and estimate_text_tokens("\n".join(lines)) > target_tokens:
        lines.pop(0)
    return trim_to_token_target("\n".join(lines), target_tokens)


class LayeredContextIndexer:
    """Sole mutator of layered index documents."""

    def __init__(self,
                 storage: LayeredContextStorage,
                 summarizer: Summarizer,
                 retention_policy: Optional[RetentionPolicy] = None):
        """
        Args:
            storage: Backend for index documents and archives
            summarizer: Produces chunk summaries
            retention_policy: Optional hook applied to the document before it
                is written, e.g. to prune nodes beyond ``max_archives``.
                Without one, nodes are never removed.
        """
        self.storage = storage
        self.summarizer = summarizer
        self.retention_policy = retention_policy
        # a lock lives only while some call holds or waits on it
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, session_key: str) -> asyncio.Lock:
        lock = self._locks.get(session_key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_key] = lock
        return lock

    async def _load_or_create(self, session_key: str) -> LayeredContextIndexDocument:
        document = await self.storage.read_index(session_key)
        if document is None:
            logger.debug(f"No usable index for {session_key}; starting an empty one")
            return LayeredContextIndexDocument.empty(session_key)
        return document

    async def archive_messages(self,
                               session_key: str,
                               archivable_messages: List[Dict[str, Any]],
                               config: LayeredContextConfig,
                               platform: str = "",
                               chat_id: Optional[str] = None) -> ArchiveOutcome:
        """
        Archive every complete chunk of ``archivable_messages`` not yet covered.

        ``archivable_messages`` is the session's history from its first message
        up to (not including) the turns that must stay verbatim. The index's
        ``archived_message_count`` marks how much of it is already archived.

        Returns:
            The resulting index snapshot and what this call archived
        """
        with tracer.start_as_current_span("layered_context.archive", attributes={
            "layered_context.session_key": session_key,
            "layered_context.archivable_messages": len(archivable_messages),
        }) as span:
            async with self._lock_for(session_key):
                document = await self._load_or_create(session_key)
                outcome = ArchiveOutcome(index=document,
                                         archived_message_count=document.archived_message_count)

                cursor = document.archived_message_count
                if cursor > len(archivable_messages):
                    logger.warning(
                        f"Session {session_key}: archive cursor {cursor} is past the supplied history "
                        f"({len(archivable_messages)} messages); skipping archiving"
                    )
                    outcome.fallback_events.append(FALLBACK_HISTORY_RESET)
                    return outcome

                chunks, _ = split_complete_chunks(archivable_messages[cursor:], config.archive_chunk_size)
                for chunk in chunks:
                    updated, event = await self._archive_chunk_locked(
                        document, chunk, config, platform, chat_id,
                        start_message_index=document.archived_message_count,
                    )
                    if updated is None:
                        outcome.fallback_events.append(event)
                        break
                    document = updated
                    outcome.archived_node_ids.append(document.nodes[-1].id)

                outcome.index = document
                outcome.archived_message_count = document.archived_message_count
                span.set_attribute("layered_context.archived_nodes", len(outcome.archived_node_ids))
                span.set_attribute("layered_context.node_count", len(document.nodes))
                if outcome.fallback_events:
                    span.set_status(trace.Status(trace.StatusCode.ERROR, ", ".join(outcome.fallback_events)))
                return outcome

    async def archive_chunk(self,
                            session_key: str,
                            chunk: List[Dict[str, Any]],
                            config: LayeredContextConfig,
                            platform: str = "",
                            chat_id: Optional[str] = None) -> ArchiveOutcome:
        """
        Archive ``chunk`` as one new node, regardless of the history cursor.

        For hosts that do their own chunking; the cursor still advances by
        ``len(chunk)``.
        """
        with tracer.start_as_current_span("layered_context.archive_chunk", attributes={
            "layered_context.session_key": session_key,
            "layered_context.chunk_messages": len(chunk),
        }):
            async with self._lock_for(session_key):
                document = await self._load_or_create(session_key)
                updated, event = await self._archive_chunk_locked(
                    document, chunk, config, platform, chat_id,
                    start_message_index=document.archived_message_count,
                )
                if updated is None:
                    return ArchiveOutcome(index=document,
                                          archived_message_count=document.archived_message_count,
                                          fallback_events=[event])
                return ArchiveOutcome(index=updated,
                                      archived_node_ids=[updated.nodes[-1].id],
                                      archived_message_count=updated.archived_message_count)

    async def _archive_chunk_locked(self,
                                    document: LayeredContextIndexDocument,
                                    chunk: List[Dict[str, Any]],
                                    config: LayeredContextConfig,
                                    platform: str,
                                    chat_id: Optional[str],
                                    start_message_index: int):
        """
        Archive one chunk on top of ``document``; caller holds the session lock.

        Returns:
            ``(new_document, None)`` on success, ``(None, fallback_event)`` otherwise
        """
        session_key = document.session_key
        transcript = to_transcript(chunk)

        try:
            summary = await self.summarizer.summarize(chunk, config)
        except SummarizerError as e:
            logger.warning(f"Session {session_key}: summarizer failed, chunk stays raw: {e}")
            return None, FALLBACK_SUMMARIZER_FAILED
        except Exception as e:
            logger.error(f"Session {session_key}: unexpected summarizer error, chunk stays raw: {e}", exc_info=True)
            return None, FALLBACK_SUMMARIZER_FAILED

        now = time.time()
        node_id = f"node_{uuid.uuid4().hex}"
        path = self.storage.archive_path(session_key, node_id)
        payload = ArchivePayload(
            session_key=session_key,
            node_id=node_id,
            transcript=transcript,
            messages=list(chunk),
            created_at=now,
        )
        if not await self.storage.write_archive(path, payload):
            logger.error(f"Session {session_key}: archive write failed for {node_id}; chunk stays raw")
            return None, FALLBACK_ARCHIVE_WRITE_FAILED

        abstract = trim_to_token_target(summary.abstract_delta, config.l0_target_tokens)
        overview = trim_to_token_target(summary.overview, config.l1_target_tokens)
        keywords = merge_keywords(summary.keywords)
        node = IndexNode(
            id=node_id,
            abstract=abstract,
            overview=overview,
            full_content_path=path,
            keywords=keywords,
            checksum=checksum_of_text(transcript),
            token_estimate=TokenEstimate(
                l0=estimate_text_tokens(abstract),
                l1=estimate_text_tokens(overview),
                l2=estimate_text_tokens(transcript),
            ),
            metadata=NodeMetadata(
                recency_rank=document.max_recency_rank() + 1,
                platform=platform,
                chat_id=chat_id,
                start_message_index=start_message_index,
                end_message_index=start_message_index + len(chunk) - 1,
                message_count=len(chunk),
            ),
            created_at=now,
        )

        root = IndexRoot(
            abstract=merge_root_abstract(document.root.abstract, abstract, config.l0_target_tokens),
            keywords=merge_keywords(keywords, document.root.keywords),
            child_ids=document.root.child_ids + [node_id],
            updated_at=now,
        )
        candidate = replace(
            document,
            root=root,
            nodes=document.nodes + [node],
            archived_message_count=document.archived_message_count + len(chunk),
            updated_at=now,
        )

        if self.retention_policy is not None:
            candidate = self.retention_policy(candidate, config)
        elif len(candidate.nodes) > config.max_archives:
            logger.warning(
                f"Session {session_key}: {len(candidate.nodes)} archived nodes exceed max_archives="
                f"{config.max_archives}; no retention policy configured"
            )

        if not await self.storage.write_index(session_key, candidate):
            # The orphaned archive is harmless: no index entry points at it
            logger.error(f"Session {session_key}: index write failed; node {node_id} discarded")
            return None, FALLBACK_INDEX_WRITE_FAILED

        logger.info(
            f"Session {session_key}: archived {len(chunk)} messages as {node_id} "
            f"(rank {node.metadata.recency_rank}, l2={node.token_estimate.l2} tokens)"
        )
        return candidate, None
