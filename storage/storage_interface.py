"""
Abstract storage interface for layered context persistence.

Defines the contract that all storage backends must implement: one index
document per session key plus write-once archive blobs addressed by a
relative path.
"""

from abc import ABC, abstractmethod
from typing import Dict, Any, Optional
import logging
from urllib.parse import quote

from layered_context.types import ArchivePayload, LayeredContextIndexDocument

logger = logging.getLogger(__name__)

# quote() keeps "." as is, so "%2E" and a lone "%" never come out of it
_RESERVED_SEGMENTS = {"": "%", ".": "%2E", "..": "%2E%2E"}


def safe_key(value: str) -> str:
    """
    Percent-encode a session key or node id into one path segment.

    The mapping is injective, so two distinct keys never share a directory.
    """
    return _RESERVED_SEGMENTS.get(value) or quote(value, safe="")


class LayeredContextStorage(ABC):
    """
    Abstract base class for all layered context storage backends.

    Write methods never raise on I/O problems: they log the failure and
    return False so the indexer can abandon the chunk atomically.
    """

    def __init__(self, storage_config: Dict[str, Any]):
        """
        Initialize the storage backend.

        Args:
            storage_config: Configuration dictionary specific to the storage type
        """
        self.config = storage_config
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    @abstractmethod
    async def initialize(self) -> bool:
        """
        Initialize the storage backend.

        Returns:
            True if initialization succeeded, False otherwise
        """
        pass

    @abstractmethod
    async def shutdown(self) -> bool:
        """
        Properly shutdown the storage backend.

        Returns:
            True if shutdown succeeded, False otherwise
        """
        pass

    # ===== Index Documents =====

    @abstractmethod
    async def read_index(self, session_key: str) -> Optional[LayeredContextIndexDocument]:
        """
        Load the index document for a session.

        Args:
            session_key: Session key (``platform:chat_id``)

        Returns:
            The index document, or None if it is missing or cannot be parsed
        """
        pass

    @abstractmethod
    async def write_index(self, session_key: str, document: LayeredContextIndexDocument) -> bool:
        """
        Atomically replace the index document for a session.

        A crash mid-write must leave either the previous document or the new
        one, never a partial document.

        Returns:
            True if the document was durably written, False otherwise
        """
        pass

    def _parse_index(self, session_key: str, data: Any) -> Optional[LayeredContextIndexDocument]:
        """Build an index document from stored JSON, or None if it is corrupt or belongs to another session."""
        try:
            document = LayeredContextIndexDocument.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            self.logger.error(f"Corrupt index document for session {session_key}: {e}", exc_info=True)
            return None
        if document.session_key != session_key:
            self.logger.error(
                f"Index stored for {session_key} belongs to session {document.session_key}; ignoring it"
            )
            return None
        return document

    # ===== Archives =====

    def archive_path(self, session_key: str, node_id: str) -> str:
        """Relative path under which the archive for ``node_id`` is stored."""
        return f"{safe_key(session_key)}/archives/{safe_key(node_id)}.json"

    @abstractmethod
    async def write_archive(self, path: str, payload: ArchivePayload) -> bool:
        """
        Write an archive blob exactly once.

        Args:
            path: Relative path from ``archive_path``
            payload: Transcript and raw messages of one node

        Returns:
            True if written; False if the path already exists (the stored
            content is left untouched) or the write failed
        """
        pass

    @abstractmethod
    async def read_archive(self, path: str) -> Optional[ArchivePayload]:
        """
        Load an archive blob.

        Returns:
            The payload, or None if the path was never written
        """
        pass

    async def health_check(self) -> Dict[str, Any]:
        return {"status": "unknown", "storage_type": self.__class__.__name__}
