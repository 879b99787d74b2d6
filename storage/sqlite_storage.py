"""
SQLite storage implementation.

Implements LayeredContextStorage on a single SQLite database. Index
documents are upserted in one transaction; archives use a primary key on
their path and a plain INSERT, so a second write to the same path is
rejected by the database.
"""

import asyncio
import json
import aiosqlite
from pathlib import Path
from typing import Dict, Any, Optional
from datetime import datetime, timezone

from layered_context.types import ArchivePayload, LayeredContextIndexDocument
from .storage_interface import LayeredContextStorage


class SQLiteStorage(LayeredContextStorage):
    """
    SQLite-based storage implementation.

    Offers the same contract as file storage with ACID transactions, which
    suits hosts that keep many sessions in one place.
    """

    def __init__(self, storage_config: Dict[str, Any]):
        super().__init__(storage_config)

        # Database file path
        self.db_path = Path(storage_config.get('db_path', './layered_context_data/layered_context.db'))

        # Connection settings
        self.connection_timeout = storage_config.get('connection_timeout', 30.0)
        self.enable_wal_mode = storage_config.get('enable_wal_mode', True)

        self._connection: Optional[aiosqlite.Connection] = None
        # aiosqlite serializes statements, but a transaction spans several awaits
        self._write_lock = asyncio.Lock()

        self.logger.info(f"SQLiteStorage initialized with db_path: {self.db_path}")

    async def initialize(self) -> bool:
        """Initialize the SQLite database and create tables."""
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

            self._connection = await aiosqlite.connect(
                str(self.db_path),
                timeout=self.connection_timeout
            )

            # Enable WAL mode for better concurrent access
            if self.enable_wal_mode:
                await self._connection.execute("PRAGMA journal_mode=WAL")
            await self._connection.execute("PRAGMA synchronous=FULL")

            await self._create_tables()
            await self._connection.commit()

            self.logger.info("SQLiteStorage initialized successfully")
            return True

        except Exception as e:
            self.logger.error(f"Failed to initialize SQLiteStorage: {e}", exc_info=True)
            return False

    async def shutdown(self) -> bool:
        """Close the database connection."""
        try:
            if self._connection:
                await self._connection.close()
                self._connection = None

            self.logger.info("SQLiteStorage shutdown completed")
            return True

        except Exception as e:
            self.logger.error(f"Error during SQLiteStorage shutdown: {e}", exc_info=True)
            return False

    async def _create_tables(self) -> None:
        """Create all necessary tables."""
        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS index_documents (
                session_key TEXT PRIMARY KEY,
                data TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS archives (
                path TEXT PRIMARY KEY,
                session_key TEXT NOT NULL,
                node_id TEXT NOT NULL,
                data TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
        """)

        await self._connection.execute(
            "CREATE INDEX IF NOT EXISTS idx_archives_session ON archives (session_key)"
        )

    def _require_connection(self) -> aiosqlite.Connection:
        if self._connection is None:
            raise RuntimeError("SQLiteStorage is not initialized")
        return self._connection

    # ===== Index Documents =====

    async def read_index(self, session_key: str) -> Optional[LayeredContextIndexDocument]:
        try:
            connection = self._require_connection()
            async with connection.execute(
                "SELECT data FROM index_documents WHERE session_key = ?", (session_key,)
            ) as cursor:
                row = await cursor.fetchone()
        except Exception as e:
            self.logger.error(f"Failed to load index for {session_key}: {e}", exc_info=True)
            return None

        if row is None:
            return None
        try:
            data = json.loads(row[0])
        except ValueError as e:
            self.logger.error(f"Corrupt index document for session {session_key}: {e}", exc_info=True)
            return None
        return self._parse_index(session_key, data)

    async def write_index(self, session_key: str, document: LayeredContextIndexDocument) -> bool:
        async with self._write_lock:
            try:
                connection = self._require_connection()
                now = datetime.now(timezone.utc).isoformat()
                await connection.execute(
                    """
                    INSERT INTO index_documents (session_key, data, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(session_key) DO UPDATE SET
                        data = excluded.data,
                        updated_at = excluded.updated_at
                    """,
                    (session_key, json.dumps(document.to_dict(), ensure_ascii=False), now)
                )
                await connection.commit()
                return True

            except Exception as e:
                self.logger.error(f"Failed to store index for {session_key}: {e}", exc_info=True)
                await self._safe_rollback()
                return False

    # ===== Archives =====

    async def write_archive(self, path: str, payload: ArchivePayload) -> bool:
        async with self._write_lock:
            try:
                connection = self._require_connection()
                await connection.execute(
                    """
                    INSERT INTO archives (path, session_key, node_id, data, created_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        path,
                        payload.session_key,
                        payload.node_id,
                        json.dumps(payload.to_dict(), ensure_ascii=False),
                        datetime.now(timezone.utc).isoformat(),
                    )
                )
                await connection.commit()
                return True

            except aiosqlite.IntegrityError:
                self.logger.warning(f"Refusing to overwrite existing archive {path}")
                await self._safe_rollback()
                return False
            except Exception as e:
                self.logger.error(f"Failed to store archive {path}: {e}", exc_info=True)
                await self._safe_rollback()
                return False

    async def read_archive(self, path: str) -> Optional[ArchivePayload]:
        try:
            connection = self._require_connection()
            async with connection.execute(
                "SELECT data FROM archives WHERE path = ?", (path,)
            ) as cursor:
                row = await cursor.fetchone()
        except Exception as e:
            self.logger.error(f"Failed to load archive {path}: {e}", exc_info=True)
            return None

        if row is None:
            return None
        try:
            return ArchivePayload.from_dict(json.loads(row[0]))
        except (KeyError, TypeError, ValueError) as e:
            self.logger.error(f"Corrupt archive {path}: {e}", exc_info=True)
            return None

    async def _safe_rollback(self) -> None:
        if self._connection is None:
            return
        try:
            await self._connection.rollback()
        except Exception as e:
            self.logger.warning(f"Rollback failed: {e}")

    # ===== Utility Methods =====

    async def health_check(self) -> Dict[str, Any]:
        """Check the health and status of the SQLite storage."""
        try:
            connection = self._require_connection()
            async with connection.execute("SELECT COUNT(*) FROM index_documents") as cursor:
                session_count = (await cursor.fetchone())[0]
            async with connection.execute("SELECT COUNT(*) FROM archives") as cursor:
                archive_count = (await cursor.fetchone())[0]

            return {
                'status': 'healthy',
                'storage_type': 'sqlite',
                'database_path': str(self.db_path),
                'session_count': session_count,
                'archive_count': archive_count,
                'timestamp': datetime.now(timezone.utc).isoformat()
            }

        except Exception as e:
            return {
                'status': 'error',
                'storage_type': 'sqlite',
                'error': str(e),
                'timestamp': datetime.now(timezone.utc).isoformat()
            }
