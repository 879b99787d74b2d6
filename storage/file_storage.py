"""
File-based storage implementation.

Implements LayeredContextStorage on the local filesystem. Index documents
are replaced atomically (temp file, fsync, rename) and archives are created
with exclusive-create so an existing archive is never overwritten.
"""

import os
import json
import uuid
import aiofiles
import aiofiles.os
from pathlib import Path
from typing import Dict, Any, Optional
from datetime import datetime, timezone

from layered_context.types import ArchivePayload, LayeredContextIndexDocument
from .storage_interface import LayeredContextStorage, safe_key


class FileStorage(LayeredContextStorage):
    """
    File-based storage implementation following the directory structure:

    {base_dir}/
        {session_key}/
            index.json              # LayeredContextIndexDocument
            archives/
                {node_id}.json      # ArchivePayload, written once
    """

    def __init__(self, storage_config: Dict[str, Any]):
        super().__init__(storage_config)

        # Get base directory from config, default to './layered_context_data'
        self.base_dir = Path(storage_config.get('base_dir', './layered_context_data'))
        self.pretty_print_json = storage_config.get('pretty_print_json', True)
        self.fsync_writes = storage_config.get('fsync_writes', True)

        self.logger.info(f"FileStorage initialized with base_dir: {self.base_dir}")

    async def initialize(self) -> bool:
        """Create the base directory and verify write permissions."""
        try:
            self.base_dir.mkdir(parents=True, exist_ok=True)

            test_file = self.base_dir / '.storage_test'
            async with aiofiles.open(test_file, 'w') as f:
                await f.write('{"test": true}')
            await aiofiles.os.remove(test_file)

            self.logger.info("FileStorage initialized successfully")
            return True

        except Exception as e:
            self.logger.error(f"Failed to initialize FileStorage: {e}", exc_info=True)
            return False

    async def shutdown(self) -> bool:
        """Graceful shutdown - no cleanup needed for file storage."""
        self.logger.info("FileStorage shutdown completed")
        return True

    # ===== Helper Methods =====

    def _index_file(self, session_key: str) -> Path:
        return self.base_dir / safe_key(session_key) / 'index.json'

    def _resolve(self, relative_path: str) -> Path:
        """Resolve a relative archive path, refusing anything outside base_dir."""
        base = self.base_dir.resolve()
        target = (base / relative_path).resolve()
        if base != target and base not in target.parents:
            raise ValueError(f"Archive path escapes storage directory: {relative_path}")
        return target

    def _dumps(self, data: Dict[str, Any]) -> str:
        return json.dumps(data, indent=2 if self.pretty_print_json else None,
                          ensure_ascii=False, default=str)

    async def _read_json_file(self, file_path: Path) -> Optional[Dict[str, Any]]:
        """
        Read JSON data from a file.

        Args:
            file_path: Path to the file

        Returns:
            Parsed JSON data or None if file doesn't exist or can't be read
        """
        try:
            if not file_path.exists():
                return None

            async with aiofiles.open(file_path, 'r', encoding='utf-8') as f:
                content = await f.read()
            try:
                return json.loads(content)
            except ValueError as e:
                self.logger.error(f"Failed to parse JSON file {file_path}: {e}", exc_info=True)
                return None
        except Exception as e:
            self.logger.error(f"Failed to read JSON file {file_path}: {e}", exc_info=True)
            return None

    async def _write_json_atomic(self, file_path: Path, data: Dict[str, Any]) -> bool:
        """
        Write JSON data via a temp file in the same directory, then rename.

        Returns:
            True if write succeeded, False otherwise
        """
        temp_path = file_path.with_name(f".{file_path.name}.{uuid.uuid4().hex}.tmp")
        try:
            file_path.parent.mkdir(parents=True, exist_ok=True)

            async with aiofiles.open(temp_path, 'w', encoding='utf-8') as f:
                await f.write(self._dumps(data))
                await f.flush()
                if self.fsync_writes:
                    os.fsync(f.fileno())

            await aiofiles.os.replace(temp_path, file_path)
            return True

        except Exception as e:
            self.logger.error(f"Failed to write JSON file {file_path}: {e}", exc_info=True)
            if temp_path.exists():
                try:
                    temp_path.unlink()
                except OSError as cleanup_error:
                    self.logger.warning(f"Failed to remove temp file {temp_path}: {cleanup_error}")
            return False

    # ===== Index Documents =====

    async def read_index(self, session_key: str) -> Optional[LayeredContextIndexDocument]:
        data = await self._read_json_file(self._index_file(session_key))
        if data is None:
            return None
        return self._parse_index(session_key, data)

    async def write_index(self, session_key: str, document: LayeredContextIndexDocument) -> bool:
        success = await self._write_json_atomic(self._index_file(session_key), document.to_dict())
        if success:
            self.logger.debug(f"Stored index for {session_key} with {len(document.nodes)} nodes")
        return success

    # ===== Archives =====

    async def write_archive(self, path: str, payload: ArchivePayload) -> bool:
        try:
            file_path = self._resolve(path)
            file_path.parent.mkdir(parents=True, exist_ok=True)

            # 'x' fails if the archive already exists
            async with aiofiles.open(file_path, 'x', encoding='utf-8') as f:
                await f.write(self._dumps(payload.to_dict()))
                await f.flush()
                if self.fsync_writes:
                    os.fsync(f.fileno())

            self.logger.debug(f"Stored archive {path}")
            return True

        except FileExistsError:
            self.logger.warning(f"Refusing to overwrite existing archive {path}")
            return False
        except Exception as e:
            self.logger.error(f"Failed to write archive {path}: {e}", exc_info=True)
            return False

    async def read_archive(self, path: str) -> Optional[ArchivePayload]:
        try:
            file_path = self._resolve(path)
        except ValueError as e:
            self.logger.error(str(e))
            return None

        data = await self._read_json_file(file_path)
        if data is None:
            return None
        try:
            return ArchivePayload.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            self.logger.error(f"Corrupt archive {path}: {e}", exc_info=True)
            return None

    # ===== Utility Methods =====

    async def health_check(self) -> Dict[str, Any]:
        """Check the health and status of the file storage."""
        write_ok = False
        test_file = self.base_dir / '.health_check'
        try:
            async with aiofiles.open(test_file, 'w') as f:
                await f.write('test')
            await aiofiles.os.remove(test_file)
            write_ok = True
        except OSError as e:
            self.logger.warning(f"FileStorage health check write failed: {e}")

        return {
            'status': 'healthy' if write_ok else 'unhealthy',
            'storage_type': 'file',
            'write_permissions': write_ok,
            'base_directory': str(self.base_dir),
            'timestamp': datetime.now(timezone.utc).isoformat()
        }
