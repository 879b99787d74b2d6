"""
Storage module for layered context persistence.

Provides pluggable storage backends (files or SQLite) for per-session index
documents and write-once archive transcripts.
"""

from .storage_interface import LayeredContextStorage, safe_key
from .file_storage import FileStorage
from .sqlite_storage import SQLiteStorage
from .storage_factory import StorageFactory, create_storage

__all__ = [
    'LayeredContextStorage',
    'FileStorage',
    'SQLiteStorage',
    'StorageFactory',
    'create_storage',
    'safe_key',
]


def get_available_backends():
    """Get list of available storage backends."""
    return StorageFactory.get_available_backends()
