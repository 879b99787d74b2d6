"""
Registry of layered context storage backends.

Backends are looked up by name ('file', 'sqlite' or anything registered at
runtime) and built from a plain config dict or from the host settings.
"""

from typing import Dict, Any, Type
import logging

from .storage_interface import LayeredContextStorage
from .file_storage import FileStorage
from .sqlite_storage import SQLiteStorage

logger = logging.getLogger(__name__)


class StorageFactory:
    """Creates storage backends by name."""

    _STORAGE_BACKENDS: Dict[str, Type[LayeredContextStorage]] = {
        'file': FileStorage,
        'sqlite': SQLiteStorage,
    }

    @classmethod
    def create_storage(cls, storage_type: str, storage_config: Dict[str, Any]) -> LayeredContextStorage:
        """
        Build a backend. The caller still has to ``initialize()`` it.

        Raises:
            ValueError: If storage_type is not registered
        """
        storage_class = cls._STORAGE_BACKENDS.get(storage_type)
        if storage_class is None:
            known = ', '.join(sorted(cls._STORAGE_BACKENDS))
            raise ValueError(f"Unsupported storage type '{storage_type}'. Available types: {known}")

        logger.info(f"Creating {storage_type} layered context storage")
        return storage_class(storage_config)

    @classmethod
    def get_available_backends(cls) -> Dict[str, str]:
        """Backend names mapped to the first line of their class docstring."""
        return {
            name: (storage_class.__doc__ or "No description").strip().split('\n')[0]
            for name, storage_class in cls._STORAGE_BACKENDS.items()
        }

    @classmethod
    def register_backend(cls, name: str, storage_class: type) -> None:
        if not isinstance(storage_class, type) or not issubclass(storage_class, LayeredContextStorage):
            raise ValueError(f"{storage_class!r} must be a LayeredContextStorage subclass")

        cls._STORAGE_BACKENDS[name] = storage_class
        logger.info(f"Registered storage backend: {name}")

    @classmethod
    def create_from_settings(cls, settings) -> LayeredContextStorage:
        """Build the backend named by ``settings.storage_type``."""
        storage_type = settings.storage_type
        if storage_type == 'file':
            config = {
                'base_dir': settings.storage_base_dir,
                'pretty_print_json': settings.storage_pretty_json,
                'fsync_writes': True,
            }
        elif storage_type == 'sqlite':
            config = {
                'db_path': settings.storage_db_path,
                'connection_timeout': settings.storage_timeout,
                'enable_wal_mode': settings.storage_wal_mode,
            }
        else:
            # registered backends take their own defaults
            config = {}
        return cls.create_storage(storage_type, config)


def create_storage(storage_type: str = 'file', **kwargs) -> LayeredContextStorage:
    """Shorthand for ``StorageFactory.create_storage(storage_type, kwargs)``."""
    return StorageFactory.create_storage(storage_type, kwargs)
