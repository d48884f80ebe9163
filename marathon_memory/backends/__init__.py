"""
Storage backends for marathon_memory.

``open_backend`` picks the implementation named in a StoreConfig.
"""

from __future__ import annotations

import logging

from marathon_memory.backends.base import COLLECTIONS, StorageBackend
from marathon_memory.backends.filetree import FileTreeBackend
from marathon_memory.backends.sqlite import SQLiteBackend
from marathon_memory.config import StoreConfig
from marathon_memory.errors import InvalidArgument

logger = logging.getLogger(__name__)

__all__ = [
    "COLLECTIONS",
    "FileTreeBackend",
    "SQLiteBackend",
    "StorageBackend",
    "open_backend",
]


def open_backend(config: StoreConfig) -> StorageBackend:
    """Open the backend described by *config*."""
    logger.debug(f"Opening {config.backend} backend under {config.root}")
    if config.backend == "sqlite":
        return SQLiteBackend(
            config.db_path,
            wal_mode=config.wal_mode,
            busy_timeout_ms=config.busy_timeout_ms,
        )
    if config.backend == "filetree":
        return FileTreeBackend(config.root)
    raise InvalidArgument(f"Unknown backend: {config.backend!r}")
