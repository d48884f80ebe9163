"""
MarathonMemory: composition root.

Opens the configured backend and wires the memory store, knowledge graph
and session ledger onto it. Expired memory records are purged on open
unless the config says otherwise.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional

from marathon_memory.autosave import AutoSaver
from marathon_memory.backends import StorageBackend, open_backend
from marathon_memory.config import MarathonConfig
from marathon_memory.graph import KnowledgeGraph
from marathon_memory.ledger import SessionLedger
from marathon_memory.memory import MemoryStore

logger = logging.getLogger(__name__)


class MarathonMemory:
    """Memory store, knowledge graph and ledger sharing one backend."""

    def __init__(
        self,
        config: Optional[MarathonConfig] = None,
        *,
        backend: Optional[StorageBackend] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.config = config or MarathonConfig()
        self.backend = backend if backend is not None else open_backend(self.config.store)
        self.memory = MemoryStore(
            self.backend, clock=clock,
            list_limit=self.config.memory.list_limit,
            search_limit=self.config.memory.search_limit,
        )
        self.graph = KnowledgeGraph(
            self.backend, clock=clock,
            search_limit=self.config.graph.search_limit,
            read_limit=self.config.graph.read_limit,
            path_max_depth=self.config.graph.path_max_depth,
        )
        self.ledger = SessionLedger(self.backend, clock=clock)
        if self.config.memory.cleanup_on_open:
            try:
                self.memory.cleanup()
            except Exception:
                self.backend.close()
                raise
        logger.info(f"MarathonMemory ready (backend={self.backend.name})")

    def autosaver(self, session_id: str, interval_seconds: Optional[float] = None,
                  **kwargs) -> AutoSaver:
        """AutoSaver for *session_id*; not started."""
        if interval_seconds is None:
            interval_seconds = self.config.autosave.interval_seconds
        return AutoSaver(self.ledger, session_id, interval_seconds, **kwargs)

    def close(self) -> None:
        self.backend.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False
