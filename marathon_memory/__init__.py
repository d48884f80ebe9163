"""
marathon_memory: persistent memory and knowledge graph for a tool service.

Key/value memory with tags, categories and TTL; a typed knowledge graph of
entities, relations and observations; and a session/checkpoint ledger.
All three share one storage backend: a SQLite database or a tree of JSON
files.
"""

__version__ = "0.1.0"

from marathon_memory.types import (
    Checkpoint,
    Entity,
    MemoryRecord,
    Observation,
    Relation,
    Session,
    TrackedEvent,
)
from marathon_memory.errors import (
    AlreadyExists,
    InvalidArgument,
    MarathonMemoryError,
    NotFound,
    StorageFailure,
)
from marathon_memory.backends import FileTreeBackend, SQLiteBackend, open_backend
from marathon_memory.memory import MemoryStore
from marathon_memory.graph import KnowledgeGraph
from marathon_memory.ledger import SessionLedger
from marathon_memory.autosave import AutoSaver
from marathon_memory.config import MarathonConfig, load_config
from marathon_memory.core import MarathonMemory

__all__ = [
    "__version__",
    "Checkpoint",
    "Entity",
    "MemoryRecord",
    "Observation",
    "Relation",
    "Session",
    "TrackedEvent",
    "AlreadyExists",
    "InvalidArgument",
    "MarathonMemoryError",
    "NotFound",
    "StorageFailure",
    "FileTreeBackend",
    "SQLiteBackend",
    "open_backend",
    "MemoryStore",
    "KnowledgeGraph",
    "SessionLedger",
    "AutoSaver",
    "MarathonConfig",
    "load_config",
    "MarathonMemory",
]
