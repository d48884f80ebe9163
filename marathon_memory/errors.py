"""
Error kinds shared by the memory store, knowledge graph and session ledger.

Single-item reads return ``None`` for an absent record instead of raising.
Batch operations never raise for per-item problems; they report an
``ItemError`` carrying one of the kinds below.
"""

from __future__ import annotations

from typing import Literal

ErrorKind = Literal["NotFound", "AlreadyExists", "InvalidArgument", "StorageFailure"]

VALID_ERROR_KINDS: set = {"NotFound", "AlreadyExists", "InvalidArgument", "StorageFailure"}


class MarathonMemoryError(Exception):
    """Base class for every error raised by marathon_memory."""

    kind: ErrorKind = "StorageFailure"


class NotFound(MarathonMemoryError):
    """Key, entity, relation or session is absent."""

    kind: ErrorKind = "NotFound"


class AlreadyExists(MarathonMemoryError):
    """Duplicate entity name on create."""

    kind: ErrorKind = "AlreadyExists"


class InvalidArgument(MarathonMemoryError, ValueError):
    """Missing or malformed field in a request."""

    kind: ErrorKind = "InvalidArgument"


class StorageFailure(MarathonMemoryError):
    """I/O or engine error reported by a storage backend. Never retried."""

    kind: ErrorKind = "StorageFailure"
