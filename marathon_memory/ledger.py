"""
Session & Checkpoint Ledger

Sessions, append-only checkpoints and tracked counter events. Shares the
memory store's persistence discipline: each call is a single
read-modify-write against the backend.
"""

from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from marathon_memory.backends.base import StorageBackend
from marathon_memory.errors import InvalidArgument, NotFound
from marathon_memory.types import (
    VALID_CHECKPOINT_TYPES,
    Checkpoint,
    EventCount,
    Session,
    TrackedEvent,
    _iso,
    _utcnow,
)

logger = logging.getLogger(__name__)


def _require_id(value, what: str) -> str:
    if not isinstance(value, str) or not value:
        raise InvalidArgument(f"{what} must be a non-empty string")
    return value


class SessionLedger:
    """Session lifecycle, checkpoints and event counters."""

    def __init__(
        self,
        backend: StorageBackend,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._backend = backend
        self._clock = clock or _utcnow

    def _now(self) -> str:
        return _iso(self._clock())

    # -- Sessions ----------------------------------------------------------

    def get_session(self, session_id: str) -> Optional[Session]:
        _require_id(session_id, "session_id")
        data = self._backend.get("sessions", session_id)
        return Session.from_dict(data) if data is not None else None

    def create_session(
        self, session_id: str, mode: str = "normal", context: Optional[str] = None,
    ) -> Session:
        """Start a session, or update mode/context of an existing one.

        An existing session keeps its ``created_at`` and ``ended_at``.
        """
        _require_id(session_id, "session_id")
        _require_id(mode, "mode")
        session = self.get_session(session_id)
        if session is None:
            session = Session(id=session_id, mode=mode, context=context,
                              created_at=self._now())
            logger.info(f"session created: {session_id} (mode={mode})")
        else:
            session.mode = mode
            session.context = context
        self._backend.put("sessions", session_id, session.to_dict())
        return session

    def end_session(self, session_id: str, reason: Optional[str] = None) -> Optional[Session]:
        """Mark a session ended. Returns None for an unknown session.

        ``ended_at`` is only written the first time; ending again replaces
        ``end_reason`` alone.
        """
        session = self.get_session(session_id)
        if session is None:
            return None
        if session.ended_at is None:
            session.ended_at = self._now()
        session.end_reason = reason
        self._backend.put("sessions", session_id, session.to_dict())
        logger.info(f"session ended: {session_id} ({reason})")
        return session

    # -- Checkpoints -------------------------------------------------------

    def save_checkpoint(
        self,
        session_id: str,
        context: str,
        checkpoint_type: str = "manual",
        payload: Optional[Dict[str, Any]] = None,
    ) -> Checkpoint:
        """Append a checkpoint to an existing session."""
        if checkpoint_type not in VALID_CHECKPOINT_TYPES:
            raise InvalidArgument(
                f"checkpoint_type must be one of {sorted(VALID_CHECKPOINT_TYPES)}"
            )
        if not isinstance(context, str):
            raise InvalidArgument("context must be a string")
        if payload is not None and not isinstance(payload, dict):
            raise InvalidArgument("payload must be an object")
        if self.get_session(session_id) is None:
            raise NotFound(f"Session not found: {session_id}")
        checkpoint = Checkpoint(
            session_id=session_id,
            context=context,
            checkpoint_type=checkpoint_type,
            timestamp=self._now(),
            payload=dict(payload or {}),
        )
        self._backend.put("checkpoints", checkpoint.id, checkpoint.to_dict())
        logger.debug(f"checkpoint saved: {checkpoint.id} ({checkpoint_type})")
        return checkpoint

    def list_checkpoints(self, session_id: str, limit: Optional[int] = None) -> List[Checkpoint]:
        """Checkpoints of a session, newest first."""
        _require_id(session_id, "session_id")
        found = [Checkpoint.from_dict(d)
                 for d in self._backend.scan("checkpoints", {"session_id": session_id})]
        found.sort(key=lambda c: (c.timestamp, c.id), reverse=True)
        return found if limit is None else found[:limit]

    def get_last_context(self, session_id: str) -> Optional[Checkpoint]:
        """Most recent checkpoint of a session, or None."""
        latest = self.list_checkpoints(session_id, limit=1)
        return latest[0] if latest else None

    # -- Events ------------------------------------------------------------

    def track_event(
        self,
        event_name: str,
        session_id: Optional[str] = None,
        properties: Optional[Dict[str, Any]] = None,
    ) -> TrackedEvent:
        _require_id(event_name, "event_name")
        if properties is not None and not isinstance(properties, dict):
            raise InvalidArgument("properties must be an object")
        event = TrackedEvent(
            event_name=event_name,
            session_id=session_id,
            properties=dict(properties or {}),
            timestamp=self._now(),
        )
        self._backend.put("events", event.id, event.to_dict())
        return event

    def get_event_stats(self) -> List[EventCount]:
        """Event counts grouped by name, most frequent first."""
        counts = Counter(d["event_name"] for d in self._backend.scan("events"))
        ranked = sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))
        return [EventCount(event=name, count=n) for name, n in ranked]
