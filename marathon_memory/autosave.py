"""
AutoSaver: recurring checkpoint task for one session.

A daemon thread waits on a stop event for the interval, then saves an
``auto`` checkpoint through the ledger. Saves are guarded: a tick that
finds a save still running is skipped and counted instead of stacking up.
A failed save is logged and the timer keeps going.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, Optional

from marathon_memory.ledger import SessionLedger
from marathon_memory.types import Checkpoint

logger = logging.getLogger(__name__)

DEFAULT_CONTEXT = "auto-save"


class AutoSaver:
    """Cancellable periodic ``save_checkpoint`` for a session."""

    def __init__(
        self,
        ledger: SessionLedger,
        session_id: str,
        interval_seconds: float = 120.0,
        context_fn: Optional[Callable[[], str]] = None,
        payload_fn: Optional[Callable[[], Dict[str, Any]]] = None,
    ):
        if interval_seconds <= 0:
            raise ValueError(f"interval_seconds must be positive, got {interval_seconds!r}")
        self._ledger = ledger
        self._session_id = session_id
        self._interval = float(interval_seconds)
        self._context_fn = context_fn or (lambda: DEFAULT_CONTEXT)
        self._payload_fn = payload_fn
        self._stop_event = threading.Event()
        self._save_guard = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self.saves = 0
        self.failures = 0
        self.skipped_ticks = 0
        self.last_checkpoint: Optional[Checkpoint] = None

    @property
    def interval_seconds(self) -> float:
        return self._interval

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> AutoSaver:
        if self.running:
            return self
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._loop, name=f"AutoSaver-{self._session_id}", daemon=True,
        )
        self._thread.start()
        logger.info(f"auto-save started: {self._session_id} every {self._interval:.0f}s")
        return self

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        """Cancel the timer and wait for the thread to exit."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
            logger.info(f"auto-save stopped: {self._session_id}")

    def save_now(self, checkpoint_type: str = "auto") -> Optional[Checkpoint]:
        """Save one checkpoint unless another save is in progress.

        Returns the checkpoint, or None when the save was skipped.
        Errors propagate to the caller.
        """
        if not self._save_guard.acquire(blocking=False):
            self.skipped_ticks += 1
            logger.debug(f"auto-save skipped: save in progress ({self._session_id})")
            return None
        try:
            payload = self._payload_fn() if self._payload_fn is not None else None
            checkpoint = self._ledger.save_checkpoint(
                self._session_id, self._context_fn(),
                checkpoint_type=checkpoint_type, payload=payload,
            )
            self.saves += 1
            self.last_checkpoint = checkpoint
            return checkpoint
        finally:
            self._save_guard.release()

    def _loop(self) -> None:
        while not self._stop_event.wait(self._interval):
            try:
                self.save_now()
            except Exception:
                self.failures += 1
                logger.exception(f"auto-save failed for session {self._session_id}")

    def __enter__(self):
        return self.start()

    def __exit__(self, *exc):
        self.stop()
        return False
