"""
In-memory session index: session_id → ordered events.

Serves low-latency reads for GET /get_events. Not a durable store; the
durable log and relational sink are the records of truth.

Locking: one global lock guards the whole mapping and is held only for a
single append or read, never across I/O. Per-key sharding would raise
throughput but is not needed at this load.
"""

import logging
import threading
from typing import Dict, List, Optional, Tuple

from .models import Event

logger = logging.getLogger(__name__)


class SessionStore:
    """Thread-safe, append-only session → events index."""

    def __init__(self) -> None:
        self._sessions: Dict[str, List[Event]] = {}  # session_id → events (arrival order)
        self._event_count: int = 0
        self._lock = threading.Lock()

    def append(self, key: str, event: Event) -> int:
        """
        Append event at the tail of key's sequence, creating it on first use.

        Returns:
            Length of the key's sequence after the append
        """
        with self._lock:
            events = self._sessions.setdefault(key, [])
            events.append(event)
            self._event_count += 1
            return len(events)

    def get(self, key: str) -> Optional[Tuple[Event, ...]]:
        """
        Snapshot of key's events, or None if the key was never written.

        The tuple is a copy; later appends never show up in it.
        """
        with self._lock:
            events = self._sessions.get(key)
            if events is None:
                return None
            return tuple(events)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._sessions

    def __len__(self) -> int:
        """Number of known session keys."""
        with self._lock:
            return len(self._sessions)

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._sessions)

    def event_count(self) -> int:
        """Total events across all keys."""
        with self._lock:
            return self._event_count

    def reset(self) -> None:
        """Drop everything (for testing)."""
        with self._lock:
            self._sessions.clear()
            self._event_count = 0
