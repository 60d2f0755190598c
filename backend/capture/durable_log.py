"""
Durable Log: append-only JSONL record of every accepted event.

One line per event, arrival order across all keys:

    {"event_type": "click", "logged_at": "2026-01-08T10:00:00+00:00",
     "payload": "x", "seq": 1, "session_id": "s1", "timestamp": "1000"}

Used for audit/replay, never for query serving. The file is only ever
opened in append mode and never rewritten in place.
"""

import json
import logging
import os
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator

from pydantic import ValidationError

from .errors import LogCorruptError, LogWriteError
from .models import Event

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LogRecord:
    """One durable log line."""
    seq: int
    logged_at: str  # ISO 8601, UTC
    event: Event

    def to_dict(self) -> Dict[str, Any]:
        return {
            "seq": self.seq,
            "logged_at": self.logged_at,
            **self.event.model_dump(),
        }

    def to_line(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, ensure_ascii=False, allow_nan=False) + "\n"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LogRecord":
        body = {k: v for k, v in data.items() if k not in ("seq", "logged_at")}
        return cls(
            seq=int(data["seq"]),
            logged_at=str(data["logged_at"]),
            event=Event.model_validate(body),
        )


class DurableLog:
    """
    Append-only, fsync'd event log.

    Each append is a single write() on an O_APPEND descriptor, done under a
    per-instance lock, so concurrent appends never interleave or truncate
    each other.
    """

    def __init__(self, path: Path | str, fsync: bool = True):
        self.path = Path(path)
        self._fsync = fsync
        self._lock = threading.Lock()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._seq = self._count_existing()
        logger.info(
            f"DurableLog initialized: {self.path} (existing_records={self._seq}, fsync={fsync})"
        )

    def _count_existing(self) -> int:
        """Resume seq numbering after the records already on disk."""
        if not self.path.is_file():
            return 0
        count = 0
        with open(self.path, "rb") as f:
            for line in f:
                if line.strip():
                    count += 1
        return count

    def append(self, event: Event) -> LogRecord:
        """
        Serialize event and append it to the log.

        Returns:
            The written LogRecord

        Raises:
            LogWriteError: event not serializable, open/write/fsync failed
                or the write was short
        """
        with self._lock:
            record = LogRecord(
                seq=self._seq + 1,
                logged_at=datetime.now(timezone.utc).isoformat(),
                event=event,
            )
            try:
                data = record.to_line().encode("utf-8")
                with open(self.path, "ab", buffering=0) as f:
                    written = f.write(data)
                    if written != len(data):
                        raise LogWriteError(
                            f"Short write to {self.path}: {written}/{len(data)} bytes"
                        )
                    if self._fsync:
                        os.fsync(f.fileno())
            except LogWriteError:
                raise
            except OSError as e:
                logger.error(f"Durable log append failed: path={self.path} error={e}")
                raise LogWriteError(f"Durable log append failed ({self.path}): {e}") from e
            except (TypeError, ValueError) as e:
                logger.error(f"Durable log serialization failed: path={self.path} error={e}")
                raise LogWriteError(f"Event could not be serialized: {e}") from e

            self._seq = record.seq
            return record

    def replay(self) -> Iterator[LogRecord]:
        """
        Yield every record in arrival order.

        Raises:
            LogCorruptError: a line is not a valid record
        """
        if not self.path.exists():
            return
        with open(self.path, encoding="utf-8") as f:
            for line_no, line in enumerate(f, start=1):
                if not line.strip():
                    continue
                try:
                    yield LogRecord.from_dict(json.loads(line))
                except (json.JSONDecodeError, KeyError, TypeError, ValueError, ValidationError) as e:
                    raise LogCorruptError(str(self.path), line_no, str(e)) from e

    @property
    def record_count(self) -> int:
        with self._lock:
            return self._seq

    def get_stats(self) -> Dict[str, Any]:
        size = self.path.stat().st_size if self.path.exists() else 0
        return {
            "path": str(self.path),
            "records": self.record_count,
            "size_bytes": size,
            "fsync": self._fsync,
        }
