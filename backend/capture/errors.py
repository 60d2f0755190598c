"""
Capture error taxonomy.

Service level (what callers of ingest/query see):
- EventValidationError: missing/malformed field, rejected before any write
  - MissingKeyError: session_id absent or empty
  - InvalidEventError: event_type empty or timestamp absent
- DurabilityError: a durable write failed, nothing was indexed
  - ConnectivityError: backend unreachable, caller may back off and retry
- EventsNotFoundError: query for a key that was never ingested

Store level (raised by DurableLog / RelationalSink, wrapped by the service):
- LogWriteError, LogCorruptError
- SinkConnectionError, SinkWriteError
"""
from __future__ import annotations

from typing import Optional


class CaptureError(Exception):
    """Base class for every error raised by the capture core."""

    code = "capture_error"


# ═══════════════════════════════════════════════════════════════════════════════
# Validation
# ═══════════════════════════════════════════════════════════════════════════════

class EventValidationError(CaptureError):
    """Event rejected at the Validated step. No side effects happened."""

    code = "invalid_event"

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message)


class MissingKeyError(EventValidationError):
    code = "missing_session_id"

    def __init__(self, message: str = "Missing session_id"):
        super().__init__(message, field="session_id")


class InvalidEventError(EventValidationError):
    code = "invalid_event"


# ═══════════════════════════════════════════════════════════════════════════════
# Persistence
# ═══════════════════════════════════════════════════════════════════════════════

class DurabilityError(CaptureError):
    """
    A durable persist step failed. The event was NOT indexed in memory;
    the caller should retry the whole ingestion.
    """

    code = "persist_failed"
    retryable = False

    def __init__(self, message: str, sink: Optional[str] = None):
        self.sink = sink
        super().__init__(message)


class ConnectivityError(DurabilityError):
    """Backend unreachable. Same contract as DurabilityError, retry with backoff."""

    code = "backend_unavailable"
    retryable = True


class EventsNotFoundError(CaptureError):
    """Query for a key that has never been ingested."""

    code = "events_not_found"

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"No events found for session_id={key!r}")


# ═══════════════════════════════════════════════════════════════════════════════
# Store level
# ═══════════════════════════════════════════════════════════════════════════════

class LogWriteError(OSError):
    """Append to the durable log failed."""


class LogCorruptError(ValueError):
    """A durable log line could not be decoded during replay."""

    def __init__(self, path: str, line_no: int, reason: str):
        self.path = path
        self.line_no = line_no
        super().__init__(f"{path}:{line_no}: {reason}")


class SinkConnectionError(ConnectionError):
    """Relational backend could not be reached at connect time."""


class SinkWriteError(Exception):
    """
    Relational insert failed. The backend error is kept verbatim as
    __cause__; `retryable` tells connection-level from constraint/type-level.
    """

    def __init__(self, message: str, retryable: bool):
        self.retryable = retryable
        super().__init__(message)
