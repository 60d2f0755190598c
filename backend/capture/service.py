"""
Capture Service: ingestion and retrieval orchestration.

Ingest, per request:

    Received → Validated → Persisted(Durable) → IndexedInMemory → Acknowledged
                  │                │
                  └→ Rejected      └→ Failed

- Rejected: no side effects anywhere
- Failed: nothing indexed in memory (a durable log line may already exist;
  retrying the request can leave a duplicate, which at-least-once allows)

Persist happens before the SessionStore lock is taken, so no lock is ever
held across file or network I/O.

Query reads the SessionStore only. The durable log and the relational sink
are write-side records; they are never consulted to serve a query.
"""

import logging
import time
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Tuple, Union

from pydantic import ValidationError

from .capture_metrics import CaptureMetrics
from .config import ConfigValidationError
from .durable_log import DurableLog
from .errors import (
    ConnectivityError,
    DurabilityError,
    EventsNotFoundError,
    InvalidEventError,
    LogWriteError,
    MissingKeyError,
    SinkWriteError,
)
from .failure_taxonomy import is_retryable
from .models import Event, FailurePolicy, IngestAck, SinkName
from .relational_sink import RelationalSink
from .session_store import SessionStore

if TYPE_CHECKING:
    from .core.config import Settings

logger = logging.getLogger(__name__)


def validate_event(raw: Union[Event, Mapping[str, Any]]) -> Event:
    """
    Validated step. Returns the event with a non-empty key.

    Raises:
        MissingKeyError: session_id absent/empty/blank
        InvalidEventError: event_type empty, timestamp absent/non-finite,
            wrong field types, text that is not valid UTF-8
    """
    if isinstance(raw, Event):
        event = raw
    else:
        try:
            event = Event.model_validate(raw)
        except ValidationError as e:
            first = e.errors()[0]
            field = ".".join(str(p) for p in first.get("loc", ())) or None
            raise InvalidEventError(f"Malformed event: {first.get('msg')}", field=field) from e

    if not event.session_id or not event.session_id.strip():
        raise MissingKeyError()
    if not event.event_type or not event.event_type.strip():
        raise InvalidEventError("event_type must be a non-empty string", field="event_type")
    if event.timestamp is None:
        raise InvalidEventError("timestamp is required", field="timestamp")

    # Lone surrogates ("\ud800") survive JSON decoding but not UTF-8 encoding
    for field, value in event.model_dump().items():
        if isinstance(value, str):
            try:
                value.encode("utf-8")
            except UnicodeEncodeError:
                raise InvalidEventError(f"{field} is not valid UTF-8 text", field=field)
    return event


class CaptureService:
    """
    Owns the session store and the durable sinks; CaptureService.close()
    releases them. At least one durable sink is required.
    """

    def __init__(
        self,
        session_store: Optional[SessionStore] = None,
        durable_log: Optional[DurableLog] = None,
        relational_sink: Optional[RelationalSink] = None,
        failure_policy: FailurePolicy = FailurePolicy.DURABILITY_FIRST,
        metrics: Optional[CaptureMetrics] = None,
    ):
        if durable_log is None and relational_sink is None:
            raise ConfigValidationError(
                "CaptureService needs at least one durable sink (durable_log or relational_sink)"
            )
        self._store = session_store
        self._log = durable_log
        self._sink = relational_sink
        self._policy = FailurePolicy(failure_policy)
        self._metrics = metrics or CaptureMetrics()

        sinks = [name.value for name, s in self._sinks() if s is not None]
        logger.info(
            f"CaptureService ready: sinks={sinks} policy={self._policy.value} "
            f"in_memory={'on' if session_store is not None else 'off'}"
        )

    def _sinks(self) -> List[Tuple[SinkName, Any]]:
        return [(SinkName.DURABLE_LOG, self._log), (SinkName.RELATIONAL, self._sink)]

    @property
    def session_store(self) -> Optional[SessionStore]:
        return self._store

    @property
    def durable_log(self) -> Optional[DurableLog]:
        return self._log

    @property
    def relational_sink(self) -> Optional[RelationalSink]:
        return self._sink

    @property
    def metrics(self) -> CaptureMetrics:
        return self._metrics

    @property
    def failure_policy(self) -> FailurePolicy:
        return self._policy

    # ═══════════════════════════════════════════════════════════════════════
    # Ingest
    # ═══════════════════════════════════════════════════════════════════════

    def ingest(self, raw: Union[Event, Mapping[str, Any]]) -> IngestAck:
        """
        Validate, persist durably, index in memory, acknowledge.

        Raises:
            MissingKeyError / InvalidEventError: rejected, no side effects
            ConnectivityError: a retryable persist failure (backend unreachable)
            DurabilityError: any other persist failure
        """
        start = time.monotonic()
        try:
            event = validate_event(raw)
        except (MissingKeyError, InvalidEventError) as e:
            self._metrics.inc_ingest("rejected")
            logger.info(f"Event rejected: reason={e.code} field={e.field}")
            raise

        persisted_to = self._persist(event)

        if self._store is not None:
            if self._store.append(event.session_id, event) == 1:
                self._metrics.inc_sessions()

        self._metrics.inc_ingest("accepted")
        self._metrics.observe_ingest_duration(time.monotonic() - start)
        logger.debug(
            f"Event logged: session_id={event.session_id} event_type={event.event_type} "
            f"sinks={list(persisted_to)}"
        )
        return IngestAck(session_id=event.session_id, persisted_to=persisted_to)

    def _persist(self, event: Event) -> Tuple[str, ...]:
        """
        Write event to every configured durable sink, log first.

        durability_first: the first failure fails the request.
        availability_first: failures are logged and skipped while at least
        one sink accepted the event.
        """
        persisted: List[str] = []
        failures: List[Tuple[SinkName, Exception]] = []

        for name, sink in self._sinks():
            if sink is None:
                continue
            try:
                if name is SinkName.DURABLE_LOG:
                    sink.append(event)
                else:
                    sink.insert(event)
            except (LogWriteError, SinkWriteError) as e:
                retryable = _retryable(e)
                self._metrics.inc_persist_failure(name.value, retryable)
                if self._policy is FailurePolicy.DURABILITY_FIRST:
                    self._metrics.inc_ingest("failed")
                    raise _durability_error(name, e) from e
                logger.warning(
                    f"Durable sink failed, continuing (availability_first): "
                    f"sink={name.value} session_id={event.session_id} error={e}"
                )
                failures.append((name, e))
                continue
            persisted.append(name.value)

        if not persisted:
            # Nothing durable holds the event: it cannot be acknowledged.
            name, e = failures[-1]
            self._metrics.inc_ingest("failed")
            raise _durability_error(name, e) from e

        return tuple(persisted)

    # ═══════════════════════════════════════════════════════════════════════
    # Query
    # ═══════════════════════════════════════════════════════════════════════

    def query(self, key: str) -> Tuple[Event, ...]:
        """
        Events for key in ingestion order (snapshot).

        Raises:
            EventsNotFoundError: key never ingested (or in-memory path disabled)
        """
        events = self._store.get(key) if (self._store is not None and key) else None
        if events is None:
            self._metrics.inc_query("miss")
            raise EventsNotFoundError(key)
        self._metrics.inc_query("hit")
        return events

    # ═══════════════════════════════════════════════════════════════════════
    # Lifecycle
    # ═══════════════════════════════════════════════════════════════════════

    def is_ready(self) -> bool:
        """Relational sink reachable (when configured)."""
        if self._sink is None:
            return True
        return self._sink.ping()

    def stats(self) -> Dict[str, Any]:
        return {
            "failure_policy": self._policy.value,
            "sessions": len(self._store) if self._store is not None else None,
            "events_in_memory": self._store.event_count() if self._store is not None else None,
            "durable_log": self._log.get_stats() if self._log is not None else None,
            "relational_sink": self._sink.get_stats() if self._sink is not None else None,
        }

    def close(self) -> None:
        if self._sink is not None:
            self._sink.close()
        logger.info("CaptureService closed")


def _retryable(exc: Exception) -> bool:
    if isinstance(exc, SinkWriteError):
        return exc.retryable
    return is_retryable(exc)


def _durability_error(sink: SinkName, exc: Exception) -> DurabilityError:
    if _retryable(exc) and sink is SinkName.RELATIONAL:
        return ConnectivityError(f"{sink.value} unavailable: {exc}", sink=sink.value)
    return DurabilityError(f"{sink.value} write failed: {exc}", sink=sink.value)


def build_capture_service(
    settings: "Settings",
    metrics: Optional[CaptureMetrics] = None,
) -> CaptureService:
    """
    Wire stores from settings. Call validate_config(settings) first.

    Raises:
        SinkConnectionError: relational sink configured but unreachable
        ConfigValidationError: no durable sink configured
    """
    durable_log = None
    if settings.event_log_enabled:
        durable_log = DurableLog(settings.event_log_path, fsync=settings.event_log_fsync)

    relational_sink = None
    database_url = settings.resolved_database_url
    if database_url is not None:
        relational_sink = RelationalSink.connect(
            database_url, keepalive_seconds=settings.sink_keepalive_seconds
        )

    return CaptureService(
        session_store=SessionStore() if settings.session_store_enabled else None,
        durable_log=durable_log,
        relational_sink=relational_sink,
        failure_policy=FailurePolicy(settings.failure_policy),
        metrics=metrics,
    )
