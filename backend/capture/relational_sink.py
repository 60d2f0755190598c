"""
Relational Sink: durable long-term storage of events in a SQL table.

Supports:
- SQLite (dev/test) with check_same_thread=False
- PostgreSQL (prod), psycopg driver

One shared connection, one statement in flight at a time: concurrent callers
serialize on the sink lock. Throughput is bounded by backend round-trip
latency; a bounded connection pool is the production-grade variant.

Schema (created on connect if missing):

    CREATE TABLE events (
        id SERIAL PRIMARY KEY,
        user_id TEXT NOT NULL,
        event_type TEXT NOT NULL,
        timestamp TEXT NOT NULL,
        data TEXT
    );

No uniqueness constraint: retried ingestions may leave duplicate rows.
"""

import logging
import threading
from typing import Any, Dict, List, Optional

from sqlalchemy import Column, Integer, Text, create_engine, func, select, text
from sqlalchemy.engine import URL, Connection, Engine, make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import StaticPool

from .errors import SinkConnectionError, SinkWriteError
from .failure_taxonomy import is_connection_lost, is_retryable
from .models import Event

logger = logging.getLogger(__name__)

Base = declarative_base()


class EventRow(Base):
    """One captured event. Column names follow the capture wire contract."""
    __tablename__ = "events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Text, nullable=False, index=True)
    event_type = Column(Text, nullable=False)
    timestamp = Column(Text, nullable=False)
    data = Column(Text, nullable=True)


EVENTS_TABLE = EventRow.__table__

DEFAULT_DRIVER = "postgresql+psycopg"


def build_database_url(
    host: str,
    user: str,
    password: str,
    database: str,
    driver: str = DEFAULT_DRIVER,
    port: Optional[int] = None,
) -> str:
    """
    Build a SQLAlchemy URL from {host, user, password, database}.
    Special characters in the password are escaped.
    """
    url = URL.create(
        drivername=driver,
        username=user,
        password=password,
        host=host,
        port=port,
        database=database,
    )
    return url.render_as_string(hide_password=False)


def create_sink_engine(database_url: str, **engine_kwargs: Any) -> Engine:
    """Create engine with backend-appropriate settings."""
    url = make_url(database_url)
    if url.get_backend_name() == "sqlite":
        kwargs: Dict[str, Any] = {"connect_args": {"check_same_thread": False}}
        if url.database in (None, "", ":memory:"):
            # In-memory DB lives and dies with its one connection
            kwargs["poolclass"] = StaticPool
    else:
        kwargs = {
            "pool_pre_ping": True,
            "pool_size": 1,
            "max_overflow": 0,
        }
    kwargs.update(engine_kwargs)
    return create_engine(url, **kwargs)


def event_to_row(event: Event) -> Dict[str, Any]:
    """Event → bind parameters for the events table."""
    return {
        "user_id": event.session_id,
        "event_type": event.event_type,
        "timestamp": str(event.timestamp),
        "data": event.payload,
    }


def row_to_event(row: Any) -> Event:
    return Event(
        session_id=row.user_id,
        event_type=row.event_type,
        timestamp=row.timestamp,
        payload=row.data,
    )


class RelationalSink:
    """
    Writes events to the `events` table over a single shared connection.

    Use RelationalSink.connect(url) to build one; it opens the connection,
    creates the schema and starts the keep-alive thread.
    """

    def __init__(self, engine: Engine, keepalive_seconds: float = 30.0):
        self._engine = engine
        self._keepalive_seconds = keepalive_seconds
        self._lock = threading.Lock()
        self._conn: Optional[Connection] = None
        self._closed = False
        self._stop = threading.Event()
        self._keepalive_thread: Optional[threading.Thread] = None
        self.last_error: Optional[str] = None

    @classmethod
    def connect(
        cls,
        database_url: str,
        keepalive_seconds: float = 30.0,
        create_schema: bool = True,
        **engine_kwargs: Any,
    ) -> "RelationalSink":
        """
        Connect to the relational backend.

        Raises:
            SinkConnectionError: bad URL, missing driver or unreachable backend
        """
        engine = None
        sink = None
        try:
            engine = create_sink_engine(database_url, **engine_kwargs)
            sink = cls(engine, keepalive_seconds=keepalive_seconds)
            with sink._lock:
                conn = sink._ensure_connection()
                if create_schema:
                    Base.metadata.create_all(conn)
                    conn.commit()
        except (SQLAlchemyError, ImportError) as e:
            logger.error(f"Database connection failed: [{e}]")
            if sink is not None:
                sink.close()
            elif engine is not None:
                engine.dispose()
            raise SinkConnectionError(f"Could not connect to relational sink: {e}") from e

        sink.start_keepalive()
        logger.info(
            f"Connected to database [{engine.url.database}] as user [{engine.url.username}]"
        )
        return sink

    # ── Connection handling (callers hold self._lock) ─────────────────────

    def _ensure_connection(self) -> Connection:
        if self._closed:
            raise SinkConnectionError("Relational sink is closed")
        if self._conn is None or self._conn.closed or self._conn.invalidated:
            self._conn = self._engine.connect()
        return self._conn

    def _discard_connection(self) -> None:
        conn, self._conn = self._conn, None
        if conn is None:
            return
        try:
            conn.close()
        except SQLAlchemyError as e:
            logger.warning(f"Closing broken database connection failed: {e}")

    def _recover(self, exc: SQLAlchemyError) -> None:
        """Leave the shared connection usable (or gone) after a failed statement."""
        if self._conn is None:
            return
        if is_connection_lost(exc):
            self._discard_connection()
            return
        try:
            self._conn.rollback()
        except SQLAlchemyError as rb_exc:
            logger.warning(f"Rollback after failed statement failed, reopening: {rb_exc}")
            self._discard_connection()

    # ── Writes ────────────────────────────────────────────────────────────

    def insert(self, event: Event) -> None:
        """
        Insert one row with bound parameters.

        Raises:
            SinkWriteError: backend error (kept as __cause__), with `retryable`
        """
        params = event_to_row(event)
        with self._lock:
            if self._closed:
                raise SinkWriteError("Relational sink is closed", retryable=False)
            try:
                conn = self._ensure_connection()
                conn.execute(EVENTS_TABLE.insert(), params)
                conn.commit()
            except SQLAlchemyError as e:
                self._recover(e)
                retryable = is_retryable(e)
                logger.error(
                    f"Event insert failed: session_id={event.session_id} "
                    f"retryable={retryable} error={e}"
                )
                raise SinkWriteError(f"Event insert failed: {e}", retryable=retryable) from e

        logger.debug(f"Event inserted into database: session_id={event.session_id}")

    # ── Reads (external querying/audit; never used to serve /get_events) ──

    def rows_for(self, user_id: str) -> List[Event]:
        """All rows for user_id in insertion order."""
        stmt = (
            select(EVENTS_TABLE)
            .where(EVENTS_TABLE.c.user_id == user_id)
            .order_by(EVENTS_TABLE.c.id)
        )
        with self._lock:
            try:
                conn = self._ensure_connection()
                rows = conn.execute(stmt).fetchall()
                conn.rollback()
            except SQLAlchemyError as e:
                self._recover(e)
                raise
        return [row_to_event(r) for r in rows]

    def count(self) -> int:
        with self._lock:
            try:
                conn = self._ensure_connection()
                total = conn.execute(select(func.count()).select_from(EVENTS_TABLE)).scalar_one()
                conn.rollback()
            except SQLAlchemyError as e:
                self._recover(e)
                raise
        return int(total)

    # ── Liveness ──────────────────────────────────────────────────────────

    def _ping_locked(self) -> bool:
        if self._closed:
            return False
        try:
            conn = self._ensure_connection()
            conn.execute(text("SELECT 1"))
            conn.rollback()
        except SQLAlchemyError as e:
            self.last_error = str(e)
            logger.error(f"Database connection error: [{e}]")
            self._discard_connection()
            return False
        if self.last_error is not None:
            logger.info("Database connection restored")
            self.last_error = None
        return True

    def ping(self) -> bool:
        """Round-trip SELECT 1. Blocks behind an in-flight statement."""
        with self._lock:
            return self._ping_locked()

    def start_keepalive(self) -> None:
        if self._keepalive_seconds <= 0 or self._keepalive_thread is not None:
            return
        self._keepalive_thread = threading.Thread(
            target=self._keepalive_loop,
            name="relational-sink-keepalive",
            daemon=True,
        )
        self._keepalive_thread.start()

    def _keepalive_loop(self) -> None:
        while not self._stop.wait(self._keepalive_seconds):
            # A statement in flight already proves liveness; never wait on it.
            if not self._lock.acquire(blocking=False):
                continue
            try:
                self._ping_locked()
            finally:
                self._lock.release()

    # ── Lifecycle ─────────────────────────────────────────────────────────

    @property
    def is_closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        self._stop.set()
        if self._keepalive_thread is not None:
            self._keepalive_thread.join(timeout=5)
            self._keepalive_thread = None
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._discard_connection()
        self._engine.dispose()
        logger.info("Relational sink closed")

    def get_stats(self) -> Dict[str, Any]:
        return {
            "url": self._engine.url.render_as_string(hide_password=True),
            "connected": self._conn is not None and not self._conn.closed,
            "closed": self._closed,
            "last_error": self.last_error,
        }
