"""
Failure Taxonomy: single place that decides whether a persistence failure
is retryable.

Rules:
- Retryable (connection-level): TimeoutError, ConnectionError, OSError,
  SQLAlchemy OperationalError / InterfaceError / DisconnectionError,
  any DBAPIError that invalidated its connection
- Fatal (constraint/type-level): IntegrityError, DataError, ProgrammingError,
  ValueError, everything else

Sinks never classify on their own; they always call this module.
"""
from sqlalchemy import exc as sa_exc

RETRYABLE_EXCEPTIONS: tuple[type[BaseException], ...] = (
    TimeoutError,
    ConnectionError,
    OSError,
    sa_exc.OperationalError,
    sa_exc.InterfaceError,
    sa_exc.DisconnectionError,
)

FATAL_DB_EXCEPTIONS: tuple[type[BaseException], ...] = (
    sa_exc.IntegrityError,
    sa_exc.DataError,
    sa_exc.ProgrammingError,
)


def is_retryable(exc: BaseException) -> bool:
    """
    True when retrying the same write later may succeed.

    IntegrityError/DataError/ProgrammingError are checked first: they are
    DBAPIError subclasses too, but a retry cannot fix them.
    """
    if isinstance(exc, FATAL_DB_EXCEPTIONS):
        return False
    if isinstance(exc, RETRYABLE_EXCEPTIONS):
        return True
    if isinstance(exc, sa_exc.DBAPIError) and exc.connection_invalidated:
        return True
    return False


def is_connection_lost(exc: BaseException) -> bool:
    """True when the shared connection must be reopened before the next statement."""
    if isinstance(exc, sa_exc.DBAPIError) and exc.connection_invalidated:
        return True
    return isinstance(exc, (sa_exc.DisconnectionError, sa_exc.InterfaceError))
