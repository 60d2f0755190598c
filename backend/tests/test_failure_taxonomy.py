"""
Tests for failure_taxonomy: retryable vs fatal persistence failures.
"""

import pytest
from sqlalchemy import exc as sa_exc

from capture.failure_taxonomy import is_connection_lost, is_retryable


def _dbapi(cls, invalidated=False):
    return cls("INSERT ...", {}, Exception("boom"), connection_invalidated=invalidated)


@pytest.mark.smoke
class TestIsRetryable:

    @pytest.mark.parametrize("exc", [
        TimeoutError("slow"),
        ConnectionResetError("reset"),
        OSError("disk"),
        _dbapi(sa_exc.OperationalError),
        _dbapi(sa_exc.InterfaceError),
        sa_exc.DisconnectionError("gone"),
    ])
    def test_connection_level_is_retryable(self, exc):
        assert is_retryable(exc) is True

    @pytest.mark.parametrize("exc", [
        _dbapi(sa_exc.IntegrityError),
        _dbapi(sa_exc.DataError),
        _dbapi(sa_exc.ProgrammingError),
        ValueError("bad"),
        RuntimeError("bug"),
    ])
    def test_constraint_and_type_level_is_fatal(self, exc):
        assert is_retryable(exc) is False

    def test_fatal_wins_even_when_connection_invalidated(self):
        assert is_retryable(_dbapi(sa_exc.IntegrityError, invalidated=True)) is False

    def test_invalidated_generic_dbapi_error_is_retryable(self):
        assert is_retryable(_dbapi(sa_exc.DBAPIError, invalidated=True)) is True
        assert is_retryable(_dbapi(sa_exc.DBAPIError)) is False


@pytest.mark.smoke
class TestIsConnectionLost:

    def test_invalidated(self):
        assert is_connection_lost(_dbapi(sa_exc.OperationalError, invalidated=True))

    def test_interface_error(self):
        assert is_connection_lost(_dbapi(sa_exc.InterfaceError))

    def test_statement_level_error_keeps_connection(self):
        assert not is_connection_lost(_dbapi(sa_exc.OperationalError))
        assert not is_connection_lost(_dbapi(sa_exc.IntegrityError))
