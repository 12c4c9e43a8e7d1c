"""Unit tests for chronoqueue.core.utils.db helpers."""

from __future__ import annotations

import pytest

from psycopg import InterfaceError, OperationalError
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError as SAOperationalError

from chronoqueue.core.utils.db import (
    is_dbapi_disconnect,
    is_retryable_connection_error,
    mask_database_url,
)


def _make_dbapi_error(*, connection_invalidated: bool = False) -> DBAPIError:
    return DBAPIError(
        statement='SELECT 1',
        params=None,
        orig=Exception('test'),
        connection_invalidated=connection_invalidated,
    )


@pytest.mark.unit
class TestIsRetryableConnectionError:
    def test_psycopg_operational_error(self) -> None:
        assert is_retryable_connection_error(OperationalError('connection refused')) is True

    def test_psycopg_interface_error(self) -> None:
        assert is_retryable_connection_error(InterfaceError('broken pipe')) is True

    def test_sqlalchemy_operational_error(self) -> None:
        exc = SAOperationalError('SELECT 1', None, Exception('server closed'))
        assert is_retryable_connection_error(exc) is True

    def test_invalidated_dbapi_error(self) -> None:
        exc = _make_dbapi_error(connection_invalidated=True)
        assert is_dbapi_disconnect(exc) is True
        assert is_retryable_connection_error(exc) is True

    def test_plain_dbapi_error_not_retryable(self) -> None:
        assert is_retryable_connection_error(_make_dbapi_error()) is False

    def test_integrity_error_not_retryable(self) -> None:
        exc = IntegrityError('INSERT', None, Exception('duplicate key'))
        assert is_retryable_connection_error(exc) is False

    def test_builtin_connection_errors(self) -> None:
        assert is_retryable_connection_error(ConnectionResetError()) is True
        assert is_retryable_connection_error(TimeoutError()) is True

    def test_other_exceptions(self) -> None:
        assert is_retryable_connection_error(ValueError('x')) is False


@pytest.mark.unit
class TestMaskDatabaseUrl:
    def test_password_masked(self) -> None:
        url = 'postgresql+psycopg://photos:hunter2@db:5432/gallery'
        assert mask_database_url(url) == 'postgresql+psycopg://photos:***@db:5432/gallery'

    def test_no_password_unchanged(self) -> None:
        url = 'postgresql+psycopg://photos@db/gallery'
        assert mask_database_url(url) == url

    def test_garbage_unchanged(self) -> None:
        assert mask_database_url('not a url') == 'not a url'
