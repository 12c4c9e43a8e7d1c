# chronoqueue/core/utils/db.py
"""Helpers for database error classification and safe URL logging."""

from __future__ import annotations

from urllib.parse import urlparse, urlunparse

from psycopg import InterfaceError, OperationalError
from sqlalchemy.exc import DBAPIError, OperationalError as SAOperationalError


def is_dbapi_disconnect(exc: DBAPIError) -> bool:
    """Check whether a SQLAlchemy DBAPIError represents a connection disconnect."""
    return bool(getattr(exc, 'connection_invalidated', False)) or bool(
        getattr(exc, 'is_disconnect', False)
    )


def is_retryable_connection_error(exc: BaseException) -> bool:
    """Whether a failure means the datastore is momentarily unreachable.

    Such failures skip the current tick; the next poll retries.
    """
    match exc:
        case OperationalError() | InterfaceError() | SAOperationalError():
            return True
        case DBAPIError() as db_exc if is_dbapi_disconnect(db_exc):
            return True
        case ConnectionError() | TimeoutError():
            return True
        case _:
            return False


def mask_database_url(url: str) -> str:
    """Replace the password in a database URL with ``***``."""
    try:
        parsed = urlparse(url)
    except ValueError:
        return url
    if not parsed.password:
        return url
    netloc = parsed.netloc.replace(f':{parsed.password}@', ':***@')
    return urlunparse(parsed._replace(netloc=netloc))
