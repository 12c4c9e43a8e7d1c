"""Integration test fixtures: a real PostgreSQL queue table."""

from __future__ import annotations

import os
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy import text

from chronoqueue.core.brokers.postgres import PostgresBroker
from chronoqueue.core.models.broker import PostgresConfig

TEST_DATABASE_URL_ENV = 'CHRONOQUEUE_TEST_DATABASE_URL'


@pytest.fixture(scope='session')
def db_url() -> str:
    """Database connection URL, or skip when no test database is configured."""
    url = os.environ.get(TEST_DATABASE_URL_ENV)
    if not url:
        pytest.skip(f'{TEST_DATABASE_URL_ENV} is not set')
    return url


@pytest_asyncio.fixture
async def broker(db_url: str) -> AsyncGenerator[PostgresBroker, None]:
    """PostgresBroker with the schema initialized and an empty queue table."""
    brk = PostgresBroker(PostgresConfig(database_url=db_url))
    await brk.ensure_schema_initialized()
    async with brk.session_factory() as session:
        await session.execute(text('TRUNCATE chronoqueue_tasks RESTART IDENTITY'))
        await session.commit()
    yield brk
    await brk.close_async()
