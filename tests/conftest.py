"""Shared fixtures.

Each test gets its own SQLite file (WAL, busy_timeout) with NullPool so that
concurrent sessions really use separate connections. Redis is an AsyncMock;
published messages are read back from ``redis.publish.await_args_list``.
"""

import json
import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret")

from decimal import Decimal
from unittest.mock import AsyncMock

import httpx
import pytest
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

from services.common.eventbus import EventBus
from services.listing.app import schema as listing_schema
from services.listing.app.broadcaster import LiveUpdateBroadcaster
from services.transaction.app import schema as transaction_schema
from services.transaction.app.fee_client import FeeCalculatorClient


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'marketplace.db'}",
        poolclass=NullPool,
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _set_sqlite_pragma(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA busy_timeout=5000")
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    await listing_schema.create_tables(engine)
    await transaction_schema.create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def redis():
    redis = AsyncMock()
    redis.publish = AsyncMock(return_value=1)
    return redis


@pytest.fixture
def bus(redis):
    return EventBus(redis)


@pytest.fixture
async def broadcaster():
    live = LiveUpdateBroadcaster()
    yield live
    await live.drain()


@pytest.fixture
def published(redis):
    """Return a callable listing the envelopes published on a topic."""
    def _published(topic: str) -> list[dict]:
        return [
            json.loads(c.args[1])
            for c in redis.publish.await_args_list
            if c.args[0] == topic
        ]
    return _published


@pytest.fixture
def make_fee_calculator():
    """Factory: FeeCalculatorClient backed by an httpx.MockTransport.

    ``fee`` answers with a fixed fee, ``status_code`` overrides the status,
    ``content`` sends a raw body instead, ``timeout=True`` raises ReadTimeout.
    """
    calls = []

    def _make(fee="5.00", status_code=200, content=None, timeout=False):
        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(json.loads(request.content))
            if timeout:
                raise httpx.ReadTimeout("timed out", request=request)
            if content is not None:
                return httpx.Response(status_code, content=content)
            price = Decimal(calls[-1]["price"])
            return httpx.Response(
                status_code, json={"fee": fee, "total": str(price + Decimal(fee))}
            )

        return FeeCalculatorClient(
            "http://fee-service", timeout=0.5, transport=httpx.MockTransport(handler)
        )

    _make.calls = calls
    return _make
