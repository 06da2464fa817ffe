"""
Pytest configuration and fixtures
"""

import os
from datetime import datetime, timedelta
from typing import AsyncGenerator, List

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession

from core.database import build_engine, build_session_maker
from load_engine.staging import StagingSource
from load_engine.transformers.rules import RangeRule
from models import Base
from schemas.batch import BatchDescriptor, StagedRecord
from schemas.entity import EntitySpec


class FakeClock:
    """Deterministic clock: every call advances one second"""

    def __init__(self, start: datetime = datetime(2024, 1, 2, 0, 0, 0)):
        self.now = start
        self.calls = 0

    def __call__(self) -> datetime:
        value = self.now
        self.now = self.now + timedelta(seconds=1)
        self.calls += 1
        return value


class StaticStagingSource(StagingSource):
    """In-memory staging source returning the same payloads on every fetch"""

    def __init__(self, payloads: List[dict]):
        self.payloads = payloads
        self.fetch_calls = 0

    async def fetch(self, descriptor: BatchDescriptor) -> List[StagedRecord]:
        self.fetch_calls += 1
        return make_staged(self.payloads, descriptor.batch_id)


def make_staged(payloads: List[dict], batch_id: str = "test-batch") -> List[StagedRecord]:
    return [
        StagedRecord(fields=payload, offset=offset, load_batch_id=batch_id, source_file="orders.csv")
        for offset, payload in enumerate(payloads)
    ]


@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path):
    """
    Create test database engine.

    Uses TEST_DATABASE_URL when set (e.g. PostgreSQL via asyncpg), otherwise a
    throwaway SQLite file.
    """
    database_url = os.getenv("TEST_DATABASE_URL") or f"sqlite+aiosqlite:///{tmp_path / 'load_engine.db'}"
    engine = build_engine(database_url)

    # Create all tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    # Drop all tables after test
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_maker(test_engine):
    return build_session_maker(test_engine)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_maker) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for tests"""
    async with session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def orders_spec() -> EntitySpec:
    """Orders entity: keyed by order_id, partitioned by order_date, ordered by seq"""
    return EntitySpec(
        entity="orders",
        business_key_fields=["order_id"],
        field_types={
            "order_id": "string",
            "order_date": "date",
            "amount": "decimal",
            "status": "string",
            "seq": "integer",
        },
        partition_field="order_date",
        ordering_field="seq",
        tracked_fields=["amount", "status"],
        rules=[RangeRule("amount", minimum=0)],
    )


@pytest.fixture
def descriptor() -> BatchDescriptor:
    return BatchDescriptor(
        source_id="orders",
        watermark_start=datetime(2024, 1, 1),
        watermark_end=datetime(2024, 1, 2),
    )


@pytest.fixture
def order_payloads() -> List[dict]:
    """Four orders: K1 changes within the batch, K3 has a negative amount"""
    return [
        {"order_id": "K1", "order_date": "2024-01-01", "amount": "10.00", "status": "new", "seq": 1},
        {"order_id": "K2", "order_date": "2024-01-01", "amount": "5.50", "status": "new", "seq": 1},
        {"order_id": "K1", "order_date": "2024-01-01", "amount": "12.00", "status": "paid", "seq": 2},
        {"order_id": "K3", "order_date": "2024-01-01", "amount": "-1", "status": "new", "seq": 1},
        {"order_id": "K4", "order_date": "2024-01-01", "amount": "7", "status": "new", "seq": 1},
    ]


@pytest.fixture
def make_records():
    """Factory turning payload dicts into StagedRecords with sequential offsets"""
    return make_staged


@pytest.fixture
def static_source():
    """Factory for in-memory staging sources"""
    return StaticStagingSource
