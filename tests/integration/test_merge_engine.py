"""
Integration tests for the merge engine (current rows + SCD2 history)
"""

from datetime import datetime

import pytest
import pytest_asyncio
from sqlalchemy import func, select, update

from core.exceptions import ConcurrentWriteError, PartitionClosedError
from load_engine.loaders.merge_engine import MergeEngine
from load_engine.partitions import PartitionManager
from load_engine.transformers.validator import Validator
from models.base import PartitionState
from models.target import HistoryRow, TargetRow


async def typed(orders_spec, make_records, payloads):
    outcome = Validator(orders_spec).validate(make_records(payloads))
    assert outcome.rejected_count == 0
    return outcome.accepted


async def history_for(session, key):
    result = await session.execute(
        select(HistoryRow.version, HistoryRow.valid_from, HistoryRow.valid_to, HistoryRow.attributes)
        .where(HistoryRow.business_key == MergeEngine.encode_key((key,)))
        .order_by(HistoryRow.version)
    )
    return result.all()


async def target_for(session, key):
    result = await session.execute(
        select(TargetRow.attributes, TargetRow.version, TargetRow.last_source_offset)
        .where(TargetRow.business_key == MergeEngine.encode_key((key,)))
    )
    return result.first()


@pytest_asyncio.fixture
async def open_partition(db_session):
    handle = await PartitionManager(db_session, "orders").ensure_partition("2024-01-01")
    assert handle.state == PartitionState.OPEN
    return handle


@pytest.mark.asyncio
async def test_insert_then_change_within_batch(db_session, orders_spec, make_records, clock, open_partition):
    """K1 inserted then changed in the same batch: one closed and one open history row"""
    records = await typed(orders_spec, make_records, [
        {"order_id": "K1", "order_date": "2024-01-01", "amount": "10", "status": "new", "seq": 1},
        {"order_id": "K1", "order_date": "2024-01-01", "amount": "12", "status": "paid", "seq": 2},
    ])
    engine = MergeEngine(db_session, orders_spec, clock=clock)

    result = await engine.apply("batch-1", open_partition, records)
    await db_session.commit()

    assert result.inserted_count == 1
    assert result.updated_count == 1
    assert result.historized_count == 1

    history = await history_for(db_session, "K1")
    assert len(history) == 2
    closed, current = history
    assert closed.valid_to == current.valid_from == datetime(2024, 1, 2, 0, 0, 1)
    assert current.valid_to is None
    assert current.attributes["amount"] == "12"

    target = await target_for(db_session, "K1")
    assert target.attributes["status"] == "paid"
    assert target.version == 2


@pytest.mark.asyncio
async def test_ordering_value_beats_staging_position(db_session, orders_spec, make_records, open_partition):
    records = await typed(orders_spec, make_records, [
        {"order_id": "K1", "order_date": "2024-01-01", "amount": "12", "status": "paid", "seq": 2},
        {"order_id": "K1", "order_date": "2024-01-01", "amount": "10", "status": "new", "seq": 1},
    ])

    await MergeEngine(db_session, orders_spec).apply("batch-1", open_partition, records)
    await db_session.commit()

    target = await target_for(db_session, "K1")
    assert target.attributes["amount"] == "12"
    assert target.last_source_offset == 0


@pytest.mark.asyncio
async def test_replaying_same_batch_is_noop(db_session, orders_spec, make_records, clock, open_partition, order_payloads):
    records = await typed(orders_spec, make_records, [p for p in order_payloads if p["order_id"] != "K3"])
    engine = MergeEngine(db_session, orders_spec, clock=clock)

    await engine.apply("batch-1", open_partition, records)
    await db_session.commit()
    before = await db_session.execute(select(HistoryRow.id, HistoryRow.valid_to).order_by(HistoryRow.id))
    before = before.all()

    replay = await engine.apply("batch-1", open_partition, records)
    await db_session.commit()

    assert replay.inserted_count == replay.updated_count == replay.historized_count == 0
    assert replay.skipped_count == len(records)
    after = await db_session.execute(select(HistoryRow.id, HistoryRow.valid_to).order_by(HistoryRow.id))
    assert after.all() == before


@pytest.mark.asyncio
async def test_unchanged_tracked_attributes_are_noop(db_session, orders_spec, make_records, open_partition):
    engine = MergeEngine(db_session, orders_spec)
    first = await typed(orders_spec, make_records, [
        {"order_id": "K1", "order_date": "2024-01-01", "amount": "10", "status": "new", "seq": 1},
    ])
    await engine.apply("batch-1", open_partition, first)
    await db_session.commit()

    # seq is not tracked, so only it changing is not a new version
    second = await typed(orders_spec, make_records, [
        {"order_id": "K1", "order_date": "2024-01-01", "amount": "10", "status": "new", "seq": 7},
    ])
    result = await engine.apply("batch-2", open_partition, second)
    await db_session.commit()

    assert result.unchanged_count == 1
    assert result.updated_count == 0
    assert len(await history_for(db_session, "K1")) == 1


@pytest.mark.asyncio
async def test_change_across_batches_closes_previous_version(db_session, orders_spec, make_records, clock, open_partition):
    engine = MergeEngine(db_session, orders_spec, clock=clock)
    for batch_id, amount in (("batch-1", "10"), ("batch-2", "11"), ("batch-3", "12")):
        records = await typed(orders_spec, make_records, [
            {"order_id": "K1", "order_date": "2024-01-01", "amount": amount, "status": "new", "seq": 1},
        ])
        await engine.apply(batch_id, open_partition, records)
        await db_session.commit()

    history = await history_for(db_session, "K1")
    assert [row.version for row in history] == [1, 2, 3]
    assert [row.valid_to is None for row in history] == [False, False, True]

    open_rows = await db_session.scalar(
        select(func.count()).select_from(HistoryRow).where(HistoryRow.valid_to.is_(None))
    )
    assert open_rows == 1


@pytest.mark.asyncio
async def test_history_disabled_keeps_only_current_rows(db_session, orders_spec, make_records, open_partition):
    spec = orders_spec.model_copy(update={"history_enabled": False})
    records = await typed(spec, make_records, [
        {"order_id": "K1", "order_date": "2024-01-01", "amount": "10", "status": "new", "seq": 1},
        {"order_id": "K1", "order_date": "2024-01-01", "amount": "12", "status": "new", "seq": 2},
    ])

    result = await MergeEngine(db_session, spec).apply("batch-1", open_partition, records)
    await db_session.commit()

    assert result.updated_count == 1
    assert result.historized_count == 0
    assert await db_session.scalar(select(func.count()).select_from(HistoryRow)) == 0
    assert (await target_for(db_session, "K1")).version == 2


@pytest.mark.asyncio
async def test_sealed_partition_rejects_writes(db_session, orders_spec, make_records):
    manager = PartitionManager(db_session, "orders")
    await manager.ensure_partition("2024-01-01")
    sealed = await manager.seal("2024-01-01")
    records = await typed(orders_spec, make_records, [
        {"order_id": "K1", "order_date": "2024-01-01", "amount": "10", "status": "new", "seq": 1},
    ])

    with pytest.raises(PartitionClosedError):
        await MergeEngine(db_session, orders_spec).apply("batch-1", sealed, records)

    assert await db_session.scalar(select(func.count()).select_from(TargetRow)) == 0


@pytest.mark.asyncio
async def test_seal_after_handle_was_read_rejects_writes(db_session, session_maker, orders_spec, make_records):
    handle = await PartitionManager(db_session, "orders").ensure_partition("2024-01-01")
    async with session_maker() as other:
        await PartitionManager(other, "orders").seal("2024-01-01")
    records = await typed(orders_spec, make_records, [
        {"order_id": "K1", "order_date": "2024-01-01", "amount": "10", "status": "new", "seq": 1},
    ])

    assert handle.is_writable
    with pytest.raises(PartitionClosedError) as exc_info:
        await MergeEngine(db_session, orders_spec).apply("batch-1", handle, records)
    await db_session.rollback()

    assert exc_info.value.context["state"] == "sealed"
    assert await db_session.scalar(select(func.count()).select_from(TargetRow)) == 0


@pytest.mark.asyncio
async def test_equal_decimals_with_different_scale_are_unchanged(db_session, orders_spec, make_records, open_partition):
    engine = MergeEngine(db_session, orders_spec)
    first = await typed(orders_spec, make_records, [
        {"order_id": "K1", "order_date": "2024-01-01", "amount": "10.0", "status": "new", "seq": 1},
    ])
    await engine.apply("batch-1", open_partition, first)
    await db_session.commit()

    second = await typed(orders_spec, make_records, [
        {"order_id": "K1", "order_date": "2024-01-01", "amount": "10.00", "status": "new", "seq": 1},
    ])
    result = await engine.apply("batch-2", open_partition, second)
    await db_session.commit()

    assert result.unchanged_count == 1
    assert result.updated_count == 0
    assert len(await history_for(db_session, "K1")) == 1
    target = await target_for(db_session, "K1")
    assert target.version == 1
    assert target.attributes["amount"] == "10"


@pytest.mark.asyncio
async def test_lost_compare_and_swap_raises_concurrent_write(db_session, orders_spec, make_records, open_partition):
    engine = MergeEngine(db_session, orders_spec)
    first = await typed(orders_spec, make_records, [
        {"order_id": "K1", "order_date": "2024-01-01", "amount": "10", "status": "new", "seq": 1},
    ])
    await engine.apply("batch-1", open_partition, first)
    await db_session.commit()

    # Another writer bumps the version between our read and our write
    original_load = engine._load_current

    async def load_then_interfere(key):
        state = await original_load(key)
        await db_session.execute(update(TargetRow).values(version=TargetRow.version + 1))
        return state

    engine._load_current = load_then_interfere
    second = await typed(orders_spec, make_records, [
        {"order_id": "K1", "order_date": "2024-01-01", "amount": "20", "status": "new", "seq": 1},
    ])

    with pytest.raises(ConcurrentWriteError):
        await engine.apply("batch-2", open_partition, second)
    await db_session.rollback()

    target = await target_for(db_session, "K1")
    assert target.attributes["amount"] == "10"
    assert len(await history_for(db_session, "K1")) == 1
