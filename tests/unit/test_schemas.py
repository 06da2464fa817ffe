"""
Unit tests for batch value types and entity specs
"""

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from core.exceptions import ConfigurationError
from load_engine.entity_config import entity_spec_from_dict
from load_engine.transformers.rules import RangeRule
from schemas.batch import BatchDescriptor, LoadReport, LoadStatus, MergeResult, TypedRecord, compute_batch_id
from schemas.entity import EntitySpec


class TestBatchDescriptor:
    """Test batch identity derivation"""

    def test_batch_id_is_deterministic(self):
        first = BatchDescriptor(source_id="orders", watermark_start=datetime(2024, 1, 1), watermark_end=datetime(2024, 1, 2))
        second = BatchDescriptor(source_id="orders", watermark_start=datetime(2024, 1, 1), watermark_end=datetime(2024, 1, 2))

        assert first.batch_id == second.batch_id
        assert len(first.batch_id) == 64

    def test_attempt_does_not_change_batch_id(self):
        first = BatchDescriptor(source_id="orders", watermark_start=datetime(2024, 1, 1), watermark_end=datetime(2024, 1, 2))
        retry = BatchDescriptor(source_id="orders", watermark_start=datetime(2024, 1, 1), watermark_end=datetime(2024, 1, 2), attempt=3)

        assert first.batch_id == retry.batch_id

    def test_different_range_gives_different_id(self):
        first = BatchDescriptor(source_id="orders", watermark_start=datetime(2024, 1, 1), watermark_end=datetime(2024, 1, 2))
        other = BatchDescriptor(source_id="orders", watermark_start=datetime(2024, 1, 2), watermark_end=datetime(2024, 1, 3))

        assert first.batch_id != other.batch_id

    def test_aware_watermarks_normalised(self):
        aware = BatchDescriptor(
            source_id="orders",
            watermark_start=datetime(2024, 1, 1, 2, tzinfo=timezone(timedelta(hours=2))),
            watermark_end=datetime(2024, 1, 2, 0, tzinfo=timezone.utc),
        )
        naive = BatchDescriptor(source_id="orders", watermark_start=datetime(2024, 1, 1), watermark_end=datetime(2024, 1, 2))

        assert aware.batch_id == naive.batch_id

    def test_mismatching_batch_id_rejected(self):
        with pytest.raises(ValidationError):
            BatchDescriptor(
                source_id="orders",
                watermark_start=datetime(2024, 1, 1),
                watermark_end=datetime(2024, 1, 2),
                batch_id="not-the-hash",
            )

    def test_matching_batch_id_accepted(self):
        batch_id = compute_batch_id("orders", datetime(2024, 1, 1), datetime(2024, 1, 2))
        descriptor = BatchDescriptor(
            source_id="orders",
            watermark_start=datetime(2024, 1, 1),
            watermark_end=datetime(2024, 1, 2),
            batch_id=batch_id,
        )
        assert descriptor.batch_id == batch_id

    def test_empty_range_rejected(self):
        with pytest.raises(ValidationError):
            BatchDescriptor(source_id="orders", watermark_start=datetime(2024, 1, 2), watermark_end=datetime(2024, 1, 2))

    def test_descriptor_is_immutable(self):
        descriptor = BatchDescriptor(source_id="orders", watermark_start=datetime(2024, 1, 1), watermark_end=datetime(2024, 1, 2))
        with pytest.raises(ValidationError):
            descriptor.source_id = "other"


def test_typed_record_sort_key_uses_ordering_then_offset():
    late = TypedRecord(business_key=("K1",), partition_key="2024-01-01", attributes={}, ordering_value=2, source_offset=0)
    early = TypedRecord(business_key=("K1",), partition_key="2024-01-01", attributes={}, ordering_value=1, source_offset=5)

    assert sorted([late, early], key=lambda r: r.sort_key) == [early, late]


def test_merge_result_combine():
    total = MergeResult(inserted_count=1, historized_count=2).combine(MergeResult(inserted_count=2, skipped_count=1))

    assert total.inserted_count == 3
    assert total.historized_count == 2
    assert total.skipped_count == 1


def test_load_report_serialises_status_value():
    report = LoadReport(batch_id="b", status=LoadStatus.ALREADY_COMMITTED)
    assert report.model_dump()["status"] == "already_committed"


class TestEntitySpec:
    """Test pre-flight configuration checks"""

    def test_valid_spec_passes(self, orders_spec):
        orders_spec.check()

    def test_tracked_fields_default_to_all_attributes(self):
        spec = EntitySpec(
            entity="orders",
            business_key_fields=["id"],
            field_types={"id": "string", "day": "date"},
            partition_field="day",
        )
        assert spec.effective_tracked_fields() == ["id", "day"]

    @pytest.mark.parametrize("overrides", [
        {"business_key_fields": []},
        {"business_key_fields": ["missing"]},
        {"partition_field": None},
        {"partition_field": "amount"},
        {"partition_grain": "weekly"},
        {"ordering_field": "nope"},
        {"tracked_fields": ["nope"]},
        {"rules": [object()]},
    ])
    def test_invalid_spec_raises_configuration_error(self, orders_spec, overrides):
        spec = orders_spec.model_copy(update=overrides)
        with pytest.raises(ConfigurationError):
            spec.check()

    def test_spec_from_declaration(self):
        spec = entity_spec_from_dict({
            "entity": "orders",
            "business_key_fields": ["order_id"],
            "field_types": {"order_id": "string", "order_date": "date", "amount": "decimal"},
            "partition_field": "order_date",
            "rules": [{"type": "range", "field": "amount", "minimum": 0}],
        })

        assert spec.entity == "orders"
        assert isinstance(spec.rules[0], RangeRule)

    def test_spec_from_declaration_with_bad_type(self):
        with pytest.raises(ConfigurationError):
            entity_spec_from_dict({
                "entity": "orders",
                "business_key_fields": ["order_id"],
                "field_types": {"order_id": "uuid"},
                "partition_field": "order_id",
            })
