"""
Unit tests for coercion, validation rules and the Validator
"""

from datetime import date, datetime, timezone
from decimal import Decimal

import pytest
from hypothesis import given, settings as hypothesis_settings, strategies as st

from core.exceptions import ConfigurationError
from load_engine.transformers.coercion import coerce
from load_engine.transformers.rules import (
    PatternRule,
    PredicateRule,
    RangeRule,
    ReferenceRule,
    RequiredFieldRule,
    TypeRule,
    build_rule,
)
from load_engine.transformers.validator import Validator
from schemas.batch import StagedRecord
from schemas.entity import EntitySpec, FieldType


class TestCoercion:
    """Test type coercion of raw staged values"""

    def test_integer_accepts_whole_number_strings(self):
        assert coerce("42", FieldType.INTEGER) == 42
        assert coerce("10.0", FieldType.INTEGER) == 10
        assert coerce(7.0, FieldType.INTEGER) == 7

    def test_integer_rejects_fractions_and_bools(self):
        with pytest.raises(ValueError):
            coerce("10.5", FieldType.INTEGER)
        with pytest.raises(TypeError):
            coerce(True, FieldType.INTEGER)

    def test_decimal_keeps_value(self):
        assert coerce("12.30", FieldType.DECIMAL) == Decimal("12.30")

    def test_decimal_has_one_representation_per_value(self):
        assert str(coerce("10.00", FieldType.DECIMAL)) == "10"
        assert str(coerce("1E+1", FieldType.DECIMAL)) == "10"
        assert str(coerce("12.30", FieldType.DECIMAL)) == "12.3"
        assert str(coerce("-0.0", FieldType.DECIMAL)) == "0"
        assert str(coerce(0.5, FieldType.DECIMAL)) == "0.5"

    def test_decimal_rejects_garbage_and_nan(self):
        with pytest.raises(ValueError):
            coerce("abc", FieldType.DECIMAL)
        with pytest.raises(ValueError):
            coerce("NaN", FieldType.DECIMAL)
        with pytest.raises(ValueError):
            coerce("1E+999999999", FieldType.DECIMAL)

    def test_boolean_words(self):
        assert coerce("yes", FieldType.BOOLEAN) is True
        assert coerce("0", FieldType.BOOLEAN) is False
        with pytest.raises(ValueError):
            coerce("maybe", FieldType.BOOLEAN)

    def test_date_from_iso_strings(self):
        assert coerce("2024-01-15", FieldType.DATE) == date(2024, 1, 15)
        assert coerce("2024-01-15T23:30:00Z", FieldType.DATE) == date(2024, 1, 15)

    def test_datetime_normalised_to_naive_utc(self):
        aware = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)
        assert coerce(aware, FieldType.DATETIME) == datetime(2024, 1, 15, 12, 0)
        assert coerce("2024-01-15T12:00:00+02:00", FieldType.DATETIME) == datetime(2024, 1, 15, 10, 0)

    def test_blank_values_coerce_to_none(self):
        assert coerce("   ", FieldType.INTEGER) is None
        assert coerce(None, FieldType.DATE) is None


class TestRules:
    """Test individual rule objects"""

    def test_required_field(self):
        rule = RequiredFieldRule("order_id")

        assert rule.check({"order_id": "K1"}) is None
        assert rule.check({}).message == "Field is missing from record"
        assert rule.check({"order_id": None}).message == "Field value is null"
        assert rule.check({"order_id": "  "}).field == "order_id"

    def test_type_rule_reports_coercion_failure(self):
        rule = TypeRule("seq", FieldType.INTEGER)

        assert rule.check({"seq": "3"}) is None
        reason = rule.check({"seq": "three"})
        assert reason.rule == "type:seq"
        assert "integer" in reason.message

    def test_range_rule_bounds(self):
        rule = RangeRule("amount", minimum=0, max_exclusive=100)

        assert rule.check({"amount": 0}) is None
        assert rule.check({"amount": None}) is None
        assert rule.check({"amount": -1}) is not None
        assert rule.check({"amount": 100}) is not None

    def test_range_rule_requires_a_bound(self):
        with pytest.raises(ConfigurationError):
            RangeRule("amount")

    def test_pattern_rule_matches_in_full(self):
        rule = PatternRule("order_id", r"K\d+")

        assert rule.check({"order_id": "K12"}) is None
        assert rule.check({"order_id": "K12x"}) is not None

    def test_pattern_rule_invalid_regex(self):
        with pytest.raises(ConfigurationError):
            PatternRule("order_id", "([")

    def test_reference_rule(self):
        rule = ReferenceRule("status", {"new", "paid"})

        assert rule.check({"status": "paid"}) is None
        assert "reference set" in rule.check({"status": "lost"}).message

    def test_predicate_rule(self):
        rule = PredicateRule("paid_has_amount", lambda r: r["status"] != "paid" or r["amount"], "Paid order without amount")

        assert rule.check({"status": "paid", "amount": 5}) is None
        assert rule.check({"status": "paid", "amount": 0}).rule == "paid_has_amount"

    def test_build_rule_from_declaration(self):
        rule = build_rule({"type": "range", "field": "amount", "minimum": 0})

        assert isinstance(rule, RangeRule)
        assert rule.minimum == 0

    @pytest.mark.parametrize("declaration", [
        {"type": "unknown", "field": "amount"},
        {"type": "range", "minimum": 0},
        {"type": "pattern", "field": "order_id", "regex": "x"},
    ])
    def test_build_rule_rejects_bad_declarations(self, declaration):
        with pytest.raises(ConfigurationError):
            build_rule(declaration)


class TestValidator:
    """Test the Validator's ordering and outcomes"""

    def test_accepts_and_types_valid_records(self, orders_spec, make_records):
        outcome = Validator(orders_spec).validate(make_records([
            {"order_id": "K1", "order_date": "2024-01-01", "amount": "10.50", "status": "new", "seq": "1"},
        ]))

        assert outcome.rejected_count == 0
        record = outcome.accepted[0]
        assert record.business_key == ("K1",)
        assert record.partition_key == "2024-01-01"
        assert record.ordering_value == 1
        assert record.attributes["amount"] == "10.5"
        assert record.attributes["order_date"] == "2024-01-01"

    def test_rejects_negative_amount(self, orders_spec, make_records, order_payloads):
        outcome = Validator(orders_spec).validate(make_records(order_payloads))

        assert len(outcome.accepted) == 4
        assert outcome.rejected_count == 1
        staged, reason = outcome.rejected[0]
        assert staged.fields["order_id"] == "K3"
        assert reason.rule == "range:amount"

    def test_required_fields_checked_before_types(self, orders_spec, make_records):
        outcome = Validator(orders_spec).validate(make_records([
            {"order_date": "not-a-date", "amount": "1", "status": "new", "seq": 1},
        ]))

        _, reason = outcome.rejected[0]
        assert reason.rule == "required:order_id"

    def test_types_checked_before_declared_rules(self, orders_spec, make_records):
        outcome = Validator(orders_spec).validate(make_records([
            {"order_id": "K1", "order_date": "2024-01-01", "amount": "lots", "status": "new", "seq": 1},
        ]))

        _, reason = outcome.rejected[0]
        assert reason.rule == "type:amount"

    def test_non_object_payload_is_a_structure_reject(self, orders_spec):
        records = [
            StagedRecord(fields=["K1", "2024-01-01"], offset=0, load_batch_id="b"),
            StagedRecord(fields="K1,2024-01-01", offset=1, load_batch_id="b"),
        ]

        outcome = Validator(orders_spec).validate(records)

        assert outcome.accepted == []
        assert [reason.rule for _, reason in outcome.rejected] == ["structure", "structure"]
        assert "list" in outcome.rejected[0][1].message

    def test_missing_partition_field_is_rejected(self, orders_spec, make_records):
        outcome = Validator(orders_spec).validate(make_records([
            {"order_id": "K1", "amount": "1", "status": "new", "seq": 1},
        ]))

        _, reason = outcome.rejected[0]
        assert reason.rule == "required:order_date"
        assert outcome.accepted == []

    def test_reject_sink_receives_rejects(self, orders_spec, make_records, order_payloads):
        sink = []
        outcome = Validator(orders_spec).validate(
            make_records(order_payloads),
            reject_sink=lambda record, reason: sink.append((record.offset, reason.rule))
        )

        assert sink == [(3, "range:amount")]
        assert outcome.rejected == []
        assert outcome.rejected_count == 1
        assert outcome.total == 5

    def test_rule_raising_becomes_reject(self, orders_spec, make_records):
        spec = orders_spec.model_copy(update={
            "rules": [PredicateRule("explodes", lambda r: 1 / 0, "never")],
        })
        outcome = Validator(spec).validate(make_records([
            {"order_id": "K1", "order_date": "2024-01-01", "amount": "1", "status": "new", "seq": 1},
        ]))

        _, reason = outcome.rejected[0]
        assert reason.rule == "explodes"
        assert "ZeroDivisionError" in reason.message

    def test_month_grain_partition_key(self, make_records):
        spec = EntitySpec(
            entity="events",
            business_key_fields=["id"],
            field_types={"id": "integer", "at": "datetime"},
            partition_field="at",
            partition_grain="month",
        )
        outcome = Validator(spec).validate(make_records([{"id": 9, "at": "2024-02-29T10:00:00"}]))

        assert outcome.accepted[0].partition_key == "2024-02"
        assert outcome.accepted[0].business_key == ("9",)


payload_strategy = st.fixed_dictionaries({
    "order_id": st.one_of(st.none(), st.text(max_size=5)),
    "order_date": st.one_of(st.none(), st.sampled_from(["2024-01-01", "2024-13-01", "", "x"])),
    "amount": st.one_of(st.none(), st.integers(-5, 5), st.text(max_size=4)),
    "status": st.one_of(st.none(), st.text(max_size=4)),
    "seq": st.one_of(st.none(), st.integers(-3, 3), st.floats(allow_nan=True)),
})


@hypothesis_settings(max_examples=100, deadline=None)
@given(payloads=st.lists(payload_strategy, max_size=8))
def test_validation_is_deterministic_and_total(payloads):
    """Same input always gives the same outcome, and every record is accounted for"""
    spec = EntitySpec(
        entity="orders",
        business_key_fields=["order_id"],
        field_types={"order_id": "string", "order_date": "date", "amount": "decimal", "status": "string", "seq": "integer"},
        partition_field="order_date",
        ordering_field="seq",
        rules=[RangeRule("amount", minimum=0)],
    )
    records = [
        StagedRecord(fields=payload, offset=offset, load_batch_id="b")
        for offset, payload in enumerate(payloads)
    ]
    validator = Validator(spec)

    first = validator.validate(records)
    second = validator.validate(records)

    assert first.model_dump() == second.model_dump()
    assert first.total == len(records)
