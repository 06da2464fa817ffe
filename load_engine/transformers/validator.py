"""
Validate staged records and turn them into typed, merge-ready records
"""

from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple
import logging

from pydantic_core import to_jsonable_python

from load_engine.partitions import PartitionScheme
from load_engine.transformers.rules import RequiredFieldRule, Rule, TypeRule
from schemas.batch import RejectReason, StagedRecord, TypedRecord, ValidationOutcome
from schemas.entity import EntitySpec

logger = logging.getLogger(__name__)

RejectSink = Callable[[StagedRecord, RejectReason], None]


class Validator:
    """
    Applies an entity's rules to staged records.

    Rules run in a fixed order and the first failure wins:
    0. The payload must be an object
    1. Required fields (business key, partition field, ordering field)
    2. Type coercion of every declared field
    3. Declared rules, in declaration order, against the coerced values

    Validation is pure: the same input always yields the same outcome and bad
    data never raises.
    """

    def __init__(self, entity_spec: EntitySpec, partition_scheme: Optional[PartitionScheme] = None):
        self.entity_spec = entity_spec
        self.partition_scheme = partition_scheme or PartitionScheme(entity_spec.grain)

        structural_fields = list(entity_spec.business_key_fields) + [entity_spec.partition_field]
        if entity_spec.ordering_field:
            structural_fields.append(entity_spec.ordering_field)

        self.required_rules = [RequiredFieldRule(name) for name in dict.fromkeys(structural_fields)]
        self.type_rules = [TypeRule(name, field_type) for name, field_type in entity_spec.field_types.items()]
        self.declared_rules: List[Rule] = list(entity_spec.rules)

    def validate(self, records: Iterable[StagedRecord], reject_sink: Optional[RejectSink] = None) -> ValidationOutcome:
        """
        Split records into accepted TypedRecords and rejects.

        When reject_sink is given, rejects are streamed to it instead of being
        held in the outcome; only the count is kept.
        """
        accepted: List[TypedRecord] = []
        rejected: List[Tuple[StagedRecord, RejectReason]] = []
        rejected_count = 0

        for record in records:
            typed, reason = self.validate_record(record)
            if reason is None:
                accepted.append(typed)
                continue

            rejected_count += 1
            if reject_sink is not None:
                reject_sink(record, reason)
            else:
                rejected.append((record, reason))

        if rejected_count:
            logger.info(
                f"Validation for {self.entity_spec.entity}: "
                f"{len(accepted)} accepted, {rejected_count} rejected"
            )

        return ValidationOutcome(accepted=accepted, rejected=rejected, rejected_count=rejected_count)

    def validate_record(self, record: StagedRecord) -> Tuple[Optional[TypedRecord], Optional[RejectReason]]:
        raw = record.fields
        if not isinstance(raw, Mapping):
            return None, RejectReason(
                rule="structure",
                message=f"Staged payload is a {type(raw).__name__}, not an object",
            )

        for rule in self.required_rules:
            reason = rule.check(raw)
            if reason:
                return None, reason

        coerced: Dict[str, Any] = {}
        for rule in self.type_rules:
            reason = rule.check(raw)
            if reason:
                return None, reason
            coerced[rule.field_name] = rule.coerce(raw)

        for rule in self.declared_rules:
            reason = self._run_rule(rule, coerced)
            if reason:
                return None, reason

        return self._to_typed(record, coerced), None

    @staticmethod
    def _run_rule(rule: Rule, coerced: Dict[str, Any]) -> Optional[RejectReason]:
        try:
            return rule.check(coerced)
        except Exception as e:
            # A rule blowing up on a value is a rejection of that value
            return RejectReason(
                rule=getattr(rule, "name", type(rule).__name__),
                field=getattr(rule, "field_name", None),
                message=f"Rule raised {type(e).__name__}: {e}",
            )

    def _to_typed(self, record: StagedRecord, coerced: Dict[str, Any]) -> TypedRecord:
        spec = self.entity_spec
        attributes = to_jsonable_python(coerced)

        return TypedRecord(
            business_key=tuple(str(attributes[name]) for name in spec.business_key_fields),
            partition_key=self.partition_scheme.key_for(coerced[spec.partition_field]),
            attributes=attributes,
            ordering_value=coerced.get(spec.ordering_field) if spec.ordering_field else None,
            source_offset=record.offset,
        )
