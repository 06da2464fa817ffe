"""
Declarative description of a target entity: keys, types, partitioning and rules
"""

from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
import enum

from core.exceptions import ConfigurationError


class FieldType(str, enum.Enum):
    """Declared field types (staged values are coerced to these)"""
    STRING = "string"
    INTEGER = "integer"
    FLOAT = "float"
    DECIMAL = "decimal"
    BOOLEAN = "boolean"
    DATE = "date"
    DATETIME = "datetime"


class PartitionGrain(str, enum.Enum):
    """Calendar bucket a partition covers"""
    DAY = "day"
    MONTH = "month"


TEMPORAL_TYPES = {FieldType.DATE, FieldType.DATETIME}


class EntitySpec(BaseModel):
    """
    Target entity definition.

    Example:
        EntitySpec(
            entity="orders",
            business_key_fields=["order_id"],
            field_types={"order_id": "string", "order_date": "date", "amount": "decimal", "seq": "integer"},
            partition_field="order_date",
            ordering_field="seq",
            tracked_fields=["amount"],
        )
    """
    entity: str = Field(..., min_length=1, max_length=100)
    business_key_fields: List[str] = Field(default_factory=list)
    field_types: Dict[str, FieldType] = Field(default_factory=dict)
    partition_field: Optional[str] = None
    partition_grain: Optional[str] = PartitionGrain.DAY.value
    ordering_field: Optional[str] = None
    tracked_fields: Optional[List[str]] = None
    history_enabled: bool = True
    rules: List[Any] = Field(default_factory=list)

    class Config:
        arbitrary_types_allowed = True

    @property
    def table_name(self) -> str:
        return self.entity

    @property
    def grain(self) -> PartitionGrain:
        return PartitionGrain(self.partition_grain)

    def attribute_fields(self) -> List[str]:
        """Fields stored on target/history rows, in declaration order"""
        return list(self.field_types.keys())

    def effective_tracked_fields(self) -> List[str]:
        """Fields whose change opens a new history version"""
        if self.tracked_fields is None:
            return self.attribute_fields()
        return list(self.tracked_fields)

    def check(self) -> None:
        """
        Pre-flight validation; raises ConfigurationError before anything is written.
        """
        context = {"entity": self.entity}

        if not self.business_key_fields:
            raise ConfigurationError("Entity has no business key fields", context=context)

        for name in self.business_key_fields:
            if name not in self.field_types:
                raise ConfigurationError(
                    f"Business key field '{name}' has no declared type",
                    context={**context, "field_name": name}
                )

        if not self.partition_field:
            raise ConfigurationError("No partition-key derivation rule (partition_field is missing)", context=context)

        partition_type = self.field_types.get(self.partition_field)
        if partition_type not in TEMPORAL_TYPES:
            raise ConfigurationError(
                f"Partition field '{self.partition_field}' must be declared as date or datetime",
                context={**context, "field_name": self.partition_field, "declared_type": partition_type}
            )

        try:
            PartitionGrain(self.partition_grain)
        except ValueError:
            raise ConfigurationError(
                f"Unknown partition grain '{self.partition_grain}'",
                context={**context, "partition_grain": self.partition_grain}
            )

        if self.ordering_field and self.ordering_field not in self.field_types:
            raise ConfigurationError(
                f"Ordering field '{self.ordering_field}' has no declared type",
                context={**context, "field_name": self.ordering_field}
            )

        for name in self.tracked_fields or []:
            if name not in self.field_types:
                raise ConfigurationError(
                    f"Tracked field '{name}' has no declared type",
                    context={**context, "field_name": name}
                )

        for rule in self.rules:
            if not callable(getattr(rule, "check", None)):
                raise ConfigurationError(
                    f"Rule {rule!r} does not implement check(record)",
                    context=context
                )
