"""
Typed validation rules.

Every rule implements ``check(record) -> Optional[RejectReason]``: ``None``
when the record passes, a reason when it does not. Rules never raise for bad
data. Absent values pass every rule except RequiredFieldRule, so presence and
content checks stay independent.
"""

from abc import ABC, abstractmethod
import re
from typing import Any, Callable, Dict, Iterable, Mapping, Optional

from core.exceptions import ConfigurationError
from load_engine.transformers.coercion import coerce, is_blank
from schemas.batch import RejectReason
from schemas.entity import FieldType


class Rule(ABC):
    """Base class for all validation rules"""

    rule_type: str = "rule"

    def __init__(self, field_name: Optional[str] = None, name: Optional[str] = None):
        self.field_name = field_name
        self.name = name or (f"{self.rule_type}:{field_name}" if field_name else self.rule_type)

    @abstractmethod
    def check(self, record: Mapping[str, Any]) -> Optional[RejectReason]:
        """Return None if the record passes, otherwise the rejection reason"""

    def reject(self, message: str) -> RejectReason:
        return RejectReason(rule=self.name, field=self.field_name, message=message)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name={self.name!r}, field={self.field_name!r})"


class RequiredFieldRule(Rule):
    """
    Field must be present and not null/empty.

    Whitespace-only strings count as empty unless allow_empty_string is set.
    """

    rule_type = "required"

    def __init__(self, field_name: str, allow_empty_string: bool = False, name: Optional[str] = None):
        super().__init__(field_name, name)
        self.allow_empty_string = allow_empty_string

    def check(self, record: Mapping[str, Any]) -> Optional[RejectReason]:
        if self.field_name not in record:
            return self.reject("Field is missing from record")

        value = record[self.field_name]
        if value is None:
            return self.reject("Field value is null")

        if not self.allow_empty_string and is_blank(value):
            return self.reject("Field value is empty string")

        return None


class TypeRule(Rule):
    """Field value must coerce to the declared type"""

    rule_type = "type"

    def __init__(self, field_name: str, field_type: FieldType, name: Optional[str] = None):
        super().__init__(field_name, name)
        self.field_type = FieldType(field_type)

    def coerce(self, record: Mapping[str, Any]) -> Any:
        return coerce(record.get(self.field_name), self.field_type)

    def check(self, record: Mapping[str, Any]) -> Optional[RejectReason]:
        try:
            self.coerce(record)
        except (ValueError, TypeError, ArithmeticError) as e:
            return self.reject(f"Cannot coerce to {self.field_type.value}: {e}")
        return None


class RangeRule(Rule):
    """
    Value must lie within the given bounds.

    Parameters:
    - minimum / maximum: inclusive bounds
    - min_exclusive / max_exclusive: exclusive bounds
    """

    rule_type = "range"

    def __init__(
        self,
        field_name: str,
        minimum: Any = None,
        maximum: Any = None,
        min_exclusive: Any = None,
        max_exclusive: Any = None,
        name: Optional[str] = None
    ):
        super().__init__(field_name, name)
        if all(v is None for v in (minimum, maximum, min_exclusive, max_exclusive)):
            raise ConfigurationError(
                "RangeRule requires at least one of: minimum, maximum, min_exclusive, max_exclusive",
                context={"field_name": field_name}
            )
        self.minimum = minimum
        self.maximum = maximum
        self.min_exclusive = min_exclusive
        self.max_exclusive = max_exclusive

    def check(self, record: Mapping[str, Any]) -> Optional[RejectReason]:
        value = record.get(self.field_name)
        if value is None:
            return None

        if isinstance(value, bool):
            return self.reject("Value must be comparable, got bool")

        try:
            if self.minimum is not None and value < self.minimum:
                return self.reject(f"Value {value} is less than minimum {self.minimum}")
            if self.min_exclusive is not None and value <= self.min_exclusive:
                return self.reject(f"Value {value} must be greater than {self.min_exclusive}")
            if self.maximum is not None and value > self.maximum:
                return self.reject(f"Value {value} exceeds maximum {self.maximum}")
            if self.max_exclusive is not None and value >= self.max_exclusive:
                return self.reject(f"Value {value} must be less than {self.max_exclusive}")
        except TypeError:
            return self.reject(f"Value of type {type(value).__name__} is not comparable with the bounds")

        return None


class PatternRule(Rule):
    """Value (as text) must match the regular expression in full"""

    rule_type = "pattern"

    def __init__(self, field_name: str, pattern: str, flags: int = 0, name: Optional[str] = None):
        super().__init__(field_name, name)
        try:
            self.pattern = re.compile(pattern, flags)
        except re.error as e:
            raise ConfigurationError(
                f"Invalid regex pattern: {e}",
                context={"field_name": field_name, "pattern": pattern}
            )

    def check(self, record: Mapping[str, Any]) -> Optional[RejectReason]:
        value = record.get(self.field_name)
        if value is None:
            return None

        text = value if isinstance(value, str) else str(value)
        if not self.pattern.fullmatch(text):
            return self.reject(f"Value '{text}' does not match pattern '{self.pattern.pattern}'")
        return None


class ReferenceRule(Rule):
    """Value must belong to a supplied lookup set (referential check)"""

    rule_type = "reference"

    def __init__(self, field_name: str, allowed: Iterable[Any], name: Optional[str] = None):
        super().__init__(field_name, name)
        self.allowed = frozenset(allowed)

    def check(self, record: Mapping[str, Any]) -> Optional[RejectReason]:
        value = record.get(self.field_name)
        if value is None:
            return None
        if value not in self.allowed:
            return self.reject(f"Value '{value}' has no match in the reference set")
        return None


class PredicateRule(Rule):
    """Business rule expressed as a predicate over the whole (coerced) record"""

    rule_type = "predicate"

    def __init__(
        self,
        name: str,
        predicate: Callable[[Mapping[str, Any]], bool],
        message: str,
        field_name: Optional[str] = None
    ):
        super().__init__(field_name, name)
        self.predicate = predicate
        self.message = message

    def check(self, record: Mapping[str, Any]) -> Optional[RejectReason]:
        if self.predicate(record):
            return None
        return self.reject(self.message)


# Rules that can be declared in an entity spec file
RULE_REGISTRY = {
    "required": RequiredFieldRule,
    "range": RangeRule,
    "pattern": PatternRule,
    "reference": ReferenceRule,
}


def build_rule(config: Dict[str, Any]) -> Rule:
    """
    Build a rule object from a declaration such as
    ``{"type": "range", "field": "amount", "minimum": 0}``.

    Declarations are turned into rule objects once, when the entity spec is
    loaded; unknown types or bad parameters raise ConfigurationError.
    """
    params = dict(config)
    rule_type = params.pop("type", None)
    field_name = params.pop("field", None)

    rule_class = RULE_REGISTRY.get(rule_type)
    if rule_class is None:
        raise ConfigurationError(f"Unknown rule type: {rule_type}", context={"rule": config})
    if not field_name:
        raise ConfigurationError("Rule declaration has no field", context={"rule": config})

    try:
        return rule_class(field_name, **params)
    except TypeError as e:
        raise ConfigurationError(
            f"Invalid parameters for {rule_type} rule: {e}",
            context={"rule": config},
            original_exception=e
        )
