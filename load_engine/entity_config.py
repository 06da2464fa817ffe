"""
Build EntitySpec objects from JSON declarations
"""

from pathlib import Path
from typing import Any, Dict, Union
import json

from pydantic import ValidationError

from core.exceptions import ConfigurationError
from load_engine.transformers.rules import build_rule
from schemas.entity import EntitySpec


def entity_spec_from_dict(data: Dict[str, Any]) -> EntitySpec:
    """
    Example declaration:
        {
            "entity": "orders",
            "business_key_fields": ["order_id"],
            "field_types": {"order_id": "string", "order_date": "date", "amount": "decimal"},
            "partition_field": "order_date",
            "rules": [{"type": "range", "field": "amount", "minimum": 0}]
        }
    """
    data = dict(data)
    rules = [build_rule(rule) for rule in data.pop("rules", [])]
    try:
        spec = EntitySpec(**data, rules=rules)
    except ValidationError as e:
        raise ConfigurationError(
            f"Invalid entity declaration: {e.error_count()} error(s)",
            context={"entity": data.get("entity"), "errors": e.errors(include_url=False)},
            original_exception=e
        )
    spec.check()
    return spec


def load_entity_spec(path: Union[str, Path]) -> EntitySpec:
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Cannot read entity spec {path}: {e}", original_exception=e)
    return entity_spec_from_dict(data)
