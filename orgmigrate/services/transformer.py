"""Field transformation: one pure function per transform kind."""

import logging
import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional

from dateutil import parser as date_parser

from ..exceptions import ConfigurationError, DependencyUnresolved, RecordTransformError
from ..models.execution import ExternalIdConfig
from ..models.template import EXTERNAL_ID_PLACEHOLDER, ETLStep, FieldMapping, MigrationTemplate, TransformKind

logger = logging.getLogger(__name__)

LookupResolver = Callable[[str, Optional[str]], Optional[str]]
ComputedFunction = Callable[[Any, Dict[str, Any], Dict[str, Any]], Any]


def get_nested_value(data: Dict[str, Any], path: str) -> Any:
    """Value at a dotted path (``Parent__r.Name``), or None."""
    value: Any = data
    for part in path.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
        if value is None:
            return None
    return value


@dataclass
class TransformContext:
    """Inputs shared by every mapping of one record."""
    source_id: str
    external_ids: ExternalIdConfig
    resolve_lookup: LookupResolver
    functions: Dict[str, ComputedFunction] = field(default_factory=dict)

    def source_path(self, path: str) -> str:
        return path.replace(EXTERNAL_ID_PLACEHOLDER, self.external_ids.source_field)

    def target_field(self, name: str) -> str:
        return name.replace(EXTERNAL_ID_PLACEHOLDER, self.external_ids.target_field)


# Kind handlers. Each returns the target value; None leaves the field out.

def apply_direct(mapping: FieldMapping, record: Dict[str, Any], ctx: TransformContext) -> Any:
    return get_nested_value(record, ctx.source_path(mapping.source_field))


def apply_constant(mapping: FieldMapping, record: Dict[str, Any], ctx: TransformContext) -> Any:
    return mapping.options.get("value")


def apply_lookup(mapping: FieldMapping, record: Dict[str, Any], ctx: TransformContext) -> Any:
    referenced_id = get_nested_value(record, ctx.source_path(mapping.source_field))
    if referenced_id is None:
        return None
    target_id = ctx.resolve_lookup(str(referenced_id), mapping.options.get("lookup_object"))
    if target_id is None:
        raise DependencyUnresolved(ctx.source_id, mapping.source_field, str(referenced_id))
    return target_id


def apply_computed(mapping: FieldMapping, record: Dict[str, Any], ctx: TransformContext) -> Any:
    name = mapping.options.get("function")
    func = ctx.functions.get(name)
    if func is None:
        raise ConfigurationError(f"Unknown computed function '{name}' for {mapping.target_field}")
    value = get_nested_value(record, ctx.source_path(mapping.source_field)) if mapping.source_field else None
    try:
        return func(value, mapping.options, record)
    except RecordTransformError as e:
        if e.field is None:
            e.field = mapping.target_field
        raise
    except (ValueError, TypeError, KeyError, ArithmeticError) as e:
        raise RecordTransformError(
            f"Record {ctx.source_id}: {name} failed for {mapping.target_field}: {e}",
            field=mapping.target_field,
            code="COMPUTED_FUNCTION_FAILED",
        )


KIND_HANDLERS: Dict[TransformKind, Callable[[FieldMapping, Dict[str, Any], TransformContext], Any]] = {
    TransformKind.DIRECT: apply_direct,
    TransformKind.LOOKUP: apply_lookup,
    TransformKind.CONSTANT: apply_constant,
    TransformKind.COMPUTED: apply_computed,
}


# Computed functions

def to_boolean(value: Any, options: Dict, record: Dict) -> Optional[bool]:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    return str(value).strip().lower() in ("true", "1", "yes", "y", "on")


def to_number(value: Any, options: Dict, record: Dict) -> Optional[float]:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    cleaned = re.sub(r"[^0-9.\-eE]", "", str(value))
    try:
        number = Decimal(cleaned)
    except InvalidOperation:
        raise RecordTransformError(f"Cannot convert {value!r} to a number", code="INVALID_NUMBER")
    precision = options.get("precision")
    if precision is not None:
        number = round(number, int(precision))
    return float(number)


def to_date(value: Any, options: Dict, record: Dict) -> Optional[str]:
    """ISO date (or datetime with ``keep_time``)."""
    if value is None or value == "":
        return None
    try:
        parsed = date_parser.parse(str(value))
    except (ValueError, OverflowError):
        raise RecordTransformError(f"Cannot parse date {value!r}", code="INVALID_DATE")
    if options.get("keep_time"):
        return parsed.isoformat()
    return parsed.date().isoformat()


def map_value(value: Any, options: Dict, record: Dict) -> Any:
    """Picklist translation through ``mapping``; unmapped values pass through unless ``default`` is set."""
    if value is None:
        return options.get("default")
    mapping = options.get("mapping", {})
    if str(value) in mapping:
        return mapping[str(value)]
    return options.get("default", value)


def concat(value: Any, options: Dict, record: Dict) -> Optional[str]:
    parts = [get_nested_value(record, f) for f in options.get("fields", [])]
    parts = [str(p) for p in parts if p not in (None, "")]
    if not parts:
        return None
    return options.get("separator", " ").join(parts)


def truncate(value: Any, options: Dict, record: Dict) -> Optional[str]:
    if value is None:
        return None
    return str(value)[: options.get("max_length", 255)]


def upper(value: Any, options: Dict, record: Dict) -> Optional[str]:
    return None if value is None else str(value).upper()


def lower(value: Any, options: Dict, record: Dict) -> Optional[str]:
    return None if value is None else str(value).lower()


def coalesce(value: Any, options: Dict, record: Dict) -> Any:
    if value not in (None, ""):
        return value
    for field_path in options.get("fields", []):
        candidate = get_nested_value(record, field_path)
        if candidate not in (None, ""):
            return candidate
    return options.get("default")


BUILTIN_FUNCTIONS: Dict[str, ComputedFunction] = {
    "to_boolean": to_boolean,
    "to_number": to_number,
    "to_date": to_date,
    "map_value": map_value,
    "concat": concat,
    "truncate": truncate,
    "upper": upper,
    "lower": lower,
    "coalesce": coalesce,
}


class TransformEngine:
    """
    Applies a step's field mappings to extracted source rows.

    Supports:
    - The closed set of transform kinds (direct, lookup, constant, computed)
    - Named computed functions, extensible with ``register_function``
    - External-id placeholder substitution on both sides
    """

    def __init__(self):
        self._functions: Dict[str, ComputedFunction] = dict(BUILTIN_FUNCTIONS)

    def register_function(self, name: str, func: ComputedFunction) -> None:
        """Register a computed function (``func(value, options, record)``)."""
        self._functions[name] = func

    @property
    def function_names(self):
        return sorted(self._functions)

    def unknown_functions(self, template: MigrationTemplate) -> List[str]:
        """Problems for computed mappings naming a function this engine does not have."""
        problems = []
        for step in template.steps:
            for mapping in step.transform.field_mappings:
                if mapping.kind != TransformKind.COMPUTED:
                    continue
                name = mapping.options.get("function")
                if name not in self._functions:
                    problems.append(
                        f"step '{step.name}': unknown computed function {name!r} for {mapping.target_field}"
                    )
        return problems

    def transform_record(
        self,
        record: Dict[str, Any],
        step: ETLStep,
        external_ids: ExternalIdConfig,
        resolve_lookup: LookupResolver,
    ) -> Dict[str, Any]:
        """
        Transform one source row into a target payload.

        Args:
            record: Source row as returned by the query endpoint
            step: Step whose mappings apply
            external_ids: Resolved external-id fields for the step's object
            resolve_lookup: (source id, lookup object) -> target id or None

        Returns:
            Target field -> value; null values are left out

        Raises:
            DependencyUnresolved: a lookup has no target counterpart
            RecordTransformError: a required value is missing or unconvertible
        """
        source_id = record.get("Id")
        if not source_id:
            raise RecordTransformError("Source row has no Id", field="Id", code="MISSING_ID")

        ctx = TransformContext(
            source_id=source_id,
            external_ids=external_ids,
            resolve_lookup=resolve_lookup,
            functions=self._functions,
        )

        payload: Dict[str, Any] = {}
        for mapping in step.transform.field_mappings:
            handler = KIND_HANDLERS[mapping.kind]
            value = handler(mapping, record, ctx)
            if value is None or value == "":
                if mapping.required:
                    raise RecordTransformError(
                        f"Record {source_id}: required field {mapping.source_field} is empty",
                        field=mapping.target_field,
                        code="REQUIRED_FIELD_MISSING",
                    )
                continue
            payload[ctx.target_field(mapping.target_field)] = value

        return payload
