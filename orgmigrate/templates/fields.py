"""Mapping helpers shared by the built-in templates."""

from typing import Tuple

from ..models.template import FieldMapping, TransformKind


def select_query(fields: Tuple[str, ...], object_type: str, where: str = "") -> str:
    """``SELECT Id, Name, <fields>, {externalIdField} FROM <object_type> [WHERE ...]``."""
    query = f"SELECT {', '.join(('Id', 'Name') + fields)}, {{externalIdField}} FROM {object_type}"
    return f"{query} WHERE {where}" if where else query


def copy_fields(fields: Tuple[str, ...]) -> Tuple[FieldMapping, ...]:
    return tuple(FieldMapping(f, f) for f in fields)


def computed_fields(fields: Tuple[str, ...], function: str, **options) -> Tuple[FieldMapping, ...]:
    return tuple(
        FieldMapping(f, f, kind=TransformKind.COMPUTED, options=dict(options, function=function)) for f in fields
    )


def number_fields(fields: Tuple[str, ...]) -> Tuple[FieldMapping, ...]:
    return computed_fields(fields, "to_number")


def flag_fields(fields: Tuple[str, ...]) -> Tuple[FieldMapping, ...]:
    return computed_fields(fields, "to_boolean")


def date_fields(fields: Tuple[str, ...]) -> Tuple[FieldMapping, ...]:
    return computed_fields(fields, "to_date")
