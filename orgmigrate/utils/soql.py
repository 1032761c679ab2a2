"""SOQL sanitizing and query assembly helpers."""

import re
from typing import Iterable, Iterator, List, Optional, Sequence, TypeVar

from ..exceptions import ConfigurationError
from ..models.template import EXTERNAL_ID_PLACEHOLDER, SELECTED_IDS_PLACEHOLDER

T = TypeVar("T")

OBJECT_NAME_PATTERN = re.compile(r"^[a-zA-Z][a-zA-Z0-9_]*(__c)?$")
FIELD_PART_PATTERN = re.compile(r"^[a-zA-Z][a-zA-Z0-9_]*(__c|__r)?$")
RECORD_ID_PATTERN = re.compile(r"^[a-zA-Z0-9]{15}([a-zA-Z0-9]{3})?$")

_ESCAPES = [
    ("\\", "\\\\"),
    ("'", "\\'"),
    ('"', '\\"'),
    ("\n", "\\n"),
    ("\r", "\\r"),
    ("\t", "\\t"),
]

_TRAILING_CLAUSES = ("ORDER BY", "LIMIT", "OFFSET", "GROUP BY", "FOR UPDATE")


def escape_value(value: str) -> str:
    """Escape a string for use inside a single-quoted SOQL literal."""
    if not isinstance(value, str):
        raise ConfigurationError(f"SOQL value must be a string, got {type(value).__name__}")
    for raw, escaped in _ESCAPES:
        value = value.replace(raw, escaped)
    return value


def validate_object_name(name: str) -> str:
    if not name or not OBJECT_NAME_PATTERN.match(name):
        raise ConfigurationError(f"Invalid object name: {name!r}")
    return name


def validate_field_name(name: str) -> str:
    """Accepts dotted relationship paths such as ``Parent__r.Name``."""
    if not name:
        raise ConfigurationError("Field name must be non-empty")
    for part in name.split("."):
        if not FIELD_PART_PATTERN.match(part):
            raise ConfigurationError(f"Invalid field name component {part!r} in {name!r}")
    return name


def is_record_id(value: Optional[str]) -> bool:
    """15 or 18 character platform record id."""
    return bool(value) and bool(RECORD_ID_PATTERN.match(value))


def format_id_list(ids: Iterable[str]) -> str:
    """``'a','b'`` for use inside ``IN (...)``."""
    return ",".join(f"'{escape_value(i)}'" for i in ids)


def in_clause(field_name: str, values: Sequence[str]) -> str:
    if not values:
        raise ConfigurationError(f"IN clause on {field_name} needs at least one value")
    return f"{validate_field_name(field_name)} IN ({format_id_list(values)})"


def replace_external_id(query: str, external_id_field: str) -> str:
    return query.replace(EXTERNAL_ID_PLACEHOLDER, validate_field_name(external_id_field))


def _top_level_positions(query: str) -> Iterator[int]:
    """Indexes of characters outside parentheses and string literals."""
    depth = 0
    in_string = False
    escaped = False
    for i, ch in enumerate(query):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == "'":
                in_string = False
            continue
        if ch == "'":
            in_string = True
        elif ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
        elif depth == 0:
            yield i


def _balanced(query: str) -> bool:
    """Parentheses outside string literals pair up."""
    depth = 0
    in_string = False
    escaped = False
    for ch in query:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == "'":
                in_string = False
        elif ch == "'":
            in_string = True
        elif ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth < 0:
                return False
    return depth == 0 and not in_string


def _find_keyword(query: str, keyword: str) -> int:
    upper = query.upper()
    pattern = re.compile(r"\b" + keyword.replace(" ", r"\s+") + r"\b")
    positions = set(_top_level_positions(query))
    for match in pattern.finditer(upper):
        if match.start() in positions:
            return match.start()
    return -1


def add_condition(query: str, condition: str) -> str:
    """
    AND a condition into a query's top-level WHERE (or add one), keeping
    any ORDER BY / LIMIT tail after it.
    """
    query = " ".join(query.split())
    tail_at = len(query)
    for clause in _TRAILING_CLAUSES:
        pos = _find_keyword(query, clause)
        if pos != -1:
            tail_at = min(tail_at, pos)

    head, tail = query[:tail_at].rstrip(), query[tail_at:]
    if _find_keyword(head, "WHERE") != -1:
        head = f"{head} AND {condition}"
    else:
        head = f"{head} WHERE {condition}"
    return f"{head} {tail}".strip()


def apply_placeholders(
    query: str,
    external_id_field: str,
    ids: Optional[Sequence[str]] = None,
    id_field: str = "Id",
    filter_clause: Optional[str] = None,
) -> str:
    """
    Build the concrete query for a template query.

    ``{externalIdField}`` becomes the resolved field. ``{selectedRecordIds}``
    becomes the quoted id list; a query without that placeholder gets an
    ``Id IN (...)`` condition appended instead.
    """
    result = replace_external_id(query, external_id_field)

    if ids:
        if SELECTED_IDS_PLACEHOLDER in result:
            result = result.replace(SELECTED_IDS_PLACEHOLDER, format_id_list(ids))
        else:
            result = add_condition(result, in_clause(id_field, ids))
    elif SELECTED_IDS_PLACEHOLDER in result:
        raise ConfigurationError("Query expects selected record ids but none were given")

    if filter_clause:
        result = add_condition(result, filter_clause)

    return " ".join(result.split())


def check_query(query: str) -> List[str]:
    """Structural problems in a concrete query (empty list when fine)."""
    problems = []
    stripped = query.strip().upper()
    if not stripped.startswith("SELECT"):
        problems.append("Query must start with SELECT")
    if _find_keyword(query, "FROM") == -1:
        problems.append("Query must include a FROM clause")
    if EXTERNAL_ID_PLACEHOLDER in query or SELECTED_IDS_PLACEHOLDER in query:
        problems.append("Query contains unreplaced placeholders")
    if not _balanced(query):
        problems.append("Unbalanced parentheses in query")
    return problems


def chunked(items: Sequence[T], size: int) -> Iterator[List[T]]:
    if size < 1:
        raise ConfigurationError(f"Chunk size must be positive, got {size}")
    for start in range(0, len(items), size):
        yield list(items[start:start + size])
