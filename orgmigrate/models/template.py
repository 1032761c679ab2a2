"""Migration template models: steps, extraction, transformation, load and validation specs."""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple
from enum import Enum

EXTERNAL_ID_PLACEHOLDER = "{externalIdField}"
SELECTED_IDS_PLACEHOLDER = "{selectedRecordIds}"

DEFAULT_RETRYABLE_CODES = frozenset({
    "UNABLE_TO_LOCK_ROW",
    "REQUEST_LIMIT_EXCEEDED",
    "CONCURRENT_REQUEST_LIMIT_EXCEEDED",
    "SERVER_UNAVAILABLE",
    "REQUEST_TIMEOUT",
    "NETWORK_ERROR",
    "HTTP_429",
    "HTTP_502",
    "HTTP_503",
    "HTTP_504",
})


class TransformKind(str, Enum):
    """Closed set of field transformation kinds."""
    DIRECT = "direct"
    LOOKUP = "lookup"
    CONSTANT = "constant"
    COMPUTED = "computed"


class LoadOperation(str, Enum):
    """Write operation used against the target org."""
    INSERT = "insert"
    UPDATE = "update"
    UPSERT = "upsert"


class Severity(str, Enum):
    """Severity of a validation finding."""
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


@dataclass(frozen=True)
class RetryPolicy:
    """Retry behaviour for transient load failures."""
    max_attempts: int = 3
    backoff_seconds: float = 1.0
    retryable_codes: FrozenSet[str] = DEFAULT_RETRYABLE_CODES

    def is_retryable(self, error_code: Optional[str]) -> bool:
        return bool(error_code) and error_code in self.retryable_codes

    def backoff_for(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based): doubles every time."""
        return self.backoff_seconds * (2 ** max(attempt - 1, 0))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_attempts": self.max_attempts,
            "backoff_seconds": self.backoff_seconds,
            "retryable_codes": sorted(self.retryable_codes),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RetryPolicy":
        codes = data.get("retryable_codes")
        return cls(
            max_attempts=data.get("max_attempts", 3),
            backoff_seconds=data.get("backoff_seconds", 1.0),
            retryable_codes=frozenset(codes) if codes is not None else DEFAULT_RETRYABLE_CODES,
        )


@dataclass(frozen=True)
class ExtractSpec:
    """
    How to pull a step's records from the source org.

    ``query`` may contain ``{externalIdField}`` and ``{selectedRecordIds}``.
    Dependent steps set ``parent_step`` and ``parent_field``: their records
    are those whose ``parent_field`` points at a record the parent step
    migrated successfully.
    """
    object_type: str
    query: str
    filter_clause: Optional[str] = None
    parent_step: Optional[str] = None
    parent_field: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "object_type": self.object_type,
            "query": self.query,
            "filter_clause": self.filter_clause,
            "parent_step": self.parent_step,
            "parent_field": self.parent_field,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExtractSpec":
        return cls(
            object_type=data["object_type"],
            query=data["query"],
            filter_clause=data.get("filter_clause"),
            parent_step=data.get("parent_step"),
            parent_field=data.get("parent_field"),
        )


def _freeze(value: Any) -> Any:
    """Read-only copy of nested option values: dicts become mapping proxies, lists tuples."""
    if isinstance(value, Mapping):
        return MappingProxyType({k: _freeze(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(_freeze(v) for v in value)
    return value


def _thaw(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {k: _thaw(v) for k, v in value.items()}
    if isinstance(value, tuple):
        return [_thaw(v) for v in value]
    return value


@dataclass(frozen=True)
class FieldMapping:
    """
    Mapping of one source field onto one target field.

    ``options`` depends on the kind:
    - constant: ``value``
    - computed: ``function`` plus any function arguments
    - lookup: ``lookup_object`` (object type of the referenced record)
    """
    source_field: str
    target_field: str
    kind: TransformKind = TransformKind.DIRECT
    required: bool = False
    options: Mapping[str, Any] = field(default_factory=dict, hash=False, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "options", _freeze(self.options))

    @property
    def targets_external_id(self) -> bool:
        return self.target_field == EXTERNAL_ID_PLACEHOLDER

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "source_field": self.source_field,
            "target_field": self.target_field,
            "kind": self.kind.value,
            "required": self.required,
        }
        if self.options:
            result["options"] = _thaw(self.options)
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FieldMapping":
        return cls(
            source_field=data["source_field"],
            target_field=data["target_field"],
            kind=TransformKind(data.get("kind", "direct")),
            required=data.get("required", False),
            options=dict(data.get("options", {})),
        )


@dataclass(frozen=True)
class TransformSpec:
    """Ordered field mappings for a step."""
    field_mappings: Tuple[FieldMapping, ...] = ()

    @property
    def external_id_mappings(self) -> List[FieldMapping]:
        return [m for m in self.field_mappings if m.targets_external_id]

    @property
    def lookup_mappings(self) -> List[FieldMapping]:
        return [m for m in self.field_mappings if m.kind == TransformKind.LOOKUP]

    def to_dict(self) -> Dict[str, Any]:
        return {"field_mappings": [m.to_dict() for m in self.field_mappings]}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TransformSpec":
        return cls(field_mappings=tuple(FieldMapping.from_dict(m) for m in data.get("field_mappings", [])))


@dataclass(frozen=True)
class LoadSpec:
    """How to write a step's transformed records to the target org."""
    object_type: str
    operation: LoadOperation = LoadOperation.UPSERT
    external_id_field: str = EXTERNAL_ID_PLACEHOLDER
    batch_size: int = 200
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    use_bulk_api: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "object_type": self.object_type,
            "operation": self.operation.value,
            "external_id_field": self.external_id_field,
            "batch_size": self.batch_size,
            "retry": self.retry.to_dict(),
            "use_bulk_api": self.use_bulk_api,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LoadSpec":
        return cls(
            object_type=data["object_type"],
            operation=LoadOperation(data.get("operation", "upsert")),
            external_id_field=data.get("external_id_field", EXTERNAL_ID_PLACEHOLDER),
            batch_size=data.get("batch_size", 200),
            retry=RetryPolicy.from_dict(data.get("retry", {})),
            use_bulk_api=data.get("use_bulk_api", True),
        )


@dataclass(frozen=True)
class DataIntegrityCheck:
    """A named query against the source org whose result must be empty / non-empty."""
    name: str
    query: str
    message: str
    expected: str = "empty"  # empty, non_empty
    severity: Severity = Severity.ERROR

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "query": self.query,
            "message": self.message,
            "expected": self.expected,
            "severity": self.severity.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DataIntegrityCheck":
        return cls(
            name=data["name"],
            query=data["query"],
            message=data.get("message", ""),
            expected=data.get("expected", "empty"),
            severity=Severity(data.get("severity", "error")),
        )


@dataclass(frozen=True)
class DependencyCheck:
    """
    A reference field whose value must be resolvable in the target org.

    Messages may use ``{sourceValue}`` and ``{recordName}``.
    """
    name: str
    source_field: str
    target_object: str
    required: bool = True
    message: str = "Referenced record '{sourceValue}' from '{recordName}' does not exist in the target org"
    warning_message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "source_field": self.source_field,
            "target_object": self.target_object,
            "required": self.required,
            "message": self.message,
            "warning_message": self.warning_message,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DependencyCheck":
        return cls(
            name=data["name"],
            source_field=data["source_field"],
            target_object=data["target_object"],
            required=data.get("required", True),
            message=data.get("message", cls.message),
            warning_message=data.get("warning_message"),
        )


@dataclass(frozen=True)
class PicklistCheck:
    """A closed-choice field whose source values must be allowed in the target."""
    name: str
    field_name: str
    validate_against_target: bool = True
    allowed_values: Tuple[str, ...] = ()
    severity: Severity = Severity.ERROR
    message: str = "Value '{value}' of {field} on '{recordName}' is not an allowed value in the target org"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "field_name": self.field_name,
            "validate_against_target": self.validate_against_target,
            "allowed_values": list(self.allowed_values),
            "severity": self.severity.value,
            "message": self.message,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PicklistCheck":
        return cls(
            name=data["name"],
            field_name=data["field_name"],
            validate_against_target=data.get("validate_against_target", True),
            allowed_values=tuple(data.get("allowed_values", ())),
            severity=Severity(data.get("severity", "error")),
            message=data.get("message", cls.message),
        )


@dataclass(frozen=True)
class ValidationSpec:
    """Pre-flight checks declared for a step."""
    integrity_checks: Tuple[DataIntegrityCheck, ...] = ()
    dependency_checks: Tuple[DependencyCheck, ...] = ()
    picklist_checks: Tuple[PicklistCheck, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "integrity_checks": [c.to_dict() for c in self.integrity_checks],
            "dependency_checks": [c.to_dict() for c in self.dependency_checks],
            "picklist_checks": [c.to_dict() for c in self.picklist_checks],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ValidationSpec":
        return cls(
            integrity_checks=tuple(DataIntegrityCheck.from_dict(c) for c in data.get("integrity_checks", [])),
            dependency_checks=tuple(DependencyCheck.from_dict(c) for c in data.get("dependency_checks", [])),
            picklist_checks=tuple(PicklistCheck.from_dict(c) for c in data.get("picklist_checks", [])),
        )


@dataclass(frozen=True)
class ETLStep:
    """One extract / transform / load unit of a template."""
    name: str
    extract: ExtractSpec
    transform: TransformSpec
    load: LoadSpec
    dependencies: Tuple[str, ...] = ()
    validation: Optional[ValidationSpec] = None
    optional: bool = False
    description: str = ""

    @property
    def object_type(self) -> str:
        return self.extract.object_type

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "dependencies": list(self.dependencies),
            "optional": self.optional,
            "extract": self.extract.to_dict(),
            "transform": self.transform.to_dict(),
            "load": self.load.to_dict(),
            "validation": self.validation.to_dict() if self.validation else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ETLStep":
        validation = data.get("validation")
        return cls(
            name=data["name"],
            description=data.get("description", ""),
            dependencies=tuple(data.get("dependencies", ())),
            optional=data.get("optional", False),
            extract=ExtractSpec.from_dict(data["extract"]),
            transform=TransformSpec.from_dict(data.get("transform", {})),
            load=LoadSpec.from_dict(data["load"]),
            validation=ValidationSpec.from_dict(validation) if validation else None,
        )


@dataclass(frozen=True)
class MigrationTemplate:
    """A registered, read-only migration recipe."""
    id: str
    name: str
    steps: Tuple[ETLStep, ...]
    description: str = ""
    category: str = "general"
    version: str = "1.0.0"
    complexity: str = "simple"  # simple, moderate, complex
    estimated_duration_minutes: int = 5
    tags: Tuple[str, ...] = ()

    def get_step(self, name: str) -> Optional[ETLStep]:
        for step in self.steps:
            if step.name == name:
                return step
        return None

    @property
    def object_types(self) -> List[str]:
        """Distinct object types touched by the template, in step order."""
        seen: List[str] = []
        for step in self.steps:
            for object_type in (step.extract.object_type, step.load.object_type):
                if object_type not in seen:
                    seen.append(object_type)
        return seen

    def summary(self) -> Dict[str, Any]:
        """Display metadata without step internals."""
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "version": self.version,
            "complexity": self.complexity,
            "estimated_duration_minutes": self.estimated_duration_minutes,
            "step_count": len(self.steps),
            "object_types": self.object_types,
            "tags": list(self.tags),
        }

    def to_dict(self) -> Dict[str, Any]:
        result = self.summary()
        result["steps"] = [s.to_dict() for s in self.steps]
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MigrationTemplate":
        return cls(
            id=data.get("id", ""),
            name=data.get("name", ""),
            description=data.get("description", ""),
            category=data.get("category", "general"),
            version=data.get("version", "1.0.0"),
            complexity=data.get("complexity", "simple"),
            estimated_duration_minutes=data.get("estimated_duration_minutes", 5),
            tags=tuple(data.get("tags", ())),
            steps=tuple(ETLStep.from_dict(s) for s in data.get("steps", [])),
        )
