"""Record and schema models returned by the platform client."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class QueryResult:
    """Rows returned by a query, across all pages."""
    records: List[Dict[str, Any]] = field(default_factory=list)
    total_size: int = 0

    @property
    def ids(self) -> List[str]:
        return [r["Id"] for r in self.records if r.get("Id")]


@dataclass
class FieldDescribe:
    """Metadata for one field of an object type."""
    name: str
    type: str = "string"
    label: str = ""
    nillable: bool = True
    createable: bool = True
    updateable: bool = True
    external_id: bool = False
    reference_to: List[str] = field(default_factory=list)
    picklist_values: List[str] = field(default_factory=list)  # active values only

    @property
    def is_required(self) -> bool:
        return not self.nillable and self.createable

    @property
    def is_picklist(self) -> bool:
        return self.type in ("picklist", "multipicklist")

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "FieldDescribe":
        """Create from a describe ``fields`` entry."""
        return cls(
            name=data["name"],
            type=data.get("type", "string"),
            label=data.get("label", ""),
            nillable=data.get("nillable", True),
            createable=data.get("createable", True),
            updateable=data.get("updateable", True),
            external_id=data.get("externalId", False),
            reference_to=list(data.get("referenceTo") or []),
            picklist_values=[
                p["value"] for p in data.get("picklistValues") or []
                if p.get("active", True)
            ],
        )


@dataclass
class ObjectDescribe:
    """Schema of one object type in one org."""
    name: str
    fields: Dict[str, FieldDescribe] = field(default_factory=dict)
    label: str = ""
    createable: bool = True

    def has_field(self, name: str) -> bool:
        return name in self.fields

    def get_field(self, name: str) -> Optional[FieldDescribe]:
        return self.fields.get(name)

    @property
    def field_names(self) -> List[str]:
        return list(self.fields)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "ObjectDescribe":
        """Create from a describe response body."""
        fields = [FieldDescribe.from_api(f) for f in data.get("fields", [])]
        return cls(
            name=data.get("name", ""),
            label=data.get("label", ""),
            createable=data.get("createable", True),
            fields={f.name: f for f in fields},
        )


@dataclass
class PlatformErrorDetail:
    """One error entry reported by the platform for a row."""
    code: str
    message: str
    fields: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "fields": self.fields}


@dataclass
class RowOutcome:
    """Per-row result of a load or delete call, in submission order."""
    index: int
    success: bool
    id: Optional[str] = None
    created: bool = False
    errors: List[PlatformErrorDetail] = field(default_factory=list)

    @property
    def error_code(self) -> Optional[str]:
        return self.errors[0].code if self.errors else None

    @property
    def error_message(self) -> str:
        return "; ".join(e.message for e in self.errors) if self.errors else ""

    @classmethod
    def from_api(cls, index: int, data: Dict[str, Any]) -> "RowOutcome":
        """Create from an sObject collections result entry."""
        errors = [
            PlatformErrorDetail(
                code=e.get("statusCode") or e.get("errorCode") or "UNKNOWN_ERROR",
                message=e.get("message", ""),
                fields=list(e.get("fields") or []),
            )
            for e in data.get("errors") or []
        ]
        return cls(
            index=index,
            success=bool(data.get("success")),
            id=data.get("id"),
            created=bool(data.get("created", False)),
            errors=errors,
        )
