"""On-demand cloning of a single record between two orgs."""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Set

from ..exceptions import AuthError, ConfigurationError, MigrationError, PlatformError, SchemaError
from ..models.record import ObjectDescribe
from ..models.template import LoadOperation
from ..utils.soql import escape_value, is_record_id, validate_object_name
from .external_id import ExternalIdResolver, namespace_of

logger = logging.getLogger(__name__)

SYSTEM_FIELDS = frozenset({
    "Id",
    "CreatedDate",
    "CreatedById",
    "LastModifiedDate",
    "LastModifiedById",
    "SystemModstamp",
    "IsDeleted",
    "LastActivityDate",
    "LastViewedDate",
    "LastReferencedDate",
    "OwnerId",
    "RecordTypeId",
})

# Compound fields are read-only views over their component fields
COMPOUND_TYPES = frozenset({"address", "location"})


@dataclass
class CloneResult:
    """Outcome of cloning one record."""
    success: bool
    source_record_id: str
    object_type: str
    target_record_id: Optional[str] = None
    external_id: Optional[str] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    already_existed: bool = False
    fields_copied: int = 0
    requires_reconnect: bool = False

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "success": self.success,
            "source_record_id": self.source_record_id,
            "object_type": self.object_type,
            "target_record_id": self.target_record_id,
            "external_id": self.external_id,
            "error": self.error,
            "error_type": self.error_type,
            "already_existed": self.already_existed,
            "fields_copied": self.fields_copied,
            "requires_reconnect": self.requires_reconnect,
        }


def map_field_name(source_field: str, target_fields: Set[str], target_namespaces: Set[str]) -> Optional[str]:
    """
    Target field name for a source field.

    Tries an exact match, then the name without its namespace (managed
    source, unmanaged target), then the name under each namespace present
    in the target (unmanaged source, managed target).
    """
    if source_field in target_fields:
        return source_field

    namespace = namespace_of(source_field)
    if namespace:
        stripped = source_field[len(namespace) + 2:]
        if stripped in target_fields:
            return stripped
        return None

    if "__" not in source_field:
        return None
    for target_namespace in sorted(target_namespaces):
        candidate = f"{target_namespace}__{source_field}"
        if candidate in target_fields:
            return candidate
    return None


class CloningService:
    """
    Copies one record from a source org into a target org.

    Supports:
    - Per-org external-id detection (the target's field receives the source Id)
    - Namespace-aware field mapping between managed and unmanaged installs
    - Detection of records already cloned earlier (left unchanged)
    - Upsert on the target external-id field

    Reference fields are not copied: a single record has no RecordMapping
    to translate them with.
    """

    def __init__(self, client):
        self.client = client

    def clone_record(
        self,
        source_org_id: str,
        target_org_id: str,
        source_record_id: str,
        object_type: str,
    ) -> CloneResult:
        """
        Clone a record.

        Args:
            source_org_id: Org to copy from
            target_org_id: Org to copy into
            source_record_id: Id of the record in the source org
            object_type: Object type of the record

        Returns:
            CloneResult; failures are reported in it rather than raised
        """
        result = CloneResult(success=False, source_record_id=source_record_id, object_type=object_type)
        try:
            validate_object_name(object_type)
            if not is_record_id(source_record_id):
                raise ConfigurationError(f"'{source_record_id}' is not a valid record id")
            return self._clone(result, source_org_id, target_org_id)
        except SchemaError as e:
            logger.warning(f"Cannot clone {object_type} {source_record_id}: {e.message}")
            return self._fail(result, e)
        except AuthError as e:
            result.requires_reconnect = e.requires_reconnect
            return self._fail(result, e)
        except (PlatformError, ConfigurationError) as e:
            logger.error(f"Cloning {object_type} {source_record_id} failed: {e.message}")
            return self._fail(result, e)

    @staticmethod
    def _fail(result: CloneResult, error: MigrationError) -> CloneResult:
        result.success = False
        result.error = error.message
        result.error_type = type(error).__name__
        return result

    def _clone(self, result: CloneResult, source_org_id: str, target_org_id: str) -> CloneResult:
        object_type = result.object_type
        resolver = ExternalIdResolver(self.client)
        config = resolver.reconcile(object_type, source_org_id, target_org_id)
        source_describe = resolver.describe(source_org_id, object_type)
        target_describe = resolver.describe(target_org_id, object_type)

        field_map = self.build_field_map(source_describe, target_describe, {config.source_field, config.target_field})
        select = ", ".join(["Id"] + list(field_map))
        soql = f"SELECT {select} FROM {object_type} WHERE Id = '{escape_value(result.source_record_id)}' LIMIT 1"
        rows = self.client.query(source_org_id, soql).records
        if not rows:
            result.error = f"Source record {result.source_record_id} not found"
            result.error_type = "NotFound"
            return result

        record = rows[0]
        external_id = record["Id"]
        result.external_id = external_id

        existing = self._find_existing(target_org_id, object_type, config.target_field, external_id)
        if existing:
            logger.info(f"{object_type} {external_id} already exists in org {target_org_id} as {existing}")
            result.success = True
            result.target_record_id = existing
            result.already_existed = True
            return result

        payload = {
            target_field: record[source_field]
            for source_field, target_field in field_map.items()
            if record.get(source_field) is not None
        }
        payload[config.target_field] = external_id
        result.fields_copied = len(payload) - 1

        outcome = self.client.load_records(
            target_org_id, object_type, LoadOperation.UPSERT, [payload], config.target_field
        )[0]
        if not outcome.success:
            result.error = outcome.error_message or "Failed to create record in target org"
            result.error_type = outcome.error_code or "FatalLoadError"
            return result

        result.success = True
        result.target_record_id = outcome.id
        logger.info(
            f"Cloned {object_type} {result.source_record_id} into org {target_org_id} "
            f"as {outcome.id} ({result.fields_copied} field(s))"
        )
        return result

    @staticmethod
    def build_field_map(
        source: ObjectDescribe,
        target: ObjectDescribe,
        identifier_fields: Set[str],
    ) -> Dict[str, str]:
        """Source field -> target field for every copyable field."""
        target_fields = set(target.field_names)
        target_namespaces = {ns for ns in (namespace_of(name) for name in target_fields) if ns}
        field_map: Dict[str, str] = {}

        for source_field in source.fields.values():
            name = source_field.name
            if name in SYSTEM_FIELDS or name in identifier_fields or name.endswith("__r"):
                continue
            if source_field.type == "reference" or source_field.type in COMPOUND_TYPES:
                continue

            target_name = map_field_name(name, target_fields, target_namespaces)
            if target_name is None or target_name in identifier_fields:
                continue
            target_field = target.get_field(target_name)
            if not target_field.createable or target_field.type == "reference":
                continue
            field_map[name] = target_name
        return field_map

    def _find_existing(self, org_id: str, object_type: str, field_name: str, value: str) -> Optional[str]:
        soql = f"SELECT Id FROM {object_type} WHERE {field_name} = '{escape_value(value)}' LIMIT 1"
        rows = self.client.query(org_id, soql).records
        return rows[0]["Id"] if rows else None
