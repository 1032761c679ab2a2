"""Pre-flight validation of a migration before anything is written."""

import logging
from typing import Any, Dict, List, Optional, Sequence, Set

from ..config import EngineSettings
from ..exceptions import AuthError, ConfigurationError, PlatformError, SchemaError
from ..models.execution import ExternalIdConfig, ExternalIdStrategy
from ..models.template import (
    DataIntegrityCheck,
    DependencyCheck,
    ETLStep,
    MigrationTemplate,
    PicklistCheck,
    Severity,
)
from ..models.validation import ValidationResult
from ..utils.soql import apply_placeholders, chunked, in_clause, is_record_id, validate_object_name
from .external_id import ExternalIdResolver, template_object_types
from .template_registry import resolve_execution_order, validate_template
from .transformer import get_nested_value

logger = logging.getLogger(__name__)

IDS_PER_QUERY = 200


def render_message(message: str, **values: Any) -> str:
    """Fill ``{name}`` placeholders, leaving unknown braces untouched."""
    for key, value in values.items():
        message = message.replace("{" + key + "}", "" if value is None else str(value))
    return message


class ValidationEngine:
    """
    Runs pre-flight checks for a template, org pair and selection.

    Checks run in this order:
    - Selection size (always; warns on large selections)
    - Connectivity to both orgs
    - Existence of every selected record in the source org
    - External-id field detection in both orgs
    - Declared data-integrity checks
    - Dependency checks (reference resolvable in target or produced by an earlier step)
    - Picklist checks against the target org's live values

    A connectivity, existence or external-id failure stops the later checks.
    """

    def __init__(self, client, settings: Optional[EngineSettings] = None):
        """
        Initialize the engine.

        Args:
            client: PlatformClient
            settings: Engine settings (large-selection threshold)
        """
        self.client = client
        self.settings = settings or EngineSettings()

    def validate(
        self,
        template: MigrationTemplate,
        source_org_id: str,
        target_org_id: str,
        selected_ids: Dict[str, List[str]],
    ) -> ValidationResult:
        """
        Validate a migration.

        Args:
            template: Template to run
            source_org_id: Org records are read from
            target_org_id: Org records are written to
            selected_ids: Object type -> selected source record ids

        Returns:
            ValidationResult; ``is_valid`` is False when any error was found

        Raises:
            ConfigurationError: malformed template (before any I/O)
        """
        problems = validate_template(template)
        if problems:
            raise ConfigurationError(f"Invalid template '{template.id}': " + "; ".join(problems))
        order = resolve_execution_order(template)

        result = ValidationResult()
        logger.info(f"Validating template {template.id}: {source_org_id} -> {target_org_id}")

        self._check_selection_size(result, selected_ids)

        if not self._check_connectivity(result, source_org_id, target_org_id):
            return self._short_circuit(result, "connectivity")
        if not self._check_existence(result, template, source_org_id, selected_ids):
            return self._short_circuit(result, "record existence")

        resolver = ExternalIdResolver(self.client)
        external_ids = self._check_external_ids(result, template, resolver, source_org_id, target_org_id)
        if external_ids is None:
            return self._short_circuit(result, "external id")

        ids_by_step: Dict[str, List[str]] = {}
        produced: Dict[str, Set[str]] = {}

        for step_name in order:
            step = template.get_step(step_name)
            spec = step.validation
            object_type = step.extract.object_type
            ext = external_ids[object_type]

            rows: List[Dict[str, Any]] = []
            if spec and (spec.dependency_checks or spec.picklist_checks):
                rows = self._fetch_rows(result, step, resolver, source_org_id, selected_ids, ids_by_step)

            if spec:
                for check in spec.integrity_checks:
                    self._run_integrity_check(result, step, check, ext, source_org_id, selected_ids)
                for check in spec.dependency_checks:
                    self._run_dependency_check(result, step, check, rows, produced, external_ids, target_org_id)
                for check in spec.picklist_checks:
                    self._run_picklist_check(result, step, check, rows, resolver, target_org_id)

            if step.extract.parent_step:
                ids_by_step[step.name] = [r["Id"] for r in rows if r.get("Id")]
            else:
                ids_by_step[step.name] = list(selected_ids.get(object_type, []))
            produced.setdefault(step.load.object_type, set()).update(ids_by_step[step.name])

        summary = result.summary()
        logger.info(
            f"Validation of {template.id}: {summary['errors']} error(s), "
            f"{summary['warnings']} warning(s), {summary['info']} info"
        )
        return result

    @staticmethod
    def _short_circuit(result: ValidationResult, stage: str) -> ValidationResult:
        result.short_circuited = True
        logger.warning(f"Validation stopped after {stage} failures")
        return result

    # Stage checks

    def _check_selection_size(self, result: ValidationResult, selected_ids: Dict[str, List[str]]) -> None:
        result.mark_run("selection_size")
        total = sum(len(ids) for ids in selected_ids.values())
        threshold = self.settings.large_selection_threshold
        if total == 0:
            result.add(
                Severity.WARNING,
                "selection_size",
                "No records selected; the migration will not load anything",
            )
        elif total > threshold:
            result.add(
                Severity.WARNING,
                "selection_size",
                f"{total} records selected (more than {threshold})",
                suggested_fix=f"Split the migration into batches of {threshold} records or fewer",
            )

    def _check_connectivity(self, result: ValidationResult, source_org_id: str, target_org_id: str) -> bool:
        result.mark_run("connectivity")
        ok = True
        for role, org_id in (("source", source_org_id), ("target", target_org_id)):
            try:
                self.client.probe(org_id)
            except AuthError as e:
                ok = False
                result.add(
                    Severity.ERROR,
                    "connectivity",
                    f"Cannot authenticate to {role} org {org_id}: {e.message}",
                    suggested_fix="Reconnect the org" if e.requires_reconnect else "Check the org's credentials",
                )
            except PlatformError as e:
                ok = False
                result.add(
                    Severity.ERROR,
                    "connectivity",
                    f"Cannot reach {role} org {org_id}: {e.message}",
                    suggested_fix="Retry once the org is reachable",
                )
        return ok

    def _check_existence(
        self,
        result: ValidationResult,
        template: MigrationTemplate,
        source_org_id: str,
        selected_ids: Dict[str, List[str]],
    ) -> bool:
        result.mark_run("record_existence")
        known_types = set(template.object_types)
        ok = True

        for object_type, ids in selected_ids.items():
            if object_type not in known_types:
                result.add(
                    Severity.ERROR,
                    "record_existence",
                    f"Records selected for {object_type}, which template {template.id} does not migrate",
                )
                ok = False
                continue

            malformed = [i for i in ids if not is_record_id(i)]
            for record_id in malformed:
                result.add(
                    Severity.ERROR,
                    "record_existence",
                    f"'{record_id}' is not a valid record id",
                    record_id=record_id,
                )
            ok = ok and not malformed
            wanted = [i for i in dict.fromkeys(ids) if is_record_id(i)]
            if not wanted:
                continue

            validate_object_name(object_type)
            found: Set[str] = set()
            try:
                for chunk in chunked(wanted, IDS_PER_QUERY):
                    soql = f"SELECT Id FROM {object_type} WHERE {in_clause('Id', chunk)}"
                    found.update(self.client.query(source_org_id, soql).ids)
            except PlatformError as e:
                result.add(
                    Severity.ERROR,
                    "record_existence",
                    f"Could not look up selected {object_type} records: {e.message}",
                )
                ok = False
                continue

            # Ids may come back in 18-character form
            found_short = {i[:15] for i in found}
            for record_id in wanted:
                if record_id not in found and record_id[:15] not in found_short:
                    ok = False
                    result.add(
                        Severity.ERROR,
                        "record_existence",
                        f"{object_type} record {record_id} does not exist in the source org",
                        record_id=record_id,
                        suggested_fix="Remove it from the selection",
                    )
        return ok

    def _check_external_ids(
        self,
        result: ValidationResult,
        template: MigrationTemplate,
        resolver: ExternalIdResolver,
        source_org_id: str,
        target_org_id: str,
    ) -> Optional[Dict[str, ExternalIdConfig]]:
        result.mark_run("external_ids")
        configs: Dict[str, ExternalIdConfig] = {}
        failed = False

        for object_type in template_object_types(template):
            try:
                config = resolver.reconcile(object_type, source_org_id, target_org_id)
            except SchemaError as e:
                failed = True
                result.add(
                    Severity.ERROR,
                    "external_ids",
                    e.message,
                    suggested_fix="Install the data-creation package or add an External_Id__c field",
                )
                continue
            except PlatformError as e:
                failed = True
                result.add(Severity.ERROR, "external_ids", f"Could not describe {object_type}: {e.message}")
                continue

            configs[object_type] = config
            if config.is_cross_environment:
                result.add(
                    Severity.INFO,
                    "external_ids",
                    f"{object_type}: source uses {config.source_field}, target uses {config.target_field}; "
                    f"records are matched on {config.join_field}",
                )
            fallback = ExternalIdStrategy.FALLBACK
            if fallback in (config.source_strategy, config.target_strategy):
                result.add(
                    Severity.WARNING,
                    "external_ids",
                    f"{object_type} uses the generic fallback external id field",
                    suggested_fix="Install the data-creation package for stable external ids",
                )

        return None if failed else configs

    # Declared checks

    def _fetch_rows(
        self,
        result: ValidationResult,
        step: ETLStep,
        resolver: ExternalIdResolver,
        source_org_id: str,
        selected_ids: Dict[str, List[str]],
        ids_by_step: Dict[str, List[str]],
    ) -> List[Dict[str, Any]]:
        """Source rows with the fields the step's checks read."""
        object_type = step.extract.object_type
        spec = step.validation
        fields = ["Id"]
        if resolver.describe(source_org_id, object_type).has_field("Name"):
            fields.append("Name")
        for check in spec.dependency_checks:
            fields.append(check.source_field)
        for check in spec.picklist_checks:
            fields.append(check.field_name)
        select = ", ".join(dict.fromkeys(fields))

        if step.extract.parent_step:
            keys, key_field = ids_by_step.get(step.extract.parent_step, []), step.extract.parent_field
        else:
            keys, key_field = selected_ids.get(object_type, []), "Id"

        rows: List[Dict[str, Any]] = []
        try:
            for chunk in chunked(list(keys), IDS_PER_QUERY):
                soql = f"SELECT {select} FROM {object_type} WHERE {in_clause(key_field, chunk)}"
                rows.extend(self.client.query(source_org_id, soql).records)
        except PlatformError as e:
            result.add(
                Severity.WARNING,
                "record_fetch",
                f"Could not read {object_type} records for checks: {e.message}",
                step_name=step.name,
            )
        return rows

    def _run_integrity_check(
        self,
        result: ValidationResult,
        step: ETLStep,
        check: DataIntegrityCheck,
        external_ids: ExternalIdConfig,
        source_org_id: str,
        selected_ids: Dict[str, List[str]],
    ) -> None:
        result.mark_run(check.name)
        ids = selected_ids.get(step.extract.object_type) or None
        try:
            soql = apply_placeholders(check.query, external_ids.source_field, ids=ids)
            rows = self.client.query(source_org_id, soql).records
        except ConfigurationError as e:
            result.add(Severity.INFO, check.name, f"Skipped: {e.message}", step_name=step.name)
            return
        except PlatformError as e:
            result.add(
                Severity.WARNING,
                check.name,
                f"Integrity check could not run: {e.message}",
                step_name=step.name,
            )
            return

        if check.expected == "non_empty":
            if not rows:
                result.add(check.severity, check.name, render_message(check.message), step_name=step.name)
            return

        for row in rows:
            result.add(
                check.severity,
                check.name,
                render_message(check.message, recordName=row.get("Name") or row.get("Id")),
                record_id=row.get("Id"),
                step_name=step.name,
            )

    def _run_dependency_check(
        self,
        result: ValidationResult,
        step: ETLStep,
        check: DependencyCheck,
        rows: Sequence[Dict[str, Any]],
        produced: Dict[str, Set[str]],
        external_ids: Dict[str, ExternalIdConfig],
        target_org_id: str,
    ) -> None:
        result.mark_run(check.name)
        referenced = {
            str(value) for value in (get_nested_value(r, check.source_field) for r in rows) if value
        }
        pending = referenced - produced.get(check.target_object, set())
        if not pending:
            return

        target_field = external_ids[check.target_object].target_field
        existing: Set[str] = set()
        try:
            for chunk in chunked(sorted(pending), IDS_PER_QUERY):
                soql = (
                    f"SELECT Id, {target_field} FROM {check.target_object} "
                    f"WHERE {in_clause(target_field, chunk)}"
                )
                existing.update(
                    r[target_field] for r in self.client.query(target_org_id, soql).records if r.get(target_field)
                )
        except PlatformError as e:
            result.add(
                Severity.WARNING,
                check.name,
                f"Dependency check could not run: {e.message}",
                step_name=step.name,
            )
            return

        missing = pending - existing
        severity = Severity.ERROR if check.required else Severity.WARNING
        template = check.message if check.required else (check.warning_message or check.message)
        for row in rows:
            value = get_nested_value(row, check.source_field)
            if value and str(value) in missing:
                result.add(
                    severity,
                    check.name,
                    render_message(template, sourceValue=value, recordName=row.get("Name") or row.get("Id")),
                    record_id=row.get("Id"),
                    field=check.source_field,
                    step_name=step.name,
                    suggested_fix=f"Include the referenced {check.target_object} in the migration",
                )

    def _run_picklist_check(
        self,
        result: ValidationResult,
        step: ETLStep,
        check: PicklistCheck,
        rows: Sequence[Dict[str, Any]],
        resolver: ExternalIdResolver,
        target_org_id: str,
    ) -> None:
        result.mark_run(check.name)
        multi_select = False
        if check.validate_against_target:
            target_field = resolver.describe(target_org_id, step.load.object_type).get_field(check.field_name)
            if target_field is None:
                result.add(
                    Severity.ERROR,
                    check.name,
                    f"Field {check.field_name} does not exist on {step.load.object_type} in the target org",
                    field=check.field_name,
                    step_name=step.name,
                )
                return
            allowed = set(target_field.picklist_values)
            multi_select = target_field.type == "multipicklist"
        else:
            allowed = set(check.allowed_values)

        for row in rows:
            value = get_nested_value(row, check.field_name)
            if value in (None, ""):
                continue
            values = str(value).split(";") if multi_select else [str(value)]
            for single in values:
                if single in allowed:
                    continue
                result.add(
                    check.severity,
                    check.name,
                    render_message(
                        check.message,
                        value=single,
                        field=check.field_name,
                        recordName=row.get("Name") or row.get("Id"),
                    ),
                    record_id=row.get("Id"),
                    field=check.field_name,
                    step_name=step.name,
                    suggested_fix=f"Add '{single}' to the target picklist or change the source value",
                )

