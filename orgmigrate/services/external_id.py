"""External-identifier field detection and source/target reconciliation."""

import logging
import threading
from typing import Dict, List, Optional, Tuple

from ..exceptions import FatalLoadError, SchemaError
from ..models.execution import ExternalIdConfig, ExternalIdStrategy
from ..models.record import ObjectDescribe
from ..models.template import MigrationTemplate

logger = logging.getLogger(__name__)

MANAGED_FIELD = "tc9_edc__External_ID_Data_Creation__c"
UNMANAGED_FIELD = "External_ID_Data_Creation__c"
FALLBACK_FIELD = "External_Id__c"

DEFAULT_CANDIDATES: Tuple[Tuple[ExternalIdStrategy, str], ...] = (
    (ExternalIdStrategy.MANAGED, MANAGED_FIELD),
    (ExternalIdStrategy.UNMANAGED, UNMANAGED_FIELD),
    (ExternalIdStrategy.FALLBACK, FALLBACK_FIELD),
)


def namespace_of(field_name: str) -> Optional[str]:
    """``tc9_pr`` for ``tc9_pr__Code__c``; None for unnamespaced names."""
    parts = field_name.split("__")
    # ns__Name__c has three parts; Name__c has two
    if len(parts) >= 3:
        return parts[0]
    return None


def template_object_types(template: MigrationTemplate) -> List[str]:
    """Object types a template loads, looks up or checks against, in step order."""
    object_types: List[str] = list(template.object_types)
    for step in template.steps:
        for mapping in step.transform.lookup_mappings:
            lookup_object = mapping.options.get("lookup_object")
            if lookup_object and lookup_object not in object_types:
                object_types.append(lookup_object)
        if step.validation:
            for check in step.validation.dependency_checks:
                if check.target_object not in object_types:
                    object_types.append(check.target_object)
    return object_types


class ExternalIdResolver:
    """
    Detects the external-id field per org and object type.

    One instance lives for one run (or one clone call): describes and
    resolutions are cached for its lifetime only, since orgs can change
    schema between runs.

    Supports:
    - Managed-namespace, unmanaged and fallback field detection, in that order
    - Reconciling source and target choices into one ExternalIdConfig
    - A shared describe cache for the other pre-flight checks
    """

    def __init__(self, client, candidates: Tuple[Tuple[ExternalIdStrategy, str], ...] = DEFAULT_CANDIDATES):
        """
        Args:
            client: PlatformClient (anything with ``describe(org_id, object_type)``)
            candidates: (strategy, field name) pairs in detection order
        """
        self.client = client
        self.candidates = candidates
        self._describes: Dict[Tuple[str, str], ObjectDescribe] = {}
        self._resolved: Dict[Tuple[str, str], Tuple[str, ExternalIdStrategy]] = {}
        self._configs: Dict[Tuple[str, str, str], ExternalIdConfig] = {}
        self._lock = threading.Lock()

    def describe(self, org_id: str, object_type: str) -> ObjectDescribe:
        """Describe an object once per run."""
        key = (org_id, object_type)
        with self._lock:
            cached = self._describes.get(key)
        if cached is not None:
            return cached

        try:
            described = self.client.describe(org_id, object_type)
        except FatalLoadError as e:
            raise SchemaError(
                f"Object {object_type} is not available in org {org_id}: {e.error_code}",
                org_id=org_id,
                object_type=object_type,
            ) from e

        with self._lock:
            return self._describes.setdefault(key, described)

    def resolve(self, org_id: str, object_type: str) -> Tuple[str, ExternalIdStrategy]:
        """
        Find the external-id field for an object type in one org.

        Returns:
            (field name, detection strategy)

        Raises:
            SchemaError: none of the candidate fields exist
        """
        key = (org_id, object_type)
        with self._lock:
            if key in self._resolved:
                return self._resolved[key]

        described = self.describe(org_id, object_type)
        for strategy, field_name in self.candidates:
            if described.has_field(field_name):
                logger.debug(f"External id for {object_type} in org {org_id}: {field_name} ({strategy.value})")
                with self._lock:
                    return self._resolved.setdefault(key, (field_name, strategy))

        tried = ", ".join(name for _, name in self.candidates)
        raise SchemaError(
            f"No external id field on {object_type} in org {org_id} (looked for {tried})",
            org_id=org_id,
            object_type=object_type,
        )

    def reconcile(self, object_type: str, source_org_id: str, target_org_id: str) -> ExternalIdConfig:
        """
        Resolve both orgs and agree on the fields for a run.

        The target org's field is used for loads and as the join key; the
        source org's field only keys extraction. A missing field on either
        side raises SchemaError.
        """
        key = (object_type, source_org_id, target_org_id)
        with self._lock:
            if key in self._configs:
                return self._configs[key]

        source_field, source_strategy = self.resolve(source_org_id, object_type)
        target_field, target_strategy = self.resolve(target_org_id, object_type)

        config = ExternalIdConfig(
            object_type=object_type,
            source_field=source_field,
            target_field=target_field,
            source_strategy=source_strategy,
            target_strategy=target_strategy,
        )
        if config.is_cross_environment:
            logger.info(
                f"{object_type}: source uses {source_field} ({source_strategy.value}), "
                f"target uses {target_field} ({target_strategy.value}); loading on the target field"
            )
        with self._lock:
            return self._configs.setdefault(key, config)

    def resolve_template(
        self,
        template: MigrationTemplate,
        source_org_id: str,
        target_org_id: str,
    ) -> Dict[str, ExternalIdConfig]:
        """ExternalIdConfig for every object type a template touches (incl. lookup targets)."""
        return {
            object_type: self.reconcile(object_type, source_org_id, target_org_id)
            for object_type in template_object_types(template)
        }
