"""Registry of migration templates."""

import json
import logging
import threading
from pathlib import Path
from typing import Dict, List, Optional

from ..exceptions import ConfigurationError
from ..models.template import MigrationTemplate, TransformKind
from ..utils.soql import validate_object_name

logger = logging.getLogger(__name__)


def resolve_execution_order(template: MigrationTemplate) -> List[str]:
    """
    Topologically order a template's steps.

    Ties keep declaration order, so a template already listed in
    dependency order runs exactly as written.

    Raises:
        ConfigurationError: unknown dependency or a cycle
    """
    names = [s.name for s in template.steps]
    known = set(names)
    remaining: Dict[str, set] = {}
    for step in template.steps:
        deps = set(step.dependencies)
        if step.extract.parent_step:
            deps.add(step.extract.parent_step)
        unknown = deps - known
        if unknown:
            raise ConfigurationError(
                f"Template {template.id}: step '{step.name}' depends on unknown step(s) {sorted(unknown)}"
            )
        if step.name in deps:
            raise ConfigurationError(f"Template {template.id}: step '{step.name}' depends on itself")
        remaining[step.name] = deps

    order: List[str] = []
    done: set = set()
    while len(order) < len(names):
        ready = [n for n in names if n not in done and remaining[n] <= done]
        if not ready:
            cycle = sorted(n for n in names if n not in done)
            raise ConfigurationError(f"Template {template.id}: dependency cycle among steps {cycle}")
        order.append(ready[0])
        done.add(ready[0])

    return order


def validate_template(template: MigrationTemplate) -> List[str]:
    """
    Check a template against the authoring rules.

    Returns:
        Problems found (empty when valid); cycles and unknown dependencies
        are reported here too
    """
    problems = []
    if not template.id:
        problems.append("Template id is required")
    if not template.name:
        problems.append("Template name is required")
    if not template.steps:
        problems.append("Template must have at least one step")

    seen = set()
    for step in template.steps:
        if step.name in seen:
            problems.append(f"Duplicate step name '{step.name}'")
        seen.add(step.name)

        for object_type in (step.extract.object_type, step.load.object_type):
            try:
                validate_object_name(object_type)
            except ConfigurationError as e:
                problems.append(f"Step '{step.name}': {e}")

        ext_mappings = step.transform.external_id_mappings
        if len(ext_mappings) != 1:
            problems.append(
                f"Step '{step.name}' must have exactly one mapping to the external id field, found {len(ext_mappings)}"
            )
        elif ext_mappings[0].source_field != "Id" or ext_mappings[0].kind != TransformKind.DIRECT:
            problems.append(f"Step '{step.name}': the external id mapping must copy the source Id directly")

        for mapping in step.transform.field_mappings:
            if mapping.kind == TransformKind.CONSTANT and "value" not in mapping.options:
                problems.append(f"Step '{step.name}': constant mapping to {mapping.target_field} has no value")
            if mapping.kind == TransformKind.COMPUTED and not mapping.options.get("function"):
                problems.append(f"Step '{step.name}': computed mapping to {mapping.target_field} names no function")
            if mapping.kind == TransformKind.LOOKUP:
                lookup_object = mapping.options.get("lookup_object")
                if not lookup_object:
                    problems.append(f"Step '{step.name}': lookup mapping to {mapping.target_field} names no lookup_object")
                else:
                    try:
                        validate_object_name(lookup_object)
                    except ConfigurationError as e:
                        problems.append(f"Step '{step.name}': {e}")

        if step.load.batch_size < 1:
            problems.append(f"Step '{step.name}': batch size must be positive")
        if step.load.retry.max_attempts < 1:
            problems.append(f"Step '{step.name}': retry max attempts must be at least 1")

        if bool(step.extract.parent_step) != bool(step.extract.parent_field):
            problems.append(f"Step '{step.name}': parent_step and parent_field must be set together")

    if not problems:
        try:
            resolve_execution_order(template)
        except ConfigurationError as e:
            problems.append(str(e))

    return problems


class TemplateRegistry:
    """
    Registry of immutable migration templates keyed by id.

    Populated explicitly at startup by the composition root; each template
    is validated on registration.

    Supports:
    - Registration with dependency-graph validation
    - Lookup by id, category and free-text search
    - Loading templates from JSON files
    """

    def __init__(self):
        self._templates: Dict[str, MigrationTemplate] = {}
        self._lock = threading.Lock()

    def register_template(self, template: MigrationTemplate, replace: bool = False) -> None:
        """
        Register a template.

        Args:
            template: Template to register
            replace: Allow replacing an existing template with the same id

        Raises:
            ConfigurationError: template is malformed or the id is taken
        """
        problems = validate_template(template)
        if problems:
            raise ConfigurationError(f"Invalid template '{template.id}': " + "; ".join(problems))

        with self._lock:
            if template.id in self._templates and not replace:
                raise ConfigurationError(f"Template '{template.id}' is already registered")
            self._templates[template.id] = template
        logger.info(f"Registered template {template.id} ({len(template.steps)} step(s))")

    def unregister(self, template_id: str) -> bool:
        with self._lock:
            return self._templates.pop(template_id, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._templates.clear()

    def get(self, template_id: str) -> Optional[MigrationTemplate]:
        with self._lock:
            return self._templates.get(template_id)

    def require(self, template_id: str) -> MigrationTemplate:
        template = self.get(template_id)
        if template is None:
            raise ConfigurationError(f"Unknown template '{template_id}'")
        return template

    def list_templates(self) -> List[MigrationTemplate]:
        with self._lock:
            return sorted(self._templates.values(), key=lambda t: t.id)

    def by_category(self, category: str) -> List[MigrationTemplate]:
        return [t for t in self.list_templates() if t.category.lower() == category.lower()]

    def by_complexity(self, complexity: str) -> List[MigrationTemplate]:
        return [t for t in self.list_templates() if t.complexity.lower() == complexity.lower()]

    def search(self, text: str) -> List[MigrationTemplate]:
        """Case-insensitive match on name, description, tags and object types."""
        needle = text.lower()
        results = []
        for template in self.list_templates():
            haystack = [template.name, template.description, *template.tags, *template.object_types]
            if any(needle in value.lower() for value in haystack):
                results.append(template)
        return results

    def find(
        self,
        category: Optional[str] = None,
        complexity: Optional[str] = None,
        search: Optional[str] = None,
    ) -> List[MigrationTemplate]:
        """Templates matching every filter given."""
        templates = self.search(search) if search else self.list_templates()
        if category:
            wanted = {t.id for t in self.by_category(category)}
            templates = [t for t in templates if t.id in wanted]
        if complexity:
            wanted = {t.id for t in self.by_complexity(complexity)}
            templates = [t for t in templates if t.id in wanted]
        return templates

    @property
    def categories(self) -> List[str]:
        return sorted({t.category for t in self.list_templates()})

    def load_directory(self, directory: str) -> int:
        """
        Register every ``*.json`` template in a directory.

        Returns:
            Number of templates registered
        """
        path = Path(directory)
        if not path.exists():
            logger.warning(f"Template directory not found: {directory}")
            return 0

        loaded = 0
        for file_path in sorted(path.glob("*.json")):
            with open(file_path, "r") as f:
                data = json.load(f)
            self.register_template(MigrationTemplate.from_dict(data))
            loaded += 1

        logger.info(f"Loaded {loaded} template(s) from {directory}")
        return loaded

    def __contains__(self, template_id: object) -> bool:
        with self._lock:
            return template_id in self._templates

    def __len__(self) -> int:
        with self._lock:
            return len(self._templates)
