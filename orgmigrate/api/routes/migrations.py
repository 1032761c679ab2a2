"""Validation, execution and cloning endpoints."""

import logging

from fastapi import APIRouter, Depends, HTTPException

from ...exceptions import AuthError, ConfigurationError, SchemaError, ValidationError
from ...models.execution import ExecutionContext
from ...orchestrator import ServiceContainer
from ..dependencies import get_container
from ..models import CloneRequest, ExecuteRequest, MigrationRequest

logger = logging.getLogger(__name__)

router = APIRouter()


def _template_or_404(container: ServiceContainer, template_id: str):
    template = container.registry.get(template_id)
    if not template:
        raise HTTPException(status_code=404, detail="Template not found")
    return template


@router.post("/validate")
def validate_migration(data: MigrationRequest, container: ServiceContainer = Depends(get_container)):
    """Run pre-flight checks without writing anything."""
    template = _template_or_404(container, data.template_id)
    try:
        result = container.validator.validate(
            template, data.source_org_id, data.target_org_id, data.selected_ids
        )
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=e.to_dict())
    return result.to_dict()


@router.post("/execute")
def execute_migration(data: ExecuteRequest, container: ServiceContainer = Depends(get_container)):
    """Validate, then run a migration to completion."""
    template = _template_or_404(container, data.template_id)
    context = ExecutionContext(
        source_org_id=data.source_org_id,
        target_org_id=data.target_org_id,
        template=template,
        selected_ids=data.selected_ids,
        config=data.options.to_config(),
    )

    try:
        result = container.orchestrator.run(context, skip_validation=data.skip_validation)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.to_dict())
    except AuthError as e:
        raise HTTPException(status_code=401, detail=e.to_dict())
    except (ConfigurationError, SchemaError) as e:
        raise HTTPException(status_code=400, detail=e.to_dict())

    if result.requires_reconnect:
        logger.warning(f"Run {result.run_id} stopped: an org needs to be reconnected")
    return result.to_dict()


@router.post("/clone")
def clone_record(data: CloneRequest, container: ServiceContainer = Depends(get_container)):
    """Clone a single record into the target org."""
    result = container.cloning.clone_record(
        data.source_org_id, data.target_org_id, data.source_record_id, data.object_type
    )
    return result.to_dict()
