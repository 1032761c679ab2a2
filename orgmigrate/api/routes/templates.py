"""Template catalogue endpoints."""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from ...orchestrator import ServiceContainer
from ..dependencies import get_container
from ..models import TemplateListResponse

router = APIRouter()


@router.get("", response_model=TemplateListResponse)
async def list_templates(
    category: Optional[str] = None,
    complexity: Optional[str] = None,
    search: Optional[str] = None,
    container: ServiceContainer = Depends(get_container),
):
    """List registered templates, optionally filtered."""
    registry = container.registry
    templates = registry.find(category=category, complexity=complexity, search=search)

    return TemplateListResponse(
        templates=[t.summary() for t in templates],
        total=len(templates),
        categories=registry.categories,
    )


@router.get("/{template_id}")
async def get_template(template_id: str, container: ServiceContainer = Depends(get_container)):
    """Get a template with its steps."""
    template = container.registry.get(template_id)
    if not template:
        raise HTTPException(status_code=404, detail="Template not found")
    return template.to_dict()
