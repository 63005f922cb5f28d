"""
Workflow template endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, status

from .auth import get_actor_id, get_engine
from .schemas import CreateTemplateRequest, UpdateTemplateRequest, parse_conditions
from ..engine import ApprovalEngine
from ..templates import BUILTIN_TEMPLATES_BY_ID, EntityType, WorkflowTemplate


router = APIRouter()


@router.get("")
async def list_templates(
    entity_type: Optional[str] = None,
    active_only: bool = False,
    engine: ApprovalEngine = Depends(get_engine)
):
    """List stored workflow templates, newest first"""
    templates = engine.catalog.list_templates(
        entity_type=EntityType.parse(entity_type) if entity_type else None,
        active_only=active_only
    )
    return {
        "templates": [template.to_dict() for template in templates],
        "count": len(templates)
    }


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_template(
    request: CreateTemplateRequest,
    actor_id: str = Depends(get_actor_id),
    engine: ApprovalEngine = Depends(get_engine)
):
    """Create a workflow template"""
    template = WorkflowTemplate(
        id="",
        created_at=None,
        updated_at=None,
        name=request.name,
        entity_category=EntityType.parse(request.entity_category),
        steps=[step.to_step() for step in request.steps],
        conditions=parse_conditions(request.conditions),
        description=request.description,
        is_active=request.is_active,
        created_by=actor_id
    )
    template_id = engine.catalog.create_template(template)

    return {"template_id": template_id, "message": "Workflow template created successfully"}


@router.post("/seed-defaults")
async def seed_default_templates(
    actor_id: str = Depends(get_actor_id),
    engine: ApprovalEngine = Depends(get_engine)
):
    """Store the standard procurement templates that are missing"""
    return engine.catalog.seed_default_templates(created_by=actor_id)


@router.get("/{template_id}")
async def get_template(
    template_id: str,
    engine: ApprovalEngine = Depends(get_engine)
):
    """Get a workflow template, including the built-in defaults"""
    template = engine.catalog.get_template(template_id) or BUILTIN_TEMPLATES_BY_ID.get(template_id)
    if not template:
        raise HTTPException(status_code=404, detail="Workflow template not found")
    return template.to_dict()


@router.put("/{template_id}")
async def update_template(
    template_id: str,
    request: UpdateTemplateRequest,
    actor_id: str = Depends(get_actor_id),
    engine: ApprovalEngine = Depends(get_engine)
):
    """
    Update a workflow template.

    A template already used by an approval instance is not modified; a new
    revision is created instead and returned.
    """
    template = engine.catalog.revise_template(
        template_id, updated_by=actor_id, **request.to_changes()
    )
    return template.to_dict()


@router.post("/{template_id}/activate")
async def activate_template(
    template_id: str,
    engine: ApprovalEngine = Depends(get_engine)
):
    template = engine.catalog.activate_template(template_id)
    return {"template_id": template.id, "is_active": template.is_active}


@router.post("/{template_id}/deactivate")
async def deactivate_template(
    template_id: str,
    engine: ApprovalEngine = Depends(get_engine)
):
    template = engine.catalog.deactivate_template(template_id)
    return {"template_id": template.id, "is_active": template.is_active}


@router.delete("/{template_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_template(
    template_id: str,
    engine: ApprovalEngine = Depends(get_engine)
):
    """Delete a template no approval instance references"""
    if not engine.catalog.get_template(template_id):
        raise HTTPException(status_code=404, detail="Workflow template not found")
    engine.catalog.delete_template(template_id)
