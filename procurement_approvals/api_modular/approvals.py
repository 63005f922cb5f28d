"""
Approval workflow endpoints
"""

from typing import Any, Dict, Optional
from fastapi import APIRouter, Depends, HTTPException, Query, status

from .auth import get_actor_id, get_engine
from .schemas import (
    ApproveStepRequest,
    EscalateStepRequest,
    RejectStepRequest,
    ResetWorkflowRequest,
    StartWorkflowRequest,
    StepDecisionRequest
)
from ..approvals import ApprovalInstance, InstanceStatus
from ..engine import ApprovalEngine
from ..templates import EntityType


router = APIRouter()


def _instance_payload(engine: ApprovalEngine, instance: ApprovalInstance) -> Dict[str, Any]:
    """Instance with its step history"""
    payload = instance.to_dict()
    payload["steps"] = [action.to_dict() for action in engine.instances.get_actions(instance.id)]
    return payload


@router.post("/start", status_code=status.HTTP_201_CREATED)
async def start_workflow(
    request: StartWorkflowRequest,
    actor_id: str = Depends(get_actor_id),
    engine: ApprovalEngine = Depends(get_engine)
):
    """Start the approval workflow for an entity (idempotent)"""
    if request.template_id:
        instance = engine.start_workflow(
            request.entity_type, request.entity_id, request.template_id,
            actor_id, request.entity_data
        )
    else:
        instance = engine.submit(
            request.entity_type, request.entity_id, request.entity_data, actor_id
        )

    return _instance_payload(engine, instance)


@router.get("/status/{instance_id}")
async def get_workflow_status(
    instance_id: str,
    engine: ApprovalEngine = Depends(get_engine)
):
    """Get an approval instance with its template and step history"""
    view = engine.get_workflow_status(instance_id)
    return {
        "instance": view.instance.to_dict(),
        "template": view.template.to_dict() if view.template else None,
        "steps": [action.to_dict() for action in view.actions]
    }


@router.post("/{instance_id}/steps/{step_id}/approve")
async def approve_step(
    instance_id: str,
    step_id: str,
    request: ApproveStepRequest,
    actor_id: str = Depends(get_actor_id),
    engine: ApprovalEngine = Depends(get_engine)
):
    """Approve a step as its assigned approver"""
    instance = engine.approve_step(
        instance_id, step_id, actor_id, request.comments, request.signature_data,
        request.expected_version
    )
    return _instance_payload(engine, instance)


@router.post("/{instance_id}/steps/{step_id}/reject")
async def reject_step(
    instance_id: str,
    step_id: str,
    request: RejectStepRequest,
    actor_id: str = Depends(get_actor_id),
    engine: ApprovalEngine = Depends(get_engine)
):
    """Reject a step as its assigned approver; the instance is rejected"""
    instance = engine.reject_step(
        instance_id, step_id, actor_id, request.comments, request.expected_version
    )
    return _instance_payload(engine, instance)


@router.post("/steps/{step_id}/decision")
async def process_step_decision(
    step_id: str,
    request: StepDecisionRequest,
    actor_id: str = Depends(get_actor_id),
    engine: ApprovalEngine = Depends(get_engine)
):
    """Record an APPROVE or REJECT decision on a step"""
    action = engine.process_step_decision(
        step_id, actor_id, request.decision, request.comments, request.signature_data,
        request.expected_version
    )
    return action.to_dict()


@router.post("/steps/{step_id}/escalate")
async def escalate_step(
    step_id: str,
    request: EscalateStepRequest,
    actor_id: str = Depends(get_actor_id),
    engine: ApprovalEngine = Depends(get_engine)
):
    """Escalate a pending step to the next role up"""
    result = engine.escalate_step(step_id, request.reason, actor_id)
    return {
        "escalated_step": result.escalated_step.to_dict(),
        "new_step": result.new_step.to_dict()
    }


@router.get("/pending")
async def get_pending_approvals(
    actor_id: str = Depends(get_actor_id),
    engine: ApprovalEngine = Depends(get_engine)
):
    """Steps waiting on the calling actor"""
    actions = engine.get_pending_approvals(actor_id)
    return {
        "pending": [action.to_dict() for action in actions],
        "count": len(actions)
    }


@router.get("/progress/{instance_id}")
async def get_approval_progress(
    instance_id: str,
    engine: ApprovalEngine = Depends(get_engine)
):
    """Progress and SLA status of an approval instance"""
    return engine.get_approval_progress(instance_id).to_dict()


@router.get("/instances")
async def list_instances(
    status_filter: Optional[str] = Query(None, alias="status"),
    entity_type: Optional[str] = None,
    engine: ApprovalEngine = Depends(get_engine)
):
    """List approval instances, newest first"""
    instances = engine.list_instances(
        status=InstanceStatus(status_filter.upper()) if status_filter else None,
        entity_type=EntityType.parse(entity_type) if entity_type else None
    )
    return {
        "instances": [instance.to_dict() for instance in instances],
        "count": len(instances)
    }


@router.get("/entities/{entity_type}/{entity_id}")
async def get_instance_for_entity(
    entity_type: str,
    entity_id: str,
    engine: ApprovalEngine = Depends(get_engine)
):
    """Get the approval instance of an entity"""
    instance = engine.get_instance_for_entity(entity_type, entity_id)
    if not instance:
        raise HTTPException(status_code=404, detail="No approval workflow for this entity")

    return _instance_payload(engine, instance)


@router.post("/entities/{entity_type}/{entity_id}/reset", status_code=status.HTTP_201_CREATED)
async def reset_workflow(
    entity_type: str,
    entity_id: str,
    request: ResetWorkflowRequest,
    actor_id: str = Depends(get_actor_id),
    engine: ApprovalEngine = Depends(get_engine)
):
    """Discard the entity's approval history and start a fresh workflow"""
    template_id = request.template_id
    if not template_id:
        template_id = engine.select_workflow(entity_type, request.entity_data).id

    instance = engine.reset_workflow(
        entity_type, entity_id, template_id, actor_id, request.entity_data
    )
    return _instance_payload(engine, instance)


@router.get("/sla/breaches")
async def list_sla_breaches(engine: ApprovalEngine = Depends(get_engine)):
    """Active steps whose SLA deadline has passed"""
    actions = engine.find_breached_steps()
    return {
        "breaches": [action.to_dict() for action in actions],
        "count": len(actions)
    }
