"""Workflow instance endpoints."""

from typing import List, Optional
import structlog
from fastapi import APIRouter, HTTPException, Depends, Query

from requestflow.api.v1.dependencies import get_event_bus
from requestflow.core import WorkflowEngine
from requestflow.models import get_db
from requestflow.models.schemas import (
    WorkflowCancelSubmit,
    WorkflowInstanceResponse,
    WorkflowProgress,
    WorkflowStepInstanceResponse,
)

router = APIRouter(prefix="/api/workflow-instances", tags=["workflow-instances"])
logger = structlog.get_logger()


@router.get("/pending")
async def get_pending_steps(
    user_id: str,
    roles: Optional[List[str]] = Query(None),
    db_session = Depends(get_db),
    event_bus = Depends(get_event_bus),
):
    """Approval steps waiting on a user, oldest first"""
    engine = WorkflowEngine(db_session, event_bus)
    pending = await engine.get_pending_steps_for_user(user_id, roles)

    entries = []
    for step_instance in pending:
        instance = step_instance.workflow_instance
        step = instance.workflow_definition.get_step(step_instance.step_id)
        entry = step_instance.to_dict()
        entry.update({
            "form_request_id": instance.form_request_id,
            "step_name": step.name,
            "assigned_roles": step.assigned_roles_list,
        })
        entries.append(entry)

    return {"user_id": user_id, "total": len(entries), "steps": entries}


@router.get("/{instance_id}", response_model=WorkflowInstanceResponse)
async def get_instance(
    instance_id: str,
    db_session = Depends(get_db),
    event_bus = Depends(get_event_bus),
):
    """Get workflow instance by ID"""
    engine = WorkflowEngine(db_session, event_bus)

    try:
        instance = await engine.get_instance(instance_id)
        return WorkflowInstanceResponse(**instance.to_dict())
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/{instance_id}/steps", response_model=List[WorkflowStepInstanceResponse])
async def get_instance_steps(
    instance_id: str,
    db_session = Depends(get_db),
    event_bus = Depends(get_event_bus),
):
    """Step instances in definition order"""
    engine = WorkflowEngine(db_session, event_bus)

    try:
        step_instances = await engine.get_step_instances(instance_id)
        return [WorkflowStepInstanceResponse(**si.to_dict()) for si in step_instances]
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/{instance_id}/progress", response_model=WorkflowProgress)
async def get_instance_progress(
    instance_id: str,
    db_session = Depends(get_db),
    event_bus = Depends(get_event_bus),
):
    engine = WorkflowEngine(db_session, event_bus)

    try:
        return await engine.get_workflow_progress(instance_id)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/{instance_id}/steps/{step_id}/access")
async def check_step_access(
    instance_id: str,
    step_id: str,
    user_id: str,
    roles: Optional[List[str]] = Query(None),
    db_session = Depends(get_db),
    event_bus = Depends(get_event_bus),
):
    """Whether a user with the given roles may act on a step"""
    engine = WorkflowEngine(db_session, event_bus)
    allowed = await engine.can_user_access_step(user_id, roles, instance_id, step_id)
    return {"instance_id": instance_id, "step_id": step_id, "user_id": user_id, "allowed": allowed}


@router.post("/{instance_id}/cancel", response_model=WorkflowInstanceResponse)
async def cancel_instance(
    instance_id: str,
    cancel_req: WorkflowCancelSubmit,
    db_session = Depends(get_db),
    event_bus = Depends(get_event_bus),
):
    """
    Cancel an in-progress workflow.
    Open steps are skipped; the request itself stays Pending.
    """
    engine = WorkflowEngine(db_session, event_bus)

    try:
        await engine.get_instance(instance_id)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))

    cancelled = await engine.cancel_workflow(
        instance_id, cancel_req.actor_id, cancel_req.actor_name, cancel_req.reason
    )
    if not cancelled:
        raise HTTPException(status_code=409, detail=f"Workflow instance {instance_id} is not in progress")

    await db_session.commit()
    await engine.publish_pending()

    logger.info("workflow_cancelled_via_api", workflow_instance_id=instance_id, cancelled_by=cancel_req.actor_id)

    instance = await engine.get_instance(instance_id)
    return WorkflowInstanceResponse(**instance.to_dict())
