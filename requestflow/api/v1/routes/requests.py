"""Request lifecycle endpoints."""

from typing import List, Optional
from datetime import datetime, timedelta
import json
import structlog
from fastapi import APIRouter, HTTPException, Header, Depends
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy import select

from requestflow.api.v1.dependencies import get_event_bus, get_target_data
from requestflow.config.settings import settings
from requestflow.core import (
    ConflictDetector,
    RequestService,
    WorkflowConfigurationError,
    DefinitionNotFoundError,
)
from requestflow.models import IdempotencyKey, get_db
from requestflow.models.schemas import (
    ActorAction,
    ConflictDetectionResult,
    FormRequestCreate,
    FormRequestHistoryResponse,
    FormRequestResponse,
    RejectSubmit,
    RequestStatus,
    StepCompletionSubmit,
    WorkflowActionResult,
    WorkflowActionSubmit,
)

router = APIRouter(prefix="/api/requests", tags=["requests"])
logger = structlog.get_logger()


async def _conflict(service: RequestService, request_id: str, operation: str) -> HTTPException:
    form_request = await service.get_request(request_id)
    return HTTPException(
        status_code=409,
        detail=f"Cannot {operation} request {request_id} in {form_request.status} state",
    )


@router.post("", response_model=FormRequestResponse)
async def create_request(
    request_req: FormRequestCreate,
    idempotency_key: str = Header(None, alias="Idempotency-Key"),
    db_session = Depends(get_db),
    event_bus = Depends(get_event_bus),
    target_data = Depends(get_target_data),
):
    """
    Create a change request.

    If the form has an active workflow the request starts Pending in that
    workflow; otherwise it is Approved immediately and can be applied.

    Supports idempotency via Idempotency-Key header to prevent duplicate requests.
    """
    if idempotency_key:
        result = await db_session.execute(
            select(IdempotencyKey).where(IdempotencyKey.key == idempotency_key)
        )
        existing = result.scalar_one_or_none()

        if existing and not existing.is_expired():
            logger.info(
                "idempotency_key_found",
                idempotency_key=idempotency_key,
                form_request_id=existing.form_request_id
            )
            return JSONResponse(status_code=existing.response_code, content=existing.response_body_dict)
        if existing:
            await db_session.delete(existing)
            await db_session.flush()

    service = RequestService(db_session, target_data, event_bus)

    try:
        form_request = await service.create_request(request_req)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except (WorkflowConfigurationError, DefinitionNotFoundError) as e:
        raise HTTPException(status_code=400, detail=str(e))

    logger.info("request_created_via_api", form_request_id=form_request.id)

    response_body = FormRequestResponse(**form_request.to_dict()).model_dump(mode="json")

    if idempotency_key:
        idem_record = IdempotencyKey(
            key=idempotency_key,
            form_request_id=form_request.id,
            response_code=200,
            response_body=json.dumps(response_body),
            created_at=datetime.now().timestamp(),
            expires_at=(datetime.now() + timedelta(hours=settings.idempotency_key_expiry_hours)).timestamp()
        )
        db_session.add(idem_record)
        await db_session.commit()

        logger.info(
            "idempotency_key_stored",
            idempotency_key=idempotency_key,
            form_request_id=form_request.id,
            expires_at=idem_record.expires_at
        )

    return response_body


@router.get("", response_model=List[FormRequestResponse])
async def list_requests(
    status: Optional[RequestStatus] = None,
    form_definition_id: Optional[str] = None,
    requested_by: Optional[str] = None,
    limit: int = 100,
    db_session = Depends(get_db),
    target_data = Depends(get_target_data),
):
    """List requests, newest first"""
    service = RequestService(db_session, target_data)
    requests = await service.list_requests(status, form_definition_id, requested_by, limit)
    return [FormRequestResponse(**r.to_dict()) for r in requests]


@router.get("/{request_id}", response_model=FormRequestResponse)
async def get_request(
    request_id: str,
    db_session = Depends(get_db),
    target_data = Depends(get_target_data),
):
    """Get request by ID"""
    try:
        form_request = await RequestService(db_session, target_data).get_request(request_id)
        return FormRequestResponse(**form_request.to_dict())
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.post("/{request_id}/approve", response_model=FormRequestResponse)
async def approve_request(
    request_id: str,
    action: ActorAction,
    db_session = Depends(get_db),
    event_bus = Depends(get_event_bus),
    target_data = Depends(get_target_data),
):
    """
    Approve a Pending request without a running workflow and apply it.
    The response reflects the apply outcome (Applied or Failed).
    """
    service = RequestService(db_session, target_data, event_bus)

    try:
        form_request = await service.approve_request(request_id, action.actor_id, action.actor_name, action.comments)
        if form_request is None:
            raise await _conflict(service, request_id, "approve")
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))

    return FormRequestResponse(**form_request.to_dict())


@router.post("/{request_id}/reject", response_model=FormRequestResponse)
async def reject_request(
    request_id: str,
    rejection: RejectSubmit,
    db_session = Depends(get_db),
    event_bus = Depends(get_event_bus),
    target_data = Depends(get_target_data),
):
    """Reject a Pending request; its workflow is cancelled"""
    service = RequestService(db_session, target_data, event_bus)

    try:
        await service.get_request(request_id)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))

    try:
        form_request = await service.reject_request(request_id, rejection.actor_id, rejection.actor_name, rejection.reason)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    if form_request is None:
        raise await _conflict(service, request_id, "reject")

    return FormRequestResponse(**form_request.to_dict())


@router.post("/{request_id}/apply", response_model=FormRequestResponse)
async def apply_request(
    request_id: str,
    action: ActorAction,
    db_session = Depends(get_db),
    event_bus = Depends(get_event_bus),
    target_data = Depends(get_target_data),
):
    """Apply an Approved request that has not been applied yet"""
    service = RequestService(db_session, target_data, event_bus)

    try:
        form_request = await service.apply_approved_request(request_id, action.actor_id, action.actor_name)
        if form_request is None:
            raise await _conflict(service, request_id, "apply")
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))

    return FormRequestResponse(**form_request.to_dict())


@router.post("/{request_id}/retry", response_model=FormRequestResponse)
async def retry_request(
    request_id: str,
    action: ActorAction,
    db_session = Depends(get_db),
    event_bus = Depends(get_event_bus),
    target_data = Depends(get_target_data),
):
    """
    Retry a Failed request.
    Only the apply step is re-run; the approval stands.
    """
    service = RequestService(db_session, target_data, event_bus)

    try:
        form_request = await service.retry_failed_request(request_id, action.actor_id, action.actor_name)
        if form_request is None:
            raise await _conflict(service, request_id, "retry")
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))

    return FormRequestResponse(**form_request.to_dict())


@router.post("/{request_id}/workflow-action", response_model=WorkflowActionResult)
async def workflow_action(
    request_id: str,
    action_req: WorkflowActionSubmit,
    db_session = Depends(get_db),
    event_bus = Depends(get_event_bus),
    target_data = Depends(get_target_data),
):
    """Approve, reject, complete or skip the request's current workflow step"""
    service = RequestService(db_session, target_data, event_bus)

    try:
        result = await service.process_workflow_action(
            request_id,
            action_req.action,
            action_req.actor_id,
            action_req.actor_name,
            comments=action_req.comments,
            field_updates=action_req.field_updates,
            actor_roles=action_req.actor_roles,
        )
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))

    if not result.success:
        raise HTTPException(status_code=409, detail=result.model_dump(mode="json"))

    return result


@router.post("/{request_id}/steps/{step_id}/complete", response_model=WorkflowActionResult)
async def complete_step(
    request_id: str,
    step_id: str,
    completion: StepCompletionSubmit,
    db_session = Depends(get_db),
    event_bus = Depends(get_event_bus),
    target_data = Depends(get_target_data),
):
    """Complete a specific step, e.g. one member of a parallel group"""
    service = RequestService(db_session, target_data, event_bus)

    try:
        result = await service.complete_workflow_step(
            request_id,
            step_id,
            completion.action,
            completion.actor_id,
            completion.actor_name,
            comments=completion.comments,
            field_updates=completion.field_updates,
            actor_roles=completion.actor_roles,
        )
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))

    if not result.success:
        raise HTTPException(status_code=409, detail=result.model_dump(mode="json"))

    return result


@router.get("/{request_id}/history", response_model=List[FormRequestHistoryResponse])
async def get_request_history(
    request_id: str,
    db_session = Depends(get_db),
    target_data = Depends(get_target_data),
):
    """Audit trail of a request, oldest first"""
    try:
        entries = await RequestService(db_session, target_data).get_history(request_id)
        return [FormRequestHistoryResponse(**entry.to_dict()) for entry in entries]
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/{request_id}/conflicts", response_model=ConflictDetectionResult)
async def get_request_conflicts(
    request_id: str,
    db_session = Depends(get_db),
    target_data = Depends(get_target_data),
):
    """Advisory check of the original snapshot against the live row"""
    try:
        return await ConflictDetector(db_session, target_data).check_for_conflicts(request_id)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/{request_id}/diagnostics", response_class=PlainTextResponse)
async def get_request_diagnostics(
    request_id: str,
    db_session = Depends(get_db),
    target_data = Depends(get_target_data),
):
    """Plain-text support report of a request and its workflow"""
    try:
        return await RequestService(db_session, target_data).get_workflow_diagnostics(request_id)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))
