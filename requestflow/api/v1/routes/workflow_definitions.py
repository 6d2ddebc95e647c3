"""Workflow definition management endpoints."""

from typing import List, Optional
import structlog
from fastapi import APIRouter, HTTPException, Depends

from requestflow.core import (
    DefinitionStore,
    DefinitionNotFoundError,
    WorkflowValidationError,
    ConcurrentModificationError,
)
from requestflow.models import get_db
from requestflow.models.schemas import (
    WorkflowDefinitionCreate,
    WorkflowDefinitionUpdate,
    WorkflowDefinitionResponse,
    WorkflowValidationResponse,
)

router = APIRouter(prefix="/api/workflow-definitions", tags=["workflow-definitions"])
logger = structlog.get_logger()


def _invalid(e: WorkflowValidationError) -> HTTPException:
    return HTTPException(status_code=400, detail={"message": str(e), "errors": e.errors})


@router.post("", response_model=WorkflowDefinitionResponse)
async def create_definition(
    definition_req: WorkflowDefinitionCreate,
    db_session = Depends(get_db),
):
    """
    Create the next version of a form's workflow.
    An active definition must pass validation.
    """
    store = DefinitionStore(db_session)

    try:
        definition = await store.create_definition(definition_req)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except WorkflowValidationError as e:
        raise _invalid(e)
    except ConcurrentModificationError as e:
        raise HTTPException(status_code=409, detail=str(e))

    return WorkflowDefinitionResponse(**definition.to_dict())


@router.get("", response_model=List[WorkflowDefinitionResponse])
async def list_definitions(
    form_definition_id: Optional[str] = None,
    active_only: bool = False,
    db_session = Depends(get_db),
):
    """List definitions, optionally for one form"""
    definitions = await DefinitionStore(db_session).list_definitions(form_definition_id, active_only)
    return [WorkflowDefinitionResponse(**d.to_dict()) for d in definitions]


@router.get("/{definition_id}", response_model=WorkflowDefinitionResponse)
async def get_definition(definition_id: str, db_session = Depends(get_db)):
    """Get definition by ID"""
    try:
        definition = await DefinitionStore(db_session).get_definition(definition_id)
        return WorkflowDefinitionResponse(**definition.to_dict())
    except DefinitionNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.put("/{definition_id}", response_model=WorkflowDefinitionResponse)
async def update_definition(
    definition_id: str,
    definition_req: WorkflowDefinitionUpdate,
    db_session = Depends(get_db),
):
    """
    Edit a definition.
    If instances already run on it, a new version is returned instead.
    """
    try:
        definition = await DefinitionStore(db_session).update_definition(definition_id, definition_req)
    except DefinitionNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except WorkflowValidationError as e:
        raise _invalid(e)
    except ConcurrentModificationError as e:
        raise HTTPException(status_code=409, detail=str(e))

    return WorkflowDefinitionResponse(**definition.to_dict())


@router.post("/{definition_id}/activate", response_model=WorkflowDefinitionResponse)
async def activate_definition(definition_id: str, db_session = Depends(get_db)):
    """Make a definition its form's active workflow"""
    try:
        definition = await DefinitionStore(db_session).activate(definition_id)
    except DefinitionNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except WorkflowValidationError as e:
        raise _invalid(e)

    return WorkflowDefinitionResponse(**definition.to_dict())


@router.post("/{definition_id}/deactivate", response_model=WorkflowDefinitionResponse)
async def deactivate_definition(definition_id: str, db_session = Depends(get_db)):
    try:
        definition = await DefinitionStore(db_session).deactivate(definition_id)
    except DefinitionNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

    return WorkflowDefinitionResponse(**definition.to_dict())


@router.get("/{definition_id}/validate", response_model=WorkflowValidationResponse)
async def validate_definition(definition_id: str, db_session = Depends(get_db)):
    """Run design-time validation without changing anything"""
    try:
        errors = await DefinitionStore(db_session).validate(definition_id)
    except DefinitionNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

    return WorkflowValidationResponse(
        workflow_definition_id=definition_id,
        is_valid=not errors,
        errors=errors,
    )


@router.delete("/{definition_id}")
async def delete_definition(definition_id: str, db_session = Depends(get_db)):
    """Delete a definition no instance has used"""
    try:
        await DefinitionStore(db_session).delete_definition(definition_id)
    except DefinitionNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))

    logger.info("workflow_definition_deleted_via_api", workflow_definition_id=definition_id)
    return {"success": True, "workflow_definition_id": definition_id}
