"""Form definition endpoints."""

from typing import List
import structlog
from fastapi import APIRouter, HTTPException, Depends

from requestflow.core import FormService
from requestflow.models import get_db
from requestflow.models.schemas import FormDefinitionCreate, FormDefinitionResponse

router = APIRouter(prefix="/api/forms", tags=["forms"])
logger = structlog.get_logger()


@router.post("", response_model=FormDefinitionResponse)
async def create_form(
    form_req: FormDefinitionCreate,
    db_session = Depends(get_db),
):
    """Register a form against a target table"""
    form = await FormService(db_session).create_form(form_req)
    return FormDefinitionResponse(**form.to_dict())


@router.get("/{form_id}", response_model=FormDefinitionResponse)
async def get_form(form_id: str, db_session = Depends(get_db)):
    """Get form by ID"""
    try:
        form = await FormService(db_session).get_form(form_id)
        return FormDefinitionResponse(**form.to_dict())
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("", response_model=List[FormDefinitionResponse])
async def list_forms(active_only: bool = True, db_session = Depends(get_db)):
    """List forms"""
    forms = await FormService(db_session).list_forms(active_only)
    return [FormDefinitionResponse(**form.to_dict()) for form in forms]
