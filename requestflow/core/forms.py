"""Form provider: resolves a form to its target connection and table."""

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from typing import List
import json
import structlog

from requestflow.models.orm import FormDefinition
from requestflow.models.schemas import FormDefinitionCreate

logger = structlog.get_logger()


class FormService:
    """Minimal store of form definitions"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_form(self, payload: FormDefinitionCreate) -> FormDefinition:
        form = FormDefinition(
            name=payload.name,
            description=payload.description,
            connection_name=payload.connection_name,
            table_name=payload.table_name,
            schema_name=payload.schema_name,
            fields=json.dumps([field.model_dump() for field in payload.fields]),
        )
        self.db.add(form)
        await self.db.flush()

        logger.info(
            "form_created",
            form_id=form.id,
            connection=form.connection_name,
            table=form.qualified_table_name,
        )
        return form

    async def get_form(self, form_id: str) -> FormDefinition:
        """Get form by ID"""
        result = await self.db.execute(select(FormDefinition).where(FormDefinition.id == form_id))
        form = result.scalar_one_or_none()

        if not form:
            raise ValueError(f"Form {form_id} not found")

        return form

    async def list_forms(self, active_only: bool = True) -> List[FormDefinition]:
        query = select(FormDefinition).order_by(FormDefinition.name)
        if active_only:
            query = query.where(FormDefinition.is_active.is_(True))

        result = await self.db.execute(query)
        return list(result.scalars().all())
