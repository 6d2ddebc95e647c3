"""
Workflow definition store.

Definitions are versioned per form. A definition that an instance has run
against is never edited: an edit copies it into the next version, which
supersedes the old one. At most one definition per form is active.
"""

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import selectinload
from typing import List, Optional
import structlog

from requestflow.core.workflow_engine import (
    ConcurrentModificationError,
    DefinitionNotFoundError,
    WorkflowValidationError,
)
from requestflow.core.workflow_validation import validate_definition
from requestflow.models.orm import (
    FormDefinition,
    WorkflowDefinition,
    WorkflowInstance,
    WorkflowStep,
    WorkflowTransition,
    dumps,
    _now,
)
from requestflow.models.schemas import (
    WorkflowDefinitionCreate,
    WorkflowDefinitionUpdate,
    WorkflowStepSpec,
    WorkflowTransitionSpec,
)

logger = structlog.get_logger()


def _build_steps(steps: List[WorkflowStepSpec]) -> List[WorkflowStep]:
    return [
        WorkflowStep(
            step_id=spec.step_id,
            step_type=spec.step_type.value,
            name=spec.name,
            description=spec.description,
            assigned_roles=dumps(spec.assigned_roles),
            is_required=spec.is_required,
            configuration=dumps(spec.configuration.model_dump(mode="json")),
            field_configurations=dumps(
                {name: config.model_dump() for name, config in spec.field_configurations.items()}
            ),
            position=position,
            position_x=spec.position_x,
            position_y=spec.position_y,
        )
        for position, spec in enumerate(steps)
    ]


def _build_transitions(transitions: List[WorkflowTransitionSpec]) -> List[WorkflowTransition]:
    return [
        WorkflowTransition(
            from_step_id=spec.from_step_id,
            to_step_id=spec.to_step_id,
            condition=dumps(spec.condition.model_dump(mode="json")) if spec.condition else None,
            name=spec.name,
            position=position,
        )
        for position, spec in enumerate(transitions)
    ]


def _copy_steps(definition: WorkflowDefinition) -> List[WorkflowStep]:
    return [
        WorkflowStep(
            step_id=step.step_id,
            step_type=step.step_type,
            name=step.name,
            description=step.description,
            assigned_roles=step.assigned_roles,
            is_required=step.is_required,
            configuration=step.configuration,
            field_configurations=step.field_configurations,
            position=step.position,
            position_x=step.position_x,
            position_y=step.position_y,
        )
        for step in definition.steps
    ]


def _copy_transitions(definition: WorkflowDefinition) -> List[WorkflowTransition]:
    return [
        WorkflowTransition(
            from_step_id=t.from_step_id,
            to_step_id=t.to_step_id,
            condition=t.condition,
            name=t.name,
            position=t.position,
        )
        for t in definition.transitions
    ]


class DefinitionStore:
    """
    CRUD for workflow definitions. Methods flush; the caller commits.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_definition(self, definition_id: str) -> WorkflowDefinition:
        """Get definition by ID with its steps and transitions"""
        result = await self.db.execute(
            select(WorkflowDefinition)
            .options(
                selectinload(WorkflowDefinition.steps),
                selectinload(WorkflowDefinition.transitions),
            )
            .where(WorkflowDefinition.id == definition_id)
        )
        definition = result.scalar_one_or_none()

        if not definition:
            raise DefinitionNotFoundError(f"Workflow definition {definition_id} not found")

        return definition

    async def get_active_definition(self, form_definition_id: str) -> Optional[WorkflowDefinition]:
        result = await self.db.execute(
            select(WorkflowDefinition)
            .options(
                selectinload(WorkflowDefinition.steps),
                selectinload(WorkflowDefinition.transitions),
            )
            .where(
                WorkflowDefinition.form_definition_id == form_definition_id,
                WorkflowDefinition.is_active.is_(True),
            )
            .order_by(WorkflowDefinition.version.desc())
        )
        return result.scalars().first()

    async def list_definitions(self, form_definition_id: Optional[str] = None, active_only: bool = False) -> List[WorkflowDefinition]:
        query = (
            select(WorkflowDefinition)
            .options(
                selectinload(WorkflowDefinition.steps),
                selectinload(WorkflowDefinition.transitions),
            )
            .order_by(WorkflowDefinition.form_definition_id, WorkflowDefinition.version.desc())
        )
        if form_definition_id:
            query = query.where(WorkflowDefinition.form_definition_id == form_definition_id)
        if active_only:
            query = query.where(WorkflowDefinition.is_active.is_(True))

        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def is_referenced(self, definition_id: str) -> bool:
        """True once any instance has been started from this definition"""
        result = await self.db.execute(
            select(func.count(WorkflowInstance.id)).where(WorkflowInstance.workflow_definition_id == definition_id)
        )
        return (result.scalar() or 0) > 0

    async def _next_version(self, form_definition_id: str) -> int:
        result = await self.db.execute(
            select(func.max(WorkflowDefinition.version)).where(
                WorkflowDefinition.form_definition_id == form_definition_id
            )
        )
        return (result.scalar() or 0) + 1

    async def _deactivate_others(self, definition: WorkflowDefinition):
        await self.db.execute(
            update(WorkflowDefinition)
            .where(
                WorkflowDefinition.form_definition_id == definition.form_definition_id,
                WorkflowDefinition.id != definition.id,
                WorkflowDefinition.is_active.is_(True),
            )
            .values(is_active=False, updated_at=_now())
        )

    def _ensure_valid(self, definition: WorkflowDefinition):
        errors = validate_definition(definition)
        if errors:
            logger.warning(
                "workflow_definition_invalid",
                workflow_definition_id=definition.id,
                errors=errors,
            )
            raise WorkflowValidationError(
                f"Workflow definition '{definition.name}' is not valid: {'; '.join(errors)}",
                errors,
            )

    async def _flush_new_version(self, definition: WorkflowDefinition):
        self.db.add(definition)
        try:
            await self.db.flush()
        except IntegrityError as e:
            raise ConcurrentModificationError(
                f"Version {definition.version} of the workflow for form {definition.form_definition_id} "
                f"was created concurrently. Please retry."
            ) from e

    async def create_definition(self, payload: WorkflowDefinitionCreate) -> WorkflowDefinition:
        """Create the next version of a form's workflow"""
        result = await self.db.execute(
            select(FormDefinition.id).where(FormDefinition.id == payload.form_definition_id)
        )
        if result.scalar_one_or_none() is None:
            raise ValueError(f"Form {payload.form_definition_id} not found")

        now = _now()
        definition = WorkflowDefinition(
            form_definition_id=payload.form_definition_id,
            name=payload.name,
            description=payload.description,
            version=await self._next_version(payload.form_definition_id),
            is_active=payload.is_active,
            created_by=payload.created_by,
            created_at=now,
            updated_at=now,
            steps=_build_steps(payload.steps),
            transitions=_build_transitions(payload.transitions),
        )

        if definition.is_active:
            self._ensure_valid(definition)

        await self._flush_new_version(definition)
        if definition.is_active:
            await self._deactivate_others(definition)

        logger.info(
            "workflow_definition_created",
            workflow_definition_id=definition.id,
            form_definition_id=definition.form_definition_id,
            version=definition.version,
            steps=len(definition.steps),
            transitions=len(definition.transitions),
            is_active=definition.is_active,
        )
        return definition

    async def update_definition(self, definition_id: str, payload: WorkflowDefinitionUpdate) -> WorkflowDefinition:
        """
        Edit a definition.

        If an instance already runs on it, the edit is written to a new version
        (which takes over the active flag) and the original stays untouched.
        """
        current = await self.get_definition(definition_id)

        if await self.is_referenced(definition_id):
            now = _now()
            definition = WorkflowDefinition(
                form_definition_id=current.form_definition_id,
                name=payload.name if payload.name is not None else current.name,
                description=payload.description if payload.description is not None else current.description,
                version=await self._next_version(current.form_definition_id),
                is_active=current.is_active,
                supersedes_id=current.id,
                created_by=payload.updated_by or current.created_by,
                created_at=now,
                updated_at=now,
                steps=_build_steps(payload.steps) if payload.steps is not None else _copy_steps(current),
                transitions=(
                    _build_transitions(payload.transitions)
                    if payload.transitions is not None
                    else _copy_transitions(current)
                ),
            )
            if definition.is_active:
                self._ensure_valid(definition)

            await self._flush_new_version(definition)
            if definition.is_active:
                await self._deactivate_others(definition)

            logger.info(
                "workflow_definition_versioned",
                workflow_definition_id=definition.id,
                supersedes_id=current.id,
                version=definition.version,
            )
            return definition

        old_updated_at = current.updated_at
        claim = await self.db.execute(
            update(WorkflowDefinition)
            .where(WorkflowDefinition.id == definition_id, WorkflowDefinition.updated_at == old_updated_at)
            .values(updated_at=_now())
        )
        if claim.rowcount == 0:
            raise ConcurrentModificationError(
                f"Workflow definition {definition_id} was modified concurrently. Please retry."
            )
        await self.db.refresh(current, attribute_names=["updated_at"])

        if payload.name is not None:
            current.name = payload.name
        if payload.description is not None:
            current.description = payload.description

        # Clear first so replaced step ids don't collide with the unique constraint
        if payload.steps is not None:
            current.steps.clear()
        if payload.transitions is not None:
            current.transitions.clear()
        await self.db.flush()

        if payload.steps is not None:
            current.steps.extend(_build_steps(payload.steps))
        if payload.transitions is not None:
            current.transitions.extend(_build_transitions(payload.transitions))

        if current.is_active:
            self._ensure_valid(current)

        await self.db.flush()

        logger.info(
            "workflow_definition_updated",
            workflow_definition_id=current.id,
            version=current.version,
            steps=len(current.steps),
            transitions=len(current.transitions),
        )
        return current

    async def activate(self, definition_id: str) -> WorkflowDefinition:
        """Make a definition the form's active workflow (validated first)"""
        definition = await self.get_definition(definition_id)
        self._ensure_valid(definition)

        definition.is_active = True
        definition.updated_at = _now()
        await self.db.flush()
        await self._deactivate_others(definition)

        logger.info(
            "workflow_definition_activated",
            workflow_definition_id=definition.id,
            form_definition_id=definition.form_definition_id,
            version=definition.version,
        )
        return definition

    async def deactivate(self, definition_id: str) -> WorkflowDefinition:
        definition = await self.get_definition(definition_id)
        definition.is_active = False
        definition.updated_at = _now()
        await self.db.flush()

        logger.info("workflow_definition_deactivated", workflow_definition_id=definition.id)
        return definition

    async def delete_definition(self, definition_id: str):
        """Delete a definition no instance has used"""
        definition = await self.get_definition(definition_id)
        if await self.is_referenced(definition_id):
            raise ValueError(
                f"Workflow definition {definition_id} is used by workflow instances and cannot be deleted"
            )

        await self.db.execute(
            update(WorkflowDefinition)
            .where(WorkflowDefinition.supersedes_id == definition_id)
            .values(supersedes_id=None)
        )
        await self.db.delete(definition)
        await self.db.flush()

        logger.info("workflow_definition_deleted", workflow_definition_id=definition_id)

    async def validate(self, definition_id: str) -> List[str]:
        definition = await self.get_definition(definition_id)
        return validate_definition(definition)
