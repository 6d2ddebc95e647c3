"""
Workflow instance engine.

Creates one instance per request from a pinned definition version and moves
it through its steps. Start, Branch and End steps are routed by the engine
itself; Approval steps wait for people; Parallel steps open a group of
member steps that must all (or any one) complete before routing continues.

Engine methods only flush. The caller owns the transaction, and events are
held back until the caller has committed and calls publish_pending().
"""

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update
from sqlalchemy.orm import selectinload
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
import structlog

from requestflow.core.conditions import evaluate_condition
from requestflow.models.orm import (
    FormRequest,
    WorkflowDefinition,
    WorkflowInstance,
    WorkflowStep,
    WorkflowStepInstance,
    dumps,
    _now,
)
from requestflow.models.schemas import (
    EventType,
    OPEN_STEP_STATUSES,
    StepProgress,
    WorkflowInstanceStatus,
    WorkflowProgress,
    WorkflowStepAction,
    WorkflowStepInstanceStatus,
    WorkflowStepType,
)
from requestflow.config.settings import settings

logger = structlog.get_logger()

SECONDS_PER_DAY = 86400


class WorkflowError(Exception):
    """Base class for workflow configuration and runtime errors"""

    pass


class DefinitionNotFoundError(WorkflowError):
    """Raised when a workflow definition does not exist"""

    pass


class WorkflowConfigurationError(WorkflowError):
    """Raised when a definition cannot be run as configured"""

    pass


class NoStartStepError(WorkflowConfigurationError):
    """Raised when a definition has no Start step"""

    pass


class WorkflowValidationError(WorkflowError):
    """Raised when an invalid definition is activated"""

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.errors = errors or []


class ConcurrentModificationError(WorkflowError):
    """Raised when a definition is modified concurrently"""

    pass


def _instance_load_options():
    return (
        selectinload(WorkflowInstance.step_instances),
        selectinload(WorkflowInstance.workflow_definition).selectinload(WorkflowDefinition.steps),
        selectinload(WorkflowInstance.workflow_definition).selectinload(WorkflowDefinition.transitions),
    )


def required_approvals(step: WorkflowStep) -> int:
    """Distinct approvers an Approval step needs before it completes"""
    configuration = step.configuration_dict
    required = max(int(configuration.get("minimum_approvers", 1) or 1), 1)
    if configuration.get("requires_all_approvers"):
        required = max(required, len(step.assigned_roles_list))
    return required


def filter_field_updates(step: Optional[WorkflowStep], updates: Optional[Dict[str, Any]]) -> Tuple[Dict[str, Any], List[str]]:
    """
    Split submitted field updates into the ones a step may change and the rest.

    Fields configured as hidden or read-only at the step are dropped.
    """
    if not updates:
        return {}, []
    if step is None:
        return dict(updates), []

    field_configurations = step.field_configurations_dict
    allowed, dropped = {}, []
    for name, value in updates.items():
        config = field_configurations.get(name) or {}
        if config.get("is_read_only") or config.get("is_visible") is False:
            dropped.append(name)
        else:
            allowed[name] = value
    return allowed, dropped


def was_rejected(instance: WorkflowInstance) -> bool:
    """A terminal instance counts as rejected if any step was rejected"""
    return any(si.action == WorkflowStepAction.REJECTED.value for si in instance.step_instances)


def user_can_act_on_step(
    step: WorkflowStep,
    step_instance: Optional[WorkflowStepInstance],
    user_id: str,
    roles: Optional[List[str]],
) -> bool:
    roles = set(roles or [])
    if settings.admin_role in roles:
        return True
    if step_instance is not None and step_instance.assigned_to and step_instance.assigned_to == user_id:
        return True
    assigned_roles = step.assigned_roles_list
    if not assigned_roles:
        return True
    return bool(roles.intersection(assigned_roles))


class WorkflowEngine:
    """
    Manages workflow instances and their step state machine.
    """

    def __init__(self, db: AsyncSession, event_bus=None):
        self.db = db
        self.event_bus = event_bus
        self._pending_events: List[Tuple[EventType, dict]] = []

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def _queue_event(self, event_type: EventType, data: dict):
        self._pending_events.append((event_type, data))

    async def publish_pending(self):
        """Publish events queued since the last commit"""
        events, self._pending_events = self._pending_events, []
        if not self.event_bus:
            return
        for event_type, data in events:
            await self.event_bus.publish(event_type, data)

    def discard_pending(self):
        """Drop queued events after a rollback"""
        self._pending_events = []

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    async def _load_definition(self, definition_id: str) -> WorkflowDefinition:
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

    async def get_instance(self, instance_id: str) -> WorkflowInstance:
        """Get workflow instance by ID"""
        result = await self.db.execute(
            select(WorkflowInstance)
            .options(*_instance_load_options())
            .where(WorkflowInstance.id == instance_id)
        )
        instance = result.scalar_one_or_none()

        if not instance:
            raise ValueError(f"Workflow instance {instance_id} not found")

        return instance

    async def get_instance_for_request(self, form_request_id: str) -> Optional[WorkflowInstance]:
        result = await self.db.execute(
            select(WorkflowInstance)
            .options(*_instance_load_options())
            .where(WorkflowInstance.form_request_id == form_request_id)
        )
        return result.scalar_one_or_none()

    async def get_step_instances(self, instance_id: str) -> List[WorkflowStepInstance]:
        """Step instances in definition order"""
        instance = await self.get_instance(instance_id)
        order = {step.step_id: step.position for step in instance.workflow_definition.steps}
        return sorted(instance.step_instances, key=lambda si: order.get(si.step_id, len(order)))

    async def get_current_step_instance(self, instance_id: str) -> Optional[WorkflowStepInstance]:
        instance = await self.get_instance(instance_id)
        if not instance.current_step_id:
            return None
        return self._step_instance(instance, instance.current_step_id)

    async def _lock_instance(self, instance_id: str) -> Optional[WorkflowInstance]:
        """Load an instance for writing (row lock where the store supports it)"""
        await self.db.flush()
        result = await self.db.execute(
            select(WorkflowInstance)
            .options(*_instance_load_options())
            .where(WorkflowInstance.id == instance_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _claim_instance(self, instance: WorkflowInstance) -> bool:
        """
        Bump the instance version, only if nobody else did since we loaded it.
        A lost claim means another writer got there first.
        """
        old_version = instance.version
        result = await self.db.execute(
            update(WorkflowInstance)
            .where(WorkflowInstance.id == instance.id, WorkflowInstance.version == old_version)
            .values(version=old_version + 1)
        )

        if result.rowcount == 0:
            logger.warning(
                "concurrent_modification_detected",
                workflow_instance_id=instance.id,
                expected_version=old_version,
            )
            return False

        await self.db.refresh(instance, attribute_names=["version"])
        return True

    async def _request_field_values(self, form_request_id: str) -> Dict[str, Any]:
        result = await self.db.execute(select(FormRequest).where(FormRequest.id == form_request_id))
        form_request = result.scalar_one_or_none()
        return form_request.field_values_dict if form_request else {}

    @staticmethod
    def _step_instance(instance: WorkflowInstance, step_id: str) -> Optional[WorkflowStepInstance]:
        for step_instance in instance.step_instances:
            if step_instance.step_id == step_id:
                return step_instance
        return None

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    async def start_workflow(
        self,
        form_request_id: str,
        definition_id: str,
        actor_id: str,
        actor_name: str,
    ) -> WorkflowInstance:
        """
        Create an instance of a definition for a request and run it up to
        the first step that waits for a person.
        """
        definition = await self._load_definition(definition_id)

        start_steps = definition.steps_of_type(WorkflowStepType.START.value)
        if not start_steps:
            raise NoStartStepError(f"Workflow definition {definition_id} has no start step")
        if len(start_steps) > 1:
            raise WorkflowConfigurationError(
                f"Workflow definition {definition_id} has {len(start_steps)} start steps; exactly one is required"
            )
        start_step = start_steps[0]

        now = _now()
        instance = WorkflowInstance(
            form_request_id=form_request_id,
            workflow_definition_id=definition.id,
            current_step_id=start_step.step_id,
            status=WorkflowInstanceStatus.IN_PROGRESS.value,
            started_at=now,
            version=1,
        )
        instance.workflow_definition = definition
        instance.set_active_steps([start_step.step_id])
        instance.step_instances = [
            WorkflowStepInstance(
                step_id=step.step_id,
                status=(
                    WorkflowStepInstanceStatus.IN_PROGRESS.value
                    if step is start_step
                    else WorkflowStepInstanceStatus.PENDING.value
                ),
                started_at=now if step is start_step else None,
            )
            for step in definition.steps
        ]
        self.db.add(instance)
        await self.db.flush()

        logger.info(
            "workflow_started",
            workflow_instance_id=instance.id,
            form_request_id=form_request_id,
            workflow_definition_id=definition.id,
            definition_version=definition.version,
            steps=len(definition.steps),
        )
        self._queue_event(
            EventType.WORKFLOW_STARTED,
            {
                "workflow_instance_id": instance.id,
                "form_request_id": form_request_id,
                "workflow_definition_id": definition.id,
                "workflow_name": definition.name,
            },
        )

        field_values = await self._request_field_values(form_request_id)
        await self._run_step(instance, start_step, field_values, actor_id, actor_name, hops=0)

        await self.db.flush()
        return instance

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    async def complete_step(
        self,
        instance_id: str,
        step_id: str,
        actor_id: str,
        actor_name: str,
        action: WorkflowStepAction,
        comments: Optional[str] = None,
        field_updates: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Complete an active step and route the workflow onward.

        Returns False, without changing anything, if the instance is not in
        progress, the step is not active and open, or another writer got to
        the instance first.
        """
        action = WorkflowStepAction(action)

        instance = await self._lock_instance(instance_id)
        if instance is None:
            logger.warning("step_completion_rejected", workflow_instance_id=instance_id, reason="instance_not_found")
            return False

        if instance.status != WorkflowInstanceStatus.IN_PROGRESS.value:
            logger.warning(
                "step_completion_rejected",
                workflow_instance_id=instance_id,
                step_id=step_id,
                reason="instance_not_in_progress",
                status=instance.status,
            )
            return False

        definition = instance.workflow_definition
        step = definition.get_step(step_id)
        step_instance = self._step_instance(instance, step_id)

        if step is None or step_instance is None or step_instance.status not in OPEN_STEP_STATUSES:
            logger.warning(
                "step_completion_rejected",
                workflow_instance_id=instance_id,
                step_id=step_id,
                reason="step_not_open",
                status=step_instance.status if step_instance else None,
            )
            return False

        if step_id not in instance.active_step_ids_list:
            logger.warning(
                "step_completion_rejected",
                workflow_instance_id=instance_id,
                step_id=step_id,
                reason="step_not_active",
                active_step_ids=instance.active_step_ids_list,
            )
            return False

        if action == WorkflowStepAction.NONE:
            logger.warning("step_completion_rejected", workflow_instance_id=instance_id, step_id=step_id, reason="no_action")
            return False

        if action == WorkflowStepAction.SKIPPED and step.is_required:
            logger.warning("step_completion_rejected", workflow_instance_id=instance_id, step_id=step_id, reason="step_is_required")
            return False

        if action == WorkflowStepAction.COMPLETED and step.step_type == WorkflowStepType.APPROVAL.value:
            # Completing an approval step is an approval and counts toward its quorum
            action = WorkflowStepAction.APPROVED

        approvals = step_instance.approvals_list
        if action == WorkflowStepAction.APPROVED and any(a.get("actor_id") == actor_id for a in approvals):
            logger.warning(
                "step_completion_rejected",
                workflow_instance_id=instance_id,
                step_id=step_id,
                reason="duplicate_approver",
                actor_id=actor_id,
            )
            return False

        if not await self._claim_instance(instance):
            return False

        field_values = await self._request_field_values(instance.form_request_id)
        field_values.update(field_updates or {})

        snapshot = step_instance.field_values_dict
        snapshot.update(field_updates or {})
        step_instance.field_values = dumps(snapshot)

        if action == WorkflowStepAction.APPROVED:
            approvals.append({
                "actor_id": actor_id,
                "actor_name": actor_name,
                "approved_at": _now(),
                "comments": comments,
            })
            step_instance.approvals = dumps(approvals)

            required = required_approvals(step)
            if step.step_type == WorkflowStepType.APPROVAL.value and len(approvals) < required:
                step_instance.status = WorkflowStepInstanceStatus.IN_PROGRESS.value
                await self.db.flush()
                logger.info(
                    "approval_recorded",
                    workflow_instance_id=instance.id,
                    step_id=step_id,
                    approvals=len(approvals),
                    required=required,
                )
                return True

        completed_status = (
            WorkflowStepInstanceStatus.SKIPPED
            if action == WorkflowStepAction.SKIPPED
            else WorkflowStepInstanceStatus.COMPLETED
        )
        self._close_step(instance, step, step_instance, completed_status, action, actor_id, actor_name, comments)

        if action == WorkflowStepAction.REJECTED:
            self._finish(instance, WorkflowInstanceStatus.COMPLETED, actor_id, actor_name)
        else:
            parallel_step = self._enclosing_parallel(instance, step_id)
            if parallel_step is not None:
                await self._on_parallel_member_done(instance, parallel_step, field_values, actor_id, actor_name)
            else:
                await self._advance(instance, step, field_values, actor_id, actor_name, hops=0)

        await self.db.flush()
        return True

    async def cancel_workflow(self, instance_id: str, actor_id: str, actor_name: str, reason: str) -> bool:
        """Cancel an in-progress instance; open steps become Skipped"""
        instance = await self._lock_instance(instance_id)
        if instance is None or instance.status != WorkflowInstanceStatus.IN_PROGRESS.value:
            logger.warning(
                "workflow_cancel_rejected",
                workflow_instance_id=instance_id,
                status=instance.status if instance else None,
            )
            return False

        if not await self._claim_instance(instance):
            return False

        self._finish(instance, WorkflowInstanceStatus.CANCELLED, actor_id, actor_name, reason=reason)
        await self.db.flush()
        return True

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    def _next_step_id(self, definition: WorkflowDefinition, step: WorkflowStep, field_values: Dict[str, Any]) -> Optional[str]:
        """
        Branch conditions first (Branch steps), then the first matching
        conditional transition, then the first unconditional one.
        """
        if step.step_type == WorkflowStepType.BRANCH.value:
            for condition in step.configuration_dict.get("branch_conditions") or []:
                if evaluate_condition(condition, field_values):
                    return condition.get("target_step_id")

        default = None
        for transition in definition.transitions_from(step.step_id):
            condition = transition.condition_dict
            if condition:
                if evaluate_condition(condition, field_values):
                    return transition.to_step_id
            elif default is None:
                default = transition.to_step_id

        return default

    async def get_next_step_id(
        self,
        instance_id: str,
        from_step_id: str,
        field_values: Optional[Dict[str, Any]] = None,
    ) -> Optional[str]:
        """Where the workflow would go from a step, given the request values"""
        instance = await self.get_instance(instance_id)
        step = instance.workflow_definition.get_step(from_step_id)
        if step is None:
            return None

        values = await self._request_field_values(instance.form_request_id)
        values.update(field_values or {})
        return self._next_step_id(instance.workflow_definition, step, values)

    async def _advance(
        self,
        instance: WorkflowInstance,
        step: WorkflowStep,
        field_values: Dict[str, Any],
        actor_id: str,
        actor_name: str,
        hops: int,
    ):
        definition = instance.workflow_definition
        next_step_id = self._next_step_id(definition, step, field_values)

        if next_step_id is None:
            self._finish(instance, WorkflowInstanceStatus.COMPLETED, actor_id, actor_name)
            return

        next_step = definition.get_step(next_step_id)
        if next_step is None:
            self._fail(instance, f"Step '{step.step_id}' routes to unknown step '{next_step_id}'")
            return

        await self._run_step(instance, next_step, field_values, actor_id, actor_name, hops + 1)

    async def _run_step(
        self,
        instance: WorkflowInstance,
        step: WorkflowStep,
        field_values: Dict[str, Any],
        actor_id: str,
        actor_name: str,
        hops: int,
    ):
        """Make a step current; steps the engine routes itself are completed right away"""
        definition = instance.workflow_definition

        if hops > 2 * len(definition.steps) + 1:
            self._fail(instance, f"Routing loop detected at step '{step.step_id}'")
            return

        step_instance = self._activate(instance, step)
        instance.current_step_id = step.step_id
        instance.set_active_steps([step.step_id])

        if step.step_type == WorkflowStepType.START.value:
            self._close_step(
                instance, step, step_instance, WorkflowStepInstanceStatus.COMPLETED,
                WorkflowStepAction.COMPLETED, actor_id, actor_name, "Auto-completed Start step",
            )
            await self._advance(instance, step, field_values, actor_id, actor_name, hops)

        elif step.step_type == WorkflowStepType.BRANCH.value:
            self._close_step(
                instance, step, step_instance, WorkflowStepInstanceStatus.COMPLETED,
                WorkflowStepAction.COMPLETED, actor_id, actor_name, "Auto-routed Branch step",
            )
            await self._advance(instance, step, field_values, actor_id, actor_name, hops)

        elif step.step_type == WorkflowStepType.END.value:
            self._close_step(
                instance, step, step_instance, WorkflowStepInstanceStatus.COMPLETED,
                WorkflowStepAction.COMPLETED, actor_id, actor_name, "Reached End step",
            )
            self._finish(instance, WorkflowInstanceStatus.COMPLETED, actor_id, actor_name)

        elif step.step_type == WorkflowStepType.PARALLEL.value:
            await self._open_parallel(instance, step, field_values, actor_id, actor_name, hops)

        else:
            self._queue_step_activated(instance, step)

    def _activate(self, instance: WorkflowInstance, step: WorkflowStep) -> WorkflowStepInstance:
        """Put a step instance In Progress, reopening it if a cycle comes back to it"""
        step_instance = self._step_instance(instance, step.step_id)
        if step_instance is None:
            step_instance = WorkflowStepInstance(step_id=step.step_id, status=WorkflowStepInstanceStatus.PENDING.value)
            instance.step_instances.append(step_instance)

        if step_instance.status != WorkflowStepInstanceStatus.PENDING.value and step_instance.status != WorkflowStepInstanceStatus.IN_PROGRESS.value:
            # revisited through an explicit cycle
            step_instance.completed_at = None
            step_instance.completed_by = None
            step_instance.completed_by_name = None
            step_instance.action = None
            step_instance.comments = None
            step_instance.approvals = "[]"
            step_instance.started_at = None

        step_instance.status = WorkflowStepInstanceStatus.IN_PROGRESS.value
        if step_instance.started_at is None:
            step_instance.started_at = _now()
        return step_instance

    def _queue_step_activated(self, instance: WorkflowInstance, step: WorkflowStep):
        logger.info(
            "workflow_step_activated",
            workflow_instance_id=instance.id,
            step_id=step.step_id,
            step_type=step.step_type,
        )
        self._queue_event(
            EventType.WORKFLOW_STEP_ACTIVATED,
            {
                "workflow_instance_id": instance.id,
                "form_request_id": instance.form_request_id,
                "step_id": step.step_id,
                "step_name": step.name,
                "step_type": step.step_type,
                "assigned_roles": step.assigned_roles_list,
            },
        )

    def _close_step(
        self,
        instance: WorkflowInstance,
        step: WorkflowStep,
        step_instance: WorkflowStepInstance,
        status: WorkflowStepInstanceStatus,
        action: WorkflowStepAction,
        actor_id: str,
        actor_name: str,
        comments: Optional[str],
    ):
        step_instance.status = status.value
        step_instance.action = action.value
        step_instance.completed_at = _now()
        step_instance.completed_by = actor_id
        step_instance.completed_by_name = actor_name
        step_instance.comments = comments

        logger.info(
            "workflow_step_completed",
            workflow_instance_id=instance.id,
            step_id=step.step_id,
            step_type=step.step_type,
            action=action.value,
            completed_by=actor_id,
        )
        self._queue_event(
            EventType.WORKFLOW_STEP_COMPLETED,
            {
                "workflow_instance_id": instance.id,
                "form_request_id": instance.form_request_id,
                "step_id": step.step_id,
                "step_name": step.name,
                "action": action.value,
                "completed_by": actor_id,
                "completed_by_name": actor_name,
                "comments": comments,
            },
        )

    # ------------------------------------------------------------------
    # Parallel groups
    # ------------------------------------------------------------------

    def _enclosing_parallel(self, instance: WorkflowInstance, step_id: str) -> Optional[WorkflowStep]:
        """The open Parallel step whose group contains step_id, if any"""
        current = instance.workflow_definition.get_step(instance.current_step_id) if instance.current_step_id else None
        if current is None or current.step_type != WorkflowStepType.PARALLEL.value:
            return None
        if step_id in (current.configuration_dict.get("parallel_step_ids") or []):
            return current
        return None

    async def _open_parallel(
        self,
        instance: WorkflowInstance,
        step: WorkflowStep,
        field_values: Dict[str, Any],
        actor_id: str,
        actor_name: str,
        hops: int,
    ):
        definition = instance.workflow_definition
        members = [m for m in step.configuration_dict.get("parallel_step_ids") or [] if definition.get_step(m)]

        self._queue_step_activated(instance, step)

        if not members:
            parallel_instance = self._step_instance(instance, step.step_id)
            self._close_step(
                instance, step, parallel_instance, WorkflowStepInstanceStatus.COMPLETED,
                WorkflowStepAction.COMPLETED, actor_id, actor_name, "Parallel step has no members",
            )
            await self._advance(instance, step, field_values, actor_id, actor_name, hops)
            return

        for member_id in members:
            member = definition.get_step(member_id)
            self._activate(instance, member)
            self._queue_step_activated(instance, member)

        instance.current_step_id = step.step_id
        instance.set_active_steps(members)

    async def _on_parallel_member_done(
        self,
        instance: WorkflowInstance,
        parallel_step: WorkflowStep,
        field_values: Dict[str, Any],
        actor_id: str,
        actor_name: str,
    ):
        configuration = parallel_step.configuration_dict
        members = configuration.get("parallel_step_ids") or []
        require_all = configuration.get("require_all_parallel_steps", True)

        finished_statuses = (WorkflowStepInstanceStatus.COMPLETED.value, WorkflowStepInstanceStatus.SKIPPED.value)
        finished = [
            member_id for member_id in members
            if (self._step_instance(instance, member_id) is not None
                and self._step_instance(instance, member_id).status in finished_statuses)
        ]
        satisfied = len(finished) == len(members) if require_all else len(finished) >= 1

        if not satisfied:
            instance.set_active_steps([m for m in instance.active_step_ids_list if m not in finished])
            logger.info(
                "parallel_group_waiting",
                workflow_instance_id=instance.id,
                parallel_step_id=parallel_step.step_id,
                finished=len(finished),
                members=len(members),
            )
            return

        for member_id in members:
            member_instance = self._step_instance(instance, member_id)
            if member_instance is not None and member_instance.status in OPEN_STEP_STATUSES:
                member_instance.status = WorkflowStepInstanceStatus.SKIPPED.value
                member_instance.completed_at = _now()

        parallel_instance = self._step_instance(instance, parallel_step.step_id)
        self._close_step(
            instance, parallel_step, parallel_instance, WorkflowStepInstanceStatus.COMPLETED,
            WorkflowStepAction.COMPLETED, actor_id, actor_name, "Parallel steps completed",
        )
        await self._advance(instance, parallel_step, field_values, actor_id, actor_name, hops=0)

    # ------------------------------------------------------------------
    # Terminal states
    # ------------------------------------------------------------------

    def _finish(
        self,
        instance: WorkflowInstance,
        status: WorkflowInstanceStatus,
        actor_id: Optional[str],
        actor_name: Optional[str],
        reason: Optional[str] = None,
    ):
        now = _now()
        for step_instance in instance.step_instances:
            if step_instance.status in OPEN_STEP_STATUSES:
                step_instance.status = WorkflowStepInstanceStatus.SKIPPED.value

        instance.status = status.value
        instance.completed_at = now
        instance.completed_by = actor_id
        instance.completed_by_name = actor_name
        instance.set_active_steps([])
        if reason:
            instance.failure_reason = reason

        rejected = was_rejected(instance)
        logger.info(
            "workflow_finished",
            workflow_instance_id=instance.id,
            form_request_id=instance.form_request_id,
            status=status.value,
            rejected=rejected,
            reason=reason,
        )

        event_type = {
            WorkflowInstanceStatus.COMPLETED: EventType.WORKFLOW_COMPLETED,
            WorkflowInstanceStatus.CANCELLED: EventType.WORKFLOW_CANCELLED,
            WorkflowInstanceStatus.FAILED: EventType.WORKFLOW_FAILED,
        }[status]
        self._queue_event(
            event_type,
            {
                "workflow_instance_id": instance.id,
                "form_request_id": instance.form_request_id,
                "status": status.value,
                "approved": status == WorkflowInstanceStatus.COMPLETED and not rejected,
                "completed_by": actor_id,
                "completed_by_name": actor_name,
                "reason": reason,
            },
        )

    def _fail(self, instance: WorkflowInstance, reason: str):
        logger.error(
            "workflow_routing_failed",
            workflow_instance_id=instance.id,
            current_step_id=instance.current_step_id,
            reason=reason,
        )
        self._finish(instance, WorkflowInstanceStatus.FAILED, None, None, reason=reason)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_workflow_progress(self, instance_id: str) -> WorkflowProgress:
        """
        Summary for display. Start and End steps are listed but not counted.
        """
        instance = await self.get_instance(instance_id)
        definition = instance.workflow_definition
        now = _now()

        ordered = (
            definition.steps_of_type(WorkflowStepType.START.value)
            + [s for s in definition.steps if s.step_type not in (WorkflowStepType.START.value, WorkflowStepType.END.value)]
            + definition.steps_of_type(WorkflowStepType.END.value)
        )
        counted = [s for s in ordered if s.step_type not in (WorkflowStepType.START.value, WorkflowStepType.END.value)]

        steps = []
        for step in ordered:
            step_instance = self._step_instance(instance, step.step_id)
            if step_instance is None:
                continue
            days_in_step = days_between(step_instance.started_at, step_instance.completed_at or now)
            steps.append(StepProgress(
                step_id=step.step_id,
                name=step.name,
                step_type=step.step_type,
                status=step_instance.status,
                is_current=step.step_id == instance.current_step_id,
                assigned_to=step_instance.assigned_to,
                assigned_roles=step.assigned_roles_list,
                started_at=step_instance.started_at,
                completed_at=step_instance.completed_at,
                completed_by_name=step_instance.completed_by_name,
                action=step_instance.action,
                comments=step_instance.comments,
                days_in_step=days_in_step,
            ))

        completed = sum(
            1 for step in counted
            if (self._step_instance(instance, step.step_id) is not None
                and self._step_instance(instance, step.step_id).status == WorkflowStepInstanceStatus.COMPLETED.value)
        )
        total = len(counted)

        current_step = definition.get_step(instance.current_step_id) if instance.current_step_id else None
        current_instance = self._step_instance(instance, instance.current_step_id) if instance.current_step_id else None

        days_in_current = None
        if instance.status == WorkflowInstanceStatus.IN_PROGRESS.value and current_instance and current_instance.started_at:
            days_in_current = days_between(current_instance.started_at, now)

        return WorkflowProgress(
            workflow_instance_id=instance.id,
            form_request_id=instance.form_request_id,
            status=instance.status,
            current_step_id=instance.current_step_id,
            current_step_name=current_step.name if current_step else None,
            active_step_ids=instance.active_step_ids_list,
            total_steps=total,
            completed_steps=completed,
            percent_complete=round(completed / total * 100, 1) if total else 0.0,
            started_at=instance.started_at,
            completed_at=instance.completed_at,
            days_in_current_step=days_in_current,
            is_stalled=days_in_current is not None and days_in_current > settings.workflow_stall_threshold_days,
            steps=steps,
        )

    async def get_pending_steps_for_user(self, user_id: str, roles: Optional[List[str]] = None) -> List[WorkflowStepInstance]:
        """Active Approval steps the user may act on, oldest first"""
        result = await self.db.execute(
            select(WorkflowStepInstance)
            .join(WorkflowInstance, WorkflowStepInstance.workflow_instance_id == WorkflowInstance.id)
            .options(
                selectinload(WorkflowStepInstance.workflow_instance)
                .selectinload(WorkflowInstance.workflow_definition)
                .selectinload(WorkflowDefinition.steps)
            )
            .where(
                WorkflowInstance.status == WorkflowInstanceStatus.IN_PROGRESS.value,
                WorkflowStepInstance.status == WorkflowStepInstanceStatus.IN_PROGRESS.value,
            )
            .order_by(WorkflowStepInstance.started_at)
        )

        pending = []
        for step_instance in result.scalars().all():
            instance = step_instance.workflow_instance
            step = instance.workflow_definition.get_step(step_instance.step_id)
            if step is None or step.step_type != WorkflowStepType.APPROVAL.value:
                continue
            if step_instance.step_id not in instance.active_step_ids_list:
                continue
            if user_can_act_on_step(step, step_instance, user_id, roles):
                pending.append(step_instance)

        logger.debug("pending_steps_loaded", user_id=user_id, count=len(pending))
        return pending

    async def can_user_access_step(self, user_id: str, roles: Optional[List[str]], instance_id: str, step_id: str) -> bool:
        try:
            instance = await self.get_instance(instance_id)
        except ValueError:
            return False

        step = instance.workflow_definition.get_step(step_id)
        if step is None:
            return False
        return user_can_act_on_step(step, self._step_instance(instance, step_id), user_id, roles)


def days_between(start: Optional[float], end: Optional[float] = None) -> Optional[int]:
    """Whole days between two epoch timestamps (end defaults to now)"""
    if start is None:
        return None
    end = end if end is not None else datetime.now().timestamp()
    return int((end - start) // SECONDS_PER_DAY)
