"""
Request lifecycle manager.

Owns FormRequest status: Pending -> Approved/Rejected -> Applied/Failed,
with Failed -> Approved on retry. Approved requests are applied to their
target table through the TargetDataAccessor. Every status change writes one
history row.

The store and the target database are separate transactions. The Approved
decision is committed before the target is touched; if the process dies in
between, the request is left Approved without a record key and the
reconciliation queries pick it up.
"""

import asyncio
import weakref
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from typing import Any, Dict, List, Optional, Tuple
import structlog

from requestflow.core.conditions import convert_field_values, format_value_for_display
from requestflow.core.definition_store import DefinitionStore
from requestflow.core.forms import FormService
from requestflow.core.history import RequestHistory
from requestflow.core.target_data import NoRowsAffectedError, TargetDataAccessor, render_key
from requestflow.core.workflow_engine import (
    WorkflowEngine,
    days_between,
    filter_field_updates,
    user_can_act_on_step,
    was_rejected,
)
from requestflow.models.orm import FormDefinition, FormRequest, WorkflowInstance, dumps, _now
from requestflow.models.schemas import (
    EventType,
    OPEN_STEP_STATUSES,
    FormRequestChangeType,
    FormRequestCreate,
    REQUEST_STATUS_TRANSITIONS,
    RequestStatus,
    RequestType,
    WorkflowActionResult,
    WorkflowInstanceStatus,
    WorkflowStepAction,
    WorkflowStepType,
)
from requestflow.config.settings import settings

logger = structlog.get_logger()


class ApplyError(Exception):
    """Raised when an approved request cannot be written to its target table"""

    pass


class InsertFailedError(ApplyError):
    """Raised when an INSERT wrote nothing or the target refused it"""

    pass


class NoPrimaryKeyError(ApplyError):
    """Raised when an UPDATE/DELETE target table has no primary key"""

    pass


class MissingKeyValueError(ApplyError):
    """Raised when original values lack a primary-key column"""

    pass


class InvalidRequestTransitionError(Exception):
    """Raised when a status change is not allowed by the state machine"""

    pass


WORKFLOW_ACTIONS = {
    "approve": WorkflowStepAction.APPROVED,
    "reject": WorkflowStepAction.REJECTED,
    "complete": WorkflowStepAction.COMPLETED,
    "skip": WorkflowStepAction.SKIPPED,
}

# One writer per workflow instance inside this process
_instance_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()


def instance_lock(instance_id: str) -> asyncio.Lock:
    lock = _instance_locks.get(instance_id)
    if lock is None:
        lock = asyncio.Lock()
        _instance_locks[instance_id] = lock
    return lock


def _status_label(status: str) -> str:
    return RequestStatus(status).value.capitalize()


class RequestService:
    """
    Drives requests through their lifecycle and applies approved changes.
    """

    def __init__(self, db: AsyncSession, target_data: TargetDataAccessor, event_bus=None):
        self.db = db
        self.target_data = target_data
        self.event_bus = event_bus
        self.engine = WorkflowEngine(db, event_bus)
        self.history = RequestHistory(db)
        self.definitions = DefinitionStore(db)
        self.forms = FormService(db)
        self._pending_events: List[Tuple[EventType, dict]] = []

    # ------------------------------------------------------------------
    # Transactions and events
    # ------------------------------------------------------------------

    def _queue_event(self, event_type: EventType, form_request: FormRequest, **extra):
        data = {
            "form_request_id": form_request.id,
            "form_definition_id": form_request.form_definition_id,
            "request_type": form_request.request_type,
            "status": form_request.status,
            "requested_by": form_request.requested_by,
            "requested_by_name": form_request.requested_by_name,
        }
        data.update(extra)
        self._pending_events.append((event_type, data))

    async def _commit(self):
        """Commit, then publish what the committed work produced"""
        await self.db.commit()
        await self.engine.publish_pending()

        events, self._pending_events = self._pending_events, []
        if self.event_bus:
            for event_type, data in events:
                await self.event_bus.publish(event_type, data)

    async def _rollback(self):
        await self.db.rollback()
        self.engine.discard_pending()
        self._pending_events = []

    def _set_status(self, form_request: FormRequest, new_status: RequestStatus):
        current = RequestStatus(form_request.status)
        if new_status not in REQUEST_STATUS_TRANSITIONS.get(current, []):
            raise InvalidRequestTransitionError(
                f"Invalid transition from {current.value} to {new_status.value}"
            )
        form_request.status = new_status.value
        form_request.updated_at = _now()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_request(self, form_request_id: str) -> FormRequest:
        """Get request by ID"""
        result = await self.db.execute(select(FormRequest).where(FormRequest.id == form_request_id))
        form_request = result.scalar_one_or_none()

        if not form_request:
            raise ValueError(f"Request {form_request_id} not found")

        return form_request

    async def list_requests(
        self,
        status: Optional[RequestStatus] = None,
        form_definition_id: Optional[str] = None,
        requested_by: Optional[str] = None,
        limit: int = 100,
    ) -> List[FormRequest]:
        query = select(FormRequest).order_by(FormRequest.requested_at.desc()).limit(limit)

        if status:
            query = query.where(FormRequest.status == RequestStatus(status).value)
        if form_definition_id:
            query = query.where(FormRequest.form_definition_id == form_definition_id)
        if requested_by:
            query = query.where(FormRequest.requested_by == requested_by)

        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def get_history(self, form_request_id: str):
        await self.get_request(form_request_id)
        return await self.history.list_for_request(form_request_id)

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create_request(
        self,
        payload: FormRequestCreate,
        actor_id: Optional[str] = None,
        actor_name: Optional[str] = None,
    ) -> FormRequest:
        """
        Create a request. If the form has an active workflow it is started in
        the same transaction and the request waits Pending; otherwise the
        request is Approved straight away and applied by a separate call.
        """
        actor_id = actor_id or payload.requested_by
        actor_name = actor_name or payload.requested_by_name or actor_id

        form = await self.forms.get_form(payload.form_definition_id)
        definition = await self.definitions.get_active_definition(form.id)

        now = _now()
        form_request = FormRequest(
            form_definition_id=form.id,
            request_type=payload.request_type.value,
            field_values=dumps(payload.field_values),
            original_values=dumps(payload.original_values),
            status=RequestStatus.PENDING.value if definition else RequestStatus.APPROVED.value,
            requested_by=payload.requested_by,
            requested_by_name=payload.requested_by_name,
            requested_at=now,
            comments=payload.comments,
            updated_at=now,
        )
        if not definition:
            form_request.approved_by = settings.system_actor_id
            form_request.approved_by_name = settings.system_actor_name
            form_request.approved_at = now

        self.db.add(form_request)
        await self.db.flush()

        instance = None
        if definition:
            instance = await self.engine.start_workflow(form_request.id, definition.id, actor_id, actor_name)
            form_request.workflow_instance_id = instance.id

        await self.history.append(
            form_request.id,
            FormRequestChangeType.CREATED,
            None,
            {
                "RequestType": form_request.request_type,
                "FieldValues": payload.field_values,
                "OriginalValues": payload.original_values,
                "Status": _status_label(form_request.status),
                "Comments": payload.comments,
                "WorkflowInstanceId": form_request.workflow_instance_id,
            },
            actor_id,
            actor_name,
            "Request created and workflow started" if definition else "Request created (no workflow)",
        )
        self._queue_event(EventType.REQUEST_CREATED, form_request, workflow_instance_id=form_request.workflow_instance_id)

        logger.info(
            "request_created",
            form_request_id=form_request.id,
            form_definition_id=form.id,
            request_type=form_request.request_type,
            status=form_request.status,
            workflow_instance_id=form_request.workflow_instance_id,
        )
        await self._commit()

        # A workflow with no gates can finish during start
        if instance is not None and instance.status == WorkflowInstanceStatus.COMPLETED.value:
            await self._resolve_completed_workflow(form_request, instance, actor_id, actor_name, None)

        return form_request

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    async def _mark_approved(self, form_request: FormRequest, actor_id: str, actor_name: str, comments: Optional[str]):
        self._set_status(form_request, RequestStatus.APPROVED)
        form_request.approved_by = actor_id
        form_request.approved_by_name = actor_name
        form_request.approved_at = _now()

        await self.history.append(
            form_request.id,
            FormRequestChangeType.APPROVED,
            {"Status": "Pending"},
            {"Status": "Approved", "ApprovedBy": actor_id, "ApprovedByName": actor_name},
            actor_id,
            actor_name,
            comments or "Request approved",
        )
        self._queue_event(EventType.REQUEST_APPROVED, form_request, approved_by=actor_id, approved_by_name=actor_name)
        logger.info("request_approved", form_request_id=form_request.id, approved_by=actor_id)

    async def _mark_rejected(self, form_request: FormRequest, actor_id: str, actor_name: str, reason: str):
        self._set_status(form_request, RequestStatus.REJECTED)
        form_request.rejection_reason = reason

        await self.history.append(
            form_request.id,
            FormRequestChangeType.REJECTED,
            {"Status": "Pending"},
            {"Status": "Rejected", "RejectionReason": reason},
            actor_id,
            actor_name,
            f"Request rejected: {reason}",
        )
        self._queue_event(EventType.REQUEST_REJECTED, form_request, rejected_by=actor_id, reason=reason)
        logger.info("request_rejected", form_request_id=form_request.id, rejected_by=actor_id, reason=reason)

    async def approve_request(
        self,
        form_request_id: str,
        actor_id: str,
        actor_name: str,
        comments: Optional[str] = None,
    ) -> Optional[FormRequest]:
        """
        Approve a Pending request that has no workflow in progress, then apply it.
        Returns None if the request is not in a state that can be approved.
        """
        form_request = await self.get_request(form_request_id)

        if form_request.status != RequestStatus.PENDING.value:
            logger.warning("approve_invalid_status", form_request_id=form_request_id, status=form_request.status)
            return None

        instance = await self.engine.get_instance_for_request(form_request_id)
        if instance is not None and instance.status == WorkflowInstanceStatus.IN_PROGRESS.value:
            logger.warning(
                "approve_workflow_in_progress",
                form_request_id=form_request_id,
                workflow_instance_id=instance.id,
            )
            return None

        await self._mark_approved(form_request, actor_id, actor_name, comments)
        await self._commit()

        return await self._apply(form_request, actor_id, actor_name)

    async def reject_request(
        self,
        form_request_id: str,
        actor_id: str,
        actor_name: str,
        reason: str,
    ) -> Optional[FormRequest]:
        """Reject a Pending request; an in-progress workflow is cancelled"""
        if not reason or not reason.strip():
            raise ValueError("A rejection reason is required")

        form_request = await self.get_request(form_request_id)
        if form_request.status != RequestStatus.PENDING.value:
            logger.warning("reject_invalid_status", form_request_id=form_request_id, status=form_request.status)
            return None

        if not form_request.workflow_instance_id:
            await self._mark_rejected(form_request, actor_id, actor_name, reason)
            await self._commit()
            return form_request

        async with instance_lock(form_request.workflow_instance_id):
            instance = await self.engine.get_instance(form_request.workflow_instance_id)
            if instance.status == WorkflowInstanceStatus.IN_PROGRESS.value:
                cancelled = await self.engine.cancel_workflow(
                    instance.id, actor_id, actor_name, f"Request rejected: {reason}"
                )
                if not cancelled:
                    await self._rollback()
                    return None

            await self._mark_rejected(form_request, actor_id, actor_name, reason)
            await self._commit()

        return form_request

    # ------------------------------------------------------------------
    # Apply
    # ------------------------------------------------------------------

    async def derive_key_filter(
        self,
        form: FormDefinition,
        original_values: Dict[str, Any],
        operation: str,
    ) -> Dict[str, Any]:
        """
        WHERE filter for UPDATE/DELETE: exactly the table's primary-key
        columns, taken from the original snapshot.
        """
        pk_columns = await self.target_data.primary_key_columns(
            form.connection_name, form.table_name, form.schema_name
        )
        if not pk_columns:
            raise NoPrimaryKeyError(
                f"No primary key found for table {form.qualified_table_name}. Cannot perform {operation} operation."
            )

        column_types = await self.target_data.column_types(
            form.connection_name, form.table_name, form.schema_name
        )
        converted = convert_field_values(original_values, column_types)
        where = {}
        for column in pk_columns:
            if column not in converted:
                raise MissingKeyValueError(
                    f"Primary key column '{column}' not found in original values. Cannot perform {operation} operation."
                )
            where[column] = converted[column]
        return where

    async def _execute_change(self, form_request: FormRequest, form: FormDefinition) -> str:
        """Write the request to its target table and return the record key"""
        operation = form_request.request_type
        column_types = await self.target_data.column_types(
            form.connection_name, form.table_name, form.schema_name
        )
        values = convert_field_values(form_request.field_values_dict, column_types)

        if operation == RequestType.INSERT.value:
            try:
                result = await self.target_data.insert(form.connection_name, form.table_name, form.schema_name, values)
            except Exception as e:
                logger.error(
                    "target_insert_rejected",
                    form_request_id=form_request.id,
                    field_values=render_key(values),
                    error=str(e),
                )
                raise InsertFailedError(f"INSERT operation failed: {e}") from e

            if not result.ok:
                raise InsertFailedError("Failed to apply INSERT operation to target database")
            if result.generated_key is not None:
                return str(result.generated_key)
            return render_key(values)

        where = await self.derive_key_filter(form, form_request.original_values_dict, operation)
        logger.info(
            "target_change_filter",
            form_request_id=form_request.id,
            operation=operation,
            connection=form.connection_name,
            table=form.qualified_table_name,
            where=render_key(where),
        )

        try:
            if operation == RequestType.UPDATE.value:
                await self.target_data.update(
                    form.connection_name, form.table_name, form.schema_name, values, where
                )
            else:
                deleted = await self.target_data.delete(form.connection_name, form.table_name, form.schema_name, where)
                if not deleted:
                    raise NoRowsAffectedError(f"No records found to delete. WHERE conditions: {render_key(where)}")
        except Exception as e:
            raise ApplyError(f"{operation} operation failed: {e}") from e

        return render_key(where)

    async def _apply(
        self,
        form_request: FormRequest,
        actor_id: str,
        actor_name: str,
        retry_of: Optional[str] = None,
    ) -> FormRequest:
        """
        Apply an Approved request. Failures are recorded on the request
        (status Failed) rather than raised.
        """
        is_retry = retry_of is not None
        form = await self.forms.get_form(form_request.form_definition_id)
        operation = form_request.request_type

        try:
            record_key = await self._execute_change(form_request, form)
        except Exception as e:
            message = f"Retry attempt failed: {e}" if is_retry else str(e)
            logger.error(
                "request_apply_failed",
                form_request_id=form_request.id,
                operation=operation,
                connection=form.connection_name,
                table=form.qualified_table_name,
                retry=is_retry,
                error=str(e),
                exc_info=True,
            )

            self._set_status(form_request, RequestStatus.FAILED)
            form_request.failure_message = message

            if is_retry:
                await self.history.append(
                    form_request.id,
                    FormRequestChangeType.RETRIED,
                    {"Status": "Failed", "FailureMessage": retry_of},
                    {"Status": "Failed", "FailureMessage": message, "RetryAttempt": True},
                    actor_id,
                    actor_name,
                    f"Retry attempt failed to apply request to target database: {e}",
                )
            else:
                await self.history.append(
                    form_request.id,
                    FormRequestChangeType.FAILED,
                    {"Status": "Approved"},
                    {"Status": "Failed", "FailureMessage": message},
                    actor_id,
                    actor_name,
                    f"Failed to apply request to target database: {message}",
                )
            self._queue_event(EventType.REQUEST_FAILED, form_request, failure_message=message, retry=is_retry)
            await self._commit()
            return form_request

        self._set_status(form_request, RequestStatus.APPLIED)
        form_request.applied_record_key = record_key
        form_request.failure_message = None
        form_request.applied_at = _now()

        suffix = " after retry" if is_retry else ""
        comment = {
            RequestType.INSERT.value: f"Record successfully inserted into target database{suffix}. New record key: {record_key}",
            RequestType.UPDATE.value: f"Record successfully updated in target database{suffix}. Updated record: {record_key}",
            RequestType.DELETE.value: f"Record successfully deleted from target database{suffix}. Deleted record: {record_key}",
        }[operation]

        new_values = {"Status": "Applied", "AppliedRecordKey": record_key, "OperationType": operation}
        if is_retry:
            new_values["RetryAttempt"] = True
            await self.history.append(
                form_request.id,
                FormRequestChangeType.RETRIED,
                {"Status": "Failed", "FailureMessage": retry_of},
                new_values,
                actor_id,
                actor_name,
                comment,
            )
        else:
            await self.history.append(
                form_request.id,
                FormRequestChangeType.APPLIED,
                {"Status": "Approved"},
                new_values,
                actor_id,
                actor_name,
                comment,
            )

        self._queue_event(EventType.REQUEST_APPLIED, form_request, applied_record_key=record_key, retry=is_retry)
        logger.info(
            "request_applied",
            form_request_id=form_request.id,
            operation=operation,
            connection=form.connection_name,
            table=form.qualified_table_name,
            record_key=record_key,
            retry=is_retry,
        )
        await self._commit()
        return form_request

    async def apply_approved_request(self, form_request_id: str, actor_id: str, actor_name: str) -> Optional[FormRequest]:
        """Apply a request that is Approved but not yet Applied"""
        form_request = await self.get_request(form_request_id)
        if form_request.status != RequestStatus.APPROVED.value:
            logger.warning("apply_invalid_status", form_request_id=form_request_id, status=form_request.status)
            return None
        return await self._apply(form_request, actor_id, actor_name)

    async def retry_failed_request(self, form_request_id: str, actor_id: str, actor_name: str) -> Optional[FormRequest]:
        """
        Re-run Apply for a Failed request. Unbounded; each attempt writes one
        Retried history row.
        """
        form_request = await self.get_request(form_request_id)
        if form_request.status != RequestStatus.FAILED.value:
            logger.warning("retry_invalid_status", form_request_id=form_request_id, status=form_request.status)
            return None

        previous_message = form_request.failure_message or ""
        self._set_status(form_request, RequestStatus.APPROVED)
        form_request.failure_message = None
        await self._commit()

        logger.info("request_retry_started", form_request_id=form_request_id, retried_by=actor_id)
        return await self._apply(form_request, actor_id, actor_name, retry_of=previous_message)

    # ------------------------------------------------------------------
    # Workflow-driven decisions
    # ------------------------------------------------------------------

    async def _resolve_completed_workflow(
        self,
        form_request: FormRequest,
        instance: WorkflowInstance,
        actor_id: str,
        actor_name: str,
        comments: Optional[str],
    ) -> bool:
        """
        Turn a finished workflow into a request decision.
        Returns True if the request was approved (and applied).
        """
        if form_request.status != RequestStatus.PENDING.value:
            return False

        if was_rejected(instance):
            rejected_step = next(
                (si for si in instance.step_instances if si.action == WorkflowStepAction.REJECTED.value),
                None,
            )
            reason = (rejected_step.comments if rejected_step and rejected_step.comments else None) or comments
            if not reason:
                step = instance.workflow_definition.get_step(rejected_step.step_id) if rejected_step else None
                reason = f"Rejected at workflow step '{step.name if step else instance.current_step_id}'"
            await self._mark_rejected(form_request, actor_id, actor_name, reason)
            await self._commit()
            return False

        await self._mark_approved(form_request, actor_id, actor_name, comments or "Workflow completed")
        await self._commit()
        await self._apply(form_request, actor_id, actor_name)
        return True

    def _default_action_step(self, instance: WorkflowInstance, actor_id: str, actor_roles: Optional[List[str]]) -> Optional[str]:
        """The step an action without an explicit step id applies to"""
        active = instance.active_step_ids_list
        if instance.current_step_id in active:
            return instance.current_step_id

        definition = instance.workflow_definition
        for step_id in active:
            step = definition.get_step(step_id)
            if step is None:
                continue
            if actor_roles is None or user_can_act_on_step(step, self.engine._step_instance(instance, step_id), actor_id, actor_roles):
                return step_id
        return active[0] if active else None

    async def process_workflow_action(
        self,
        form_request_id: str,
        action: str,
        actor_id: str,
        actor_name: str,
        comments: Optional[str] = None,
        field_updates: Optional[Dict[str, Any]] = None,
        actor_roles: Optional[List[str]] = None,
        step_id: Optional[str] = None,
    ) -> WorkflowActionResult:
        """
        Act on the request's active workflow step ("approve", "reject",
        "complete" or "skip"). When actor_roles is given, the caller must be
        allowed to act on the step.
        """
        if action not in WORKFLOW_ACTIONS:
            return WorkflowActionResult(success=False, message=f"Unknown workflow action '{action}'", actor_name=actor_name)

        form_request = await self.get_request(form_request_id)
        if not form_request.workflow_instance_id:
            return WorkflowActionResult(
                success=False,
                message="Request has no workflow",
                actor_name=actor_name,
                request_status=form_request.status,
            )

        approved = False
        async with instance_lock(form_request.workflow_instance_id):
            instance = await self.engine.get_instance(form_request.workflow_instance_id)
            if instance.status != WorkflowInstanceStatus.IN_PROGRESS.value:
                return WorkflowActionResult(
                    success=False,
                    message=f"Workflow is not in progress (status {instance.status})",
                    actor_name=actor_name,
                    request_status=form_request.status,
                )

            target_step_id = step_id or self._default_action_step(instance, actor_id, actor_roles)
            definition = instance.workflow_definition
            step = definition.get_step(target_step_id) if target_step_id else None
            if step is None:
                return WorkflowActionResult(
                    success=False,
                    message=f"Step '{target_step_id}' not found in workflow",
                    actor_name=actor_name,
                    request_status=form_request.status,
                )

            if actor_roles is not None and not user_can_act_on_step(
                step, self.engine._step_instance(instance, step.step_id), actor_id, actor_roles
            ):
                logger.warning(
                    "workflow_action_forbidden",
                    form_request_id=form_request_id,
                    step_id=step.step_id,
                    actor_id=actor_id,
                )
                return WorkflowActionResult(
                    success=False,
                    message=f"You are not allowed to act on step '{step.name}'",
                    actor_name=actor_name,
                    request_status=form_request.status,
                )

            allowed_updates, dropped = filter_field_updates(step, field_updates)
            if dropped:
                logger.warning(
                    "field_updates_dropped",
                    form_request_id=form_request_id,
                    step_id=step.step_id,
                    fields=dropped,
                )

            completed = await self.engine.complete_step(
                instance.id,
                step.step_id,
                actor_id,
                actor_name,
                WORKFLOW_ACTIONS[action],
                comments,
                allowed_updates,
            )
            if not completed:
                self.engine.discard_pending()
                return WorkflowActionResult(
                    success=False,
                    message=f"Step '{step.name}' could not be completed",
                    previous_step_name=step.name,
                    actor_name=actor_name,
                    request_status=form_request.status,
                )

            if allowed_updates:
                form_request.update_field_values(allowed_updates)

            current_step = definition.get_step(instance.current_step_id) if instance.current_step_id else None
            step_instance = self.engine._step_instance(instance, step.step_id)
            still_open = step_instance is not None and step_instance.status in OPEN_STEP_STATUSES
            workflow_completed = instance.status == WorkflowInstanceStatus.COMPLETED.value
            additional_data = {
                "workflow_instance_id": instance.id,
                "workflow_status": instance.status,
                "active_step_ids": instance.active_step_ids_list,
            }
            if dropped:
                additional_data["ignored_fields"] = dropped
            if instance.status == WorkflowInstanceStatus.FAILED.value:
                additional_data["failure_reason"] = instance.failure_reason

            if workflow_completed and was_rejected(instance):
                await self._resolve_completed_workflow(form_request, instance, actor_id, actor_name, comments)
            elif workflow_completed:
                await self._mark_approved(form_request, actor_id, actor_name, comments or "Workflow completed")
                approved = True
                await self._commit()
            else:
                await self._commit()

        if approved:
            await self._apply(form_request, actor_id, actor_name)

        if not workflow_completed and step.step_type == WorkflowStepType.APPROVAL.value and still_open:
            message = f"Approval recorded for step '{step.name}'"
        elif workflow_completed:
            message = "Workflow completed: request approved" if approved else "Workflow completed: request rejected"
        else:
            message = f"Step '{step.name}' completed"

        return WorkflowActionResult(
            success=True,
            message=message,
            workflow_completed=workflow_completed,
            workflow_approved=approved,
            previous_step_name=step.name,
            current_step_name=current_step.name if current_step and not workflow_completed else None,
            actor_name=actor_name,
            request_status=form_request.status,
            additional_data=additional_data,
        )

    async def complete_workflow_step(
        self,
        form_request_id: str,
        step_id: str,
        action: WorkflowStepAction,
        actor_id: str,
        actor_name: str,
        comments: Optional[str] = None,
        field_updates: Optional[Dict[str, Any]] = None,
        actor_roles: Optional[List[str]] = None,
    ) -> WorkflowActionResult:
        """Act on a specific step, e.g. one member of a parallel group"""
        by_action = {value: key for key, value in WORKFLOW_ACTIONS.items()}
        action = WorkflowStepAction(action)
        if action not in by_action:
            return WorkflowActionResult(success=False, message=f"Action {action.value} cannot complete a step", actor_name=actor_name)

        return await self.process_workflow_action(
            form_request_id,
            by_action[action],
            actor_id,
            actor_name,
            comments=comments,
            field_updates=field_updates,
            actor_roles=actor_roles,
            step_id=step_id,
        )

    # ------------------------------------------------------------------
    # Reconciliation and diagnostics
    # ------------------------------------------------------------------

    async def get_approved_but_not_applied(self) -> List[FormRequest]:
        result = await self.db.execute(
            select(FormRequest)
            .where(FormRequest.status == RequestStatus.APPROVED.value)
            .order_by(FormRequest.approved_at)
        )
        return list(result.scalars().all())

    async def get_requests_with_completed_workflows_but_not_applied(self) -> List[FormRequest]:
        """Requests whose workflow finished but which never reached a final state"""
        result = await self.db.execute(
            select(FormRequest)
            .join(WorkflowInstance, WorkflowInstance.form_request_id == FormRequest.id)
            .where(
                WorkflowInstance.status == WorkflowInstanceStatus.COMPLETED.value,
                FormRequest.status.in_([RequestStatus.PENDING.value, RequestStatus.APPROVED.value]),
            )
            .order_by(FormRequest.requested_at)
        )
        return list(result.scalars().all())

    async def process_stuck_workflow_requests(
        self,
        actor_id: Optional[str] = None,
        actor_name: Optional[str] = None,
    ) -> int:
        """
        Settle requests whose workflow completed without the request following:
        Pending ones are approved (and applied) or rejected, Approved ones applied.
        Returns how many were processed.
        """
        actor_id = actor_id or settings.system_actor_id
        actor_name = actor_name or settings.system_actor_name

        stuck_ids = [r.id for r in await self.get_requests_with_completed_workflows_but_not_applied()]
        processed = 0

        for form_request_id in stuck_ids:
            try:
                form_request = await self.get_request(form_request_id)
                if form_request.status == RequestStatus.PENDING.value:
                    async with instance_lock(form_request.workflow_instance_id):
                        instance = await self.engine.get_instance_for_request(form_request_id)
                        await self._resolve_completed_workflow(
                            form_request, instance, actor_id, actor_name, "Resolved by reconciliation"
                        )
                else:
                    await self._apply(form_request, actor_id, actor_name)
                processed += 1
            except Exception as e:
                await self._rollback()
                logger.error(
                    "stuck_request_processing_failed",
                    form_request_id=form_request_id,
                    error=str(e),
                    exc_info=True,
                )

        logger.info("stuck_requests_processed", found=len(stuck_ids), processed=processed)
        return processed

    async def get_workflow_diagnostics(self, form_request_id: str) -> str:
        """Free-text report of a request and its workflow, for support"""
        form_request = await self.get_request(form_request_id)
        lines = [
            f"Request {form_request.id}",
            f"  Type: {form_request.request_type}",
            f"  Status: {form_request.status}",
            f"  Requested by: {form_request.requested_by_name or form_request.requested_by}",
            f"  Approved by: {format_value_for_display(form_request.approved_by_name or form_request.approved_by)}",
            f"  Applied record key: {format_value_for_display(form_request.applied_record_key)}",
            f"  Failure message: {format_value_for_display(form_request.failure_message)}",
        ]

        instance = await self.engine.get_instance_for_request(form_request_id)
        if instance is None:
            lines.append("Workflow: none")
            return "\n".join(lines)

        definition = instance.workflow_definition
        lines.extend([
            f"Workflow instance {instance.id}",
            f"  Definition: {definition.name} (version {definition.version})",
            f"  Status: {instance.status}",
            f"  Current step: {format_value_for_display(instance.current_step_id)}",
            f"  Active steps: {', '.join(instance.active_step_ids_list) or '(none)'}",
            f"  Days running: {days_between(instance.started_at, instance.completed_at)}",
        ])
        if instance.failure_reason:
            lines.append(f"  Failure reason: {instance.failure_reason}")

        lines.append("Steps:")
        for step_instance in await self.engine.get_step_instances(instance.id):
            step = definition.get_step(step_instance.step_id)
            lines.append(
                f"  - {step_instance.step_id} ({step.step_type if step else '?'}): {step_instance.status}"
                f", action={format_value_for_display(step_instance.action)}"
                f", by={format_value_for_display(step_instance.completed_by_name)}"
            )

        if instance.status == WorkflowInstanceStatus.COMPLETED.value and form_request.status != RequestStatus.APPLIED.value:
            outcome = "rejected" if was_rejected(instance) else "approved"
            if not (outcome == "rejected" and form_request.status == RequestStatus.REJECTED.value):
                lines.append(
                    f"ANOMALY: workflow completed ({outcome}) but request status is {form_request.status}"
                )
        if instance.status == WorkflowInstanceStatus.FAILED.value and form_request.status == RequestStatus.PENDING.value:
            lines.append("ANOMALY: workflow failed and request is still Pending")
        if instance.status == WorkflowInstanceStatus.CANCELLED.value and form_request.status == RequestStatus.PENDING.value:
            lines.append("ANOMALY: workflow cancelled and request is still Pending")

        return "\n".join(lines)
