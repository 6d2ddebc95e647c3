"""Event handlers that turn lifecycle events into notifications."""

import structlog
from sqlalchemy import select

from requestflow.core.event_bus import EventBus
from requestflow.models import Database, FormDefinition, FormRequest
from requestflow.models.schemas import EventType
from requestflow.adapters import WebhookNotificationSink
from requestflow.config.settings import settings

logger = structlog.get_logger()

# Template keys understood by the notification receiver
REQUEST_TEMPLATES = {
    EventType.REQUEST_CREATED: "request_submitted",
    EventType.REQUEST_APPROVED: "request_approved",
    EventType.REQUEST_REJECTED: "request_rejected",
    EventType.REQUEST_APPLIED: "request_applied",
    EventType.REQUEST_FAILED: "request_failed",
}


def register_event_handlers(event_bus: EventBus, db: Database, notifier: WebhookNotificationSink):
    """
    Register notification handlers for request and workflow events.

    Args:
        event_bus: The event bus instance
        db: Database instance for session management
        notifier: Outbound notification sink
    """

    async def _request_summary(form_request_id: str) -> dict:
        async with db.session() as session:
            result = await session.execute(
                select(FormRequest, FormDefinition.name)
                .join(FormDefinition, FormDefinition.id == FormRequest.form_definition_id)
                .where(FormRequest.id == form_request_id)
            )
            row = result.first()

        if row is None:
            return {"form_request_id": form_request_id}

        form_request, form_name = row
        return {
            "form_request_id": form_request.id,
            "form_name": form_name,
            "request_type": form_request.request_type,
            "status": form_request.status,
            "requested_by": form_request.requested_by,
            "requested_by_name": form_request.requested_by_name,
        }

    def _request_handler(event_type: EventType):
        template_key = REQUEST_TEMPLATES[event_type]

        async def handle_request_event(data: dict):
            logger.info("handling_request_event", event_type=event_type.value, form_request_id=data.get("form_request_id"))
            await notifier.notify(template_key, data, to_address=data.get("requested_by"))

        handle_request_event.__name__ = f"handle_{template_key}"
        return handle_request_event

    async def handle_step_activated(data: dict):
        """Tell the step's roles there is something to act on"""
        logger.info("handling_step_activated", step_id=data.get("step_id"), form_request_id=data.get("form_request_id"))

        if data.get("step_type") != "APPROVAL":
            return

        variables = dict(data)
        variables.update(await _request_summary(data["form_request_id"]))
        for role in data.get("assigned_roles") or [None]:
            await notifier.notify("workflow_step_assigned", variables, to_address=role)

    async def handle_workflow_failed(data: dict):
        """Routing failures need an administrator"""
        logger.warning(
            "handling_workflow_failed",
            workflow_instance_id=data.get("workflow_instance_id"),
            reason=data.get("reason"),
        )
        variables = dict(data)
        variables.update(await _request_summary(data["form_request_id"]))
        await notifier.notify("workflow_failed", variables, to_address=settings.admin_role)

    # Subscribe handlers to events
    for event_type in REQUEST_TEMPLATES:
        event_bus.subscribe(event_type, _request_handler(event_type))
    event_bus.subscribe(EventType.WORKFLOW_STEP_ACTIVATED, handle_step_activated)
    event_bus.subscribe(EventType.WORKFLOW_FAILED, handle_workflow_failed)

    logger.info(
        "event_handlers_registered",
        handlers=[event_type.value for event_type in REQUEST_TEMPLATES]
        + [EventType.WORKFLOW_STEP_ACTIVATED.value, EventType.WORKFLOW_FAILED.value],
    )
