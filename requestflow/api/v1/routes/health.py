"""Health check and metrics endpoints."""

from datetime import datetime
from fastapi import APIRouter, Depends
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from requestflow.api.v1.dependencies import get_event_bus, get_notifier, get_sweeper
from requestflow.models import FormRequest, WorkflowInstance, DeadLetterQueue, get_db
from requestflow.models.schemas import HealthResponse

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint"""
    return HealthResponse(status="healthy", timestamp=datetime.now().timestamp())


@router.get("/metrics")
async def metrics(
    db_session: AsyncSession = Depends(get_db),
    event_bus = Depends(get_event_bus),
    notifier = Depends(get_notifier),
    sweeper = Depends(get_sweeper),
):
    """
    System metrics endpoint for observability.
    Returns request and workflow counts, DLQ size, event bus and sweeper stats.
    """
    request_counts = await db_session.execute(
        select(FormRequest.status, func.count(FormRequest.id)).group_by(FormRequest.status)
    )
    requests_by_status = {status: count for status, count in request_counts.fetchall()}

    instance_counts = await db_session.execute(
        select(WorkflowInstance.status, func.count(WorkflowInstance.id)).group_by(WorkflowInstance.status)
    )
    instances_by_status = {status: count for status, count in instance_counts.fetchall()}

    dlq_total = await db_session.execute(select(func.count(DeadLetterQueue.id)))

    return {
        "timestamp": datetime.now().timestamp(),
        "requests": {
            "total": sum(requests_by_status.values()),
            "by_status": requests_by_status,
        },
        "workflow_instances": {
            "total": sum(instances_by_status.values()),
            "by_status": instances_by_status,
        },
        "dead_letter_queue": {"total": dlq_total.scalar()},
        "event_bus": event_bus.get_stats(),
        "notifications": notifier.get_stats(),
        "reconciliation": sweeper.get_stats(),
    }
