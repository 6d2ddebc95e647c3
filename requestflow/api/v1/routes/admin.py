"""Admin, Dead Letter Queue and reconciliation endpoints."""

import structlog
from fastapi import APIRouter, HTTPException, Depends
from sqlalchemy import select

from requestflow.api.v1.dependencies import get_event_bus, get_sweeper, get_target_data
from requestflow.config.settings import settings
from requestflow.core import RequestService
from requestflow.models import DeadLetterQueue, get_db
from requestflow.models.schemas import FormRequestResponse, ReconciliationRunSubmit

router = APIRouter(prefix="/api/admin", tags=["admin"])
logger = structlog.get_logger()


@router.get("/dlq")
async def get_dead_letter_queue(
    limit: int = 100,
    db_session = Depends(get_db),
):
    """
    Inspect dead letter queue entries.
    Returns events whose handlers kept failing after max retries.
    """
    result = await db_session.execute(
        select(DeadLetterQueue)
        .order_by(DeadLetterQueue.created_at.desc())
        .limit(limit)
    )
    dlq_entries = result.scalars().all()

    return {
        "total": len(dlq_entries),
        "entries": [entry.to_dict() for entry in dlq_entries]
    }


@router.post("/dlq/{entry_id}/retry")
async def retry_dlq_entry(
    entry_id: int,
    db_session = Depends(get_db),
    event_bus = Depends(get_event_bus),
):
    """
    Republish a DLQ entry and remove it from the queue.

    Use this after fixing whatever made the handler fail. If it fails
    again it comes back as a new entry.
    """
    try:
        retried = await event_bus.retry_dlq_entry(db_session, entry_id)
    except ValueError as e:
        # Unknown event type stored in the entry
        logger.error("dlq_retry_failed", dlq_id=entry_id, error=str(e), exc_info=True)
        raise HTTPException(status_code=400, detail=f"Failed to retry event: {str(e)}")

    if not retried:
        raise HTTPException(status_code=404, detail="DLQ entry not found")

    return {
        "success": True,
        "message": "Event republished",
        "entry_id": entry_id,
    }


@router.delete("/dlq/{entry_id}")
async def delete_dlq_entry(
    entry_id: int,
    db_session = Depends(get_db),
):
    """Delete a single DLQ entry"""
    result = await db_session.execute(
        select(DeadLetterQueue).where(DeadLetterQueue.id == entry_id)
    )
    entry = result.scalar_one_or_none()

    if not entry:
        raise HTTPException(status_code=404, detail="DLQ entry not found")

    await db_session.delete(entry)
    await db_session.commit()

    logger.info(
        "dlq_entry_deleted",
        dlq_id=entry_id,
        event_type=entry.original_event_type,
        form_request_id=entry.form_request_id
    )

    return {
        "success": True,
        "message": "DLQ entry deleted successfully",
        "entry_id": entry_id
    }


@router.get("/reconciliation")
async def get_reconciliation_candidates(
    db_session = Depends(get_db),
    target_data = Depends(get_target_data),
    sweeper = Depends(get_sweeper),
):
    """
    Requests the stuck-request sweep would act on.
    """
    service = RequestService(db_session, target_data)
    approved = await service.get_approved_but_not_applied()
    completed = await service.get_requests_with_completed_workflows_but_not_applied()

    return {
        "approved_not_applied": [FormRequestResponse(**r.to_dict()) for r in approved],
        "completed_workflow_not_applied": [FormRequestResponse(**r.to_dict()) for r in completed],
        "sweeper": sweeper.get_stats(),
    }


@router.post("/reconciliation/run")
async def run_reconciliation(
    run_req: ReconciliationRunSubmit,
    db_session = Depends(get_db),
    event_bus = Depends(get_event_bus),
    target_data = Depends(get_target_data),
):
    """Run the stuck-request sweep now"""
    service = RequestService(db_session, target_data, event_bus)
    processed = await service.process_stuck_workflow_requests(
        run_req.actor_id or settings.system_actor_id,
        run_req.actor_name or settings.system_actor_name,
    )

    logger.info("reconciliation_run_via_api", processed=processed, actor_id=run_req.actor_id)
    return {"success": True, "processed": processed}
