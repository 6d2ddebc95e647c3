"""
Append-only request history.
"""

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
from typing import Any, Dict, List, Optional
import structlog

from requestflow.models.orm import FormRequestHistory, dumps, _now
from requestflow.models.schemas import FormRequestChangeType

logger = structlog.get_logger()


class RequestHistory:
    """
    Writes and reads FormRequestHistory rows.

    Rows are never updated or deleted. Each row gets the next sequence number
    of its request so ties on changed_at still sort deterministically.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def append(
        self,
        form_request_id: str,
        change_type: FormRequestChangeType,
        previous_values: Optional[Dict[str, Any]],
        new_values: Optional[Dict[str, Any]],
        actor_id: str,
        actor_name: Optional[str],
        comment: Optional[str] = None,
    ) -> FormRequestHistory:
        """Add one history row (flushed, committed by the caller)"""
        result = await self.db.execute(
            select(func.max(FormRequestHistory.sequence_number)).where(
                FormRequestHistory.form_request_id == form_request_id
            )
        )
        last_sequence = result.scalar()

        entry = FormRequestHistory(
            form_request_id=form_request_id,
            change_type=change_type.value,
            previous_values=dumps(previous_values) if previous_values is not None else None,
            new_values=dumps(new_values) if new_values is not None else None,
            changed_by=actor_id,
            changed_by_name=actor_name,
            changed_at=_now(),
            comments=comment,
            sequence_number=(last_sequence or 0) + 1,
        )
        self.db.add(entry)
        await self.db.flush()

        logger.info(
            "request_history_appended",
            form_request_id=form_request_id,
            change_type=change_type.value,
            sequence_number=entry.sequence_number,
            changed_by=actor_id,
        )
        return entry

    async def list_for_request(self, form_request_id: str) -> List[FormRequestHistory]:
        """History of a request, oldest first"""
        result = await self.db.execute(
            select(FormRequestHistory)
            .where(FormRequestHistory.form_request_id == form_request_id)
            .order_by(FormRequestHistory.sequence_number)
        )
        return list(result.scalars().all())
