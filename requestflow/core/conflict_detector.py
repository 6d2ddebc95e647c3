"""
Advisory conflict detection.

Compares the row snapshot a request was raised against with the row as it is
now. Nothing here blocks approval; it only produces messages for reviewers.
"""

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from typing import Any, Dict, List
import structlog

from requestflow.core.conditions import convert_for_column, convert_value, format_value_for_display, values_equal
from requestflow.core.forms import FormService
from requestflow.core.target_data import TargetDataAccessor
from requestflow.models.orm import FormRequest, _now
from requestflow.models.schemas import ConflictDetectionResult, RequestType

logger = structlog.get_logger()

RECORD_MISSING = "The record no longer exists in the database. It may have been deleted by another user."
RECORD_DUPLICATED = "Multiple records found with the same primary key. Database integrity issue detected."
FIELDS_CHANGED_HEADER = "The following fields have been modified by another user since this request was created:"
REVIEW_HINT = "Please review the changes carefully before approving."


class ConflictDetector:
    """Checks Update/Delete requests against the live target row"""

    def __init__(self, db: AsyncSession, target_data: TargetDataAccessor):
        self.db = db
        self.target_data = target_data

    async def check_for_conflicts(self, form_request_id: str) -> ConflictDetectionResult:
        result = await self.db.execute(select(FormRequest).where(FormRequest.id == form_request_id))
        form_request = result.scalar_one_or_none()

        if not form_request:
            raise ValueError(f"Request {form_request_id} not found")

        return await self.check_request(form_request)

    async def check_request(self, form_request: FormRequest) -> ConflictDetectionResult:
        report = ConflictDetectionResult(form_request_id=form_request.id, checked_at=_now())

        if form_request.request_type not in (RequestType.UPDATE.value, RequestType.DELETE.value):
            return report

        original_values = form_request.original_values_dict
        if not original_values:
            return report

        try:
            form = await FormService(self.db).get_form(form_request.form_definition_id)

            pk_columns = await self.target_data.primary_key_columns(
                form.connection_name, form.table_name, form.schema_name
            )
            if not pk_columns:
                return report

            if any(column not in original_values for column in pk_columns):
                return report
            column_types = await self.target_data.column_types(
                form.connection_name, form.table_name, form.schema_name
            )
            where = {
                column: convert_for_column(original_values[column], column_types.get(column))
                for column in pk_columns
            }

            rows = await self.target_data.query(form.connection_name, form.table_name, form.schema_name, where)

            if not rows:
                report.has_conflicts = True
                report.conflict_messages.append(RECORD_MISSING)
            elif len(rows) > 1:
                report.has_conflicts = True
                report.conflict_messages.append(RECORD_DUPLICATED)
            else:
                details = self._compare(form_request, original_values, rows[0])
                if details:
                    report.has_conflicts = True
                    report.conflict_messages.append(FIELDS_CHANGED_HEADER)
                    report.conflict_messages.extend(details)
                    report.conflict_messages.append(REVIEW_HINT)

        except Exception as e:
            logger.error(
                "conflict_check_failed",
                form_request_id=form_request.id,
                error=str(e),
                exc_info=True,
            )
            report.error = str(e)
            report.has_conflicts = False
            report.conflict_messages = []
            return report

        if report.has_conflicts:
            logger.info(
                "conflicts_detected",
                form_request_id=form_request.id,
                messages=len(report.conflict_messages),
            )
        return report

    @staticmethod
    def _compare(form_request: FormRequest, original_values: Dict[str, Any], current: Dict[str, Any]) -> List[str]:
        field_values = form_request.field_values_dict
        details = []

        for field_name, original in original_values.items():
            if field_name not in current:
                continue
            live = current[field_name]
            if values_equal(convert_value(original), live):
                continue

            original_display = format_value_for_display(original)
            current_display = format_value_for_display(live)

            if form_request.request_type == RequestType.UPDATE.value:
                new_display = format_value_for_display(field_values.get(field_name))
                details.append(
                    f"• {field_name}: Original was '{original_display}', now '{current_display}' in database, "
                    f"request wants to change to '{new_display}'"
                )
            else:
                details.append(f"• {field_name}: Original was '{original_display}', now '{current_display}' in database")

        return details
