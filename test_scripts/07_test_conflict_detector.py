#!/usr/bin/env python3
"""
Test: Conflict detection
Purpose: Verify advisory conflict reports for UPDATE/DELETE requests

Tests:
- Unchanged rows report no conflicts
- Changed fields are listed with original, current and requested values
- Missing rows are reported
- Duplicate rows for one key are reported
- INSERT requests and keyless tables are never checked
- Lookup errors are reported, not raised
"""

import asyncio
import sys

from fixtures import (
    run_tests, TestContext,
    create_test_form, create_test_request,
    assert_equal, assert_true, assert_false, assert_in, assert_raises_async
)

from requestflow.core.conflict_detector import (
    ConflictDetector,
    FIELDS_CHANGED_HEADER,
    RECORD_DUPLICATED,
    RECORD_MISSING,
    REVIEW_HINT,
)
from requestflow.core.request_service import RequestService
from requestflow.core.target_data import TargetDataAccessor
from requestflow.models.schemas import RequestType


async def _update_request(ctx, session, original_values, field_values=None, request_type=RequestType.UPDATE, table_name="customers"):
    form = await create_test_form(session, table_name=table_name)
    service = RequestService(session, ctx.target_data)
    return await create_test_request(
        service, form.id,
        request_type=request_type,
        field_values=field_values or {},
        original_values=original_values,
    )


async def test_unchanged_row_has_no_conflicts():
    async with TestContext(start_event_bus=False) as ctx:
        async with ctx.get_session() as session:
            form_request = await _update_request(
                ctx, session,
                {"Id": "7", "Name": "grace hopper", "Amount": "250"},
                {"Amount": "300"},
            )
            report = await ConflictDetector(session, ctx.target_data).check_for_conflicts(form_request.id)

            assert_false(report.has_conflicts, f"Got {report.conflict_messages}")
            assert_equal(report.conflict_messages, [])
            assert_equal(report.error, None)
            assert_equal(report.form_request_id, form_request.id)


async def test_changed_field_is_reported():
    async with TestContext(start_event_bus=False) as ctx:
        async with ctx.get_session() as session:
            form_request = await _update_request(
                ctx, session,
                {"Id": 7, "Name": "Grace Brewster", "Email": "grace@example.com"},
                {"Name": "Grace M. Hopper"},
            )
            report = await ConflictDetector(session, ctx.target_data).check_for_conflicts(form_request.id)

            assert_true(report.has_conflicts)
            assert_equal(report.conflict_messages[0], FIELDS_CHANGED_HEADER)
            assert_equal(report.conflict_messages[-1], REVIEW_HINT)
            assert_in(
                "• Name: Original was 'Grace Brewster', now 'Grace Hopper' in database, "
                "request wants to change to 'Grace M. Hopper'",
                report.conflict_messages,
            )
            assert_equal(len(report.conflict_messages), 3, "Only the changed field is listed")


async def test_delete_conflict_omits_requested_value():
    async with TestContext(start_event_bus=False) as ctx:
        async with ctx.get_session() as session:
            form_request = await _update_request(
                ctx, session,
                {"Id": 41, "Email": "ada@oldmail.example"},
                request_type=RequestType.DELETE,
            )
            report = await ConflictDetector(session, ctx.target_data).check_for_conflicts(form_request.id)

            assert_true(report.has_conflicts)
            assert_in(
                "• Email: Original was 'ada@oldmail.example', now 'ada@example.com' in database",
                report.conflict_messages,
            )


async def test_missing_record():
    async with TestContext(start_event_bus=False) as ctx:
        async with ctx.get_session() as session:
            form_request = await _update_request(ctx, session, {"Id": 999, "Name": "Ghost"}, {"Name": "Still a ghost"})
            report = await ConflictDetector(session, ctx.target_data).check_for_conflicts(form_request.id)

            assert_true(report.has_conflicts)
            assert_equal(report.conflict_messages, [RECORD_MISSING])


class UnenforcedKeyAccessor:
    """Target accessor reporting a primary key the stored rows do not honour"""

    def __init__(self, accessor, key_columns):
        self._accessor = accessor
        self._key_columns = key_columns

    async def primary_key_columns(self, connection, table, schema=None):
        return list(self._key_columns)

    def __getattr__(self, name):
        return getattr(self._accessor, name)


async def test_duplicate_records():
    async with TestContext(start_event_bus=False) as ctx:
        async with ctx.get_session() as session:
            # Both seeded order lines share OrderId 1
            form_request = await _update_request(
                ctx, session, {"OrderId": "1", "Sku": "A-100"}, {"Sku": "A-101"}, table_name="order_lines"
            )
            detector = ConflictDetector(session, UnenforcedKeyAccessor(ctx.target_data, ["OrderId"]))
            report = await detector.check_for_conflicts(form_request.id)

            assert_true(report.has_conflicts)
            assert_equal(report.conflict_messages, [RECORD_DUPLICATED])
            assert_equal(report.error, None)


async def test_requests_that_are_not_checked():
    async with TestContext(start_event_bus=False) as ctx:
        async with ctx.get_session() as session:
            detector = ConflictDetector(session, ctx.target_data)

            insert = await _update_request(ctx, session, {}, request_type=RequestType.INSERT)
            assert_false((await detector.check_for_conflicts(insert.id)).has_conflicts, "Inserts have no snapshot")

            keyless = await _update_request(
                ctx, session, {"Note": "changed elsewhere"}, {"Author": "x"}, table_name="audit_notes"
            )
            assert_false((await detector.check_for_conflicts(keyless.id)).has_conflicts, "Keyless tables cannot be matched")

            no_key_value = await _update_request(ctx, session, {"Name": "Grace Brewster"}, {"Name": "x"})
            assert_false((await detector.check_for_conflicts(no_key_value.id)).has_conflicts)

            await assert_raises_async(ValueError, detector.check_for_conflicts("missing"))


async def test_lookup_error_is_reported():
    async with TestContext(start_event_bus=False) as ctx:
        async with ctx.get_session() as session:
            form_request = await _update_request(ctx, session, {"Id": 7, "Name": "Grace Brewster"}, {"Name": "x"})

            unconfigured = TargetDataAccessor({}, echo=False)
            report = await ConflictDetector(session, unconfigured).check_for_conflicts(form_request.id)

            assert_false(report.has_conflicts, "Errors never block approval")
            assert_equal(report.conflict_messages, [])
            assert_in("crm", report.error)


async def main():
    """Run all conflict detection tests"""
    return await run_tests("Conflict Detection Tests", [
        ("Unchanged row has no conflicts", test_unchanged_row_has_no_conflicts),
        ("Changed field is reported", test_changed_field_is_reported),
        ("Delete conflict omits requested value", test_delete_conflict_omits_requested_value),
        ("Missing record", test_missing_record),
        ("Duplicate records", test_duplicate_records),
        ("Requests that are not checked", test_requests_that_are_not_checked),
        ("Lookup error is reported", test_lookup_error_is_reported),
    ])


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
