#!/usr/bin/env python3
"""
Test: Request lifecycle
Purpose: Verify the Pending -> Approved/Rejected -> Applied/Failed pipeline

Tests:
- Workflow approval applies an INSERT and records the identity key
- Requests without a workflow are approved immediately
- Values are written according to the target column types
- UPDATE/DELETE filter on primary-key columns only
- Apply failures are recorded, never raised
- Retry re-runs apply only
- Rejection through the workflow and directly
- Field edits, access checks and precondition failures
- History has one row per status change
"""

import asyncio
import sys

from fixtures import (
    print_info, run_tests, TestContext, EventCollector,
    create_test_form, create_test_definition, create_test_request,
    start_step, end_step, approval_step, branch_step, transition, single_approval_workflow,
    assert_equal, assert_true, assert_false, assert_in, assert_raises_async
)

from requestflow.core.request_service import RequestService
from requestflow.core.workflow_engine import WorkflowEngine
from requestflow.models.schemas import (
    FormRequestChangeType,
    RequestStatus,
    RequestType,
    WorkflowInstanceStatus,
    WorkflowStepAction,
)


def change_types(history):
    return [entry.change_type for entry in history]


def assert_status_fields_coupled(form_request):
    """Applied has a key and no message; Failed has a message"""
    if form_request.status == RequestStatus.APPLIED.value:
        assert_true(form_request.applied_record_key is not None, "Applied requests carry a record key")
        assert_equal(form_request.failure_message, None, "Applied requests carry no failure message")
    if form_request.status == RequestStatus.FAILED.value:
        assert_true(form_request.failure_message, "Failed requests carry a failure message")


async def test_workflow_approval_applies_insert():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            form = await create_test_form(session)
            await create_test_definition(session, form.id)
            service = RequestService(session, ctx.target_data, ctx.event_bus)

            form_request = await create_test_request(service, form.id)
            assert_equal(form_request.status, RequestStatus.PENDING.value)

            result = await service.process_workflow_action(
                form_request.id, "approve", "mgr-1", "Morgan Manager", comments="Looks good"
            )
            assert_true(result.success, result.message)
            assert_true(result.workflow_completed)
            assert_true(result.workflow_approved)
            assert_equal(result.message, "Workflow completed: request approved")
            assert_equal(result.request_status, RequestStatus.APPLIED)

            form_request = await service.get_request(form_request.id)
            assert_equal(form_request.status, RequestStatus.APPLIED.value)
            assert_equal(form_request.applied_record_key, "42")
            assert_equal(form_request.approved_by, "mgr-1")
            assert_status_fields_coupled(form_request)

            history = await service.get_history(form_request.id)
            assert_equal(
                change_types(history),
                [FormRequestChangeType.CREATED.value, FormRequestChangeType.APPROVED.value, FormRequestChangeType.APPLIED.value],
            )
            assert_equal([entry.sequence_number for entry in history], [1, 2, 3])
            assert_in("New record key: 42", history[-1].comments)

        rows = await ctx.target_rows("customers", {"Id": 42})
        assert_equal(rows[0]["Name"], "Jane Doe")
        assert_equal(rows[0]["Amount"], 1500.5)
        assert_equal(rows[0]["IsActive"], 1)


async def test_no_workflow_approved_then_applied():
    async with TestContext() as ctx:
        collector = EventCollector()
        collector.subscribe_all(ctx.event_bus)

        async with ctx.get_session() as session:
            form = await create_test_form(session)
            service = RequestService(session, ctx.target_data, ctx.event_bus)

            form_request = await create_test_request(service, form.id)
            assert_equal(form_request.status, RequestStatus.APPROVED.value)
            assert_equal(form_request.approved_by, "System")
            assert_equal(form_request.workflow_instance_id, None)

            form_request = await service.apply_approved_request(form_request.id, "alice", "Alice")
            assert_equal(form_request.status, RequestStatus.APPLIED.value)
            assert_equal(form_request.applied_record_key, "42")

            again = await service.apply_approved_request(form_request.id, "alice", "Alice")
            assert_equal(again, None, "Applied requests are not applied twice")

        await ctx.event_bus.drain()
        assert_equal(collector.types(), ["request.created", "request.applied"])
        assert_equal(collector.find_event(event_type="request.applied")["applied_record_key"], "42")


async def test_insert_keeps_text_values_verbatim():
    async with TestContext(start_event_bus=False) as ctx:
        async with ctx.get_session() as session:
            form = await create_test_form(session)
            service = RequestService(session, ctx.target_data)

            form_request = await create_test_request(
                service, form.id,
                field_values={"Name": "TRUE", "Email": "1.50", "Amount": "0.10", "IsActive": "false"},
            )
            form_request = await service.apply_approved_request(form_request.id, "alice", "Alice")
            assert_equal(form_request.status, RequestStatus.APPLIED.value, form_request.failure_message)

        rows = await ctx.target_rows("customers", {"Id": int(form_request.applied_record_key)})
        assert_equal(rows[0]["Name"], "TRUE", "TEXT columns are written as submitted")
        assert_equal(rows[0]["Email"], "1.50")
        assert_equal(rows[0]["Amount"], 0.1)
        assert_equal(rows[0]["IsActive"], 0)


async def test_update_filters_on_primary_key_only():
    async with TestContext(start_event_bus=False) as ctx:
        async with ctx.get_session() as session:
            form = await create_test_form(session)
            service = RequestService(session, ctx.target_data)

            original = {"Id": 7, "Name": "A"}
            where = await service.derive_key_filter(form, original, "UPDATE")
            assert_equal(where, {"Id": 7}, "Non-key snapshot fields never reach the filter")
            assert_equal(await service.derive_key_filter(form, original, "UPDATE"), where, "Derivation is deterministic")

            form_request = await create_test_request(
                service, form.id,
                request_type=RequestType.UPDATE,
                field_values={"Email": "grace@navy.example"},
                original_values=original,
            )
            form_request = await service.apply_approved_request(form_request.id, "alice", "Alice")

            assert_equal(form_request.status, RequestStatus.APPLIED.value, form_request.failure_message)
            assert_equal(form_request.applied_record_key, "Id=7")

        rows = await ctx.target_rows("customers", {"Id": 7})
        assert_equal(rows[0]["Email"], "grace@navy.example")
        assert_equal(rows[0]["Name"], "Grace Hopper", "Only submitted fields change")


async def test_delete_by_composite_key():
    async with TestContext(start_event_bus=False) as ctx:
        async with ctx.get_session() as session:
            form = await create_test_form(session, table_name="order_lines")
            service = RequestService(session, ctx.target_data)

            form_request = await create_test_request(
                service, form.id,
                request_type=RequestType.DELETE,
                original_values={"OrderId": "1", "LineNo": "2", "Sku": "B-200", "Quantity": "1"},
            )
            form_request = await service.apply_approved_request(form_request.id, "alice", "Alice")
            assert_equal(form_request.status, RequestStatus.APPLIED.value, form_request.failure_message)
            assert_equal(form_request.applied_record_key, "OrderId=1, LineNo=2")

            history = await service.get_history(form_request.id)
            assert_in("Deleted record: OrderId=1, LineNo=2", history[-1].comments)

        assert_equal(len(await ctx.target_rows("order_lines")), 1)


async def test_no_primary_key_fails():
    async with TestContext(start_event_bus=False) as ctx:
        async with ctx.get_session() as session:
            form = await create_test_form(session, table_name="audit_notes")
            service = RequestService(session, ctx.target_data)

            form_request = await create_test_request(
                service, form.id,
                request_type=RequestType.UPDATE,
                field_values={"Author": "mallory"},
                original_values={"Note": "seeded", "Author": "setup"},
            )
            form_request = await service.apply_approved_request(form_request.id, "alice", "Alice")

            assert_equal(form_request.status, RequestStatus.FAILED.value)
            assert_in("No primary key found for table audit_notes", form_request.failure_message)
            assert_equal(form_request.applied_record_key, None)
            assert_status_fields_coupled(form_request)

            history = await service.get_history(form_request.id)
            assert_equal(change_types(history), [FormRequestChangeType.CREATED.value, FormRequestChangeType.FAILED.value])

        rows = await ctx.target_rows("audit_notes")
        assert_equal(rows[0]["Author"], "setup", "Nothing was written")


async def test_missing_key_value_fails():
    async with TestContext(start_event_bus=False) as ctx:
        async with ctx.get_session() as session:
            form = await create_test_form(session)
            service = RequestService(session, ctx.target_data)

            form_request = await create_test_request(
                service, form.id,
                request_type=RequestType.UPDATE,
                field_values={"Email": "x@example.com"},
                original_values={"Name": "Ada Lovelace"},
            )
            form_request = await service.apply_approved_request(form_request.id, "alice", "Alice")

            assert_equal(form_request.status, RequestStatus.FAILED.value)
            assert_in("Primary key column 'Id' not found in original values", form_request.failure_message)


async def test_retry_after_failure():
    async with TestContext(start_event_bus=False) as ctx:
        async with ctx.get_session() as session:
            form = await create_test_form(session, table_name="order_lines")
            service = RequestService(session, ctx.target_data)

            form_request = await create_test_request(
                service, form.id,
                request_type=RequestType.DELETE,
                original_values={"OrderId": 3, "LineNo": 1},
            )
            form_request = await service.apply_approved_request(form_request.id, "alice", "Alice")
            assert_equal(form_request.status, RequestStatus.FAILED.value)
            assert_in("No records found to delete", form_request.failure_message)
            assert_status_fields_coupled(form_request)

            # The row shows up later; retry only re-runs apply
            await ctx.target_data.insert("crm", "order_lines", None, {"OrderId": 3, "LineNo": 1, "Sku": "Z-1", "Quantity": 1})

            form_request = await service.retry_failed_request(form_request.id, "ops", "Ops")
            assert_equal(form_request.status, RequestStatus.APPLIED.value)
            assert_equal(form_request.applied_record_key, "OrderId=3, LineNo=1")
            assert_status_fields_coupled(form_request)

            history = await service.get_history(form_request.id)
            assert_equal(
                change_types(history),
                [FormRequestChangeType.CREATED.value, FormRequestChangeType.FAILED.value, FormRequestChangeType.RETRIED.value],
            )
            assert_true(history[-1].new_values_dict.get("RetryAttempt"))
            assert_in("after retry", history[-1].comments)

            assert_equal(await service.retry_failed_request(form_request.id, "ops", "Ops"), None, "Only Failed requests retry")


async def test_retry_that_fails_again():
    async with TestContext(start_event_bus=False) as ctx:
        async with ctx.get_session() as session:
            form = await create_test_form(session, table_name="order_lines")
            service = RequestService(session, ctx.target_data)

            form_request = await create_test_request(
                service, form.id,
                request_type=RequestType.DELETE,
                original_values={"OrderId": 8, "LineNo": 8},
            )
            await service.apply_approved_request(form_request.id, "alice", "Alice")
            form_request = await service.retry_failed_request(form_request.id, "ops", "Ops")

            assert_equal(form_request.status, RequestStatus.FAILED.value)
            assert_true(form_request.failure_message.startswith("Retry attempt failed:"))

            history = await service.get_history(form_request.id)
            assert_equal(len(history), 3, "Created, Failed and one Retried row")
            assert_equal(history[-1].new_values_dict["Status"], "Failed")


async def test_rejection_through_workflow():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            form = await create_test_form(session)
            await create_test_definition(session, form.id)
            service = RequestService(session, ctx.target_data, ctx.event_bus)
            form_request = await create_test_request(service, form.id)

            result = await service.process_workflow_action(
                form_request.id, "reject", "mgr-1", "Morgan Manager", comments="Budget exceeded"
            )
            assert_true(result.success)
            assert_true(result.workflow_completed)
            assert_false(result.workflow_approved)
            assert_equal(result.message, "Workflow completed: request rejected")

            form_request = await service.get_request(form_request.id)
            assert_equal(form_request.status, RequestStatus.REJECTED.value)
            assert_equal(form_request.rejection_reason, "Budget exceeded")
            assert_equal(
                change_types(await service.get_history(form_request.id)),
                [FormRequestChangeType.CREATED.value, FormRequestChangeType.REJECTED.value],
            )

        assert_equal(await ctx.target_rows("customers", {"Name": "Jane Doe"}), [], "Rejected requests touch nothing")


async def test_direct_rejection_cancels_workflow():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            form = await create_test_form(session)
            await create_test_definition(session, form.id)
            service = RequestService(session, ctx.target_data, ctx.event_bus)
            form_request = await create_test_request(service, form.id)

            await assert_raises_async(ValueError, service.reject_request(form_request.id, "admin", "Admin", "  "))

            rejected = await service.reject_request(form_request.id, "admin", "Admin", "Duplicate of another request")
            assert_equal(rejected.status, RequestStatus.REJECTED.value)

            instance = await WorkflowEngine(session).get_instance(form_request.workflow_instance_id)
            assert_equal(instance.status, WorkflowInstanceStatus.CANCELLED.value)

            assert_equal(await service.reject_request(form_request.id, "admin", "Admin", "Again"), None)


async def test_manual_approval_preconditions():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            form = await create_test_form(session)
            await create_test_definition(session, form.id)
            service = RequestService(session, ctx.target_data, ctx.event_bus)
            form_request = await create_test_request(service, form.id)

            blocked = await service.approve_request(form_request.id, "admin", "Admin")
            assert_equal(blocked, None, "A running workflow owns the decision")

            await assert_raises_async(ValueError, service.get_request("missing"))
            assert_equal(await service.retry_failed_request(form_request.id, "ops", "Ops"), None)
            assert_equal(await service.apply_approved_request(form_request.id, "ops", "Ops"), None)


async def test_manual_approval_after_failed_workflow():
    """An administrator can settle a request whose workflow could not route"""
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            form = await create_test_form(session)
            never = ("Amount", "GREATER_THAN", 10 ** 12)
            await create_test_definition(
                session, form.id,
                [start_step(), branch_step("b1", []), branch_step("b2", []), end_step()],
                [
                    transition("start", "b1"),
                    transition("b1", "end", never),
                    transition("b1", "b2"),
                    transition("b2", "end", never),
                    transition("b2", "b1"),
                ],
            )
            service = RequestService(session, ctx.target_data, ctx.event_bus)
            form_request = await create_test_request(service, form.id)
            assert_equal(form_request.status, RequestStatus.PENDING.value)

            applied = await service.approve_request(form_request.id, "admin", "Admin", comments="Routing fixed by hand")
            assert_equal(applied.status, RequestStatus.APPLIED.value)
            assert_equal(applied.approved_by, "admin")


async def test_field_updates_respect_step_configuration():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            form = await create_test_form(session)
            steps, transitions = single_approval_workflow(field_configurations={"Amount": {"is_read_only": True}})
            await create_test_definition(session, form.id, steps, transitions)
            service = RequestService(session, ctx.target_data, ctx.event_bus)
            form_request = await create_test_request(service, form.id)

            result = await service.process_workflow_action(
                form_request.id, "approve", "mgr-1", "Morgan",
                field_updates={"Amount": "1", "Email": "corrected@example.com"},
            )
            assert_true(result.success)
            assert_equal(result.additional_data.get("ignored_fields"), ["Amount"])

            form_request = await service.get_request(form_request.id)
            assert_equal(form_request.field_values_dict["Email"], "corrected@example.com")
            assert_equal(form_request.field_values_dict["Amount"], "1500.50")

        rows = await ctx.target_rows("customers", {"Id": 42})
        assert_equal(rows[0]["Email"], "corrected@example.com", "Edits made at the step are applied")


async def test_workflow_action_checks():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            form = await create_test_form(session)
            steps = [
                start_step(),
                approval_step("manager_approval"),
                approval_step("director_approval", roles=["Director"], minimum_approvers=2),
                end_step(),
            ]
            transitions = [
                transition("start", "manager_approval"),
                transition("manager_approval", "director_approval"),
                transition("director_approval", "end"),
            ]
            await create_test_definition(session, form.id, steps, transitions)
            service = RequestService(session, ctx.target_data, ctx.event_bus)
            form_request = await create_test_request(service, form.id)

            unknown = await service.process_workflow_action(form_request.id, "escalate", "m1", "Morgan")
            assert_false(unknown.success)

            forbidden = await service.process_workflow_action(form_request.id, "approve", "c1", "Casey", actor_roles=["Clerk"])
            assert_false(forbidden.success)
            assert_in("not allowed", forbidden.message)

            first = await service.process_workflow_action(form_request.id, "approve", "m1", "Morgan", actor_roles=["Manager"])
            assert_true(first.success)
            assert_equal(first.message, "Step 'Manager Approval' completed")
            assert_equal(first.current_step_name, "Director Approval")
            assert_equal(first.request_status, RequestStatus.PENDING)

            partial = await service.process_workflow_action(form_request.id, "approve", "d1", "Dana", actor_roles=["Director"])
            assert_equal(partial.message, "Approval recorded for step 'Director Approval'")
            assert_false(partial.workflow_completed)

            final = await service.complete_workflow_step(
                form_request.id, "director_approval", WorkflowStepAction.APPROVED, "d2", "Drew", actor_roles=["Director"]
            )
            assert_true(final.workflow_completed)
            assert_equal(final.request_status, RequestStatus.APPLIED)

            closed = await service.process_workflow_action(form_request.id, "approve", "d3", "Dee")
            assert_false(closed.success, "Completed workflows take no further actions")

        async with ctx.get_session() as session:
            service = RequestService(session, ctx.target_data)
            plain = await create_test_request(service, (await create_test_form(session, name="No workflow")).id)
            no_workflow = await service.process_workflow_action(plain.id, "approve", "m1", "Morgan")
            assert_equal(no_workflow.message, "Request has no workflow")

        async with ctx.get_session() as session:
            form = await create_test_form(session, name="Board approval")
            steps, transitions = single_approval_workflow(minimum_approvers=2)
            await create_test_definition(session, form.id, steps, transitions)
            service = RequestService(session, ctx.target_data)
            board = await create_test_request(service, form.id)

            single = await service.process_workflow_action(board.id, "complete", "bob", "Bob")
            assert_true(single.success)
            assert_false(single.workflow_completed, "One actor cannot satisfy a two-approver step")
            assert_equal(single.message, "Approval recorded for step 'Manager Approval'")
            assert_equal(single.request_status, RequestStatus.PENDING)


async def test_history_matches_transitions_and_listing():
    async with TestContext(start_event_bus=False) as ctx:
        async with ctx.get_session() as session:
            form = await create_test_form(session)
            service = RequestService(session, ctx.target_data)

            applied = await create_test_request(service, form.id, requested_by="alice")
            await service.apply_approved_request(applied.id, "alice", "Alice")

            failed = await create_test_request(
                service, form.id,
                request_type=RequestType.DELETE,
                original_values={"Id": 999},
                requested_by="bob",
            )
            await service.apply_approved_request(failed.id, "bob", "Bob")

            for form_request, transitions in ((applied, 2), (failed, 2)):
                history = await service.get_history(form_request.id)
                assert_equal(len(history), transitions, f"History rows for {form_request.status}")

            assert_equal([r.id for r in await service.list_requests(status=RequestStatus.FAILED)], [failed.id])
            assert_equal([r.id for r in await service.list_requests(requested_by="alice")], [applied.id])
            assert_equal(len(await service.list_requests(form_definition_id=form.id)), 2)
            print_info("History rows: Created + one per status change")


async def main():
    """Run all request lifecycle tests"""
    return await run_tests("Request Lifecycle Tests", [
        ("Workflow approval applies insert", test_workflow_approval_applies_insert),
        ("No workflow: approved then applied", test_no_workflow_approved_then_applied),
        ("Insert keeps text values verbatim", test_insert_keeps_text_values_verbatim),
        ("Update filters on primary key only", test_update_filters_on_primary_key_only),
        ("Delete by composite key", test_delete_by_composite_key),
        ("No primary key fails", test_no_primary_key_fails),
        ("Missing key value fails", test_missing_key_value_fails),
        ("Retry after failure", test_retry_after_failure),
        ("Retry that fails again", test_retry_that_fails_again),
        ("Rejection through workflow", test_rejection_through_workflow),
        ("Direct rejection cancels workflow", test_direct_rejection_cancels_workflow),
        ("Manual approval preconditions", test_manual_approval_preconditions),
        ("Manual approval after failed workflow", test_manual_approval_after_failed_workflow),
        ("Field updates respect step configuration", test_field_updates_respect_step_configuration),
        ("Workflow action checks", test_workflow_action_checks),
        ("History matches transitions", test_history_matches_transitions_and_listing),
    ])


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
