#!/usr/bin/env python3
"""
Test: Reconciliation and diagnostics
Purpose: Verify requests left behind by a finished workflow are settled

Tests:
- Approved-but-not-applied requests are listed
- Completed workflows whose request never followed are found and settled
- Rejected workflows settle as Rejected
- The sweeper records its runs
- Diagnostics describe the request and flag anomalies
"""

import asyncio
import sys

from fixtures import (
    run_tests, TestContext,
    create_test_form, create_test_definition, create_test_request,
    start_step, end_step, branch_step, transition,
    assert_equal, assert_true, assert_false, assert_in, assert_not_in
)

from requestflow.core.reconciliation import ReconciliationSweeper
from requestflow.core.request_service import RequestService
from requestflow.core.workflow_engine import WorkflowEngine
from requestflow.models.schemas import RequestStatus, WorkflowStepAction


async def _finish_workflow_behind_request(ctx, session, action=WorkflowStepAction.APPROVED, comments=None):
    """Complete the workflow without the request following, as after a crash"""
    form = await create_test_form(session)
    await create_test_definition(session, form.id)
    service = RequestService(session, ctx.target_data)
    form_request = await create_test_request(service, form.id)

    engine = WorkflowEngine(session)
    assert_true(await engine.complete_step(
        form_request.workflow_instance_id, "manager_approval", "mgr-1", "Morgan", action, comments
    ))
    await session.commit()
    return form_request


async def test_approved_but_not_applied():
    async with TestContext(start_event_bus=False) as ctx:
        async with ctx.get_session() as session:
            form = await create_test_form(session)
            service = RequestService(session, ctx.target_data)

            waiting = await create_test_request(service, form.id)
            applied = await create_test_request(service, form.id)
            await service.apply_approved_request(applied.id, "alice", "Alice")

            listed = await service.get_approved_but_not_applied()
            assert_equal([r.id for r in listed], [waiting.id])


async def test_stuck_pending_request_is_settled():
    async with TestContext(start_event_bus=False) as ctx:
        async with ctx.get_session() as session:
            form_request = await _finish_workflow_behind_request(ctx, session)

        async with ctx.get_session() as session:
            service = RequestService(session, ctx.target_data)
            stuck = await service.get_requests_with_completed_workflows_but_not_applied()
            assert_equal([r.id for r in stuck], [form_request.id])

            diagnostics = await service.get_workflow_diagnostics(form_request.id)
            assert_in("ANOMALY: workflow completed (approved) but request status is PENDING", diagnostics)

            assert_equal(await service.process_stuck_workflow_requests(), 1)

        async with ctx.get_session() as session:
            service = RequestService(session, ctx.target_data)
            settled = await service.get_request(form_request.id)
            assert_equal(settled.status, RequestStatus.APPLIED.value)
            assert_equal(settled.approved_by, "System")
            assert_equal(await service.get_requests_with_completed_workflows_but_not_applied(), [])
            assert_not_in("ANOMALY", await service.get_workflow_diagnostics(form_request.id))


async def test_stuck_approved_request_is_applied():
    async with TestContext(start_event_bus=False) as ctx:
        async with ctx.get_session() as session:
            form_request = await _finish_workflow_behind_request(ctx, session)
            service = RequestService(session, ctx.target_data)
            stored = await service.get_request(form_request.id)
            stored.status = RequestStatus.APPROVED.value
            await session.commit()

        async with ctx.get_session() as session:
            service = RequestService(session, ctx.target_data)
            assert_equal(await service.process_stuck_workflow_requests("ops", "Ops"), 1)
            settled = await service.get_request(form_request.id)
            assert_equal(settled.status, RequestStatus.APPLIED.value)
            assert_equal(settled.applied_record_key, "42")


async def test_stuck_rejected_workflow():
    async with TestContext(start_event_bus=False) as ctx:
        async with ctx.get_session() as session:
            form_request = await _finish_workflow_behind_request(
                ctx, session, WorkflowStepAction.REJECTED, "Wrong customer"
            )

        async with ctx.get_session() as session:
            service = RequestService(session, ctx.target_data)
            assert_in("ANOMALY: workflow completed (rejected)", await service.get_workflow_diagnostics(form_request.id))
            assert_equal(await service.process_stuck_workflow_requests(), 1)

            settled = await service.get_request(form_request.id)
            assert_equal(settled.status, RequestStatus.REJECTED.value)
            assert_equal(settled.rejection_reason, "Wrong customer")

        assert_equal(await ctx.target_rows("customers", {"Name": "Jane Doe"}), [])


async def test_sweeper_run_once():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            form_request = await _finish_workflow_behind_request(ctx, session)

        sweeper = ReconciliationSweeper(ctx.db, ctx.event_bus, ctx.target_data, interval_seconds=3600)
        assert_false(sweeper.running)

        assert_equal(await sweeper.run_once(), 1)
        assert_equal(await sweeper.run_once(), 0, "Settled requests are not picked up again")

        stats = sweeper.get_stats()
        assert_equal(stats["runs"], 2)
        assert_equal(stats["last_processed"], 0)
        assert_equal(stats["interval_seconds"], 3600)
        assert_true(stats["last_run_at"] is not None)

        async with ctx.get_session() as session:
            stored = await RequestService(session, ctx.target_data).get_request(form_request.id)
            assert_equal(stored.status, RequestStatus.APPLIED.value)


async def test_sweeper_start_and_stop():
    async with TestContext(start_event_bus=False) as ctx:
        sweeper = ReconciliationSweeper(ctx.db, target_data=ctx.target_data, interval_seconds=3600)
        await sweeper.start()
        assert_true(sweeper.running)
        await asyncio.sleep(0.5)
        await sweeper.stop()

        assert_false(sweeper.running)
        assert_equal(sweeper.runs, 1, "The first sweep runs immediately")


async def test_diagnostics():
    async with TestContext(start_event_bus=False) as ctx:
        async with ctx.get_session() as session:
            form = await create_test_form(session)
            service = RequestService(session, ctx.target_data)

            plain = await create_test_request(service, form.id)
            report = await service.get_workflow_diagnostics(plain.id)
            assert_in(f"Request {plain.id}", report)
            assert_in("Status: APPROVED", report)
            assert_in("Workflow: none", report)

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
                name="Looping workflow",
            )
            looping = await create_test_request(service, form.id)
            report = await service.get_workflow_diagnostics(looping.id)

            assert_in("Definition: Looping workflow (version 1)", report)
            assert_in("Failure reason: Routing loop detected", report)
            assert_in("ANOMALY: workflow failed and request is still Pending", report)
            assert_in("Steps:", report)

            await create_test_definition(session, form.id, name="Cancellable workflow")
            cancelled = await create_test_request(service, form.id)
            engine = WorkflowEngine(session)
            assert_true(await engine.cancel_workflow(cancelled.workflow_instance_id, "ops", "Ops", "Withdrawn"))
            await session.commit()

            report = await service.get_workflow_diagnostics(cancelled.id)
            assert_in("Status: CANCELLED", report)
            assert_in("ANOMALY: workflow cancelled and request is still Pending", report)

            rejected = await create_test_request(service, form.id)
            await service.reject_request(rejected.id, "ops", "Ops", "Duplicate")
            assert_not_in("ANOMALY", await service.get_workflow_diagnostics(rejected.id))


async def main():
    """Run all reconciliation tests"""
    return await run_tests("Reconciliation Tests", [
        ("Approved but not applied", test_approved_but_not_applied),
        ("Stuck pending request is settled", test_stuck_pending_request_is_settled),
        ("Stuck approved request is applied", test_stuck_approved_request_is_applied),
        ("Stuck rejected workflow", test_stuck_rejected_workflow),
        ("Sweeper run once", test_sweeper_run_once),
        ("Sweeper start and stop", test_sweeper_start_and_stop),
        ("Diagnostics", test_diagnostics),
    ])


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
