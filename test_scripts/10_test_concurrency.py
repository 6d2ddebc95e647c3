#!/usr/bin/env python3
"""
Test: Concurrent workflow actions
Purpose: Verify a step is decided once when actors race

Tests:
- Two approvers racing on the same step: exactly one wins
- Parallel members approved at the same time both count
- Concurrent request creation
"""

import asyncio
import sys

from fixtures import (
    print_info, run_tests, TestContext,
    create_test_form, create_test_definition, create_test_request,
    start_step, end_step, approval_step, parallel_step, transition,
    assert_equal, assert_true
)

from requestflow.core.request_service import RequestService
from requestflow.models.schemas import FormRequestChangeType, RequestStatus, WorkflowStepAction


async def _setup(ctx, steps=None, transitions=None):
    async with ctx.get_session() as session:
        form = await create_test_form(session)
        await create_test_definition(session, form.id, steps, transitions)
        service = RequestService(session, ctx.target_data, ctx.event_bus)
        form_request = await create_test_request(service, form.id)
        return form, form_request


async def test_racing_approvers():
    async with TestContext() as ctx:
        _, form_request = await _setup(ctx)

        async def approve(actor_id):
            async with ctx.get_session() as session:
                service = RequestService(session, ctx.target_data, ctx.event_bus)
                return await service.process_workflow_action(form_request.id, "approve", actor_id, actor_id.title())

        results = await asyncio.gather(approve("mgr-1"), approve("mgr-2"))
        winners = [r for r in results if r.success]
        assert_equal(len(winners), 1, f"Got {[r.message for r in results]}")

        loser = next(r for r in results if not r.success)
        print_info(f"Second approver: {loser.message}")

        async with ctx.get_session() as session:
            service = RequestService(session, ctx.target_data)
            stored = await service.get_request(form_request.id)
            assert_equal(stored.status, RequestStatus.APPLIED.value)

            history = await service.get_history(form_request.id)
            approvals = [h for h in history if h.change_type == FormRequestChangeType.APPROVED.value]
            assert_equal(len(approvals), 1, "The request is approved once")

        rows = await ctx.target_rows("customers", {"Name": "Jane Doe"})
        assert_equal(len(rows), 1, "The change is applied once")


async def test_parallel_members_at_once():
    steps = [
        start_step(),
        parallel_step("reviews", ["legal", "finance"]),
        approval_step("legal", roles=["Legal"]),
        approval_step("finance", roles=["Finance"]),
        end_step(),
    ]
    transitions = [transition("start", "reviews"), transition("reviews", "end")]

    async with TestContext() as ctx:
        _, form_request = await _setup(ctx, steps, transitions)

        async def approve(step_id, actor_id, role):
            async with ctx.get_session() as session:
                service = RequestService(session, ctx.target_data, ctx.event_bus)
                return await service.complete_workflow_step(
                    form_request.id, step_id, WorkflowStepAction.APPROVED, actor_id, actor_id.title(), actor_roles=[role]
                )

        results = await asyncio.gather(
            approve("legal", "lee", "Legal"),
            approve("finance", "fin", "Finance"),
        )
        assert_true(all(r.success for r in results), f"Got {[r.message for r in results]}")
        assert_equal(sum(1 for r in results if r.workflow_completed), 1, "Only the last member completes the group")

        async with ctx.get_session() as session:
            stored = await RequestService(session, ctx.target_data).get_request(form_request.id)
            assert_equal(stored.status, RequestStatus.APPLIED.value)


async def test_concurrent_request_creation():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            form = await create_test_form(session)
            await create_test_definition(session, form.id)

        async def create(n):
            async with ctx.get_session() as session:
                service = RequestService(session, ctx.target_data, ctx.event_bus)
                return await create_test_request(
                    service, form.id,
                    field_values={"Name": f"Customer {n}", "Amount": str(n * 100)},
                    requested_by=f"user{n}",
                )

        created = await asyncio.gather(*(create(n) for n in range(5)))
        assert_equal(len({r.id for r in created}), 5)
        assert_equal(len({r.workflow_instance_id for r in created}), 5, "Each request gets its own instance")

        async with ctx.get_session() as session:
            service = RequestService(session, ctx.target_data)
            for form_request in created:
                history = await service.get_history(form_request.id)
                assert_equal([h.sequence_number for h in history], [1])


async def main():
    """Run all concurrency tests"""
    return await run_tests("Concurrency Tests", [
        ("Racing approvers", test_racing_approvers),
        ("Parallel members at once", test_parallel_members_at_once),
        ("Concurrent request creation", test_concurrent_request_creation),
    ])


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
