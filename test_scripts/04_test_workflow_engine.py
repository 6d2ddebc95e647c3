#!/usr/bin/env python3
"""
Test: Workflow Engine
Purpose: Verify instance creation, routing and step completion

Tests:
- Start step is completed automatically and routing stops at the first gate
- Definitions without exactly one start step are refused
- Branch conditions and default transitions
- Parallel groups (all members and any member)
- Multi-approver steps and duplicate approvers
- Rejection, skipping and cancellation close every open step
- Routing loops fail the instance
- Progress, pending steps and access checks
- Events are published in order after commit
"""

import asyncio
import sys

from fixtures import (
    print_info, run_tests, TestContext, EventCollector,
    create_test_form, create_test_definition, create_test_request,
    start_step, end_step, approval_step, branch_step, parallel_step, transition, single_approval_workflow,
    assert_equal, assert_true, assert_false, assert_in, assert_raises_async
)

from requestflow.core.request_service import RequestService
from requestflow.core.workflow_engine import WorkflowEngine, NoStartStepError, WorkflowConfigurationError, was_rejected
from requestflow.models.schemas import (
    OPEN_STEP_STATUSES,
    RequestStatus,
    WorkflowInstanceStatus,
    WorkflowStepAction,
    WorkflowStepInstanceStatus,
)


async def start_request(ctx, session, steps, transitions, field_values=None):
    """Create a form, an active definition and a request running on it"""
    form = await create_test_form(session)
    await create_test_definition(session, form.id, steps, transitions)
    service = RequestService(session, ctx.target_data, ctx.event_bus)
    form_request = await create_test_request(service, form.id, field_values=field_values)
    engine = WorkflowEngine(session, ctx.event_bus)
    instance = await engine.get_instance(form_request.workflow_instance_id)
    return form_request, engine, instance


def status_of(instance, step_id):
    for step_instance in instance.step_instances:
        if step_instance.step_id == step_id:
            return step_instance.status
    return None


def open_steps(instance):
    return [si.step_id for si in instance.step_instances if si.status in OPEN_STEP_STATUSES]


def two_approval_workflow():
    steps = [
        start_step(),
        approval_step("manager_approval"),
        approval_step("director_approval", roles=["Director"]),
        end_step(),
    ]
    transitions = [
        transition("start", "manager_approval"),
        transition("manager_approval", "director_approval"),
        transition("director_approval", "end"),
    ]
    return steps, transitions


def amount_branch_workflow():
    steps = [
        start_step(),
        branch_step("route", [("Amount", "GREATER_THAN", 10000, "director_approval")]),
        approval_step("manager_approval"),
        approval_step("director_approval", roles=["Director"]),
        end_step(),
    ]
    transitions = [
        transition("start", "route"),
        transition("route", "director_approval", ("Amount", "GREATER_THAN", 10000)),
        transition("route", "manager_approval"),
        transition("manager_approval", "end"),
        transition("director_approval", "end"),
    ]
    return steps, transitions


def parallel_workflow(require_all=True):
    steps = [
        start_step(),
        parallel_step("reviews", ["legal", "finance"], require_all=require_all),
        approval_step("legal", roles=["Legal"]),
        approval_step("finance", roles=["Finance"]),
        end_step(),
    ]
    transitions = [transition("start", "reviews"), transition("reviews", "end")]
    return steps, transitions


async def test_start_runs_to_first_gate():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            steps, transitions = single_approval_workflow()
            form_request, engine, instance = await start_request(ctx, session, steps, transitions)

            assert_equal(form_request.status, RequestStatus.PENDING.value)
            assert_equal(instance.status, WorkflowInstanceStatus.IN_PROGRESS.value)
            assert_equal(instance.current_step_id, "manager_approval")
            assert_equal(instance.active_step_ids_list, ["manager_approval"])
            assert_equal(status_of(instance, "start"), WorkflowStepInstanceStatus.COMPLETED.value)
            assert_equal(status_of(instance, "manager_approval"), WorkflowStepInstanceStatus.IN_PROGRESS.value)
            assert_equal(status_of(instance, "end"), WorkflowStepInstanceStatus.PENDING.value)

            start_instance = next(si for si in instance.step_instances if si.step_id == "start")
            assert_equal(start_instance.action, WorkflowStepAction.COMPLETED.value)


async def test_missing_start_step_refused():
    async with TestContext(start_event_bus=False) as ctx:
        async with ctx.get_session() as session:
            form = await create_test_form(session)
            broken = await create_test_definition(
                session, form.id, [approval_step("review"), end_step()], [transition("review", "end")], is_active=False
            )
            service = RequestService(session, ctx.target_data)
            form_request = await create_test_request(service, form.id)

            engine = WorkflowEngine(session)
            await assert_raises_async(
                NoStartStepError,
                engine.start_workflow(form_request.id, broken.id, "alice", "Alice"),
            )


async def test_two_start_steps_refused():
    async with TestContext(start_event_bus=False) as ctx:
        async with ctx.get_session() as session:
            form = await create_test_form(session)
            broken = await create_test_definition(
                session, form.id,
                [start_step("start"), start_step("start_2", "Second start"), end_step()],
                [transition("start", "end"), transition("start_2", "end")],
                is_active=False,
            )
            service = RequestService(session, ctx.target_data)
            form_request = await create_test_request(service, form.id)

            engine = WorkflowEngine(session)
            await assert_raises_async(
                WorkflowConfigurationError,
                engine.start_workflow(form_request.id, broken.id, "alice", "Alice"),
            )
            assert_equal(await engine.get_instance_for_request(form_request.id), None, "No instance is created")


async def test_branch_routes_on_field_values():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            steps, transitions = amount_branch_workflow()
            _, _, big = await start_request(ctx, session, steps, transitions, {"Name": "Big", "Amount": "15000"})
            assert_equal(big.current_step_id, "director_approval")
            assert_equal(status_of(big, "route"), WorkflowStepInstanceStatus.COMPLETED.value)
            assert_equal(status_of(big, "manager_approval"), WorkflowStepInstanceStatus.PENDING.value)

        async with ctx.get_session() as session:
            steps, transitions = amount_branch_workflow()
            _, engine, small = await start_request(ctx, session, steps, transitions, {"Name": "Small", "Amount": "500"})
            assert_equal(small.current_step_id, "manager_approval", "Unmatched branch falls back to the default transition")

            next_step = await engine.get_next_step_id(small.id, "route", {"Amount": 20000})
            assert_equal(next_step, "director_approval")


async def test_parallel_requires_all_members():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            steps, transitions = parallel_workflow(require_all=True)
            _, engine, instance = await start_request(ctx, session, steps, transitions)

            assert_equal(instance.current_step_id, "reviews")
            assert_equal(sorted(instance.active_step_ids_list), ["finance", "legal"])

            completed = await engine.complete_step(instance.id, "legal", "l1", "Lee Legal", WorkflowStepAction.APPROVED)
            await session.commit()
            assert_true(completed)

            instance = await engine.get_instance(instance.id)
            assert_equal(instance.status, WorkflowInstanceStatus.IN_PROGRESS.value)
            assert_equal(instance.active_step_ids_list, ["finance"], "Finished members leave the active set")

            completed = await engine.complete_step(instance.id, "finance", "f1", "Fay Finance", WorkflowStepAction.APPROVED)
            await session.commit()
            assert_true(completed)

            instance = await engine.get_instance(instance.id)
            assert_equal(instance.status, WorkflowInstanceStatus.COMPLETED.value)
            assert_equal(status_of(instance, "reviews"), WorkflowStepInstanceStatus.COMPLETED.value)
            assert_equal(open_steps(instance), [])


async def test_parallel_any_member():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            steps, transitions = parallel_workflow(require_all=False)
            _, engine, instance = await start_request(ctx, session, steps, transitions)

            completed = await engine.complete_step(instance.id, "finance", "f1", "Fay Finance", WorkflowStepAction.APPROVED)
            await session.commit()
            assert_true(completed)

            instance = await engine.get_instance(instance.id)
            assert_equal(instance.status, WorkflowInstanceStatus.COMPLETED.value)
            assert_equal(status_of(instance, "legal"), WorkflowStepInstanceStatus.SKIPPED.value)
            assert_false(was_rejected(instance))


async def test_minimum_approvers():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            steps, transitions = single_approval_workflow(roles=["Board"], minimum_approvers=2)
            _, engine, instance = await start_request(ctx, session, steps, transitions)

            assert_true(await engine.complete_step(instance.id, "manager_approval", "b1", "Board One", WorkflowStepAction.APPROVED))
            await session.commit()
            instance = await engine.get_instance(instance.id)
            step_instance = next(si for si in instance.step_instances if si.step_id == "manager_approval")
            assert_equal(step_instance.status, WorkflowStepInstanceStatus.IN_PROGRESS.value)
            assert_equal(len(step_instance.approvals_list), 1)

            duplicate = await engine.complete_step(instance.id, "manager_approval", "b1", "Board One", WorkflowStepAction.APPROVED)
            assert_false(duplicate, "The same approver cannot count twice")

            assert_true(await engine.complete_step(instance.id, "manager_approval", "b2", "Board Two", WorkflowStepAction.APPROVED))
            await session.commit()
            instance = await engine.get_instance(instance.id)
            assert_equal(instance.status, WorkflowInstanceStatus.COMPLETED.value)

            # "Completed" on an approval step is one vote, not a bypass of the quorum
            _, engine, other = await start_request(ctx, session, steps, transitions)
            assert_true(await engine.complete_step(other.id, "manager_approval", "b1", "Board One", WorkflowStepAction.COMPLETED))
            await session.commit()
            other = await engine.get_instance(other.id)
            assert_equal(other.status, WorkflowInstanceStatus.IN_PROGRESS.value)
            assert_equal(status_of(other, "manager_approval"), WorkflowStepInstanceStatus.IN_PROGRESS.value)

            repeat = await engine.complete_step(other.id, "manager_approval", "b1", "Board One", WorkflowStepAction.COMPLETED)
            assert_false(repeat, "Completing again does not add a second vote")

            assert_true(await engine.complete_step(other.id, "manager_approval", "b2", "Board Two", WorkflowStepAction.COMPLETED))
            await session.commit()
            other = await engine.get_instance(other.id)
            assert_equal(other.status, WorkflowInstanceStatus.COMPLETED.value)
            assert_false(was_rejected(other))


async def test_rejection_closes_workflow():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            steps, transitions = two_approval_workflow()
            _, engine, instance = await start_request(ctx, session, steps, transitions)

            rejected = await engine.complete_step(
                instance.id, "manager_approval", "m1", "Morgan", WorkflowStepAction.REJECTED, comments="Budget exceeded"
            )
            await session.commit()
            assert_true(rejected)

            instance = await engine.get_instance(instance.id)
            assert_equal(instance.status, WorkflowInstanceStatus.COMPLETED.value)
            assert_true(was_rejected(instance))
            assert_equal(open_steps(instance), [], "No step stays open on a terminal instance")
            assert_equal(instance.active_step_ids_list, [])
            assert_equal(status_of(instance, "director_approval"), WorkflowStepInstanceStatus.SKIPPED.value)

            again = await engine.complete_step(instance.id, "director_approval", "d1", "Dana", WorkflowStepAction.APPROVED)
            assert_false(again, "Terminal instances accept no completions")


async def test_skip_rules():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            steps = [
                start_step(),
                approval_step("optional_review", is_required=False),
                approval_step("manager_approval"),
                end_step(),
            ]
            transitions = [
                transition("start", "optional_review"),
                transition("optional_review", "manager_approval"),
                transition("manager_approval", "end"),
            ]
            _, engine, instance = await start_request(ctx, session, steps, transitions)

            assert_true(await engine.complete_step(instance.id, "optional_review", "m1", "Morgan", WorkflowStepAction.SKIPPED))
            await session.commit()
            instance = await engine.get_instance(instance.id)
            assert_equal(status_of(instance, "optional_review"), WorkflowStepInstanceStatus.SKIPPED.value)
            assert_equal(instance.current_step_id, "manager_approval")

            skipped = await engine.complete_step(instance.id, "manager_approval", "m1", "Morgan", WorkflowStepAction.SKIPPED)
            assert_false(skipped, "Required steps cannot be skipped")


async def test_inactive_step_cannot_be_completed():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            steps, transitions = two_approval_workflow()
            _, engine, instance = await start_request(ctx, session, steps, transitions)

            early = await engine.complete_step(instance.id, "director_approval", "d1", "Dana", WorkflowStepAction.APPROVED)
            assert_false(early, "Only active steps can be completed")

            unknown = await engine.complete_step(instance.id, "no_such_step", "d1", "Dana", WorkflowStepAction.APPROVED)
            assert_false(unknown)

            no_action = await engine.complete_step(instance.id, "manager_approval", "m1", "Morgan", WorkflowStepAction.NONE)
            assert_false(no_action)


async def test_cancel_workflow():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            steps, transitions = two_approval_workflow()
            _, engine, instance = await start_request(ctx, session, steps, transitions)

            assert_true(await engine.cancel_workflow(instance.id, "admin", "Admin", "Duplicate request"))
            await session.commit()

            instance = await engine.get_instance(instance.id)
            assert_equal(instance.status, WorkflowInstanceStatus.CANCELLED.value)
            assert_equal(instance.failure_reason, "Duplicate request")
            assert_equal(open_steps(instance), [])

            assert_false(await engine.cancel_workflow(instance.id, "admin", "Admin", "Again"))


async def test_routing_loop_fails_instance():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            never = ("Amount", "GREATER_THAN", 10 ** 12)
            steps = [start_step(), branch_step("b1", []), branch_step("b2", []), end_step()]
            transitions = [
                transition("start", "b1"),
                transition("b1", "end", never),
                transition("b1", "b2"),
                transition("b2", "end", never),
                transition("b2", "b1"),
            ]
            form_request, _, instance = await start_request(ctx, session, steps, transitions)

            assert_equal(instance.status, WorkflowInstanceStatus.FAILED.value)
            assert_in("Routing loop detected", instance.failure_reason)
            assert_equal(form_request.status, RequestStatus.PENDING.value, "A failed workflow decides nothing")
            print_info(f"Failure reason: {instance.failure_reason}")


async def test_progress_and_monotonic_completion():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            steps, transitions = two_approval_workflow()
            _, engine, instance = await start_request(ctx, session, steps, transitions)

            progress = await engine.get_workflow_progress(instance.id)
            assert_equal(progress.total_steps, 2, "Start and End are not counted")
            assert_equal(progress.completed_steps, 0)
            assert_equal(progress.current_step_name, "Manager Approval")
            assert_false(progress.is_stalled)
            assert_equal([s.step_id for s in progress.steps][0], "start")
            assert_equal([s.step_id for s in progress.steps][-1], "end")

            history = [progress.completed_steps]
            await engine.complete_step(instance.id, "manager_approval", "m1", "Morgan", WorkflowStepAction.APPROVED)
            await session.commit()
            progress = await engine.get_workflow_progress(instance.id)
            history.append(progress.completed_steps)
            assert_equal(progress.percent_complete, 50.0)
            assert_equal(progress.current_step_name, "Director Approval")

            await engine.complete_step(instance.id, "director_approval", "d1", "Dana", WorkflowStepAction.APPROVED)
            await session.commit()
            progress = await engine.get_workflow_progress(instance.id)
            history.append(progress.completed_steps)
            assert_equal(progress.percent_complete, 100.0)
            assert_equal(progress.days_in_current_step, None)

            assert_equal(history, sorted(history), "Completed steps never decrease")


async def test_pending_steps_and_access():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            steps, transitions = single_approval_workflow(roles=["Manager"])
            _, engine, instance = await start_request(ctx, session, steps, transitions)

            managers = await engine.get_pending_steps_for_user("m1", ["Manager"])
            assert_equal([si.step_id for si in managers], ["manager_approval"])
            assert_equal(await engine.get_pending_steps_for_user("c1", ["Clerk"]), [])
            assert_equal(len(await engine.get_pending_steps_for_user("root", ["Admin"])), 1, "Admins see every step")

            assert_true(await engine.can_user_access_step("m1", ["Manager"], instance.id, "manager_approval"))
            assert_false(await engine.can_user_access_step("c1", ["Clerk"], instance.id, "manager_approval"))
            assert_false(await engine.can_user_access_step("m1", ["Manager"], "missing-instance", "manager_approval"))


async def test_events_published_in_order():
    async with TestContext() as ctx:
        collector = EventCollector()
        collector.subscribe_all(ctx.event_bus)

        async with ctx.get_session() as session:
            steps, transitions = single_approval_workflow()
            form_request, _, _ = await start_request(ctx, session, steps, transitions)

        await ctx.event_bus.drain()

        assert_equal(
            collector.types(),
            ["workflow.started", "workflow.step_completed", "workflow.step_activated", "request.created"],
        )
        activated = collector.find_event(event_type="workflow.step_activated")
        assert_equal(activated["step_id"], "manager_approval")
        assert_equal(activated["assigned_roles"], ["Manager"])
        assert_equal(activated["form_request_id"], form_request.id)


async def main():
    """Run all workflow engine tests"""
    return await run_tests("Workflow Engine Tests", [
        ("Start runs to first gate", test_start_runs_to_first_gate),
        ("Missing start step refused", test_missing_start_step_refused),
        ("Two start steps refused", test_two_start_steps_refused),
        ("Branch routes on field values", test_branch_routes_on_field_values),
        ("Parallel requires all members", test_parallel_requires_all_members),
        ("Parallel any member", test_parallel_any_member),
        ("Minimum approvers", test_minimum_approvers),
        ("Rejection closes workflow", test_rejection_closes_workflow),
        ("Skip rules", test_skip_rules),
        ("Inactive step cannot be completed", test_inactive_step_cannot_be_completed),
        ("Cancel workflow", test_cancel_workflow),
        ("Routing loop fails instance", test_routing_loop_fails_instance),
        ("Progress and monotonic completion", test_progress_and_monotonic_completion),
        ("Pending steps and access", test_pending_steps_and_access),
        ("Events published in order", test_events_published_in_order),
    ])


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
