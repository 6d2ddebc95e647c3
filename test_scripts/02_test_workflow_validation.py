#!/usr/bin/env python3
"""
Test: Workflow definition validation
Purpose: Verify structural checks on workflow definitions

Tests:
- A well-formed definition has no errors
- Start/End step cardinality
- Reachability from the start step
- Approval, Branch and Parallel step rules
- Dangling transitions
- Invalid definitions cannot be activated
"""

import asyncio
import sys

from fixtures import (
    run_tests, TestContext,
    create_test_form, create_test_definition,
    start_step, end_step, approval_step, branch_step, parallel_step, transition, single_approval_workflow,
    assert_equal, assert_true, assert_raises_async
)

from requestflow.core.definition_store import DefinitionStore
from requestflow.core.workflow_engine import WorkflowValidationError


def has_error(errors, fragment):
    return any(fragment in error for error in errors)


async def _errors_for(steps, transitions):
    """Store an inactive definition and validate it"""
    async with TestContext(start_event_bus=False) as ctx:
        async with ctx.get_session() as session:
            form = await create_test_form(session)
            definition = await create_test_definition(session, form.id, steps, transitions, is_active=False)
            return await DefinitionStore(session).validate(definition.id)


async def test_valid_definition():
    steps, transitions = single_approval_workflow()
    errors = await _errors_for(steps, transitions)
    assert_equal(errors, [], "A start-approval-end chain is valid")


async def test_missing_start_step():
    errors = await _errors_for(
        [approval_step("review"), end_step()],
        [transition("review", "end")],
    )
    assert_true(has_error(errors, "exactly one start step"), f"Got {errors}")


async def test_two_start_steps():
    errors = await _errors_for(
        [start_step("start"), start_step("start_2", "Second start"), end_step()],
        [transition("start", "end"), transition("start_2", "end")],
    )
    assert_true(has_error(errors, "only have one start step"), f"Got {errors}")


async def test_missing_end_step():
    errors = await _errors_for(
        [start_step(), approval_step("review")],
        [transition("start", "review")],
    )
    assert_true(has_error(errors, "at least one end step"), f"Got {errors}")


async def test_unreachable_step():
    errors = await _errors_for(
        [start_step(), approval_step("review"), approval_step("orphan"), end_step()],
        [transition("start", "review"), transition("review", "end"), transition("orphan", "end")],
    )
    assert_true(has_error(errors, "'Orphan' (orphan) is not reachable"), f"Got {errors}")
    assert_equal(len(errors), 1, "Only the orphan is reported")


async def test_approval_needs_roles():
    errors = await _errors_for(
        [start_step(), approval_step("review", roles=[]), end_step()],
        [transition("start", "review"), transition("review", "end")],
    )
    assert_true(has_error(errors, "must have at least one assigned role"), f"Got {errors}")


async def test_branch_needs_two_transitions():
    errors = await _errors_for(
        [
            start_step(),
            branch_step("route", [("Amount", "GREATER_THAN", 1000, "end")]),
            end_step(),
        ],
        [transition("start", "route"), transition("route", "end")],
    )
    assert_true(has_error(errors, "must have at least two outgoing transitions"), f"Got {errors}")


async def test_branch_condition_unknown_target():
    errors = await _errors_for(
        [
            start_step(),
            branch_step("route", [("Amount", "GREATER_THAN", 1000, "nowhere")]),
            approval_step("review"),
            end_step(),
        ],
        [transition("start", "route"), transition("route", "review"), transition("route", "end"), transition("review", "end")],
    )
    assert_true(has_error(errors, "routes to unknown step 'nowhere'"), f"Got {errors}")


async def test_parallel_rules():
    errors = await _errors_for(
        [start_step(), parallel_step("reviews", []), end_step()],
        [transition("start", "reviews"), transition("reviews", "end")],
    )
    assert_true(has_error(errors, "must have at least one parallel step"), f"Got {errors}")

    errors = await _errors_for(
        [start_step(), parallel_step("reviews", ["legal", "ghost"]), approval_step("legal"), end_step()],
        [transition("start", "reviews"), transition("reviews", "end")],
    )
    assert_true(has_error(errors, "includes unknown step 'ghost'"), f"Got {errors}")


async def test_parallel_members_are_reachable():
    """Members reached only through the parallel group are not orphans"""
    errors = await _errors_for(
        [
            start_step(),
            parallel_step("reviews", ["legal", "finance"]),
            approval_step("legal", roles=["Legal"]),
            approval_step("finance", roles=["Finance"]),
            end_step(),
        ],
        [transition("start", "reviews"), transition("reviews", "end")],
    )
    assert_equal(errors, [])


async def test_dangling_transition():
    errors = await _errors_for(
        [start_step(), end_step()],
        [transition("start", "end"), transition("start", "missing")],
    )
    assert_true(has_error(errors, "references unknown step 'missing'"), f"Got {errors}")


async def test_invalid_definition_cannot_be_activated():
    async with TestContext(start_event_bus=False) as ctx:
        async with ctx.get_session() as session:
            form = await create_test_form(session)

            error = await assert_raises_async(
                WorkflowValidationError,
                create_test_definition(session, form.id, [approval_step("review"), end_step()], [transition("review", "end")]),
            )
            assert_true(has_error(error.errors, "exactly one start step"))
            await session.rollback()

            draft = await create_test_definition(
                session, form.id, [approval_step("review"), end_step()], [transition("review", "end")], is_active=False
            )
            error = await assert_raises_async(WorkflowValidationError, DefinitionStore(session).activate(draft.id))
            assert_true(len(error.errors) > 0)


async def main():
    """Run all validation tests"""
    return await run_tests("Workflow Validation Tests", [
        ("Valid definition", test_valid_definition),
        ("Missing start step", test_missing_start_step),
        ("Two start steps", test_two_start_steps),
        ("Missing end step", test_missing_end_step),
        ("Unreachable step", test_unreachable_step),
        ("Approval needs roles", test_approval_needs_roles),
        ("Branch needs two transitions", test_branch_needs_two_transitions),
        ("Branch condition with unknown target", test_branch_condition_unknown_target),
        ("Parallel rules", test_parallel_rules),
        ("Parallel members are reachable", test_parallel_members_are_reachable),
        ("Dangling transition", test_dangling_transition),
        ("Invalid definition cannot be activated", test_invalid_definition_cannot_be_activated),
    ])


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
