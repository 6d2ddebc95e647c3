#!/usr/bin/env python3
"""
Test: Workflow definition store
Purpose: Verify versioning, activation and copy-on-write edits

Tests:
- Versions increase per form and only one definition is active
- Editing an unused definition changes it in place
- Editing a used definition writes a new superseding version
- Running instances stay pinned to their version
- Used definitions cannot be deleted
"""

import asyncio
import sys

from fixtures import (
    run_tests, TestContext,
    create_test_form, create_test_definition, create_test_request,
    start_step, end_step, approval_step, transition, single_approval_workflow,
    assert_equal, assert_true, assert_false, assert_raises_async
)

from requestflow.core.definition_store import DefinitionStore
from requestflow.core.request_service import RequestService
from requestflow.core.workflow_engine import DefinitionNotFoundError
from requestflow.models.schemas import RequestStatus, WorkflowDefinitionUpdate


def two_step_workflow():
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


async def test_versions_and_single_active():
    async with TestContext(start_event_bus=False) as ctx:
        async with ctx.get_session() as session:
            form = await create_test_form(session)
            first = await create_test_definition(session, form.id, name="v1")
            second = await create_test_definition(session, form.id, name="v2")

            assert_equal(first.version, 1)
            assert_equal(second.version, 2)

        async with ctx.get_session() as session:
            store = DefinitionStore(session)
            definitions = await store.list_definitions(form.id)
            active = [d for d in definitions if d.is_active]
            assert_equal(len(active), 1, "Exactly one active definition per form")
            assert_equal(active[0].id, second.id)

            latest = await store.get_active_definition(form.id)
            assert_equal(latest.id, second.id)

            await store.activate(first.id)
            await session.commit()

        async with ctx.get_session() as session:
            store = DefinitionStore(session)
            assert_equal((await store.get_active_definition(form.id)).id, first.id)
            assert_false((await store.get_definition(second.id)).is_active)


async def test_missing_definition():
    async with TestContext(start_event_bus=False) as ctx:
        async with ctx.get_session() as session:
            await assert_raises_async(DefinitionNotFoundError, DefinitionStore(session).get_definition("nope"))


async def test_definition_for_unknown_form():
    async with TestContext(start_event_bus=False) as ctx:
        async with ctx.get_session() as session:
            await assert_raises_async(ValueError, create_test_definition(session, "no-such-form"))


async def test_edit_unused_definition_in_place():
    async with TestContext(start_event_bus=False) as ctx:
        async with ctx.get_session() as session:
            form = await create_test_form(session)
            definition = await create_test_definition(session, form.id)

            steps, transitions = two_step_workflow()
            updated = await DefinitionStore(session).update_definition(
                definition.id,
                WorkflowDefinitionUpdate(name="Two approvals", steps=steps, transitions=transitions, updated_by="designer"),
            )
            await session.commit()

            assert_equal(updated.id, definition.id, "Unused definitions are edited in place")
            assert_equal(updated.version, 1)

        async with ctx.get_session() as session:
            reloaded = await DefinitionStore(session).get_definition(definition.id)
            assert_equal(reloaded.name, "Two approvals")
            assert_equal([s.step_id for s in reloaded.steps], ["start", "manager_approval", "director_approval", "end"])
            assert_equal(len(reloaded.transitions), 3)


async def test_edit_used_definition_creates_version():
    async with TestContext(start_event_bus=False) as ctx:
        async with ctx.get_session() as session:
            form = await create_test_form(session)
            definition = await create_test_definition(session, form.id)
            service = RequestService(session, ctx.target_data)
            form_request = await create_test_request(service, form.id)

            steps, transitions = two_step_workflow()
            store = DefinitionStore(session)
            assert_true(await store.is_referenced(definition.id))

            new_version = await store.update_definition(
                definition.id,
                WorkflowDefinitionUpdate(steps=steps, transitions=transitions, updated_by="designer"),
            )
            await session.commit()

            assert_true(new_version.id != definition.id, "A used definition is never edited")
            assert_equal(new_version.version, 2)
            assert_equal(new_version.supersedes_id, definition.id)
            assert_true(new_version.is_active)

        async with ctx.get_session() as session:
            store = DefinitionStore(session)
            original = await store.get_definition(definition.id)
            assert_false(original.is_active, "The superseded version is no longer active")
            assert_equal(len(original.steps), 3, "The original graph is untouched")
            assert_equal((await store.get_active_definition(form.id)).id, new_version.id)

        # The running request still follows version 1: one approval finishes it
        async with ctx.get_session() as session:
            service = RequestService(session, ctx.target_data)
            result = await service.process_workflow_action(form_request.id, "approve", "mgr-1", "Morgan Manager")
            assert_true(result.success, result.message)
            assert_true(result.workflow_completed, "Pinned instance completes after its only approval")
            assert_equal(result.request_status, RequestStatus.APPLIED)


async def test_delete_rules():
    async with TestContext(start_event_bus=False) as ctx:
        async with ctx.get_session() as session:
            form = await create_test_form(session)
            used = await create_test_definition(session, form.id)
            service = RequestService(session, ctx.target_data)
            await create_test_request(service, form.id)

            steps, transitions = single_approval_workflow(roles=["Director"])
            unused = await create_test_definition(session, form.id, steps, transitions, is_active=False)

            store = DefinitionStore(session)
            await assert_raises_async(ValueError, store.delete_definition(used.id))

            await store.delete_definition(unused.id)
            await session.commit()

            await assert_raises_async(DefinitionNotFoundError, store.get_definition(unused.id))


async def test_deactivate_means_no_workflow():
    """A form without an active definition approves requests immediately"""
    async with TestContext(start_event_bus=False) as ctx:
        async with ctx.get_session() as session:
            form = await create_test_form(session)
            definition = await create_test_definition(session, form.id)
            await DefinitionStore(session).deactivate(definition.id)
            await session.commit()

            service = RequestService(session, ctx.target_data)
            form_request = await create_test_request(service, form.id)
            assert_equal(form_request.status, RequestStatus.APPROVED.value)
            assert_equal(form_request.workflow_instance_id, None)


async def main():
    """Run all definition store tests"""
    return await run_tests("Definition Store Tests", [
        ("Versions and single active definition", test_versions_and_single_active),
        ("Missing definition", test_missing_definition),
        ("Definition for unknown form", test_definition_for_unknown_form),
        ("Edit unused definition in place", test_edit_unused_definition_in_place),
        ("Edit used definition creates version", test_edit_used_definition_creates_version),
        ("Delete rules", test_delete_rules),
        ("Deactivated definition means no workflow", test_deactivate_means_no_workflow),
    ])


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
