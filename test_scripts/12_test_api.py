#!/usr/bin/env python3
"""
Test: HTTP API
Purpose: Verify the FastAPI routes end to end against test databases

Tests:
- Health and metrics
- Forms and workflow definitions (validation errors are 400)
- Request creation with idempotency replay
- Workflow actions, history, conflicts and diagnostics
- Precondition failures are 409, unknown ids 404
- Admin DLQ and reconciliation endpoints
"""

import asyncio
import sys
from contextlib import asynccontextmanager

import httpx

from fixtures import (
    run_tests, TestContext, TARGET_CONNECTION,
    assert_equal, assert_true, assert_false, assert_in
)

from main import app
from requestflow.adapters import WebhookNotificationSink
from requestflow.core.reconciliation import ReconciliationSweeper
from requestflow.models import get_db


@asynccontextmanager
async def api_client(ctx):
    """AsyncClient bound to the app, with state and sessions from the test context"""

    async def override_get_db():
        async with ctx.db.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.state.db = ctx.db
    app.state.event_bus = ctx.event_bus
    app.state.target_data = ctx.target_data
    app.state.notifier = WebhookNotificationSink(webhook_url=None)
    app.state.sweeper = ReconciliationSweeper(ctx.db, ctx.event_bus, ctx.target_data)

    transport = httpx.ASGITransport(app=app)
    try:
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
            yield client
    finally:
        app.dependency_overrides.clear()


STEPS = [
    {"step_id": "start", "step_type": "START", "name": "Start"},
    {"step_id": "manager_approval", "step_type": "APPROVAL", "name": "Manager Approval", "assigned_roles": ["Manager"]},
    {"step_id": "end", "step_type": "END", "name": "End"},
]
TRANSITIONS = [
    {"from_step_id": "start", "to_step_id": "manager_approval"},
    {"from_step_id": "manager_approval", "to_step_id": "end"},
]
NEW_CUSTOMER = {"Name": "Jane Doe", "Email": "jane@example.com", "Amount": "1500.50", "IsActive": "true"}
ALICE = {"actor_id": "alice", "actor_name": "Alice"}


async def _create_form(client, table_name="customers"):
    response = await client.post("/api/forms", json={
        "name": f"{table_name} maintenance",
        "connection_name": TARGET_CONNECTION,
        "table_name": table_name,
        "fields": [{"name": "Name", "is_required": True}],
    })
    assert_equal(response.status_code, 200, response.text)
    return response.json()


async def _create_request(client, form_id, request_type="INSERT", field_values=None, original_values=None, headers=None):
    return await client.post("/api/requests", headers=headers or {}, json={
        "form_definition_id": form_id,
        "request_type": request_type,
        "field_values": NEW_CUSTOMER if field_values is None else field_values,
        "original_values": original_values or {},
        "requested_by": "alice",
        "requested_by_name": "Alice",
    })


async def test_health_and_metrics():
    async with TestContext() as ctx:
        async with api_client(ctx) as client:
            response = await client.get("/health")
            assert_equal(response.status_code, 200)
            assert_equal(response.json()["status"], "healthy")

            response = await client.get("/metrics")
            assert_equal(response.status_code, 200)
            body = response.json()
            assert_equal(body["requests"]["total"], 0)
            assert_equal(body["dead_letter_queue"]["total"], 0)
            assert_true(body["event_bus"]["running"])
            assert_false(body["notifications"]["configured"])
            assert_equal(body["reconciliation"]["runs"], 0)


async def test_forms_and_definitions():
    async with TestContext() as ctx:
        async with api_client(ctx) as client:
            form = await _create_form(client)
            assert_equal(form["table_name"], "customers")

            response = await client.get(f"/api/forms/{form['id']}")
            assert_equal(response.status_code, 200)
            assert_equal((await client.get("/api/forms/missing")).status_code, 404)

            invalid = await client.post("/api/workflow-definitions", json={
                "form_definition_id": form["id"],
                "name": "Broken",
                "steps": STEPS[1:],
                "transitions": TRANSITIONS[1:],
            })
            assert_equal(invalid.status_code, 400)
            assert_true(any("start step" in e for e in invalid.json()["detail"]["errors"]))

            response = await client.post("/api/workflow-definitions", json={
                "form_definition_id": form["id"],
                "name": "Manager sign-off",
                "steps": STEPS,
                "transitions": TRANSITIONS,
                "created_by": "designer",
            })
            assert_equal(response.status_code, 200, response.text)
            definition = response.json()
            assert_equal(definition["version"], 1)
            assert_true(definition["is_active"])

            response = await client.get(f"/api/workflow-definitions/{definition['id']}/validate")
            assert_true(response.json()["is_valid"])

            listed = await client.get("/api/workflow-definitions", params={"form_definition_id": form["id"]})
            assert_equal([d["id"] for d in listed.json()], [definition["id"]])

            assert_equal((await client.get("/api/workflow-definitions/missing")).status_code, 404)

            unknown_form = await client.post("/api/workflow-definitions", json={
                "form_definition_id": "missing", "name": "x", "steps": STEPS, "transitions": TRANSITIONS,
            })
            assert_equal(unknown_form.status_code, 404)


async def test_request_through_workflow():
    async with TestContext() as ctx:
        async with api_client(ctx) as client:
            form = await _create_form(client)
            await client.post("/api/workflow-definitions", json={
                "form_definition_id": form["id"], "name": "Manager sign-off", "steps": STEPS, "transitions": TRANSITIONS,
            })

            headers = {"Idempotency-Key": "create-jane-1"}
            first = await _create_request(client, form["id"], headers=headers)
            assert_equal(first.status_code, 200, first.text)
            created = first.json()
            assert_equal(created["status"], "PENDING")
            assert_true(created["workflow_instance_id"])

            replay = await _create_request(client, form["id"], headers=headers)
            assert_equal(replay.json()["id"], created["id"], "Replays return the stored response")
            listed = await client.get("/api/requests", params={"form_definition_id": form["id"]})
            assert_equal(len(listed.json()), 1, "Replays create nothing")

            progress = await client.get(f"/api/workflow-instances/{created['workflow_instance_id']}/progress")
            assert_equal(progress.status_code, 200)
            assert_equal(progress.json()["current_step_id"], "manager_approval")

            forbidden = await client.post(f"/api/requests/{created['id']}/workflow-action", json={
                "action": "approve", "actor_id": "c1", "actor_name": "Casey", "actor_roles": ["Clerk"],
            })
            assert_equal(forbidden.status_code, 409)
            assert_false(forbidden.json()["detail"]["success"])

            manual = await client.post(f"/api/requests/{created['id']}/approve", json=ALICE)
            assert_equal(manual.status_code, 409, "A running workflow owns the decision")

            approved = await client.post(f"/api/requests/{created['id']}/workflow-action", json={
                "action": "approve", "actor_id": "m1", "actor_name": "Morgan", "actor_roles": ["Manager"],
            })
            assert_equal(approved.status_code, 200, approved.text)
            result = approved.json()
            assert_true(result["workflow_completed"])
            assert_equal(result["request_status"], "APPLIED")

            again = await client.post(f"/api/requests/{created['id']}/workflow-action", json={
                "action": "approve", "actor_id": "m2", "actor_name": "Max",
            })
            assert_equal(again.status_code, 409)

            stored = (await client.get(f"/api/requests/{created['id']}")).json()
            assert_equal(stored["applied_record_key"], "42")

            history = (await client.get(f"/api/requests/{created['id']}/history")).json()
            assert_equal([h["change_type"] for h in history], ["CREATED", "APPROVED", "APPLIED"])

            conflicts = (await client.get(f"/api/requests/{created['id']}/conflicts")).json()
            assert_false(conflicts["has_conflicts"])

            diagnostics = await client.get(f"/api/requests/{created['id']}/diagnostics")
            assert_equal(diagnostics.status_code, 200)
            assert_in(f"Request {created['id']}", diagnostics.text)
            assert_in("Definition: Manager sign-off (version 1)", diagnostics.text)


async def test_request_without_workflow():
    async with TestContext() as ctx:
        async with api_client(ctx) as client:
            form = await _create_form(client)

            created = (await _create_request(client, form["id"])).json()
            assert_equal(created["status"], "APPROVED")

            applied = await client.post(f"/api/requests/{created['id']}/apply", json=ALICE)
            assert_equal(applied.status_code, 200)
            assert_equal(applied.json()["status"], "APPLIED")

            for operation in ("apply", "retry", "approve"):
                response = await client.post(f"/api/requests/{created['id']}/{operation}", json=ALICE)
                assert_equal(response.status_code, 409, f"{operation} on an applied request")
                assert_in("APPLIED state", response.json()["detail"])

            rejected = await client.post(f"/api/requests/{created['id']}/reject", json={**ALICE, "reason": "Too late"})
            assert_equal(rejected.status_code, 409)


async def test_failed_request_and_retry():
    async with TestContext() as ctx:
        async with api_client(ctx) as client:
            form = await _create_form(client)
            created = (await _create_request(
                client, form["id"], request_type="DELETE", field_values={}, original_values={"Id": 999},
            )).json()

            failed = (await client.post(f"/api/requests/{created['id']}/apply", json=ALICE)).json()
            assert_equal(failed["status"], "FAILED")
            assert_in("No records found to delete", failed["failure_message"])

            retried = (await client.post(f"/api/requests/{created['id']}/retry", json=ALICE)).json()
            assert_equal(retried["status"], "FAILED")
            assert_true(retried["failure_message"].startswith("Retry attempt failed:"))

            listed = await client.get("/api/requests", params={"status": "FAILED"})
            assert_equal([r["id"] for r in listed.json()], [created["id"]])


async def test_rejection_and_not_found():
    async with TestContext() as ctx:
        async with api_client(ctx) as client:
            form = await _create_form(client)
            await client.post("/api/workflow-definitions", json={
                "form_definition_id": form["id"], "name": "Manager sign-off", "steps": STEPS, "transitions": TRANSITIONS,
            })
            created = (await _create_request(client, form["id"])).json()

            blank = await client.post(f"/api/requests/{created['id']}/reject", json={**ALICE, "reason": "   "})
            assert_equal(blank.status_code, 400)

            rejected = await client.post(f"/api/requests/{created['id']}/reject", json={**ALICE, "reason": "Duplicate"})
            assert_equal(rejected.status_code, 200)
            assert_equal(rejected.json()["status"], "REJECTED")
            assert_equal(rejected.json()["rejection_reason"], "Duplicate")

            assert_equal((await client.get("/api/requests/missing")).status_code, 404)
            assert_equal((await client.get("/api/requests/missing/history")).status_code, 404)
            assert_equal((await client.post("/api/requests/missing/apply", json=ALICE)).status_code, 404)
            assert_equal((await client.post("/api/requests/missing/reject", json={**ALICE, "reason": "x"})).status_code, 404)
            assert_equal((await _create_request(client, "missing-form")).status_code, 404)


async def test_admin_endpoints():
    async with TestContext() as ctx:
        async with api_client(ctx) as client:
            dlq = (await client.get("/api/admin/dlq")).json()
            assert_equal(dlq, {"total": 0, "entries": []})

            assert_equal((await client.post("/api/admin/dlq/123/retry")).status_code, 404)
            assert_equal((await client.delete("/api/admin/dlq/123")).status_code, 404)

            form = await _create_form(client)
            created = (await _create_request(client, form["id"])).json()

            candidates = (await client.get("/api/admin/reconciliation")).json()
            assert_equal([r["id"] for r in candidates["approved_not_applied"]], [created["id"]])
            assert_equal(candidates["completed_workflow_not_applied"], [])

            run = (await client.post("/api/admin/reconciliation/run", json={})).json()
            assert_equal(run, {"success": True, "processed": 0})


async def main():
    """Run all API tests"""
    return await run_tests("API Tests", [
        ("Health and metrics", test_health_and_metrics),
        ("Forms and definitions", test_forms_and_definitions),
        ("Request through workflow", test_request_through_workflow),
        ("Request without workflow", test_request_without_workflow),
        ("Failed request and retry", test_failed_request_and_retry),
        ("Rejection and not found", test_rejection_and_not_found),
        ("Admin endpoints", test_admin_endpoints),
    ])


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
