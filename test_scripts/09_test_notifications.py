#!/usr/bin/env python3
"""
Test: Webhook notifications
Purpose: Verify signed delivery, retries, the circuit breaker and event wiring

Tests:
- Payloads are signed and verifiable by the receiver
- Transient receiver errors are retried
- An unconfigured sink skips quietly
- The circuit breaker opens after repeated failures
- Lifecycle events become notifications
"""

import asyncio
import json
import sys

import httpx
from pybreaker import CircuitBreaker

from fixtures import (
    run_tests, TestContext,
    create_test_form, create_test_definition, create_test_request,
    assert_equal, assert_true, assert_false, assert_in
)

from requestflow.adapters import WebhookNotificationSink
from requestflow.config.security import sign_payload, verify_payload_signature
from requestflow.core.events.handlers import register_event_handlers
from requestflow.core.request_service import RequestService

WEBHOOK_URL = "https://hooks.example.test/requestflow"


class RecordingReceiver:
    """MockTransport handler that records requests and replays canned status codes"""

    def __init__(self, statuses=None):
        self.statuses = list(statuses or [])
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status = self.statuses.pop(0) if self.statuses else 200
        return httpx.Response(status, json={"received": True})

    def payloads(self):
        return [json.loads(request.content) for request in self.requests]


def make_sink(receiver, **kwargs):
    kwargs.setdefault("breaker", CircuitBreaker(fail_max=5, reset_timeout=60))
    return WebhookNotificationSink(
        webhook_url=WEBHOOK_URL,
        transport=httpx.MockTransport(receiver),
        wait_multiplier=0,
        **kwargs,
    )


async def test_signed_delivery():
    receiver = RecordingReceiver()
    sink = make_sink(receiver)

    result = await sink.notify("request_approved", {"form_request_id": "req-1"}, to_address="alice")
    assert_true(result["ok"])
    assert_equal(result["status_code"], 200)

    request = receiver.requests[0]
    assert_equal(str(request.url), WEBHOOK_URL)
    timestamp = request.headers["X-Requestflow-Timestamp"]
    signature = request.headers["X-Requestflow-Signature"]
    assert_true(signature.startswith("v1="))
    assert_true(verify_payload_signature(timestamp, request.content, signature), "Receiver can verify the body")
    assert_false(verify_payload_signature(timestamp, request.content + b" ", signature), "Tampered bodies fail")
    assert_false(verify_payload_signature(timestamp, request.content, signature, secret="other-secret"))

    payload = receiver.payloads()[0]
    assert_equal(payload["template_key"], "request_approved")
    assert_equal(payload["to"], "alice")
    assert_equal(payload["variables"], {"form_request_id": "req-1"})
    assert_equal(sink.get_stats()["sent"], 1)


async def test_stale_signature_rejected():
    body = b'{"template_key": "x"}'
    old = 1_000_000
    assert_false(verify_payload_signature(str(old), body, sign_payload(body, old)))
    assert_false(verify_payload_signature("not-a-number", body, "v1=abc"))


async def test_transient_errors_are_retried():
    receiver = RecordingReceiver(statuses=[503, 502])
    sink = make_sink(receiver, max_attempts=3)

    result = await sink.notify("request_applied", {"form_request_id": "req-2"})
    assert_true(result["ok"], f"Got {result}")
    assert_equal(len(receiver.requests), 3)


async def test_exhausted_retries_are_reported():
    receiver = RecordingReceiver(statuses=[500, 500])
    sink = make_sink(receiver, max_attempts=2)

    result = await sink.notify("request_failed", {"form_request_id": "req-3"})
    assert_false(result["ok"])
    assert_in("500", result["error"])
    assert_equal(sink.get_stats()["failed"], 1)


async def test_not_configured():
    sink = WebhookNotificationSink(webhook_url=None)
    if sink.is_configured():
        # NOTIFICATION_WEBHOOK_URL is set in this environment
        return
    assert_equal(await sink.notify("request_created", {}), {"ok": False, "error": "not_configured"})


async def test_circuit_breaker_opens():
    receiver = RecordingReceiver(statuses=[500] * 10)
    sink = make_sink(receiver, breaker=CircuitBreaker(fail_max=2, reset_timeout=60), max_attempts=1)

    first = await sink.notify("request_failed", {"n": 1})
    assert_false(first["ok"])
    assert_true(first["error"] != "circuit_breaker_open")

    await sink.notify("request_failed", {"n": 2})
    hits = len(receiver.requests)

    third = await sink.notify("request_failed", {"n": 3})
    assert_equal(third, {"ok": False, "error": "circuit_breaker_open"})
    assert_equal(len(receiver.requests), hits, "An open breaker does not call the receiver")
    assert_equal(sink.get_stats()["breaker_state"], "open")


async def test_events_become_notifications():
    receiver = RecordingReceiver()
    async with TestContext() as ctx:
        register_event_handlers(ctx.event_bus, ctx.db, make_sink(receiver))

        async with ctx.get_session() as session:
            form = await create_test_form(session)
            await create_test_definition(session, form.id)
            service = RequestService(session, ctx.target_data, ctx.event_bus)
            form_request = await create_test_request(service, form.id)
            await ctx.event_bus.drain()

            templates = [p["template_key"] for p in receiver.payloads()]
            assert_equal(templates, ["workflow_step_assigned", "request_submitted"])

            assigned = receiver.payloads()[0]
            assert_equal(assigned["to"], "Manager")
            assert_equal(assigned["variables"]["form_name"], "customers maintenance")
            assert_equal(assigned["variables"]["step_id"], "manager_approval")

            await service.process_workflow_action(form_request.id, "approve", "mgr-1", "Morgan")
            await ctx.event_bus.drain()

        templates = [p["template_key"] for p in receiver.payloads()]
        assert_equal(templates[2:], ["request_approved", "request_applied"])
        assert_equal(receiver.payloads()[-1]["to"], "alice")


async def main():
    """Run all notification tests"""
    return await run_tests("Notification Tests", [
        ("Signed delivery", test_signed_delivery),
        ("Stale signature rejected", test_stale_signature_rejected),
        ("Transient errors are retried", test_transient_errors_are_retried),
        ("Exhausted retries are reported", test_exhausted_retries_are_reported),
        ("Not configured", test_not_configured),
        ("Circuit breaker opens", test_circuit_breaker_opens),
        ("Events become notifications", test_events_become_notifications),
    ])


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
