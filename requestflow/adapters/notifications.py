"""
Outbound notifications over a signed webhook.
Posts lifecycle notifications with retry and circuit breaker protection.
"""

import json
import time
from typing import Any, Dict, Optional

import httpx
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential, retry_if_exception_type
from pybreaker import CircuitBreaker, CircuitBreakerError
import structlog

from requestflow.config.security import sign_payload
from requestflow.config.settings import settings

logger = structlog.get_logger()

# Circuit breaker for the webhook receiver to prevent cascading failures
# pybreaker parameters:
# - fail_max: Number of failures before opening the circuit
# - reset_timeout: Seconds before attempting to close an open circuit
notification_breaker = CircuitBreaker(
    fail_max=settings.circuit_breaker_fail_max,
    reset_timeout=settings.circuit_breaker_timeout_duration,
    name="notification_webhook"
)


class WebhookNotificationSink:
    """
    Fire-and-forget notification sink.

    notify() never raises: delivery problems are logged and reported in the
    returned dict so the workflow and apply paths are never affected.
    """

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        timeout: Optional[float] = None,
        breaker: Optional[CircuitBreaker] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        max_attempts: Optional[int] = None,
        wait_multiplier: Optional[float] = None,
    ):
        self.webhook_url = webhook_url or settings.notification_webhook_url
        self.timeout = timeout or settings.notification_timeout_seconds
        self.breaker = breaker or notification_breaker
        self.transport = transport
        self.max_attempts = max_attempts or settings.max_retry_attempts
        self.wait_multiplier = settings.retry_backoff_multiplier if wait_multiplier is None else wait_multiplier
        self.sent = 0
        self.failed = 0

        if not self.webhook_url:
            logger.warning("notifications_not_configured", message="NOTIFICATION_WEBHOOK_URL not set")

    def is_configured(self) -> bool:
        """Check if a webhook receiver is configured"""
        return bool(self.webhook_url)

    def build_payload(self, template_key: str, variables: Dict[str, Any], to_address: Optional[str]) -> bytes:
        return json.dumps(
            {
                "template_key": template_key,
                "to": to_address,
                "variables": variables,
                "sent_at": time.time(),
            },
            default=str,
        ).encode()

    async def _post(self, body: bytes) -> httpx.Response:
        timestamp = int(time.time())
        headers = {
            "Content-Type": "application/json",
            "X-Requestflow-Timestamp": str(timestamp),
            "X-Requestflow-Signature": sign_payload(body, timestamp),
        }

        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_exponential(
                    multiplier=self.wait_multiplier,
                    min=settings.retry_initial_wait_seconds if self.wait_multiplier else 0,
                    max=settings.retry_max_wait_seconds,
                ),
                retry=retry_if_exception_type((httpx.HTTPError, httpx.TimeoutException)),
                reraise=True,
            ):
                with attempt:
                    response = await client.post(self.webhook_url, content=body, headers=headers)
                    response.raise_for_status()
                    return response

    async def notify(self, template_key: str, variables: Dict[str, Any], to_address: Optional[str] = None) -> dict:
        """
        Send a notification.

        Args:
            template_key: Name of the message template the receiver renders
            variables: Values for the template
            to_address: Recipient, if the receiver routes per user

        Returns:
            {"ok": bool, ...}; never raises
        """
        if not self.is_configured():
            logger.debug("notification_skipped", template_key=template_key, reason="not_configured")
            return {"ok": False, "error": "not_configured"}

        body = self.build_payload(template_key, variables, to_address)

        try:
            with self.breaker.calling():
                response = await self._post(body)
        except CircuitBreakerError:
            self.failed += 1
            logger.error(
                "notification_circuit_breaker_open",
                template_key=template_key,
                message="Circuit breaker is open - too many webhook failures"
            )
            return {"ok": False, "error": "circuit_breaker_open"}
        except Exception as e:
            self.failed += 1
            logger.error(
                "notification_failed",
                template_key=template_key,
                to_address=to_address,
                error=str(e),
                exc_info=True,
            )
            return {"ok": False, "error": str(e)}

        self.sent += 1
        logger.info(
            "notification_sent",
            template_key=template_key,
            to_address=to_address,
            status_code=response.status_code,
        )
        return {"ok": True, "status_code": response.status_code}

    def get_stats(self) -> dict:
        return {
            "configured": self.is_configured(),
            "sent": self.sent,
            "failed": self.failed,
            "breaker_state": self.breaker.current_state,
        }
