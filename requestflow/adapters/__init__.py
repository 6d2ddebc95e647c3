"""Outbound integrations."""

from requestflow.adapters.notifications import WebhookNotificationSink, notification_breaker

__all__ = ['WebhookNotificationSink', 'notification_breaker']
