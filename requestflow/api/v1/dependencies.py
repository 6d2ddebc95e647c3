"""Shared dependencies for API routes."""

from fastapi import Request

from requestflow.models import Database
from requestflow.core import EventBus, ReconciliationSweeper, TargetDataAccessor
from requestflow.adapters import WebhookNotificationSink


def get_event_bus(request: Request) -> EventBus:
    """Get event bus from app state."""
    return request.app.state.event_bus


def get_target_data(request: Request) -> TargetDataAccessor:
    """Get target data accessor from app state."""
    return request.app.state.target_data


def get_notifier(request: Request) -> WebhookNotificationSink:
    """Get notification sink from app state."""
    return request.app.state.notifier


def get_sweeper(request: Request) -> ReconciliationSweeper:
    """Get reconciliation sweeper from app state."""
    return request.app.state.sweeper


def get_database(request: Request) -> Database:
    """Get database instance from app state."""
    return request.app.state.db
