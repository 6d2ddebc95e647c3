"""Event handling for request and workflow notifications."""

from requestflow.core.events.handlers import register_event_handlers

__all__ = ['register_event_handlers']
