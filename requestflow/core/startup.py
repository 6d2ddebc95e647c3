"""Application startup and shutdown lifecycle management."""

from contextlib import asynccontextmanager
import structlog
from fastapi import FastAPI

from requestflow.models import Database
from requestflow.core.event_bus import EventBus
from requestflow.core.reconciliation import ReconciliationSweeper
from requestflow.core.target_data import TargetDataAccessor
from requestflow.core.events import register_event_handlers
from requestflow.adapters import WebhookNotificationSink
from requestflow.config.settings import settings

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    FastAPI lifespan management for startup/shutdown.
    Manages the event processor, target connections and the optional sweeper.
    """
    logger.info("application_starting", environment=settings.environment)

    settings.validate_critical_config()

    # Initialize database
    db = Database()
    await db.init()

    # Event bus with db for DLQ support
    event_bus = EventBus(max_queue_size=settings.event_bus_max_queue_size, db=db)
    await event_bus.start()

    # Target connections are opened lazily on first use
    target_data = TargetDataAccessor()

    notifier = WebhookNotificationSink()

    # Register event handlers with all dependencies
    register_event_handlers(event_bus, db, notifier)

    sweeper = ReconciliationSweeper(db, event_bus, target_data)
    if settings.reconciliation_enabled:
        await sweeper.start()
    else:
        logger.info("reconciliation_sweeper_disabled")

    # Store in app state for access in routes
    app.state.db = db
    app.state.event_bus = event_bus
    app.state.target_data = target_data
    app.state.notifier = notifier
    app.state.sweeper = sweeper

    logger.info("application_ready", target_connections=sorted(settings.target_connections.keys()))

    yield

    # Shutdown
    logger.info("application_shutting_down")

    await sweeper.stop()
    await event_bus.stop()
    await target_data.close()
    await db.close()

    logger.info("application_stopped")
