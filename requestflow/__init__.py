"""Workflow-driven request lifecycle engine."""

# Core components
from requestflow.core import (
    WorkflowEngine,
    DefinitionStore,
    RequestService,
    ConflictDetector,
    TargetDataAccessor,
    EventBus,
    ReconciliationSweeper
)

# Models and schemas
from requestflow.models import (
    Database,
    get_db,
    FormDefinition,
    WorkflowDefinition,
    WorkflowInstance,
    FormRequest
)

# Adapters
from requestflow.adapters import (
    WebhookNotificationSink,
)

# Configuration and security
from requestflow.config import (
    settings,
    sign_payload,
    verify_payload_signature
)

__version__ = "1.0.0"

__all__ = [
    # Core
    'WorkflowEngine',
    'DefinitionStore',
    'RequestService',
    'ConflictDetector',
    'TargetDataAccessor',
    'EventBus',
    'ReconciliationSweeper',
    # Models
    'Database',
    'get_db',
    'FormDefinition',
    'WorkflowDefinition',
    'WorkflowInstance',
    'FormRequest',
    # Adapters
    'WebhookNotificationSink',
    # Config
    'settings',
    'sign_payload',
    'verify_payload_signature'
]
