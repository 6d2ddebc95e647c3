"""Data models and schemas."""

from requestflow.models.database import Base, Database, get_db
from requestflow.models.orm import (
    FormDefinition,
    WorkflowDefinition,
    WorkflowStep,
    WorkflowTransition,
    WorkflowInstance,
    WorkflowStepInstance,
    FormRequest,
    FormRequestHistory,
    IdempotencyKey,
    DeadLetterQueue
)
from requestflow.models.schemas import (
    RequestStatus,
    RequestType,
    FormRequestChangeType,
    WorkflowStepType,
    WorkflowInstanceStatus,
    WorkflowStepInstanceStatus,
    WorkflowStepAction,
    BranchOperator,
    EventType,
    REQUEST_STATUS_TRANSITIONS,
    HealthResponse
)

__all__ = [
    # Database
    'Base',
    'Database',
    'get_db',
    # ORM Models
    'FormDefinition',
    'WorkflowDefinition',
    'WorkflowStep',
    'WorkflowTransition',
    'WorkflowInstance',
    'WorkflowStepInstance',
    'FormRequest',
    'FormRequestHistory',
    'IdempotencyKey',
    'DeadLetterQueue',
    # Schemas
    'RequestStatus',
    'RequestType',
    'FormRequestChangeType',
    'WorkflowStepType',
    'WorkflowInstanceStatus',
    'WorkflowStepInstanceStatus',
    'WorkflowStepAction',
    'BranchOperator',
    'EventType',
    'REQUEST_STATUS_TRANSITIONS',
    'HealthResponse'
]
