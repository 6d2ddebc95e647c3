"""Core business logic components."""

from requestflow.core.target_data import (
    TargetDataAccessor,
    TargetDataError,
    UnknownConnectionError,
    NoRowsAffectedError,
    InsertResult
)
from requestflow.core.workflow_engine import (
    WorkflowEngine,
    WorkflowError,
    DefinitionNotFoundError,
    WorkflowConfigurationError,
    NoStartStepError,
    WorkflowValidationError,
    ConcurrentModificationError
)
from requestflow.core.workflow_validation import validate_definition
from requestflow.core.definition_store import DefinitionStore
from requestflow.core.forms import FormService
from requestflow.core.history import RequestHistory
from requestflow.core.conflict_detector import ConflictDetector
from requestflow.core.request_service import (
    RequestService,
    ApplyError,
    InsertFailedError,
    NoPrimaryKeyError,
    MissingKeyValueError,
    InvalidRequestTransitionError
)
from requestflow.core.event_bus import EventBus
from requestflow.core.reconciliation import ReconciliationSweeper

__all__ = [
    'TargetDataAccessor',
    'TargetDataError',
    'UnknownConnectionError',
    'NoRowsAffectedError',
    'InsertResult',
    'WorkflowEngine',
    'WorkflowError',
    'DefinitionNotFoundError',
    'WorkflowConfigurationError',
    'NoStartStepError',
    'WorkflowValidationError',
    'ConcurrentModificationError',
    'validate_definition',
    'DefinitionStore',
    'FormService',
    'RequestHistory',
    'ConflictDetector',
    'RequestService',
    'ApplyError',
    'InsertFailedError',
    'NoPrimaryKeyError',
    'MissingKeyValueError',
    'InvalidRequestTransitionError',
    'EventBus',
    'ReconciliationSweeper'
]
