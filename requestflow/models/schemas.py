"""
Pydantic schemas for API requests and responses.
Includes enums for the request and workflow state machines.
"""

from pydantic import BaseModel, Field
from typing import Optional, Literal, Any, List, Dict
from enum import Enum


# ============================================================================
# Enums
# ============================================================================


class RequestStatus(str, Enum):
    """Request lifecycle statuses"""

    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    APPLIED = "APPLIED"
    FAILED = "FAILED"


class RequestType(str, Enum):
    """Kind of change a request makes to its target table"""

    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class FormRequestChangeType(str, Enum):
    """History entry types"""

    CREATED = "CREATED"
    UPDATED = "UPDATED"
    STATUS_CHANGED = "STATUS_CHANGED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    APPLIED = "APPLIED"
    FAILED = "FAILED"
    RETRIED = "RETRIED"


class WorkflowStepType(str, Enum):
    """Step kinds in a workflow definition"""

    START = "START"
    APPROVAL = "APPROVAL"
    PARALLEL = "PARALLEL"
    BRANCH = "BRANCH"
    END = "END"


class WorkflowInstanceStatus(str, Enum):
    """Workflow instance statuses"""

    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"


class WorkflowStepInstanceStatus(str, Enum):
    """Step instance statuses"""

    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    SKIPPED = "SKIPPED"
    FAILED = "FAILED"


class WorkflowStepAction(str, Enum):
    """Action recorded when a step instance is completed"""

    NONE = "NONE"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    COMPLETED = "COMPLETED"
    SKIPPED = "SKIPPED"


class BranchOperator(str, Enum):
    """Comparison operators for transition and branch conditions"""

    EQUALS = "EQUALS"
    NOT_EQUALS = "NOT_EQUALS"
    GREATER_THAN = "GREATER_THAN"
    GREATER_THAN_OR_EQUAL = "GREATER_THAN_OR_EQUAL"
    LESS_THAN = "LESS_THAN"
    LESS_THAN_OR_EQUAL = "LESS_THAN_OR_EQUAL"
    CONTAINS = "CONTAINS"
    NOT_CONTAINS = "NOT_CONTAINS"
    STARTS_WITH = "STARTS_WITH"
    ENDS_WITH = "ENDS_WITH"
    IS_EMPTY = "IS_EMPTY"
    IS_NOT_EMPTY = "IS_NOT_EMPTY"


class EventType(str, Enum):
    """Event types for the event bus"""

    REQUEST_CREATED = "request.created"
    REQUEST_APPROVED = "request.approved"
    REQUEST_REJECTED = "request.rejected"
    REQUEST_APPLIED = "request.applied"
    REQUEST_FAILED = "request.failed"
    WORKFLOW_STARTED = "workflow.started"
    WORKFLOW_STEP_ACTIVATED = "workflow.step_activated"
    WORKFLOW_STEP_COMPLETED = "workflow.step_completed"
    WORKFLOW_COMPLETED = "workflow.completed"
    WORKFLOW_CANCELLED = "workflow.cancelled"
    WORKFLOW_FAILED = "workflow.failed"


# ============================================================================
# State Machine Configuration
# ============================================================================

# Valid request status transitions
REQUEST_STATUS_TRANSITIONS = {
    RequestStatus.PENDING: [RequestStatus.APPROVED, RequestStatus.REJECTED],
    RequestStatus.APPROVED: [RequestStatus.APPLIED, RequestStatus.FAILED],
    RequestStatus.REJECTED: [],  # Terminal
    RequestStatus.APPLIED: [],  # Terminal
    RequestStatus.FAILED: [RequestStatus.APPROVED],  # Retry re-enters apply only
}

# Step instance statuses that still accept a completion
OPEN_STEP_STATUSES = (
    WorkflowStepInstanceStatus.PENDING.value,
    WorkflowStepInstanceStatus.IN_PROGRESS.value,
)

# Step types the engine completes on its own when they become active
AUTO_ROUTED_STEP_TYPES = (
    WorkflowStepType.START,
    WorkflowStepType.BRANCH,
    WorkflowStepType.END,
)


# ============================================================================
# Form Schemas
# ============================================================================


class FormFieldDefinition(BaseModel):
    """Field metadata of a form"""

    name: str = Field(..., description="Column name in the target table")
    label: Optional[str] = Field(default=None, description="Display label")
    data_type: Literal["string", "integer", "decimal", "boolean", "date", "datetime"] = "string"
    is_required: bool = False
    is_read_only: bool = False


class FormDefinitionCreate(BaseModel):
    """Request to register a form against a target table"""

    name: str
    description: Optional[str] = None
    connection_name: str = Field(..., description="Key in TARGET_CONNECTIONS")
    table_name: str
    schema_name: Optional[str] = Field(default=None, description="Target schema, None for the default")
    fields: List[FormFieldDefinition] = Field(default_factory=list)


class FormDefinitionResponse(BaseModel):
    """Form representation"""

    id: str
    name: str
    description: Optional[str] = None
    connection_name: str
    table_name: str
    schema_name: Optional[str] = None
    fields: List[FormFieldDefinition] = Field(default_factory=list)
    is_active: bool
    created_at: float
    updated_at: float


# ============================================================================
# Workflow Definition Schemas
# ============================================================================


class TransitionCondition(BaseModel):
    """Field comparison guarding a transition"""

    field_name: str
    operator: BranchOperator
    value: Optional[Any] = None
    description: Optional[str] = None


class BranchCondition(BaseModel):
    """Ordered routing rule of a Branch step"""

    field_name: str
    operator: BranchOperator
    value: Optional[Any] = None
    target_step_id: str
    description: Optional[str] = None


class StepFieldConfiguration(BaseModel):
    """Per-field behaviour while a step is active"""

    is_visible: bool = True
    is_read_only: bool = False
    is_required: bool = False


class WorkflowStepConfiguration(BaseModel):
    """
    Type-specific step configuration.

    Approval uses the approver fields, Parallel the parallel_* fields
    and Branch the branch_conditions list.
    """

    requires_all_approvers: bool = False
    minimum_approvers: int = 1
    allow_reassignment: bool = False
    allow_comments: bool = True
    branch_conditions: List[BranchCondition] = Field(default_factory=list)
    parallel_step_ids: List[str] = Field(default_factory=list)
    require_all_parallel_steps: bool = True


class WorkflowStepSpec(BaseModel):
    """A step of a workflow definition"""

    step_id: str = Field(..., description="Identifier unique within the definition")
    step_type: WorkflowStepType
    name: str
    description: Optional[str] = None
    assigned_roles: List[str] = Field(default_factory=list, description="Empty means unrestricted")
    is_required: bool = True
    configuration: WorkflowStepConfiguration = Field(default_factory=WorkflowStepConfiguration)
    field_configurations: Dict[str, StepFieldConfiguration] = Field(default_factory=dict)
    position_x: float = 0
    position_y: float = 0


class WorkflowTransitionSpec(BaseModel):
    """A transition between two step ids"""

    from_step_id: str
    to_step_id: str
    condition: Optional[TransitionCondition] = None
    name: Optional[str] = None


class WorkflowDefinitionCreate(BaseModel):
    """Request to create a workflow definition for a form"""

    form_definition_id: str
    name: str
    description: Optional[str] = None
    steps: List[WorkflowStepSpec]
    transitions: List[WorkflowTransitionSpec] = Field(default_factory=list)
    is_active: bool = True
    created_by: Optional[str] = None


class WorkflowDefinitionUpdate(BaseModel):
    """Edit of a workflow definition (copy-on-write when in use)"""

    name: Optional[str] = None
    description: Optional[str] = None
    steps: Optional[List[WorkflowStepSpec]] = None
    transitions: Optional[List[WorkflowTransitionSpec]] = None
    updated_by: Optional[str] = None


class WorkflowDefinitionResponse(BaseModel):
    """Workflow definition representation"""

    id: str
    form_definition_id: str
    name: str
    description: Optional[str] = None
    version: int
    is_active: bool
    supersedes_id: Optional[str] = None
    created_by: Optional[str] = None
    created_at: float
    updated_at: float
    steps: List[WorkflowStepSpec] = Field(default_factory=list)
    transitions: List[WorkflowTransitionSpec] = Field(default_factory=list)


class WorkflowValidationResponse(BaseModel):
    """Validation outcome for a definition"""

    workflow_definition_id: str
    is_valid: bool
    errors: List[str] = Field(default_factory=list)


# ============================================================================
# Workflow Instance Schemas
# ============================================================================


class WorkflowStepInstanceResponse(BaseModel):
    """Step instance representation"""

    id: str
    workflow_instance_id: str
    step_id: str
    status: WorkflowStepInstanceStatus
    assigned_to: Optional[str] = None
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    completed_by: Optional[str] = None
    completed_by_name: Optional[str] = None
    action: Optional[WorkflowStepAction] = None
    comments: Optional[str] = None
    field_values: Dict[str, Any] = Field(default_factory=dict)
    approvals: List[Dict[str, Any]] = Field(default_factory=list)


class WorkflowInstanceResponse(BaseModel):
    """Workflow instance representation"""

    id: str
    form_request_id: str
    workflow_definition_id: str
    current_step_id: Optional[str] = None
    active_step_ids: List[str] = Field(default_factory=list)
    status: WorkflowInstanceStatus
    started_at: float
    completed_at: Optional[float] = None
    completed_by: Optional[str] = None
    completed_by_name: Optional[str] = None
    failure_reason: Optional[str] = None
    version: int


class StepProgress(BaseModel):
    """Progress entry for one step"""

    step_id: str
    name: str
    step_type: WorkflowStepType
    status: WorkflowStepInstanceStatus
    is_current: bool = False
    assigned_to: Optional[str] = None
    assigned_roles: List[str] = Field(default_factory=list)
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    completed_by_name: Optional[str] = None
    action: Optional[WorkflowStepAction] = None
    comments: Optional[str] = None
    days_in_step: Optional[float] = None


class WorkflowProgress(BaseModel):
    """Display-oriented summary of a workflow instance"""

    workflow_instance_id: str
    form_request_id: str
    status: WorkflowInstanceStatus
    current_step_id: Optional[str] = None
    current_step_name: Optional[str] = None
    active_step_ids: List[str] = Field(default_factory=list)
    total_steps: int
    completed_steps: int
    percent_complete: float
    started_at: float
    completed_at: Optional[float] = None
    days_in_current_step: Optional[float] = None
    is_stalled: bool = False
    steps: List[StepProgress] = Field(default_factory=list)


class StepCompletionSubmit(BaseModel):
    """Completion of a specific step"""

    actor_id: str
    actor_name: str
    action: WorkflowStepAction
    comments: Optional[str] = None
    field_updates: Optional[Dict[str, Any]] = None
    actor_roles: Optional[List[str]] = None


class WorkflowCancelSubmit(BaseModel):
    """Cancellation of a workflow instance"""

    actor_id: str
    actor_name: str
    reason: str


# ============================================================================
# Request Schemas
# ============================================================================


class FormRequestCreate(BaseModel):
    """Request to change a target table"""

    form_definition_id: str
    request_type: RequestType
    field_values: Dict[str, Any] = Field(default_factory=dict, description="Desired new state")
    original_values: Dict[str, Any] = Field(
        default_factory=dict,
        description="Snapshot of the row before the change (Update/Delete)"
    )
    comments: Optional[str] = None
    requested_by: str
    requested_by_name: Optional[str] = None


class FormRequestResponse(BaseModel):
    """Request representation"""

    id: str
    form_definition_id: str
    request_type: RequestType
    field_values: Dict[str, Any]
    original_values: Dict[str, Any]
    status: RequestStatus
    requested_by: str
    requested_by_name: Optional[str] = None
    requested_at: float
    approved_by: Optional[str] = None
    approved_by_name: Optional[str] = None
    approved_at: Optional[float] = None
    rejection_reason: Optional[str] = None
    comments: Optional[str] = None
    applied_at: Optional[float] = None
    applied_record_key: Optional[str] = None
    failure_message: Optional[str] = None
    workflow_instance_id: Optional[str] = None
    updated_at: float


class FormRequestHistoryResponse(BaseModel):
    """History entry representation"""

    id: int
    form_request_id: str
    change_type: FormRequestChangeType
    previous_values: Optional[Dict[str, Any]] = None
    new_values: Optional[Dict[str, Any]] = None
    changed_by: str
    changed_by_name: Optional[str] = None
    changed_at: float
    comments: Optional[str] = None
    sequence_number: int


class ActorAction(BaseModel):
    """Who is acting, threaded through every mutating call"""

    actor_id: str
    actor_name: str
    comments: Optional[str] = None


class RejectSubmit(ActorAction):
    """Rejection with a mandatory reason"""

    reason: str = Field(..., min_length=1)


class WorkflowActionSubmit(BaseModel):
    """Action on the current step of a request's workflow"""

    action: Literal["approve", "reject", "complete", "skip"]
    actor_id: str
    actor_name: str
    comments: Optional[str] = None
    field_updates: Optional[Dict[str, Any]] = None
    actor_roles: Optional[List[str]] = Field(
        default=None,
        description="Caller roles; when given, access to the step is enforced"
    )


class WorkflowActionResult(BaseModel):
    """Outcome of a workflow action"""

    success: bool
    message: str
    workflow_completed: bool = False
    workflow_approved: bool = False
    previous_step_name: Optional[str] = None
    current_step_name: Optional[str] = None
    actor_name: Optional[str] = None
    request_status: Optional[RequestStatus] = None
    additional_data: Dict[str, Any] = Field(default_factory=dict)


class ConflictDetectionResult(BaseModel):
    """Advisory conflict report for a request"""

    form_request_id: Optional[str] = None
    has_conflicts: bool = False
    conflict_messages: List[str] = Field(default_factory=list)
    checked_at: Optional[float] = None
    error: Optional[str] = None


class ReconciliationRunSubmit(BaseModel):
    """Manual trigger of the stuck-request sweep"""

    actor_id: Optional[str] = None
    actor_name: Optional[str] = None


# ============================================================================
# Health
# ============================================================================


class HealthResponse(BaseModel):
    """Health check response"""

    status: Literal["healthy", "unhealthy"]
    timestamp: float
    version: str = "1.0.0"
