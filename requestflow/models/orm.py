"""
Database models using SQLAlchemy 2.0 async style.

JSON maps are stored as Text and exposed through *_dict / *_list properties.
"""

from sqlalchemy import Column, String, Integer, Float, Text, Boolean, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import relationship
from datetime import datetime
from typing import Any, Dict, List
import uuid
import json

from requestflow.models.database import Base


def _now() -> float:
    return datetime.now().timestamp()


def _new_id() -> str:
    return str(uuid.uuid4())


def _loads(value, default):
    if value is None or value == "":
        return default
    if isinstance(value, str):
        return json.loads(value)
    return value


def dumps(value) -> str:
    """Serialize a field map for a Text column (datetimes become ISO strings)."""
    return json.dumps(value, default=_json_default)


def _json_default(value):
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


class FormDefinition(Base):
    """
    A form bound to a target table on a named connection.
    """

    __tablename__ = "form_definitions"

    id = Column(String, primary_key=True, default=_new_id)
    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    connection_name = Column(String(100), nullable=False)
    table_name = Column(String(200), nullable=False)
    schema_name = Column(String(100), nullable=True)
    fields = Column(Text, nullable=False, default="[]")  # JSON list of field metadata
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(Float, nullable=False, default=_now)
    updated_at = Column(Float, nullable=False, default=_now)

    workflow_definitions = relationship("WorkflowDefinition", back_populates="form_definition")

    def to_dict(self):
        """Convert to dictionary"""
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "connection_name": self.connection_name,
            "table_name": self.table_name,
            "schema_name": self.schema_name,
            "fields": self.fields_list,
            "is_active": self.is_active,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @property
    def fields_list(self) -> List[Dict]:
        return _loads(self.fields, [])

    @property
    def qualified_table_name(self) -> str:
        """schema.table as shown in messages"""
        if self.schema_name:
            return f"{self.schema_name}.{self.table_name}"
        return self.table_name


class WorkflowDefinition(Base):
    """
    Versioned workflow template attached to a form.
    Rows referenced by an instance are never edited; edits produce a new version.
    """

    __tablename__ = "workflow_definitions"

    id = Column(String, primary_key=True, default=_new_id)
    form_definition_id = Column(String, ForeignKey("form_definitions.id"), nullable=False)
    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    version = Column(Integer, nullable=False, default=1)  # Monotonic per form
    is_active = Column(Boolean, nullable=False, default=True)
    supersedes_id = Column(String, ForeignKey("workflow_definitions.id"), nullable=True)
    created_by = Column(String(255), nullable=True)
    created_at = Column(Float, nullable=False, default=_now)
    updated_at = Column(Float, nullable=False, default=_now)

    form_definition = relationship("FormDefinition", back_populates="workflow_definitions")
    steps = relationship(
        "WorkflowStep",
        back_populates="workflow_definition",
        cascade="all, delete-orphan",
        order_by="WorkflowStep.position",
    )
    transitions = relationship(
        "WorkflowTransition",
        back_populates="workflow_definition",
        cascade="all, delete-orphan",
        order_by="WorkflowTransition.position",
    )

    __table_args__ = (
        UniqueConstraint("form_definition_id", "version", name="uq_workflow_definition_form_version"),
        Index("idx_workflow_definitions_form_active", "form_definition_id", "is_active"),
    )

    def to_dict(self, include_graph=True):
        """Convert to dictionary"""
        result = {
            "id": self.id,
            "form_definition_id": self.form_definition_id,
            "name": self.name,
            "description": self.description,
            "version": self.version,
            "is_active": self.is_active,
            "supersedes_id": self.supersedes_id,
            "created_by": self.created_by,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
        if include_graph:
            result["steps"] = [step.to_dict() for step in self.steps]
            result["transitions"] = [transition.to_dict() for transition in self.transitions]
        return result

    def get_step(self, step_id: str):
        """Find a step by its step_id"""
        for step in self.steps:
            if step.step_id == step_id:
                return step
        return None

    def steps_of_type(self, step_type: str) -> list:
        return [step for step in self.steps if step.step_type == step_type]

    def transitions_from(self, step_id: str) -> list:
        """Outgoing transitions in definition order"""
        return [t for t in self.transitions if t.from_step_id == step_id]


class WorkflowStep(Base):
    """
    A step of a workflow definition, addressed by its string step_id.
    """

    __tablename__ = "workflow_steps"

    id = Column(String, primary_key=True, default=_new_id)
    workflow_definition_id = Column(String, ForeignKey("workflow_definitions.id"), nullable=False)
    step_id = Column(String(100), nullable=False)
    step_type = Column(String(50), nullable=False)  # WorkflowStepType value
    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    assigned_roles = Column(Text, nullable=False, default="[]")  # JSON list
    is_required = Column(Boolean, nullable=False, default=True)
    configuration = Column(Text, nullable=False, default="{}")  # JSON WorkflowStepConfiguration
    field_configurations = Column(Text, nullable=False, default="{}")  # JSON map
    position = Column(Integer, nullable=False, default=0)
    position_x = Column(Float, nullable=False, default=0)
    position_y = Column(Float, nullable=False, default=0)

    workflow_definition = relationship("WorkflowDefinition", back_populates="steps")

    __table_args__ = (
        UniqueConstraint("workflow_definition_id", "step_id", name="uq_workflow_step_definition_step"),
    )

    def to_dict(self):
        return {
            "step_id": self.step_id,
            "step_type": self.step_type,
            "name": self.name,
            "description": self.description,
            "assigned_roles": self.assigned_roles_list,
            "is_required": self.is_required,
            "configuration": self.configuration_dict,
            "field_configurations": self.field_configurations_dict,
            "position_x": self.position_x,
            "position_y": self.position_y,
        }

    @property
    def assigned_roles_list(self) -> List[str]:
        return _loads(self.assigned_roles, [])

    @property
    def configuration_dict(self) -> Dict[str, Any]:
        return _loads(self.configuration, {})

    @property
    def field_configurations_dict(self) -> Dict[str, Dict]:
        return _loads(self.field_configurations, {})


class WorkflowTransition(Base):
    """
    Directed edge between two step ids, optionally guarded by a condition.
    """

    __tablename__ = "workflow_transitions"

    id = Column(String, primary_key=True, default=_new_id)
    workflow_definition_id = Column(String, ForeignKey("workflow_definitions.id"), nullable=False)
    from_step_id = Column(String(100), nullable=False)
    to_step_id = Column(String(100), nullable=False)
    condition = Column(Text, nullable=True)  # JSON TransitionCondition
    name = Column(String(200), nullable=True)
    position = Column(Integer, nullable=False, default=0)

    workflow_definition = relationship("WorkflowDefinition", back_populates="transitions")

    __table_args__ = (
        Index("idx_transitions_definition_from", "workflow_definition_id", "from_step_id"),
    )

    def to_dict(self):
        return {
            "from_step_id": self.from_step_id,
            "to_step_id": self.to_step_id,
            "condition": self.condition_dict,
            "name": self.name,
        }

    @property
    def condition_dict(self):
        return _loads(self.condition, None)


class WorkflowInstance(Base):
    """
    One run of a pinned workflow definition for one request.
    """

    __tablename__ = "workflow_instances"

    id = Column(String, primary_key=True, default=_new_id)
    form_request_id = Column(String, ForeignKey("form_requests.id"), nullable=False, unique=True)
    workflow_definition_id = Column(String, ForeignKey("workflow_definitions.id"), nullable=False)
    current_step_id = Column(String(100), nullable=True)
    active_step_ids = Column(Text, nullable=False, default="[]")  # JSON list
    status = Column(String(50), nullable=False)  # WorkflowInstanceStatus value
    started_at = Column(Float, nullable=False, default=_now)
    completed_at = Column(Float, nullable=True)
    completed_by = Column(String(255), nullable=True)
    completed_by_name = Column(String(255), nullable=True)
    failure_reason = Column(Text, nullable=True)
    version = Column(Integer, nullable=False, default=1)

    workflow_definition = relationship("WorkflowDefinition")
    step_instances = relationship(
        "WorkflowStepInstance",
        back_populates="workflow_instance",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("idx_instances_status", "status"),
        Index("idx_instances_definition", "workflow_definition_id"),
    )

    def to_dict(self):
        """Convert to dictionary"""
        return {
            "id": self.id,
            "form_request_id": self.form_request_id,
            "workflow_definition_id": self.workflow_definition_id,
            "current_step_id": self.current_step_id,
            "active_step_ids": self.active_step_ids_list,
            "status": self.status,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "completed_by": self.completed_by,
            "completed_by_name": self.completed_by_name,
            "failure_reason": self.failure_reason,
            "version": self.version,
        }

    @property
    def active_step_ids_list(self) -> List[str]:
        return _loads(self.active_step_ids, [])

    def set_active_steps(self, step_ids: List[str]):
        # Keep order stable and drop duplicates
        self.active_step_ids = json.dumps(list(dict.fromkeys(step_ids)))


class WorkflowStepInstance(Base):
    """
    Runtime record of one step's progress inside an instance.
    """

    __tablename__ = "workflow_step_instances"

    id = Column(String, primary_key=True, default=_new_id)
    workflow_instance_id = Column(String, ForeignKey("workflow_instances.id"), nullable=False)
    step_id = Column(String(100), nullable=False)
    status = Column(String(50), nullable=False)  # WorkflowStepInstanceStatus value
    assigned_to = Column(String(255), nullable=True)
    started_at = Column(Float, nullable=True)
    completed_at = Column(Float, nullable=True)
    completed_by = Column(String(255), nullable=True)
    completed_by_name = Column(String(255), nullable=True)
    action = Column(String(50), nullable=True)  # WorkflowStepAction value
    comments = Column(Text, nullable=True)
    field_values = Column(Text, nullable=False, default="{}")  # JSON edits made at this step
    approvals = Column(Text, nullable=False, default="[]")  # JSON approver records

    workflow_instance = relationship("WorkflowInstance", back_populates="step_instances")

    __table_args__ = (
        UniqueConstraint("workflow_instance_id", "step_id", name="uq_step_instance_instance_step"),
        Index("idx_step_instances_status", "status"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "workflow_instance_id": self.workflow_instance_id,
            "step_id": self.step_id,
            "status": self.status,
            "assigned_to": self.assigned_to,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "completed_by": self.completed_by,
            "completed_by_name": self.completed_by_name,
            "action": self.action,
            "comments": self.comments,
            "field_values": self.field_values_dict,
            "approvals": self.approvals_list,
        }

    @property
    def field_values_dict(self) -> Dict[str, Any]:
        return _loads(self.field_values, {})

    @property
    def approvals_list(self) -> List[Dict]:
        return _loads(self.approvals, [])


class FormRequest(Base):
    """
    A requested change to a target table and its lifecycle status.
    """

    __tablename__ = "form_requests"

    id = Column(String, primary_key=True, default=_new_id)
    form_definition_id = Column(String, ForeignKey("form_definitions.id"), nullable=False)
    request_type = Column(String(20), nullable=False)  # RequestType value
    field_values = Column(Text, nullable=False, default="{}")
    original_values = Column(Text, nullable=False, default="{}")
    status = Column(String(50), nullable=False)  # RequestStatus value
    requested_by = Column(String(255), nullable=False)
    requested_by_name = Column(String(255), nullable=True)
    requested_at = Column(Float, nullable=False, default=_now)
    approved_by = Column(String(255), nullable=True)
    approved_by_name = Column(String(255), nullable=True)
    approved_at = Column(Float, nullable=True)
    rejection_reason = Column(Text, nullable=True)
    comments = Column(Text, nullable=True)
    applied_at = Column(Float, nullable=True)
    applied_record_key = Column(String(500), nullable=True)
    failure_message = Column(Text, nullable=True)
    workflow_instance_id = Column(String, nullable=True)
    updated_at = Column(Float, nullable=False, default=_now)

    form_definition = relationship("FormDefinition")
    history = relationship(
        "FormRequestHistory",
        back_populates="form_request",
        cascade="all, delete-orphan",
        order_by="FormRequestHistory.sequence_number",
    )

    __table_args__ = (
        Index("idx_requests_status", "status"),
        Index("idx_requests_form_status", "form_definition_id", "status"),
        Index("idx_requests_requested_at", "requested_at"),
    )

    def to_dict(self):
        """Convert to dictionary"""
        return {
            "id": self.id,
            "form_definition_id": self.form_definition_id,
            "request_type": self.request_type,
            "field_values": self.field_values_dict,
            "original_values": self.original_values_dict,
            "status": self.status,
            "requested_by": self.requested_by,
            "requested_by_name": self.requested_by_name,
            "requested_at": self.requested_at,
            "approved_by": self.approved_by,
            "approved_by_name": self.approved_by_name,
            "approved_at": self.approved_at,
            "rejection_reason": self.rejection_reason,
            "comments": self.comments,
            "applied_at": self.applied_at,
            "applied_record_key": self.applied_record_key,
            "failure_message": self.failure_message,
            "workflow_instance_id": self.workflow_instance_id,
            "updated_at": self.updated_at,
        }

    @property
    def field_values_dict(self) -> Dict[str, Any]:
        return _loads(self.field_values, {})

    @property
    def original_values_dict(self) -> Dict[str, Any]:
        return _loads(self.original_values, {})

    def update_field_values(self, updates: Dict[str, Any]):
        """Merge edits into the desired new state"""
        values = self.field_values_dict
        values.update(updates)
        self.field_values = dumps(values)
        self.updated_at = _now()


class FormRequestHistory(Base):
    """
    Append-only audit trail of request status transitions.
    """

    __tablename__ = "form_request_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    form_request_id = Column(String, ForeignKey("form_requests.id"), nullable=False)
    change_type = Column(String(50), nullable=False)  # FormRequestChangeType value
    previous_values = Column(Text, nullable=True)  # JSON
    new_values = Column(Text, nullable=True)  # JSON
    changed_by = Column(String(255), nullable=False)
    changed_by_name = Column(String(255), nullable=True)
    changed_at = Column(Float, nullable=False, default=_now)
    comments = Column(Text, nullable=True)
    sequence_number = Column(Integer, nullable=False, default=0)  # Ordering per request

    form_request = relationship("FormRequest", back_populates="history")

    __table_args__ = (
        Index("idx_history_request_sequence", "form_request_id", "sequence_number"),
        Index("idx_history_change_type", "change_type"),
    )

    def to_dict(self):
        """Convert to dictionary"""
        return {
            "id": self.id,
            "form_request_id": self.form_request_id,
            "change_type": self.change_type,
            "previous_values": _loads(self.previous_values, None),
            "new_values": _loads(self.new_values, None),
            "changed_by": self.changed_by,
            "changed_by_name": self.changed_by_name,
            "changed_at": self.changed_at,
            "comments": self.comments,
            "sequence_number": self.sequence_number,
        }

    @property
    def new_values_dict(self) -> Dict[str, Any]:
        return _loads(self.new_values, {})


class IdempotencyKey(Base):
    """
    Idempotency key tracking to prevent duplicate request creation.
    """

    __tablename__ = "idempotency_keys"

    key = Column(String(255), primary_key=True)
    form_request_id = Column(String, ForeignKey("form_requests.id"), nullable=True)
    response_code = Column(Integer, nullable=False)
    response_body = Column(Text, nullable=False)  # JSON string
    created_at = Column(Float, nullable=False, default=_now)
    expires_at = Column(Float, nullable=False)

    __table_args__ = (
        Index("idx_idempotency_expires", "expires_at"),
    )

    @property
    def response_body_dict(self) -> Dict[str, Any]:
        return _loads(self.response_body, {})

    def is_expired(self) -> bool:
        """Check if idempotency key has expired"""
        return datetime.now().timestamp() > self.expires_at


class DeadLetterQueue(Base):
    """
    Dead letter queue for events whose handlers kept failing.
    """

    __tablename__ = "dead_letter_queue"

    id = Column(Integer, primary_key=True, autoincrement=True)
    original_event_type = Column(String(100), nullable=False)
    event_data = Column(Text, nullable=False)  # JSON string
    error_message = Column(Text, nullable=False)
    retry_count = Column(Integer, nullable=False)
    created_at = Column(Float, nullable=False, default=_now)
    form_request_id = Column(String, nullable=True)  # Optional request reference

    __table_args__ = (
        Index("idx_dlq_created", "created_at"),
        Index("idx_dlq_event_type", "original_event_type"),
    )

    def to_dict(self):
        """Convert to dictionary"""
        return {
            "id": self.id,
            "original_event_type": self.original_event_type,
            "event_data": _loads(self.event_data, {}),
            "error_message": self.error_message,
            "retry_count": self.retry_count,
            "created_at": self.created_at,
            "form_request_id": self.form_request_id,
        }
