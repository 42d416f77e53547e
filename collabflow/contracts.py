"""Core data contracts for approval requests and workflow state."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class Priority(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"

    @property
    def rank(self) -> int:
        return PRIORITY_RANK[self]


PRIORITY_RANK: Dict[Priority, int] = {
    Priority.LOW: 1,
    Priority.MEDIUM: 2,
    Priority.HIGH: 3,
}


class ApprovalStatus(str, Enum):
    """Approval lifecycle: PENDING -> APPROVED | REJECTED, never reversed."""

    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


DECISIONS = (ApprovalStatus.APPROVED, ApprovalStatus.REJECTED)


class ExecutionStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class InstanceStatus(str, Enum):
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class StepType(str, Enum):
    APPROVAL = "APPROVAL"
    NOTIFICATION = "NOTIFICATION"


class NotificationType(str, Enum):
    APPROVAL_REQUEST = "APPROVAL_REQUEST"
    APPROVAL_RESPONSE = "APPROVAL_RESPONSE"
    APPROVAL_DELEGATION = "APPROVAL_DELEGATION"
    WORKFLOW = "WORKFLOW"


# ----------------------------------------------------------------------
# Approval requests


class DelegationRecord(BaseModel):
    """One hand-over of the right to respond to an approval."""

    from_user_id: str
    to_user_id: str
    reason: Optional[str] = None
    delegated_at: datetime = Field(default_factory=utcnow)


class ApprovalMetadata(BaseModel):
    """Metadata attached to an approval request.

    ``delegations`` is the only key the engine writes; any other keys supplied
    by the requester are kept untouched.
    """

    model_config = ConfigDict(extra="allow")

    delegations: List[DelegationRecord] = Field(default_factory=list)


class ApprovalRequest(BaseModel):
    """A gate requiring a human decision before an execution completes."""

    id: str = Field(default_factory=new_id)
    execution_id: Optional[str] = None
    requested_by: str
    approver_ids: List[str]
    title: str
    description: str = ""
    priority: Priority = Priority.MEDIUM
    due_date: Optional[datetime] = None
    attachments: List[Any] = Field(default_factory=list)
    metadata: ApprovalMetadata = Field(default_factory=ApprovalMetadata)
    status: ApprovalStatus = ApprovalStatus.PENDING
    responded_by: Optional[str] = None
    responded_at: Optional[datetime] = None
    response: Optional[str] = None
    requested_at: datetime = Field(default_factory=utcnow)

    @property
    def is_pending(self) -> bool:
        return self.status == ApprovalStatus.PENDING

    def is_approver(self, user_id: str) -> bool:
        return user_id in self.approver_ids


class ApprovalView(ApprovalRequest):
    """Approval request annotated with the viewer's permissions."""

    can_approve: bool = False
    is_requester: bool = False

    @classmethod
    def for_user(cls, approval: ApprovalRequest, user_id: str) -> "ApprovalView":
        return cls(
            **approval.model_dump(exclude={"can_approve", "is_requester"}),
            can_approve=approval.is_approver(user_id) and approval.is_pending,
            is_requester=approval.requested_by == user_id,
        )


class ApprovalQuery(BaseModel):
    """Filter for listing approvals visible to a user."""

    user_id: str
    status: Optional[ApprovalStatus] = None
    priority: Optional[Priority] = None
    include_requested: bool = True
    include_assigned: bool = True


class MetricsWindow(BaseModel):
    """Selection of approvals counted by the metrics report."""

    company_id: str
    start_date: datetime
    end_date: datetime
    user_id: Optional[str] = None


class ApprovalPage(BaseModel):
    items: List[ApprovalView] = Field(default_factory=list)
    total: int = 0
    limit: int = 20
    offset: int = 0
    has_more: bool = False


class BulkItemResult(BaseModel):
    approval_id: str
    success: bool
    approval: Optional[ApprovalRequest] = None
    error: Optional[str] = None
    error_code: Optional[str] = None


class BulkSummary(BaseModel):
    success_count: int = 0
    failure_count: int = 0


class BulkResult(BaseModel):
    """Itemized outcome of a bulk response; partial application is expected."""

    results: List[BulkItemResult] = Field(default_factory=list)
    summary: BulkSummary = Field(default_factory=BulkSummary)
    message: str = ""

    @property
    def success(self) -> bool:
        return self.summary.success_count > 0


class ApprovalMetrics(BaseModel):
    total_requests: int = 0
    pending_requests: int = 0
    approved_requests: int = 0
    rejected_requests: int = 0
    approval_rate: float = 0.0
    rejection_rate: float = 0.0
    average_response_time_hours: float = 0.0
    requests_by_priority: Dict[str, int] = Field(default_factory=dict)


# ----------------------------------------------------------------------
# Workflow definitions and runtime state


class StepDependency(BaseModel):
    required_step_id: str


class WorkflowStep(BaseModel):
    """Defines one step of a workflow template."""

    id: str = Field(default_factory=new_id)
    name: str
    step_type: str
    order: int = 0
    configuration: Dict[str, Any] = Field(default_factory=dict)
    dependencies: List[StepDependency] = Field(default_factory=list)
    is_required: bool = True

    @field_validator("dependencies", mode="before")
    @classmethod
    def _coerce_dependencies(cls, value: Any) -> Any:
        # Bare step ids are accepted as shorthand.
        if isinstance(value, list):
            return [
                {"required_step_id": dep} if isinstance(dep, str) else dep
                for dep in value
            ]
        return value

    @property
    def required_step_ids(self) -> List[str]:
        return [dep.required_step_id for dep in self.dependencies]


class WorkflowTemplate(BaseModel):
    """Ordered set of steps with dependency edges, owned by a company."""

    id: str = Field(default_factory=new_id)
    company_id: str
    name: str
    description: str = ""
    category: Optional[str] = None
    is_active: bool = True
    steps: List[WorkflowStep] = Field(default_factory=list)

    def ordered_steps(self) -> List[WorkflowStep]:
        """Steps sorted by ``order``; ties keep their declared position."""
        indexed = list(enumerate(self.steps))
        indexed.sort(key=lambda pair: (pair[1].order, pair[0]))
        return [step for _, step in indexed]

    def get_step(self, step_id: str) -> Optional[WorkflowStep]:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None


class ExecutionOutput(BaseModel):
    """Output of a step execution.

    Known keys record the approval outcome; step handlers may add their own
    result keys.
    """

    model_config = ConfigDict(extra="allow")

    approval_id: Optional[str] = None
    approval_result: Optional[ApprovalStatus] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    rejected_by: Optional[str] = None
    rejected_at: Optional[datetime] = None


class WorkflowExecution(BaseModel):
    """The run of one step within one workflow instance."""

    id: str = Field(default_factory=new_id)
    instance_id: str
    step_id: str
    status: ExecutionStatus = ExecutionStatus.PENDING
    assigned_to: Optional[str] = None
    output: ExecutionOutput = Field(default_factory=ExecutionOutput)
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    error_message: Optional[str] = None


class WorkflowInstance(BaseModel):
    """One running occurrence of a workflow template."""

    id: str = Field(default_factory=new_id)
    template_id: str
    status: InstanceStatus = InstanceStatus.RUNNING
    context_data: Dict[str, Any] = Field(default_factory=dict)
    triggered_by: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    error_message: Optional[str] = None


class Notification(BaseModel):
    """Message delivered to a user through the notification sink."""

    id: str = Field(default_factory=new_id)
    user_id: str
    title: str
    message: str
    type: NotificationType = NotificationType.WORKFLOW
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "Notification":
        return cls.model_validate_json(data)
