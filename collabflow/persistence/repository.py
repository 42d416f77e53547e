"""Repository abstraction for approval and workflow state persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol

from ..contracts import (
    ApprovalMetadata,
    ApprovalQuery,
    ApprovalRequest,
    ApprovalStatus,
    InstanceStatus,
    MetricsWindow,
    WorkflowExecution,
    WorkflowInstance,
    WorkflowTemplate,
)


class ApprovalRepository(Protocol):
    """Protocol for approval request persistence backends."""

    async def create_approval(self, approval: ApprovalRequest) -> ApprovalRequest:
        """Persist a new approval request."""

    async def get_approval(self, approval_id: str) -> ApprovalRequest | None:
        """Retrieve an approval request by id."""

    async def find_approvals(
        self, query: ApprovalQuery, limit: int, offset: int
    ) -> list[ApprovalRequest]:
        """Return one page of approvals matching ``query``.

        Ordered by priority (HIGH first), then ``requested_at`` newest first,
        then id.
        """

    async def count_approvals(self, query: ApprovalQuery) -> int:
        """Count approvals matching ``query``."""

    async def record_response(
        self,
        approval_id: str,
        status: ApprovalStatus,
        responded_by: str,
        response: Optional[str],
        responded_at: datetime,
    ) -> ApprovalRequest | None:
        """Atomically move a PENDING approval to ``status``.

        Returns ``None`` when the approval does not exist or is no longer
        pending, so exactly one of several concurrent responders succeeds.
        """

    async def replace_approvers(
        self,
        approval_id: str,
        expected_approver_ids: list[str],
        approver_ids: list[str],
        metadata: ApprovalMetadata,
    ) -> ApprovalRequest | None:
        """Swap the approver list of a PENDING approval.

        The update only applies if the stored list still equals
        ``expected_approver_ids``; otherwise ``None`` is returned.
        """

    async def list_approvals_in_window(self, window: MetricsWindow) -> list[ApprovalRequest]:
        """Approvals of a company's workflows requested inside the window."""

    async def list_decided_approvals(self) -> list[ApprovalRequest]:
        """Approvals that were responded to and are tied to an execution."""


class WorkflowRepository(Protocol):
    """Protocol for workflow template, instance and execution persistence."""

    async def save_template(self, template: WorkflowTemplate) -> None:
        """Insert or replace a template definition."""

    async def get_template(self, template_id: str) -> WorkflowTemplate | None:
        """Retrieve a template with its steps."""

    async def create_instance(self, instance: WorkflowInstance) -> WorkflowInstance:
        """Persist a new workflow instance."""

    async def get_instance(self, instance_id: str) -> WorkflowInstance | None:
        """Retrieve an instance by id."""

    async def update_instance(self, instance: WorkflowInstance) -> None:
        """Persist status fields of an instance."""

    async def list_instances(
        self, status: InstanceStatus | None = None
    ) -> list[WorkflowInstance]:
        """Return instances, optionally filtered by status."""

    async def create_execution(self, execution: WorkflowExecution) -> WorkflowExecution:
        """Persist a new execution.

        Raises ``ConflictError`` if the instance already has an execution for
        the same step.
        """

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        """Retrieve an execution by id."""

    async def find_execution(
        self, instance_id: str, step_id: str
    ) -> WorkflowExecution | None:
        """Retrieve the execution of ``step_id`` within ``instance_id``."""

    async def list_executions(self, instance_id: str) -> list[WorkflowExecution]:
        """Return all executions of an instance in creation order."""

    async def update_execution(self, execution: WorkflowExecution) -> None:
        """Persist status, output and timestamps of an execution."""


class Repository(ApprovalRepository, WorkflowRepository, Protocol):
    """Full datastore used by the engine."""
