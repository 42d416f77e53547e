"""In-memory implementation of the repository."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Dict, Optional

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
from ..errors import ConflictError
from .repository import Repository


def matches_query(approval: ApprovalRequest, query: ApprovalQuery) -> bool:
    """Return ``True`` if ``approval`` is visible under ``query``."""
    requested = query.include_requested and approval.requested_by == query.user_id
    assigned = query.include_assigned and query.user_id in approval.approver_ids
    if not (requested or assigned):
        return False
    if query.status is not None and approval.status != query.status:
        return False
    if query.priority is not None and approval.priority != query.priority:
        return False
    return True


def listing_order(approvals: list[ApprovalRequest]) -> list[ApprovalRequest]:
    """Priority rank descending, newest first, id ascending."""
    ordered = sorted(approvals, key=lambda a: a.id)
    ordered.sort(key=lambda a: (a.priority.rank, a.requested_at), reverse=True)
    return ordered


class InMemoryRepository(Repository):
    """Store approval and workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Objects are copied on the way in and
    out so callers never share state with the store.
    """

    def __init__(self) -> None:
        self._approvals: Dict[str, ApprovalRequest] = {}
        self._templates: Dict[str, WorkflowTemplate] = {}
        self._instances: Dict[str, WorkflowInstance] = {}
        self._executions: Dict[str, WorkflowExecution] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Approvals
    async def create_approval(self, approval: ApprovalRequest) -> ApprovalRequest:
        async with self._lock:
            if approval.id in self._approvals:
                raise ConflictError(f"Approval request {approval.id} already exists")
            self._approvals[approval.id] = approval.model_copy(deep=True)
        return approval.model_copy(deep=True)

    async def get_approval(self, approval_id: str) -> ApprovalRequest | None:
        approval = self._approvals.get(approval_id)
        return approval.model_copy(deep=True) if approval else None

    async def find_approvals(
        self, query: ApprovalQuery, limit: int, offset: int
    ) -> list[ApprovalRequest]:
        found = [a for a in self._approvals.values() if matches_query(a, query)]
        page = listing_order(found)[offset : offset + limit]
        return [a.model_copy(deep=True) for a in page]

    async def count_approvals(self, query: ApprovalQuery) -> int:
        return sum(1 for a in self._approvals.values() if matches_query(a, query))

    async def record_response(
        self,
        approval_id: str,
        status: ApprovalStatus,
        responded_by: str,
        response: Optional[str],
        responded_at: datetime,
    ) -> ApprovalRequest | None:
        async with self._lock:
            approval = self._approvals.get(approval_id)
            if approval is None or approval.status != ApprovalStatus.PENDING:
                return None
            approval.status = status
            approval.responded_by = responded_by
            approval.responded_at = responded_at
            approval.response = response
            return approval.model_copy(deep=True)

    async def replace_approvers(
        self,
        approval_id: str,
        expected_approver_ids: list[str],
        approver_ids: list[str],
        metadata: ApprovalMetadata,
    ) -> ApprovalRequest | None:
        async with self._lock:
            approval = self._approvals.get(approval_id)
            if (
                approval is None
                or approval.status != ApprovalStatus.PENDING
                or approval.approver_ids != expected_approver_ids
            ):
                return None
            approval.approver_ids = list(approver_ids)
            approval.metadata = metadata.model_copy(deep=True)
            return approval.model_copy(deep=True)

    async def list_approvals_in_window(self, window: MetricsWindow) -> list[ApprovalRequest]:
        selected = []
        for approval in self._approvals.values():
            if not window.start_date <= approval.requested_at <= window.end_date:
                continue
            if window.user_id is not None and not (
                approval.requested_by == window.user_id
                or window.user_id in approval.approver_ids
            ):
                continue
            if self._company_of(approval) != window.company_id:
                continue
            selected.append(approval.model_copy(deep=True))
        return selected

    async def list_decided_approvals(self) -> list[ApprovalRequest]:
        return [
            a.model_copy(deep=True)
            for a in self._approvals.values()
            if a.status != ApprovalStatus.PENDING and a.execution_id is not None
        ]

    def _company_of(self, approval: ApprovalRequest) -> str | None:
        execution = self._executions.get(approval.execution_id or "")
        if execution is None:
            return None
        instance = self._instances.get(execution.instance_id)
        if instance is None:
            return None
        template = self._templates.get(instance.template_id)
        return template.company_id if template else None

    # ------------------------------------------------------------------
    # Workflow templates and instances
    async def save_template(self, template: WorkflowTemplate) -> None:
        self._templates[template.id] = template.model_copy(deep=True)

    async def get_template(self, template_id: str) -> WorkflowTemplate | None:
        template = self._templates.get(template_id)
        return template.model_copy(deep=True) if template else None

    async def create_instance(self, instance: WorkflowInstance) -> WorkflowInstance:
        self._instances[instance.id] = instance.model_copy(deep=True)
        return instance.model_copy(deep=True)

    async def get_instance(self, instance_id: str) -> WorkflowInstance | None:
        instance = self._instances.get(instance_id)
        return instance.model_copy(deep=True) if instance else None

    async def update_instance(self, instance: WorkflowInstance) -> None:
        if instance.id in self._instances:
            self._instances[instance.id] = instance.model_copy(deep=True)

    async def list_instances(
        self, status: InstanceStatus | None = None
    ) -> list[WorkflowInstance]:
        return [
            i.model_copy(deep=True)
            for i in self._instances.values()
            if status is None or i.status == status
        ]

    # ------------------------------------------------------------------
    # Executions
    async def create_execution(self, execution: WorkflowExecution) -> WorkflowExecution:
        async with self._lock:
            for existing in self._executions.values():
                if (
                    existing.instance_id == execution.instance_id
                    and existing.step_id == execution.step_id
                ):
                    raise ConflictError(
                        f"Step {execution.step_id} already executed in instance "
                        f"{execution.instance_id}"
                    )
            self._executions[execution.id] = execution.model_copy(deep=True)
        return execution.model_copy(deep=True)

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        execution = self._executions.get(execution_id)
        return execution.model_copy(deep=True) if execution else None

    async def find_execution(
        self, instance_id: str, step_id: str
    ) -> WorkflowExecution | None:
        for execution in self._executions.values():
            if execution.instance_id == instance_id and execution.step_id == step_id:
                return execution.model_copy(deep=True)
        return None

    async def list_executions(self, instance_id: str) -> list[WorkflowExecution]:
        return [
            e.model_copy(deep=True)
            for e in self._executions.values()
            if e.instance_id == instance_id
        ]

    async def update_execution(self, execution: WorkflowExecution) -> None:
        if execution.id in self._executions:
            self._executions[execution.id] = execution.model_copy(deep=True)
