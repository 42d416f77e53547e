"""Translate approval decisions into workflow execution and instance state."""

from __future__ import annotations

import logging
from typing import List, Optional

from .continuation import WorkflowContinuation, compute_ready_steps, is_finished
from .contracts import (
    ApprovalRequest,
    ApprovalStatus,
    ExecutionStatus,
    InstanceStatus,
    WorkflowExecution,
    utcnow,
)
from .errors import CollabFlowError, ConflictError, FatalError
from .persistence.repository import Repository

logger = logging.getLogger(__name__)

NO_REASON = "No reason provided"


class DecisionHandler:
    """Applies a responded approval to the execution it gates.

    The approval response is already committed when :meth:`handle` runs.
    A datastore failure here leaves the approval responded while the
    workflow has not advanced; :meth:`reconcile` repairs such instances.
    """

    def __init__(
        self, repository: Repository, continuation: WorkflowContinuation
    ) -> None:
        self._repository = repository
        self._continuation = continuation

    async def handle(self, approval: ApprovalRequest) -> Optional[WorkflowExecution]:
        """Apply ``approval``'s decision.

        Returns the updated execution, or ``None`` when the approval is not
        tied to a workflow.

        Raises:
            ConflictError: the approval is still pending.
            FatalError: execution or instance state could not be written.
        """
        if approval.is_pending:
            raise ConflictError(
                f"Approval request {approval.id} has no decision to apply",
                approval_id=approval.id,
            )
        if approval.execution_id is None:
            logger.info(f"Approval {approval.id} is not tied to a workflow execution")
            return None

        try:
            if approval.status == ApprovalStatus.APPROVED:
                return await self._apply_approved(approval)
            return await self._apply_rejected(approval)
        except CollabFlowError:
            raise
        except Exception as exc:
            logger.exception(
                f"Failed to apply {approval.status.value} decision of approval "
                f"{approval.id} to execution {approval.execution_id}"
            )
            raise FatalError(
                f"Approval {approval.id} was recorded but its workflow could not be "
                f"updated: {exc}",
                approval_id=approval.id,
                execution_id=approval.execution_id,
            ) from exc

    async def _load_execution(self, approval: ApprovalRequest) -> WorkflowExecution:
        execution = await self._repository.get_execution(approval.execution_id)
        if execution is None:
            raise FatalError(
                f"Workflow execution {approval.execution_id} of approval "
                f"{approval.id} not found",
                approval_id=approval.id,
                execution_id=approval.execution_id,
            )
        return execution

    async def _apply_approved(self, approval: ApprovalRequest) -> WorkflowExecution:
        execution = await self._load_execution(approval)
        if execution.status == ExecutionStatus.RUNNING:
            execution.status = ExecutionStatus.COMPLETED
            execution.completed_at = utcnow()
            execution.output.approval_result = ApprovalStatus.APPROVED
            execution.output.approved_by = approval.responded_by
            execution.output.approved_at = approval.responded_at
            await self._repository.update_execution(execution)
            logger.info(
                f"Execution {execution.id} completed by approval {approval.id}"
            )
        elif execution.status != ExecutionStatus.COMPLETED:
            raise ConflictError(
                f"Execution {execution.id} is {execution.status.value}; "
                f"cannot apply approval {approval.id}",
                execution_id=execution.id,
            )

        await self._continuation.continue_workflow(execution.instance_id)
        return execution

    async def _apply_rejected(self, approval: ApprovalRequest) -> WorkflowExecution:
        execution = await self._load_execution(approval)
        if execution.status == ExecutionStatus.RUNNING:
            execution.status = ExecutionStatus.FAILED
            execution.failed_at = utcnow()
            execution.error_message = f"Approval rejected: {approval.response or NO_REASON}"
            execution.output.approval_result = ApprovalStatus.REJECTED
            execution.output.rejected_by = approval.responded_by
            execution.output.rejected_at = approval.responded_at
            await self._repository.update_execution(execution)
            logger.info(f"Execution {execution.id} failed by approval {approval.id}")
        elif execution.status != ExecutionStatus.FAILED:
            raise ConflictError(
                f"Execution {execution.id} is {execution.status.value}; "
                f"cannot apply rejection {approval.id}",
                execution_id=execution.id,
            )

        instance = await self._repository.get_instance(execution.instance_id)
        if instance is not None and instance.status != InstanceStatus.FAILED:
            instance.status = InstanceStatus.FAILED
            instance.failed_at = utcnow()
            instance.error_message = (
                f"Workflow failed due to approval rejection: {approval.title}"
            )
            await self._repository.update_instance(instance)
            logger.info(f"Workflow instance {instance.id} failed: approval rejected")
        return execution

    async def needs_repair(self, approval: ApprovalRequest) -> bool:
        """``True`` when ``approval``'s decision has not fully reached its workflow."""
        if approval.is_pending or approval.execution_id is None:
            return False
        execution = await self._repository.get_execution(approval.execution_id)
        if execution is None:
            return False
        if execution.status == ExecutionStatus.RUNNING:
            return True
        instance = await self._repository.get_instance(execution.instance_id)
        if instance is None or instance.status != InstanceStatus.RUNNING:
            return False
        if approval.status == ApprovalStatus.REJECTED:
            return True
        template = await self._repository.get_template(instance.template_id)
        if template is None:
            return False
        executions = await self._repository.list_executions(instance.id)
        return bool(compute_ready_steps(template, executions)) or is_finished(
            template, executions
        )

    async def reconcile(self) -> List[str]:
        """Re-apply decisions that were recorded but never reached their workflow.

        Each stuck approval is handled independently; a failure is logged and
        the remaining approvals are still repaired.

        Returns:
            Ids of the approvals whose decision was re-applied.
        """
        repaired: List[str] = []
        for approval in await self._repository.list_decided_approvals():
            if not await self.needs_repair(approval):
                continue
            try:
                await self.handle(approval)
            except CollabFlowError as exc:
                logger.error(f"Could not reconcile approval {approval.id}: {exc}")
                continue
            repaired.append(approval.id)
            logger.info(f"Reconciled approval {approval.id}")
        return repaired
