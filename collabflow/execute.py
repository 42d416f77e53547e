"""Step execution engine for collabflow workflows."""

from __future__ import annotations

import inspect
import logging
import re
from datetime import datetime
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Optional, Union

from .contracts import (
    ExecutionOutput,
    ExecutionStatus,
    InstanceStatus,
    NotificationType,
    StepType,
    WorkflowExecution,
    WorkflowInstance,
    WorkflowStep,
    utcnow,
)
from .errors import ConflictError, NotFoundError, ValidationError
from .notifications.base import BaseNotifier
from .persistence.repository import Repository

if TYPE_CHECKING:
    from .approvals import ApprovalService
    from .continuation import WorkflowContinuation

logger = logging.getLogger(__name__)

StepHandler = Callable[
    [WorkflowExecution, WorkflowStep, WorkflowInstance],
    Union[Optional[Dict[str, Any]], Awaitable[Optional[Dict[str, Any]]]],
]

_PLACEHOLDER = re.compile(r"\{\{(\w+)\}\}")


def replace_variables(template: Any, context_data: Dict[str, Any]) -> Any:
    """Substitute ``{{name}}`` placeholders from ``context_data``.

    Unknown placeholders are left as written; non-string values pass through.
    """
    if not isinstance(template, str):
        return template

    def _lookup(match: re.Match) -> str:
        value = context_data.get(match.group(1))
        return match.group(0) if value is None else str(value)

    return _PLACEHOLDER.sub(_lookup, template)


class StepExecutor:
    """Creates executions for workflow steps and runs their handlers.

    Built-in step types are ``APPROVAL`` (opens an approval request and leaves
    the execution RUNNING until it is decided) and ``NOTIFICATION``. Other
    types are added with :meth:`register_handler`.
    """

    def __init__(
        self,
        repository: Repository,
        notifier: BaseNotifier,
        approvals: Optional["ApprovalService"] = None,
        continuation: Optional["WorkflowContinuation"] = None,
    ) -> None:
        self._repository = repository
        self._notifier = notifier
        self.approvals = approvals
        self.continuation = continuation
        self._handlers: Dict[str, StepHandler] = {
            StepType.APPROVAL.value: self._handle_approval,
            StepType.NOTIFICATION.value: self._handle_notification,
        }
        self._gating_types = {StepType.APPROVAL.value}

    def register_handler(
        self, step_type: str, handler: StepHandler, gating: bool = False
    ) -> None:
        """Run ``handler`` for steps of ``step_type``.

        The handler receives ``(execution, step, instance)`` and returns a dict
        merged into the execution output. Executions of a ``gating`` type stay
        RUNNING after the handler returns; something else must complete them.
        """
        self._handlers[step_type] = handler
        if gating:
            self._gating_types.add(step_type)
        else:
            self._gating_types.discard(step_type)

    async def execute_step(
        self, instance_id: str, step_id: str, assigned_to: Optional[str] = None
    ) -> WorkflowExecution:
        """Create the execution of ``step_id`` in ``instance_id`` and run it.

        An existing execution of the same step is returned unchanged.

        Raises:
            NotFoundError: unknown instance, template or step.
            ConflictError: the instance is not running, or a dependency has
                not completed.
        """
        instance = await self._repository.get_instance(instance_id)
        if instance is None:
            raise NotFoundError(f"Workflow instance {instance_id} not found")
        if instance.status != InstanceStatus.RUNNING:
            raise ConflictError(
                f"Workflow instance {instance_id} is {instance.status.value}",
                instance_id=instance_id,
            )
        template = await self._repository.get_template(instance.template_id)
        step = template.get_step(step_id) if template else None
        if step is None:
            raise NotFoundError(f"Workflow step {step_id} not found")

        existing = await self._repository.find_execution(instance_id, step_id)
        if existing is not None:
            logger.debug(f"Step {step.name} already executed in instance {instance_id}")
            return existing

        for required_id in step.required_step_ids:
            required = await self._repository.find_execution(instance_id, required_id)
            if required is None or required.status != ExecutionStatus.COMPLETED:
                required_step = template.get_step(required_id)
                name = required_step.name if required_step else required_id
                raise ConflictError(
                    f"Dependency not satisfied: {name}", step_id=step_id
                )

        execution = WorkflowExecution(
            instance_id=instance_id,
            step_id=step_id,
            status=ExecutionStatus.RUNNING,
            assigned_to=assigned_to,
        )
        try:
            execution = await self._repository.create_execution(execution)
        except ConflictError:
            existing = await self._repository.find_execution(instance_id, step_id)
            if existing is None:
                raise
            return existing
        logger.info(f"Executing step {step.name} ({step.step_type}) of instance {instance_id}")

        handler = self._handlers.get(step.step_type)
        if handler is None:
            return await self._fail(execution, f"Unknown step type: {step.step_type}")
        try:
            result = handler(execution, step, instance)
            if inspect.isawaitable(result):
                result = await result
        except Exception as exc:
            logger.warning(f"Step {step.name} of instance {instance_id} failed: {exc}")
            return await self._fail(execution, str(exc))

        if step.step_type in self._gating_types:
            return await self._record_output(execution, result or {})
        return await self._complete(execution, result or {})

    async def _record_output(
        self, execution: WorkflowExecution, output: Dict[str, Any]
    ) -> WorkflowExecution:
        # Reload: a decision may already have landed on this execution.
        current = await self._repository.get_execution(execution.id) or execution
        if current.status == ExecutionStatus.RUNNING:
            current.output = _merge_output(current.output, output)
            await self._repository.update_execution(current)
        return current

    async def _complete(
        self, execution: WorkflowExecution, output: Dict[str, Any]
    ) -> WorkflowExecution:
        execution.status = ExecutionStatus.COMPLETED
        execution.completed_at = utcnow()
        execution.output = _merge_output(execution.output, output)
        await self._repository.update_execution(execution)
        logger.info(f"Execution {execution.id} completed")

        if self.continuation is not None:
            await self.continuation.continue_workflow(execution.instance_id)
        return execution

    async def _fail(self, execution: WorkflowExecution, message: str) -> WorkflowExecution:
        execution.status = ExecutionStatus.FAILED
        execution.failed_at = utcnow()
        execution.error_message = message
        await self._repository.update_execution(execution)
        logger.info(f"Execution {execution.id} failed: {message}")
        return execution

    # ------------------------------------------------------------------
    # Built-in handlers
    async def _handle_approval(
        self, execution: WorkflowExecution, step: WorkflowStep, instance: WorkflowInstance
    ) -> Dict[str, Any]:
        if self.approvals is None:
            raise RuntimeError("No approval service configured for APPROVAL steps")
        config = step.configuration
        context = instance.context_data
        approval = await self.approvals.create_approval_request(
            requested_by=config.get("requested_by") or instance.triggered_by,
            approver_ids=list(config.get("approver_ids") or []),
            title=replace_variables(config.get("title") or step.name, context),
            description=replace_variables(config.get("description") or "", context),
            priority=config.get("priority") or "MEDIUM",
            due_date=_parse_datetime(config.get("due_date")),
            execution_id=execution.id,
        )
        return {"approval_id": approval.id}

    async def _handle_notification(
        self, execution: WorkflowExecution, step: WorkflowStep, instance: WorkflowInstance
    ) -> Dict[str, Any]:
        config = step.configuration
        context = instance.context_data
        user_ids = [u for u in (config.get("user_ids") or [instance.triggered_by]) if u]
        if not user_ids:
            raise ValidationError("Notification step has no recipients", field="user_ids")
        notification_type = NotificationType(config.get("type") or NotificationType.WORKFLOW)
        title = replace_variables(config.get("title") or step.name, context)
        message = replace_variables(config.get("message") or "", context)

        sent = 0
        for user_id in user_ids:
            try:
                await self._notifier.notify(
                    user_id,
                    title,
                    message,
                    notification_type,
                    {"instanceId": instance.id, "stepId": step.id},
                )
            except Exception:
                logger.warning(
                    f"Failed to notify {user_id} for step {step.name}", exc_info=True
                )
                continue
            sent += 1
        return {"notifications_sent": sent}


def _merge_output(output: ExecutionOutput, extra: Dict[str, Any]) -> ExecutionOutput:
    return ExecutionOutput.model_validate({**output.model_dump(exclude_none=True), **extra})


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))
