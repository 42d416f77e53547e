"""Workflow continuation: compute the ready set and trigger it."""

from __future__ import annotations

import logging
from typing import Any, List, Protocol, Sequence

from .contracts import (
    ExecutionStatus,
    InstanceStatus,
    WorkflowExecution,
    WorkflowInstance,
    WorkflowStep,
    WorkflowTemplate,
    utcnow,
)
from .errors import CollabFlowError, NotFoundError
from .persistence.repository import WorkflowRepository

logger = logging.getLogger(__name__)


class StepExecutor(Protocol):
    """Runs one step of a workflow instance."""

    async def execute_step(self, instance_id: str, step_id: str) -> Any:
        """Create and run the execution of ``step_id``."""


def compute_ready_steps(
    template: WorkflowTemplate, executions: Sequence[WorkflowExecution]
) -> List[WorkflowStep]:
    """Steps not yet executed whose dependencies all completed.

    Returned in template order (``order`` ascending, then declared position).
    """
    executed = {e.step_id for e in executions}
    completed = {e.step_id for e in executions if e.status == ExecutionStatus.COMPLETED}
    return [
        step
        for step in template.ordered_steps()
        if step.id not in executed
        and all(required in completed for required in step.required_step_ids)
    ]


def is_finished(
    template: WorkflowTemplate, executions: Sequence[WorkflowExecution]
) -> bool:
    """``True`` when every template step has a completed execution."""
    completed = {e.step_id for e in executions if e.status == ExecutionStatus.COMPLETED}
    return all(step.id in completed for step in template.steps)


class WorkflowContinuation:
    """Advances a workflow instance by triggering its ready steps.

    Each call is a single pass: only steps ready at call time are triggered.
    Steps unblocked by those triggers are picked up by the next call, made by
    whatever completes the next execution (a decision, or the executor).
    """

    def __init__(self, repository: WorkflowRepository, executor: StepExecutor) -> None:
        self._repository = repository
        self._executor = executor

    async def continue_workflow(self, instance_id: str) -> List[str]:
        """Trigger every ready step of ``instance_id``.

        Safe to call redundantly: a second call with no intervening
        completions triggers nothing.

        Returns:
            Ids of the steps handed to the executor, in trigger order.
        """
        instance = await self._repository.get_instance(instance_id)
        if instance is None:
            raise NotFoundError(f"Workflow instance {instance_id} not found")
        if instance.status != InstanceStatus.RUNNING:
            logger.debug(
                f"Instance {instance_id} is {instance.status.value}; nothing to continue"
            )
            return []

        template = await self._repository.get_template(instance.template_id)
        if template is None:
            raise NotFoundError(
                f"Workflow template {instance.template_id} not found for instance {instance_id}"
            )

        executions = await self._repository.list_executions(instance_id)
        ready = compute_ready_steps(template, executions)
        if not ready:
            if is_finished(template, executions):
                await self._complete(instance)
            return []

        logger.info(
            f"Triggering {len(ready)} ready step(s) for instance {instance_id}: "
            f"{[step.name for step in ready]}"
        )
        triggered: List[str] = []
        for step in ready:
            # Completing an earlier step re-enters this method, which may
            # already have run this step or finished the instance.
            current = await self._repository.get_instance(instance_id)
            if current is None or current.status != InstanceStatus.RUNNING:
                break
            if await self._repository.find_execution(instance_id, step.id) is not None:
                continue
            triggered.append(step.id)
            try:
                await self._executor.execute_step(instance_id, step.id)
            except CollabFlowError as exc:
                logger.warning(
                    f"Step {step.name} ({step.id}) of instance {instance_id} "
                    f"was not executed: {exc}"
                )
            except Exception:
                logger.exception(
                    f"Executor failed on step {step.name} ({step.id}) of instance {instance_id}"
                )
        return triggered

    async def _complete(self, instance: WorkflowInstance) -> None:
        instance.status = InstanceStatus.COMPLETED
        instance.completed_at = utcnow()
        await self._repository.update_instance(instance)
        logger.info(f"Workflow instance {instance.id} completed")
