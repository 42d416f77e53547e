"""Workflow dispatcher for collabflow."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import ValidationError as PydanticValidationError

from .continuation import WorkflowContinuation
from .contracts import InstanceStatus, WorkflowInstance, WorkflowTemplate
from .errors import ConflictError, NotFoundError, ValidationError
from .persistence.repository import WorkflowRepository

logger = logging.getLogger(__name__)


def validate_template(template: WorkflowTemplate) -> None:
    """Check step ids and dependency edges of ``template``.

    Raises:
        ValidationError: duplicate step ids, dependencies on unknown steps,
            self-dependencies or dependency cycles.
    """
    step_ids = [step.id for step in template.steps]
    seen = set()
    for step_id in step_ids:
        if step_id in seen:
            raise ValidationError(f"Duplicate step id: {step_id}", field="steps")
        seen.add(step_id)

    graph: Dict[str, List[str]] = {}
    for step in template.steps:
        for required_id in step.required_step_ids:
            if required_id == step.id:
                raise ValidationError(
                    f"Step {step.name} depends on itself", field="dependencies"
                )
            if required_id not in seen:
                raise ValidationError(
                    f"Step {step.name} depends on unknown step {required_id}",
                    field="dependencies",
                )
        graph[step.id] = step.required_step_ids

    visiting, done = set(), set()

    def visit(step_id: str) -> None:
        if step_id in done:
            return
        if step_id in visiting:
            raise ValidationError(
                f"Dependency cycle through step {step_id}", field="dependencies"
            )
        visiting.add(step_id)
        for required_id in graph[step_id]:
            visit(required_id)
        visiting.discard(step_id)
        done.add(step_id)

    for step_id in graph:
        visit(step_id)


class WorkflowDispatcher:
    """Service responsible for registering templates and starting instances."""

    def __init__(
        self, repository: WorkflowRepository, continuation: WorkflowContinuation
    ) -> None:
        self._repository = repository
        self._continuation = continuation

    async def register_template(self, template: WorkflowTemplate) -> WorkflowTemplate:
        """Validate and store ``template``, replacing any earlier version."""
        validate_template(template)
        await self._repository.save_template(template)
        logger.info(
            f"Registered workflow template {template.name} ({template.id}) "
            f"with {len(template.steps)} step(s)"
        )
        return template

    async def load_template(self, path: Union[str, Path]) -> WorkflowTemplate:
        """Register the template described by the YAML file at ``path``."""
        path = Path(path)
        if not path.exists():
            raise NotFoundError(f"Template file {path} not found")
        with path.open("r", encoding="utf-8") as handle:
            data: Any = yaml.safe_load(handle) or {}
        if not isinstance(data, dict):
            raise ValidationError(f"Template file {path} must contain a mapping")
        try:
            template = WorkflowTemplate.model_validate(data)
        except PydanticValidationError as exc:
            raise ValidationError(f"Invalid template {path}: {exc}") from exc
        return await self.register_template(template)

    async def start_instance(
        self,
        template_id: str,
        context_data: Optional[Dict[str, Any]] = None,
        triggered_by: Optional[str] = None,
    ) -> WorkflowInstance:
        """Create a running instance of ``template_id`` and trigger its first steps.

        Args:
            template_id: Template to instantiate.
            context_data: Variables available to ``{{name}}`` placeholders.
            triggered_by: User starting the workflow; requester of its approvals.

        Returns:
            The instance as stored after the first continuation pass.
        """
        template = await self._repository.get_template(template_id)
        if template is None:
            raise NotFoundError(
                f"Workflow template {template_id} not found", template_id=template_id
            )
        if not template.is_active:
            raise ConflictError(
                f"Workflow template {template.name} is inactive", template_id=template_id
            )

        instance = await self._repository.create_instance(
            WorkflowInstance(
                template_id=template_id,
                status=InstanceStatus.RUNNING,
                context_data=context_data or {},
                triggered_by=triggered_by,
            )
        )
        logger.info(f"Started instance {instance.id} of template {template.name}")

        await self._continuation.continue_workflow(instance.id)
        return await self._repository.get_instance(instance.id) or instance
