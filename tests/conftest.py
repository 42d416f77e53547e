"""Shared fixtures for collabflow tests."""

from __future__ import annotations

from typing import Iterable, Optional

import pytest

from collabflow import build_engine
from collabflow.contracts import (
    ExecutionStatus,
    WorkflowExecution,
    WorkflowInstance,
    WorkflowStep,
    WorkflowTemplate,
)
from collabflow.notifications import InMemoryNotifier
from collabflow.persistence import InMemoryRepository


@pytest.fixture
def repository():
    return InMemoryRepository()


@pytest.fixture
def notifier():
    return InMemoryNotifier()


@pytest.fixture
def engine(repository, notifier):
    return build_engine(repository, notifier)


def expense_template(company_id: str = "acme") -> WorkflowTemplate:
    """Notify the submitter, ask the manager, then tell finance."""
    return WorkflowTemplate(
        id="tpl-expense",
        company_id=company_id,
        name="Expense approval",
        category="finance",
        steps=[
            WorkflowStep(
                id="notify-submitted",
                name="Notify submitter",
                step_type="NOTIFICATION",
                order=1,
                configuration={
                    "title": "Expense of {{amount}} submitted",
                    "message": "Your expense for {{purpose}} is awaiting approval",
                },
            ),
            WorkflowStep(
                id="manager-approval",
                name="Manager approval",
                step_type="APPROVAL",
                order=2,
                dependencies=["notify-submitted"],
                configuration={
                    "approver_ids": ["manager"],
                    "title": "Approve expense of {{amount}}",
                    "description": "Purpose: {{purpose}}",
                    "priority": "HIGH",
                },
            ),
            WorkflowStep(
                id="notify-finance",
                name="Notify finance",
                step_type="NOTIFICATION",
                order=3,
                dependencies=["manager-approval"],
                configuration={
                    "user_ids": ["employee", "finance"],
                    "title": "Expense of {{amount}} approved",
                },
            ),
        ],
    )


async def seed_gate(
    repository,
    company_id: str = "acme",
    extra_steps: Iterable[WorkflowStep] = (),
    triggered_by: Optional[str] = "requester",
) -> WorkflowExecution:
    """Store a template, a running instance and a RUNNING gate execution."""
    gate = WorkflowStep(id="gate", name="Gate", step_type="APPROVAL", order=1)
    template = WorkflowTemplate(
        company_id=company_id,
        name=f"Gated workflow of {company_id}",
        steps=[gate, *extra_steps],
    )
    await repository.save_template(template)
    instance = await repository.create_instance(
        WorkflowInstance(template_id=template.id, triggered_by=triggered_by)
    )
    return await repository.create_execution(
        WorkflowExecution(
            instance_id=instance.id, step_id=gate.id, status=ExecutionStatus.RUNNING
        )
    )
