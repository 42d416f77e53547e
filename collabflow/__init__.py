"""Collabflow: approval-gated workflow engine for CollabNotes."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .approvals import ApprovalService
from .config import CollabFlowConfig
from .continuation import WorkflowContinuation
from .contracts import (
    ApprovalRequest,
    ApprovalStatus,
    Priority,
    WorkflowExecution,
    WorkflowInstance,
    WorkflowStep,
    WorkflowTemplate,
)
from .decisions import DecisionHandler
from .dispatch import WorkflowDispatcher
from .errors import (
    AuthorizationError,
    CollabFlowError,
    ConflictError,
    FatalError,
    NotFoundError,
    ValidationError,
)
from .execute import StepExecutor
from .notifications import BaseNotifier, get_notifier
from .persistence import Repository, get_repository


@dataclass
class Engine:
    """The wired set of services sharing one repository and notifier."""

    repository: Repository
    notifier: BaseNotifier
    approvals: ApprovalService
    decisions: DecisionHandler
    continuation: WorkflowContinuation
    executor: StepExecutor
    dispatcher: WorkflowDispatcher


def build_engine(
    repository: Optional[Repository] = None,
    notifier: Optional[BaseNotifier] = None,
    config: Optional[CollabFlowConfig] = None,
) -> Engine:
    """Wire the services together.

    Missing collaborators come from :func:`get_repository` and
    :func:`get_notifier`, which read ``config`` or the loaded configuration.
    """
    repository = repository or get_repository(config=config)
    notifier = notifier or get_notifier(config=config)

    executor = StepExecutor(repository, notifier)
    continuation = WorkflowContinuation(repository, executor)
    decisions = DecisionHandler(repository, continuation)
    approvals = ApprovalService(repository, notifier, decisions)
    executor.approvals = approvals
    executor.continuation = continuation

    return Engine(
        repository=repository,
        notifier=notifier,
        approvals=approvals,
        decisions=decisions,
        continuation=continuation,
        executor=executor,
        dispatcher=WorkflowDispatcher(repository, continuation),
    )


__version__ = "0.1.0"
__all__ = [
    "ApprovalRequest",
    "ApprovalService",
    "ApprovalStatus",
    "AuthorizationError",
    "CollabFlowError",
    "ConflictError",
    "DecisionHandler",
    "Engine",
    "FatalError",
    "NotFoundError",
    "Priority",
    "StepExecutor",
    "ValidationError",
    "WorkflowContinuation",
    "WorkflowDispatcher",
    "WorkflowExecution",
    "WorkflowInstance",
    "WorkflowStep",
    "WorkflowTemplate",
    "build_engine",
    "get_notifier",
    "get_repository",
]
