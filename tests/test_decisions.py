"""Decision handler tests."""

import pytest

from collabflow.contracts import (
    ApprovalRequest,
    ApprovalStatus,
    ExecutionStatus,
    InstanceStatus,
    WorkflowStep,
)
from collabflow.errors import ConflictError, FatalError

from conftest import seed_gate


async def _gated_approval(engine, repository, **kwargs):
    execution = await seed_gate(repository, **kwargs)
    approval = await engine.approvals.create_approval_request(
        requested_by="requester",
        approver_ids=["boss"],
        title="Ship release",
        execution_id=execution.id,
    )
    return execution, approval


@pytest.mark.asyncio
async def test_pending_approval_is_rejected(engine):
    approval = ApprovalRequest(requested_by="a", approver_ids=["b"], title="t")
    with pytest.raises(ConflictError):
        await engine.decisions.handle(approval)


@pytest.mark.asyncio
async def test_approval_without_execution_is_a_noop(engine):
    approval = ApprovalRequest(
        requested_by="a",
        approver_ids=["b"],
        title="t",
        status=ApprovalStatus.APPROVED,
        responded_by="b",
    )
    assert await engine.decisions.handle(approval) is None


@pytest.mark.asyncio
async def test_approved_decision_triggers_next_step(engine, repository, notifier):
    follow_up = WorkflowStep(
        id="announce",
        name="Announce",
        step_type="NOTIFICATION",
        order=2,
        dependencies=["gate"],
        configuration={"user_ids": ["team"], "title": "Released"},
    )
    execution, approval = await _gated_approval(
        engine, repository, extra_steps=[follow_up]
    )

    await engine.approvals.respond_to_approval(approval.id, "boss", "APPROVED")

    announce = await repository.find_execution(execution.instance_id, "announce")
    assert announce is not None
    assert announce.status == ExecutionStatus.COMPLETED
    assert announce.output.model_extra["notifications_sent"] == 1
    assert [n.title for n in notifier.for_user("team")] == ["Released"]

    instance = await repository.get_instance(execution.instance_id)
    assert instance.status == InstanceStatus.COMPLETED


@pytest.mark.asyncio
async def test_rejection_with_reason(engine, repository):
    execution, approval = await _gated_approval(engine, repository)

    await engine.approvals.respond_to_approval(
        approval.id, "boss", "REJECTED", "missing tests"
    )

    failed = await repository.get_execution(execution.id)
    assert failed.error_message == "Approval rejected: missing tests"
    assert failed.failed_at is not None


@pytest.mark.asyncio
async def test_handle_is_idempotent(engine, repository):
    execution, approval = await _gated_approval(engine, repository)
    decided = await engine.approvals.respond_to_approval(approval.id, "boss", "APPROVED")
    first = await repository.get_execution(execution.id)

    await engine.decisions.handle(decided)

    again = await repository.get_execution(execution.id)
    assert again.completed_at == first.completed_at
    assert again.status == ExecutionStatus.COMPLETED


@pytest.mark.asyncio
async def test_datastore_failure_is_fatal_and_reconcilable(engine, repository, monkeypatch):
    execution, approval = await _gated_approval(engine, repository)

    original_update = repository.update_execution

    async def broken_update(execution):
        raise RuntimeError("connection reset")

    monkeypatch.setattr(repository, "update_execution", broken_update)
    with pytest.raises(FatalError) as exc_info:
        await engine.approvals.respond_to_approval(approval.id, "boss", "APPROVED")
    assert isinstance(exc_info.value.__cause__, RuntimeError)

    # The response is committed even though the workflow did not advance.
    stored = await repository.get_approval(approval.id)
    assert stored.status == ApprovalStatus.APPROVED
    stuck = await repository.get_execution(execution.id)
    assert stuck.status == ExecutionStatus.RUNNING
    assert await engine.decisions.needs_repair(stored)

    monkeypatch.setattr(repository, "update_execution", original_update)
    repaired = await engine.decisions.reconcile()

    assert repaired == [approval.id]
    fixed = await repository.get_execution(execution.id)
    assert fixed.status == ExecutionStatus.COMPLETED
    instance = await repository.get_instance(execution.instance_id)
    assert instance.status == InstanceStatus.COMPLETED

    assert await engine.decisions.reconcile() == []


@pytest.mark.asyncio
async def test_reconcile_fails_instance_of_stuck_rejection(engine, repository, monkeypatch):
    execution, approval = await _gated_approval(engine, repository)

    original_update = repository.update_instance

    async def broken_update(instance):
        raise RuntimeError("disk full")

    monkeypatch.setattr(repository, "update_instance", broken_update)
    with pytest.raises(FatalError):
        await engine.approvals.respond_to_approval(approval.id, "boss", "REJECTED")

    instance = await repository.get_instance(execution.instance_id)
    assert instance.status == InstanceStatus.RUNNING

    monkeypatch.setattr(repository, "update_instance", original_update)
    assert await engine.decisions.reconcile() == [approval.id]

    instance = await repository.get_instance(execution.instance_id)
    assert instance.status == InstanceStatus.FAILED
    assert instance.error_message == "Workflow failed due to approval rejection: Ship release"
