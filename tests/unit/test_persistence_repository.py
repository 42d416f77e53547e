from datetime import datetime, timedelta, timezone

import pytest

from collabflow.contracts import (
    ApprovalMetadata,
    ApprovalQuery,
    ApprovalRequest,
    ApprovalStatus,
    DelegationRecord,
    ExecutionStatus,
    InstanceStatus,
    MetricsWindow,
    Priority,
    WorkflowExecution,
    WorkflowInstance,
    WorkflowStep,
    WorkflowTemplate,
)
from collabflow.errors import ConflictError
from collabflow.persistence import InMemoryRepository, SQLiteRepository

BASE = datetime(2026, 5, 1, 9, 0, tzinfo=timezone.utc)


@pytest.fixture(params=["inmemory", "sqlite"])
def repo(request, tmp_path):
    if request.param == "inmemory":
        yield InMemoryRepository()
        return
    repository = SQLiteRepository(tmp_path / "collabflow.db")
    yield repository
    repository.close()


def _approval(approval_id, priority=Priority.MEDIUM, minutes=0, **kwargs):
    data = {
        "id": approval_id,
        "requested_by": "alice",
        "approver_ids": ["bob", "carol"],
        "title": f"Request {approval_id}",
        "priority": priority,
        "requested_at": BASE + timedelta(minutes=minutes),
    }
    data.update(kwargs)
    return ApprovalRequest(**data)


async def _seed_workflow(repo, company_id="acme"):
    template = WorkflowTemplate(
        company_id=company_id,
        name="Review",
        steps=[WorkflowStep(id="review", name="Review", step_type="APPROVAL")],
    )
    await repo.save_template(template)
    instance = await repo.create_instance(WorkflowInstance(template_id=template.id))
    execution = await repo.create_execution(
        WorkflowExecution(
            instance_id=instance.id, step_id="review", status=ExecutionStatus.RUNNING
        )
    )
    return template, instance, execution


@pytest.mark.asyncio
async def test_approval_crud_round_trip(repo):
    approval = _approval(
        "a1",
        priority=Priority.HIGH,
        due_date=BASE + timedelta(days=2),
        attachments=[{"name": "quote.pdf"}],
        metadata=ApprovalMetadata(source="import"),
    )
    await repo.create_approval(approval)

    loaded = await repo.get_approval("a1")
    assert loaded == approval
    assert loaded.metadata.model_extra == {"source": "import"}
    assert await repo.get_approval("missing") is None

    with pytest.raises(ConflictError):
        await repo.create_approval(approval)


@pytest.mark.asyncio
async def test_find_and_count_respect_visibility_and_order(repo):
    await repo.create_approval(_approval("low", Priority.LOW, minutes=50))
    await repo.create_approval(_approval("high-old", Priority.HIGH, minutes=0))
    await repo.create_approval(_approval("high-b", Priority.HIGH, minutes=10))
    await repo.create_approval(_approval("high-a", Priority.HIGH, minutes=10))
    await repo.create_approval(
        _approval("other", requested_by="dave", approver_ids=["erin"])
    )

    query = ApprovalQuery(user_id="bob")
    page = await repo.find_approvals(query, limit=10, offset=0)
    assert [a.id for a in page] == ["high-a", "high-b", "high-old", "low"]
    assert await repo.count_approvals(query) == 4

    second = await repo.find_approvals(query, limit=2, offset=2)
    assert [a.id for a in second] == ["high-old", "low"]

    assert await repo.count_approvals(ApprovalQuery(user_id="dave")) == 1
    assert await repo.count_approvals(
        ApprovalQuery(user_id="dave", include_requested=False)
    ) == 0
    assert await repo.count_approvals(
        ApprovalQuery(user_id="bob", priority=Priority.HIGH)
    ) == 3
    assert await repo.count_approvals(
        ApprovalQuery(user_id="bob", include_requested=False, include_assigned=False)
    ) == 0


@pytest.mark.asyncio
async def test_record_response_is_conditional(repo):
    await repo.create_approval(_approval("a1"))
    responded_at = BASE + timedelta(hours=3)

    first = await repo.record_response(
        "a1", ApprovalStatus.APPROVED, "bob", "ok", responded_at
    )
    assert first.status == ApprovalStatus.APPROVED
    assert first.responded_by == "bob"
    assert first.responded_at == responded_at

    second = await repo.record_response(
        "a1", ApprovalStatus.REJECTED, "carol", "no", responded_at
    )
    assert second is None
    assert (await repo.get_approval("a1")).status == ApprovalStatus.APPROVED

    assert await repo.record_response(
        "missing", ApprovalStatus.APPROVED, "bob", None, responded_at
    ) is None

    status_filter = ApprovalQuery(user_id="bob", status=ApprovalStatus.APPROVED)
    assert await repo.count_approvals(status_filter) == 1


@pytest.mark.asyncio
async def test_replace_approvers_checks_expected_list(repo):
    await repo.create_approval(_approval("a1"))
    metadata = ApprovalMetadata(
        delegations=[DelegationRecord(from_user_id="bob", to_user_id="zoe")]
    )

    updated = await repo.replace_approvers(
        "a1", ["bob", "carol"], ["zoe", "carol"], metadata
    )
    assert updated.approver_ids == ["zoe", "carol"]
    assert updated.metadata.delegations[0].to_user_id == "zoe"

    stale = await repo.replace_approvers(
        "a1", ["bob", "carol"], ["yan", "carol"], metadata
    )
    assert stale is None
    assert (await repo.get_approval("a1")).approver_ids == ["zoe", "carol"]

    await repo.record_response("a1", ApprovalStatus.APPROVED, "zoe", None, BASE)
    assert await repo.replace_approvers(
        "a1", ["zoe", "carol"], ["bob", "carol"], metadata
    ) is None


@pytest.mark.asyncio
async def test_window_selects_company_approvals(repo):
    _, _, acme_execution = await _seed_workflow(repo, "acme")
    _, _, other_execution = await _seed_workflow(repo, "globex")
    await repo.create_approval(_approval("in", execution_id=acme_execution.id, minutes=5))
    await repo.create_approval(
        _approval("late", execution_id=acme_execution.id, minutes=60 * 24 * 10)
    )
    await repo.create_approval(_approval("foreign", execution_id=other_execution.id))
    await repo.create_approval(_approval("loose"))

    window = MetricsWindow(
        company_id="acme", start_date=BASE, end_date=BASE + timedelta(days=1)
    )
    assert [a.id for a in await repo.list_approvals_in_window(window)] == ["in"]

    scoped = window.model_copy(update={"user_id": "carol"})
    assert [a.id for a in await repo.list_approvals_in_window(scoped)] == ["in"]
    nobody = window.model_copy(update={"user_id": "nobody"})
    assert await repo.list_approvals_in_window(nobody) == []


@pytest.mark.asyncio
async def test_decided_approvals_need_an_execution(repo):
    _, _, execution = await _seed_workflow(repo)
    await repo.create_approval(_approval("gated", execution_id=execution.id))
    await repo.create_approval(_approval("loose"))
    await repo.create_approval(_approval("open", execution_id=execution.id))
    for approval_id in ("gated", "loose"):
        await repo.record_response(approval_id, ApprovalStatus.APPROVED, "bob", None, BASE)

    assert [a.id for a in await repo.list_decided_approvals()] == ["gated"]


@pytest.mark.asyncio
async def test_workflow_state_round_trip(repo):
    template, instance, execution = await _seed_workflow(repo)

    assert await repo.get_template(template.id) == template
    assert await repo.get_template("missing") is None

    loaded = await repo.get_instance(instance.id)
    assert loaded.status == InstanceStatus.RUNNING
    loaded.status = InstanceStatus.FAILED
    loaded.failed_at = BASE
    loaded.error_message = "stopped"
    await repo.update_instance(loaded)
    assert (await repo.get_instance(instance.id)).error_message == "stopped"
    assert [i.id for i in await repo.list_instances(InstanceStatus.FAILED)] == [instance.id]
    assert await repo.list_instances(InstanceStatus.RUNNING) == []

    found = await repo.find_execution(instance.id, "review")
    assert found.id == execution.id
    found.status = ExecutionStatus.COMPLETED
    found.completed_at = BASE
    found.output.approval_id = "a1"
    found.output.approval_result = ApprovalStatus.APPROVED
    await repo.update_execution(found)

    stored = await repo.get_execution(execution.id)
    assert stored.status == ExecutionStatus.COMPLETED
    assert stored.output.approval_id == "a1"
    assert stored.output.approval_result == ApprovalStatus.APPROVED
    assert [e.id for e in await repo.list_executions(instance.id)] == [execution.id]


@pytest.mark.asyncio
async def test_duplicate_execution_conflicts(repo):
    _, instance, _ = await _seed_workflow(repo)
    with pytest.raises(ConflictError):
        await repo.create_execution(
            WorkflowExecution(instance_id=instance.id, step_id="review")
        )
    assert len(await repo.list_executions(instance.id)) == 1
