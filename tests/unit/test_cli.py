import asyncio

import pytest
from typer.testing import CliRunner

import collabflow.persistence as persistence
from collabflow.cli import app
from collabflow.contracts import ApprovalRequest, ApprovalStatus, InstanceStatus
from collabflow.persistence import InMemoryRepository

runner = CliRunner()

TEMPLATE_YAML = """
id: tpl-purchase
company_id: acme
name: Purchase
steps:
  - id: approve
    name: Approve purchase
    step_type: APPROVAL
    order: 1
    configuration:
      approver_ids: [manager]
      title: Buy {{item}}
  - id: notify
    name: Notify buyer
    step_type: NOTIFICATION
    order: 2
    dependencies: [approve]
    configuration:
      title: "{{item}} approved"
"""


@pytest.fixture
def repo(tmp_path, monkeypatch):
    monkeypatch.setenv("COLLABFLOW_CONFIG", str(tmp_path / "absent.yaml"))
    monkeypatch.delenv("COLLABFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("COLLABFLOW_NOTIFIER", raising=False)
    repository = InMemoryRepository()
    persistence._repository_instance = repository
    yield repository
    persistence.reset_repository()


def _invoke(*args):
    return runner.invoke(app, list(args))


def test_approval_create_list_and_respond(repo):
    result = _invoke(
        "approval", "create",
        "--requested-by", "alice",
        "--approver", "bob",
        "--approver", "carol",
        "--title", "New laptop",
        "--priority", "high",
        "--due-date", "2026-12-01",
    )
    assert result.exit_code == 0, result.stdout
    approval_id = result.stdout.strip().rsplit(" ", 1)[-1]
    stored = asyncio.run(repo.get_approval(approval_id))
    assert stored.approver_ids == ["bob", "carol"]
    assert stored.due_date is not None

    listing = _invoke("approval", "list", "--user", "bob")
    assert listing.exit_code == 0
    assert f"* {approval_id}" in listing.stdout
    assert "Showing 1 of 1" in listing.stdout

    empty = _invoke("approval", "list", "--user", "bob", "--no-assigned")
    assert "No approval requests found" in empty.stdout

    shown = _invoke("approval", "show", approval_id, "--user", "alice")
    assert "Approvers: bob, carol" in shown.stdout

    responded = _invoke(
        "approval", "respond", approval_id,
        "--user", "bob", "--decision", "approved", "--response", "fine",
    )
    assert responded.exit_code == 0, responded.stdout
    assert "Approval request approved successfully" in responded.stdout

    again = _invoke(
        "approval", "respond", approval_id, "--user", "carol", "--decision", "REJECTED"
    )
    assert again.exit_code == 1
    assert "Error (conflict)" in again.stdout


def test_approval_errors_exit_with_code_one(repo):
    missing = _invoke("approval", "show", "nope", "--user", "bob")
    assert missing.exit_code == 1
    assert "Error (not_found)" in missing.stdout

    invalid = _invoke(
        "approval", "create", "--requested-by", "alice", "--approver", "bob", "--title", " "
    )
    assert invalid.exit_code == 1
    assert "Error (validation_error)" in invalid.stdout


def test_approval_delegate_and_bulk(repo):
    for approval_id in ("a1", "a2"):
        asyncio.run(
            repo.create_approval(
                ApprovalRequest(
                    id=approval_id,
                    requested_by="alice",
                    approver_ids=["bob"],
                    title=f"Request {approval_id}",
                )
            )
        )

    delegated = _invoke(
        "approval", "delegate", "a1", "--from", "bob", "--to", "zoe", "--reason", "vacation"
    )
    assert delegated.exit_code == 0, delegated.stdout
    assert "approvers: zoe" in delegated.stdout
    shown = _invoke("approval", "show", "a1", "--user", "zoe")
    assert "delegated bob -> zoe (vacation)" in shown.stdout

    bulk = _invoke("approval", "bulk", "a1", "a2", "--user", "bob", "--decision", "APPROVED")
    assert bulk.exit_code == 0, bulk.stdout
    assert "a1\tforbidden" in bulk.stdout
    assert "a2\tok" in bulk.stdout
    assert "Bulk approval completed: 1 approved, 1 failed" in bulk.stdout

    nothing = _invoke("approval", "bulk", "a1", "--user", "bob", "--decision", "REJECTED")
    assert nothing.exit_code == 1
    assert "Bulk rejection completed: 0 rejected, 1 failed" in nothing.stdout

    bad = _invoke("approval", "bulk", "a1", "--user", "zoe", "--decision", "MAYBE")
    assert bad.exit_code == 1
    assert (asyncio.run(repo.get_approval("a1"))).status == ApprovalStatus.PENDING


def test_approval_metrics_prints_json(repo):
    result = _invoke("approval", "metrics", "acme", "--start", "2026-01-01", "--end", "2026-02-01")
    assert result.exit_code == 0, result.stdout
    assert '"total_requests": 0' in result.stdout

    inverted = _invoke(
        "approval", "metrics", "acme", "--start", "2026-02-01", "--end", "2026-01-01"
    )
    assert inverted.exit_code == 1


def test_workflow_commands_drive_an_instance(repo, tmp_path):
    path = tmp_path / "purchase.yaml"
    path.write_text(TEMPLATE_YAML)

    registered = _invoke("workflow", "register", str(path))
    assert registered.exit_code == 0, registered.stdout
    assert "Registered template Purchase: tpl-purchase" in registered.stdout

    started = _invoke(
        "workflow", "start", "tpl-purchase",
        "--context", '{"item": "desk"}', "--triggered-by", "buyer",
    )
    assert started.exit_code == 0, started.stdout
    assert "RUNNING" in started.stdout
    instance_id = started.stdout.split()[3].rstrip(":")

    shown = _invoke("workflow", "show", instance_id)
    assert f"Workflow {instance_id}: RUNNING" in shown.stdout
    assert "- Approve purchase [APPROVAL]: RUNNING" in shown.stdout
    assert "- Notify buyer [NOTIFICATION]: NOT STARTED" in shown.stdout

    waiting = _invoke("workflow", "continue", instance_id)
    assert "No steps ready" in waiting.stdout

    gate = asyncio.run(repo.find_execution(instance_id, "approve"))
    approval_id = gate.output.approval_id
    responded = _invoke(
        "approval", "respond", approval_id, "--user", "manager", "--decision", "APPROVED"
    )
    assert responded.exit_code == 0, responded.stdout

    listing = _invoke("workflow", "list", "--status", "completed")
    assert f"{instance_id}\tCOMPLETED" in listing.stdout
    assert (asyncio.run(repo.get_instance(instance_id))).status == InstanceStatus.COMPLETED

    reconciled = _invoke("workflow", "reconcile")
    assert "Reconciled 0 approval(s)" in reconciled.stdout


def test_workflow_show_and_start_errors(repo):
    missing = _invoke("workflow", "show", "missing-id")
    assert missing.exit_code == 1
    assert "Workflow not found" in missing.stdout

    empty = _invoke("workflow", "list")
    assert "No workflows found" in empty.stdout

    unknown = _invoke("workflow", "start", "no-template")
    assert unknown.exit_code == 1
    assert "Error (not_found)" in unknown.stdout

    bad_context = _invoke("workflow", "start", "no-template", "--context", "[1, 2]")
    assert bad_context.exit_code == 1
    assert "--context must be a JSON object" in bad_context.stdout

    bad_status = _invoke("workflow", "list", "--status", "sleeping")
    assert bad_status.exit_code == 1
