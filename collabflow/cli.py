"""Command line interface for collabflow approvals and workflows."""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, List, Optional, TypeVar

import typer

from collabflow import Engine, build_engine
from collabflow.config import load_config
from collabflow.contracts import InstanceStatus
from collabflow.errors import CollabFlowError

T = TypeVar("T")

DATE_FORMATS = ["%Y-%m-%d", "%Y-%m-%dT%H:%M:%S", "%Y-%m-%d %H:%M:%S"]

app = typer.Typer(help="CLI for collabflow approvals and workflows")

# Command groups
approval_app = typer.Typer(help="Commands for managing approval requests")
workflow_app = typer.Typer(help="Commands for managing workflows")

app.add_typer(approval_app, name="approval")
app.add_typer(workflow_app, name="workflow")


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(
        None, "--log-level", help="Override the configured log level"
    ),
) -> None:
    """Collabflow CLI entry point."""
    config = load_config()
    logging.basicConfig(
        level=(log_level or config.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _run(action: Callable[[Engine], Awaitable[T]]) -> T:
    """Run ``action`` against a freshly wired engine.

    Typed errors are reported in red and end the command with exit code 1.
    """

    async def runner() -> T:
        engine = build_engine()
        try:
            return await action(engine)
        finally:
            await engine.notifier.disconnect()

    try:
        return asyncio.run(runner())
    except CollabFlowError as exc:
        typer.secho(f"Error ({exc.code}): {exc.message}", fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _parse_context(raw: Optional[str]) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        typer.secho(f"Invalid --context JSON: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    if not isinstance(data, dict):
        typer.secho("--context must be a JSON object", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    return data


# ----------------------------------------------------------------------
# Approvals


@approval_app.command("create")
def approval_create(
    requested_by: str = typer.Option(..., "--requested-by", help="Requesting user id"),
    approver: List[str] = typer.Option(..., "--approver", help="Approver user id (repeatable)"),
    title: str = typer.Option(..., "--title"),
    description: str = typer.Option("", "--description"),
    priority: str = typer.Option("MEDIUM", "--priority", help="LOW, MEDIUM or HIGH"),
    due_date: Optional[datetime] = typer.Option(None, "--due-date", formats=DATE_FORMATS),
    execution_id: Optional[str] = typer.Option(None, "--execution-id"),
) -> None:
    """
    Create an approval request and notify its approvers.

    Example:
        collabflow approval create --requested-by u1 --approver u2 --title "Budget"
    """
    approval = _run(
        lambda engine: engine.approvals.create_approval_request(
            requested_by=requested_by,
            approver_ids=approver,
            title=title,
            description=description,
            priority=priority.upper(),
            due_date=due_date,
            execution_id=execution_id,
        )
    )
    typer.echo(f"Created approval request {approval.id}")


@approval_app.command("list")
def approval_list(
    user: str = typer.Option(..., "--user", help="Viewing user id"),
    status: Optional[str] = typer.Option(None, "--status"),
    priority: Optional[str] = typer.Option(None, "--priority"),
    requested: bool = typer.Option(True, help="Include requests made by the user"),
    assigned: bool = typer.Option(True, help="Include requests assigned to the user"),
    limit: int = typer.Option(20, "--limit"),
    offset: int = typer.Option(0, "--offset"),
) -> None:
    """
    List approval requests visible to a user.

    Ordered by priority (HIGH first), then newest first. Rows marked with
    ``*`` can be answered by the user.
    """
    page = _run(
        lambda engine: engine.approvals.list_approval_requests(
            user,
            status=status.upper() if status else None,
            priority=priority.upper() if priority else None,
            include_requested=requested,
            include_assigned=assigned,
            limit=limit,
            offset=offset,
        )
    )
    if not page.items:
        typer.echo("No approval requests found")
        return
    for item in page.items:
        marker = "*" if item.can_approve else " "
        typer.echo(
            f"{marker} {item.id}\t{item.status.value}\t{item.priority.value}\t{item.title}"
        )
    typer.echo(f"Showing {len(page.items)} of {page.total}")


@approval_app.command("show")
def approval_show(
    approval_id: str,
    user: str = typer.Option(..., "--user", help="Viewing user id"),
) -> None:
    """Show one approval request, including its delegation history."""
    view = _run(lambda engine: engine.approvals.get_approval_request(approval_id, user))
    typer.echo(f"Approval {view.id}: {view.status.value}")
    typer.echo(f"Title: {view.title}")
    typer.echo(f"Priority: {view.priority.value}")
    typer.echo(f"Requested by: {view.requested_by} at {view.requested_at}")
    typer.echo(f"Approvers: {', '.join(view.approver_ids)}")
    if view.responded_by:
        typer.echo(f"Responded by: {view.responded_by} at {view.responded_at}")
        if view.response:
            typer.echo(f"Response: {view.response}")
    for record in view.metadata.delegations:
        typer.echo(
            f"- delegated {record.from_user_id} -> {record.to_user_id}"
            + (f" ({record.reason})" if record.reason else "")
        )


@approval_app.command("respond")
def approval_respond(
    approval_id: str,
    user: str = typer.Option(..., "--user", help="Responding approver id"),
    decision: str = typer.Option(..., "--decision", help="APPROVED or REJECTED"),
    response: Optional[str] = typer.Option(None, "--response"),
) -> None:
    """Approve or reject a pending approval request."""
    approval = _run(
        lambda engine: engine.approvals.respond_to_approval(
            approval_id, user, decision.upper(), response
        )
    )
    typer.echo(f"Approval request {approval.status.value.lower()} successfully")


@approval_app.command("delegate")
def approval_delegate(
    approval_id: str,
    from_user: str = typer.Option(..., "--from", help="Current approver id"),
    to_user: str = typer.Option(..., "--to", help="New approver id"),
    reason: Optional[str] = typer.Option(None, "--reason"),
) -> None:
    """Hand an approval over to another user."""
    approval = _run(
        lambda engine: engine.approvals.delegate_approval(
            approval_id, from_user, to_user, reason
        )
    )
    typer.echo(f"Approval successfully delegated; approvers: {', '.join(approval.approver_ids)}")


@approval_app.command("bulk")
def approval_bulk(
    approval_ids: List[str],
    user: str = typer.Option(..., "--user", help="Responding approver id"),
    decision: str = typer.Option(..., "--decision", help="APPROVED or REJECTED"),
    response: Optional[str] = typer.Option(None, "--response"),
) -> None:
    """Respond to several approvals; failures are listed, never fatal to the batch."""
    if decision.upper() == "APPROVED":
        result = _run(lambda engine: engine.approvals.bulk_approve(approval_ids, user, response))
    elif decision.upper() == "REJECTED":
        result = _run(lambda engine: engine.approvals.bulk_reject(approval_ids, user, response))
    else:
        typer.secho("Invalid decision. Must be APPROVED or REJECTED", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    for item in result.results:
        if item.success:
            typer.echo(f"{item.approval_id}\tok")
        else:
            typer.secho(f"{item.approval_id}\t{item.error_code}: {item.error}", fg=typer.colors.RED)
    typer.echo(result.message)
    if not result.success:
        raise typer.Exit(code=1)


@approval_app.command("metrics")
def approval_metrics(
    company_id: str,
    start: Optional[datetime] = typer.Option(None, "--start", formats=DATE_FORMATS),
    end: Optional[datetime] = typer.Option(None, "--end", formats=DATE_FORMATS),
    user: Optional[str] = typer.Option(None, "--user"),
) -> None:
    """Print approval statistics for a company (default window: last 30 days)."""
    metrics = _run(
        lambda engine: engine.approvals.get_approval_metrics(
            company_id, start_date=start, end_date=end, user_id=user
        )
    )
    typer.echo(metrics.model_dump_json(indent=2))


# ----------------------------------------------------------------------
# Workflows


@workflow_app.command("register")
def workflow_register(template_path: Path) -> None:
    """
    Register a workflow template from a YAML file.

    Example:
        collabflow workflow register ./templates/expense.yaml
    """
    template = _run(lambda engine: engine.dispatcher.load_template(template_path))
    typer.echo(f"Registered template {template.name}: {template.id}")


@workflow_app.command("start")
def workflow_start(
    template_id: str,
    context: Optional[str] = typer.Option(None, "--context", help="JSON object of variables"),
    triggered_by: Optional[str] = typer.Option(None, "--triggered-by"),
) -> None:
    """Start an instance of a registered template."""
    context_data = _parse_context(context)
    instance = _run(
        lambda engine: engine.dispatcher.start_instance(
            template_id, context_data=context_data, triggered_by=triggered_by
        )
    )
    typer.echo(f"Started workflow instance {instance.id}: {instance.status.value}")


@workflow_app.command("list")
def workflow_list(
    status: Optional[str] = typer.Option(None, "--status", help="RUNNING, COMPLETED or FAILED"),
) -> None:
    """List workflow instances with their current status."""
    try:
        wanted = InstanceStatus(status.upper()) if status else None
    except ValueError:
        typer.secho(f"Unknown status: {status}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    instances = _run(lambda engine: engine.repository.list_instances(wanted))
    if not instances:
        typer.echo("No workflows found")
        return
    for instance in instances:
        typer.echo(f"{instance.id}\t{instance.status.value}")


@workflow_app.command("show")
def workflow_show(instance_id: str) -> None:
    """Show an instance and the executions of its steps."""

    async def load(engine: Engine):
        instance = await engine.repository.get_instance(instance_id)
        if instance is None:
            return None, None, []
        template = await engine.repository.get_template(instance.template_id)
        executions = await engine.repository.list_executions(instance_id)
        return instance, template, executions

    instance, template, executions = _run(load)
    if instance is None:
        typer.echo("Workflow not found")
        raise typer.Exit(code=1)
    typer.echo(f"Workflow {instance.id}: {instance.status.value}")
    if instance.error_message:
        typer.echo(f"Error: {instance.error_message}")
    if instance.context_data:
        typer.echo(f"Context: {instance.context_data}")
    by_step = {execution.step_id: execution for execution in executions}
    for step in template.ordered_steps() if template else []:
        execution = by_step.get(step.id)
        state = execution.status.value if execution else "NOT STARTED"
        typer.echo(f"- {step.name} [{step.step_type}]: {state}")


@workflow_app.command("continue")
def workflow_continue(instance_id: str) -> None:
    """Trigger every ready step of an instance."""
    triggered = _run(lambda engine: engine.continuation.continue_workflow(instance_id))
    if not triggered:
        typer.echo("No steps ready")
        return
    typer.echo(f"Triggered {len(triggered)} step(s): {', '.join(triggered)}")


@workflow_app.command("reconcile")
def workflow_reconcile() -> None:
    """Re-apply approval decisions that never reached their workflow."""
    repaired = _run(lambda engine: engine.decisions.reconcile())
    typer.echo(f"Reconciled {len(repaired)} approval(s)")
    for approval_id in repaired:
        typer.echo(f"- {approval_id}")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
