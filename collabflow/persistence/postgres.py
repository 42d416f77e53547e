"""PostgreSQL implementation of the repository."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime
from typing import Any, Optional

import asyncpg

from ..contracts import (
    ApprovalMetadata,
    ApprovalQuery,
    ApprovalRequest,
    ApprovalStatus,
    InstanceStatus,
    MetricsWindow,
    WorkflowExecution,
    WorkflowInstance,
    WorkflowTemplate,
)
from ..errors import ConflictError
from .repository import Repository

_APPROVAL_COLUMNS = (
    "id, execution_id, requested_by, approver_ids, title, description, priority, "
    "due_date, attachments, metadata, status, responded_by, responded_at, response, "
    "requested_at"
)
_INSTANCE_COLUMNS = (
    "id, template_id, status, context_data, triggered_by, started_at, completed_at, "
    "failed_at, error_message"
)
_EXECUTION_COLUMNS = (
    "id, instance_id, step_id, status, assigned_to, output, started_at, completed_at, "
    "failed_at, error_message"
)

_PRIORITY_RANK_SQL = (
    "CASE priority WHEN 'HIGH' THEN 3 WHEN 'MEDIUM' THEN 2 WHEN 'LOW' THEN 1 ELSE 0 END"
)


def _json(value: Any) -> Optional[Any]:
    """Decode a JSONB column, which asyncpg returns as text."""
    if value is None or not isinstance(value, str):
        return value
    return json.loads(value)


class _Params:
    """Collect positional parameters for ``$n`` placeholders."""

    def __init__(self) -> None:
        self.values: list[Any] = []

    def add(self, value: Any) -> str:
        self.values.append(value)
        return f"${len(self.values)}"


def _where(query: ApprovalQuery, params: _Params) -> str:
    visibility: list[str] = []
    if query.include_requested:
        visibility.append(f"requested_by = {params.add(query.user_id)}")
    if query.include_assigned:
        visibility.append(f"{params.add(query.user_id)} = ANY(approver_ids)")
    clauses = ["(" + " OR ".join(visibility) + ")" if visibility else "FALSE"]
    if query.status is not None:
        clauses.append(f"status = {params.add(query.status.value)}")
    if query.priority is not None:
        clauses.append(f"priority = {params.add(query.priority.value)}")
    return " AND ".join(clauses)


class PostgresRepository(Repository):
    """Persist approval and workflow state using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False
        self._schema_lock = asyncio.Lock()

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            async with self._schema_lock:
                if not self._initialized:
                    await self._ensure_schema(conn)
                    self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS approval_requests (
                id TEXT PRIMARY KEY,
                execution_id TEXT,
                requested_by TEXT NOT NULL,
                approver_ids TEXT[] NOT NULL,
                title TEXT NOT NULL,
                description TEXT,
                priority TEXT NOT NULL,
                due_date TIMESTAMPTZ,
                attachments JSONB,
                metadata JSONB,
                status TEXT NOT NULL,
                responded_by TEXT,
                responded_at TIMESTAMPTZ,
                response TEXT,
                requested_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_templates (
                id TEXT PRIMARY KEY,
                company_id TEXT NOT NULL,
                definition JSONB NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_instances (
                id TEXT PRIMARY KEY,
                template_id TEXT NOT NULL,
                status TEXT NOT NULL,
                context_data JSONB,
                triggered_by TEXT,
                started_at TIMESTAMPTZ NOT NULL,
                completed_at TIMESTAMPTZ,
                failed_at TIMESTAMPTZ,
                error_message TEXT
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_executions (
                seq SERIAL PRIMARY KEY,
                id TEXT NOT NULL UNIQUE,
                instance_id TEXT NOT NULL,
                step_id TEXT NOT NULL,
                status TEXT NOT NULL,
                assigned_to TEXT,
                output JSONB,
                started_at TIMESTAMPTZ NOT NULL,
                completed_at TIMESTAMPTZ,
                failed_at TIMESTAMPTZ,
                error_message TEXT,
                UNIQUE (instance_id, step_id)
            )
            """
        )

    async def _fetch(self, query: str, *params: Any) -> list[asyncpg.Record]:
        conn = await self._connect()
        try:
            return await conn.fetch(query, *params)
        finally:
            await conn.close()

    async def _fetchrow(self, query: str, *params: Any) -> asyncpg.Record | None:
        conn = await self._connect()
        try:
            return await conn.fetchrow(query, *params)
        finally:
            await conn.close()

    async def _execute(self, query: str, *params: Any) -> None:
        conn = await self._connect()
        try:
            await conn.execute(query, *params)
        finally:
            await conn.close()

    @staticmethod
    def _approval_from_row(row: asyncpg.Record) -> ApprovalRequest:
        return ApprovalRequest(
            id=row["id"],
            execution_id=row["execution_id"],
            requested_by=row["requested_by"],
            approver_ids=list(row["approver_ids"]),
            title=row["title"],
            description=row["description"] or "",
            priority=row["priority"],
            due_date=row["due_date"],
            attachments=_json(row["attachments"]) or [],
            metadata=_json(row["metadata"]) or {},
            status=row["status"],
            responded_by=row["responded_by"],
            responded_at=row["responded_at"],
            response=row["response"],
            requested_at=row["requested_at"],
        )

    @staticmethod
    def _instance_from_row(row: asyncpg.Record) -> WorkflowInstance:
        return WorkflowInstance(
            id=row["id"],
            template_id=row["template_id"],
            status=row["status"],
            context_data=_json(row["context_data"]) or {},
            triggered_by=row["triggered_by"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            failed_at=row["failed_at"],
            error_message=row["error_message"],
        )

    @staticmethod
    def _execution_from_row(row: asyncpg.Record) -> WorkflowExecution:
        return WorkflowExecution(
            id=row["id"],
            instance_id=row["instance_id"],
            step_id=row["step_id"],
            status=row["status"],
            assigned_to=row["assigned_to"],
            output=_json(row["output"]) or {},
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            failed_at=row["failed_at"],
            error_message=row["error_message"],
        )

    # ------------------------------------------------------------------
    # Approvals
    async def create_approval(self, approval: ApprovalRequest) -> ApprovalRequest:
        try:
            await self._execute(
                f"INSERT INTO approval_requests ({_APPROVAL_COLUMNS}) "
                "VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15)",
                approval.id,
                approval.execution_id,
                approval.requested_by,
                approval.approver_ids,
                approval.title,
                approval.description,
                approval.priority.value,
                approval.due_date,
                json.dumps(approval.attachments, default=str),
                approval.metadata.model_dump_json(),
                approval.status.value,
                approval.responded_by,
                approval.responded_at,
                approval.response,
                approval.requested_at,
            )
        except asyncpg.UniqueViolationError as exc:
            raise ConflictError(f"Approval request {approval.id} already exists") from exc
        return approval

    async def get_approval(self, approval_id: str) -> ApprovalRequest | None:
        row = await self._fetchrow(
            f"SELECT {_APPROVAL_COLUMNS} FROM approval_requests WHERE id = $1",
            approval_id,
        )
        return self._approval_from_row(row) if row else None

    async def find_approvals(
        self, query: ApprovalQuery, limit: int, offset: int
    ) -> list[ApprovalRequest]:
        params = _Params()
        where = _where(query, params)
        sql = (
            f"SELECT {_APPROVAL_COLUMNS} FROM approval_requests WHERE {where} "
            f"ORDER BY {_PRIORITY_RANK_SQL} DESC, requested_at DESC, id ASC "
            f"LIMIT {params.add(limit)} OFFSET {params.add(offset)}"
        )
        rows = await self._fetch(sql, *params.values)
        return [self._approval_from_row(r) for r in rows]

    async def count_approvals(self, query: ApprovalQuery) -> int:
        params = _Params()
        where = _where(query, params)
        row = await self._fetchrow(
            f"SELECT COUNT(*) AS total FROM approval_requests WHERE {where}",
            *params.values,
        )
        return int(row["total"]) if row else 0

    async def record_response(
        self,
        approval_id: str,
        status: ApprovalStatus,
        responded_by: str,
        response: Optional[str],
        responded_at: datetime,
    ) -> ApprovalRequest | None:
        row = await self._fetchrow(
            f"""
            UPDATE approval_requests
            SET status = $1, responded_by = $2, responded_at = $3, response = $4
            WHERE id = $5 AND status = 'PENDING'
            RETURNING {_APPROVAL_COLUMNS}
            """,
            status.value,
            responded_by,
            responded_at,
            response,
            approval_id,
        )
        return self._approval_from_row(row) if row else None

    async def replace_approvers(
        self,
        approval_id: str,
        expected_approver_ids: list[str],
        approver_ids: list[str],
        metadata: ApprovalMetadata,
    ) -> ApprovalRequest | None:
        row = await self._fetchrow(
            f"""
            UPDATE approval_requests
            SET approver_ids = $1, metadata = $2
            WHERE id = $3 AND status = 'PENDING' AND approver_ids = $4::text[]
            RETURNING {_APPROVAL_COLUMNS}
            """,
            approver_ids,
            metadata.model_dump_json(),
            approval_id,
            expected_approver_ids,
        )
        return self._approval_from_row(row) if row else None

    async def list_approvals_in_window(self, window: MetricsWindow) -> list[ApprovalRequest]:
        columns = ", ".join(f"a.{c.strip()}" for c in _APPROVAL_COLUMNS.split(","))
        params = _Params()
        sql = (
            f"SELECT {columns} FROM approval_requests a "
            "JOIN workflow_executions e ON e.id = a.execution_id "
            "JOIN workflow_instances i ON i.id = e.instance_id "
            "JOIN workflow_templates t ON t.id = i.template_id "
            f"WHERE t.company_id = {params.add(window.company_id)} "
            f"AND a.requested_at BETWEEN {params.add(window.start_date)} "
            f"AND {params.add(window.end_date)}"
        )
        if window.user_id is not None:
            user = params.add(window.user_id)
            sql += f" AND (a.requested_by = {user} OR {user} = ANY(a.approver_ids))"
        rows = await self._fetch(sql, *params.values)
        return [self._approval_from_row(r) for r in rows]

    async def list_decided_approvals(self) -> list[ApprovalRequest]:
        rows = await self._fetch(
            f"SELECT {_APPROVAL_COLUMNS} FROM approval_requests "
            "WHERE status <> 'PENDING' AND execution_id IS NOT NULL ORDER BY responded_at"
        )
        return [self._approval_from_row(r) for r in rows]

    # ------------------------------------------------------------------
    # Workflow templates and instances
    async def save_template(self, template: WorkflowTemplate) -> None:
        await self._execute(
            """
            INSERT INTO workflow_templates (id, company_id, definition)
            VALUES ($1, $2, $3)
            ON CONFLICT (id) DO UPDATE
            SET company_id = EXCLUDED.company_id, definition = EXCLUDED.definition
            """,
            template.id,
            template.company_id,
            template.model_dump_json(),
        )

    async def get_template(self, template_id: str) -> WorkflowTemplate | None:
        row = await self._fetchrow(
            "SELECT definition FROM workflow_templates WHERE id = $1", template_id
        )
        if not row:
            return None
        return WorkflowTemplate.model_validate(_json(row["definition"]))

    async def create_instance(self, instance: WorkflowInstance) -> WorkflowInstance:
        await self._execute(
            f"INSERT INTO workflow_instances ({_INSTANCE_COLUMNS}) "
            "VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)",
            instance.id,
            instance.template_id,
            instance.status.value,
            json.dumps(instance.context_data, default=str),
            instance.triggered_by,
            instance.started_at,
            instance.completed_at,
            instance.failed_at,
            instance.error_message,
        )
        return instance

    async def get_instance(self, instance_id: str) -> WorkflowInstance | None:
        row = await self._fetchrow(
            f"SELECT {_INSTANCE_COLUMNS} FROM workflow_instances WHERE id = $1",
            instance_id,
        )
        return self._instance_from_row(row) if row else None

    async def update_instance(self, instance: WorkflowInstance) -> None:
        await self._execute(
            """
            UPDATE workflow_instances
            SET status = $1, context_data = $2, completed_at = $3, failed_at = $4,
                error_message = $5
            WHERE id = $6
            """,
            instance.status.value,
            json.dumps(instance.context_data, default=str),
            instance.completed_at,
            instance.failed_at,
            instance.error_message,
            instance.id,
        )

    async def list_instances(
        self, status: InstanceStatus | None = None
    ) -> list[WorkflowInstance]:
        if status is None:
            rows = await self._fetch(
                f"SELECT {_INSTANCE_COLUMNS} FROM workflow_instances ORDER BY started_at"
            )
        else:
            rows = await self._fetch(
                f"SELECT {_INSTANCE_COLUMNS} FROM workflow_instances WHERE status = $1 "
                "ORDER BY started_at",
                status.value,
            )
        return [self._instance_from_row(r) for r in rows]

    # ------------------------------------------------------------------
    # Executions
    async def create_execution(self, execution: WorkflowExecution) -> WorkflowExecution:
        try:
            await self._execute(
                f"INSERT INTO workflow_executions ({_EXECUTION_COLUMNS}) "
                "VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)",
                execution.id,
                execution.instance_id,
                execution.step_id,
                execution.status.value,
                execution.assigned_to,
                execution.output.model_dump_json(exclude_none=True),
                execution.started_at,
                execution.completed_at,
                execution.failed_at,
                execution.error_message,
            )
        except asyncpg.UniqueViolationError as exc:
            raise ConflictError(
                f"Step {execution.step_id} already executed in instance "
                f"{execution.instance_id}"
            ) from exc
        return execution

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        row = await self._fetchrow(
            f"SELECT {_EXECUTION_COLUMNS} FROM workflow_executions WHERE id = $1",
            execution_id,
        )
        return self._execution_from_row(row) if row else None

    async def find_execution(
        self, instance_id: str, step_id: str
    ) -> WorkflowExecution | None:
        row = await self._fetchrow(
            f"SELECT {_EXECUTION_COLUMNS} FROM workflow_executions "
            "WHERE instance_id = $1 AND step_id = $2",
            instance_id,
            step_id,
        )
        return self._execution_from_row(row) if row else None

    async def list_executions(self, instance_id: str) -> list[WorkflowExecution]:
        rows = await self._fetch(
            f"SELECT {_EXECUTION_COLUMNS} FROM workflow_executions "
            "WHERE instance_id = $1 ORDER BY seq",
            instance_id,
        )
        return [self._execution_from_row(r) for r in rows]

    async def update_execution(self, execution: WorkflowExecution) -> None:
        await self._execute(
            """
            UPDATE workflow_executions
            SET status = $1, assigned_to = $2, output = $3, completed_at = $4,
                failed_at = $5, error_message = $6
            WHERE id = $7
            """,
            execution.status.value,
            execution.assigned_to,
            execution.output.model_dump_json(exclude_none=True),
            execution.completed_at,
            execution.failed_at,
            execution.error_message,
            execution.id,
        )
