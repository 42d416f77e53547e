"""SQLite implementation of the repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

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


def _ts(value: Optional[datetime]) -> Optional[str]:
    """Serialize a timestamp so that string order equals time order."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _visibility_clause(query: ApprovalQuery) -> tuple[str, list[Any]]:
    clauses: list[str] = []
    params: list[Any] = []
    if query.include_requested:
        clauses.append("requested_by = ?")
        params.append(query.user_id)
    if query.include_assigned:
        clauses.append(
            "EXISTS (SELECT 1 FROM json_each(approval_requests.approver_ids) "
            "WHERE json_each.value = ?)"
        )
        params.append(query.user_id)
    if not clauses:
        return "0", []
    return "(" + " OR ".join(clauses) + ")", params


def _where(query: ApprovalQuery) -> tuple[str, list[Any]]:
    visibility, params = _visibility_clause(query)
    clauses = [visibility]
    if query.status is not None:
        clauses.append("status = ?")
        params.append(query.status.value)
    if query.priority is not None:
        clauses.append("priority = ?")
        params.append(query.priority.value)
    return " AND ".join(clauses), params


class SQLiteRepository(Repository):
    """Persist approval and workflow state using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._db_lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS approval_requests (
                id TEXT PRIMARY KEY,
                execution_id TEXT,
                requested_by TEXT NOT NULL,
                approver_ids TEXT NOT NULL,
                title TEXT NOT NULL,
                description TEXT,
                priority TEXT NOT NULL,
                due_date TEXT,
                attachments TEXT,
                metadata TEXT,
                status TEXT NOT NULL,
                responded_by TEXT,
                responded_at TEXT,
                response TEXT,
                requested_at TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_templates (
                id TEXT PRIMARY KEY,
                company_id TEXT NOT NULL,
                definition TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_instances (
                id TEXT PRIMARY KEY,
                template_id TEXT NOT NULL,
                status TEXT NOT NULL,
                context_data TEXT,
                triggered_by TEXT,
                started_at TEXT NOT NULL,
                completed_at TEXT,
                failed_at TEXT,
                error_message TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_executions (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                instance_id TEXT NOT NULL,
                step_id TEXT NOT NULL,
                status TEXT NOT NULL,
                assigned_to TEXT,
                output TEXT,
                started_at TEXT NOT NULL,
                completed_at TEXT,
                failed_at TEXT,
                error_message TEXT,
                UNIQUE (instance_id, step_id)
            )
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._db_lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()
            return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._db_lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._db_lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    def close(self) -> None:
        self._conn.close()

    @staticmethod
    def _approval_from_row(row: sqlite3.Row) -> ApprovalRequest:
        return ApprovalRequest(
            id=row["id"],
            execution_id=row["execution_id"],
            requested_by=row["requested_by"],
            approver_ids=json.loads(row["approver_ids"]),
            title=row["title"],
            description=row["description"] or "",
            priority=row["priority"],
            due_date=row["due_date"],
            attachments=json.loads(row["attachments"]) if row["attachments"] else [],
            metadata=json.loads(row["metadata"]) if row["metadata"] else {},
            status=row["status"],
            responded_by=row["responded_by"],
            responded_at=row["responded_at"],
            response=row["response"],
            requested_at=row["requested_at"],
        )

    @staticmethod
    def _instance_from_row(row: sqlite3.Row) -> WorkflowInstance:
        return WorkflowInstance(
            id=row["id"],
            template_id=row["template_id"],
            status=row["status"],
            context_data=json.loads(row["context_data"]) if row["context_data"] else {},
            triggered_by=row["triggered_by"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            failed_at=row["failed_at"],
            error_message=row["error_message"],
        )

    @staticmethod
    def _execution_from_row(row: sqlite3.Row) -> WorkflowExecution:
        return WorkflowExecution(
            id=row["id"],
            instance_id=row["instance_id"],
            step_id=row["step_id"],
            status=row["status"],
            assigned_to=row["assigned_to"],
            output=json.loads(row["output"]) if row["output"] else {},
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            failed_at=row["failed_at"],
            error_message=row["error_message"],
        )

    # ------------------------------------------------------------------
    # Approvals
    async def create_approval(self, approval: ApprovalRequest) -> ApprovalRequest:
        try:
            await asyncio.to_thread(
                self._execute,
                f"INSERT INTO approval_requests ({_APPROVAL_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                approval.id,
                approval.execution_id,
                approval.requested_by,
                json.dumps(approval.approver_ids),
                approval.title,
                approval.description,
                approval.priority.value,
                _ts(approval.due_date),
                json.dumps(approval.attachments, default=str),
                approval.metadata.model_dump_json(),
                approval.status.value,
                approval.responded_by,
                _ts(approval.responded_at),
                approval.response,
                _ts(approval.requested_at),
            )
        except sqlite3.IntegrityError as exc:
            raise ConflictError(f"Approval request {approval.id} already exists") from exc
        return approval

    async def get_approval(self, approval_id: str) -> ApprovalRequest | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {_APPROVAL_COLUMNS} FROM approval_requests WHERE id = ?",
            approval_id,
        )
        return self._approval_from_row(row) if row else None

    async def find_approvals(
        self, query: ApprovalQuery, limit: int, offset: int
    ) -> list[ApprovalRequest]:
        where, params = _where(query)
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {_APPROVAL_COLUMNS} FROM approval_requests WHERE {where} "
            f"ORDER BY {_PRIORITY_RANK_SQL} DESC, requested_at DESC, id ASC "
            "LIMIT ? OFFSET ?",
            *params,
            limit,
            offset,
        )
        return [self._approval_from_row(r) for r in rows]

    async def count_approvals(self, query: ApprovalQuery) -> int:
        where, params = _where(query)
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT COUNT(*) AS total FROM approval_requests WHERE {where}",
            *params,
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
        updated = await asyncio.to_thread(
            self._execute,
            """
            UPDATE approval_requests
            SET status = ?, responded_by = ?, responded_at = ?, response = ?
            WHERE id = ? AND status = 'PENDING'
            """,
            status.value,
            responded_by,
            _ts(responded_at),
            response,
            approval_id,
        )
        if updated == 0:
            return None
        return await self.get_approval(approval_id)

    async def replace_approvers(
        self,
        approval_id: str,
        expected_approver_ids: list[str],
        approver_ids: list[str],
        metadata: ApprovalMetadata,
    ) -> ApprovalRequest | None:
        updated = await asyncio.to_thread(
            self._execute,
            """
            UPDATE approval_requests
            SET approver_ids = ?, metadata = ?
            WHERE id = ? AND status = 'PENDING' AND approver_ids = ?
            """,
            json.dumps(approver_ids),
            metadata.model_dump_json(),
            approval_id,
            json.dumps(expected_approver_ids),
        )
        if updated == 0:
            return None
        return await self.get_approval(approval_id)

    async def list_approvals_in_window(self, window: MetricsWindow) -> list[ApprovalRequest]:
        columns = ", ".join(f"a.{c.strip()}" for c in _APPROVAL_COLUMNS.split(","))
        query = (
            f"SELECT {columns} FROM approval_requests a "
            "JOIN workflow_executions e ON e.id = a.execution_id "
            "JOIN workflow_instances i ON i.id = e.instance_id "
            "JOIN workflow_templates t ON t.id = i.template_id "
            "WHERE t.company_id = ? AND a.requested_at >= ? AND a.requested_at <= ?"
        )
        params: list[Any] = [window.company_id, _ts(window.start_date), _ts(window.end_date)]
        if window.user_id is not None:
            query += (
                " AND (a.requested_by = ? OR EXISTS (SELECT 1 FROM json_each(a.approver_ids)"
                " WHERE json_each.value = ?))"
            )
            params.extend([window.user_id, window.user_id])
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [self._approval_from_row(r) for r in rows]

    async def list_decided_approvals(self) -> list[ApprovalRequest]:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {_APPROVAL_COLUMNS} FROM approval_requests "
            "WHERE status != 'PENDING' AND execution_id IS NOT NULL ORDER BY responded_at",
        )
        return [self._approval_from_row(r) for r in rows]

    # ------------------------------------------------------------------
    # Workflow templates and instances
    async def save_template(self, template: WorkflowTemplate) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT OR REPLACE INTO workflow_templates (id, company_id, definition) "
            "VALUES (?, ?, ?)",
            template.id,
            template.company_id,
            template.model_dump_json(),
        )

    async def get_template(self, template_id: str) -> WorkflowTemplate | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT definition FROM workflow_templates WHERE id = ?",
            template_id,
        )
        return WorkflowTemplate.model_validate_json(row["definition"]) if row else None

    async def create_instance(self, instance: WorkflowInstance) -> WorkflowInstance:
        await asyncio.to_thread(
            self._execute,
            f"INSERT INTO workflow_instances ({_INSTANCE_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            instance.id,
            instance.template_id,
            instance.status.value,
            json.dumps(instance.context_data, default=str),
            instance.triggered_by,
            _ts(instance.started_at),
            _ts(instance.completed_at),
            _ts(instance.failed_at),
            instance.error_message,
        )
        return instance

    async def get_instance(self, instance_id: str) -> WorkflowInstance | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {_INSTANCE_COLUMNS} FROM workflow_instances WHERE id = ?",
            instance_id,
        )
        return self._instance_from_row(row) if row else None

    async def update_instance(self, instance: WorkflowInstance) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            UPDATE workflow_instances
            SET status = ?, context_data = ?, completed_at = ?, failed_at = ?,
                error_message = ?
            WHERE id = ?
            """,
            instance.status.value,
            json.dumps(instance.context_data, default=str),
            _ts(instance.completed_at),
            _ts(instance.failed_at),
            instance.error_message,
            instance.id,
        )

    async def list_instances(
        self, status: InstanceStatus | None = None
    ) -> list[WorkflowInstance]:
        if status is None:
            rows = await asyncio.to_thread(
                self._fetchall,
                f"SELECT {_INSTANCE_COLUMNS} FROM workflow_instances ORDER BY started_at",
            )
        else:
            rows = await asyncio.to_thread(
                self._fetchall,
                f"SELECT {_INSTANCE_COLUMNS} FROM workflow_instances WHERE status = ? "
                "ORDER BY started_at",
                status.value,
            )
        return [self._instance_from_row(r) for r in rows]

    # ------------------------------------------------------------------
    # Executions
    async def create_execution(self, execution: WorkflowExecution) -> WorkflowExecution:
        try:
            await asyncio.to_thread(
                self._execute,
                f"INSERT INTO workflow_executions ({_EXECUTION_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                execution.id,
                execution.instance_id,
                execution.step_id,
                execution.status.value,
                execution.assigned_to,
                execution.output.model_dump_json(exclude_none=True),
                _ts(execution.started_at),
                _ts(execution.completed_at),
                _ts(execution.failed_at),
                execution.error_message,
            )
        except sqlite3.IntegrityError as exc:
            raise ConflictError(
                f"Step {execution.step_id} already executed in instance "
                f"{execution.instance_id}"
            ) from exc
        return execution

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {_EXECUTION_COLUMNS} FROM workflow_executions WHERE id = ?",
            execution_id,
        )
        return self._execution_from_row(row) if row else None

    async def find_execution(
        self, instance_id: str, step_id: str
    ) -> WorkflowExecution | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {_EXECUTION_COLUMNS} FROM workflow_executions "
            "WHERE instance_id = ? AND step_id = ?",
            instance_id,
            step_id,
        )
        return self._execution_from_row(row) if row else None

    async def list_executions(self, instance_id: str) -> list[WorkflowExecution]:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {_EXECUTION_COLUMNS} FROM workflow_executions "
            "WHERE instance_id = ? ORDER BY seq",
            instance_id,
        )
        return [self._execution_from_row(r) for r in rows]

    async def update_execution(self, execution: WorkflowExecution) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            UPDATE workflow_executions
            SET status = ?, assigned_to = ?, output = ?, completed_at = ?,
                failed_at = ?, error_message = ?
            WHERE id = ?
            """,
            execution.status.value,
            execution.assigned_to,
            execution.output.model_dump_json(exclude_none=True),
            _ts(execution.completed_at),
            _ts(execution.failed_at),
            execution.error_message,
            execution.id,
        )
