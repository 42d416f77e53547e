"""Approval request lifecycle: create, list, respond, delegate, bulk, metrics."""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, Iterator, List, Optional, Union

from .contracts import (
    DECISIONS,
    ApprovalMetadata,
    ApprovalMetrics,
    ApprovalPage,
    ApprovalQuery,
    ApprovalRequest,
    ApprovalStatus,
    ApprovalView,
    BulkItemResult,
    BulkResult,
    BulkSummary,
    DelegationRecord,
    MetricsWindow,
    NotificationType,
    Priority,
    utcnow,
)
from .decisions import DecisionHandler
from .errors import (
    AuthorizationError,
    CollabFlowError,
    ConflictError,
    FatalError,
    NotFoundError,
    ValidationError,
)
from .notifications.base import BaseNotifier
from .persistence.repository import Repository

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100
METRICS_WINDOW = timedelta(days=30)

NOT_FOUND = "Approval request not found"
NOT_APPROVER = "You are not authorized to approve this request"
ALREADY_RESPONDED = "This approval request has already been responded to"
INVALID_DECISION = "Invalid decision. Must be APPROVED or REJECTED"
NOT_DELEGATOR = "You are not authorized to delegate this approval"
DELEGATE_COMPLETED = "Cannot delegate a completed approval request"
DELEGATION_CHANGED = "The approvers of this request changed while delegating; retry"
ALREADY_APPROVER = "The delegate is already an approver of this request"


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _percent(count: int, total: int) -> float:
    return round(count / total * 100, 1) if total else 0.0


def _unique(ids: Iterable[str]) -> List[str]:
    seen: Dict[str, None] = {}
    for user_id in ids:
        if user_id:
            seen.setdefault(user_id, None)
    return list(seen)


@contextmanager
def _datastore(action: str, **details: Any) -> Iterator[None]:
    """Re-raise driver errors from the repository as :class:`FatalError`."""
    try:
        yield
    except CollabFlowError:
        raise
    except Exception as exc:
        logger.exception(f"Datastore failure while trying to {action}")
        raise FatalError(f"Could not {action}: {exc}", **details) from exc


class ApprovalService:
    """Owns the lifecycle of approval requests.

    Responses are serialized by the repository's conditional update, so of
    several concurrent responders exactly one wins and the rest receive
    :class:`ConflictError`. Notifications are best-effort: a failing sink is
    logged and never fails the operation that triggered it.
    """

    def __init__(
        self,
        repository: Repository,
        notifier: BaseNotifier,
        decisions: DecisionHandler,
    ) -> None:
        self._repository = repository
        self._notifier = notifier
        self._decisions = decisions

    # ------------------------------------------------------------------
    # Creation and lookup
    async def create_approval_request(
        self,
        requested_by: str,
        approver_ids: List[str],
        title: str,
        description: str = "",
        priority: Union[Priority, str] = Priority.MEDIUM,
        due_date: Optional[datetime] = None,
        attachments: Optional[List[Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        execution_id: Optional[str] = None,
    ) -> ApprovalRequest:
        """Create a pending approval request and notify every approver."""
        if not requested_by:
            raise ValidationError("requested_by is required", field="requested_by")
        approvers = _unique(approver_ids or [])
        if not approvers:
            raise ValidationError(
                "At least one approver is required", field="approver_ids"
            )
        if not title or not title.strip():
            raise ValidationError("title is required", field="title")
        try:
            priority = Priority(priority or Priority.MEDIUM)
        except ValueError:
            raise ValidationError(
                f"Invalid priority {priority!r}. Must be LOW, MEDIUM or HIGH",
                field="priority",
            ) from None

        if execution_id is not None:
            with _datastore("load workflow execution", execution_id=execution_id):
                execution = await self._repository.get_execution(execution_id)
            if execution is None:
                raise NotFoundError(
                    f"Workflow execution {execution_id} not found",
                    execution_id=execution_id,
                )

        try:
            approval_metadata = ApprovalMetadata.model_validate(metadata or {})
        except ValueError as exc:
            raise ValidationError(f"Invalid metadata: {exc}", field="metadata") from exc

        approval = ApprovalRequest(
            execution_id=execution_id,
            requested_by=requested_by,
            approver_ids=approvers,
            title=title,
            description=description or "",
            priority=priority,
            due_date=_as_utc(due_date),
            attachments=list(attachments or []),
            metadata=approval_metadata,
        )
        with _datastore("create approval request", approval_id=approval.id):
            approval = await self._repository.create_approval(approval)
        logger.info(
            f"Approval {approval.id} requested by {requested_by} "
            f"from {len(approvers)} approver(s)"
        )

        for approver_id in approval.approver_ids:
            await self._safe_notify(
                approver_id,
                f"New Approval Request: {approval.title}",
                f"{approval.requested_by} has requested your approval for: {approval.title}",
                NotificationType.APPROVAL_REQUEST,
                {
                    "approvalId": approval.id,
                    "priority": approval.priority.value,
                    "dueDate": approval.due_date.isoformat() if approval.due_date else None,
                },
            )
        return approval

    async def get_approval_request(self, approval_id: str, user_id: str) -> ApprovalView:
        """Return one approval as seen by ``user_id``."""
        approval = await self._repository.get_approval(approval_id)
        if approval is None:
            raise NotFoundError(NOT_FOUND, approval_id=approval_id)
        if approval.requested_by != user_id and not approval.is_approver(user_id):
            raise AuthorizationError(
                "You are not a participant of this approval request",
                approval_id=approval_id,
            )
        return ApprovalView.for_user(approval, user_id)

    async def list_approval_requests(
        self,
        user_id: str,
        status: Optional[Union[ApprovalStatus, str]] = None,
        priority: Optional[Union[Priority, str]] = None,
        include_requested: bool = True,
        include_assigned: bool = True,
        limit: int = 20,
        offset: int = 0,
    ) -> ApprovalPage:
        """List approvals the user requested and/or is assigned to.

        Ordered by priority (HIGH first), then newest first, then id.
        """
        if not 1 <= limit <= MAX_PAGE_SIZE:
            raise ValidationError(
                f"limit must be between 1 and {MAX_PAGE_SIZE}", field="limit"
            )
        if offset < 0:
            raise ValidationError("offset must not be negative", field="offset")
        try:
            query = ApprovalQuery(
                user_id=user_id,
                status=status,
                priority=priority,
                include_requested=include_requested,
                include_assigned=include_assigned,
            )
        except ValueError as exc:
            raise ValidationError(f"Invalid approval filter: {exc}") from exc

        if not (include_requested or include_assigned):
            return ApprovalPage(limit=limit, offset=offset)

        approvals, total = await asyncio.gather(
            self._repository.find_approvals(query, limit, offset),
            self._repository.count_approvals(query),
        )
        return ApprovalPage(
            items=[ApprovalView.for_user(a, user_id) for a in approvals],
            total=total,
            limit=limit,
            offset=offset,
            has_more=offset + limit < total,
        )

    # ------------------------------------------------------------------
    # Responses
    async def respond_to_approval(
        self,
        approval_id: str,
        user_id: str,
        decision: Union[ApprovalStatus, str],
        response: Optional[str] = None,
    ) -> ApprovalRequest:
        """Record ``user_id``'s decision and advance the gated workflow.

        Raises:
            NotFoundError: no such approval.
            AuthorizationError: ``user_id`` is not an approver.
            ConflictError: the approval was already responded to.
            ValidationError: ``decision`` is not APPROVED or REJECTED.
            FatalError: the datastore failed, or the decision was recorded
                but the workflow could not be updated.
        """
        with _datastore("load approval request", approval_id=approval_id):
            approval = await self._repository.get_approval(approval_id)
        if approval is None:
            raise NotFoundError(NOT_FOUND, approval_id=approval_id)
        if not approval.is_approver(user_id):
            raise AuthorizationError(NOT_APPROVER, approval_id=approval_id)
        if not approval.is_pending:
            raise ConflictError(ALREADY_RESPONDED, approval_id=approval_id)
        try:
            status = ApprovalStatus(decision)
        except ValueError:
            status = None
        if status not in DECISIONS:
            raise ValidationError(INVALID_DECISION, field="decision")

        with _datastore("record approval response", approval_id=approval_id):
            updated = await self._repository.record_response(
                approval_id, status, user_id, response, utcnow()
            )
        if updated is None:
            raise ConflictError(ALREADY_RESPONDED, approval_id=approval_id)
        logger.info(f"Approval {approval_id} {status.value.lower()} by {user_id}")

        await self._decisions.handle(updated)

        verb = "approved" if status == ApprovalStatus.APPROVED else "rejected"
        await self._safe_notify(
            updated.requested_by,
            f"Approval Request {verb.capitalize()}",
            f"{user_id} has {verb} your request: {updated.title}",
            NotificationType.APPROVAL_RESPONSE,
            {
                "approvalId": updated.id,
                "decision": status.value,
                "response": updated.response,
            },
        )
        return updated

    async def bulk_approve(
        self, approval_ids: List[str], user_id: str, response: Optional[str] = None
    ) -> BulkResult:
        return await self._bulk_respond(
            approval_ids, user_id, ApprovalStatus.APPROVED, response
        )

    async def bulk_reject(
        self, approval_ids: List[str], user_id: str, response: Optional[str] = None
    ) -> BulkResult:
        return await self._bulk_respond(
            approval_ids, user_id, ApprovalStatus.REJECTED, response
        )

    async def _bulk_respond(
        self,
        approval_ids: List[str],
        user_id: str,
        decision: ApprovalStatus,
        response: Optional[str],
    ) -> BulkResult:
        """Respond to each id in turn; failures are itemized, never raised."""
        results: List[BulkItemResult] = []
        for approval_id in approval_ids:
            try:
                approval = await self.respond_to_approval(
                    approval_id, user_id, decision, response
                )
            except CollabFlowError as exc:
                logger.warning(f"Bulk response to {approval_id} failed: {exc}")
                results.append(
                    BulkItemResult(
                        approval_id=approval_id,
                        success=False,
                        error=exc.message,
                        error_code=exc.code,
                    )
                )
                continue
            results.append(
                BulkItemResult(approval_id=approval_id, success=True, approval=approval)
            )

        succeeded = sum(1 for r in results if r.success)
        failed = len(results) - succeeded
        noun = "approval" if decision == ApprovalStatus.APPROVED else "rejection"
        return BulkResult(
            results=results,
            summary=BulkSummary(success_count=succeeded, failure_count=failed),
            message=(
                f"Bulk {noun} completed: {succeeded} {decision.value.lower()}, "
                f"{failed} failed"
            ),
        )

    # ------------------------------------------------------------------
    # Delegation
    async def delegate_approval(
        self,
        approval_id: str,
        from_user_id: str,
        to_user_id: str,
        reason: Optional[str] = None,
    ) -> ApprovalRequest:
        """Hand ``from_user_id``'s right to respond over to ``to_user_id``.

        The first occurrence of ``from_user_id`` is replaced in place and a
        delegation record is appended to the approval metadata.
        """
        if not to_user_id:
            raise ValidationError("to_user_id is required", field="to_user_id")
        if to_user_id == from_user_id:
            raise ValidationError(
                "Cannot delegate an approval to yourself", field="to_user_id"
            )

        with _datastore("load approval request", approval_id=approval_id):
            approval = await self._repository.get_approval(approval_id)
        if approval is None:
            raise NotFoundError(NOT_FOUND, approval_id=approval_id)
        if not approval.is_approver(from_user_id):
            raise AuthorizationError(NOT_DELEGATOR, approval_id=approval_id)
        if not approval.is_pending:
            raise ConflictError(DELEGATE_COMPLETED, approval_id=approval_id)

        if approval.is_approver(to_user_id):
            raise ConflictError(ALREADY_APPROVER, approval_id=approval_id)

        approver_ids = list(approval.approver_ids)
        approver_ids[approver_ids.index(from_user_id)] = to_user_id
        metadata = approval.metadata.model_copy(deep=True)
        metadata.delegations = [
            *metadata.delegations,
            DelegationRecord(
                from_user_id=from_user_id, to_user_id=to_user_id, reason=reason
            ),
        ]

        with _datastore("delegate approval request", approval_id=approval_id):
            updated = await self._repository.replace_approvers(
                approval_id, approval.approver_ids, approver_ids, metadata
            )
            current = (
                await self._repository.get_approval(approval_id)
                if updated is None
                else updated
            )
        if updated is None:
            if current is not None and not current.is_pending:
                raise ConflictError(DELEGATE_COMPLETED, approval_id=approval_id)
            raise ConflictError(DELEGATION_CHANGED, approval_id=approval_id)
        logger.info(
            f"Approval {approval_id} delegated from {from_user_id} to {to_user_id}"
        )

        await self._safe_notify(
            to_user_id,
            f"Approval Delegated: {updated.title}",
            f"An approval request has been delegated to you: {updated.title}",
            NotificationType.APPROVAL_DELEGATION,
            {
                "approvalId": updated.id,
                "delegatedFrom": from_user_id,
                "reason": reason,
            },
        )
        return updated

    # ------------------------------------------------------------------
    # Analytics
    async def get_approval_metrics(
        self,
        company_id: str,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        user_id: Optional[str] = None,
    ) -> ApprovalMetrics:
        """Aggregate approvals of ``company_id``'s workflows in a time window.

        The window defaults to the last 30 days and includes both ends.
        """
        end_date = _as_utc(end_date) or utcnow()
        start_date = _as_utc(start_date) or end_date - METRICS_WINDOW
        if start_date > end_date:
            raise ValidationError(
                "start_date must not be after end_date", field="start_date"
            )

        approvals = await self._repository.list_approvals_in_window(
            MetricsWindow(
                company_id=company_id,
                start_date=start_date,
                end_date=end_date,
                user_id=user_id,
            )
        )

        total = len(approvals)
        by_status = Counter(a.status for a in approvals)
        responded = [a for a in approvals if a.responded_at is not None]
        latency_hours = [
            (a.responded_at - a.requested_at).total_seconds() / 3600 for a in responded
        ]
        average = sum(latency_hours) / len(latency_hours) if latency_hours else 0.0

        return ApprovalMetrics(
            total_requests=total,
            pending_requests=by_status[ApprovalStatus.PENDING],
            approved_requests=by_status[ApprovalStatus.APPROVED],
            rejected_requests=by_status[ApprovalStatus.REJECTED],
            approval_rate=_percent(by_status[ApprovalStatus.APPROVED], total),
            rejection_rate=_percent(by_status[ApprovalStatus.REJECTED], total),
            average_response_time_hours=round(average, 1),
            requests_by_priority=dict(
                Counter(a.priority.value for a in approvals)
            ),
        )

    # ------------------------------------------------------------------
    async def _safe_notify(
        self,
        user_id: str,
        title: str,
        message: str,
        type: NotificationType,
        metadata: Dict[str, Any],
    ) -> None:
        try:
            await self._notifier.notify(user_id, title, message, type, metadata)
        except Exception:
            logger.warning(
                f"Failed to send {type.value} notification to {user_id}",
                exc_info=True,
            )
