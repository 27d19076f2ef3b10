"""Approval routing engine.

Pure decision logic: given an expense snapshot, the company's policy snapshot
and an approve/reject event, compute the expense's next state. Nothing here
reads or writes storage; :mod:`claimflow.services.expense_workflow` feeds the
inputs in and persists the result.

Manager-first approval is modelled as a virtual step *before* chain index 0.
While it is outstanding the direct manager is the active approver; approving
it sets ``manager_approved`` and leaves ``current_approver_index`` at 0, so
``approvers[0]`` is still required afterwards.
"""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from claimflow.models.approval import ApprovalAction
from claimflow.models.expense import ExpenseStatus
from claimflow.models.user import UserRole
from claimflow.services.errors import ERROR_MESSAGES, RoutingErrorKind
from claimflow.services.records import ExpenseRecord, HistoryEntry, PolicyRecord, UserRecord
from claimflow.utils.clock import utcnow

logger = logging.getLogger(__name__)


class Decision(enum.Enum):
    APPROVE = "approve"
    REJECT = "reject"


@dataclass(frozen=True)
class ApprovalEvent:
    actor_id: int
    decision: Decision
    comment: Optional[str] = None
    actor_name: str = ""


@dataclass(frozen=True)
class ActiveApprover:
    user_id: int
    manager_step: bool = False


@dataclass(frozen=True)
class RoutingResult:
    ok: bool
    expense: Optional[ExpenseRecord] = None
    error: Optional[RoutingErrorKind] = None
    message: str = ""
    auto_approved: bool = False

    @classmethod
    def success(cls, expense: ExpenseRecord, message: str = "", auto_approved: bool = False) -> "RoutingResult":
        return cls(ok=True, expense=expense, message=message, auto_approved=auto_approved)

    @classmethod
    def failure(cls, kind: RoutingErrorKind, message: Optional[str] = None) -> "RoutingResult":
        return cls(ok=False, error=kind, message=message or ERROR_MESSAGES[kind])


def manager_step_active(
    expense: ExpenseRecord, policy: PolicyRecord, employee: Optional[UserRecord]
) -> bool:
    """Return True while the manager-first step is the one awaiting a decision."""
    if not policy.is_manager_approver:
        return False
    if expense.current_approver_index != 0 or expense.manager_approved:
        return False
    # No manager on file: the step is skipped and approvers[0] takes over.
    return employee is not None and employee.manager_id is not None


def get_active_approver(
    expense: ExpenseRecord, policy: PolicyRecord, employee: Optional[UserRecord]
) -> Optional[ActiveApprover]:
    """Determine whose decision the expense is currently waiting on."""
    if manager_step_active(expense, policy, employee):
        return ActiveApprover(user_id=employee.manager_id, manager_step=True)

    index = expense.current_approver_index
    if index >= len(policy.approvers):
        return None
    return ActiveApprover(user_id=policy.approvers[index].user_id)


def is_specific_approver(policy: PolicyRecord, user_id: int) -> bool:
    rule = policy.conditional_rule
    return rule is not None and rule.checks_specific and user_id in rule.specific_approver_ids


def should_auto_approve(history: Iterable[HistoryEntry], policy: PolicyRecord) -> bool:
    """Evaluate the policy's conditional rule against an (already updated) history."""
    rule = policy.conditional_rule
    if rule is None:
        return False

    approvals = [entry for entry in history if entry.action is ApprovalAction.APPROVED]

    if rule.checks_specific and rule.specific_approver_ids:
        if any(entry.approver_id in rule.specific_approver_ids for entry in approvals):
            return True

    if rule.checks_percentage and rule.percentage_threshold:
        total = len(policy.approvers)
        if total == 0:
            return False
        # approved / total * 100 >= threshold, kept in exact arithmetic
        if len(approvals) * 100 >= rule.percentage_threshold * total:
            return True

    return False


def route_decision(
    expense: ExpenseRecord,
    policy: PolicyRecord,
    event: ApprovalEvent,
    employee: Optional[UserRecord] = None,
    now: Optional[datetime] = None,
    allow_specific_bypass: bool = False,
) -> RoutingResult:
    """Apply one approve/reject event and return the expense's next state.

    ``employee`` is the submitter, needed to resolve the manager-first step.
    With ``allow_specific_bypass`` a listed specific approver may approve out
    of sequence; rejections always require the active approver.
    """
    if expense.status.is_terminal:
        return RoutingResult.failure(
            RoutingErrorKind.INVALID_STATE,
            f"Expense is already {expense.status.value}.",
        )

    active = get_active_approver(expense, policy, employee)
    bypass = (
        allow_specific_bypass
        and event.decision is Decision.APPROVE
        and is_specific_approver(policy, event.actor_id)
    )

    if active is None and not bypass:
        return RoutingResult.failure(
            RoutingErrorKind.INVALID_STATE, "No approver is pending for this expense."
        )
    if not bypass and active.user_id != event.actor_id:
        return RoutingResult.failure(RoutingErrorKind.UNAUTHORIZED_ACTOR)

    entry = HistoryEntry(
        approver_id=event.actor_id,
        approver_name=event.actor_name,
        action=ApprovalAction.APPROVED if event.decision is Decision.APPROVE else ApprovalAction.REJECTED,
        comment=event.comment or None,
        timestamp=now or utcnow(),
    )
    history = expense.approval_history + (entry,)

    if event.decision is Decision.REJECT:
        return RoutingResult.success(
            replace(expense, status=ExpenseStatus.REJECTED, approval_history=history),
            message="The expense has been rejected.",
        )

    if should_auto_approve(history, policy):
        logger.debug(f"Expense {expense.id} auto-approved by conditional rule after actor {event.actor_id}")
        return RoutingResult.success(
            replace(expense, status=ExpenseStatus.APPROVED, approval_history=history),
            message="The expense has been auto-approved based on conditional rules.",
            auto_approved=True,
        )

    if active is not None and active.manager_step and active.user_id == event.actor_id:
        updated = replace(expense, manager_approved=True, approval_history=history)
    else:
        updated = replace(
            expense,
            current_approver_index=expense.current_approver_index + 1,
            approval_history=history,
        )

    if updated.current_approver_index >= len(policy.approvers):
        return RoutingResult.success(
            replace(updated, status=ExpenseStatus.APPROVED),
            message="The expense has been fully approved.",
        )
    return RoutingResult.success(updated, message="The expense has been moved to the next approver.")


def is_awaiting_user(
    expense: ExpenseRecord,
    policy: PolicyRecord,
    employee: Optional[UserRecord],
    user: UserRecord,
) -> bool:
    """True when ``expense`` belongs in ``user``'s pending queue."""
    if expense.status is not ExpenseStatus.PENDING or expense.company_id != user.company_id:
        return False

    active = get_active_approver(expense, policy, employee)
    if active is not None and active.user_id == user.id:
        return True

    # Managers also see their reports' claims still sitting on the first slot.
    return (
        user.role is UserRole.MANAGER
        and policy.is_manager_approver
        and employee is not None
        and employee.manager_id == user.id
        and expense.current_approver_index == 0
        and not expense.manager_approved
    )


def pending_for_user(
    user: UserRecord,
    policy: Optional[PolicyRecord],
    expenses: Iterable[ExpenseRecord],
    employees: Dict[int, UserRecord],
) -> List[ExpenseRecord]:
    """Resolve the set of expenses waiting on ``user``, de-duplicated by id."""
    if policy is None:
        return []

    seen = set()
    queue: List[ExpenseRecord] = []
    for expense in expenses:
        if expense.id in seen:
            continue
        if is_awaiting_user(expense, policy, employees.get(expense.employee_id), user):
            seen.add(expense.id)
            queue.append(expense)
    return queue


def get_approval_progress(expense: ExpenseRecord, policy: PolicyRecord) -> Dict[str, float]:
    """Read-only progress projection for reporting."""
    current = expense.approved_count
    total = len(policy.approvers)
    percentage = (current / total) * 100 if total > 0 else 0
    return {"current": current, "total": total, "percentage": percentage}
