"""Tests for the approval routing engine."""
from __future__ import annotations

from datetime import datetime

import pytest

from claimflow.models.approval import ApprovalAction, ApprovalRuleType
from claimflow.models.expense import ExpenseStatus
from claimflow.models.user import UserRole
from claimflow.services import approval_engine
from claimflow.services.approval_engine import ApprovalEvent, Decision
from claimflow.services.errors import RoutingErrorKind

from conftest import (
    APPROVER_A,
    APPROVER_B,
    APPROVER_C,
    APPROVER_D,
    APPROVER_E,
    EMPLOYEE_ID,
    MANAGER_ID,
    ORPHAN_ID,
    make_expense,
    make_policy,
    make_user,
)

NOW = datetime(2024, 3, 2, 9, 30)
EMPLOYEE = make_user(EMPLOYEE_ID, UserRole.EMPLOYEE, manager_id=MANAGER_ID)
ORPHAN = make_user(ORPHAN_ID, UserRole.EMPLOYEE)


def approve(expense, policy, actor_id, employee=EMPLOYEE, **kwargs):
    event = ApprovalEvent(actor_id=actor_id, decision=Decision.APPROVE, actor_name=f"User {actor_id}")
    return approval_engine.route_decision(expense, policy, event, employee=employee, now=NOW, **kwargs)


def reject(expense, policy, actor_id, employee=EMPLOYEE, comment=None):
    event = ApprovalEvent(actor_id=actor_id, decision=Decision.REJECT, comment=comment, actor_name=f"User {actor_id}")
    return approval_engine.route_decision(expense, policy, event, employee=employee, now=NOW)


def test_chain_walks_each_approver_in_order() -> None:
    """A plain three-step chain stays pending until the last approver signs off."""
    policy = make_policy([APPROVER_A, APPROVER_B, APPROVER_C])
    expense = make_expense()
    statuses = []

    for actor in (APPROVER_A, APPROVER_B, APPROVER_C):
        result = approve(expense, policy, actor)
        assert result.ok
        expense = result.expense
        statuses.append(expense.status)

    assert statuses == [ExpenseStatus.PENDING, ExpenseStatus.PENDING, ExpenseStatus.APPROVED]
    assert expense.current_approver_index == 3
    assert not result.auto_approved


def test_history_only_grows_by_one_entry_per_decision() -> None:
    policy = make_policy([APPROVER_A, APPROVER_B])
    expense = make_expense()

    first = approve(expense, policy, APPROVER_A).expense
    second = approve(first, policy, APPROVER_B).expense

    assert len(first.approval_history) == 1
    assert second.approval_history[:1] == first.approval_history
    assert [entry.approver_id for entry in second.approval_history] == [APPROVER_A, APPROVER_B]
    assert second.approval_history[-1].timestamp == NOW
    assert second.approval_history[-1].approver_name == f"User {APPROVER_B}"


def test_rejection_is_terminal() -> None:
    """One rejection ends the expense regardless of remaining approvers or rules."""
    policy = make_policy(
        [APPROVER_A, APPROVER_B, APPROVER_C],
        rule_type=ApprovalRuleType.PERCENTAGE,
        threshold=100,
    )
    expense = approve(make_expense(), policy, APPROVER_A).expense

    result = reject(expense, policy, APPROVER_B, comment="Missing receipt")

    assert result.ok
    assert result.expense.status is ExpenseStatus.REJECTED
    assert result.expense.current_approver_index == 1
    entry = result.expense.approval_history[-1]
    assert entry.action is ApprovalAction.REJECTED
    assert entry.comment == "Missing receipt"

    follow_up = approve(result.expense, policy, APPROVER_B)
    assert follow_up.error is RoutingErrorKind.INVALID_STATE


def test_percentage_threshold_uses_whole_chain() -> None:
    """60% of five approvers is reached on the third approval, not the second."""
    policy = make_policy(
        [APPROVER_A, APPROVER_B, APPROVER_C, APPROVER_D, APPROVER_E],
        rule_type=ApprovalRuleType.PERCENTAGE,
        threshold=60,
    )
    expense = make_expense()

    expense = approve(expense, policy, APPROVER_A).expense
    expense = approve(expense, policy, APPROVER_B).expense
    assert expense.status is ExpenseStatus.PENDING
    assert expense.current_approver_index == 2

    result = approve(expense, policy, APPROVER_C)
    assert result.expense.status is ExpenseStatus.APPROVED
    assert result.auto_approved
    assert result.expense.current_approver_index == 2


def test_specific_approver_short_circuits_chain() -> None:
    policy = make_policy(
        [APPROVER_A, APPROVER_B, APPROVER_C],
        rule_type=ApprovalRuleType.SPECIFIC,
        specific_ids=[APPROVER_B],
    )
    expense = approve(make_expense(), policy, APPROVER_A).expense
    assert expense.status is ExpenseStatus.PENDING

    result = approve(expense, policy, APPROVER_B)

    assert result.expense.status is ExpenseStatus.APPROVED
    assert result.auto_approved
    assert len(result.expense.approval_history) == 2


def test_hybrid_rule_accepts_either_condition() -> None:
    policy = make_policy(
        [APPROVER_A, APPROVER_B, APPROVER_C, APPROVER_D],
        rule_type=ApprovalRuleType.HYBRID,
        threshold=50,
        specific_ids=[APPROVER_A],
    )
    assert approve(make_expense(), policy, APPROVER_A).auto_approved

    policy = make_policy(
        [APPROVER_A, APPROVER_B, APPROVER_C, APPROVER_D],
        rule_type=ApprovalRuleType.HYBRID,
        threshold=50,
        specific_ids=[APPROVER_D],
    )
    expense = approve(make_expense(), policy, APPROVER_A).expense
    assert expense.status is ExpenseStatus.PENDING
    result = approve(expense, policy, APPROVER_B)
    assert result.expense.status is ExpenseStatus.APPROVED
    assert result.auto_approved


def test_percentage_rule_with_empty_chain_never_auto_approves() -> None:
    policy = make_policy([], rule_type=ApprovalRuleType.PERCENTAGE, threshold=50)
    history = approve(make_expense(), make_policy([APPROVER_A]), APPROVER_A).expense.approval_history

    assert approval_engine.should_auto_approve(history, policy) is False


def test_manager_first_is_a_step_before_the_chain() -> None:
    """The manager's approval does not consume approvers[0]."""
    policy = make_policy([APPROVER_A, APPROVER_B], is_manager_approver=True)
    expense = make_expense()

    active = approval_engine.get_active_approver(expense, policy, EMPLOYEE)
    assert active.user_id == MANAGER_ID
    assert active.manager_step

    expense = approve(expense, policy, MANAGER_ID).expense
    assert expense.manager_approved
    assert expense.current_approver_index == 0
    assert approval_engine.get_active_approver(expense, policy, EMPLOYEE).user_id == APPROVER_A

    expense = approve(expense, policy, APPROVER_A).expense
    result = approve(expense, policy, APPROVER_B)
    assert result.expense.status is ExpenseStatus.APPROVED
    assert [entry.approver_id for entry in result.expense.approval_history] == [MANAGER_ID, APPROVER_A, APPROVER_B]


def test_chain_approver_cannot_jump_ahead_of_manager() -> None:
    policy = make_policy([APPROVER_A], is_manager_approver=True)

    result = approve(make_expense(), policy, APPROVER_A)

    assert not result.ok
    assert result.error is RoutingErrorKind.UNAUTHORIZED_ACTOR


def test_manager_first_without_manager_falls_back_to_first_approver() -> None:
    policy = make_policy([APPROVER_A, APPROVER_B], is_manager_approver=True)
    expense = make_expense(employee_id=ORPHAN_ID)

    assert approval_engine.get_active_approver(expense, policy, ORPHAN).user_id == APPROVER_A

    result = approve(expense, policy, APPROVER_A, employee=ORPHAN)
    assert result.ok
    assert result.expense.current_approver_index == 1
    assert not result.expense.manager_approved


def test_manager_only_policy_approves_on_manager_decision() -> None:
    policy = make_policy([], is_manager_approver=True)

    result = approve(make_expense(), policy, MANAGER_ID)

    assert result.expense.status is ExpenseStatus.APPROVED
    assert result.expense.manager_approved


def test_manager_approval_counts_towards_percentage() -> None:
    policy = make_policy(
        [APPROVER_A, APPROVER_B],
        is_manager_approver=True,
        rule_type=ApprovalRuleType.PERCENTAGE,
        threshold=50,
    )

    result = approve(make_expense(), policy, MANAGER_ID)

    assert result.expense.status is ExpenseStatus.APPROVED
    assert result.auto_approved


def test_empty_chain_without_manager_has_no_active_approver() -> None:
    policy = make_policy([])

    assert approval_engine.get_active_approver(make_expense(), policy, EMPLOYEE) is None
    result = approve(make_expense(), policy, APPROVER_A)
    assert result.error is RoutingErrorKind.INVALID_STATE


def test_decision_on_finished_expense_changes_nothing() -> None:
    policy = make_policy([APPROVER_A])
    approved = approve(make_expense(), policy, APPROVER_A).expense

    result = approve(approved, policy, APPROVER_A)

    assert not result.ok
    assert result.error is RoutingErrorKind.INVALID_STATE
    assert result.expense is None
    assert len(approved.approval_history) == 1


@pytest.mark.parametrize("decision", [Decision.APPROVE, Decision.REJECT])
def test_non_active_approver_is_refused(decision) -> None:
    policy = make_policy([APPROVER_A, APPROVER_B])
    event = ApprovalEvent(actor_id=APPROVER_B, decision=decision)

    result = approval_engine.route_decision(make_expense(), policy, event, employee=EMPLOYEE, now=NOW)

    assert result.error is RoutingErrorKind.UNAUTHORIZED_ACTOR
    assert result.message


def test_specific_approver_out_of_sequence_requires_flag() -> None:
    policy = make_policy(
        [APPROVER_A, APPROVER_B, APPROVER_C],
        rule_type=ApprovalRuleType.SPECIFIC,
        specific_ids=[APPROVER_C],
    )

    refused = approve(make_expense(), policy, APPROVER_C)
    assert refused.error is RoutingErrorKind.UNAUTHORIZED_ACTOR

    allowed = approve(make_expense(), policy, APPROVER_C, allow_specific_bypass=True)
    assert allowed.expense.status is ExpenseStatus.APPROVED
    assert allowed.auto_approved


def test_out_of_sequence_rejection_is_never_allowed() -> None:
    policy = make_policy(
        [APPROVER_A, APPROVER_B],
        rule_type=ApprovalRuleType.SPECIFIC,
        specific_ids=[APPROVER_B],
    )
    event = ApprovalEvent(actor_id=APPROVER_B, decision=Decision.REJECT)

    result = approval_engine.route_decision(
        make_expense(), policy, event, employee=EMPLOYEE, now=NOW, allow_specific_bypass=True
    )

    assert result.error is RoutingErrorKind.UNAUTHORIZED_ACTOR


def test_blank_comment_is_stored_as_none() -> None:
    event = ApprovalEvent(actor_id=APPROVER_A, decision=Decision.APPROVE, comment="")
    result = approval_engine.route_decision(make_expense(), make_policy([APPROVER_A]), event, now=NOW)

    assert result.expense.approval_history[0].comment is None


def test_pending_queue_contains_active_approvers_expenses() -> None:
    policy = make_policy([APPROVER_A, APPROVER_B])
    waiting = make_expense(id=1)
    moved_on = make_expense(id=2, current_approver_index=1)
    finished = make_expense(id=3, status=ExpenseStatus.APPROVED)
    employees = {EMPLOYEE_ID: EMPLOYEE}

    queue = approval_engine.pending_for_user(make_user(APPROVER_A), policy, [waiting, moved_on, finished], employees)

    assert [expense.id for expense in queue] == [1]


def test_pending_queue_for_manager_includes_reports_without_duplicates() -> None:
    policy = make_policy([APPROVER_A], is_manager_approver=True)
    expense = make_expense(id=7)
    employees = {EMPLOYEE_ID: EMPLOYEE}

    queue = approval_engine.pending_for_user(make_user(MANAGER_ID), policy, [expense, expense], employees)

    assert [item.id for item in queue] == [7]


def test_pending_queue_drops_report_after_manager_signed_off() -> None:
    policy = make_policy([APPROVER_A], is_manager_approver=True)
    expense = make_expense(id=7, manager_approved=True)

    queue = approval_engine.pending_for_user(make_user(MANAGER_ID), policy, [expense], {EMPLOYEE_ID: EMPLOYEE})

    assert queue == []


def test_pending_queue_is_empty_without_policy() -> None:
    assert approval_engine.pending_for_user(make_user(APPROVER_A), None, [make_expense()], {}) == []


def test_pending_queue_ignores_other_companies() -> None:
    policy = make_policy([APPROVER_A])
    outsider = make_user(APPROVER_A, company_id=2)

    assert approval_engine.pending_for_user(outsider, policy, [make_expense()], {EMPLOYEE_ID: EMPLOYEE}) == []


def test_progress_projection() -> None:
    policy = make_policy([APPROVER_A, APPROVER_B, APPROVER_C, APPROVER_D])
    expense = approve(make_expense(), policy, APPROVER_A).expense

    assert approval_engine.get_approval_progress(expense, policy) == {"current": 1, "total": 4, "percentage": 25.0}
    assert approval_engine.get_approval_progress(make_expense(), make_policy([])) == {
        "current": 0,
        "total": 0,
        "percentage": 0,
    }
