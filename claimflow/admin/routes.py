"""Administrative routes."""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Tuple

from flask import request
from flask_login import current_user, login_required

from claimflow import db
from claimflow.models import AuditLog, Expense, ExpenseApproval, ExpenseStatus, User, UserRole
from claimflow.services import policy_service
from claimflow.services.errors import PolicyValidationError
from claimflow.services.expense_workflow import get_workflow
from claimflow.services.records import PolicyRecord
from claimflow.utils.helpers import json_response, role_required, routing_response

from . import admin_bp

logger = logging.getLogger(__name__)

MANAGER_ROLES = (UserRole.MANAGER, UserRole.ADMIN)


def _parse_role(raw: Any) -> Optional[UserRole]:
    try:
        return UserRole(str(raw).lower())
    except ValueError:
        return None


def _resolve_manager(raw_manager_id: Any, user_id: Optional[int] = None) -> Tuple[Optional[int], Optional[str]]:
    """Validate a manager assignment. Returns ``(manager_id, error)``."""
    if raw_manager_id in (None, ""):
        return None, None
    try:
        manager_id = int(raw_manager_id)
    except (TypeError, ValueError):
        return None, "Invalid manager selected."
    if user_id is not None and manager_id == user_id:
        return None, "A user cannot be their own manager."

    manager = db.session.get(User, manager_id)
    if manager is None or manager.company_id != current_user.company_id:
        return None, "Invalid manager selected."
    if manager.role not in MANAGER_ROLES:
        return None, "Selected manager must be a manager or admin."
    return manager_id, None


def _current_policy() -> PolicyRecord:
    policy = get_workflow().policies.get_policy(current_user.company_id)
    return policy or PolicyRecord(company_id=current_user.company_id)


def _in_approval_rule(user_id: int) -> bool:
    policy = get_workflow().policies.get_policy(current_user.company_id)
    if policy is None:
        return False
    specific_ids = policy.conditional_rule.specific_approver_ids if policy.conditional_rule else ()
    return any(step.user_id == user_id for step in policy.approvers) or user_id in specific_ids


def _strands_pending(existing: Optional[PolicyRecord], policy: PolicyRecord) -> bool:
    """True when ``policy`` would leave a pending expense without its place in the chain.

    A pending expense keeps the steps it has already passed, and the chain
    must still reach past its current index.
    """
    old_ids = [step.user_id for step in existing.approvers] if existing else []
    new_ids = [step.user_id for step in policy.approvers]
    pending = get_workflow().expenses.query_by_status(policy.company_id, ExpenseStatus.PENDING)
    for expense in pending:
        position = expense.current_approver_index
        if position >= len(new_ids) or new_ids[:position] != old_ids[:position]:
            logger.info(f"Rule change for company {policy.company_id} refused: expense {expense.id} in flight")
            return True
    return False


def _save_policy(existing: Optional[PolicyRecord], policy: PolicyRecord, message: str) -> Any:
    if _strands_pending(existing, policy):
        return json_response(
            {"error": "Pending expenses are still routed through the affected approvers."}, status=409
        )
    saved = get_workflow().policies.save_policy(policy)
    return json_response({"message": message, "rule": saved.to_dict()})


def _company_user(user_id: Any):
    workflow = get_workflow()
    try:
        user = workflow.directory.get_user(int(user_id))
    except (TypeError, ValueError):
        return None
    if user is None or user.company_id != current_user.company_id:
        return None
    return user


# Users ---------------------------------------------------------------------


@admin_bp.route("/users", methods=["GET"])
@login_required
@role_required(UserRole.ADMIN)
def users() -> Any:
    """List all users in the admin's company."""
    users = User.query.filter_by(company_id=current_user.company_id).order_by(User.id).all()
    return json_response({"users": [user.to_dict() for user in users]})


@admin_bp.route("/users", methods=["POST"])
@login_required
@role_required(UserRole.ADMIN)
def create_user() -> Any:
    """Create a new employee, manager or admin."""
    payload: Dict[str, Any] = request.get_json(silent=True) or {}
    required_fields = {"name", "email", "password", "role"}
    if missing := required_fields - payload.keys():
        return json_response({"error": f"Missing fields: {', '.join(sorted(missing))}"}, status=400)

    email = payload["email"].lower()
    if User.query.filter_by(email=email).first():
        return json_response({"error": "Email already exists."}, status=409)

    role = _parse_role(payload["role"])
    if role is None:
        return json_response({"error": "Unsupported role."}, status=400)

    manager_id, error = _resolve_manager(payload.get("manager_id"))
    if error:
        return json_response({"error": error}, status=400)

    new_user = User(
        name=payload["name"],
        email=email,
        role=role,
        company_id=current_user.company_id,
        manager_id=manager_id,
    )
    new_user.set_password(payload["password"])
    db.session.add(new_user)
    db.session.commit()

    logger.info(f"User {new_user.id} ({role.value}) created by admin {current_user.id}")
    return json_response({"message": "User created.", "user": new_user.to_dict()}, status=201)


@admin_bp.route("/users/<int:user_id>", methods=["PATCH"])
@login_required
@role_required(UserRole.ADMIN)
def update_user(user_id: int) -> Any:
    """Edit a user's name, role or manager."""
    user = db.session.get(User, user_id)
    if user is None or user.company_id != current_user.company_id:
        return json_response({"error": "User not found."}, status=404)

    payload: Dict[str, Any] = request.get_json(silent=True) or {}

    if "role" in payload:
        role = _parse_role(payload["role"])
        if role is None:
            return json_response({"error": "Unsupported role."}, status=400)
        if role not in MANAGER_ROLES and _in_approval_rule(user.id):
            return json_response({"error": "Remove the user from the approval rule first."}, status=409)
        if role not in MANAGER_ROLES and user.direct_reports:
            return json_response({"error": "Reassign the user's direct reports first."}, status=409)
        user.role = role
    if "manager_id" in payload:
        manager_id, error = _resolve_manager(payload["manager_id"], user_id=user.id)
        if error:
            db.session.rollback()
            return json_response({"error": error}, status=400)
        user.manager_id = manager_id
    if "name" in payload:
        user.name = payload["name"]

    db.session.commit()
    return json_response({"message": "User updated.", "user": user.to_dict()})


@admin_bp.route("/users/<int:user_id>", methods=["DELETE"])
@login_required
@role_required(UserRole.ADMIN)
def delete_user(user_id: int) -> Any:
    """Delete a user, or deactivate one that the audit trail still references."""
    user = db.session.get(User, user_id)
    if user is None or user.company_id != current_user.company_id:
        return json_response({"error": "User not found."}, status=404)
    if user.id == current_user.id:
        return json_response({"error": "You cannot delete yourself."}, status=400)

    if Expense.query.filter_by(employee_id=user.id, status=ExpenseStatus.PENDING).count():
        return json_response({"error": "User has pending expenses."}, status=409)
    if _in_approval_rule(user.id):
        return json_response({"error": "User is part of the approval rule."}, status=409)

    for report in user.direct_reports:
        report.manager_id = None

    referenced = (
        Expense.query.filter_by(employee_id=user.id).count()
        or ExpenseApproval.query.filter_by(approver_user_id=user.id).count()
        or AuditLog.query.filter_by(user_id=user.id).count()
    )
    if referenced:
        user.is_active = False
        db.session.commit()
        return json_response({"message": "User deactivated.", "user": user.to_dict()})

    db.session.delete(user)
    db.session.commit()
    return json_response({"message": "User deleted."})


# Approval rule -------------------------------------------------------------


@admin_bp.route("/approval-rule", methods=["GET"])
@login_required
@role_required(UserRole.ADMIN)
def approval_rule() -> Any:
    """Return the company's approval rule, or null when none is configured."""
    policy = get_workflow().policies.get_policy(current_user.company_id)
    return json_response({"rule": policy.to_dict() if policy else None})


@admin_bp.route("/approval-rule", methods=["PUT"])
@login_required
@role_required(UserRole.ADMIN)
def save_approval_rule() -> Any:
    """Create or replace the company's approval rule."""
    payload: Dict[str, Any] = request.get_json(silent=True) or {}
    existing = get_workflow().policies.get_policy(current_user.company_id)

    approvers = []
    for raw_id in payload.get("approver_ids") or []:
        user = _company_user(raw_id)
        if user is None:
            return json_response({"error": f"Unknown approver {raw_id}."}, status=400)
        approvers.append(user)

    conditional = payload.get("conditional_rule") or {}
    try:
        conditional_rule = policy_service.build_conditional_rule(
            conditional.get("type"),
            percentage_threshold=conditional.get("percentage_threshold"),
            specific_approver_ids=conditional.get("specific_approver_ids"),
        )
        if conditional_rule is not None:
            for specific_id in conditional_rule.specific_approver_ids:
                if _company_user(specific_id) is None:
                    raise PolicyValidationError(f"Unknown specific approver {specific_id}.")
        policy = policy_service.build_policy(
            current_user.company_id,
            approvers,
            is_manager_approver=bool(payload.get("is_manager_approver", False)),
            conditional_rule=conditional_rule,
            name=payload.get("name") or (existing.name if existing else "Default Approval Rule"),
            policy_id=existing.id if existing else None,
        )
    except PolicyValidationError as exc:
        return json_response({"error": str(exc)}, status=400)

    return _save_policy(existing, policy, "Approval rules saved.")


@admin_bp.route("/approval-rule/approvers", methods=["POST"])
@login_required
@role_required(UserRole.ADMIN)
def add_approver() -> Any:
    user = _company_user((request.get_json(silent=True) or {}).get("user_id"))
    if user is None:
        return json_response({"error": "User not found."}, status=404)
    current = _current_policy()
    try:
        policy = policy_service.add_approver(current, user)
    except PolicyValidationError as exc:
        return json_response({"error": str(exc)}, status=400)
    return _save_policy(current, policy, "Approver added.")


@admin_bp.route("/approval-rule/approvers/<int:index>", methods=["DELETE"])
@login_required
@role_required(UserRole.ADMIN)
def remove_approver(index: int) -> Any:
    current = _current_policy()
    try:
        policy = policy_service.remove_approver(current, index)
    except PolicyValidationError as exc:
        return json_response({"error": str(exc)}, status=404)
    return _save_policy(current, policy, "Approver removed.")


@admin_bp.route("/approval-rule/approvers/<int:index>/move", methods=["POST"])
@login_required
@role_required(UserRole.ADMIN)
def move_approver(index: int) -> Any:
    direction = (request.get_json(silent=True) or {}).get("direction", "")
    current = _current_policy()
    try:
        policy = policy_service.move_approver(current, index, direction)
    except PolicyValidationError as exc:
        return json_response({"error": str(exc)}, status=400)
    return _save_policy(current, policy, "Approver moved.")


# Expenses ------------------------------------------------------------------


@admin_bp.route("/expenses", methods=["GET"])
@login_required
@role_required(UserRole.ADMIN)
def all_expenses() -> Any:
    """Every expense in the company, optionally filtered by status."""
    workflow = get_workflow()
    status = request.args.get("status")
    if status:
        try:
            expenses = workflow.expenses.query_by_status(current_user.company_id, ExpenseStatus(status.lower()))
        except ValueError:
            return json_response({"error": f"Unknown status '{status}'."}, status=400)
    else:
        expenses = workflow.expenses.query_by_company(current_user.company_id)
    return json_response(
        {"expenses": [dict(expense.to_dict(), progress=workflow.progress(expense)) for expense in expenses]}
    )


@admin_bp.route("/expenses/<int:expense_id>/<string:decision>", methods=["POST"])
@login_required
@role_required(UserRole.ADMIN)
def override_expense(expense_id: int, decision: str) -> Any:
    """Directly approve or reject a pending expense."""
    statuses = {"approve": ExpenseStatus.APPROVED, "reject": ExpenseStatus.REJECTED}
    if decision not in statuses:
        return json_response({"error": "Decision must be 'approve' or 'reject'."}, status=404)
    return routing_response(get_workflow().override(expense_id, current_user.id, statuses[decision]))


@admin_bp.route("/expenses/<int:expense_id>/audit", methods=["GET"])
@login_required
@role_required(UserRole.ADMIN)
def expense_audit(expense_id: int) -> Any:
    expense = get_workflow().expenses.get(expense_id)
    if expense is None or expense.company_id != current_user.company_id:
        return json_response({"error": "Expense not found."}, status=404)
    return json_response({"audit": [row.to_dict() for row in AuditLog.trail_for("expense", expense_id)]})
