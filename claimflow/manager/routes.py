"""Manager approval routes."""
from __future__ import annotations

from typing import Any

from flask import request
from flask_login import current_user, login_required

from claimflow.models import UserRole
from claimflow.services.expense_workflow import get_workflow
from claimflow.utils.helpers import json_response, role_required, routing_response

from . import manager_bp


@manager_bp.route("/pending", methods=["GET"])
@login_required
@role_required(UserRole.MANAGER, UserRole.ADMIN)
def pending_approvals() -> Any:
    """Return expenses currently waiting on the signed-in approver."""
    workflow = get_workflow()
    expenses = workflow.pending_for(current_user.id)
    return json_response(
        {
            "expenses": [
                dict(expense.to_dict(), progress=workflow.progress(expense)) for expense in expenses
            ]
        }
    )


@manager_bp.route("/approve/<int:expense_id>", methods=["POST"])
@login_required
@role_required(UserRole.MANAGER, UserRole.ADMIN)
def approve_expense(expense_id: int) -> Any:
    """Approve a pending expense."""
    comment = (request.get_json(silent=True) or {}).get("comment")
    return routing_response(get_workflow().approve(expense_id, current_user.id, comment))


@manager_bp.route("/reject/<int:expense_id>", methods=["POST"])
@login_required
@role_required(UserRole.MANAGER, UserRole.ADMIN)
def reject_expense(expense_id: int) -> Any:
    """Reject a pending expense."""
    comment = (request.get_json(silent=True) or {}).get("comment")
    return routing_response(get_workflow().reject(expense_id, current_user.id, comment))
