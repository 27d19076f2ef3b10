"""General helper utilities."""
from __future__ import annotations

from functools import wraps
from typing import Any, Callable

from flask import jsonify
from flask_login import current_user

from claimflow.models import UserRole
from claimflow.services.approval_engine import RoutingResult
from claimflow.services.errors import RoutingErrorKind

JsonView = Callable[..., Any]

ERROR_STATUS = {
    RoutingErrorKind.POLICY_NOT_FOUND: 404,
    RoutingErrorKind.EXPENSE_NOT_FOUND: 404,
    RoutingErrorKind.UNAUTHORIZED_ACTOR: 403,
    RoutingErrorKind.INVALID_STATE: 409,
    RoutingErrorKind.CONCURRENT_UPDATE: 409,
}


def json_response(payload: Any, status: int = 200):
    """Return a JSON response with status code."""
    return jsonify(payload), status


def routing_response(result: RoutingResult, **extra: Any):
    """Translate a routing result into a JSON response with a stable error code."""
    if not result.ok:
        return json_response(
            {"error": result.message, "error_code": result.error.value},
            status=ERROR_STATUS[result.error],
        )
    payload = {
        "message": result.message,
        "auto_approved": result.auto_approved,
        "expense": result.expense.to_dict(),
    }
    payload.update(extra)
    return json_response(payload)


def role_required(*roles: UserRole):
    """Restrict a route to one or more roles."""
    def decorator(view_func: JsonView) -> JsonView:
        @wraps(view_func)
        def wrapped(*args, **kwargs):
            if not current_user.is_authenticated:
                return json_response({"error": "Authentication required."}, status=401)
            if current_user.role not in roles:
                return json_response({"error": "Insufficient permissions."}, status=403)
            return view_func(*args, **kwargs)

        return wrapped

    return decorator
