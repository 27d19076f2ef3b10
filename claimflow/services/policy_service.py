"""Editing helpers for a company's approval rule.

All helpers take and return immutable ``PolicyRecord`` values; persisting the
result is the policy store's job. Approver ``order`` values are always
re-indexed to ``0..len-1`` after a mutation.
"""
from __future__ import annotations

from dataclasses import replace
from typing import Iterable, Optional, Sequence

from claimflow.models.approval import ApprovalRuleType
from claimflow.models.user import UserRole
from claimflow.services.errors import PolicyValidationError
from claimflow.services.records import ApprovalStepRecord, ConditionalRule, PolicyRecord, UserRecord

APPROVER_ROLES = (UserRole.MANAGER, UserRole.ADMIN)


def reindex(steps: Iterable[ApprovalStepRecord]) -> tuple:
    return tuple(replace(step, order=index) for index, step in enumerate(steps))


def _check_approver(user: UserRecord, company_id: int) -> None:
    if user.company_id != company_id:
        raise PolicyValidationError(f"User {user.id} belongs to another company.")
    if user.role not in APPROVER_ROLES:
        raise PolicyValidationError(f"User {user.id} cannot approve expenses.")


def add_approver(policy: PolicyRecord, user: UserRecord) -> PolicyRecord:
    """Append ``user`` to the end of the chain."""
    _check_approver(user, policy.company_id)
    if any(step.user_id == user.id for step in policy.approvers):
        raise PolicyValidationError(f"User {user.id} is already an approver.")

    step = ApprovalStepRecord(user_id=user.id, user_name=user.name, order=len(policy.approvers))
    return replace(policy, approvers=reindex(policy.approvers + (step,)))


def remove_approver(policy: PolicyRecord, index: int) -> PolicyRecord:
    if not 0 <= index < len(policy.approvers):
        raise PolicyValidationError(f"No approver at position {index}.")
    remaining = policy.approvers[:index] + policy.approvers[index + 1:]
    return replace(policy, approvers=reindex(remaining))


def move_approver(policy: PolicyRecord, index: int, direction: str) -> PolicyRecord:
    """Swap the approver at ``index`` with its neighbour ("up" or "down")."""
    if direction not in ("up", "down"):
        raise PolicyValidationError(f"Unknown direction '{direction}'.")
    new_index = index - 1 if direction == "up" else index + 1
    if not 0 <= index < len(policy.approvers) or not 0 <= new_index < len(policy.approvers):
        return policy

    steps = list(policy.approvers)
    steps[index], steps[new_index] = steps[new_index], steps[index]
    return replace(policy, approvers=reindex(steps))


def build_conditional_rule(
    rule_type: Optional[str],
    percentage_threshold: Optional[float] = None,
    specific_approver_ids: Optional[Sequence[int]] = None,
) -> Optional[ConditionalRule]:
    """Validate and build a conditional rule; ``None`` type means no rule."""
    if rule_type is None:
        return None
    try:
        kind = ApprovalRuleType(str(rule_type).lower())
    except ValueError:
        raise PolicyValidationError(f"Invalid conditional rule type '{rule_type}'.") from None

    threshold = None
    if kind in (ApprovalRuleType.PERCENTAGE, ApprovalRuleType.HYBRID):
        try:
            threshold = float(percentage_threshold)
        except (TypeError, ValueError):
            raise PolicyValidationError("A percentage threshold is required.") from None
        if not 1 <= threshold <= 100:
            raise PolicyValidationError("Percentage threshold must be between 1 and 100.")

    specific_ids = frozenset()
    if kind in (ApprovalRuleType.SPECIFIC, ApprovalRuleType.HYBRID):
        try:
            specific_ids = frozenset(int(user_id) for user_id in specific_approver_ids or ())
        except (TypeError, ValueError):
            raise PolicyValidationError("Specific approver ids must be integers.") from None
        if not specific_ids and kind is ApprovalRuleType.SPECIFIC:
            raise PolicyValidationError("At least one specific approver is required.")

    return ConditionalRule(type=kind, percentage_threshold=threshold, specific_approver_ids=specific_ids)


def build_policy(
    company_id: int,
    approvers: Sequence[UserRecord],
    is_manager_approver: bool = False,
    conditional_rule: Optional[ConditionalRule] = None,
    name: str = "Default Approval Rule",
    policy_id: Optional[int] = None,
) -> PolicyRecord:
    """Assemble a full rule from an ordered list of approver users."""
    policy = PolicyRecord(
        id=policy_id,
        company_id=company_id,
        name=name,
        is_manager_approver=is_manager_approver,
        conditional_rule=conditional_rule,
    )
    for user in approvers:
        policy = add_approver(policy, user)
    return policy
