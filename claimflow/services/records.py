"""Immutable snapshots passed between the stores and the routing engine.

The routing engine never touches ORM instances. Stores hand it these frozen
records and write back whatever new record it returns, which keeps a single
decision all-or-nothing and lets tests drive the engine with in-memory fakes.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, FrozenSet, Optional, Tuple

from claimflow.models.approval import ApprovalAction, ApprovalRuleType
from claimflow.models.expense import ExpenseCategory, ExpenseStatus
from claimflow.models.user import UserRole


@dataclass(frozen=True)
class UserRecord:
    id: int
    name: str
    email: str
    role: UserRole
    company_id: int
    manager_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "role": self.role.value,
            "company_id": self.company_id,
            "manager_id": self.manager_id,
        }


@dataclass(frozen=True)
class CompanyRecord:
    id: int
    name: str
    country: str
    currency_code: str


@dataclass(frozen=True)
class ApprovalStepRecord:
    user_id: int
    user_name: str
    order: int

    def to_dict(self) -> Dict[str, Any]:
        return {"user_id": self.user_id, "user_name": self.user_name, "order": self.order}


@dataclass(frozen=True)
class ConditionalRule:
    type: ApprovalRuleType
    percentage_threshold: Optional[float] = None
    specific_approver_ids: FrozenSet[int] = frozenset()

    @property
    def checks_specific(self) -> bool:
        return self.type in (ApprovalRuleType.SPECIFIC, ApprovalRuleType.HYBRID)

    @property
    def checks_percentage(self) -> bool:
        return self.type in (ApprovalRuleType.PERCENTAGE, ApprovalRuleType.HYBRID)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "percentage_threshold": self.percentage_threshold,
            "specific_approver_ids": sorted(self.specific_approver_ids),
        }


@dataclass(frozen=True)
class PolicyRecord:
    company_id: int
    id: Optional[int] = None
    name: str = "Default Approval Rule"
    is_manager_approver: bool = False
    approvers: Tuple[ApprovalStepRecord, ...] = ()
    conditional_rule: Optional[ConditionalRule] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "company_id": self.company_id,
            "name": self.name,
            "is_manager_approver": self.is_manager_approver,
            "approvers": [step.to_dict() for step in self.approvers],
            "conditional_rule": self.conditional_rule.to_dict() if self.conditional_rule else None,
        }


@dataclass(frozen=True)
class HistoryEntry:
    approver_id: int
    approver_name: str
    action: ApprovalAction
    timestamp: datetime
    comment: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "approver_id": self.approver_id,
            "approver_name": self.approver_name,
            "action": self.action.value,
            "comment": self.comment,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }


@dataclass(frozen=True)
class ExpenseLineRecord:
    description: str
    amount: Decimal
    category: ExpenseCategory = ExpenseCategory.OTHER

    def to_dict(self) -> Dict[str, Any]:
        return {
            "description": self.description,
            "amount": float(self.amount),
            "category": self.category.value,
        }


@dataclass(frozen=True)
class ExpenseRecord:
    employee_id: int
    company_id: int
    amount: Decimal
    currency: str
    amount_in_company_currency: Decimal
    date_spent: date
    id: Optional[int] = None
    employee_name: str = ""
    category: ExpenseCategory = ExpenseCategory.OTHER
    description: Optional[str] = None
    merchant_name: Optional[str] = None
    receipt_path: Optional[str] = None
    lines: Tuple[ExpenseLineRecord, ...] = ()
    status: ExpenseStatus = ExpenseStatus.PENDING
    current_approver_index: int = 0
    manager_approved: bool = False
    approval_history: Tuple[HistoryEntry, ...] = field(default_factory=tuple)
    version: int = 1
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def approved_count(self) -> int:
        return sum(1 for entry in self.approval_history if entry.action is ApprovalAction.APPROVED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "employee_id": self.employee_id,
            "employee_name": self.employee_name,
            "company_id": self.company_id,
            "amount": float(self.amount),
            "currency": self.currency,
            "amount_in_company_currency": float(self.amount_in_company_currency),
            "category": self.category.value,
            "description": self.description,
            "date_spent": self.date_spent.isoformat() if self.date_spent else None,
            "merchant_name": self.merchant_name,
            "receipt_path": self.receipt_path,
            "lines": [line.to_dict() for line in self.lines],
            "status": self.status.value,
            "current_approver_index": self.current_approver_index,
            "manager_approved": self.manager_approved,
            "approval_history": [entry.to_dict() for entry in self.approval_history],
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
