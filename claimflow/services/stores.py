"""SQLAlchemy implementations of the workflow's collaborator contracts."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.orm.exc import StaleDataError

from claimflow import db
from claimflow.models import (
    ApprovalRule,
    ApprovalStep,
    AuditLog,
    Company,
    Expense,
    ExpenseApproval,
    ExpenseLine,
    ExpenseStatus,
    User,
)
from claimflow.services.errors import ConcurrentUpdateError
from claimflow.services.records import CompanyRecord, ExpenseRecord, PolicyRecord, UserRecord
from claimflow.utils.clock import utcnow

logger = logging.getLogger(__name__)

# Everything else on an expense is fixed at submission time.
MUTABLE_EXPENSE_FIELDS = frozenset({"status", "current_approver_index", "manager_approved"})


class SqlDirectory:
    def get_user(self, user_id: int) -> Optional[UserRecord]:
        user = db.session.get(User, user_id)
        return user.to_record() if user else None

    def get_users_by_company(self, company_id: int) -> List[UserRecord]:
        users = User.query.filter_by(company_id=company_id).order_by(User.id).all()
        return [user.to_record() for user in users]

    def get_users_by_manager(self, manager_id: int) -> List[UserRecord]:
        users = User.query.filter_by(manager_id=manager_id).order_by(User.id).all()
        return [user.to_record() for user in users]

    def get_company(self, company_id: int) -> Optional[CompanyRecord]:
        company = db.session.get(Company, company_id)
        return company.to_record() if company else None


class SqlPolicyStore:
    def _load(self, company_id: int) -> Optional[ApprovalRule]:
        return ApprovalRule.query.filter_by(company_id=company_id).order_by(ApprovalRule.id).first()

    def get_policy(self, company_id: int) -> Optional[PolicyRecord]:
        rule = self._load(company_id)
        return rule.to_record() if rule else None

    def save_policy(self, policy: PolicyRecord) -> PolicyRecord:
        """Create the company's rule or overwrite the existing one."""
        rule = self._load(policy.company_id)
        if rule is None:
            rule = ApprovalRule(company_id=policy.company_id)
            db.session.add(rule)

        rule.name = policy.name
        rule.is_manager_approver = policy.is_manager_approver
        conditional = policy.conditional_rule
        rule.conditional_type = conditional.type if conditional else None
        rule.percentage_threshold = conditional.percentage_threshold if conditional else None
        rule.specific_approver_ids = sorted(conditional.specific_approver_ids) if conditional else None

        rule.steps.clear()
        db.session.flush()
        for step in policy.approvers:
            rule.steps.append(ApprovalStep(user_id=step.user_id, user_name=step.user_name, order=step.order))

        db.session.commit()
        logger.info(f"Approval rule saved for company {policy.company_id} with {len(policy.approvers)} approvers")
        return rule.to_record()


class SqlExpenseStore:
    def create(self, expense: ExpenseRecord) -> ExpenseRecord:
        row = Expense(
            company_id=expense.company_id,
            employee_id=expense.employee_id,
            amount=expense.amount,
            currency=expense.currency,
            amount_in_company_currency=expense.amount_in_company_currency,
            category=expense.category,
            description=expense.description,
            date_spent=expense.date_spent,
            merchant_name=expense.merchant_name,
            receipt_path=expense.receipt_path,
            status=expense.status,
            current_approver_index=expense.current_approver_index,
            manager_approved=expense.manager_approved,
        )
        for line in expense.lines:
            row.lines.append(ExpenseLine(description=line.description, amount=line.amount, category=line.category))

        db.session.add(row)
        db.session.commit()
        return row.to_record()

    def get(self, expense_id: int) -> Optional[ExpenseRecord]:
        row = db.session.get(Expense, expense_id)
        return row.to_record() if row else None

    def update(
        self,
        expense_id: int,
        changes: Dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> Optional[ExpenseRecord]:
        row = db.session.get(Expense, expense_id)
        if row is None:
            db.session.rollback()
            return None
        if expected_version is not None and row.version != expected_version:
            db.session.rollback()
            raise ConcurrentUpdateError(
                f"Expense {expense_id} is at version {row.version}, expected {expected_version}"
            )

        changes = dict(changes)
        history = changes.pop("approval_history", None)
        unknown = set(changes) - MUTABLE_EXPENSE_FIELDS
        if unknown:
            db.session.rollback()
            raise ValueError(f"Cannot update expense fields: {', '.join(sorted(unknown))}")

        if history is not None:
            existing = len(row.history)
            if len(history) < existing:
                db.session.rollback()
                raise ValueError("Approval history is append-only.")
            for entry in history[existing:]:
                row.history.append(ExpenseApproval.from_record(entry))

        for key, value in changes.items():
            setattr(row, key, value)
        row.updated_at = utcnow()

        try:
            db.session.commit()
        except StaleDataError as exc:
            db.session.rollback()
            raise ConcurrentUpdateError(f"Expense {expense_id} was modified concurrently") from exc

        return row.to_record()

    def query_by_company(self, company_id: int) -> List[ExpenseRecord]:
        rows = Expense.query.filter_by(company_id=company_id).order_by(Expense.created_at.desc(), Expense.id.desc()).all()
        return [row.to_record() for row in rows]

    def query_by_employee(self, employee_id: int) -> List[ExpenseRecord]:
        rows = Expense.query.filter_by(employee_id=employee_id).order_by(Expense.created_at.desc(), Expense.id.desc()).all()
        return [row.to_record() for row in rows]

    def query_by_status(self, company_id: int, status: ExpenseStatus) -> List[ExpenseRecord]:
        rows = (
            Expense.query.filter_by(company_id=company_id, status=status)
            .order_by(Expense.created_at.desc(), Expense.id.desc())
            .all()
        )
        return [row.to_record() for row in rows]


class SqlAuditTrail:
    def record(self, expense_id: int, user_id: int, action: str, **extra: Any) -> None:
        # Shares the session with SqlExpenseStore.update, which commits it.
        db.session.add(AuditLog.for_expense(expense_id, user_id, action, **extra))
