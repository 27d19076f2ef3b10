"""Expense workflow: submission and routing decisions around the engine.

Each decision runs "read expense -> snapshot policy -> route -> write" under a
per-expense lock, and the write is a compare-and-swap on the expense version,
so two approvers racing on the same claim can never both land.
"""
from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import date
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple

from flask import current_app

from claimflow.models.expense import ExpenseCategory, ExpenseStatus
from claimflow.models.user import UserRole
from claimflow.services import approval_engine
from claimflow.services.approval_engine import ApprovalEvent, Decision, RoutingResult
from claimflow.services.contracts import AuditTrail, CurrencyConverter, Directory, ExpenseStore, PolicyStore
from claimflow.services.errors import ConcurrentUpdateError, ConversionUnavailable, RoutingErrorKind, SubmissionError
from claimflow.services.records import ExpenseLineRecord, ExpenseRecord

logger = logging.getLogger(__name__)


class ExpenseWorkflow:
    """Service coordinating expense submission and approval routing."""

    def __init__(
        self,
        directory: Directory,
        policies: PolicyStore,
        expenses: ExpenseStore,
        currency: CurrencyConverter,
        audit: Optional[AuditTrail] = None,
        max_retries: int = 3,
        allow_specific_bypass: bool = False,
    ):
        self.directory = directory
        self.policies = policies
        self.expenses = expenses
        self.currency = currency
        self.audit = audit
        self.max_retries = max_retries
        self.allow_specific_bypass = allow_specific_bypass
        # expense id -> (lock, number of callers holding or waiting on it)
        self._locks: Dict[int, Tuple[threading.Lock, int]] = {}
        self._registry_lock = threading.Lock()

    @contextmanager
    def _expense_lock(self, expense_id: int):
        with self._registry_lock:
            lock, users = self._locks.get(expense_id, (None, 0))
            lock = lock or threading.Lock()
            self._locks[expense_id] = (lock, users + 1)
        try:
            with lock:
                yield
        finally:
            with self._registry_lock:
                lock, users = self._locks[expense_id]
                if users == 1:
                    del self._locks[expense_id]
                else:
                    self._locks[expense_id] = (lock, users - 1)

    # Submission -------------------------------------------------------------

    def submit(
        self,
        employee_id: int,
        amount: Decimal,
        currency: str,
        date_spent: date,
        category: ExpenseCategory = ExpenseCategory.OTHER,
        description: Optional[str] = None,
        merchant_name: Optional[str] = None,
        receipt_path: Optional[str] = None,
        lines: Iterable[ExpenseLineRecord] = (),
    ) -> ExpenseRecord:
        """Create a pending expense, converted once into the company currency."""
        employee = self.directory.get_user(employee_id)
        if employee is None:
            raise SubmissionError(f"Unknown employee {employee_id}.")
        company = self.directory.get_company(employee.company_id)
        if company is None:
            raise SubmissionError(f"Unknown company {employee.company_id}.")
        if amount <= 0:
            raise SubmissionError("Amount must be greater than zero.")

        currency = currency.upper()
        converted = self._convert(amount, currency, company.currency_code)

        expense = ExpenseRecord(
            employee_id=employee.id,
            employee_name=employee.name,
            company_id=company.id,
            amount=amount,
            currency=currency,
            amount_in_company_currency=converted,
            category=category,
            description=description,
            date_spent=date_spent,
            merchant_name=merchant_name,
            receipt_path=receipt_path,
            lines=tuple(lines),
        )
        created = self.expenses.create(expense)
        logger.info(
            f"Expense {created.id} submitted by user {employee.id}: "
            f"{amount} {currency} -> {converted} {company.currency_code}"
        )
        return created

    def _convert(self, amount: Decimal, source: str, target: str) -> Decimal:
        if source == target.upper():
            return amount
        try:
            return self.currency.convert(amount, source, target)
        except ConversionUnavailable as exc:
            logger.warning(f"Currency conversion {source}->{target} unavailable, keeping original amount: {exc}")
            return amount

    # Routing ----------------------------------------------------------------

    def approve(self, expense_id: int, actor_id: int, comment: Optional[str] = None) -> RoutingResult:
        return self.decide(expense_id, ApprovalEvent(actor_id=actor_id, decision=Decision.APPROVE, comment=comment))

    def reject(self, expense_id: int, actor_id: int, comment: Optional[str] = None) -> RoutingResult:
        return self.decide(expense_id, ApprovalEvent(actor_id=actor_id, decision=Decision.REJECT, comment=comment))

    def decide(self, expense_id: int, event: ApprovalEvent) -> RoutingResult:
        """Feed one approval event through the engine and persist the outcome."""
        with self._expense_lock(expense_id):
            for attempt in range(self.max_retries + 1):
                result = self._decide_once(expense_id, event)
                if result is not None:
                    return result
                logger.warning(f"Expense {expense_id} changed underneath decision, retry {attempt + 1}")

        return RoutingResult.failure(RoutingErrorKind.CONCURRENT_UPDATE)

    def _decide_once(self, expense_id: int, event: ApprovalEvent) -> Optional[RoutingResult]:
        expense = self.expenses.get(expense_id)
        if expense is None:
            return RoutingResult.failure(RoutingErrorKind.EXPENSE_NOT_FOUND)
        if expense.status.is_terminal:
            return RoutingResult.failure(
                RoutingErrorKind.INVALID_STATE, f"Expense is already {expense.status.value}."
            )

        policy = self.policies.get_policy(expense.company_id)
        if policy is None:
            logger.error(f"No approval rule for company {expense.company_id}; expense {expense_id} cannot be routed")
            return RoutingResult.failure(RoutingErrorKind.POLICY_NOT_FOUND)

        actor = self.directory.get_user(event.actor_id)
        if actor is None or actor.company_id != expense.company_id:
            return RoutingResult.failure(RoutingErrorKind.UNAUTHORIZED_ACTOR)

        employee = self.directory.get_user(expense.employee_id)
        result = approval_engine.route_decision(
            expense,
            policy,
            replace(event, actor_name=actor.name),
            employee=employee,
            allow_specific_bypass=self.allow_specific_bypass,
        )
        if not result.ok:
            logger.info(f"Decision on expense {expense_id} by user {actor.id} refused: {result.error.value}")
            return result

        routed = result.expense
        # Staged here, committed by the expense write below.
        self._audit(
            expense_id,
            actor.id,
            event.decision.value,
            status=routed.status.value,
            current_approver_index=routed.current_approver_index,
            auto_approved=result.auto_approved,
        )
        try:
            saved = self.expenses.update(
                expense_id,
                {
                    "status": routed.status,
                    "current_approver_index": routed.current_approver_index,
                    "manager_approved": routed.manager_approved,
                    "approval_history": routed.approval_history,
                },
                expected_version=expense.version,
            )
        except ConcurrentUpdateError:
            return None
        if saved is None:
            return RoutingResult.failure(RoutingErrorKind.EXPENSE_NOT_FOUND)

        logger.info(
            f"Expense {expense_id} {saved.approval_history[-1].action.value} by user {actor.id}; "
            f"status {saved.status.value}"
        )
        return RoutingResult.success(saved, message=result.message, auto_approved=result.auto_approved)

    def override(self, expense_id: int, admin_id: int, status: ExpenseStatus) -> RoutingResult:
        """Admin decision from the all-expenses view; pending -> terminal only."""
        if not status.is_terminal:
            return RoutingResult.failure(RoutingErrorKind.INVALID_STATE, "Override must approve or reject.")

        with self._expense_lock(expense_id):
            expense = self.expenses.get(expense_id)
            if expense is None:
                return RoutingResult.failure(RoutingErrorKind.EXPENSE_NOT_FOUND)

            admin = self.directory.get_user(admin_id)
            if admin is None or admin.role is not UserRole.ADMIN or admin.company_id != expense.company_id:
                return RoutingResult.failure(RoutingErrorKind.UNAUTHORIZED_ACTOR)
            if expense.status.is_terminal:
                return RoutingResult.failure(
                    RoutingErrorKind.INVALID_STATE, f"Expense is already {expense.status.value}."
                )

            self._audit(expense_id, admin.id, "override", status=status.value)
            try:
                saved = self.expenses.update(expense_id, {"status": status}, expected_version=expense.version)
            except ConcurrentUpdateError:
                return RoutingResult.failure(RoutingErrorKind.CONCURRENT_UPDATE)

        logger.info(f"Expense {expense_id} overridden to {status.value} by admin {admin.id}")
        return RoutingResult.success(saved, message=f"Expense {status.value}.")

    def _audit(self, expense_id: int, user_id: int, action: str, **extra: Any) -> None:
        if self.audit is not None:
            self.audit.record(expense_id, user_id, action, **extra)

    # Queries ----------------------------------------------------------------

    def pending_for(self, user_id: int) -> List[ExpenseRecord]:
        """Expenses currently waiting on ``user_id``'s decision."""
        user = self.directory.get_user(user_id)
        if user is None:
            return []
        policy = self.policies.get_policy(user.company_id)
        pending = self.expenses.query_by_status(user.company_id, ExpenseStatus.PENDING)
        employees = {employee.id: employee for employee in self.directory.get_users_by_company(user.company_id)}
        return approval_engine.pending_for_user(user, policy, pending, employees)

    def progress(self, expense: ExpenseRecord) -> Dict[str, float]:
        policy = self.policies.get_policy(expense.company_id)
        if policy is None:
            return {"current": expense.approved_count, "total": 0, "percentage": 0}
        return approval_engine.get_approval_progress(expense, policy)

    def current_approver_id(self, expense: ExpenseRecord) -> Optional[int]:
        if expense.status.is_terminal:
            return None
        policy = self.policies.get_policy(expense.company_id)
        if policy is None:
            return None
        active = approval_engine.get_active_approver(expense, policy, self.directory.get_user(expense.employee_id))
        return active.user_id if active else None


def build_workflow(config: Dict[str, Any]) -> ExpenseWorkflow:
    """Wire the workflow to the SQL stores and the exchange-rate service."""
    from claimflow.services.currency_service import ExchangeRateConverter
    from claimflow.services.stores import SqlAuditTrail, SqlDirectory, SqlExpenseStore, SqlPolicyStore

    return ExpenseWorkflow(
        directory=SqlDirectory(),
        policies=SqlPolicyStore(),
        expenses=SqlExpenseStore(),
        currency=ExchangeRateConverter(
            api_url=config["EXCHANGE_API_URL"],
            timeout=config["CURRENCY_TIMEOUT_SECONDS"],
        ),
        audit=SqlAuditTrail(),
        max_retries=config["ROUTING_MAX_RETRIES"],
        allow_specific_bypass=config["ALLOW_SPECIFIC_APPROVER_OUT_OF_SEQUENCE"],
    )


def get_workflow() -> ExpenseWorkflow:
    return current_app.extensions["claimflow.workflow"]
