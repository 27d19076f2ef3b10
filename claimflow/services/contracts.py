"""Collaborator contracts consumed by the expense workflow."""
from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, List, Optional, Protocol

from claimflow.models.expense import ExpenseStatus
from claimflow.services.records import CompanyRecord, ExpenseRecord, PolicyRecord, UserRecord


class Directory(Protocol):
    def get_user(self, user_id: int) -> Optional[UserRecord]: ...

    def get_users_by_company(self, company_id: int) -> List[UserRecord]: ...

    def get_users_by_manager(self, manager_id: int) -> List[UserRecord]: ...

    def get_company(self, company_id: int) -> Optional[CompanyRecord]: ...


class PolicyStore(Protocol):
    def get_policy(self, company_id: int) -> Optional[PolicyRecord]: ...

    def save_policy(self, policy: PolicyRecord) -> PolicyRecord: ...


class ExpenseStore(Protocol):
    def create(self, expense: ExpenseRecord) -> ExpenseRecord: ...

    def get(self, expense_id: int) -> Optional[ExpenseRecord]: ...

    def update(
        self,
        expense_id: int,
        changes: Dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> Optional[ExpenseRecord]:
        """Apply ``changes``, stamp ``updated_at`` and bump ``version``.

        Raises ``ConcurrentUpdateError`` when ``expected_version`` no longer
        matches the stored row. ``approval_history`` may only be extended.
        Staged audit rows are committed with the update, or discarded when it
        is refused.
        """
        ...

    def query_by_company(self, company_id: int) -> List[ExpenseRecord]: ...

    def query_by_employee(self, employee_id: int) -> List[ExpenseRecord]: ...

    def query_by_status(self, company_id: int, status: ExpenseStatus) -> List[ExpenseRecord]: ...


class CurrencyConverter(Protocol):
    def convert(self, amount: Decimal, source_currency: str, target_currency: str) -> Decimal: ...


class AuditTrail(Protocol):
    def record(self, expense_id: int, user_id: int, action: str, **extra: Any) -> None:
        """Stage an audit row; it lands with the next ``ExpenseStore.update``."""
        ...
