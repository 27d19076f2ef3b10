"""
Pytest fixtures for ClaimFlow tests
"""
from __future__ import annotations

import itertools
from dataclasses import replace
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional

import pytest

from claimflow.models.approval import ApprovalRuleType
from claimflow.models.expense import ExpenseStatus
from claimflow.models.user import UserRole
from claimflow.services.errors import ConcurrentUpdateError, ConversionUnavailable
from claimflow.services.expense_workflow import ExpenseWorkflow
from claimflow.services.records import (
    ApprovalStepRecord,
    CompanyRecord,
    ConditionalRule,
    ExpenseRecord,
    PolicyRecord,
    UserRecord,
)
from claimflow.utils.clock import utcnow

COMPANY_ID = 1
ADMIN_ID = 1
MANAGER_ID = 2
APPROVER_A = 3
APPROVER_B = 4
APPROVER_C = 5
APPROVER_D = 6
APPROVER_E = 7
EMPLOYEE_ID = 10
ORPHAN_ID = 11
OUTSIDER_ID = 99


# =============================================================================
# In-memory collaborators
# =============================================================================


class FakeDirectory:
    def __init__(self, users: List[UserRecord], companies: List[CompanyRecord]):
        self.users = {user.id: user for user in users}
        self.companies = {company.id: company for company in companies}

    def get_user(self, user_id: int) -> Optional[UserRecord]:
        return self.users.get(user_id)

    def get_users_by_company(self, company_id: int) -> List[UserRecord]:
        return [user for user in self.users.values() if user.company_id == company_id]

    def get_users_by_manager(self, manager_id: int) -> List[UserRecord]:
        return [user for user in self.users.values() if user.manager_id == manager_id]

    def get_company(self, company_id: int) -> Optional[CompanyRecord]:
        return self.companies.get(company_id)


class FakePolicyStore:
    def __init__(self):
        self.policies: Dict[int, PolicyRecord] = {}

    def get_policy(self, company_id: int) -> Optional[PolicyRecord]:
        return self.policies.get(company_id)

    def save_policy(self, policy: PolicyRecord) -> PolicyRecord:
        saved = replace(policy, id=policy.id or len(self.policies) + 1)
        self.policies[policy.company_id] = saved
        return saved


class FakeExpenseStore:
    """Dictionary-backed store with the same CAS and append-only rules as the SQL one."""

    def __init__(self, audit: Optional["FakeAuditTrail"] = None):
        self.rows: Dict[int, ExpenseRecord] = {}
        self._ids = itertools.count(1)
        self.update_calls = 0
        self.audit = audit

    def create(self, expense: ExpenseRecord) -> ExpenseRecord:
        now = utcnow()
        created = replace(expense, id=next(self._ids), version=1, created_at=now, updated_at=now)
        self.rows[created.id] = created
        return created

    def get(self, expense_id: int) -> Optional[ExpenseRecord]:
        return self.rows.get(expense_id)

    def update(
        self,
        expense_id: int,
        changes: Dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> Optional[ExpenseRecord]:
        self.update_calls += 1
        row = self.rows.get(expense_id)
        if row is None:
            self._rollback()
            return None
        if expected_version is not None and row.version != expected_version:
            self._rollback()
            raise ConcurrentUpdateError(f"version {row.version} != {expected_version}")
        history = changes.get("approval_history")
        if history is not None and tuple(history[: len(row.approval_history)]) != row.approval_history:
            self._rollback()
            raise ValueError("Approval history is append-only.")

        updated = replace(row, **changes, version=row.version + 1, updated_at=utcnow())
        self.rows[expense_id] = updated
        if self.audit is not None:
            self.audit.commit()
        return updated

    def _rollback(self) -> None:
        if self.audit is not None:
            self.audit.staged.clear()

    def query_by_company(self, company_id: int) -> List[ExpenseRecord]:
        return [row for row in reversed(list(self.rows.values())) if row.company_id == company_id]

    def query_by_employee(self, employee_id: int) -> List[ExpenseRecord]:
        return [row for row in reversed(list(self.rows.values())) if row.employee_id == employee_id]

    def query_by_status(self, company_id: int, status: ExpenseStatus) -> List[ExpenseRecord]:
        return [row for row in self.query_by_company(company_id) if row.status is status]


class RacingExpenseStore(FakeExpenseStore):
    """Bumps the stored version behind the caller's back for the first ``races`` writes."""

    def __init__(self, races: int, audit: Optional["FakeAuditTrail"] = None):
        super().__init__(audit)
        self.races = races

    def update(self, expense_id, changes, expected_version=None):
        if self.races > 0:
            self.races -= 1
            row = self.rows[expense_id]
            self.rows[expense_id] = replace(row, version=row.version + 1)
        return super().update(expense_id, changes, expected_version=expected_version)


class FakeCurrency:
    def __init__(self, rates: Optional[Dict[str, Decimal]] = None, available: bool = True):
        self.rates = rates or {}
        self.available = available
        self.calls: List[tuple] = []

    def convert(self, amount: Decimal, source_currency: str, target_currency: str) -> Decimal:
        self.calls.append((amount, source_currency, target_currency))
        if not self.available:
            raise ConversionUnavailable("exchange service offline")
        rate = self.rates[f"{source_currency}->{target_currency}"]
        return (amount * rate).quantize(Decimal("0.01"))


class FakeAuditTrail:
    """Rows are staged until the paired expense store commits them."""

    def __init__(self):
        self.entries: List[Dict[str, Any]] = []
        self.staged: List[Dict[str, Any]] = []

    def record(self, expense_id: int, user_id: int, action: str, **extra: Any) -> None:
        self.staged.append({"expense_id": expense_id, "user_id": user_id, "action": action, **extra})

    def commit(self) -> None:
        self.entries.extend(self.staged)
        self.staged.clear()


# =============================================================================
# Record builders
# =============================================================================


def make_user(user_id: int, role: UserRole = UserRole.MANAGER, manager_id: Optional[int] = None,
              company_id: int = COMPANY_ID) -> UserRecord:
    return UserRecord(
        id=user_id,
        name=f"User {user_id}",
        email=f"user{user_id}@example.com",
        role=role,
        company_id=company_id,
        manager_id=manager_id,
    )


def make_policy(
    approver_ids=(),
    is_manager_approver: bool = False,
    rule_type: Optional[ApprovalRuleType] = None,
    threshold: Optional[float] = None,
    specific_ids=(),
    company_id: int = COMPANY_ID,
) -> PolicyRecord:
    conditional_rule = None
    if rule_type is not None:
        conditional_rule = ConditionalRule(
            type=rule_type,
            percentage_threshold=threshold,
            specific_approver_ids=frozenset(specific_ids),
        )
    return PolicyRecord(
        id=1,
        company_id=company_id,
        is_manager_approver=is_manager_approver,
        approvers=tuple(
            ApprovalStepRecord(user_id=user_id, user_name=f"User {user_id}", order=index)
            for index, user_id in enumerate(approver_ids)
        ),
        conditional_rule=conditional_rule,
    )


def make_expense(employee_id: int = EMPLOYEE_ID, **overrides: Any) -> ExpenseRecord:
    values = dict(
        id=1,
        employee_id=employee_id,
        employee_name=f"User {employee_id}",
        company_id=COMPANY_ID,
        amount=Decimal("100.00"),
        currency="USD",
        amount_in_company_currency=Decimal("100.00"),
        date_spent=date(2024, 3, 1),
    )
    values.update(overrides)
    return ExpenseRecord(**values)


# =============================================================================
# Workflow fixtures
# =============================================================================


@pytest.fixture
def users() -> List[UserRecord]:
    return [
        make_user(ADMIN_ID, UserRole.ADMIN),
        make_user(MANAGER_ID, UserRole.MANAGER),
        make_user(APPROVER_A),
        make_user(APPROVER_B),
        make_user(APPROVER_C),
        make_user(APPROVER_D),
        make_user(APPROVER_E),
        make_user(EMPLOYEE_ID, UserRole.EMPLOYEE, manager_id=MANAGER_ID),
        make_user(ORPHAN_ID, UserRole.EMPLOYEE),
        make_user(OUTSIDER_ID, UserRole.ADMIN, company_id=2),
    ]


@pytest.fixture
def directory(users) -> FakeDirectory:
    return FakeDirectory(
        users,
        [
            CompanyRecord(id=COMPANY_ID, name="Acme", country="United States", currency_code="USD"),
            CompanyRecord(id=2, name="Globex", country="Germany", currency_code="EUR"),
        ],
    )


@pytest.fixture
def policy_store() -> FakePolicyStore:
    return FakePolicyStore()


@pytest.fixture
def audit() -> FakeAuditTrail:
    return FakeAuditTrail()


@pytest.fixture
def expense_store(audit) -> FakeExpenseStore:
    return FakeExpenseStore(audit)


@pytest.fixture
def currency() -> FakeCurrency:
    return FakeCurrency(rates={"EUR->USD": Decimal("1.10"), "INR->USD": Decimal("0.012")})


@pytest.fixture
def workflow(directory, policy_store, expense_store, currency, audit) -> ExpenseWorkflow:
    return ExpenseWorkflow(
        directory=directory,
        policies=policy_store,
        expenses=expense_store,
        currency=currency,
        audit=audit,
        max_retries=3,
    )


# =============================================================================
# Flask application fixtures
# =============================================================================


@pytest.fixture
def app():
    from claimflow import create_app, db

    app = create_app("testing")
    with app.app_context():
        db.create_all()
        app.extensions["claimflow.workflow"].currency = FakeCurrency(rates={"EUR->USD": Decimal("1.10")})
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def seeded(app) -> Dict[str, int]:
    """A company with an admin, a manager, two chain approvers and an employee."""
    from claimflow import db
    from claimflow.models import Company, User

    company = Company(name="Acme", country="United States", currency_code="USD")
    db.session.add(company)
    db.session.flush()

    def add(name: str, role: UserRole, manager: Optional[User] = None) -> User:
        user = User(
            name=name,
            email=f"{name.lower()}@acme.test",
            role=role,
            company_id=company.id,
            manager_id=manager.id if manager else None,
        )
        user.set_password("secret")
        db.session.add(user)
        db.session.flush()
        return user

    admin = add("Admin", UserRole.ADMIN)
    manager = add("Manager", UserRole.MANAGER)
    approver_a = add("Alice", UserRole.MANAGER)
    approver_b = add("Bob", UserRole.MANAGER)
    employee = add("Erin", UserRole.EMPLOYEE, manager=manager)
    db.session.commit()

    return {
        "company": company.id,
        "admin": admin.id,
        "manager": manager.id,
        "approver_a": approver_a.id,
        "approver_b": approver_b.id,
        "employee": employee.id,
    }


@pytest.fixture
def login(client):
    def _login(name: str):
        response = client.post("/auth/login", json={"email": f"{name.lower()}@acme.test", "password": "secret"})
        assert response.status_code == 200, response.get_json()
        return response

    return _login
