"""Application data models exposed for easy imports."""
from claimflow import db  # noqa: F401
from .company import Company  # noqa: F401
from .user import User, UserRole  # noqa: F401
from .expense import Expense, ExpenseCategory, ExpenseLine, ExpenseStatus  # noqa: F401
from .approval import (
    ApprovalAction,
    ApprovalRule,
    ApprovalRuleType,
    ApprovalStep,
    ExpenseApproval,
)  # noqa: F401
from .audit import AuditLog  # noqa: F401

__all__ = [
    "db",
    "Company",
    "User",
    "UserRole",
    "Expense",
    "ExpenseCategory",
    "ExpenseLine",
    "ExpenseStatus",
    "ExpenseApproval",
    "ApprovalAction",
    "ApprovalRule",
    "ApprovalRuleType",
    "ApprovalStep",
    "AuditLog",
]
