"""Expense model definitions."""
from __future__ import annotations

import enum

from claimflow import db
from claimflow.utils.clock import utcnow


class ExpenseStatus(enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self is not ExpenseStatus.PENDING


class ExpenseCategory(enum.Enum):
    TRAVEL = "travel"
    MEALS = "meals"
    ACCOMMODATION = "accommodation"
    SUPPLIES = "supplies"
    ENTERTAINMENT = "entertainment"
    OTHER = "other"


class Expense(db.Model):
    __tablename__ = "expenses"

    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(db.Integer, db.ForeignKey("companies.id"), nullable=False, index=True)
    employee_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    currency = db.Column(db.String(10), nullable=False)
    amount_in_company_currency = db.Column(db.Numeric(12, 2), nullable=False)
    category = db.Column(
        db.Enum(ExpenseCategory, name="expense_category"), nullable=False, default=ExpenseCategory.OTHER
    )
    description = db.Column(db.Text, nullable=True)
    date_spent = db.Column(db.Date, nullable=False)
    merchant_name = db.Column(db.String(255), nullable=True)
    receipt_path = db.Column(db.String(255), nullable=True)
    status = db.Column(
        db.Enum(ExpenseStatus, name="expense_status"), nullable=False, default=ExpenseStatus.PENDING, index=True
    )
    current_approver_index = db.Column(db.Integer, nullable=False, default=0)
    manager_approved = db.Column(db.Boolean, nullable=False, default=False)
    version = db.Column(db.Integer, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    company = db.relationship("Company", back_populates="expenses", lazy="joined")
    employee = db.relationship("User", back_populates="submitted_expenses", lazy="joined")
    history = db.relationship(
        "ExpenseApproval",
        back_populates="expense",
        order_by="ExpenseApproval.id",
        lazy="selectin",
        cascade="all, delete-orphan",
    )
    lines = db.relationship(
        "ExpenseLine",
        back_populates="expense",
        order_by="ExpenseLine.id",
        lazy="selectin",
        cascade="all, delete-orphan",
    )

    def to_record(self):
        from claimflow.services.records import ExpenseRecord

        return ExpenseRecord(
            id=self.id,
            employee_id=self.employee_id,
            employee_name=self.employee.name if self.employee else "",
            company_id=self.company_id,
            amount=self.amount,
            currency=self.currency,
            amount_in_company_currency=self.amount_in_company_currency,
            category=self.category,
            description=self.description,
            date_spent=self.date_spent,
            merchant_name=self.merchant_name,
            receipt_path=self.receipt_path,
            lines=tuple(line.to_record() for line in self.lines),
            status=self.status,
            current_approver_index=self.current_approver_index,
            manager_approved=self.manager_approved,
            approval_history=tuple(entry.to_record() for entry in self.history),
            version=self.version,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )

    def __repr__(self) -> str:
        return f"<Expense id={self.id} status={self.status.value if self.status else None}>"


class ExpenseLine(db.Model):
    """Itemised line captured from a scanned receipt."""

    __tablename__ = "expense_lines"

    id = db.Column(db.Integer, primary_key=True)
    expense_id = db.Column(db.Integer, db.ForeignKey("expenses.id"), nullable=False, index=True)
    description = db.Column(db.String(255), nullable=False)
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    category = db.Column(
        db.Enum(ExpenseCategory, name="expense_category"), nullable=False, default=ExpenseCategory.OTHER
    )

    expense = db.relationship("Expense", back_populates="lines")

    def to_record(self):
        from claimflow.services.records import ExpenseLineRecord

        return ExpenseLineRecord(description=self.description, amount=self.amount, category=self.category)
