"""Approval-related models."""
from __future__ import annotations

import enum

from claimflow import db
from claimflow.utils.clock import utcnow


class ApprovalAction(enum.Enum):
    APPROVED = "approved"
    REJECTED = "rejected"


class ApprovalRuleType(enum.Enum):
    PERCENTAGE = "percentage"
    SPECIFIC = "specific"
    HYBRID = "hybrid"


class ExpenseApproval(db.Model):
    """One entry of an expense's append-only approval history."""

    __tablename__ = "expense_approvals"

    id = db.Column(db.Integer, primary_key=True)
    expense_id = db.Column(db.Integer, db.ForeignKey("expenses.id"), nullable=False, index=True)
    approver_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    approver_name = db.Column(db.String(120), nullable=False)
    action = db.Column(db.Enum(ApprovalAction, name="approval_action"), nullable=False)
    comment = db.Column(db.Text, nullable=True)
    acted_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    expense = db.relationship("Expense", back_populates="history")
    approver = db.relationship("User", lazy="joined")

    @classmethod
    def from_record(cls, entry) -> "ExpenseApproval":
        return cls(
            approver_user_id=entry.approver_id,
            approver_name=entry.approver_name,
            action=entry.action,
            comment=entry.comment,
            acted_at=entry.timestamp,
        )

    def to_record(self):
        from claimflow.services.records import HistoryEntry

        return HistoryEntry(
            approver_id=self.approver_user_id,
            approver_name=self.approver_name,
            action=self.action,
            comment=self.comment,
            timestamp=self.acted_at,
        )

    def __repr__(self) -> str:
        return (
            f"<ExpenseApproval expense_id={self.expense_id} "
            f"action={self.action.value if self.action else None}>"
        )


class ApprovalRule(db.Model):
    """A company's approval policy. One per company by convention."""

    __tablename__ = "approval_rules"

    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(db.Integer, db.ForeignKey("companies.id"), nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False, default="Default Approval Rule")
    is_manager_approver = db.Column(db.Boolean, nullable=False, default=False)
    conditional_type = db.Column(db.Enum(ApprovalRuleType, name="approval_rule_type"), nullable=True)
    percentage_threshold = db.Column(db.Numeric(5, 2), nullable=True)
    specific_approver_ids = db.Column(db.JSON, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    company = db.relationship("Company", back_populates="approval_rules", lazy="joined")
    steps = db.relationship(
        "ApprovalStep",
        back_populates="rule",
        order_by="ApprovalStep.order",
        lazy="selectin",
        cascade="all, delete-orphan",
    )

    def to_record(self):
        from claimflow.services.records import ConditionalRule, PolicyRecord

        conditional_rule = None
        if self.conditional_type is not None:
            conditional_rule = ConditionalRule(
                type=self.conditional_type,
                percentage_threshold=float(self.percentage_threshold)
                if self.percentage_threshold is not None
                else None,
                specific_approver_ids=frozenset(self.specific_approver_ids or ()),
            )
        return PolicyRecord(
            id=self.id,
            company_id=self.company_id,
            name=self.name,
            is_manager_approver=self.is_manager_approver,
            approvers=tuple(step.to_record() for step in self.steps),
            conditional_rule=conditional_rule,
        )

    def __repr__(self) -> str:
        return f"<ApprovalRule id={self.id} company_id={self.company_id} steps={len(self.steps)}>"


class ApprovalStep(db.Model):
    __tablename__ = "approval_steps"

    id = db.Column(db.Integer, primary_key=True)
    rule_id = db.Column(db.Integer, db.ForeignKey("approval_rules.id"), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    user_name = db.Column(db.String(120), nullable=False)
    order = db.Column("step_order", db.Integer, nullable=False)

    rule = db.relationship("ApprovalRule", back_populates="steps")

    def to_record(self):
        from claimflow.services.records import ApprovalStepRecord

        return ApprovalStepRecord(user_id=self.user_id, user_name=self.user_name, order=self.order)

    def __repr__(self) -> str:
        return f"<ApprovalStep rule_id={self.rule_id} order={self.order} user_id={self.user_id}>"
