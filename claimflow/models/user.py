"""User model and roles."""
from __future__ import annotations

import enum

from flask_login import UserMixin
from werkzeug.security import check_password_hash, generate_password_hash

from claimflow import db
from claimflow.utils.clock import utcnow


class UserRole(enum.Enum):
    ADMIN = "admin"
    MANAGER = "manager"
    EMPLOYEE = "employee"


class User(UserMixin, db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(255), nullable=False)
    role = db.Column(db.Enum(UserRole, name="user_role"), nullable=False, default=UserRole.EMPLOYEE)
    company_id = db.Column(db.Integer, db.ForeignKey("companies.id"), nullable=False, index=True)
    # Direct manager only; routing never walks further up the chain.
    manager_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    company = db.relationship("Company", back_populates="users", lazy="joined")
    manager = db.relationship(
        "User",
        remote_side=[id],
        back_populates="direct_reports",
        lazy="joined",
    )
    direct_reports = db.relationship("User", back_populates="manager", lazy="selectin")
    submitted_expenses = db.relationship(
        "Expense",
        foreign_keys="Expense.employee_id",
        back_populates="employee",
        lazy="selectin",
    )

    def set_password(self, password: str) -> None:
        self.password_hash = generate_password_hash(password)

    def check_password(self, password: str) -> bool:
        return check_password_hash(self.password_hash, password)

    def get_id(self) -> str:
        return str(self.id)

    def to_record(self):
        from claimflow.services.records import UserRecord

        return UserRecord(
            id=self.id,
            name=self.name,
            email=self.email,
            role=self.role,
            company_id=self.company_id,
            manager_id=self.manager_id,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "role": self.role.value,
            "company_id": self.company_id,
            "manager_id": self.manager_id,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self) -> str:
        return f"<User {self.email} role={self.role.value if self.role else None}>"
