"""Authentication routes."""
from __future__ import annotations

import logging
from typing import Any, Dict

from flask import current_app, request, session
from flask_login import current_user, login_required, login_user, logout_user

from claimflow import db
from claimflow.models import Company, User, UserRole
from claimflow.services import currency_service
from claimflow.utils.helpers import json_response

from . import auth_bp

logger = logging.getLogger(__name__)


def _company_currency(payload: Dict[str, Any]) -> str:
    """Explicit currency wins, then the country's currency, then the default."""
    if payload.get("currency_code"):
        return str(payload["currency_code"]).upper()

    info = currency_service.get_default_currency_for_country(
        payload["country"],
        url=current_app.config["REST_COUNTRIES_URL"],
        timeout=current_app.config["CURRENCY_TIMEOUT_SECONDS"],
    )
    if info["currency_code"]:
        return info["currency_code"]

    logger.warning(f"No currency found for country {payload['country']}; using default")
    return current_app.config.get("DEFAULT_CURRENCY", "USD")


@auth_bp.route("/signup", methods=["POST"])
def signup() -> Any:
    """Register a company together with its first admin user."""
    payload: Dict[str, Any] = request.get_json(silent=True) or {}

    required_fields = {"name", "email", "password", "company_name", "country"}
    if missing := required_fields - payload.keys():
        return json_response({"error": f"Missing required fields: {', '.join(sorted(missing))}"}, status=400)

    email = payload["email"].lower()
    if User.query.filter_by(email=email).first():
        return json_response({"error": "Email already registered."}, status=409)
    if Company.query.filter_by(name=payload["company_name"]).first():
        return json_response({"error": "Company already exists."}, status=409)

    company = Company(
        name=payload["company_name"],
        country=payload["country"],
        currency_code=_company_currency(payload),
    )
    user = User(name=payload["name"], email=email, role=UserRole.ADMIN, company=company)
    user.set_password(payload["password"])

    db.session.add_all([company, user])
    db.session.commit()
    logger.info(f"Company {company.id} created with admin {user.id} ({company.currency_code})")

    login_user(user)
    return json_response(
        {"message": "Signup successful.", "user": user.to_dict(), "company": company.to_dict()},
        status=201,
    )


@auth_bp.route("/login", methods=["POST"])
def login() -> Any:
    """Authenticate a user using email/password."""
    payload: Dict[str, Any] = request.get_json(silent=True) or {}

    email = payload.get("email", "").lower()
    password = payload.get("password")

    if not email or not password:
        return json_response({"error": "Email and password are required."}, status=400)

    user = User.query.filter_by(email=email).first()
    if not user or not user.check_password(password):
        return json_response({"error": "Invalid credentials."}, status=401)

    if not user.is_active:
        return json_response({"error": "User account is inactive."}, status=403)

    login_user(user, remember=bool(payload.get("remember", False)))
    return json_response({"message": "Login successful.", "user": user.to_dict()})


@auth_bp.route("/logout", methods=["POST"])
@login_required
def logout() -> Any:
    """Terminate the user session."""
    logout_user()
    session.clear()
    return json_response({"message": "Logged out."})


@auth_bp.route("/me", methods=["GET"])
@login_required
def me() -> Any:
    return json_response({"user": current_user.to_dict(), "company": current_user.company.to_dict()})
