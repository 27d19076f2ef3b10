"""Employee-facing routes."""
from __future__ import annotations

import os
import tempfile
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List

from flask import current_app, request
from flask_login import current_user, login_required

from claimflow.models import ExpenseCategory, UserRole
from claimflow.services import currency_service, ocr_service
from claimflow.services.errors import ConversionUnavailable, SubmissionError
from claimflow.services.expense_workflow import get_workflow
from claimflow.services.records import ExpenseLineRecord, ExpenseRecord
from claimflow.utils.helpers import json_response, role_required

from . import employee_bp


def _expense_view(expense: ExpenseRecord) -> Dict[str, Any]:
    workflow = get_workflow()
    return dict(
        expense.to_dict(),
        progress=workflow.progress(expense),
        current_approver_id=workflow.current_approver_id(expense),
    )


def _parse_category(raw: Any) -> ExpenseCategory:
    try:
        return ExpenseCategory(str(raw or "other").lower())
    except ValueError:
        raise SubmissionError(f"Unknown category '{raw}'.") from None


def _parse_lines(raw_lines: Any) -> List[ExpenseLineRecord]:
    if not raw_lines:
        return []
    if not isinstance(raw_lines, list):
        raise SubmissionError("'lines' must be a list.")
    lines = []
    for raw in raw_lines:
        try:
            lines.append(
                ExpenseLineRecord(
                    description=str(raw["description"]),
                    amount=Decimal(str(raw["amount"])),
                    category=_parse_category(raw.get("category")),
                )
            )
        except (AttributeError, KeyError, TypeError, InvalidOperation):
            raise SubmissionError("Each line needs a description and a numeric amount.") from None
    return lines


@employee_bp.route("/expenses", methods=["GET"])
@login_required
@role_required(UserRole.EMPLOYEE, UserRole.MANAGER)
def list_expenses() -> Any:
    """List expenses submitted by the current user, newest first."""
    expenses = get_workflow().expenses.query_by_employee(current_user.id)
    return json_response({"expenses": [_expense_view(expense) for expense in expenses]})


@employee_bp.route("/expenses", methods=["POST"])
@login_required
@role_required(UserRole.EMPLOYEE, UserRole.MANAGER)
def submit_expense() -> Any:
    """Submit a new expense claim."""
    payload: Dict[str, Any] = request.get_json(silent=True) or {}

    required_fields = {"amount", "currency", "date_spent"}
    if missing := required_fields - payload.keys():
        return json_response({"error": f"Missing fields: {', '.join(sorted(missing))}"}, status=400)

    try:
        amount = Decimal(str(payload["amount"]))
    except (InvalidOperation, TypeError):
        return json_response({"error": "Invalid amount."}, status=400)
    if not amount.is_finite():
        return json_response({"error": "Invalid amount."}, status=400)

    try:
        spent_date = date.fromisoformat(payload["date_spent"])
    except (TypeError, ValueError):
        return json_response({"error": "Invalid 'date_spent' format. Use YYYY-MM-DD."}, status=400)

    try:
        expense = get_workflow().submit(
            employee_id=current_user.id,
            amount=amount,
            currency=str(payload["currency"]),
            date_spent=spent_date,
            category=_parse_category(payload.get("category")),
            description=payload.get("description"),
            merchant_name=payload.get("merchant_name"),
            receipt_path=payload.get("receipt_path"),
            lines=_parse_lines(payload.get("lines")),
        )
    except SubmissionError as exc:
        return json_response({"error": str(exc)}, status=400)

    return json_response({"message": "Expense submitted.", "expense": _expense_view(expense)}, status=201)


@employee_bp.route("/expenses/<int:expense_id>", methods=["GET"])
@login_required
@role_required(UserRole.EMPLOYEE, UserRole.MANAGER)
def expense_detail(expense_id: int) -> Any:
    """View one of the current user's expenses with its approval history."""
    expense = get_workflow().expenses.get(expense_id)
    if expense is None or expense.employee_id != current_user.id:
        return json_response({"error": "Expense not found."}, status=404)
    return json_response({"expense": _expense_view(expense)})


@employee_bp.route("/ocr", methods=["POST"])
@login_required
@role_required(UserRole.EMPLOYEE, UserRole.MANAGER)
def scan_receipt() -> Any:
    """Extract expense fields from an uploaded receipt image or its raw text."""
    upload = request.files.get("receipt")
    if upload is not None:
        suffix = os.path.splitext(upload.filename or "")[1] or ".png"
        with tempfile.NamedTemporaryFile(suffix=suffix, delete=False) as handle:
            upload.save(handle)
            path = handle.name
        try:
            result = ocr_service.extract_expense_data(path, tesseract_cmd=current_app.config.get("TESSERACT_CMD"))
        finally:
            os.remove(path)
        return json_response({"result": result.to_dict()})

    text = (request.get_json(silent=True) or {}).get("text")
    if not text:
        return json_response({"error": "Provide a 'receipt' file or receipt 'text'."}, status=400)
    return json_response({"result": ocr_service.parse_receipt_text(text).to_dict()})


@employee_bp.route("/currencies", methods=["GET"])
@login_required
def currencies() -> Any:
    return json_response(
        {
            "company_currency": current_user.company.currency_code,
            "currencies": currency_service.COMMON_CURRENCIES,
        }
    )


@employee_bp.route("/convert", methods=["GET"])
@login_required
def convert() -> Any:
    """Preview a conversion into the company currency."""
    try:
        amount = Decimal(request.args.get("amount", ""))
    except InvalidOperation:
        return json_response({"error": "Invalid amount."}, status=400)
    if not amount.is_finite():
        return json_response({"error": "Invalid amount."}, status=400)
    source = request.args.get("from", "").upper()
    target = request.args.get("to", current_user.company.currency_code).upper()
    if not source:
        return json_response({"error": "'from' currency is required."}, status=400)

    try:
        converted = get_workflow().currency.convert(amount, source, target)
    except ConversionUnavailable as exc:
        return json_response({"error": str(exc)}, status=503)
    return json_response({"amount": float(amount), "from": source, "to": target, "converted": float(converted)})
