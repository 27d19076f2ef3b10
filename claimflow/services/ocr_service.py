"""Receipt OCR and field extraction."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional, Tuple

import pytesseract
from PIL import Image

from claimflow.models.expense import ExpenseCategory
from claimflow.services.records import ExpenseLineRecord

logger = logging.getLogger(__name__)

AMOUNT_PATTERNS = [
    re.compile(r"\btotal[:\s]*\$?(\d+\.?\d*)", re.IGNORECASE),
    re.compile(r"\bamount[:\s]*\$?(\d+\.?\d*)", re.IGNORECASE),
    re.compile(r"\$(\d+\.?\d*)"),
    re.compile(r"(\d+\.\d{2})"),
]

LINE_ITEM_PATTERN = re.compile(r"^(?P<description>[A-Za-z][A-Za-z &'/-]*?)\s*[:\s]\s*\$?(?P<amount>\d+\.\d{2})$")

NOISE_WORDS = ("total", "subtotal", "tax", "amount", "change", "cash", "card", "date", "tip", "balance")

MONTHS = ("jan", "feb", "mar", "apr", "may", "jun", "jul", "aug", "sep", "oct", "nov", "dec")

CATEGORY_KEYWORDS: Tuple[Tuple[ExpenseCategory, Tuple[str, ...]], ...] = (
    (ExpenseCategory.MEALS, ("restaurant", "cafe", "food", "dining")),
    (ExpenseCategory.ACCOMMODATION, ("hotel", "inn", "resort", "lodging")),
    (ExpenseCategory.TRAVEL, ("uber", "lyft", "taxi", "airline", "flight")),
    (ExpenseCategory.SUPPLIES, ("office", "supplies", "stationery")),
)


@dataclass(frozen=True)
class OcrResult:
    raw_text: str
    amount: Optional[Decimal] = None
    date: Optional[date] = None
    merchant_name: Optional[str] = None
    category: Optional[ExpenseCategory] = None
    description: Optional[str] = None
    lines: Tuple[ExpenseLineRecord, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "amount": float(self.amount) if self.amount is not None else None,
            "date": self.date.isoformat() if self.date else None,
            "merchant_name": self.merchant_name,
            "category": self.category.value if self.category else None,
            "description": self.description,
            "lines": [line.to_dict() for line in self.lines],
            "raw_text": self.raw_text,
        }


def extract_amount(text: str) -> Optional[Decimal]:
    """Pull the most likely total out of receipt text."""
    for pattern in AMOUNT_PATTERNS:
        match = pattern.search(text)
        if not match:
            continue
        try:
            amount = Decimal(match.group(1))
        except InvalidOperation:
            continue
        if amount > 0:
            return amount
    return None


def _parse_year(raw: str) -> int:
    year = int(raw)
    return year + 2000 if year < 100 else year


def extract_date(text: str) -> Optional[date]:
    """Find the first parseable date: Y-M-D, M/D/Y or 'Mon DD, YYYY'."""
    match = re.search(r"(\d{4})[/-](\d{1,2})[/-](\d{1,2})", text)
    if match:
        year, month, day = match.groups()
        try:
            return date(int(year), int(month), int(day))
        except ValueError:
            pass

    match = re.search(r"(\d{1,2})[/-](\d{1,2})[/-](\d{2,4})", text)
    if match:
        month, day, year = match.groups()
        try:
            return date(_parse_year(year), int(month), int(day))
        except ValueError:
            pass

    match = re.search(r"(jan|feb|mar|apr|may|jun|jul|aug|sep|oct|nov|dec)[a-z]*\s+(\d{1,2})[,\s]+(\d{4})", text, re.IGNORECASE)
    if match:
        month_name, day, year = match.groups()
        try:
            return date(int(year), MONTHS.index(month_name.lower()) + 1, int(day))
        except ValueError:
            pass

    return None


def detect_category(text: str) -> ExpenseCategory:
    """Guess an expense category from merchant name or receipt text."""
    lower_text = text.lower()
    for category, keywords in CATEGORY_KEYWORDS:
        if any(keyword in lower_text for keyword in keywords):
            return category
    return ExpenseCategory.OTHER


def extract_merchant(text: str) -> Optional[str]:
    """Receipts print the merchant on the first meaningful line."""
    for line in text.splitlines():
        cleaned = re.sub(r"\s+", " ", line).strip()
        if len(cleaned) < 3 or not re.search(r"[A-Za-z]", cleaned):
            continue
        if any(cleaned.lower().startswith(word) for word in NOISE_WORDS):
            continue
        return cleaned.title() if cleaned.isupper() else cleaned
    return None


def extract_lines(text: str, category: ExpenseCategory = ExpenseCategory.OTHER) -> Tuple[ExpenseLineRecord, ...]:
    lines = []
    for raw_line in text.splitlines():
        match = LINE_ITEM_PATTERN.match(raw_line.strip())
        if not match:
            continue
        description = match.group("description").strip()
        if description.lower().startswith(NOISE_WORDS):
            continue
        lines.append(ExpenseLineRecord(description=description, amount=Decimal(match.group("amount")), category=category))
    return tuple(lines)


def parse_receipt_text(text: str) -> OcrResult:
    """Build a typed OCR result from raw receipt text."""
    merchant = extract_merchant(text)
    category = detect_category(text)
    return OcrResult(
        raw_text=text,
        amount=extract_amount(text),
        date=extract_date(text),
        merchant_name=merchant,
        category=category,
        description=f"Receipt from {merchant}" if merchant else None,
        lines=extract_lines(text, category),
    )


def extract_expense_data(file_path: str, tesseract_cmd: Optional[str] = None) -> OcrResult:
    """Run Tesseract over a receipt image and extract expense fields."""
    if tesseract_cmd:
        pytesseract.pytesseract.tesseract_cmd = tesseract_cmd

    with Image.open(file_path) as image:
        text = pytesseract.image_to_string(image.convert("RGB"), config="--oem 3 --psm 6 -l eng")

    logger.info(f"OCR extracted {len(text)} characters from {file_path}")
    return parse_receipt_text(text)
