"""Currency conversion and metadata helpers."""
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Dict, List, Optional

import requests

from claimflow.services.errors import ConversionUnavailable

logger = logging.getLogger(__name__)

EXCHANGE_API_URL = "https://api.exchangerate-api.com/v4/latest/{base}"
REST_COUNTRIES_URL = "https://restcountries.com/v3.1/all?fields=name,currencies"
DEFAULT_TIMEOUT = 10

# Common currencies for quick selection
COMMON_CURRENCIES: List[Dict[str, str]] = [
    {"code": "USD", "name": "US Dollar", "symbol": "$"},
    {"code": "EUR", "name": "Euro", "symbol": "€"},
    {"code": "GBP", "name": "British Pound", "symbol": "£"},
    {"code": "JPY", "name": "Japanese Yen", "symbol": "¥"},
    {"code": "INR", "name": "Indian Rupee", "symbol": "₹"},
    {"code": "AUD", "name": "Australian Dollar", "symbol": "A$"},
    {"code": "CAD", "name": "Canadian Dollar", "symbol": "C$"},
    {"code": "CHF", "name": "Swiss Franc", "symbol": "CHF"},
]


def get_default_currency_for_country(
    country_name: str, url: str = REST_COUNTRIES_URL, timeout: float = DEFAULT_TIMEOUT
) -> Dict[str, Optional[str]]:
    """Return the default currency information for a given country."""
    try:
        response = requests.get(url, timeout=timeout)
        response.raise_for_status()
        countries = response.json()
    except requests.RequestException as exc:
        logger.warning(f"Country lookup failed for {country_name}: {exc}")
        return {"currency_code": None, "currency_name": None}

    target = next(
        (
            entry
            for entry in countries
            if entry.get("name", {}).get("common", "").lower() == country_name.lower()
        ),
        None,
    )

    if not target:
        return {"currency_code": None, "currency_name": None}

    currencies = target.get("currencies") or {}
    if not currencies:
        return {"currency_code": None, "currency_name": None}

    code, details = next(iter(currencies.items()))
    return {"currency_code": code, "currency_name": details.get("name")}


def fetch_exchange_rates(
    base_currency: str, url: str = EXCHANGE_API_URL, timeout: float = DEFAULT_TIMEOUT
) -> Dict[str, float]:
    """Fetch exchange rates for the given base currency."""
    try:
        response = requests.get(url.format(base=base_currency.upper()), timeout=timeout)
        response.raise_for_status()
        payload = response.json()
    except (requests.RequestException, ValueError) as exc:
        raise ConversionUnavailable(f"Exchange rates for {base_currency} unavailable: {exc}") from exc

    return payload.get("rates", {})


def convert_currency(
    amount: Decimal | float,
    source_currency: str,
    target_currency: str,
    url: str = EXCHANGE_API_URL,
    timeout: float = DEFAULT_TIMEOUT,
) -> Decimal:
    """Convert an amount between currencies using the exchangerate-api service."""
    if source_currency.upper() == target_currency.upper():
        return Decimal(str(amount))

    rates = fetch_exchange_rates(source_currency, url=url, timeout=timeout)
    rate = rates.get(target_currency.upper())
    if not rate:
        raise ConversionUnavailable(f"No exchange rate found for {source_currency} -> {target_currency}")

    converted = Decimal(str(rate)) * Decimal(str(amount))
    return converted.quantize(Decimal("0.01"))


class ExchangeRateConverter:
    """Currency collaborator handed to the expense workflow."""

    def __init__(self, api_url: str = EXCHANGE_API_URL, timeout: float = DEFAULT_TIMEOUT):
        self.api_url = api_url
        self.timeout = timeout

    def convert(self, amount: Decimal, source_currency: str, target_currency: str) -> Decimal:
        return convert_currency(amount, source_currency, target_currency, url=self.api_url, timeout=self.timeout)
