"""
Currency normalization.

Amounts are stored as integer minor units. Conversions between currencies go
through a fixed rate table quoted per 1 USD and round half up.
"""
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict

from creator_ledger.core.errors import PaymentValidationError

# Units of each currency per 1 USD
EXCHANGE_RATES: Dict[str, Decimal] = {
    "USD": Decimal("1.0"),
    "EUR": Decimal("0.92"),
    "GBP": Decimal("0.79"),
    "KES": Decimal("130"),
    "NGN": Decimal("1500"),
    "ZAR": Decimal("18.5"),
    "GHS": Decimal("12"),
    "UGX": Decimal("3700"),
    "TZS": Decimal("2500"),
}

# ISO 4217 minor-unit exponents that differ from 2
_ZERO_DECIMAL_CURRENCIES = frozenset({"UGX"})

COUNTRY_CURRENCY: Dict[str, str] = {
    "US": "USD",
    "GB": "GBP",
    "DE": "EUR",
    "FR": "EUR",
    "ES": "EUR",
    "IT": "EUR",
    "NL": "EUR",
    "IE": "EUR",
    "KE": "KES",
    "NG": "NGN",
    "ZA": "ZAR",
    "GH": "GHS",
    "UG": "UGX",
    "TZ": "TZS",
}

SUPPORTED_CURRENCIES = frozenset(EXCHANGE_RATES)


def _check_currency(currency: str) -> str:
    code = currency.upper()
    if code not in EXCHANGE_RATES:
        raise PaymentValidationError(f"Unsupported currency: {currency}")
    return code


def currency_exponent(currency: str) -> int:
    """Number of minor-unit digits for ``currency``."""
    return 0 if _check_currency(currency) in _ZERO_DECIMAL_CURRENCIES else 2


def to_minor_units(amount: Decimal, currency: str) -> int:
    """
    Convert a major-unit amount to integer minor units.

    Args:
        amount: Amount in major units (e.g. Decimal("10.00") dollars)
        currency: ISO currency code

    Returns:
        int: Amount in minor units, rounded half up
    """
    factor = Decimal(10) ** currency_exponent(currency)
    return int((Decimal(amount) * factor).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount_minor: int, currency: str) -> Decimal:
    """Convert integer minor units back to a major-unit Decimal."""
    exponent = currency_exponent(currency)
    return Decimal(amount_minor).scaleb(-exponent).quantize(Decimal(10) ** -exponent)


def convert_minor(amount_minor: int, from_currency: str, to_currency: str) -> int:
    """
    Convert minor units between currencies using the rate table.

    Args:
        amount_minor: Source amount in minor units
        from_currency: Source currency code
        to_currency: Target currency code

    Returns:
        int: Target amount in minor units, rounded half up
    """
    source = _check_currency(from_currency)
    target = _check_currency(to_currency)
    if source == target:
        return amount_minor
    major = Decimal(amount_minor).scaleb(-currency_exponent(source))
    converted = major / EXCHANGE_RATES[source] * EXCHANGE_RATES[target]
    return to_minor_units(converted, target)


def normalize_to_usd(amount: Decimal, currency: str) -> Decimal:
    """Convert a major-unit amount to USD, rounded to cents."""
    code = _check_currency(currency)
    usd = Decimal(amount) / EXCHANGE_RATES[code]
    return usd.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def currency_for_country(country_code: str) -> str:
    """Default currency for a country, USD when unknown."""
    return COUNTRY_CURRENCY.get(country_code.upper(), "USD")
