"""
Money helpers - conversion between provider major units and ledger minor units.

The ledger always stores integer minor units (cents). Providers that speak
decimal major units (Braintree, Authorize.net, PayPal) convert at the adapter
boundary with these helpers, never with float arithmetic.
"""
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation

from app.core.exceptions import ValidationException

# ISO 4217 currencies without a minor unit
ZERO_DECIMAL_CURRENCIES = frozenset({
    "BIF", "CLP", "DJF", "GNF", "ISK", "JPY", "KMF", "KRW", "PYG",
    "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF",
})

# Currencies with three decimal places
THREE_DECIMAL_CURRENCIES = frozenset({"BHD", "JOD", "KWD", "OMR", "TND"})


def currency_exponent(currency: str) -> int:
    code = (currency or "").upper()
    if code in ZERO_DECIMAL_CURRENCIES:
        return 0
    if code in THREE_DECIMAL_CURRENCIES:
        return 3
    return 2


def normalize_currency(currency: str | None, default: str = "USD") -> str:
    """Upper-case ISO code, defaulting when the provider omits it"""
    return (currency or default).strip().upper()


def to_minor_units(amount: Decimal | str | int | float, currency: str) -> int:
    """
    Convert a major-unit amount ("19.99", Decimal("19.99")) to integer minor units.

    Floats are routed through str() so that 19.99 does not become 1998.
    """
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError) as e:
        raise ValidationException(f"Invalid amount: {amount!r}", field="amount") from e
    scaled = value.scaleb(currency_exponent(currency))
    return int(scaled.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def to_major_units(amount_minor: int, currency: str) -> Decimal:
    """Convert integer minor units to a Decimal in major units"""
    exponent = currency_exponent(currency)
    return Decimal(int(amount_minor)).scaleb(-exponent).quantize(Decimal(1).scaleb(-exponent))


def format_major(amount_minor: int, currency: str) -> str:
    """Major-unit string as providers expect it: 1999 USD -> "19.99", 500 JPY -> "500" """
    return str(to_major_units(amount_minor, currency))


def validate_amount(amount: int | None, *, allow_none: bool = False) -> None:
    if amount is None:
        if allow_none:
            return
        raise ValidationException("Amount is required", field="amount")
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValidationException("Amount must be an integer number of minor units", field="amount")
    if amount <= 0:
        raise ValidationException("Amount must be positive", field="amount")
