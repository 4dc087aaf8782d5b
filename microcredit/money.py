"""
Money Helpers Module

Decimal conversion and rounding rules for every monetary value in the
portal. NEVER uses float for monetary values: amounts are accumulated at
full Decimal precision and rounded to cents only when emitted.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from typing import Any, Union

from .errors import ValidationError

# Set global decimal context for financial precision
getcontext().prec = 28

CENT = Decimal('0.01')
ZERO = Decimal('0')

Amount = Union[Decimal, int, float, str]


def _finite(value: Decimal, field_name: str) -> Decimal:
    if not value.is_finite():
        raise ValidationError(f"{field_name} must be a finite number, got {value}")
    return value


def to_decimal(value: Amount, field_name: str = "amount") -> Decimal:
    """Convert user or stored input to Decimal without float artifacts"""
    if isinstance(value, Decimal):
        return _finite(value, field_name)
    if isinstance(value, bool):
        raise ValidationError(f"{field_name} must be numeric")
    try:
        # str() first so 0.1 becomes Decimal('0.1'), not its binary expansion
        result = Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as e:
        raise ValidationError(f"{field_name} must be numeric, got {value!r}") from e
    return _finite(result, field_name)


def round_money(value: Amount) -> Decimal:
    """Round to cents, half-up"""
    try:
        return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation as e:
        # More digits than the context precision can hold at cent scale
        raise ValidationError(f"Amount {value} is too large") from e


def require_positive(value: Any, field_name: str = "amount") -> Decimal:
    """Parse an amount and reject zero, negative or sub-cent values"""
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError(f"{field_name} is required")
    amount = to_decimal(value, field_name)
    if amount <= ZERO:
        raise ValidationError(f"{field_name} must be positive, got {amount}")
    if amount.normalize().as_tuple().exponent < -2:
        raise ValidationError(f"{field_name} cannot have more than two decimal places, got {amount}")
    round_money(amount)
    return amount


def money_str(value: Amount) -> str:
    """Storage/wire representation: a 2-decimal string"""
    return str(round_money(value))


def format_money(value: Amount, currency: str = "USD") -> str:
    """Format for display"""
    return f"{currency} {round_money(value):,.2f}"
