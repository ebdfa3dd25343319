"""
Currency Support Module

Currencies handled by the back office with their decimal precision, plus the
rounding helpers used by the ledger and the exchange desk. NEVER uses float
for monetary values.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation as DecimalException, getcontext
from enum import Enum
from typing import Union
import re

from .errors import ValidationError

# Set global decimal context for financial precision
getcontext().prec = 28

RATE_PRECISION = 2


class Currency(Enum):
    """Currency codes with precision info"""
    XAF = ("XAF", 0)  # Central African CFA franc, whole units only
    USD = ("USD", 2)
    EUR = ("EUR", 2)

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @property
    def is_local(self) -> bool:
        return self is LOCAL_CURRENCY

    @classmethod
    def from_code(cls, code: str) -> 'Currency':
        try:
            return cls[code.upper()]
        except KeyError:
            raise ValidationError(f"Unsupported currency: {code}")


LOCAL_CURRENCY = Currency.XAF
FOREIGN_CURRENCIES = (Currency.USD, Currency.EUR)


def quantize(value: Decimal, currency: Currency) -> Decimal:
    """Round a value to the precision of a currency"""
    return value.quantize(Decimal('0.1') ** currency.precision, rounding=ROUND_HALF_UP)


def round_rate(rate: Decimal) -> Decimal:
    """Round an exchange rate to two decimals"""
    return to_decimal(rate).quantize(Decimal('0.1') ** RATE_PRECISION, rounding=ROUND_HALF_UP)


def to_decimal(value: Union[Decimal, int, str, float]) -> Decimal:
    """
    Convert an incoming value to Decimal.

    Strings may carry thousands separators ("65 000", "65,000") as typed by
    front-line agents. Floats are routed through str() so they keep their
    displayed value.

    Raises:
        ValidationError: If the value cannot be read as a number
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        return Decimal(str(value))
    if not isinstance(value, str) or not value.strip():
        raise ValidationError("Value must be a number or a non-empty string")

    clean_value = re.sub(r'[^\d.,\-+]', '', value.strip())
    if ',' in clean_value and '.' in clean_value:
        clean_value = clean_value.replace(',', '')
    elif clean_value.count(',') == 1 and len(clean_value.split(',')[1]) <= 2:
        clean_value = clean_value.replace(',', '.')
    else:
        clean_value = clean_value.replace(',', '')

    try:
        return Decimal(clean_value)
    except DecimalException:
        raise ValidationError(f"Cannot convert '{value}' to Decimal")
