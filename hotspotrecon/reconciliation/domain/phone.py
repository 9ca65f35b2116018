"""Kenyan mobile number and KES amount canonicalization.

Phone numbers are stored in international form without a plus sign
(``2547XXXXXXXX``). All of these normalize to ``254712345678``:

    0712345678, 712345678, +254712345678, 254712345678

Spaces and hyphens are accepted as digit-group separators.
"""

import math
import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from ...exceptions import InvalidAmount, InvalidPhoneFormat

COUNTRY_CODE = "254"
MINOR_UNIT = Decimal("0.01")
# Largest value a Numeric(12, 2) column holds.
MAX_AMOUNT = Decimal("9999999999.99")

_SEPARATORS = re.compile(r"[\s\-]")
_SUBSCRIBER = re.compile(r"^7\d{8}$")


def normalize_phone(value: Any) -> str:
    """Normalize a Kenyan mobile number to ``2547XXXXXXXX``.

    Args:
        value: Raw phone as str or int (M-Pesa delivers MSISDNs as integers)

    Returns:
        Canonical 12-digit number

    Raises:
        InvalidPhoneFormat: If, after stripping a ``+`` prefix and one leading
            ``254`` or ``0`` marker, the rest is not 9 digits starting with 7
    """
    if value is None or isinstance(value, bool):
        raise InvalidPhoneFormat(value)

    text = _SEPARATORS.sub("", str(value).strip())
    if text.startswith("+"):
        text = text[1:]

    if text.startswith(COUNTRY_CODE):
        subscriber = text[len(COUNTRY_CODE) :]
    elif text.startswith("0"):
        subscriber = text[1:]
    else:
        subscriber = text

    if not _SUBSCRIBER.match(subscriber):
        raise InvalidPhoneFormat(value)

    return COUNTRY_CODE + subscriber


def is_valid_phone(value: Any) -> bool:
    """Whether ``value`` normalizes without error."""
    try:
        normalize_phone(value)
    except InvalidPhoneFormat:
        return False
    return True


def normalize_amount(value: Any) -> Decimal:
    """Validate a KES amount and round it half-up to the minor unit.

    Raises:
        InvalidAmount: For missing, boolean, non-numeric, non-finite,
            zero, negative or out-of-range values
    """
    if value is None or isinstance(value, bool):
        raise InvalidAmount(value, "missing or not a number")

    if isinstance(value, float) and not math.isfinite(value):
        raise InvalidAmount(value, "not finite")

    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise InvalidAmount(value, "not a number") from None

    if not amount.is_finite():
        raise InvalidAmount(value, "not finite")

    if amount > MAX_AMOUNT:
        raise InvalidAmount(value, "exceeds maximum amount")

    amount = quantize_money(amount)
    if amount <= 0:
        raise InvalidAmount(value, "must be positive")

    return amount


def quantize_money(amount: Decimal) -> Decimal:
    """Round half-up to the currency's minor unit."""
    return amount.quantize(MINOR_UNIT, rounding=ROUND_HALF_UP)
