"""Money formatting and bank reference codes.

The gateway only accepts references made of ``[A-Z0-9]`` and at most 20
characters long, and amounts with exactly two fractional digits.
"""

import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Union

from promptpay_checkout.errors import InvalidAmount, InvalidReference

Number = Union[Decimal, int, float, str]

CENTS = Decimal("0.01")
REFERENCE_PREFIX = "ORD"
REFERENCE_WIDTH = 10
MAX_REFERENCE_LENGTH = 20

_NOT_ALNUM = re.compile(r"[^A-Z0-9]")
_ORDER_REFERENCE = re.compile(r"^(?:%s)?0*(\d+)$" % REFERENCE_PREFIX)


def to_decimal(value: Number) -> Decimal:
    """Convert to a finite, non-negative ``Decimal`` rounded to cents."""
    if isinstance(value, bool):
        raise InvalidAmount(f"Invalid amount: {value!r}")
    try:
        # floats go through str() so 0.1 stays 0.1 and not its binary expansion
        amount = Decimal(str(value).strip()) if not isinstance(value, Decimal) else value
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidAmount(f"Invalid amount: {value!r}")
    if not amount.is_finite():
        raise InvalidAmount(f"Amount must be finite: {value!r}")
    if amount < 0:
        raise InvalidAmount(f"Amount must not be negative: {value!r}")
    try:
        return amount.quantize(CENTS, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise InvalidAmount(f"Amount out of range: {value!r}")


def format_amount(value: Number, strict: bool = True) -> str:
    """Render ``value`` with exactly two fractional digits.

    With ``strict=False`` malformed input renders as ``"0.00"`` instead of
    raising, which is what seeding and display code wants.
    """
    try:
        return str(to_decimal(value))
    except InvalidAmount:
        if strict:
            raise
        return "0.00"


def sanitize_reference(value: object, max_length: int = MAX_REFERENCE_LENGTH) -> str:
    """Uppercase, drop anything outside ``[A-Z0-9]`` and truncate."""
    return _NOT_ALNUM.sub("", str(value).strip().upper())[:max_length]


def make_reference(order_id: int) -> str:
    """Deterministic gateway reference for an order, e.g. ``ORD0000000042``."""
    if isinstance(order_id, bool) or not isinstance(order_id, int) or order_id < 0:
        raise InvalidReference(f"Invalid order id for reference: {order_id!r}")
    return sanitize_reference(f"{REFERENCE_PREFIX}{order_id:0{REFERENCE_WIDTH}d}")


def parse_reference(reference: object) -> int:
    """Recover the order id from ``make_reference`` output or a bare id."""
    match = _ORDER_REFERENCE.match(sanitize_reference(reference or ""))
    if not match:
        raise InvalidReference(f"Unrecognised order reference: {reference!r}")
    return int(match.group(1))
