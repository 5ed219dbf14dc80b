from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional


_NON_NUMERIC_RE = re.compile(r"[^\d.\-]")

# sqlite INTEGER is a signed 64-bit value.
MIN_CENTS = -(2**63)
MAX_CENTS = 2**63 - 1


def coerce_amount_cents(value: object) -> int:
    """
    Coerce an export amount into integer cents.

    Accepts native numbers or formatted strings like "$ 12,300.50". Every character except digits,
    "." and "-" is stripped first. Anything that still does not parse (blank, "-", "1.2.3") becomes 0.
    A well-formed amount that does not fit a signed 64-bit cents value raises `ValueError`.
    """
    if value is None or isinstance(value, bool):
        return 0
    if isinstance(value, (int, float, Decimal)):
        raw = str(value)
    else:
        raw = _NON_NUMERIC_RE.sub("", str(value))
    try:
        dec = Decimal(raw)
    except InvalidOperation:
        return 0
    if not dec.is_finite():
        return 0
    try:
        cents = int((dec * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    except InvalidOperation:
        raise ValueError(f"amount out of range: {raw[:32]}") from None
    if not MIN_CENTS <= cents <= MAX_CENTS:
        raise ValueError(f"amount out of range: {raw[:32]}")
    return cents


def optional_amount_cents(value: object) -> Optional[int]:
    # Missing optional columns stay None; present-but-garbage values still normalize to 0.
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    return coerce_amount_cents(value)


def cents_to_money_str(cents: int) -> str:
    dec = (Decimal(cents) / 100).quantize(Decimal("0.01"))
    return f"${dec:,.2f}"
