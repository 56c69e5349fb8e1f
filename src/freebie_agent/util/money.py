from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional


_MONEY_RE = re.compile(r"[-+]?\$?\s*\d[\d,]*(?:\.\d{1,2})?")
_FREE_RE = re.compile(r"^\s*free\s*$", re.I)


def money_to_decimal(value: str) -> Decimal:
    """
    Parse values like:
    - "$3,040.16"
    - "3040.16"
    - "$0"
    - "-$12.34"
    """
    s = (value or "").replace("$", "").replace(",", "").replace(" ", "").strip()
    if not s:
        raise ValueError("money_to_decimal: empty string")
    try:
        dec = Decimal(s)
    except InvalidOperation as e:
        raise ValueError(f"money_to_decimal: not a money value: {value!r}") from e
    return dec.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def find_first_money(text: str) -> Optional[str]:
    m = _MONEY_RE.search(text or "")
    return m.group(0) if m else None


def parse_price(text: Optional[str]) -> Optional[Decimal]:
    """
    Best-effort price parsing for listing text. Returns None when no usable price is displayed.

    Listing prices show up as "$0.00", "$0", "FREE", or with extra words ("$1.99 with coupon").
    A negative amount is never a listing price (it is a discount or credit line).
    """
    s = (text or "").strip()
    if not s:
        return None
    if _FREE_RE.match(s):
        return Decimal("0.00")
    raw = find_first_money(s)
    if raw is None:
        return None
    try:
        price = money_to_decimal(raw)
    except ValueError:
        return None
    return price if price >= 0 else None
