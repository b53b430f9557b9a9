"""Decimal amount parsing and cent conversion"""

import re
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

CENT = Decimal("0.01")

# 1.234,56 / 1.234 (thousands with dots, optional comma decimals)
_BR_THOUSANDS = re.compile(r"^\d{1,3}(\.\d{3})+(,\d+)?$")
_KEEP = re.compile(r"[^\d.,\-]")


def parse_amount(value) -> Decimal:
    """
    Convert a source amount to Decimal.

    Accepts int/float/Decimal and strings in "1234.56", "1234,56",
    "1.234,56" or "R$ 1.234,56" form.

    Raises:
        ValueError: When the value cannot be read as a number
    """
    if isinstance(value, bool):
        raise ValueError(f"boolean is not an amount: {value!r}")
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, (Decimal, float)):
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
        if not amount.is_finite():
            raise ValueError(f"non-finite amount: {value!r}")
        return amount
    if not isinstance(value, str):
        raise ValueError(f"unsupported amount value: {value!r}")

    cleaned = _KEEP.sub("", value.strip())
    negative = cleaned.startswith("-")
    cleaned = cleaned.lstrip("-")
    if not cleaned or "-" in cleaned:
        raise ValueError(f"unreadable amount: {value!r}")

    if "," in cleaned and "." in cleaned and cleaned.rfind(".") > cleaned.rfind(","):
        # 1,234.56
        cleaned = cleaned.replace(",", "")
    elif _BR_THOUSANDS.match(cleaned) or "," in cleaned:
        cleaned = cleaned.replace(".", "").replace(",", ".")

    try:
        amount = Decimal(cleaned)
    except InvalidOperation as e:
        raise ValueError(f"unreadable amount: {value!r}") from e
    if not amount.is_finite():
        raise ValueError(f"unreadable amount: {value!r}")
    return -amount if negative else amount


def to_cents(amount: Decimal) -> int:
    return int((amount / CENT).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) * CENT).quantize(CENT)
