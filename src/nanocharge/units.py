"""Conversion between raw (smallest unit) and display XNO amounts."""
from __future__ import annotations

from decimal import Decimal, InvalidOperation, localcontext
from typing import Union

RAW_DECIMALS = 30
RAW_PER_XNO = 10 ** RAW_DECIMALS

# Large enough for any 128-bit raw balance plus the fractional digits
_PRECISION = 80


def raw_to_display(raw: Union[int, str]) -> str:
    """Convert a raw amount to an exact XNO decimal string.

    Trailing zeros are trimmed: ``raw_to_display(10**30) == "1"`` and
    ``raw_to_display(10**24) == "0.000001"``.
    """
    value = int(raw)
    if value < 0:
        raise ValueError(f"Raw amount must be non-negative: {raw!r}")

    whole, frac = divmod(value, RAW_PER_XNO)
    if frac == 0:
        return str(whole)
    frac_str = str(frac).rjust(RAW_DECIMALS, "0").rstrip("0")
    return f"{whole}.{frac_str}"


def display_to_raw(amount: Union[str, int, Decimal]) -> int:
    """Convert an XNO amount (e.g. ``"0.1"``) to an exact raw integer."""
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        try:
            value = Decimal(str(amount).strip())
        except InvalidOperation:
            raise ValueError(f"Invalid XNO amount: {amount!r}") from None

        if not value.is_finite():
            raise ValueError(f"Invalid XNO amount: {amount!r}")
        if value < 0:
            raise ValueError(f"XNO amount must be non-negative: {amount!r}")

        exponent = value.normalize().as_tuple().exponent
        if isinstance(exponent, int) and -exponent > RAW_DECIMALS:
            raise ValueError(
                f"XNO amount has more than {RAW_DECIMALS} decimal places: {amount!r}"
            )

        return int(value * RAW_PER_XNO)
