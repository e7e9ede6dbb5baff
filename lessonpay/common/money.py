"""Exact conversion of major-unit prices into integer minor units."""

from decimal import Decimal, InvalidOperation

_ZERO_DECIMAL = {"JPY", "KRW", "UGX", "XAF", "XOF"}
_THREE_DECIMAL = {"BHD", "KWD", "OMR", "JOD", "TND"}


def minor_unit_exponent(currency: str) -> int:
    code = currency.upper()
    if code in _ZERO_DECIMAL:
        return 0
    if code in _THREE_DECIMAL:
        return 3
    return 2


def to_minor_units(amount: Decimal | int | str, currency: str) -> int:
    """Convert `amount` in major units (e.g. naira) to minor units (kobo).

    Floats are refused outright, and so is any amount that would need a
    fraction of a minor unit.
    """

    if isinstance(amount, float):
        raise TypeError("float amounts are not accepted; pass Decimal, int or str")
    try:
        value = Decimal(amount)
    except InvalidOperation as exc:
        raise ValueError(f"invalid amount: {amount!r}") from exc
    if not value.is_finite():
        raise ValueError(f"invalid amount: {amount!r}")
    scaled = value.scaleb(minor_unit_exponent(currency))
    if scaled != scaled.to_integral_value():
        raise ValueError(f"{amount} {currency} is not a whole number of minor units")
    return int(scaled)
