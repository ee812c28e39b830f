"""Major/minor currency unit conversion.

Every amount the core persists is an integer in the currency's minor unit
(kobo for NGN). Callers hand in major units at the edges (checkout forms,
admin grants) and read major units back only for display.

``normalize_legacy_amount`` is the single home for the magnitude heuristics
needed to read amounts written by older producers that mixed both units.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum

from paycore.billing.errors import PaymentValidationError

DEFAULT_MINOR_UNIT_EXPONENT = 2
MINOR_UNIT_EXPONENTS: dict[str, int] = {
    "NGN": 2,
    "GHS": 2,
    "KES": 2,
    "ZAR": 2,
    "USD": 2,
}

LEGACY_DIVIDED_UPPER_BOUND = 100
LEGACY_MAJOR_UPPER_BOUND = 10_000
LEGACY_MINOR_LOWER_BOUND = 100_000


class AmountUnit(str, Enum):
    MAJOR = "major"
    MINOR = "minor"


def _minor_factor(currency: str | None) -> int:
    exponent = MINOR_UNIT_EXPONENTS.get((currency or "").upper(), DEFAULT_MINOR_UNIT_EXPONENT)
    return 10**exponent


def _as_decimal(raw: object) -> Decimal:
    if isinstance(raw, bool):
        raise PaymentValidationError("amount must be numeric")
    if isinstance(raw, float):
        raw = repr(raw)
    try:
        value = Decimal(str(raw).strip()) if isinstance(raw, str) else Decimal(raw)
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise PaymentValidationError(f"amount is not numeric: {raw!r}") from exc
    if not value.is_finite():
        raise PaymentValidationError("amount must be finite")
    return value


def to_minor(
    raw: object,
    *,
    unit: AmountUnit = AmountUnit.MAJOR,
    currency: str | None = None,
) -> int:
    value = _as_decimal(raw)
    if value < 0:
        raise PaymentValidationError("amount must not be negative")

    if unit == AmountUnit.MINOR:
        if value != value.to_integral_value():
            raise PaymentValidationError("minor-unit amount must be a whole number")
        return int(value)

    minor = value * _minor_factor(currency)
    if minor != minor.to_integral_value():
        raise PaymentValidationError(f"amount {raw!r} has more precision than the currency allows")
    return int(minor)


def to_major(minor: int, *, currency: str | None = None) -> Decimal:
    if isinstance(minor, bool) or not isinstance(minor, int):
        raise PaymentValidationError("minor-unit amount must be an integer")
    factor = _minor_factor(currency)
    exponent = len(str(factor)) - 1
    major = Decimal(minor) / Decimal(factor)
    if major == major.to_integral_value():
        return major.quantize(Decimal(1))
    return major.quantize(Decimal(1).scaleb(-exponent), rounding=ROUND_HALF_UP)


def normalize_legacy_amount(raw: object, *, currency: str | None = None) -> int:
    """Best-effort minor-unit reading of a stored amount whose unit is unknown."""
    try:
        value = _as_decimal(raw)
    except PaymentValidationError:
        return 0
    if value <= 0:
        return 0

    factor = _minor_factor(currency)
    is_whole_major_step = value % factor == 0

    if value < LEGACY_DIVIDED_UPPER_BOUND:
        # written as major / 100 by an old admin form (25 means 2500)
        return to_minor(value * factor, currency=currency)
    if value < LEGACY_MAJOR_UPPER_BOUND:
        return to_minor(value, currency=currency)
    if value < LEGACY_MINOR_LOWER_BOUND:
        if is_whole_major_step:
            return int(value)
        return to_minor(value, currency=currency)
    return int(value.to_integral_value(rounding=ROUND_HALF_UP))
