"""Exact decimal arithmetic over base-unit amount strings.

Chain amounts routinely exceed what a float can hold exactly, so every amount
in this package is a decimal string and every operation on it goes through
this module. Results are canonical strings: no exponent, no trailing
fractional zeros, ``"0"`` for zero.
"""

from collections.abc import Mapping
from decimal import ROUND_DOWN, ROUND_HALF_UP, Context, Decimal, InvalidOperation

from rewardledger.services.errors import AmountDivisionError, InvalidAmountError

DenomMap = dict[str, str]
AmountLike = str | int | Decimal

# sdk.Dec carries 18 fractional digits
QUOTIENT_PLACES = 18

_CTX = Context(prec=80, rounding=ROUND_HALF_UP)
_QUOTIENT_EXP = Decimal(1).scaleb(-QUOTIENT_PLACES)


def to_decimal(value: AmountLike) -> Decimal:
    if isinstance(value, Decimal):
        d = value
    elif isinstance(value, (int, str)) and not isinstance(value, bool):
        try:
            d = Decimal(value.strip() if isinstance(value, str) else value)
        except InvalidOperation as e:
            raise InvalidAmountError(f"Not a decimal amount: {value!r}") from e
    else:
        raise InvalidAmountError(f"Not a decimal amount: {value!r}")
    if not d.is_finite():
        raise InvalidAmountError(f"Not a finite amount: {value!r}")
    return d


def to_amount(value: Decimal) -> str:
    if value.is_zero():
        return "0"
    return format(value.normalize(_CTX), "f")


def add(a: AmountLike, b: AmountLike) -> str:
    return to_amount(_CTX.add(to_decimal(a), to_decimal(b)))


def sub(a: AmountLike, b: AmountLike) -> str:
    return to_amount(_CTX.subtract(to_decimal(a), to_decimal(b)))


def mul(a: AmountLike, b: AmountLike) -> str:
    return to_amount(_CTX.multiply(to_decimal(a), to_decimal(b)))


def div(a: AmountLike, b: AmountLike) -> str:
    divisor = to_decimal(b)
    if divisor.is_zero():
        raise AmountDivisionError(f"Division by zero: {a} / {b}")
    quotient = _CTX.divide(to_decimal(a), divisor)
    return to_amount(quotient.quantize(_QUOTIENT_EXP, rounding=ROUND_HALF_UP, context=_CTX))


def min_amount(a: AmountLike, b: AmountLike) -> str:
    da, db = to_decimal(a), to_decimal(b)
    return to_amount(da if da <= db else db)


def floor_to_integer(a: AmountLike) -> str:
    """Integer portion of ``a`` (truncation; amounts are non-negative)."""
    return to_amount(to_decimal(a).to_integral_value(rounding=ROUND_DOWN))


def is_zero(a: AmountLike) -> bool:
    return to_decimal(a).is_zero()


def is_negative(a: AmountLike) -> bool:
    return to_decimal(a) < 0


def clamp_to_zero(a: AmountLike) -> str:
    return "0" if is_negative(a) else to_amount(to_decimal(a))


def merge_denom_maps(*maps: Mapping[str, AmountLike]) -> DenomMap:
    """Denomination-wise sum. Returns a new map; inputs are not modified."""
    merged: DenomMap = {}
    for denom_map in maps:
        for denom, amount in denom_map.items():
            merged[denom] = add(merged.get(denom, "0"), amount)
    return merged
