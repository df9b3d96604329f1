from __future__ import annotations

from decimal import Decimal, InvalidOperation
from enum import Enum

ONE = 10**18
MAX_UINT256 = 2**256 - 1


class Rounding(Enum):
    FLOOR = 'floor'
    CEIL = 'ceil'


def mul_div(x: int, y: int, denominator: int, rounding: Rounding = Rounding.FLOOR) -> int:
    if denominator <= 0:
        raise ZeroDivisionError('mul_div denominator must be > 0')
    product = x * y
    result = product // denominator
    if rounding is Rounding.CEIL and product % denominator:
        result += 1
    return result


def apply_percentage(amount: int, percentage: int, rounding: Rounding = Rounding.FLOOR) -> int:
    return mul_div(amount, percentage, ONE, rounding)


def percentage_of(part: int, whole: int) -> int:
    if whole == 0:
        return 0
    return mul_div(part, ONE, whole)


def to_fixed_point(value: str | Decimal) -> int:
    try:
        parsed = Decimal(str(value).strip())
    except (InvalidOperation, TypeError) as exc:
        raise ValueError(f'invalid decimal value: {value}') from exc
    if not parsed.is_finite():
        raise ValueError(f'invalid decimal value: {value}')
    return int(parsed * ONE)


def from_fixed_point(value: int) -> Decimal:
    return Decimal(value) / Decimal(ONE)
