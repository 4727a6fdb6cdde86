"""Checked unsigned integer arithmetic for percentage derivation.

Operands and results are bounded to a 256-bit unsigned word. Anything
outside the word reverts with ArithmeticOverflow instead of wrapping or
growing without bound.
"""

from __future__ import annotations

from jobescrow.errors import ArithmeticOverflow

UINT256_MAX = (1 << 256) - 1

PERCENT_DENOMINATOR = 100


def _check_word(value: int, label: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ArithmeticOverflow(f"{label} must be an integer, got {type(value).__name__}")
    if value < 0 or value > UINT256_MAX:
        raise ArithmeticOverflow(f"{label} {value} outside unsigned 256-bit range")
    return value


def checked_mul(a: int, b: int) -> int:
    """Multiply two unsigned words, reverting on overflow."""
    _check_word(a, "operand")
    _check_word(b, "operand")
    return _check_word(a * b, "product")


def checked_div(a: int, b: int) -> int:
    """Floor-divide two unsigned words, reverting on division by zero."""
    _check_word(a, "dividend")
    _check_word(b, "divisor")
    if b == 0:
        raise ArithmeticOverflow("division by zero")
    return a // b


def percentage_of(amount: int, percentage: int) -> int:
    """Return floor(amount * percentage / 100).

    Multiplies before dividing so flooring happens once, at the end.
    """
    return checked_div(checked_mul(amount, percentage), PERCENT_DENOMINATOR)
