"""
fixed_point.py - Unsigned 18-decimal fixed-point arithmetic

All rates, indices and growth factors in the facility are integers scaled by
ONE (10**18). Python integers never wrap, so the 256-bit range a settlement
system would impose is checked explicitly: any intermediate product above
MAX_UINT256 raises FixedPointOverflow instead of silently continuing.

Functions:
    checked(value)            - assert a value fits in the unsigned 256-bit range
    mul_div_down(a, b, d)     - floor(a * b / d)
    mul_div_up(a, b, d)       - ceil(a * b / d)
    rpow(x, n, base)          - x**n in fixed point, exponentiation by squaring
    annual_rate_to_per_second - convert basis points per year to a growth factor

All functions are pure.
"""

from __future__ import annotations

from .core import FixedPointOverflow


# Fixed-point scale (1.0)
ONE = 10 ** 18

# Largest representable unsigned value
MAX_UINT256 = 2 ** 256 - 1

SECONDS_PER_YEAR = 365 * 86400

BASIS_POINTS = 10_000


def checked(value: int) -> int:
    """
    Return value unchanged if it fits in [0, MAX_UINT256].

    Raises:
        FixedPointOverflow: if the value is negative or too large.
    """
    if value < 0 or value > MAX_UINT256:
        raise FixedPointOverflow(f"fixed-point value out of range: {value}")
    return value


def mul_div_down(a: int, b: int, denominator: int) -> int:
    """floor(a * b / denominator) with overflow detection on the product."""
    if denominator == 0:
        raise ZeroDivisionError("mul_div_down denominator is zero")
    return checked(a * b) // denominator


def mul_div_up(a: int, b: int, denominator: int) -> int:
    """ceil(a * b / denominator) with overflow detection on the product."""
    if denominator == 0:
        raise ZeroDivisionError("mul_div_up denominator is zero")
    product = checked(a * b)
    return -(-product // denominator)


def rpow(x: int, n: int, base: int = ONE) -> int:
    """
    Raise a fixed-point number to an integer power.

    Exponentiation by squaring, rounding half-up after every multiplication.
    Runs in O(log n) multiplications.

    Args:
        x: Fixed-point base (scaled by `base`)
        n: Non-negative integer exponent (typically elapsed seconds)
        base: Fixed-point scale (default ONE)

    Returns:
        x**n scaled by `base`.

    Raises:
        FixedPointOverflow: if any intermediate product leaves the 256-bit range.
        ValueError: if n is negative.

    Example:
        >>> rpow(2 * ONE, 10) == 1024 * ONE
        True
    """
    if n < 0:
        raise ValueError(f"rpow exponent must be non-negative, got {n}")
    if x == 0:
        return base if n == 0 else 0

    half = base // 2
    z = x if n % 2 else base
    n //= 2
    while n:
        xx = checked(x * x)
        x = checked(xx + half) // base
        if n % 2:
            zx = checked(z * x)
            z = checked(zx + half) // base
        n //= 2
    return z


def annual_rate_to_per_second(rate_bps: int) -> int:
    """
    Convert an annualized simple rate in basis points to a per-second factor.

    The factor compounds to roughly (1 + rate) over one year:
        factor = ONE + rate_bps * ONE / (10_000 * SECONDS_PER_YEAR)

    Example:
        1% (100 bps) -> 1000000000317097919
    """
    if rate_bps < 0:
        raise ValueError(f"rate_bps cannot be negative, got {rate_bps}")
    return ONE + rate_bps * ONE // (BASIS_POINTS * SECONDS_PER_YEAR)
