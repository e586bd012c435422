"""
Fixed-point math: integers scaled by WAD (1e18), no floats anywhere.

Every value is a Python int interpreted as value / 1e18. Results must fit
the signed 256-bit range [-2**255, 2**255 - 1]; anything outside raises
NumericOverflow instead of wrapping.

exp and ln evaluate their series at 1e36 internal precision and round to
WAD at the end:
    ln:  |error| <= 1 ulp (1e-18)
    exp: relative error <= 1e-17, plus 1 ulp of flooring
Both are deterministic. exp is monotonic non-decreasing: inputs at or below
EXP_MIN underflow to 0, inputs at or above EXP_MAX overflow.
"""

from decimal import Decimal, InvalidOperation, localcontext

from amm.errors import InvalidArgument, InvalidParameters, NumericOverflow


WAD = 10 ** 18

INT_MAX = 2 ** 255 - 1
INT_MIN = -(2 ** 255)

# exp(x) < 0.5e-18 for x <= EXP_MIN; exp(x) > INT_MAX / 1e18 for x >= EXP_MAX
EXP_MIN = -42139678854452767551
EXP_MAX = 135305999368893231589

_HP = 10 ** 36
_HP_PER_WAD = _HP // WAD
_LN2_HP = 693147180559945309417232121458176568

LN2 = _LN2_HP // _HP_PER_WAD


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _check(value: int) -> int:
    if value > INT_MAX or value < INT_MIN:
        raise NumericOverflow(f"value {value} outside int256 range")
    return value


def _trunc_div(a: int, b: int) -> int:
    """Integer division rounding toward zero."""
    q = abs(a) // abs(b)
    return q if (a >= 0) == (b >= 0) else -q


def _round_div(a: int, b: int) -> int:
    """Integer division rounding half up. b must be positive."""
    return (a + b // 2) // b


# ---------------------------------------------------------------------------
# Arithmetic
# ---------------------------------------------------------------------------

def mul(a: int, b: int) -> int:
    """a * b in WAD, rounded down."""
    return _check(a * b // WAD)


def div(a: int, b: int) -> int:
    """a / b in WAD, rounded down."""
    if b == 0:
        raise InvalidArgument("division by zero")
    return _check(a * WAD // b)


def exp(x: int) -> int:
    """
    e^x for a WAD input.

    x = k * ln2 + r with |r| <= ln2 / 2, so e^x = 2^k * e^r and the Taylor
    series for e^r converges in ~30 terms at 1e36 precision.
    """
    _check(x)
    if x <= EXP_MIN:
        return 0
    if x >= EXP_MAX:
        raise NumericOverflow(f"exp({x}) exceeds int256 range")

    xh = x * _HP_PER_WAD
    k = _round_div(xh, _LN2_HP)
    r = xh - k * _LN2_HP

    total = _HP
    term = _HP
    i = 1
    while term != 0:
        term = _trunc_div(term * r, i * _HP)
        total += term
        i += 1

    if k >= 0:
        result = (total << k) // _HP_PER_WAD
    else:
        result = total // (_HP_PER_WAD << -k)
    return _check(result)


def ln(x: int) -> int:
    """
    Natural log of a WAD input. Raises InvalidArgument for x <= 0.

    x = 2^k * y with y in [1, 2), then ln(y) = 2 * atanh((y - 1) / (y + 1)).
    y is kept as an exact ratio num / den so the reduction loses nothing.
    """
    _check(x)
    if x <= 0:
        raise InvalidArgument(f"ln of non-positive value {x}")

    xh = x * _HP_PER_WAD
    k = xh.bit_length() - _HP.bit_length()

    def ratio(k: int) -> tuple[int, int]:
        if k >= 0:
            return xh, _HP << k
        return xh << -k, _HP

    num, den = ratio(k)
    while num < den:
        k -= 1
        num, den = ratio(k)
    while num >= 2 * den:
        k += 1
        num, den = ratio(k)

    z = (num - den) * _HP // (num + den)
    z2 = z * z // _HP
    series = 0
    term = z
    i = 1
    while term != 0:
        series += term // i
        term = term * z2 // _HP
        i += 2

    return _check(_round_div(2 * series + k * _LN2_HP, _HP_PER_WAD))


# ---------------------------------------------------------------------------
# Conversions
# ---------------------------------------------------------------------------

def to_wad(value) -> int:
    """
    Exact conversion of an int, Decimal or numeric string to WAD.

    Values with more than 18 decimal places are rejected, never rounded.
    """
    if isinstance(value, bool):
        raise InvalidParameters(f"not a number: {value!r}")
    if isinstance(value, int):
        return _check(value * WAD)
    try:
        d = Decimal(str(value))
    except InvalidOperation:
        raise InvalidParameters(f"not a number: {value!r}")
    if not d.is_finite():
        raise InvalidParameters(f"not a finite number: {value!r}")
    with localcontext() as ctx:
        ctx.prec = 100
        scaled = d.scaleb(18)
        if scaled != scaled.to_integral_value():
            raise InvalidParameters(
                f"{value} has more than 18 decimal places")
        return _check(int(scaled))


def to_decimal(x: int) -> Decimal:
    with localcontext() as ctx:
        ctx.prec = 100
        return Decimal(x).scaleb(-18)


def from_units(units: int) -> int:
    """Native integer amount -> WAD."""
    return _check(units * WAD)


def to_units(x: int) -> int:
    """WAD -> native integer amount, rounded down."""
    return x // WAD
