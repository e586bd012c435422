"""
LS-LMSR (Liquidity-Sensitive Logarithmic Market Scoring Rule). Pure math, no state.

All functions take WAD fixed-point ints (see amm.fixed_point) and return
WAD ints. The caller (market maker) handles state, native-unit rounding
and persistence.

Notation:
    q: list of quantities, one per outcome (index = outcome)
    policy: LiquidityPolicy, yields b(q) > 0

    C(q)  = b(q) * ln(Σ e^(q_i / b(q)))
    p_i   = e^(q_i / b) / Σ e^(q_j / b)

C is strictly increasing in every q_i and C(q) >= max(q), which is what
keeps a market funded with C(q0) solvent under 1:1 redemption.
"""

from abc import ABC, abstractmethod
from typing import Sequence

from amm import fixed_point as fp
from amm.errors import ConvergenceFailure, InvalidParameters


MAX_SOLVER_ITERATIONS = 256


# ---------------------------------------------------------------------------
# Liquidity policies
# ---------------------------------------------------------------------------

class LiquidityPolicy(ABC):
    """Rule for the liquidity parameter b and the matching setup seed."""

    kind: str

    def __init__(self, value: int):
        if value <= 0:
            raise InvalidParameters(
                f"{self.kind} liquidity value must be positive, got {value}")
        self.value = value

    @abstractmethod
    def b(self, q: Sequence[int]) -> int:
        ...

    @abstractmethod
    def seed(self, subsidy: int, n: int) -> int:
        """
        Per-outcome starting quantity s with C(s, ..., s) <= subsidy.
        Equal quantities price every outcome at 1/n.
        """

    def to_dict(self) -> dict:
        return {"kind": self.kind, "value": str(self.value)}

    def __eq__(self, other) -> bool:
        return (isinstance(other, LiquidityPolicy)
                and self.kind == other.kind and self.value == other.value)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({fp.to_decimal(self.value)})"


class LiquiditySensitive(LiquidityPolicy):
    """
    b(q) = alpha * Σ q_i. Depth grows with the shares outstanding.

    Seed: C(s·1) = s + alpha·n·s·ln(n), so s = subsidy / (1 + alpha·n·ln n).
    """

    kind = "sensitive"

    def b(self, q: Sequence[int]) -> int:
        b = fp.mul(self.value, sum(q))
        if b <= 0:
            raise InvalidParameters(f"liquidity parameter not positive: {b}")
        return b

    def seed(self, subsidy: int, n: int) -> int:
        n_wad = fp.from_units(n)
        spread = fp.mul(fp.mul(self.value, n_wad), fp.ln(n_wad))
        return fp.div(subsidy, fp.WAD + spread)


class FixedLiquidity(LiquidityPolicy):
    """Constant b, the classic LMSR. Seed: subsidy - b·ln(n)."""

    kind = "fixed"

    def b(self, q: Sequence[int]) -> int:
        return self.value

    def seed(self, subsidy: int, n: int) -> int:
        s = subsidy - max_loss(self.value, n)
        if s < 0:
            raise InvalidParameters(
                f"subsidy {fp.to_decimal(subsidy)} below b*ln(n) "
                f"= {fp.to_decimal(max_loss(self.value, n))}")
        return s


POLICIES: dict[str, type[LiquidityPolicy]] = {
    LiquiditySensitive.kind: LiquiditySensitive,
    FixedLiquidity.kind: FixedLiquidity,
}


def make_policy(kind: str, value: int) -> LiquidityPolicy:
    cls = POLICIES.get(kind)
    if cls is None:
        raise InvalidParameters(
            f"unknown liquidity policy {kind!r} (expected one of "
            f"{', '.join(sorted(POLICIES))})")
    return cls(value)


def policy_from_dict(d: dict) -> LiquidityPolicy:
    return make_policy(d["kind"], int(d["value"]))


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _scaled_exps(q: Sequence[int], b: int) -> tuple[int, list[int]]:
    """(max(q), [e^((q_i - max) / b)]). Exponents are <= 0, so no overflow."""
    m = max(q)
    return m, [fp.exp(fp.div(v - m, b)) for v in q]


def _check_outcome(q: Sequence[int], outcome: int) -> None:
    if not 0 <= outcome < len(q):
        raise InvalidParameters(
            f"outcome {outcome} out of range for {len(q)} outcomes")


# ---------------------------------------------------------------------------
# Core functions
# ---------------------------------------------------------------------------

def liquidity(q: Sequence[int], policy: LiquidityPolicy) -> int:
    return policy.b(q)


def cost(q: Sequence[int], policy: LiquidityPolicy) -> int:
    """
    C(q) = m + b * ln(Σ e^((q_i - m) / b)), m = max(q).

    Only differences of C mean anything to a trader; the absolute value is
    what the market must hold to cover every outcome.
    """
    b = policy.b(q)
    m, exps = _scaled_exps(q, b)
    return m + fp.mul(b, fp.ln(sum(exps)))


def prices(q: Sequence[int], policy: LiquidityPolicy) -> list[int]:
    """
    Softmax of q / b. Each price is rounded down, so the sum is within
    len(q) ulps below 1.
    """
    b = policy.b(q)
    _, exps = _scaled_exps(q, b)
    total = sum(exps)
    return [e * fp.WAD // total for e in exps]


def price(q: Sequence[int], policy: LiquidityPolicy, outcome: int) -> int:
    _check_outcome(q, outcome)
    return prices(q, policy)[outcome]


def cost_of_trade(q: Sequence[int], policy: LiquidityPolicy,
                  outcome: int, delta: int) -> int:
    """
    C(q with q[outcome] += delta) - C(q).

    Positive delta: what a buyer pays. Negative delta: minus what a seller
    receives. b is re-evaluated on each side of the trade.
    """
    _check_outcome(q, outcome)
    q_after = list(q)
    q_after[outcome] += delta
    return cost(q_after, policy) - cost(q, policy)


def sale_proceeds(q: Sequence[int], policy: LiquidityPolicy,
                  outcome: int, shares: int) -> int:
    """Collateral released by selling `shares` of `outcome` back."""
    return -cost_of_trade(q, policy, outcome, -shares)


def shares_for_payment(q: Sequence[int], policy: LiquidityPolicy,
                       outcome: int, payment: int, step: int = 1,
                       max_iterations: int = MAX_SOLVER_ITERATIONS) -> int:
    """
    Inverse of cost_of_trade: the largest multiple of `step` whose cost
    does not exceed `payment`.

    Bisection over [0, hi]. Since C(q) >= max(q), buying d shares costs at
    least q[outcome] + d - C(q), so hi = payment + C(q) - q[outcome] + step
    always costs more than `payment`.

    Raises ConvergenceFailure if the bracket has not closed after
    max_iterations halvings.
    """
    _check_outcome(q, outcome)
    if payment <= 0:
        raise InvalidParameters(f"payment must be positive, got {payment}")
    if step <= 0:
        raise InvalidParameters(f"step must be positive, got {step}")

    base = cost(q, policy)
    lo = 0
    hi = -(-(payment + base - q[outcome] + step) // step)

    def paid(n: int) -> int:
        q_after = list(q)
        q_after[outcome] += n * step
        return cost(q_after, policy) - base

    iterations = 0
    while hi - lo > 1:
        if iterations >= max_iterations:
            raise ConvergenceFailure(
                f"no solution within {max_iterations} iterations "
                f"(bracket {lo * step}..{hi * step})")
        mid = (lo + hi) // 2
        if paid(mid) <= payment:
            lo = mid
        else:
            hi = mid
        iterations += 1
    return lo * step


def worst_case_liability(q: Sequence[int]) -> int:
    """Largest total payout over all outcomes under 1:1 redemption."""
    return max(q)


def max_loss(b: int, n: int) -> int:
    """b * ln(n): the subsidy a fixed-b market can lose."""
    return fp.mul(b, fp.ln(fp.from_units(n)))


def subsidy_at_risk(q0: Sequence[int], policy: LiquidityPolicy) -> int:
    """
    C(q0) - min(q0): the most of the setup funding the market can lose.
    Equals b * ln(n) for an evenly seeded fixed-b market.
    """
    return cost(q0, policy) - min(q0)
