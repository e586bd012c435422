"""
Data models for the LS-LMSR market maker.

Two separate domains:
- Market side: markets, trades, redemptions (the market maker's world)
- Claim side: per-(condition, outcome, holder) balances (the ledger's world,
  see amm.ledger)

Amounts are ints in the collateral token's native unit. One outcome share
redeems for exactly one unit. Prices are Decimals derived from WAD values.
"""

import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from amm.lmsr import LiquidityPolicy


BPS_DENOMINATOR = 10_000


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def make_condition_id(oracle: str, question_id: str, outcome_count: int) -> str:
    """Content-addressed id of a question: sha256(oracle | question | n)."""
    payload = f"{oracle}|{question_id}|{outcome_count}".encode()
    return "0x" + hashlib.sha256(payload).hexdigest()


class MarketStatus(str, Enum):
    UNINITIALIZED = "uninitialized"
    OPEN = "open"
    RESOLVED = "resolved"


@dataclass
class Trade:
    """
    One trade against the AMM.

    side "buy":  collateral = payment in,  fee = payment - effective payment
    side "sell": collateral = refund out,  fee = proceeds - refund
    avg_price = collateral / shares.
    """
    trade_id: int
    side: str           # "buy" or "sell"
    holder: str
    outcome: int
    shares: int
    collateral: int
    fee: int
    avg_price: Decimal
    created_at: str = field(default_factory=_now)


@dataclass
class Redemption:
    """Settlement of one holder's balances in a resolved condition."""
    holder: str
    winning_shares: int
    burned_losing_shares: int
    payout: int
    created_at: str = field(default_factory=_now)


@dataclass
class Market:
    """
    A market instance, keyed by condition_id. Owned by the MarketMaker.

    quantities: shares outstanding per outcome, including the seed
    seed: per-outcome quantity the market holds itself since setup
    collateral_balance: collateral retained by this market
    fees_collected: overround margin kept on top of cost-function value

    Invariant while open: collateral_balance >= max(quantities).
    """
    condition_id: str
    num_outcomes: int
    policy: LiquidityPolicy
    overround_bps: int
    initial_subsidy: int
    seed: int
    quantities: list[int]
    collateral_balance: int
    question: str = ""
    status: MarketStatus = MarketStatus.OPEN
    winning_outcome: Optional[int] = None
    fees_collected: int = 0
    trades: list[Trade] = field(default_factory=list)
    redemptions: list[Redemption] = field(default_factory=list)
    created_at: str = field(default_factory=_now)
    resolved_at: Optional[str] = None

    @staticmethod
    def new(condition_id: str, num_outcomes: int, policy: LiquidityPolicy,
            overround_bps: int, initial_subsidy: int, seed: int,
            question: str = "") -> "Market":
        return Market(
            condition_id=condition_id,
            num_outcomes=num_outcomes,
            policy=policy,
            overround_bps=overround_bps,
            initial_subsidy=initial_subsidy,
            seed=seed,
            quantities=[seed] * num_outcomes,
            collateral_balance=initial_subsidy,
            question=question,
        )

    def next_trade_id(self) -> int:
        return len(self.trades) + 1

    def after_fee(self, amount: int) -> int:
        """Amount left once the overround is taken, rounded down."""
        return amount * (BPS_DENOMINATOR - self.overround_bps) // BPS_DENOMINATOR

    @property
    def volume(self) -> int:
        return sum(t.collateral for t in self.trades)
