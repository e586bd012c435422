"""
Conditional token ledger. One instance serves every market.

Balances are keyed by (condition_id, outcome, holder). The ledger does not
know about prices, quantities or LMSR; it knows conditions exist, which
outcome (if any) won, and who holds what.

Minting and burning are driven by the market maker. Redemption pays the
winning balance 1:1 through the collateral adapter and burns everything the
holder had in the condition, so a second redemption pays nothing.

Invariant: total_supply(c, o) == sum(balance_of(c, o, h) for every holder h)
"""

import threading
from dataclasses import dataclass
from typing import Optional

import structlog

from amm.collateral import CollateralAdapter
from amm.errors import (
    AlreadyInitialized, InsufficientBalance, InvalidParameters,
    MarketNotOpen, MarketNotResolved,
)
from amm.models import Redemption


log = structlog.get_logger(__name__)


@dataclass
class Condition:
    condition_id: str
    outcome_count: int
    winning_outcome: Optional[int] = None

    @property
    def resolved(self) -> bool:
        return self.winning_outcome is not None


class ConditionalTokenLedger:

    def __init__(self, collateral: CollateralAdapter):
        self.collateral = collateral
        self.conditions: dict[str, Condition] = {}
        self.balances: dict[tuple[str, int, str], int] = {}
        self.supply: dict[tuple[str, int], int] = {}
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Conditions
    # ------------------------------------------------------------------

    def prepare_condition(self, condition_id: str,
                          outcome_count: int) -> Condition:
        with self._lock:
            if condition_id in self.conditions:
                raise AlreadyInitialized(
                    f"condition {condition_id} already prepared")
            if outcome_count < 2:
                raise InvalidParameters(
                    f"condition needs at least 2 outcomes, got {outcome_count}")
            cond = Condition(condition_id, outcome_count)
            self.conditions[condition_id] = cond
            return cond

    def report_resolution(self, condition_id: str,
                          winning_outcome: int) -> None:
        with self._lock:
            cond = self._condition(condition_id)
            if cond.resolved:
                raise MarketNotOpen(
                    f"condition {condition_id} already resolved")
            self._check_outcome(cond, winning_outcome)
            cond.winning_outcome = winning_outcome

    # ------------------------------------------------------------------
    # Mint / burn
    # ------------------------------------------------------------------

    def mint(self, condition_id: str, outcome: int, holder: str,
             amount: int) -> int:
        """Credit `amount` shares. Returns the new balance."""
        with self._lock:
            cond = self._condition(condition_id)
            self._check_outcome(cond, outcome)
            self._check_amount(amount)
            key = (condition_id, outcome, holder)
            self.balances[key] = self.balances.get(key, 0) + amount
            skey = (condition_id, outcome)
            self.supply[skey] = self.supply.get(skey, 0) + amount
            return self.balances[key]

    def burn(self, condition_id: str, outcome: int, holder: str,
             amount: int) -> int:
        """Debit `amount` shares. Returns the new balance."""
        with self._lock:
            cond = self._condition(condition_id)
            self._check_outcome(cond, outcome)
            self._check_amount(amount)
            key = (condition_id, outcome, holder)
            held = self.balances.get(key, 0)
            if amount > held:
                raise InsufficientBalance(
                    f"{holder}: can't burn {amount} of outcome {outcome}, "
                    f"only holds {held}")
            self._debit(key, amount)
            return held - amount

    # ------------------------------------------------------------------
    # Redemption
    # ------------------------------------------------------------------

    def redeem(self, condition_id: str, holder: str) -> Redemption:
        """
        Pay out the holder's winning shares and burn all their shares in
        the condition. Losing shares are burned without payout.

        The payout is transferred before any balance changes, so a failed
        transfer leaves the ledger untouched.
        """
        with self._lock:
            cond = self._condition(condition_id)
            if not cond.resolved:
                raise MarketNotResolved(
                    f"condition {condition_id} is not resolved")

            held = self.balances_of(condition_id, holder)
            payout = held[cond.winning_outcome]
            losing = sum(held) - payout

            if payout > 0:
                self.collateral.transfer_out(holder, payout)

            for outcome, amount in enumerate(held):
                if amount > 0:
                    self._debit((condition_id, outcome, holder), amount)

        if payout or losing:
            log.info("redeemed", condition_id=condition_id, holder=holder,
                     payout=payout, burned_losing=losing)
        return Redemption(
            holder=holder,
            winning_shares=payout,
            burned_losing_shares=losing,
            payout=payout,
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def balance_of(self, condition_id: str, outcome: int, holder: str) -> int:
        return self.balances.get((condition_id, outcome, holder), 0)

    def balances_of(self, condition_id: str, holder: str) -> list[int]:
        cond = self._condition(condition_id)
        return [self.balance_of(condition_id, o, holder)
                for o in range(cond.outcome_count)]

    def total_supply(self, condition_id: str, outcome: int) -> int:
        return self.supply.get((condition_id, outcome), 0)

    def holders(self, condition_id: str) -> list[str]:
        """Holders with a non-zero balance in the condition."""
        return sorted({h for (c, _, h), v in self.balances.items()
                       if c == condition_id and v > 0})

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _condition(self, condition_id: str) -> Condition:
        cond = self.conditions.get(condition_id)
        if cond is None:
            raise InvalidParameters(f"condition {condition_id} not found")
        return cond

    @staticmethod
    def _check_outcome(cond: Condition, outcome: int) -> None:
        if isinstance(outcome, bool) or not isinstance(outcome, int) \
                or not 0 <= outcome < cond.outcome_count:
            raise InvalidParameters(
                f"outcome {outcome!r} out of range for "
                f"{cond.outcome_count} outcomes")

    @staticmethod
    def _check_amount(amount: int) -> None:
        if isinstance(amount, bool) or not isinstance(amount, int) \
                or amount <= 0:
            raise InvalidParameters(
                f"share amount must be a positive integer, got {amount!r}")

    def _debit(self, key: tuple[str, int, str], amount: int) -> None:
        remaining = self.balances[key] - amount
        if remaining:
            self.balances[key] = remaining
        else:
            del self.balances[key]
        skey = key[:2]
        self.supply[skey] -= amount
