"""
Collateral adapter. The only way value enters or leaves the market maker.

The market maker talks to a CollateralAdapter: pull a payment in from a
holder, push a payout out to a holder. What sits behind it (an on-chain
token, a custodial balance) is not the engine's concern.

InMemoryCollateral is a plain fungible token with balances and allowances,
used by the CLI, the API and the tests. It keeps an append-only journal of
every balance change, like a token's Transfer events.

Invariant: sum(balances) == total minted.
"""

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

import structlog

from amm.errors import (
    InsufficientAllowance, InsufficientBalance, InsufficientReserve,
    InvalidParameters,
)
from amm.models import _now


log = structlog.get_logger(__name__)

MINT = "<mint>"


def _check_amount(amount: int) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidParameters(f"amount must be an integer, got {amount!r}")
    if amount <= 0:
        raise InvalidParameters(f"amount must be positive, got {amount}")


class CollateralAdapter(ABC):

    @abstractmethod
    def transfer_in(self, sender: str, amount: int) -> None:
        """Pull `amount` from `sender` into the market maker's reserve.
        Raises InsufficientAllowance or InsufficientBalance."""

    @abstractmethod
    def transfer_out(self, recipient: str, amount: int) -> None:
        """Pay `amount` from the reserve to `recipient`.
        Raises InsufficientReserve."""


@dataclass
class Transfer:
    """Journal entry. sender == MINT for newly created tokens."""
    sender: str
    recipient: str
    amount: int
    created_at: str = field(default_factory=_now)


class InMemoryCollateral(CollateralAdapter):

    def __init__(self, symbol: str = "USDC", vault: str = "amm"):
        self.symbol = symbol
        self.vault = vault
        self.balances: dict[str, int] = {}
        self.allowances: dict[str, int] = {}
        self.transfers: list[Transfer] = []
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Token surface
    # ------------------------------------------------------------------

    def mint(self, holder: str, amount: int) -> int:
        """Create tokens from nothing (faucet). Returns the new balance."""
        _check_amount(amount)
        with self._lock:
            self.balances[holder] = self.balances.get(holder, 0) + amount
            self.transfers.append(Transfer(MINT, holder, amount))
            return self.balances[holder]

    def approve(self, holder: str, amount: int) -> None:
        """Let the market maker pull up to `amount` from `holder`."""
        if isinstance(amount, bool) or not isinstance(amount, int) or amount < 0:
            raise InvalidParameters(
                f"allowance must be a non-negative integer, got {amount!r}")
        with self._lock:
            self.allowances[holder] = amount

    def balance_of(self, holder: str) -> int:
        return self.balances.get(holder, 0)

    def allowance(self, holder: str) -> int:
        return self.allowances.get(holder, 0)

    @property
    def reserve(self) -> int:
        return self.balance_of(self.vault)

    def total_supply(self) -> int:
        return sum(t.amount for t in self.transfers if t.sender == MINT)

    # ------------------------------------------------------------------
    # Adapter
    # ------------------------------------------------------------------

    def transfer_in(self, sender: str, amount: int) -> None:
        _check_amount(amount)
        with self._lock:
            allowed = self.allowances.get(sender, 0)
            if allowed < amount:
                raise InsufficientAllowance(
                    f"{sender}: allowance {allowed}, need {amount}")
            held = self.balances.get(sender, 0)
            if held < amount:
                raise InsufficientBalance(
                    f"{sender}: balance {held}, need {amount}")
            self.allowances[sender] = allowed - amount
            self.balances[sender] = held - amount
            self.balances[self.vault] = self.balances.get(self.vault, 0) + amount
            self.transfers.append(Transfer(sender, self.vault, amount))
        log.debug("collateral_transfer_in", sender=sender, amount=amount)

    def transfer_out(self, recipient: str, amount: int) -> None:
        _check_amount(amount)
        with self._lock:
            reserve = self.balances.get(self.vault, 0)
            if reserve < amount:
                raise InsufficientReserve(
                    f"reserve {reserve}, need {amount}")
            self.balances[self.vault] = reserve - amount
            self.balances[recipient] = self.balances.get(recipient, 0) + amount
            self.transfers.append(Transfer(self.vault, recipient, amount))
        log.debug("collateral_transfer_out", recipient=recipient, amount=amount)
