"""
Market maker. Owns markets, runs LS-LMSR trading, resolution, redemption.

The market maker owns the pricing state (quantities, liquidity policy,
retained collateral) and talks to two collaborators:
  - the collateral adapter, for every payment in and payout out
  - the conditional token ledger, for every share minted or burned

Every trade is between a holder and the AMM.

Units:
  Quantities, shares and collateral are ints in the token's native unit.
  They are lifted to WAD for the cost function and brought back down with
  rounding that always favours the market:
    buy:  shares rounded DOWN (solver works on a one-unit grid)
    sell: refund rounded DOWN

Overround: buy pays `payment` but only payment * (1 - bps) buys shares;
sell refunds proceeds * (1 - bps). The difference stays in the market as
margin on top of what the cost function accounts for.

Solvency: a market starts holding C(q0) <= subsidy and every trade moves
collateral by at least the change in C, so collateral >= C(q) >= max(q).
The check is still made explicitly before each commit.

Atomicity: each mutation computes its full outcome on copies, checks
solvency, performs the collateral transfer (the only step that can fail
externally), and only then mints/burns and commits. A failure at any step
leaves no trace.

Concurrency: one re-entrant lock per condition_id serialises mutations of
a market. Commits replace the quantities list rather than editing it, so
readers never see a half-applied trade.
"""

import threading
from dataclasses import dataclass
from decimal import Decimal, ROUND_CEILING, ROUND_FLOOR

import structlog

from amm import fixed_point as fp
from amm import lmsr
from amm.collateral import CollateralAdapter
from amm.errors import (
    AMMError, AlreadyInitialized, InsufficientBalance, InsufficientCollateral,
    InvalidParameters, MarketNotOpen, MarketNotResolved, Unauthorized,
)
from amm.ledger import ConditionalTokenLedger
from amm.models import (
    BPS_DENOMINATOR, Market, MarketStatus, Redemption, Trade, _now,
)


log = structlog.get_logger(__name__)

PRICE_QUANTUM = Decimal(10) ** -6


@dataclass
class Quote:
    """What a trade would do, computed without touching state."""
    side: str
    outcome: int
    shares: int
    collateral: int
    fee: int
    avg_price: Decimal


def _check_int(name: str, value, minimum: int) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidParameters(f"{name} must be an integer, got {value!r}")
    if value < minimum:
        raise InvalidParameters(f"{name} must be >= {minimum}, got {value}")


def _avg_price(collateral: int, shares: int, rounding: str) -> Decimal:
    return (Decimal(collateral) / Decimal(shares)).quantize(
        PRICE_QUANTUM, rounding=rounding)


class MarketMaker:

    def __init__(self, collateral: CollateralAdapter,
                 ledger: ConditionalTokenLedger | None = None,
                 operator: str = "operator",
                 max_iterations: int = lmsr.MAX_SOLVER_ITERATIONS):
        self.collateral = collateral
        self.ledger = ledger or ConditionalTokenLedger(collateral)
        self.operator = operator
        self.max_iterations = max_iterations
        self.markets: dict[str, Market] = {}
        self._locks: dict[str, threading.RLock] = {}
        self._registry_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Market lifecycle
    # ------------------------------------------------------------------

    def setup(self, condition_id: str, num_outcomes: int, beta_or_b,
              initial_subsidy: int, overround_bps: int, *, sender: str,
              liquidity: str = lmsr.LiquiditySensitive.kind,
              question: str = "") -> Market:
        """
        Open a market for `condition_id`, funded by the operator.

        beta_or_b is alpha for the "sensitive" policy (b = alpha * Σq) or
        b itself for the "fixed" policy; int, Decimal or numeric string.
        Quantities are seeded evenly so that C(q0) <= initial_subsidy.
        """
        self._require_operator(sender, "setup")
        with self._market_lock(condition_id, missing=None):
            if (condition_id in self.markets
                    or condition_id in self.ledger.conditions):
                raise AlreadyInitialized(
                    f"market {condition_id} already initialized")
            _check_int("num_outcomes", num_outcomes, 2)
            _check_int("initial_subsidy", initial_subsidy, 1)
            _check_int("overround_bps", overround_bps, 0)
            if overround_bps >= BPS_DENOMINATOR:
                raise InvalidParameters(
                    f"overround_bps must be < {BPS_DENOMINATOR}, "
                    f"got {overround_bps}")

            policy = lmsr.make_policy(liquidity, fp.to_wad(beta_or_b))
            seed = fp.to_units(
                policy.seed(fp.from_units(initial_subsidy), num_outcomes))
            q0 = [fp.from_units(seed)] * num_outcomes
            if sum(q0) <= 0 and policy.kind == lmsr.LiquiditySensitive.kind:
                raise InvalidParameters(
                    f"subsidy {initial_subsidy} too small to seed "
                    f"{num_outcomes} outcomes")
            # Surfaces overflow for extreme parameters before any transfer
            lmsr.cost(q0, policy)

            self.collateral.transfer_in(sender, initial_subsidy)
            self.ledger.prepare_condition(condition_id, num_outcomes)
            market = Market.new(
                condition_id=condition_id,
                num_outcomes=num_outcomes,
                policy=policy,
                overround_bps=overround_bps,
                initial_subsidy=initial_subsidy,
                seed=seed,
                question=question,
            )
            self.markets[condition_id] = market

        log.info("market_setup", condition_id=condition_id,
                 num_outcomes=num_outcomes, policy=repr(policy),
                 subsidy=initial_subsidy, seed=seed,
                 overround_bps=overround_bps)
        return market

    def resolve(self, condition_id: str, winning_outcome: int, *,
                sender: str) -> Market:
        """Record the oracle's answer. Irreversible."""
        self._require_operator(sender, "resolve")
        with self._market_lock(condition_id):
            market = self._get_open_market(condition_id)
            self._check_outcome(market, winning_outcome)
            self.ledger.report_resolution(condition_id, winning_outcome)
            market.status = MarketStatus.RESOLVED
            market.winning_outcome = winning_outcome
            market.resolved_at = _now()

        log.info("market_resolved", condition_id=condition_id,
                 winning_outcome=winning_outcome,
                 collateral=market.collateral_balance)
        return market

    def redeem(self, condition_id: str, holder: str) -> Redemption:
        """
        Settle `holder` in a resolved market: winning shares pay 1:1 from
        the market's collateral, losing shares are burned. Calling again
        pays nothing.
        """
        with self._market_lock(condition_id, missing=MarketNotResolved):
            market = self.markets.get(condition_id)
            if market is None or market.status != MarketStatus.RESOLVED:
                raise MarketNotResolved(
                    f"market {condition_id} is not resolved")

            owed = self.ledger.balance_of(
                condition_id, market.winning_outcome, holder)
            if owed > market.collateral_balance:
                raise InsufficientCollateral(
                    f"market {condition_id}: owes {owed}, "
                    f"holds {market.collateral_balance}")

            redemption = self.ledger.redeem(condition_id, holder)
            market.collateral_balance -= redemption.payout
            if redemption.payout or redemption.burned_losing_shares:
                market.redemptions.append(redemption)
        return redemption

    # ------------------------------------------------------------------
    # Trading
    # ------------------------------------------------------------------

    def quote_buy(self, condition_id: str, outcome: int,
                  payment: int) -> Quote:
        market = self._get_open_market(condition_id)
        return self._quote_buy(market, outcome, payment)

    def quote_sell(self, condition_id: str, outcome: int,
                   shares: int) -> Quote:
        market = self._get_open_market(condition_id)
        return self._quote_sell(market, outcome, shares)

    def buy(self, condition_id: str, outcome: int, payment: int, *,
            buyer: str) -> Trade:
        """
        Spend `payment` collateral on shares of `outcome`.

        The whole payment is pulled; shares are priced on the payment net
        of the overround and rounded down to whole units.
        """
        with self._market_lock(condition_id):
            market = self._get_open_market(condition_id)
            try:
                quote = self._quote_buy(market, outcome, payment)
                q_after = list(market.quantities)
                q_after[outcome] += quote.shares
                collateral_after = market.collateral_balance + payment
                self._check_solvency(market, q_after, collateral_after)
                self.collateral.transfer_in(buyer, payment)
            except AMMError as e:
                log.warning("trade_rejected", condition_id=condition_id,
                            side="buy", holder=buyer, outcome=outcome,
                            amount=payment, error=e.code)
                raise

            self.ledger.mint(condition_id, outcome, buyer, quote.shares)
            return self._commit(market, buyer, quote, q_after,
                                collateral_after)

    def sell(self, condition_id: str, outcome: int, shares: int, *,
             seller: str) -> Trade:
        """
        Sell `shares` of `outcome` back to the AMM for collateral.
        The refund is the cost-function proceeds net of the overround.
        """
        with self._market_lock(condition_id):
            market = self._get_open_market(condition_id)
            try:
                self._check_outcome(market, outcome)
                _check_int("shares", shares, 1)
                held = self.ledger.balance_of(condition_id, outcome, seller)
                if shares > held:
                    raise InsufficientBalance(
                        f"{seller}: can't sell {shares} of outcome "
                        f"{outcome}, only holds {held}")
                quote = self._quote_sell(market, outcome, shares)
                q_after = list(market.quantities)
                q_after[outcome] -= shares
                collateral_after = market.collateral_balance - quote.collateral
                self._check_solvency(market, q_after, collateral_after)
                self.collateral.transfer_out(seller, quote.collateral)
            except AMMError as e:
                log.warning("trade_rejected", condition_id=condition_id,
                            side="sell", holder=seller, outcome=outcome,
                            amount=shares, error=e.code)
                raise

            self.ledger.burn(condition_id, outcome, seller, shares)
            return self._commit(market, seller, quote, q_after,
                                collateral_after)

    def _quote_buy(self, market: Market, outcome: int, payment: int) -> Quote:
        self._check_outcome(market, outcome)
        _check_int("payment", payment, 1)

        effective = market.after_fee(payment)
        if effective <= 0:
            raise InvalidParameters(
                f"payment {payment} too small after "
                f"{market.overround_bps} bps overround")

        shares = fp.to_units(lmsr.shares_for_payment(
            self._wad_quantities(market), market.policy, outcome,
            fp.from_units(effective), step=fp.WAD,
            max_iterations=self.max_iterations))
        if shares <= 0:
            raise InvalidParameters(
                f"payment {payment} too small for any shares")

        return Quote(
            side="buy",
            outcome=outcome,
            shares=shares,
            collateral=payment,
            fee=payment - effective,
            avg_price=_avg_price(payment, shares, ROUND_CEILING),
        )

    def _quote_sell(self, market: Market, outcome: int, shares: int) -> Quote:
        self._check_outcome(market, outcome)
        _check_int("shares", shares, 1)
        outstanding = market.quantities[outcome] - market.seed
        if shares > outstanding:
            raise InvalidParameters(
                f"can't sell {shares} of outcome {outcome}, "
                f"only {outstanding} outstanding")

        gross = fp.to_units(lmsr.sale_proceeds(
            self._wad_quantities(market), market.policy, outcome,
            fp.from_units(shares)))
        refund = market.after_fee(gross)
        if refund <= 0:
            raise InvalidParameters(
                f"selling {shares} of outcome {outcome} refunds nothing")

        return Quote(
            side="sell",
            outcome=outcome,
            shares=shares,
            collateral=refund,
            fee=gross - refund,
            avg_price=_avg_price(refund, shares, ROUND_FLOOR),
        )

    def _commit(self, market: Market, holder: str, quote: Quote,
                q_after: list[int], collateral_after: int) -> Trade:
        market.quantities = q_after
        market.collateral_balance = collateral_after
        market.fees_collected += quote.fee

        trade = Trade(
            trade_id=market.next_trade_id(),
            side=quote.side,
            holder=holder,
            outcome=quote.outcome,
            shares=quote.shares,
            collateral=quote.collateral,
            fee=quote.fee,
            avg_price=quote.avg_price,
        )
        market.trades.append(trade)

        log.info("trade_executed", condition_id=market.condition_id,
                 trade_id=trade.trade_id, side=trade.side, holder=holder,
                 outcome=trade.outcome, shares=trade.shares,
                 collateral=trade.collateral, fee=trade.fee)
        return trade

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_price(self, condition_id: str, outcome: int) -> Decimal:
        market = self._get_open_market(condition_id)
        self._check_outcome(market, outcome)
        return self.get_prices(condition_id)[outcome]

    def get_prices(self, condition_id: str) -> list[Decimal]:
        market = self._get_open_market(condition_id)
        return [fp.to_decimal(p) for p in lmsr.prices(
            self._wad_quantities(market), market.policy)]

    def get_quantities(self, condition_id: str) -> list[int]:
        return list(self._get_market(condition_id).quantities)

    def get_status(self, condition_id: str) -> MarketStatus:
        market = self.markets.get(condition_id)
        if market is None:
            return MarketStatus.UNINITIALIZED
        return market.status

    def get_collateral_balance(self, condition_id: str) -> int:
        return self._get_market(condition_id).collateral_balance

    def get_liquidity(self, condition_id: str) -> Decimal:
        """Current b(q)."""
        market = self._get_market(condition_id)
        return fp.to_decimal(lmsr.liquidity(
            self._wad_quantities(market), market.policy))

    def max_loss(self, condition_id: str) -> Decimal:
        """Subsidy at risk, measured at the seeded starting quantities."""
        market = self._get_market(condition_id)
        q0 = [fp.from_units(market.seed)] * market.num_outcomes
        return fp.to_decimal(lmsr.subsidy_at_risk(q0, market.policy))

    def solvency_margin(self, condition_id: str) -> int:
        """collateral_balance - worst-case liability. Never negative."""
        market = self._get_market(condition_id)
        return (market.collateral_balance
                - lmsr.worst_case_liability(market.quantities))

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _market_lock(self, condition_id: str,
                     missing: type[AMMError] | None = MarketNotOpen
                     ) -> threading.RLock:
        """
        Lock for `condition_id`. Ids with no market raise `missing` without
        registering a lock; setup passes missing=None to create one.
        """
        with self._registry_lock:
            lock = self._locks.get(condition_id)
            if lock is None:
                if missing is not None and condition_id not in self.markets:
                    raise missing(f"market {condition_id} is uninitialized")
                lock = self._locks[condition_id] = threading.RLock()
            return lock

    def _require_operator(self, sender: str, action: str) -> None:
        if sender != self.operator:
            raise Unauthorized(f"{sender} may not {action}: operator only")

    def _get_market(self, condition_id: str) -> Market:
        market = self.markets.get(condition_id)
        if market is None:
            raise MarketNotOpen(f"market {condition_id} is uninitialized")
        return market

    def _get_open_market(self, condition_id: str) -> Market:
        market = self._get_market(condition_id)
        if market.status != MarketStatus.OPEN:
            raise MarketNotOpen(
                f"market {condition_id} is {market.status.value}")
        return market

    @staticmethod
    def _check_outcome(market: Market, outcome: int) -> None:
        if isinstance(outcome, bool) or not isinstance(outcome, int) \
                or not 0 <= outcome < market.num_outcomes:
            raise InvalidParameters(
                f"outcome {outcome!r} out of range for "
                f"{market.num_outcomes} outcomes")

    @staticmethod
    def _wad_quantities(market: Market) -> list[int]:
        return [fp.from_units(v) for v in market.quantities]

    @staticmethod
    def _check_solvency(market: Market, q_after: list[int],
                        collateral_after: int) -> None:
        liability = lmsr.worst_case_liability(q_after)
        if collateral_after < liability:
            raise InsufficientCollateral(
                f"market {market.condition_id}: collateral "
                f"{collateral_after} below worst-case liability {liability}")
