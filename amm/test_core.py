"""
Core test suite. These tests define the contract the engine must satisfy.

Covers the market maker end to end against the in-memory collateral token
and the conditional token ledger: setup, trading, solvency under random
order flow, resolution and redemption, persistence and concurrent buys.
"""

import json
import random
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

import pytest
from structlog.testing import capture_logs

from amm import fixed_point as fp
from amm import lmsr
from amm.collateral import InMemoryCollateral
from amm.errors import (
    AlreadyInitialized, InsufficientAllowance, InsufficientBalance,
    ConvergenceFailure, InsufficientCollateral, InsufficientReserve,
    InvalidParameters, MarketNotOpen, MarketNotResolved, Unauthorized,
)
from amm.ledger import ConditionalTokenLedger
from amm.market_maker import MarketMaker
from amm.models import MarketStatus, make_condition_id
from amm.persistence import load_snapshot, save_snapshot


OPERATOR = "operator"
TRADERS = ("alice", "bob", "carol")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def fund(token, holder, amount):
    token.mint(holder, amount)
    token.approve(holder, amount)


def fresh_system(num_outcomes=2, beta="0.05", subsidy=1000,
                 overround_bps=200, liquidity="sensitive",
                 traders=TRADERS, trader_balance=10_000):
    """
    Token, market maker, one open market funded by the operator, and
    traders holding `trader_balance` with a matching allowance.
    """
    token = InMemoryCollateral()
    mm = MarketMaker(token, operator=OPERATOR)
    fund(token, OPERATOR, subsidy)
    cid = make_condition_id("oracle", "Will it rain tomorrow?", num_outcomes)
    mm.setup(cid, num_outcomes, beta, subsidy, overround_bps,
             sender=OPERATOR, liquidity=liquidity)
    for t in traders:
        fund(token, t, trader_balance)
    return mm, token, cid


def check_invariants(mm, token, cid):
    m = mm.markets[cid]
    assert m.collateral_balance >= max(m.quantities)
    assert mm.solvency_margin(cid) >= 0
    assert token.reserve == sum(x.collateral_balance
                                for x in mm.markets.values())
    assert sum(token.balances.values()) == token.total_supply()
    for o in range(m.num_outcomes):
        assert mm.ledger.total_supply(cid, o) + m.seed == m.quantities[o]
    if m.status == MarketStatus.OPEN:
        total = sum(mm.get_prices(cid))
        assert abs(total - 1) <= Decimal("1e-9")


def random_trades(mm, token, cid, n=200, seed=42):
    rng = random.Random(seed)
    m = mm.markets[cid]
    executed = 0
    for _ in range(n):
        trader = rng.choice(TRADERS)
        outcome = rng.randrange(m.num_outcomes)
        held = mm.ledger.balance_of(cid, outcome, trader)
        if held and rng.random() < 0.3:
            try:
                mm.sell(cid, outcome, rng.randint(1, held), seller=trader)
            except InvalidParameters:
                continue  # dust sale, refunds nothing
        else:
            mm.buy(cid, outcome, rng.randint(5, 500), buyer=trader)
        executed += 1
        check_invariants(mm, token, cid)
    return executed


# ---------------------------------------------------------------------------
# Setup
# ---------------------------------------------------------------------------

class TestSetup:

    def test_sensitive_market_seeded_below_subsidy(self):
        mm, token, cid = fresh_system()
        m = mm.markets[cid]
        assert m.seed == 935
        assert m.quantities == [935, 935]
        assert m.collateral_balance == 1000
        assert token.reserve == 1000
        assert token.balance_of(OPERATOR) == 0
        assert mm.get_prices(cid) == [Decimal("0.5"), Decimal("0.5")]
        assert mm.get_liquidity(cid) == Decimal("93.5")
        assert mm.solvency_margin(cid) == 65
        assert mm.get_status(cid) == MarketStatus.OPEN

    def test_fixed_market(self):
        mm, _, cid = fresh_system(beta="1000", liquidity="fixed")
        m = mm.markets[cid]
        assert m.seed == 306
        assert mm.get_liquidity(cid) == Decimal("1000")

    def test_three_outcomes_equal_prices(self):
        mm, _, cid = fresh_system(num_outcomes=3)
        prices = mm.get_prices(cid)
        assert len(set(prices)) == 1
        assert prices[0] == fp.to_decimal(fp.WAD // 3)

    def test_operator_only(self):
        token = InMemoryCollateral()
        mm = MarketMaker(token, operator=OPERATOR)
        fund(token, "mallory", 1000)
        with pytest.raises(Unauthorized):
            mm.setup("c1", 2, "0.05", 1000, 0, sender="mallory")
        assert mm.get_status("c1") == MarketStatus.UNINITIALIZED

    def test_already_initialized(self):
        mm, token, cid = fresh_system()
        fund(token, OPERATOR, 1000)
        with pytest.raises(AlreadyInitialized):
            mm.setup(cid, 2, "0.05", 1000, 0, sender=OPERATOR)
        assert token.balance_of(OPERATOR) == 1000

    @pytest.mark.parametrize("kwargs", [
        {"num_outcomes": 1},
        {"subsidy": 0},
        {"overround_bps": 10_000},
        {"overround_bps": -1},
        {"beta": "0"},
        {"beta": "-0.05"},
        {"beta": "abc"},
        {"liquidity": "quadratic"},
        {"subsidy": 1},
        {"beta": "1000", "liquidity": "fixed", "subsidy": 100},
    ])
    def test_invalid_parameters(self, kwargs):
        params = {"num_outcomes": 2, "beta": "0.05", "subsidy": 1000,
                  "overround_bps": 0, "liquidity": "sensitive"}
        params.update(kwargs)
        token = InMemoryCollateral()
        mm = MarketMaker(token, operator=OPERATOR)
        fund(token, OPERATOR, 1000)
        with pytest.raises(InvalidParameters):
            mm.setup("c1", params["num_outcomes"], params["beta"],
                     params["subsidy"], params["overround_bps"],
                     sender=OPERATOR, liquidity=params["liquidity"])
        assert token.balance_of(OPERATOR) == 1000
        assert "c1" not in mm.ledger.conditions

    def test_subsidy_needs_allowance(self):
        token = InMemoryCollateral()
        mm = MarketMaker(token, operator=OPERATOR)
        token.mint(OPERATOR, 1000)
        with pytest.raises(InsufficientAllowance):
            mm.setup("c1", 2, "0.05", 1000, 0, sender=OPERATOR)
        assert mm.get_status("c1") == MarketStatus.UNINITIALIZED
        assert "c1" not in mm.ledger.conditions

    def test_unknown_market_queries(self):
        mm, _, _ = fresh_system()
        assert mm.get_status("nope") == MarketStatus.UNINITIALIZED
        with pytest.raises(MarketNotOpen):
            mm.get_prices("nope")
        with pytest.raises(MarketNotOpen):
            mm.get_quantities("nope")
        with pytest.raises(MarketNotOpen):
            mm.buy("nope", 0, 100, buyer="alice")

    def test_unknown_market_registers_no_lock(self):
        mm, _, _ = fresh_system()
        for i in range(3):
            with pytest.raises(MarketNotOpen):
                mm.buy(f"nope-{i}", 0, 100, buyer="alice")
            with pytest.raises(MarketNotOpen):
                mm.sell(f"nope-{i}", 0, 1, seller="alice")
            with pytest.raises(MarketNotOpen):
                mm.resolve(f"nope-{i}", 0, sender=OPERATOR)
            with pytest.raises(MarketNotResolved):
                mm.redeem(f"nope-{i}", "alice")
        assert not any(k.startswith("nope") for k in mm._locks)

    def test_max_loss(self):
        mm, _, cid = fresh_system()
        # 0.05 * 2 * 935 * ln 2
        assert Decimal("64.80") < mm.max_loss(cid) < Decimal("64.82")
        mm, _, cid = fresh_system(beta="1000", liquidity="fixed")
        assert mm.max_loss(cid) == fp.to_decimal(
            lmsr.max_loss(fp.from_units(1000), 2))
        with pytest.raises(MarketNotOpen):
            mm.max_loss("nope")

    def test_condition_id_is_content_addressed(self):
        a = make_condition_id("oracle", "q", 2)
        assert a == make_condition_id("oracle", "q", 2)
        assert a != make_condition_id("oracle", "q", 3)
        assert a.startswith("0x") and len(a) == 66


# ---------------------------------------------------------------------------
# Buying
# ---------------------------------------------------------------------------

class TestBuy:

    def test_buy_moves_price(self):
        mm, token, cid = fresh_system()
        trade = mm.buy(cid, 0, 100, buyer="alice")

        assert trade.shares == 140
        assert trade.collateral == 100
        assert trade.fee == 2
        assert trade.trade_id == 1
        assert trade.avg_price == Decimal("0.714286")

        m = mm.markets[cid]
        assert m.quantities == [1075, 935]
        assert m.collateral_balance == 1100
        assert m.fees_collected == 2
        assert token.balance_of("alice") == 9900
        assert mm.ledger.balance_of(cid, 0, "alice") == 140

        p0 = mm.get_price(cid, 0)
        assert Decimal("0.79") < p0 < Decimal("0.81")
        check_invariants(mm, token, cid)

    def test_quote_matches_buy(self):
        mm, _, cid = fresh_system()
        quote = mm.quote_buy(cid, 1, 250)
        assert mm.get_quantities(cid) == [935, 935]
        trade = mm.buy(cid, 1, 250, buyer="bob")
        assert (trade.shares, trade.fee) == (quote.shares, quote.fee)

    def test_large_buy_stays_solvent(self):
        mm, token, cid = fresh_system(trader_balance=2_000_000)
        mm.buy(cid, 0, 1_000_000, buyer="alice")
        assert mm.get_price(cid, 0) > Decimal("0.99")
        check_invariants(mm, token, cid)

    def test_shares_round_down(self):
        mm, _, cid = fresh_system(overround_bps=0)
        trade = mm.buy(cid, 0, 37, buyer="alice")
        q = [fp.from_units(935)] * 2
        policy = mm.markets[cid].policy
        paid = lmsr.cost_of_trade(q, policy, 0, fp.from_units(trade.shares))
        more = lmsr.cost_of_trade(q, policy, 0, fp.from_units(trade.shares + 1))
        assert paid <= fp.from_units(37) < more

    @pytest.mark.parametrize("outcome, payment", [
        (2, 100), (-1, 100), (True, 100), (0, 0), (0, -5), (0, 1), (0, "10"),
    ])
    def test_invalid_buy(self, outcome, payment):
        mm, _, cid = fresh_system()
        with pytest.raises(InvalidParameters):
            mm.buy(cid, outcome, payment, buyer="alice")

    def test_rejected_trade_leaves_no_trace(self):
        mm, token, cid = fresh_system(traders=())
        fund(token, "dave", 50)
        with pytest.raises(InsufficientAllowance):
            mm.buy(cid, 0, 100, buyer="dave")
        token.approve("dave", 100)
        with pytest.raises(InsufficientBalance):
            mm.buy(cid, 0, 100, buyer="dave")

        m = mm.markets[cid]
        assert m.quantities == [935, 935]
        assert m.collateral_balance == 1000
        assert m.trades == []
        assert mm.ledger.balance_of(cid, 0, "dave") == 0
        assert token.balance_of("dave") == 50

    def test_rejection_is_logged(self):
        mm, _, cid = fresh_system()
        with capture_logs() as logs:
            mm.buy(cid, 0, 100, buyer="alice")
            with pytest.raises(InsufficientAllowance):
                mm.buy(cid, 0, 100, buyer="nobody")
        events = [e["event"] for e in logs]
        assert "trade_executed" in events
        rejected = [e for e in logs if e["event"] == "trade_rejected"]
        assert rejected[0]["error"] == "insufficient_allowance"

    def test_solvency_check_rejects_atomically(self):
        mm, token, cid = fresh_system()
        m = mm.markets[cid]
        m.collateral_balance = 900
        with pytest.raises(InsufficientCollateral):
            mm.buy(cid, 0, 10, buyer="alice")
        assert m.quantities == [935, 935]
        assert m.collateral_balance == 900
        assert m.trades == []
        assert token.balance_of("alice") == 10_000
        assert token.reserve == 1000
        assert mm.ledger.balance_of(cid, 0, "alice") == 0

    def test_convergence_failure_leaves_no_trace(self):
        mm, token, cid = fresh_system()
        mm.max_iterations = 1
        with capture_logs() as logs:
            with pytest.raises(ConvergenceFailure):
                mm.buy(cid, 0, 100, buyer="alice")
        assert logs[-1]["error"] == "convergence_failure"
        m = mm.markets[cid]
        assert m.quantities == [935, 935]
        assert m.collateral_balance == 1000
        assert m.trades == []
        assert token.balance_of("alice") == 10_000
        assert mm.ledger.balance_of(cid, 0, "alice") == 0


# ---------------------------------------------------------------------------
# Selling
# ---------------------------------------------------------------------------

class TestSell:

    def test_round_trip_favors_market(self):
        mm, token, cid = fresh_system()
        bought = mm.buy(cid, 0, 100, buyer="alice")
        sold = mm.sell(cid, 0, bought.shares, seller="alice")

        assert sold.collateral == 95
        assert sold.fee == 2
        assert token.balance_of("alice") == 9995
        m = mm.markets[cid]
        assert m.quantities == [935, 935]
        assert m.collateral_balance == 1005
        assert mm.ledger.balance_of(cid, 0, "alice") == 0
        check_invariants(mm, token, cid)

    def test_partial_sell(self):
        mm, token, cid = fresh_system()
        mm.buy(cid, 1, 300, buyer="bob")
        before = mm.get_price(cid, 1)
        held = mm.ledger.balance_of(cid, 1, "bob")
        mm.sell(cid, 1, held // 2, seller="bob")
        assert mm.get_price(cid, 1) < before
        assert mm.ledger.balance_of(cid, 1, "bob") == held - held // 2
        check_invariants(mm, token, cid)

    def test_cant_sell_more_than_held(self):
        mm, _, cid = fresh_system()
        mm.buy(cid, 0, 100, buyer="alice")
        mm.buy(cid, 0, 100, buyer="bob")
        with pytest.raises(InsufficientBalance):
            mm.sell(cid, 0, 141, seller="alice")
        with pytest.raises(InsufficientBalance):
            mm.sell(cid, 1, 1, seller="alice")

    def test_sell_invalid(self):
        mm, _, cid = fresh_system()
        mm.buy(cid, 0, 100, buyer="alice")
        for outcome, shares in ((0, 0), (0, -1), (3, 1)):
            with pytest.raises(InvalidParameters):
                mm.sell(cid, outcome, shares, seller="alice")

    def test_sell_refunding_nothing_rejected(self):
        mm, token, cid = fresh_system()
        mm.buy(cid, 0, 100, buyer="alice")
        before = (list(mm.markets[cid].quantities),
                  mm.get_collateral_balance(cid), token.balance_of("alice"))
        # one share is worth under one unit of collateral here
        with pytest.raises(InvalidParameters):
            mm.sell(cid, 0, 1, seller="alice")
        with pytest.raises(InvalidParameters):
            mm.quote_sell(cid, 0, 1)
        assert before == (mm.markets[cid].quantities,
                          mm.get_collateral_balance(cid),
                          token.balance_of("alice"))
        assert mm.ledger.balance_of(cid, 0, "alice") == 140
        assert len(mm.markets[cid].trades) == 1

    def test_quote_sell(self):
        mm, _, cid = fresh_system()
        mm.buy(cid, 0, 100, buyer="alice")
        quote = mm.quote_sell(cid, 0, 140)
        assert (quote.collateral, quote.fee) == (95, 2)
        with pytest.raises(InvalidParameters):
            mm.quote_sell(cid, 0, 141)


# ---------------------------------------------------------------------------
# Solvency under random order flow
# ---------------------------------------------------------------------------

class TestSolvency:

    @pytest.mark.parametrize("liquidity, beta, num_outcomes", [
        ("sensitive", "0.05", 2),
        ("sensitive", "0.05", 3),
        ("sensitive", "0.2", 5),
        ("fixed", "100", 2),
        ("fixed", "100", 3),
    ])
    def test_random_trading(self, liquidity, beta, num_outcomes):
        mm, token, cid = fresh_system(
            num_outcomes=num_outcomes, beta=beta, liquidity=liquidity,
            trader_balance=1_000_000)
        assert random_trades(mm, token, cid, n=200) > 100
        assert mm.markets[cid].fees_collected > 0

    def test_solvent_through_settlement(self):
        mm, token, cid = fresh_system(num_outcomes=3,
                                      trader_balance=1_000_000)
        random_trades(mm, token, cid, n=150, seed=7)
        mm.resolve(cid, 2, sender=OPERATOR)
        for t in TRADERS:
            mm.redeem(cid, t)
        m = mm.markets[cid]
        assert m.collateral_balance >= m.seed
        assert token.reserve == m.collateral_balance
        assert sum(token.balances.values()) == token.total_supply()


# ---------------------------------------------------------------------------
# Resolution and redemption
# ---------------------------------------------------------------------------

class TestResolveRedeem:

    def test_winners_paid_losers_burned(self):
        mm, token, cid = fresh_system()
        a = mm.buy(cid, 0, 100, buyer="alice")
        b = mm.buy(cid, 1, 50, buyer="bob")
        collateral = mm.get_collateral_balance(cid)

        mm.resolve(cid, 0, sender=OPERATOR)
        assert mm.get_status(cid) == MarketStatus.RESOLVED

        r = mm.redeem(cid, "alice")
        assert r.payout == a.shares
        assert token.balance_of("alice") == 9900 + a.shares
        assert mm.get_collateral_balance(cid) == collateral - a.shares

        r = mm.redeem(cid, "bob")
        assert r.payout == 0
        assert r.burned_losing_shares == b.shares
        assert mm.ledger.balances_of(cid, "bob") == [0, 0]
        assert len(mm.markets[cid].redemptions) == 2

    def test_redeem_twice_pays_nothing(self):
        mm, token, cid = fresh_system()
        mm.buy(cid, 1, 100, buyer="alice")
        mm.resolve(cid, 1, sender=OPERATOR)
        first = mm.redeem(cid, "alice")
        balance = token.balance_of("alice")
        second = mm.redeem(cid, "alice")
        assert first.payout > 0
        assert second.payout == 0
        assert token.balance_of("alice") == balance
        assert len(mm.markets[cid].redemptions) == 1

    def test_redeem_before_resolution(self):
        mm, _, cid = fresh_system()
        with pytest.raises(MarketNotResolved):
            mm.redeem(cid, "alice")
        with pytest.raises(MarketNotResolved):
            mm.redeem("nope", "alice")

    def test_resolve_rules(self):
        mm, _, cid = fresh_system()
        with pytest.raises(Unauthorized):
            mm.resolve(cid, 0, sender="alice")
        with pytest.raises(InvalidParameters):
            mm.resolve(cid, 2, sender=OPERATOR)
        mm.resolve(cid, 0, sender=OPERATOR)
        with pytest.raises(MarketNotOpen):
            mm.resolve(cid, 1, sender=OPERATOR)
        with pytest.raises(MarketNotOpen):
            mm.resolve("nope", 0, sender=OPERATOR)

    def test_no_trading_after_resolution(self):
        mm, _, cid = fresh_system()
        mm.buy(cid, 0, 100, buyer="alice")
        mm.resolve(cid, 0, sender=OPERATOR)
        with pytest.raises(MarketNotOpen):
            mm.buy(cid, 0, 100, buyer="bob")
        with pytest.raises(MarketNotOpen):
            mm.sell(cid, 0, 10, seller="alice")
        with pytest.raises(MarketNotOpen):
            mm.get_prices(cid)
        assert mm.get_quantities(cid) == [1075, 935]


# ---------------------------------------------------------------------------
# Ledger and collateral in isolation
# ---------------------------------------------------------------------------

class TestLedger:

    def test_mint_burn_supply(self):
        ledger = ConditionalTokenLedger(InMemoryCollateral())
        ledger.prepare_condition("c", 3)
        ledger.mint("c", 2, "alice", 10)
        ledger.mint("c", 2, "bob", 5)
        assert ledger.total_supply("c", 2) == 15
        assert ledger.burn("c", 2, "alice", 4) == 6
        assert ledger.total_supply("c", 2) == 11
        assert ledger.balances_of("c", "alice") == [0, 0, 6]
        assert ledger.holders("c") == ["alice", "bob"]
        with pytest.raises(InsufficientBalance):
            ledger.burn("c", 2, "bob", 6)

    def test_condition_rules(self):
        ledger = ConditionalTokenLedger(InMemoryCollateral())
        ledger.prepare_condition("c", 2)
        with pytest.raises(AlreadyInitialized):
            ledger.prepare_condition("c", 2)
        with pytest.raises(InvalidParameters):
            ledger.prepare_condition("d", 1)
        with pytest.raises(InvalidParameters):
            ledger.mint("unknown", 0, "alice", 1)
        with pytest.raises(InvalidParameters):
            ledger.mint("c", 2, "alice", 1)
        with pytest.raises(MarketNotResolved):
            ledger.redeem("c", "alice")
        ledger.report_resolution("c", 1)
        with pytest.raises(MarketNotOpen):
            ledger.report_resolution("c", 0)

    def test_failed_payout_leaves_balances(self):
        token = InMemoryCollateral()
        ledger = ConditionalTokenLedger(token)
        ledger.prepare_condition("c", 2)
        ledger.mint("c", 0, "alice", 10)
        ledger.report_resolution("c", 0)
        with pytest.raises(InsufficientReserve):
            ledger.redeem("c", "alice")
        assert ledger.balance_of("c", 0, "alice") == 10


class TestCollateral:

    def test_transfer_in_needs_allowance_and_balance(self):
        token = InMemoryCollateral()
        token.mint("alice", 100)
        with pytest.raises(InsufficientAllowance):
            token.transfer_in("alice", 10)
        token.approve("alice", 500)
        with pytest.raises(InsufficientBalance):
            token.transfer_in("alice", 200)
        token.transfer_in("alice", 60)
        assert token.balance_of("alice") == 40
        assert token.allowance("alice") == 440
        assert token.reserve == 60

    def test_transfer_out_limited_by_reserve(self):
        token = InMemoryCollateral()
        fund(token, "alice", 100)
        token.transfer_in("alice", 100)
        token.transfer_out("bob", 30)
        with pytest.raises(InsufficientReserve):
            token.transfer_out("bob", 71)
        assert token.balance_of("bob") == 30
        assert sum(token.balances.values()) == token.total_supply() == 100

    @pytest.mark.parametrize("amount", [0, -1, True, 1.5])
    def test_invalid_amounts(self, amount):
        token = InMemoryCollateral()
        with pytest.raises(InvalidParameters):
            token.mint("alice", amount)

    def test_negative_allowance(self):
        with pytest.raises(InvalidParameters):
            InMemoryCollateral().approve("alice", -1)


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

class TestPersistence:

    def test_snapshot_round_trip(self, tmp_path):
        mm, token, cid = fresh_system(num_outcomes=3)
        mm.buy(cid, 0, 100, buyer="alice")
        mm.buy(cid, 2, 40, buyer="bob")
        mm.sell(cid, 0, 20, seller="alice")
        path = str(tmp_path / "state.json")
        save_snapshot(mm, path)

        loaded = load_snapshot(path)
        m, lm = mm.markets[cid], loaded.markets[cid]
        assert lm.quantities == m.quantities
        assert lm.collateral_balance == m.collateral_balance
        assert lm.policy == m.policy
        assert lm.trades == m.trades
        assert loaded.operator == OPERATOR
        assert loaded.collateral.balances == token.balances
        assert loaded.ledger.balances == mm.ledger.balances
        assert loaded.ledger.supply == mm.ledger.supply
        check_invariants(loaded, loaded.collateral, cid)

        # Same trade on both gives the same result
        a = mm.buy(cid, 1, 77, buyer="carol")
        b = loaded.buy(cid, 1, 77, buyer="carol")
        assert (a.trade_id, a.shares) == (b.trade_id, b.shares)

    def test_resolved_market_survives(self, tmp_path):
        mm, _, cid = fresh_system()
        mm.buy(cid, 0, 100, buyer="alice")
        mm.resolve(cid, 0, sender=OPERATOR)
        path = str(tmp_path / "state.json")
        save_snapshot(mm, path)

        loaded = load_snapshot(path, operator="someone-else")
        assert loaded.operator == "someone-else"
        assert loaded.get_status(cid) == MarketStatus.RESOLVED
        assert loaded.redeem(cid, "alice").payout == 140

    def test_unknown_version(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text(json.dumps({"version": 99}))
        with pytest.raises(ValueError):
            load_snapshot(str(path))


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------

class TestConcurrency:

    def test_parallel_buys_serialize(self):
        buyers = [f"trader{i}" for i in range(40)]
        mm, token, cid = fresh_system(traders=buyers, trader_balance=10)

        def buy(holder):
            return mm.buy(cid, 0, 10, buyer=holder)

        with ThreadPoolExecutor(max_workers=8) as pool:
            trades = list(pool.map(buy, buyers))

        m = mm.markets[cid]
        assert m.collateral_balance == 1400
        assert sorted(t.trade_id for t in trades) == list(range(1, 41))
        assert m.quantities[0] == m.seed + sum(t.shares for t in trades)
        check_invariants(mm, token, cid)
