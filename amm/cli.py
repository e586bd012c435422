#!/usr/bin/env python3
"""
LS-LMSR engine CLI. Every invocation: lock → load → execute → save → unlock.

Usage:
    python3 -m amm.cli condition-id ORACLE QUESTION_ID NUM_OUTCOMES
    python3 -m amm.cli mint-collateral HOLDER AMOUNT
    python3 -m amm.cli approve HOLDER AMOUNT
    python3 -m amm.cli setup CONDITION_ID NUM_OUTCOMES BETA SUBSIDY OVERROUND_BPS
                             [--liquidity sensitive|fixed] [--question TEXT]
    python3 -m amm.cli buy CONDITION_ID HOLDER OUTCOME PAYMENT
    python3 -m amm.cli sell CONDITION_ID HOLDER OUTCOME SHARES
    python3 -m amm.cli resolve CONDITION_ID OUTCOME
    python3 -m amm.cli redeem CONDITION_ID HOLDER
    python3 -m amm.cli price CONDITION_ID OUTCOME
    python3 -m amm.cli market CONDITION_ID
    python3 -m amm.cli markets
    python3 -m amm.cli balance HOLDER [CONDITION_ID]

setup and resolve run as the operator (AMM_OPERATOR), who also funds the
subsidy: mint-collateral and approve it first.

Output: JSON, one line. {"ok": true, ...} or {"ok": false, "error": "<code>", ...}
State: AMM_STATE env var, default ./amm_state.json
"""

import argparse
import fcntl
import json
import os
import sys
from contextlib import contextmanager

import structlog

from amm import config
from amm.collateral import InMemoryCollateral
from amm.errors import AMMError
from amm.market_maker import MarketMaker
from amm.models import MarketStatus, make_condition_id
from amm.persistence import load_snapshot, save_snapshot


log = structlog.get_logger(__name__)


@contextmanager
def file_lock(path):
    """Exclusive file lock. Prevents concurrent CLI invocations from corrupting state."""
    lock_path = path + ".lock"
    f = open(lock_path, "w")
    try:
        fcntl.flock(f, fcntl.LOCK_EX)
        yield
    finally:
        fcntl.flock(f, fcntl.LOCK_UN)
        f.close()


def load_or_create(path) -> MarketMaker:
    if os.path.exists(path):
        return load_snapshot(path, operator=config.OPERATOR,
                             max_iterations=config.SOLVER_MAX_ITERATIONS)
    return MarketMaker(InMemoryCollateral(), operator=config.OPERATOR,
                       max_iterations=config.SOLVER_MAX_ITERATIONS)


def reply(data):
    print(json.dumps(data))


def market_view(mm: MarketMaker, condition_id: str) -> dict:
    m = mm.markets[condition_id]
    prices = mm.get_prices(condition_id) if m.status == MarketStatus.OPEN else []
    return {
        "condition_id": m.condition_id,
        "question": m.question,
        "status": m.status.value,
        "num_outcomes": m.num_outcomes,
        "liquidity": m.policy.to_dict()["kind"],
        "b": str(mm.get_liquidity(condition_id)),
        "overround_bps": m.overround_bps,
        "quantities": [str(v) for v in m.quantities],
        "prices": [str(p) for p in prices],
        "collateral_balance": str(m.collateral_balance),
        "fees_collected": str(m.fees_collected),
        "max_loss": str(mm.max_loss(condition_id)),
        "num_trades": len(m.trades),
        "winning_outcome": m.winning_outcome,
    }


def cmd_condition_id(mm, args):
    return {"ok": True, "condition_id": make_condition_id(
        args.oracle, args.question_id, args.num_outcomes)}


def cmd_mint_collateral(mm, args):
    balance = mm.collateral.mint(args.holder, args.amount)
    return {"ok": True, "holder": args.holder, "balance": str(balance)}


def cmd_approve(mm, args):
    mm.collateral.approve(args.holder, args.amount)
    return {"ok": True, "holder": args.holder, "allowance": str(args.amount)}


def cmd_setup(mm, args):
    market = mm.setup(
        args.condition_id, args.num_outcomes, args.beta, args.subsidy,
        args.overround_bps, sender=config.OPERATOR,
        liquidity=args.liquidity, question=args.question,
    )
    return {"ok": True, **market_view(mm, market.condition_id)}


def cmd_buy(mm, args):
    trade = mm.buy(args.condition_id, args.outcome, args.payment,
                   buyer=args.holder)
    return {"ok": True, "trade_id": trade.trade_id,
            "shares": str(trade.shares), "paid": str(trade.collateral),
            "fee": str(trade.fee), "avg_price": str(trade.avg_price)}


def cmd_sell(mm, args):
    trade = mm.sell(args.condition_id, args.outcome, args.shares,
                    seller=args.holder)
    return {"ok": True, "trade_id": trade.trade_id,
            "shares": str(trade.shares), "refund": str(trade.collateral),
            "fee": str(trade.fee), "avg_price": str(trade.avg_price)}


def cmd_resolve(mm, args):
    mm.resolve(args.condition_id, args.outcome, sender=config.OPERATOR)
    return {"ok": True, "condition_id": args.condition_id,
            "winning_outcome": args.outcome}


def cmd_redeem(mm, args):
    r = mm.redeem(args.condition_id, args.holder)
    return {"ok": True, "holder": args.holder, "payout": str(r.payout),
            "burned_losing_shares": str(r.burned_losing_shares)}


def cmd_price(mm, args):
    return {"ok": True, "outcome": args.outcome,
            "price": str(mm.get_price(args.condition_id, args.outcome))}


def cmd_market(mm, args):
    if args.condition_id not in mm.markets:
        return {"ok": False, "error": "market_not_found",
                "message": f"market {args.condition_id} not found"}
    return {"ok": True, **market_view(mm, args.condition_id)}


def cmd_markets(mm, args):
    return {"ok": True,
            "markets": [market_view(mm, cid) for cid in mm.markets]}


def cmd_balance(mm, args):
    result = {"ok": True, "holder": args.holder,
              "collateral": str(mm.collateral.balance_of(args.holder)),
              "allowance": str(mm.collateral.allowance(args.holder))}
    if args.condition_id:
        result["shares"] = [
            str(v) for v in mm.ledger.balances_of(args.condition_id, args.holder)]
    return result


# Commands that mutate state (need save after)
MUTATING = {"mint-collateral", "approve", "setup",
            "buy", "sell", "resolve", "redeem"}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="LS-LMSR market maker CLI")
    parser.add_argument("--state", default=config.STATE_PATH,
                        help="Path to state file")
    sub = parser.add_subparsers(dest="command")

    p = sub.add_parser("condition-id")
    p.add_argument("oracle")
    p.add_argument("question_id")
    p.add_argument("num_outcomes", type=int)

    p = sub.add_parser("mint-collateral")
    p.add_argument("holder")
    p.add_argument("amount", type=int)

    p = sub.add_parser("approve")
    p.add_argument("holder")
    p.add_argument("amount", type=int)

    p = sub.add_parser("setup")
    p.add_argument("condition_id")
    p.add_argument("num_outcomes", type=int)
    p.add_argument("beta", help="alpha (sensitive) or b (fixed)")
    p.add_argument("subsidy", type=int)
    p.add_argument("overround_bps", type=int)
    p.add_argument("--liquidity", default="sensitive",
                   choices=["sensitive", "fixed"])
    p.add_argument("--question", default="")

    p = sub.add_parser("buy")
    p.add_argument("condition_id")
    p.add_argument("holder")
    p.add_argument("outcome", type=int)
    p.add_argument("payment", type=int)

    p = sub.add_parser("sell")
    p.add_argument("condition_id")
    p.add_argument("holder")
    p.add_argument("outcome", type=int)
    p.add_argument("shares", type=int)

    p = sub.add_parser("resolve")
    p.add_argument("condition_id")
    p.add_argument("outcome", type=int)

    p = sub.add_parser("redeem")
    p.add_argument("condition_id")
    p.add_argument("holder")

    p = sub.add_parser("price")
    p.add_argument("condition_id")
    p.add_argument("outcome", type=int)

    p = sub.add_parser("market")
    p.add_argument("condition_id")

    sub.add_parser("markets")

    p = sub.add_parser("balance")
    p.add_argument("holder")
    p.add_argument("condition_id", nargs="?")

    return parser


COMMANDS = {
    "condition-id": cmd_condition_id,
    "mint-collateral": cmd_mint_collateral,
    "approve": cmd_approve,
    "setup": cmd_setup,
    "buy": cmd_buy,
    "sell": cmd_sell,
    "resolve": cmd_resolve,
    "redeem": cmd_redeem,
    "price": cmd_price,
    "market": cmd_market,
    "markets": cmd_markets,
    "balance": cmd_balance,
}


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        sys.exit(1)

    config.configure_logging()
    state_path = args.state

    try:
        with file_lock(state_path):
            mm = load_or_create(state_path)
            result = COMMANDS[args.command](mm, args)

            if args.command in MUTATING:
                save_snapshot(mm, state_path)

            reply(result)
            if not result["ok"]:
                sys.exit(1)
    except AMMError as e:
        reply({"ok": False, "error": e.code, "message": str(e)})
        sys.exit(1)
    except Exception as e:
        log.exception("command_failed", command=args.command)
        reply({"ok": False, "error": "internal_error", "message": str(e)})
        sys.exit(1)


if __name__ == "__main__":
    main()
