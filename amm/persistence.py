"""
Persistence layer. JSON snapshot + atomic writes.

The snapshot contains the complete state of the engine:
  - collateral: balances, allowances, transfer journal (in-memory token)
  - ledger: conditions and one record per (condition_id, outcome, holder)
  - markets: one record per condition_id, with trades and redemptions

Ints are written as strings so 18-decimal amounts survive any JSON reader.
Save after every complete mutation. On startup, load the snapshot.

Atomic write: write to .tmp, then os.replace. A crash mid-write
leaves the previous snapshot intact.
"""

import dataclasses
import json
import os
from decimal import Decimal
from enum import Enum

import structlog

from amm.collateral import InMemoryCollateral, Transfer
from amm.ledger import Condition, ConditionalTokenLedger
from amm.lmsr import LiquidityPolicy, policy_from_dict
from amm.market_maker import MarketMaker
from amm.models import Market, MarketStatus, Redemption, Trade


log = structlog.get_logger(__name__)

CURRENT_VERSION = 1


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------

def _serialize(obj):
    """Recursively serialize dataclasses, ints and Decimals to JSON-safe types."""
    if isinstance(obj, bool) or obj is None:
        return obj
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, (int, Decimal)):
        return str(obj)
    if isinstance(obj, LiquidityPolicy):
        return obj.to_dict()
    if dataclasses.is_dataclass(obj):
        return {
            f.name: _serialize(getattr(obj, f.name))
            for f in dataclasses.fields(obj)
        }
    if isinstance(obj, list):
        return [_serialize(item) for item in obj]
    if isinstance(obj, dict):
        return {str(k): _serialize(v) for k, v in obj.items()}
    return obj


def _serialize_collateral(token: InMemoryCollateral) -> dict:
    return {
        "symbol": token.symbol,
        "vault": token.vault,
        "balances": _serialize(token.balances),
        "allowances": _serialize(token.allowances),
        "transfers": _serialize(token.transfers),
    }


def _serialize_ledger(ledger: ConditionalTokenLedger) -> dict:
    return {
        "conditions": [_serialize(c) for c in ledger.conditions.values()],
        "balances": [
            {"condition_id": cid, "outcome": str(outcome),
             "holder": holder, "amount": str(amount)}
            for (cid, outcome, holder), amount in ledger.balances.items()
        ],
    }


# ---------------------------------------------------------------------------
# Deserialization helpers
# ---------------------------------------------------------------------------

def _opt_int(value) -> int | None:
    return None if value is None else int(value)


def _load_trade(d: dict) -> Trade:
    return Trade(
        trade_id=int(d["trade_id"]),
        side=d["side"],
        holder=d["holder"],
        outcome=int(d["outcome"]),
        shares=int(d["shares"]),
        collateral=int(d["collateral"]),
        fee=int(d["fee"]),
        avg_price=Decimal(d["avg_price"]),
        created_at=d["created_at"],
    )


def _load_redemption(d: dict) -> Redemption:
    return Redemption(
        holder=d["holder"],
        winning_shares=int(d["winning_shares"]),
        burned_losing_shares=int(d["burned_losing_shares"]),
        payout=int(d["payout"]),
        created_at=d["created_at"],
    )


def _load_market(d: dict) -> Market:
    return Market(
        condition_id=d["condition_id"],
        num_outcomes=int(d["num_outcomes"]),
        policy=policy_from_dict(d["policy"]),
        overround_bps=int(d["overround_bps"]),
        initial_subsidy=int(d["initial_subsidy"]),
        seed=int(d["seed"]),
        quantities=[int(v) for v in d["quantities"]],
        collateral_balance=int(d["collateral_balance"]),
        question=d.get("question", ""),
        status=MarketStatus(d["status"]),
        winning_outcome=_opt_int(d.get("winning_outcome")),
        fees_collected=int(d.get("fees_collected", "0")),
        trades=[_load_trade(t) for t in d["trades"]],
        redemptions=[_load_redemption(r) for r in d.get("redemptions", [])],
        created_at=d["created_at"],
        resolved_at=d.get("resolved_at"),
    )


def _load_collateral(d: dict) -> InMemoryCollateral:
    token = InMemoryCollateral(symbol=d["symbol"], vault=d["vault"])
    token.balances = {k: int(v) for k, v in d["balances"].items()}
    token.allowances = {k: int(v) for k, v in d["allowances"].items()}
    token.transfers = [
        Transfer(sender=t["sender"], recipient=t["recipient"],
                 amount=int(t["amount"]), created_at=t["created_at"])
        for t in d["transfers"]
    ]
    return token


def _load_ledger(d: dict, token: InMemoryCollateral) -> ConditionalTokenLedger:
    ledger = ConditionalTokenLedger(token)
    for c in d["conditions"]:
        cond = Condition(
            condition_id=c["condition_id"],
            outcome_count=int(c["outcome_count"]),
            winning_outcome=_opt_int(c.get("winning_outcome")),
        )
        ledger.conditions[cond.condition_id] = cond
    for b in d["balances"]:
        amount = int(b["amount"])
        outcome = int(b["outcome"])
        ledger.balances[(b["condition_id"], outcome, b["holder"])] = amount
        skey = (b["condition_id"], outcome)
        ledger.supply[skey] = ledger.supply.get(skey, 0) + amount
    return ledger


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def save_snapshot(mm: MarketMaker, path: str) -> None:
    """
    Save the complete engine state to a JSON file.
    Atomic: writes to .tmp then renames.
    """
    if not isinstance(mm.collateral, InMemoryCollateral):
        raise TypeError("snapshots require an InMemoryCollateral adapter")
    state = {
        "version": CURRENT_VERSION,
        "operator": mm.operator,
        "collateral": _serialize_collateral(mm.collateral),
        "ledger": _serialize_ledger(mm.ledger),
        "markets": [_serialize(m) for m in mm.markets.values()],
    }
    tmp = path + ".tmp"
    with open(tmp, "w") as f:
        json.dump(state, f, indent=2)
    os.replace(tmp, path)
    log.debug("snapshot_saved", path=path, markets=len(mm.markets))


def load_snapshot(path: str, operator: str | None = None,
                  max_iterations: int | None = None) -> MarketMaker:
    """
    Load engine state from a JSON snapshot. Returns a MarketMaker wired to
    the restored token and ledger. `operator` overrides the stored one.
    """
    with open(path) as f:
        state = json.load(f)

    version = state.get("version")
    if version != CURRENT_VERSION:
        raise ValueError(f"unsupported snapshot version: {version}")

    token = _load_collateral(state["collateral"])
    ledger = _load_ledger(state["ledger"], token)
    kwargs = {}
    if max_iterations is not None:
        kwargs["max_iterations"] = max_iterations
    mm = MarketMaker(token, ledger=ledger,
                     operator=operator or state["operator"], **kwargs)
    for mdata in state["markets"]:
        market = _load_market(mdata)
        mm.markets[market.condition_id] = market

    log.debug("snapshot_loaded", path=path, markets=len(mm.markets))
    return mm
