"""
FastAPI application. HTTP surface for the LS-LMSR market maker.

Public endpoints: health, markets, market detail, trades, balances.
Trader endpoints (rate limited per holder): approve, buy, sell, redeem.
Admin endpoints (admin key, act as the operator): mint collateral,
set up a market, resolve a market.

Identity is whatever `holder` the request names; authenticating holders
is left to whatever sits in front of this service.
"""

import asyncio
import os
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Response

from amm import config
from amm import fixed_point as fp
from amm.api_errors import APIError, api_error_handler, translate_engine_error
from amm.api_models import (
    ApproveRequest, BalanceResponse, BuyRequest, CollateralResponse,
    HealthResponse, MarketDetail, MarketSummary, MintRequest, RedeemRequest,
    RedeemResponse, ResolveRequest, SellRequest, SetupRequest, TradeResponse,
)
from amm.collateral import InMemoryCollateral
from amm.errors import AMMError
from amm.market_maker import MarketMaker
from amm.middleware import OperatorDep, enforce_rate_limit
from amm.models import Market, MarketStatus, Trade
from amm.persistence import load_snapshot, save_snapshot


log = structlog.get_logger(__name__)


def _new_market_maker() -> MarketMaker:
    return MarketMaker(InMemoryCollateral(), operator=config.OPERATOR,
                       max_iterations=config.SOLVER_MAX_ITERATIONS)


@asynccontextmanager
async def lifespan(app: FastAPI):
    config.configure_logging()
    if os.path.exists(config.STATE_PATH):
        mm = load_snapshot(config.STATE_PATH, operator=config.OPERATOR,
                           max_iterations=config.SOLVER_MAX_ITERATIONS)
    else:
        mm = _new_market_maker()

    app.state.mm = mm
    app.state.lock = asyncio.Lock()
    log.info("api_started", markets=len(mm.markets), state=config.STATE_PATH)
    yield


app = FastAPI(title="LS-LMSR Market Maker API", version="0.1.0",
              lifespan=lifespan)
app.add_exception_handler(APIError, api_error_handler)


def _save():
    """Save state to disk. Called after every mutation."""
    save_snapshot(app.state.mm, config.STATE_PATH)


def _parse_amount(value: str, name: str) -> int:
    """Native-unit amount: a positive integer string."""
    try:
        amount = int(value)
    except ValueError:
        raise APIError(400, "invalid_amount", f"Invalid {name}: {value}")
    if amount <= 0:
        raise APIError(400, "invalid_amount", f"{name} must be positive")
    return amount


def _get_market(condition_id: str) -> Market:
    m = app.state.mm.markets.get(condition_id)
    if m is None:
        raise APIError(404, "market_not_found",
                       f"Market {condition_id} not found")
    return m


def _prices(m: Market) -> list[str]:
    if m.status != MarketStatus.OPEN:
        return []
    return [str(p) for p in app.state.mm.get_prices(m.condition_id)]


def _trade_response(t: Trade) -> TradeResponse:
    return TradeResponse(
        trade_id=t.trade_id,
        side=t.side,
        holder=t.holder,
        outcome=t.outcome,
        shares=str(t.shares),
        collateral=str(t.collateral),
        fee=str(t.fee),
        avg_price=str(t.avg_price),
        created_at=t.created_at,
    )


# ---------------------------------------------------------------------------
# Health (public)
# ---------------------------------------------------------------------------

@app.get("/v1/health")
async def health() -> HealthResponse:
    markets = app.state.mm.markets.values()
    return HealthResponse(
        status="ok",
        markets=len(markets),
        open_markets=sum(1 for m in markets if m.status == MarketStatus.OPEN),
    )


# ---------------------------------------------------------------------------
# Public market data
# ---------------------------------------------------------------------------

@app.get("/v1/markets")
async def list_markets(status: str | None = None) -> list[MarketSummary]:
    """List all markets with current prices.

    Optional filter:
    - status: exact match on market status ("open", "resolved")
    """
    mm = app.state.mm
    result = []
    for m in mm.markets.values():
        if status is not None and m.status.value != status:
            continue
        result.append(MarketSummary(
            condition_id=m.condition_id,
            question=m.question,
            status=m.status.value,
            num_outcomes=m.num_outcomes,
            prices=_prices(m),
            b=str(mm.get_liquidity(m.condition_id)),
            num_trades=len(m.trades),
            winning_outcome=m.winning_outcome,
            created_at=m.created_at,
        ))
    return result


@app.get("/v1/markets/{condition_id}")
async def get_market(condition_id: str) -> MarketDetail:
    """Full market detail including LS-LMSR state and solvency margin."""
    mm = app.state.mm
    m = _get_market(condition_id)
    policy = m.policy.to_dict()
    return MarketDetail(
        condition_id=m.condition_id,
        question=m.question,
        status=m.status.value,
        num_outcomes=m.num_outcomes,
        prices=_prices(m),
        b=str(mm.get_liquidity(condition_id)),
        num_trades=len(m.trades),
        winning_outcome=m.winning_outcome,
        created_at=m.created_at,
        liquidity=policy["kind"],
        liquidity_value=str(fp.to_decimal(m.policy.value)),
        overround_bps=m.overround_bps,
        initial_subsidy=str(m.initial_subsidy),
        seed=str(m.seed),
        quantities=[str(v) for v in m.quantities],
        collateral_balance=str(m.collateral_balance),
        fees_collected=str(m.fees_collected),
        solvency_margin=str(mm.solvency_margin(condition_id)),
        max_loss=str(mm.max_loss(condition_id)),
        volume=str(m.volume),
        resolved_at=m.resolved_at,
    )


@app.get("/v1/markets/{condition_id}/trades")
async def get_market_trades(condition_id: str) -> list[TradeResponse]:
    m = _get_market(condition_id)
    return [_trade_response(t) for t in m.trades]


@app.get("/v1/markets/{condition_id}/balances/{holder}")
async def get_balance(condition_id: str, holder: str) -> BalanceResponse:
    _get_market(condition_id)
    shares = app.state.mm.ledger.balances_of(condition_id, holder)
    return BalanceResponse(condition_id=condition_id, holder=holder,
                           shares=[str(v) for v in shares])


@app.get("/v1/collateral/{holder}")
async def get_collateral(holder: str) -> CollateralResponse:
    token = app.state.mm.collateral
    return CollateralResponse(holder=holder,
                              balance=str(token.balance_of(holder)),
                              allowance=str(token.allowance(holder)))


# ---------------------------------------------------------------------------
# Trader endpoints
# ---------------------------------------------------------------------------

@app.post("/v1/collateral/approve")
async def approve(req: ApproveRequest) -> CollateralResponse:
    """Allow the market maker to pull up to `amount` from the holder."""
    try:
        amount = int(req.amount)
    except ValueError:
        raise APIError(400, "invalid_amount", f"Invalid amount: {req.amount}")

    async with app.state.lock:
        try:
            app.state.mm.collateral.approve(req.holder, amount)
            _save()
        except AMMError as e:
            raise translate_engine_error(e)

    return await get_collateral(req.holder)


@app.post("/v1/markets/{condition_id}/buy")
async def buy(condition_id: str, req: BuyRequest,
              response: Response) -> TradeResponse:
    """Spend `payment` collateral on shares of `outcome`."""
    _get_market(condition_id)
    payment = _parse_amount(req.payment, "payment")
    enforce_rate_limit(req.holder, response)

    async with app.state.lock:
        try:
            trade = app.state.mm.buy(condition_id, req.outcome, payment,
                                     buyer=req.holder)
            _save()
        except AMMError as e:
            raise translate_engine_error(e)

    return _trade_response(trade)


@app.post("/v1/markets/{condition_id}/sell")
async def sell(condition_id: str, req: SellRequest,
               response: Response) -> TradeResponse:
    """Sell `shares` of `outcome` back to the market maker."""
    _get_market(condition_id)
    shares = _parse_amount(req.shares, "shares")
    enforce_rate_limit(req.holder, response)

    async with app.state.lock:
        try:
            trade = app.state.mm.sell(condition_id, req.outcome, shares,
                                      seller=req.holder)
            _save()
        except AMMError as e:
            raise translate_engine_error(e)

    return _trade_response(trade)


@app.post("/v1/markets/{condition_id}/redeem")
async def redeem(condition_id: str, req: RedeemRequest,
                 response: Response) -> RedeemResponse:
    """Settle the holder's shares in a resolved market."""
    _get_market(condition_id)
    enforce_rate_limit(req.holder, response)

    async with app.state.lock:
        try:
            r = app.state.mm.redeem(condition_id, req.holder)
            _save()
        except AMMError as e:
            raise translate_engine_error(e)

    return RedeemResponse(
        condition_id=condition_id,
        holder=req.holder,
        payout=str(r.payout),
        burned_losing_shares=str(r.burned_losing_shares),
    )


# ---------------------------------------------------------------------------
# Admin endpoints
# ---------------------------------------------------------------------------

@app.post("/v1/admin/collateral/mint")
async def admin_mint(req: MintRequest, _: OperatorDep) -> CollateralResponse:
    """Mint collateral to a holder (in-memory token faucet)."""
    amount = _parse_amount(req.amount, "amount")

    async with app.state.lock:
        try:
            app.state.mm.collateral.mint(req.holder, amount)
            _save()
        except AMMError as e:
            raise translate_engine_error(e)

    return await get_collateral(req.holder)


@app.post("/v1/admin/markets")
async def admin_setup(req: SetupRequest, operator: OperatorDep) -> MarketDetail:
    """Set up a market. The subsidy is pulled from the operator's
    collateral, so mint and approve it first."""
    subsidy = _parse_amount(req.initial_subsidy, "initial_subsidy")

    async with app.state.lock:
        try:
            app.state.mm.setup(
                req.condition_id, req.num_outcomes, req.beta, subsidy,
                req.overround_bps, sender=operator,
                liquidity=req.liquidity, question=req.question,
            )
            _save()
        except AMMError as e:
            raise translate_engine_error(e)

    return await get_market(req.condition_id)


@app.post("/v1/admin/markets/{condition_id}/resolve")
async def admin_resolve(condition_id: str, req: ResolveRequest,
                        operator: OperatorDep) -> dict:
    """Resolve a market. Irreversible."""
    _get_market(condition_id)
    async with app.state.lock:
        try:
            app.state.mm.resolve(condition_id, req.winning_outcome,
                                 sender=operator)
            _save()
        except AMMError as e:
            raise translate_engine_error(e)

    return {"condition_id": condition_id,
            "winning_outcome": req.winning_outcome}
