"""
Pydantic request/response models for the API.
All amounts and prices are strings so 18-decimal values survive JSON.
"""

from pydantic import BaseModel


# --- Collateral ---

class MintRequest(BaseModel):
    holder: str
    amount: str

class ApproveRequest(BaseModel):
    holder: str
    amount: str

class CollateralResponse(BaseModel):
    holder: str
    balance: str
    allowance: str


# --- Markets ---

class MarketSummary(BaseModel):
    condition_id: str
    question: str
    status: str
    num_outcomes: int
    prices: list[str]
    b: str
    num_trades: int
    winning_outcome: int | None
    created_at: str

class MarketDetail(MarketSummary):
    liquidity: str
    liquidity_value: str
    overround_bps: int
    initial_subsidy: str
    seed: str
    quantities: list[str]
    collateral_balance: str
    fees_collected: str
    solvency_margin: str
    max_loss: str
    volume: str
    resolved_at: str | None

class TradeResponse(BaseModel):
    trade_id: int
    side: str
    holder: str
    outcome: int
    shares: str
    collateral: str
    fee: str
    avg_price: str
    created_at: str

class BalanceResponse(BaseModel):
    condition_id: str
    holder: str
    shares: list[str]


# --- Trading ---

class BuyRequest(BaseModel):
    holder: str
    outcome: int
    payment: str

class SellRequest(BaseModel):
    holder: str
    outcome: int
    shares: str

class RedeemRequest(BaseModel):
    holder: str

class RedeemResponse(BaseModel):
    condition_id: str
    holder: str
    payout: str
    burned_losing_shares: str


# --- Admin ---

class SetupRequest(BaseModel):
    condition_id: str
    num_outcomes: int = 2
    beta: str
    initial_subsidy: str
    overround_bps: int = 0
    liquidity: str = "sensitive"
    question: str = ""

class ResolveRequest(BaseModel):
    winning_outcome: int


# --- Health ---

class HealthResponse(BaseModel):
    status: str
    markets: int
    open_markets: int
