from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from polymarket_quoter.errors import ValidationError

Side = Literal["BUY", "SELL"]
OrderType = Literal["GTC", "FOK"]
OrderStatus = Literal["ACTIVE", "FILLED", "CANCELLED", "FAILED"]
BookState = Literal["EMPTY", "THIN", "REAL"]
Action = Literal["SEED", "MAKER_QUOTE", "PROFIT_EXIT", "CLOSEOUT_EXIT", "SKIP"]

TERMINAL_STATUSES = frozenset({"FILLED", "CANCELLED", "FAILED"})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Market(BaseModel):
    model_config = ConfigDict(frozen=True)

    asset: str
    slug: str
    yes_token_id: str
    no_token_id: str
    neg_risk: bool = False
    tick_size: float = 0.01
    expires_at: Optional[datetime] = None
    question: str = ""

    def outcomes(self) -> List[tuple[str, str]]:
        return [("YES", self.yes_token_id), ("NO", self.no_token_id)]

    def seconds_to_expiry(self, now: datetime) -> Optional[float]:
        if self.expires_at is None:
            return None
        return (self.expires_at - now).total_seconds()


class MarketMetadata(BaseModel):
    """One listing row from the market catalogue."""

    market_id: str
    slug: str
    question: str = ""
    token_ids: List[str] = Field(default_factory=list)
    tick_size: float = 0.01
    neg_risk: bool = False
    end_date: Optional[datetime] = None
    active: bool = True
    closed: bool = False


class OrderBookSnapshot(BaseModel):
    token_id: str
    best_bid: float = 0.0
    best_ask: float = 1.0
    bid_size: float = 0.0
    ask_size: float = 0.0
    bid_depth_usd: float = 0.0
    ask_depth_usd: float = 0.0
    tick_size: float = 0.01
    fetch_latency_ms: float = 0.0
    stale: bool = False


class BookView(BaseModel):
    snapshot: OrderBookSnapshot
    state: BookState
    mid: float
    spread_bps: int
    top_sum_depth_usd: float

    @property
    def best_bid(self) -> float:
        return self.snapshot.best_bid

    @property
    def best_ask(self) -> float:
        return self.snapshot.best_ask


class GateResult(BaseModel):
    eligible: bool
    reason: str = "OK"


class Decision(BaseModel):
    approved: bool
    reason: str


class Position(BaseModel):
    asset: str
    slug: str
    token_id: str
    outcome: str = ""
    shares: float = Field(default=0.0, ge=0.0)
    avg_cost: float = Field(default=0.0, ge=0.0, le=1.0)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def key(self) -> str:
        return f"{self.asset}|{self.slug}|{self.token_id}"


class OrderRecord(BaseModel):
    asset: str
    slug: str
    token_id: str
    outcome: str = ""
    side: Side
    order_type: OrderType = "GTC"
    price: float
    size: float
    tick_size: float = 0.01
    neg_risk: bool = False
    status: OrderStatus = "ACTIVE"
    order_id: Optional[str] = None
    client_order_id: str
    action: str = ""
    placed_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    last_error: Optional[str] = None

    def transition(self, status: OrderStatus, error: Optional[str] = None) -> None:
        if self.status in TERMINAL_STATUSES and status != self.status:
            raise ValidationError(f"{self.client_order_id}: {self.status} -> {status}", reason="terminal_status")
        self.status = status
        if error is not None:
            self.last_error = error
        self.updated_at = utcnow()

    def age_seconds(self, now: datetime) -> float:
        return (now - self.placed_at).total_seconds()


class PlannedOrder(BaseModel):
    token_id: str
    outcome: str
    side: Side
    order_type: OrderType
    price: float
    size: float
    tick_size: float = 0.01


class TokenPlan(BaseModel):
    token_id: str
    outcome: str
    action: Action
    reason: str = "OK"
    orders: List[PlannedOrder] = Field(default_factory=list)


class RunSummary(BaseModel):
    run_id: str
    started_at: datetime
    ended_at: Optional[datetime] = None
    per_asset_stats: Dict[str, dict] = Field(default_factory=dict)
    skipped_reasons: List[str] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    aborted: bool = False


class StoreState(BaseModel):
    positions: Dict[str, Position] = Field(default_factory=dict)
    orders: List[OrderRecord] = Field(default_factory=list)
    runs: List[RunSummary] = Field(default_factory=list)
    asset_flags: Dict[str, bool] = Field(default_factory=dict)
