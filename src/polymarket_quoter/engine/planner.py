"""Per-token action selection.

One action per token per cycle, chosen in precedence order:
CLOSEOUT_EXIT, PROFIT_EXIT, SEED, MAKER_QUOTE, otherwise SKIP with the first
blocking reason. Planning is pure: the same context always yields the same
plan, so replanning an unchanged token is idempotent.
"""
from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel

from polymarket_quoter.engine.gate import evaluate, thresholds_for
from polymarket_quoter.models import BookView, Market, PlannedOrder, Position, TokenPlan
from polymarket_quoter.risk.guards import approve_buy
from polymarket_quoter.utils.numeric import (
    PRICE_CEIL,
    PRICE_FLOOR,
    bps_of,
    ceil_to_tick,
    floor_size,
    quote_price,
    round_to_tick,
    size_for_notional,
)


class PlanContext(BaseModel):
    market: Market
    token_id: str
    outcome: str
    view: BookView
    position: Position
    now: datetime
    fair_price: Optional[float] = None
    active_buys: int = 0
    active_sells: int = 0
    resting_buy_usd: float = 0.0
    resting_sell_shares: float = 0.0
    total_exposure_usd: float = 0.0

    @property
    def tick(self) -> float:
        return self.view.snapshot.tick_size or self.market.tick_size


def _skip(ctx: PlanContext, reason: str) -> TokenPlan:
    return TokenPlan(token_id=ctx.token_id, outcome=ctx.outcome, action="SKIP", reason=reason)


def _order(ctx: PlanContext, side: str, order_type: str, price: float, size: float) -> PlannedOrder:
    return PlannedOrder(token_id=ctx.token_id, outcome=ctx.outcome, side=side, order_type=order_type,
                        price=price, size=size, tick_size=ctx.tick)


def _exit(ctx: PlanContext, action: str, shares: float) -> TokenPlan:
    px = quote_price(ctx.view.best_bid, ctx.tick)
    return TokenPlan(token_id=ctx.token_id, outcome=ctx.outcome, action=action, reason="OK",
                     orders=[_order(ctx, "SELL", "FOK", px, shares)])


def in_closeout(market: Market, now: datetime, cfg: dict) -> bool:
    secs = market.seconds_to_expiry(now)
    return secs is not None and secs <= float(cfg["exits"]["closeout_seconds"])


def profit_clears(ctx: PlanContext, shares: float, cfg: dict) -> bool:
    ex = cfg["exits"]
    avg = ctx.position.avg_cost
    if avg <= 0:
        return False
    per_share = ctx.view.mid - avg
    if per_share < float(ex["min_profit_per_share_usd"]):
        return False
    if per_share / avg * 10000.0 < float(ex["min_profit_bps"]):
        return False
    return per_share * shares >= float(ex["min_profit_total_usd"])


def _seed(ctx: PlanContext, cfg: dict) -> TokenPlan:
    q = cfg["quoting"]
    max_side = int(cfg["orders"]["max_orders_per_side"])
    fair = ctx.fair_price
    if fair is None or not 0.0 < fair < 1.0:
        return _skip(ctx, "NO_FAIR_PRICE")

    offset = max(bps_of(fair, q["half_spread_bps"]), int(q.get("seed_min_offset_ticks", 0)) * ctx.tick)
    buy_px = quote_price(fair - offset, ctx.tick)
    sell_px = quote_price(fair + offset, ctx.tick)
    if buy_px >= sell_px:
        return _skip(ctx, "SEED_CROSSED")

    min_size = float(q["min_order_size"])
    notional = float(q["target_notional_usd"])
    orders: List[PlannedOrder] = []
    block = None

    if ctx.active_buys >= max_side:
        block = "ORDER_CAP"
    else:
        size = size_for_notional(notional, buy_px, min_size)
        d = approve_buy(buy_px, size, ctx.position, ctx.resting_buy_usd, ctx.total_exposure_usd, cfg)
        if d.approved:
            orders.append(_order(ctx, "BUY", "GTC", buy_px, size))
        else:
            block = d.reason

    if ctx.active_sells >= max_side:
        block = block or "ORDER_CAP"
    else:
        orders.append(_order(ctx, "SELL", "GTC", sell_px, size_for_notional(notional, sell_px, min_size)))

    if not orders:
        return _skip(ctx, block or "ORDER_CAP")
    return TokenPlan(token_id=ctx.token_id, outcome=ctx.outcome, action="SEED", reason="OK", orders=orders)


def _maker_improvement(ctx: PlanContext, ref_px: float, cfg: dict) -> float:
    q = cfg["quoting"]
    return min(int(q["tick_improve"]) * ctx.tick, bps_of(ref_px, q["max_improve_bps"]))


def _maker_buy(ctx: PlanContext, cfg: dict):
    gate = evaluate(ctx.view, "BUY", "GTC", thresholds_for(cfg, "GTC"))
    if not gate.eligible:
        return None, gate.reason

    bid, ask = ctx.view.best_bid, ctx.view.best_ask
    px = round_to_tick(bid + _maker_improvement(ctx, bid, cfg), ctx.tick)
    if px >= ask:
        px = round_to_tick(ask - ctx.tick, ctx.tick)
    px = quote_price(px, ctx.tick)
    if px >= ask:
        return None, "CROSSES_ASK"

    size = size_for_notional(cfg["quoting"]["target_notional_usd"], px, cfg["quoting"]["min_order_size"])
    d = approve_buy(px, size, ctx.position, ctx.resting_buy_usd, ctx.total_exposure_usd, cfg)
    if not d.approved:
        return None, d.reason
    if ctx.active_buys >= int(cfg["orders"]["max_orders_per_side"]):
        return None, "ORDER_CAP"
    return _order(ctx, "BUY", "GTC", px, size), None


def _maker_sell(ctx: PlanContext, shares: float, cfg: dict):
    free = floor_size(shares - ctx.resting_sell_shares)
    if free < float(cfg["quoting"]["min_order_size"]):
        return None, "NO_INVENTORY"
    gate = evaluate(ctx.view, "SELL", "GTC", thresholds_for(cfg, "GTC"))
    if not gate.eligible:
        return None, gate.reason
    if ctx.active_sells >= int(cfg["orders"]["max_orders_per_side"]):
        return None, "ORDER_CAP"

    bid, ask = ctx.view.best_bid, ctx.view.best_ask
    px = round_to_tick(ask - _maker_improvement(ctx, ask, cfg), ctx.tick)
    floor_px = ceil_to_tick(ctx.position.avg_cost + float(cfg["exits"]["min_profit_per_share_usd"]), ctx.tick)
    px = max(px, floor_px)
    if px <= bid:
        px = round_to_tick(bid + ctx.tick, ctx.tick)
    if not PRICE_FLOOR <= px <= PRICE_CEIL:
        return None, "SELL_FLOOR_OUT_OF_RANGE"
    return _order(ctx, "SELL", "GTC", px, free), None


def plan_token(ctx: PlanContext, cfg: dict) -> TokenPlan:
    if ctx.view.snapshot.stale:
        return _skip(ctx, "STALE_BOOK")

    shares = floor_size(ctx.position.shares)

    if in_closeout(ctx.market, ctx.now, cfg):
        if shares > 0:
            return _exit(ctx, "CLOSEOUT_EXIT", shares)
        return _skip(ctx, "CLOSEOUT_WINDOW")

    if shares > 0 and profit_clears(ctx, shares, cfg):
        gate = evaluate(ctx.view, "SELL", "FOK", thresholds_for(cfg, "FOK"))
        if gate.eligible:
            return _exit(ctx, "PROFIT_EXIT", shares)

    state = ctx.view.state
    if state in ("EMPTY", "THIN") and bool(cfg["quoting"].get("seed_enabled", True)):
        return _seed(ctx, cfg)

    if state != "REAL":
        gate = evaluate(ctx.view, "BUY", "GTC", thresholds_for(cfg, "GTC"))
        return _skip(ctx, gate.reason if not gate.eligible else f"BOOK_{state}")

    orders: List[PlannedOrder] = []
    buy, buy_block = _maker_buy(ctx, cfg)
    if buy:
        orders.append(buy)
    sell, sell_block = (None, None)
    if shares > 0:
        sell, sell_block = _maker_sell(ctx, shares, cfg)
        if sell:
            orders.append(sell)

    if not orders:
        return _skip(ctx, buy_block or sell_block or "NO_QUOTE")
    return TokenPlan(token_id=ctx.token_id, outcome=ctx.outcome, action="MAKER_QUOTE", reason="OK", orders=orders)
