"""Ordered eligibility rules for acting on a classified book.

The first failing rule is the reported reason, so a given book, side and
order type always produce the same diagnostic.
"""
from __future__ import annotations

from pydantic import BaseModel

from polymarket_quoter.engine.book import is_dead
from polymarket_quoter.models import BookView, GateResult


class GateThresholds(BaseModel):
    min_bid: float = 0.02
    max_ask: float = 0.98
    max_spread_bps: float = 2000
    min_sum_depth_usd: float = 20.0
    min_bid_depth_usd: float = 5.0
    min_ask_depth_usd: float = 5.0
    fok_min_bid_depth_usd: float = 5.0
    fok_min_ask_depth_usd: float = 1.0


def thresholds_for(cfg: dict, order_type: str) -> GateThresholds:
    key = "fok" if order_type == "FOK" else "maker"
    return GateThresholds.model_validate(cfg["gate"].get(key, {}))


def evaluate(view: BookView, side: str, order_type: str, th: GateThresholds) -> GateResult:
    bid = view.best_bid
    ask = view.best_ask
    snap = view.snapshot

    if is_dead(bid, ask):
        return GateResult(eligible=False, reason="DEAD_BOOK")
    if ask <= 0 or ask >= 1.0:
        return GateResult(eligible=False, reason="NO_ASK")
    if bid <= 0:
        return GateResult(eligible=False, reason="NO_BID")
    if bid < th.min_bid:
        return GateResult(eligible=False, reason="MIN_BID")
    if ask > th.max_ask:
        return GateResult(eligible=False, reason="MAX_ASK")
    if view.spread_bps > th.max_spread_bps:
        return GateResult(eligible=False, reason="SPREAD")
    if view.top_sum_depth_usd < th.min_sum_depth_usd:
        return GateResult(eligible=False, reason="SUM_DEPTH")
    if order_type == "FOK":
        if snap.bid_depth_usd < th.fok_min_bid_depth_usd:
            return GateResult(eligible=False, reason="FOK_BID_DEPTH")
        if snap.ask_depth_usd < th.fok_min_ask_depth_usd:
            return GateResult(eligible=False, reason="FOK_ASK_DEPTH")
    if side == "BUY" and snap.ask_depth_usd < th.min_ask_depth_usd:
        return GateResult(eligible=False, reason="ASK_DEPTH")
    if side == "SELL" and snap.bid_depth_usd < th.min_bid_depth_usd:
        return GateResult(eligible=False, reason="BID_DEPTH")
    return GateResult(eligible=True, reason="OK")
