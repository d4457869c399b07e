from polymarket_quoter.models import BookView, OrderBookSnapshot
from polymarket_quoter.utils.numeric import spread_bps

DEAD_BID = 0.01
DEAD_ASK = 0.99


def is_dead(bid: float, ask: float) -> bool:
    return bid <= DEAD_BID and ask >= DEAD_ASK


def mark_stale(snap: OrderBookSnapshot, cfg: dict) -> OrderBookSnapshot:
    max_ms = float(cfg["book"].get("max_fetch_latency_ms", 2500))
    if max_ms > 0 and snap.fetch_latency_ms > max_ms:
        return snap.model_copy(update={"stale": True})
    return snap


def classify(snap: OrderBookSnapshot, cfg: dict) -> BookView:
    min_sum = float(cfg["book"].get("min_top_sum_depth_usd", 20.0))
    min_side = float(cfg["book"].get("min_side_depth_usd", 1.0))

    bid = float(snap.best_bid)
    ask = float(snap.best_ask)
    top_sum = float(snap.bid_depth_usd) + float(snap.ask_depth_usd)

    if is_dead(bid, ask) or bid <= 0 or ask >= 1.0:
        state = "EMPTY"
    elif top_sum < min_sum or snap.bid_depth_usd < min_side or snap.ask_depth_usd < min_side:
        state = "THIN"
    else:
        state = "REAL"

    return BookView(
        snapshot=snap,
        state=state,
        mid=round((bid + ask) / 2.0, 6),
        spread_bps=spread_bps(bid, ask),
        top_sum_depth_usd=round(top_sum, 6),
    )
