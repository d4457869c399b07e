import math

PRICE_FLOOR = 0.01
PRICE_CEIL = 0.99


def round_to_tick(px: float, tick: float) -> float:
    if tick <= 0:
        return float(px)
    return round(round(float(px) / tick) * tick, 6)


def ceil_to_tick(px: float, tick: float) -> float:
    if tick <= 0:
        return float(px)
    # 1e-9 absorbs float noise such as 0.5 / 0.01 == 50.00000000000001
    return round(math.ceil(float(px) / tick - 1e-9) * tick, 6)


def clamp(px: float, lo: float = PRICE_FLOOR, hi: float = PRICE_CEIL) -> float:
    return max(lo, min(hi, float(px)))


def quote_price(px: float, tick: float) -> float:
    """Tick-round then clamp into the venue's tradable band."""
    return round(clamp(round_to_tick(px, tick)), 6)


def bps_of(value: float, bps: float) -> float:
    return float(value) * float(bps) / 10000.0


def spread_bps(bid: float, ask: float) -> int:
    mid = (bid + ask) / 2.0
    if mid <= 0:
        return 10000
    return int(round(10000.0 * (ask - bid) / mid))


def size_for_notional(notional_usd: float, price: float, min_size: float) -> float:
    if price <= 0:
        return 0.0
    return float(max(math.floor(float(notional_usd) / float(price)), float(min_size)))


def floor_size(size: float, decimals: int = 2) -> float:
    q = 10 ** decimals
    return math.floor(float(size) * q + 1e-9) / q
