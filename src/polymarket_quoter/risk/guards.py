from polymarket_quoter.models import Decision, Position


def approve_buy(price: float, size: float, pos: Position, resting_buy_usd: float, total_exposure_usd: float, cfg: dict) -> Decision:
    """Position and exposure caps for adding a resting buy."""
    risk = cfg["risk"]
    notional = float(price) * float(size)
    if pos.shares + size > float(risk["max_position_shares"]):
        return Decision(approved=False, reason="POSITION_CAP")
    if pos.shares * pos.avg_cost + resting_buy_usd + notional > float(risk["max_position_usd"]):
        return Decision(approved=False, reason="POSITION_CAP")
    if total_exposure_usd + notional > float(risk["max_total_exposure_usd"]):
        return Decision(approved=False, reason="EXPOSURE_CAP")
    return Decision(approved=True, reason="ok")
