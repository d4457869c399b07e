from __future__ import annotations

import itertools
from typing import Callable, Dict, List, Optional

from polymarket_quoter.errors import ValidationError, VenueRejection
from polymarket_quoter.execution.live import LiveOrderResult, Venue
from polymarket_quoter.models import OrderBookSnapshot


class PaperVenue(Venue):
    """Simulated venue over real (or supplied) books.

    GTC orders rest until cancelled; nothing fills them. FOK sells fill in full
    at the limit price when the last seen best bid covers it and the balance
    holds the size, otherwise they are killed.
    """

    name = "paper"

    def __init__(self, fetch_book: Callable[[str, float], OrderBookSnapshot], balances: Optional[Dict[str, float]] = None):
        self._fetch_book = fetch_book
        self.balances: Dict[str, float] = dict(balances or {})
        self.open_orders: Dict[str, dict] = {}
        self.fills: List[dict] = []
        self._last_book: Dict[str, OrderBookSnapshot] = {}
        self._ids = itertools.count(1)

    def fetch_order_book(self, token_id: str, tick_size: float = 0.01) -> OrderBookSnapshot:
        snap = self._fetch_book(token_id, tick_size)
        self._last_book[token_id] = snap
        return snap

    def place_order(self, token_id: str, side: str, price: float, size: float, order_type: str,
                    tick_size: float, neg_risk: bool) -> LiveOrderResult:
        if not 0.0 < price < 1.0 or size <= 0:
            raise ValidationError(f"paper order {side} {size}@{price}", reason="invalid_price_or_size")
        oid = f"paper-{next(self._ids)}"
        row = {"id": oid, "asset_id": token_id, "side": side, "price": price, "original_size": size,
               "order_type": order_type}

        if order_type == "FOK":
            book = self._last_book.get(token_id)
            held = self.balances.get(token_id, 0.0)
            if side != "SELL" or book is None or book.best_bid < price or held < size:
                return LiveOrderResult(ok=False, error="fok_not_filled", raw=row)
            self.balances[token_id] = round(held - size, 6)
            self.fills.append(row)
            return LiveOrderResult(ok=True, order_id=oid, raw={**row, "status": "matched"})

        self.open_orders[oid] = row
        return LiveOrderResult(ok=True, order_id=oid, raw={**row, "status": "live"})

    def cancel_order(self, order_id: str) -> None:
        if self.open_orders.pop(order_id, None) is None:
            raise VenueRejection(f"paper cancel {order_id}: not open", reason="cancel_rejected")

    def list_open_orders(self) -> List[dict]:
        return list(self.open_orders.values())

    def get_balance(self, token_id: str) -> float:
        return float(self.balances.get(token_id, 0.0))
