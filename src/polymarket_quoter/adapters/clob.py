from __future__ import annotations
import time
from typing import List, Optional, Tuple

import httpx

from polymarket_quoter.errors import TransientFetchError
from polymarket_quoter.models import OrderBookSnapshot


class ClobAdapter:
    """Public order-book reads against the CLOB REST API."""

    def __init__(self, base_url: str, timeout: float = 10.0, depth_levels: int = 1,
                 transport: Optional[httpx.BaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = float(timeout)
        self.depth_levels = max(1, int(depth_levels))
        self._transport = transport

    def _fetch_book(self, token_id: str) -> dict:
        url = f"{self.base_url}/book"
        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                r = client.get(url, params={"token_id": token_id})
        except httpx.HTTPError as e:
            raise TransientFetchError(f"book {token_id}: {e}", reason="book_fetch_failed") from e
        if r.status_code != 200:
            raise TransientFetchError(f"book {token_id}: http {r.status_code}", reason="book_fetch_failed")
        try:
            data = r.json()
        except ValueError as e:
            raise TransientFetchError(f"book {token_id}: bad json", reason="book_parse_failed") from e
        if not isinstance(data, dict):
            raise TransientFetchError(f"book {token_id}: expected an object", reason="book_parse_failed")
        return data

    @staticmethod
    def _levels(levels: list, best_first_desc: bool) -> List[Tuple[float, float]]:
        out = []
        for lvl in levels or []:
            try:
                px = float((lvl or {}).get("price", 0.0))
                sz = float((lvl or {}).get("size", 0.0))
            except (TypeError, ValueError):
                continue
            if px > 0 and sz > 0:
                out.append((px, sz))
        # The venue does not promise an ordering, so sort best level first.
        out.sort(key=lambda x: x[0], reverse=best_first_desc)
        return out

    def _depth_usd(self, levels: List[Tuple[float, float]]) -> float:
        return sum(px * sz for px, sz in levels[: self.depth_levels])

    def fetch_book(self, token_id: str, tick_size: float = 0.01) -> OrderBookSnapshot:
        t0 = time.perf_counter()
        raw = self._fetch_book(token_id)
        latency_ms = (time.perf_counter() - t0) * 1000.0

        bids = self._levels(raw.get("bids", []), best_first_desc=True)
        asks = self._levels(raw.get("asks", []), best_first_desc=False)
        try:
            tick = float(raw.get("tick_size") or tick_size)
        except (TypeError, ValueError):
            tick = tick_size

        return OrderBookSnapshot(
            token_id=token_id,
            best_bid=bids[0][0] if bids else 0.0,
            best_ask=asks[0][0] if asks else 1.0,
            bid_size=bids[0][1] if bids else 0.0,
            ask_size=asks[0][1] if asks else 0.0,
            bid_depth_usd=self._depth_usd(bids),
            ask_depth_usd=self._depth_usd(asks),
            tick_size=tick,
            fetch_latency_ms=round(latency_ms, 2),
        )
