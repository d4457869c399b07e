from __future__ import annotations
import json
from datetime import datetime, timezone
from typing import List, Optional

import httpx

from polymarket_quoter.errors import TransientFetchError
from polymarket_quoter.models import MarketMetadata


def parse_dt(s) -> Optional[datetime]:
    if not s:
        return None
    try:
        dt = datetime.fromisoformat(str(s).replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _json_list(v) -> list:
    if isinstance(v, str):
        try:
            v = json.loads(v)
        except ValueError:
            return []
    return v if isinstance(v, list) else []


class GammaAdapter:
    """Market listing reads against the Gamma API."""

    def __init__(self, base_url: str, timeout: float = 10.0, transport: Optional[httpx.BaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = float(timeout)
        self._transport = transport

    def _get_markets(self, params: dict) -> list:
        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                r = client.get(f"{self.base_url}/markets", params=params)
                r.raise_for_status()
                arr = r.json()
        except httpx.HTTPError as e:
            raise TransientFetchError(f"gamma markets {params}: {e}", reason="listing_fetch_failed") from e
        except ValueError as e:
            raise TransientFetchError(f"gamma markets {params}: bad json", reason="listing_parse_failed") from e
        if not isinstance(arr, list):
            raise TransientFetchError("gamma markets: expected a list", reason="listing_parse_failed")
        return arr

    @staticmethod
    def to_metadata(m: dict) -> Optional[MarketMetadata]:
        if not isinstance(m, dict):
            return None
        ev0 = {}
        events = m.get("events")
        if isinstance(events, list) and events and isinstance(events[0], dict):
            ev0 = events[0]
        try:
            tick = float(m.get("orderPriceMinTickSize") or 0.01)
        except (TypeError, ValueError):
            tick = 0.01
        return MarketMetadata(
            market_id=str(m.get("id", "")),
            slug=str(m.get("slug") or ev0.get("slug") or ""),
            question=str(m.get("question", "")),
            token_ids=[str(t) for t in _json_list(m.get("clobTokenIds"))],
            tick_size=tick if tick > 0 else 0.01,
            neg_risk=bool(m.get("negRisk", False)),
            end_date=parse_dt(m.get("endDate") or ev0.get("endDate")),
            active=bool(m.get("active", True)),
            closed=bool(m.get("closed", False)),
        )

    def list_active_markets(self, limit: int = 200) -> List[MarketMetadata]:
        arr = self._get_markets({"active": "true", "closed": "false", "limit": str(limit)})
        out: List[MarketMetadata] = []
        for m in arr:
            meta = self.to_metadata(m)
            if meta and meta.active and not meta.closed:
                out.append(meta)
        return out

    def fetch_markets_by_slug(self, slug: str) -> List[MarketMetadata]:
        if not slug:
            return []
        arr = self._get_markets({"slug": slug})
        return [meta for meta in (self.to_metadata(m) for m in arr) if meta]
