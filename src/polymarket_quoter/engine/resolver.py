from __future__ import annotations

from datetime import datetime, timedelta
from typing import List, Optional

from polymarket_quoter.adapters.gamma import GammaAdapter
from polymarket_quoter.config import AssetConfig
from polymarket_quoter.models import Market, MarketMetadata, utcnow
from polymarket_quoter.utils.storage import append_event


class MarketResolver:
    """Finds the tradable market for an asset. Never raises: a failed lookup is `None`."""

    def __init__(self, gamma: GammaAdapter, cfg: dict, events_path: Optional[str] = None):
        self.gamma = gamma
        self.cfg = cfg
        self.events_path = events_path
        rc = cfg.get("resolver", {})
        self.scan_limit = int(rc.get("scan_limit", 200))
        self.min_lead = timedelta(seconds=float(rc.get("min_lead_seconds", 90)))
        self.markers = [m.lower() for m in rc.get("short_duration_markers", []) if m]
        self.bucket_seconds = int(rc.get("slug_prefix_bucket_seconds", 900))
        self.prefix_windows = int(rc.get("slug_prefix_windows", 2))

    def resolve(self, asset: AssetConfig, now: Optional[datetime] = None) -> Optional[Market]:
        now = now or utcnow()
        try:
            if asset.mode == "explicit":
                return self._explicit(asset)
            if asset.mode == "slug":
                return self._by_slug(asset, asset.slug)
            if asset.mode == "slug_prefix":
                return self._by_slug_prefix(asset, now)
            return self._scan(asset, now)
        except Exception as e:
            append_event(self.events_path, {"type": "resolver_error", "asset": asset.asset, "mode": asset.mode,
                                            "error": str(e), "reason": getattr(e, "reason", "resolve_failed")})
            return None

    @staticmethod
    def _explicit(asset: AssetConfig) -> Market:
        return Market(
            asset=asset.asset,
            slug=asset.slug or f"{asset.asset.lower()}-explicit",
            yes_token_id=asset.yes_token_id,
            no_token_id=asset.no_token_id,
            neg_risk=asset.neg_risk,
            tick_size=asset.tick_size,
            expires_at=asset.expires_at,
        )

    @staticmethod
    def to_market(asset: str, meta: MarketMetadata) -> Optional[Market]:
        if len(meta.token_ids) < 2:
            return None
        return Market(
            asset=asset,
            slug=meta.slug,
            yes_token_id=meta.token_ids[0],
            no_token_id=meta.token_ids[1],
            neg_risk=meta.neg_risk,
            tick_size=meta.tick_size,
            expires_at=meta.end_date,
            question=meta.question,
        )

    def _by_slug(self, asset: AssetConfig, slug: str) -> Optional[Market]:
        want = slug.lower()
        for meta in self.gamma.fetch_markets_by_slug(slug):
            if meta.slug.lower() == want:
                return self.to_market(asset.asset, meta)
        return None

    def _by_slug_prefix(self, asset: AssetConfig, now: datetime) -> Optional[Market]:
        # Rolling markets are named <prefix><bucket start unix ts>.
        ts = int(now.timestamp())
        base = (ts // self.bucket_seconds) * self.bucket_seconds
        for k in range(0, self.prefix_windows + 1):
            m = self._by_slug(asset, f"{asset.slug_prefix}{base + k * self.bucket_seconds}")
            if m and self._far_enough(m.expires_at, now):
                return m
        return None

    def _far_enough(self, expires_at: Optional[datetime], now: datetime) -> bool:
        return expires_at is not None and expires_at - now > self.min_lead

    def _matches(self, asset: AssetConfig, meta: MarketMetadata) -> bool:
        hay = f"{meta.question} {meta.slug}".lower()
        kws = [k.lower() for k in (asset.keywords or [asset.asset]) if k]
        if not any(k in hay for k in kws):
            return False
        return not self.markers or any(m in hay for m in self.markers)

    def _scan(self, asset: AssetConfig, now: datetime) -> Optional[Market]:
        candidates: List[MarketMetadata] = [
            meta
            for meta in self.gamma.list_active_markets(limit=self.scan_limit)
            if self._matches(asset, meta) and self._far_enough(meta.end_date, now) and len(meta.token_ids) >= 2
        ]
        if not candidates:
            return None
        candidates.sort(key=lambda m: m.end_date)
        return self.to_market(asset.asset, candidates[0])
