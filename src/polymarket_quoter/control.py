"""Manual control operations: place, cancel, list, positions, health.

Every order goes through the same tracker contract as the scheduled cycle,
including the per-token lock and the per-side order cap. Callers must present
the static bearer credential configured in QUOTER_CONTROL_SECRET.
"""
from __future__ import annotations

import hmac
import os
from typing import Optional

from polymarket_quoter.errors import FatalConfigError, QuoterError, ValidationError
from polymarket_quoter.execution.tracker import validate_order
from polymarket_quoter.loop import Runtime
from polymarket_quoter.models import Market, PlannedOrder, utcnow


class Unauthorized(ValidationError):
    reason = "unauthorized"


class ControlService:
    def __init__(self, rt: Runtime, secret: Optional[str] = None):
        self.rt = rt
        self.secret = (secret if secret is not None else os.getenv("QUOTER_CONTROL_SECRET", "")).strip()
        if not self.secret:
            raise FatalConfigError("QUOTER_CONTROL_SECRET is missing")

    def authorize(self, authorization: str) -> None:
        if not hmac.compare_digest(authorization or "", f"Bearer {self.secret}"):
            raise Unauthorized("bad or missing bearer credential")

    def health(self) -> dict:
        runs = self.rt.store.list_runs(limit=1)
        last = runs[-1] if runs else None
        return {
            "ok": True,
            "mode": self.rt.cfg["app"].get("mode"),
            "venue": self.rt.venue.name,
            "dry_run": self.rt.tracker.dry_run,
            "cycle_running": self.rt.scheduler.busy,
            "dropped_ticks": self.rt.scheduler.dropped_ticks,
            "last_run": last.model_dump(mode="json") if last else None,
            "timestamp": utcnow().isoformat(),
        }

    def orders(self) -> dict:
        try:
            venue_orders = self.rt.venue.list_open_orders()
        except QuoterError as e:
            return {"success": False, "error": e.reason, "detail": str(e)}
        active = [o.model_dump(mode="json") for o in self.rt.store.list_orders(status="ACTIVE")]
        return {"success": True, "count": len(venue_orders), "orders": venue_orders, "tracked_active": active}

    def place(self, asset: str, token_id: str, side: str, price: float, size: float, order_type: str = "GTC",
              tick_size: float = 0.01, neg_risk: bool = False, slug: str = "manual", outcome: str = "",
              dry_run: bool = False) -> dict:
        if not token_id:
            raise ValidationError("token_id is required", reason="invalid_body")
        side = str(side).upper()
        order_type = str(order_type).upper()
        validate_order(side, price, size, order_type, tick_size)
        if dry_run:
            return {"success": True, "dryRun": True, "orderId": None, "message": "validated_only"}

        market = Market(asset=asset, slug=slug, yes_token_id=token_id, no_token_id="", neg_risk=neg_risk,
                        tick_size=tick_size)
        po = PlannedOrder(token_id=token_id, outcome=outcome, side=side, order_type=order_type, price=price,
                          size=size, tick_size=tick_size)
        with self.rt.tracker.token_lock(token_id):
            res = self.rt.tracker.place(market, "MANUAL", po)
        return {
            "success": res.status in ("ACTIVE", "FILLED", "DRY_RUN"),
            "dryRun": res.status == "DRY_RUN",
            "status": res.status,
            "reason": res.reason,
            "orderId": res.order_id,
            "clientOrderId": res.client_order_id,
        }

    def cancel(self, order_id: str, dry_run: bool = False) -> dict:
        if not order_id:
            raise ValidationError("order_id is required", reason="missing_orderId")
        rec = next((o for o in self.rt.store.list_orders(status="ACTIVE")
                    if order_id in (o.order_id, o.client_order_id)), None)
        if dry_run:
            return {"success": True, "dryRun": True, "cancelled": False, "tracked": rec is not None,
                    "message": "validated_only"}
        if rec is None:
            # Not ours to track; pass straight through to the venue.
            try:
                self.rt.venue.cancel_order(order_id)
            except QuoterError as e:
                return {"success": False, "cancelled": False, "error": e.reason, "detail": str(e)}
            return {"success": True, "cancelled": True, "tracked": False}
        with self.rt.tracker.token_lock(rec.token_id):
            ok = self.rt.tracker.cancel(rec, "manual")
        return {"success": ok, "cancelled": ok, "tracked": True}

    def positions(self, token_id: str) -> dict:
        if not token_id:
            raise ValidationError("token_id is required", reason="missing_tokenId")
        try:
            shares = self.rt.venue.get_balance(token_id)
        except QuoterError as e:
            return {"success": False, "error": e.reason, "detail": str(e)}
        tracked = [p.model_dump(mode="json") for p in self.rt.store.list_positions() if p.token_id == token_id]
        return {"success": True, "tokenId": token_id, "shares": shares, "tracked": tracked}

    def set_asset_enabled(self, asset: str, enabled: bool) -> dict:
        self.rt.store.set_asset_enabled(asset, enabled)
        return {"success": True, "asset": asset.upper(), "enabled": bool(enabled)}
