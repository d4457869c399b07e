from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Set

from rich import print

from polymarket_quoter.errors import QuoterError, StoreError, TransientFetchError, ValidationError, VenueRejection
from polymarket_quoter.execution.live import Venue
from polymarket_quoter.models import Market, OrderRecord, PlannedOrder, Position, TokenPlan, utcnow
from polymarket_quoter.utils.numeric import floor_size
from polymarket_quoter.utils.storage import StateStore, append_event

EXIT_ACTIONS = ("PROFIT_EXIT", "CLOSEOUT_EXIT")


@dataclass
class PlacementOutcome:
    side: str
    order_type: str
    price: float
    size: float
    status: str  # ACTIVE / FILLED / FAILED / SKIPPED / DRY_RUN / INVALID
    reason: str = "OK"
    client_order_id: Optional[str] = None
    order_id: Optional[str] = None


@dataclass
class TokenExposure:
    active_buys: int = 0
    active_sells: int = 0
    resting_buy_usd: float = 0.0
    resting_sell_shares: float = 0.0


def validate_order(side: str, price: float, size: float, order_type: str, tick: float) -> None:
    if side not in ("BUY", "SELL"):
        raise ValidationError(f"side must be BUY or SELL, got {side!r}", reason="side_must_be_BUY_or_SELL")
    if order_type not in ("GTC", "FOK"):
        raise ValidationError(f"order_type must be GTC or FOK, got {order_type!r}", reason="invalid_order_type")
    if not isinstance(price, (int, float)) or not 0.0 < float(price) < 1.0:
        raise ValidationError(f"price {price!r} outside (0, 1)", reason="price_must_be_between_0_and_1")
    if not isinstance(size, (int, float)) or float(size) <= 0:
        raise ValidationError(f"size {size!r} must be positive", reason="size_must_be_positive")
    if tick > 0 and abs(round(float(price) / tick) * tick - float(price)) > 1e-9:
        raise ValidationError(f"price {price} not aligned to tick {tick}", reason="price_not_tick_aligned")


def new_client_order_id(asset: str, side: str) -> str:
    return f"{asset.lower()}-{side.lower()}-{uuid.uuid4().hex[:16]}"


class OrderTracker:
    """Owns order records and positions; the only writer of both.

    Callers hold `token_lock(token_id)` around a token's cancel / plan / place
    sequence so cap checks never race a pending cancel for the same token.
    """

    def __init__(self, venue: Venue, store: StateStore, cfg: dict, events_path: Optional[str] = None, dry_run: bool = False):
        self.venue = venue
        self.store = store
        self.cfg = cfg
        self.events_path = events_path
        self.dry_run = bool(dry_run)
        self.max_per_side = int(cfg["orders"]["max_orders_per_side"])
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _event(self, kind: str, **fields) -> None:
        append_event(self.events_path, {"type": kind, **fields})

    def token_lock(self, token_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(token_id)
            if lock is None:
                lock = self._locks[token_id] = threading.Lock()
            return lock

    # read side

    def position(self, market: Market, token_id: str, outcome: str) -> Position:
        pos = self.store.get_position(market.asset, market.slug, token_id)
        return pos or Position(asset=market.asset, slug=market.slug, token_id=token_id, outcome=outcome)

    def exposure(self, token_id: str) -> TokenExposure:
        out = TokenExposure()
        for o in self.store.list_orders(token_id=token_id, status="ACTIVE"):
            if o.side == "BUY":
                out.active_buys += 1
                out.resting_buy_usd += o.price * o.size
            else:
                out.active_sells += 1
                out.resting_sell_shares += o.size
        return out

    def total_exposure_usd(self) -> float:
        held = sum(p.shares * p.avg_cost for p in self.store.list_positions())
        resting = sum(o.price * o.size for o in self.store.list_orders(status="ACTIVE") if o.side == "BUY")
        return round(held + resting, 6)

    # housekeeping before planning

    def open_order_ids(self) -> Optional[Set[str]]:
        try:
            rows = self.venue.list_open_orders()
        except QuoterError as e:
            self._event("open_orders_error", reason=e.reason, error=str(e))
            return None
        return {str(r.get("id") or r.get("orderID") or r.get("order_id")) for r in rows}

    def reconcile_open(self, token_id: str, open_ids: Optional[Set[str]]) -> int:
        """ACTIVE records the venue no longer lists as resting become FILLED.

        The fill is applied to the position at the order's limit price. With
        `positions.sync_balances` on, the venue balance later overrides it,
        which also corrects orders the venue cancelled on its own.
        """
        if open_ids is None:
            return 0
        n = 0
        for o in self.store.list_orders(token_id=token_id, status="ACTIVE"):
            if o.order_id and o.order_id not in open_ids:
                self._transition(o, "FILLED", "absent_from_open_orders")
                self._apply_fill(o)
                n += 1
        return n

    def reconcile_all(self, open_ids: Optional[Set[str]]) -> int:
        if open_ids is None:
            return 0
        n = 0
        for token_id in sorted({o.token_id for o in self.store.list_orders(status="ACTIVE")}):
            with self.token_lock(token_id):
                n += self.reconcile_open(token_id, open_ids)
        if n:
            self._event("reconciled_open_orders", marked_filled=n)
        return n

    def sync_position(self, market: Market, token_id: str, outcome: str) -> Position:
        pos = self.position(market, token_id, outcome)
        if not bool(self.cfg.get("positions", {}).get("sync_balances", False)):
            return pos
        try:
            bal = floor_size(self.venue.get_balance(token_id), 6)
        except QuoterError as e:
            self._event("balance_error", token_id=token_id, reason=e.reason, error=str(e))
            return pos
        if abs(bal - pos.shares) < 1e-9:
            return pos
        if bal > pos.shares:
            buys = [o for o in self.store.list_orders(token_id=token_id) if o.side == "BUY" and o.status in ("ACTIVE", "FILLED")]
            fill_px = buys[-1].price if buys else pos.avg_cost
            added = bal - pos.shares
            pos.avg_cost = round((pos.shares * pos.avg_cost + added * fill_px) / bal, 6)
        pos.shares = bal
        self._save_position(pos)
        self._event("position_sync", token_id=token_id, shares=pos.shares, avg_cost=pos.avg_cost)
        return pos

    def cancel_stale(self, token_id: str, now: datetime) -> Dict[str, int]:
        max_age = float(self.cfg["orders"]["stale_after_seconds"])
        stale = [o for o in self.store.list_orders(token_id=token_id, status="ACTIVE") if o.age_seconds(now) > max_age]
        return self._cancel_many(stale, "stale")

    def cancel_all(self, token_id: str, reason: str, side: Optional[str] = None) -> Dict[str, int]:
        rows = [o for o in self.store.list_orders(token_id=token_id, status="ACTIVE") if side is None or o.side == side]
        return self._cancel_many(rows, reason)

    def _cancel_many(self, rows: List[OrderRecord], why: str) -> Dict[str, int]:
        out = {"cancelled": 0, "cancel_failed": 0}
        for o in rows:
            if self.cancel(o, why):
                out["cancelled"] += 1
            else:
                out["cancel_failed"] += 1
        return out

    def cancel(self, rec: OrderRecord, why: str = "manual") -> bool:
        """Best effort. A failed cancel is logged and left ACTIVE for the next cycle."""
        if self.dry_run:
            self._event("dry_run_cancel", client_order_id=rec.client_order_id, order_id=rec.order_id, why=why)
            return False
        if not rec.order_id:
            self._transition(rec, "CANCELLED", f"{why}: never acknowledged")
            return True
        try:
            self.venue.cancel_order(rec.order_id)
        except QuoterError as e:
            self._event("cancel_failed", client_order_id=rec.client_order_id, order_id=rec.order_id, why=why,
                        reason=e.reason, error=str(e))
            self._note_error(rec.client_order_id, f"cancel_failed: {e}")
            print(f"[yellow]CANCEL FAILED[/yellow] {rec.order_id} why={why} err={e}")
            return False
        self._transition(rec, "CANCELLED", why)
        self._event("order_cancelled", client_order_id=rec.client_order_id, order_id=rec.order_id, why=why)
        return True

    # placement

    def execute(self, market: Market, plan: TokenPlan) -> List[PlacementOutcome]:
        if plan.action == "SKIP" or not plan.orders:
            return []
        if plan.action in EXIT_ACTIONS:
            # Resting sells reserve the balance a full-position FOK needs.
            self.cancel_all(plan.token_id, "exit", side="SELL")
        return [self.place(market, plan.action, o) for o in plan.orders]

    def place(self, market: Market, action: str, po: PlannedOrder) -> PlacementOutcome:
        out = PlacementOutcome(side=po.side, order_type=po.order_type, price=po.price, size=po.size, status="SKIPPED")
        tick = po.tick_size or market.tick_size
        try:
            validate_order(po.side, po.price, po.size, po.order_type, tick)
        except ValidationError as e:
            out.status, out.reason = "INVALID", e.reason
            self._event("order_invalid", token_id=po.token_id, action=action, reason=e.reason, error=str(e))
            return out

        if po.order_type == "GTC" and self.store.count_active(po.token_id, po.side) >= self.max_per_side:
            out.reason = "ORDER_CAP"
            self._event("order_skipped", token_id=po.token_id, action=action, side=po.side, reason="ORDER_CAP")
            return out

        cid = new_client_order_id(market.asset, po.side)
        out.client_order_id = cid
        if self.dry_run:
            out.status = "DRY_RUN"
            self._event("dry_run_order", token_id=po.token_id, action=action, side=po.side, order_type=po.order_type,
                        price=po.price, size=po.size, client_order_id=cid)
            print(f"[cyan]DRY-RUN[/cyan] {action} {po.side} {po.size}@{po.price} {market.slug}/{po.outcome}")
            return out

        order_id, error = None, None
        try:
            res = self.venue.place_order(po.token_id, po.side, po.price, po.size, po.order_type, tick, market.neg_risk)
            order_id = res.order_id if res.ok else None
            error = None if res.ok and order_id else (res.error or "no_order_id")
        except (VenueRejection, TransientFetchError) as e:
            error = f"{e.reason}: {e}"
        except ValidationError as e:
            error = f"{e.reason}: {e}"

        now = utcnow()
        rec = OrderRecord(
            asset=market.asset, slug=market.slug, token_id=po.token_id, outcome=po.outcome, side=po.side,
            order_type=po.order_type, price=po.price, size=po.size, tick_size=tick, neg_risk=market.neg_risk,
            status="ACTIVE" if order_id else "FAILED", order_id=order_id, client_order_id=cid, action=action,
            placed_at=now, updated_at=now, last_error=error,
        )
        out.order_id = order_id
        out.status = rec.status
        out.reason = "OK" if order_id else "VENUE_REJECTED"
        self._append(rec)
        self._event("order_placed" if order_id else "order_failed", token_id=po.token_id, slug=market.slug,
                    action=action, side=po.side, order_type=po.order_type, price=po.price, size=po.size,
                    client_order_id=cid, order_id=order_id, error=error)

        if not order_id:
            print(f"[red]PLACE FAILED[/red] {action} {po.side} {po.size}@{po.price} {market.slug}/{po.outcome} err={error}")
            return out
        print(f"[green]PLACED[/green] {action} {po.side} {po.order_type} {po.size}@{po.price} {market.slug}/{po.outcome}")

        if po.order_type == "FOK":
            # A FOK that was accepted executed in full, so it never rests.
            self._transition(rec, "FILLED", None)
            out.status = "FILLED"
            if action in EXIT_ACTIONS:
                self._after_exit(market, po)
            else:
                self._apply_fill(rec)
        else:
            self._ensure_position(market, po.token_id, po.outcome)
        return out

    def _apply_fill(self, rec: OrderRecord) -> Position:
        pos = self.store.get_position(rec.asset, rec.slug, rec.token_id)
        pos = pos or Position(asset=rec.asset, slug=rec.slug, token_id=rec.token_id, outcome=rec.outcome)
        if rec.side == "BUY":
            total = pos.shares + rec.size
            pos.avg_cost = round((pos.shares * pos.avg_cost + rec.size * rec.price) / total, 6)
            pos.shares = floor_size(total, 6)
        else:
            pos.shares = max(0.0, floor_size(pos.shares - rec.size, 6))
            if pos.shares <= 0:
                pos.avg_cost = 0.0
        self._save_position(pos)
        self._event("fill_applied", token_id=rec.token_id, client_order_id=rec.client_order_id, side=rec.side,
                    price=rec.price, size=rec.size, shares=pos.shares, avg_cost=pos.avg_cost)
        return pos

    def _after_exit(self, market: Market, po: PlannedOrder) -> None:
        pos = self.position(market, po.token_id, po.outcome)
        realized = round((po.price - pos.avg_cost) * po.size, 6)
        verified = False
        if bool(self.cfg["exits"].get("confirm_with_balance", False)):
            try:
                pos.shares = floor_size(self.venue.get_balance(po.token_id), 6)
                verified = True
            except QuoterError as e:
                self._event("exit_balance_error", token_id=po.token_id, reason=e.reason, error=str(e))
        if not verified:
            pos.shares = max(0.0, floor_size(pos.shares - po.size, 6))
            self._event("exit_unverified", token_id=po.token_id, slug=market.slug, size=po.size,
                        note="position reduced on FOK acceptance without a balance check")
        if pos.shares <= 0:
            pos.avg_cost = 0.0
        self._save_position(pos)
        self._event("exit_done", token_id=po.token_id, slug=market.slug, price=po.price, size=po.size,
                    realized_pnl_usd=realized, shares_left=pos.shares, verified=verified)

    def _ensure_position(self, market: Market, token_id: str, outcome: str) -> None:
        if self.store.get_position(market.asset, market.slug, token_id) is None:
            self._save_position(Position(asset=market.asset, slug=market.slug, token_id=token_id, outcome=outcome))

    # store writes; a failure here is logged and never undoes a venue action

    def _append(self, rec: OrderRecord) -> None:
        try:
            self.store.append_order(rec)
        except (StoreError, ValidationError) as e:
            self._event("store_error", op="append_order", client_order_id=rec.client_order_id, order_id=rec.order_id,
                        error=str(e), gap="order placed but not recorded")
            print(f"[red]STORE ERROR[/red] append_order {rec.client_order_id}: {e}")

    def _transition(self, rec: OrderRecord, status: str, error: Optional[str]) -> None:
        try:
            self.store.update_order_status(rec.client_order_id, status, error)
        except (StoreError, ValidationError) as e:
            self._event("store_error", op="update_order_status", client_order_id=rec.client_order_id,
                        status=status, error=str(e))

    def _note_error(self, client_order_id: str, error: str) -> None:
        try:
            self.store.note_order_error(client_order_id, error)
        except StoreError as e:
            self._event("store_error", op="note_order_error", client_order_id=client_order_id, error=str(e))

    def _save_position(self, pos: Position) -> None:
        try:
            self.store.upsert_position(pos)
        except StoreError as e:
            self._event("store_error", op="upsert_position", token_id=pos.token_id, error=str(e))
