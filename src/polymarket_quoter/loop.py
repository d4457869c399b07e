from __future__ import annotations

import threading
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from rich import print

from polymarket_quoter.adapters.clob import ClobAdapter
from polymarket_quoter.adapters.gamma import GammaAdapter
from polymarket_quoter.config import AssetConfig, load_client_context, load_config, parse_assets
from polymarket_quoter.engine.book import classify, mark_stale
from polymarket_quoter.engine.planner import PlanContext, in_closeout, plan_token
from polymarket_quoter.engine.resolver import MarketResolver
from polymarket_quoter.errors import StaleDataError, StoreError, TransientFetchError
from polymarket_quoter.execution.live import LiveVenue, Venue
from polymarket_quoter.execution.tracker import OrderTracker
from polymarket_quoter.models import Market, OrderBookSnapshot, RunSummary, utcnow
from polymarket_quoter.sim.paper import PaperVenue
from polymarket_quoter.utils.storage import StateStore, append_event


def _new_stats() -> dict:
    return {"slug": None, "tokens": 0, "placed": 0, "failed": 0, "exits": 0, "skips": 0,
            "cancelled": 0, "cancel_failed": 0, "actions": {}}


class Scheduler:
    """Runs quoting cycles over the enabled assets.

    `tick()` is single-flight: a tick that arrives while a cycle is still
    running is dropped, never queued.
    """

    def __init__(self, cfg: dict, resolver: MarketResolver, tracker: OrderTracker, store: StateStore,
                 events_path: Optional[str] = None, clock: Callable[[], datetime] = utcnow):
        self.cfg = cfg
        self.resolver = resolver
        self.tracker = tracker
        self.venue: Venue = tracker.venue
        self.store = store
        self.events_path = events_path
        self.clock = clock
        self._guard = threading.Lock()
        self.dropped_ticks = 0

    def _event(self, kind: str, **fields) -> None:
        append_event(self.events_path, {"type": kind, **fields})

    def enabled_assets(self) -> List[AssetConfig]:
        flags = self.store.asset_flags()
        out = []
        for a in parse_assets(self.cfg):
            on = flags.get(a.asset.upper(), a.enabled)
            if on:
                out.append(a)
        return out

    def tick(self) -> Optional[RunSummary]:
        if not self._guard.acquire(blocking=False):
            self.dropped_ticks += 1
            self._event("tick_dropped", dropped_ticks=self.dropped_ticks)
            print("[yellow]Previous cycle still running; tick dropped.[/yellow]")
            return None
        try:
            return self.run_cycle()
        finally:
            self._guard.release()

    @property
    def busy(self) -> bool:
        return self._guard.locked()

    def run_cycle(self) -> RunSummary:
        summary = RunSummary(run_id=uuid.uuid4().hex, started_at=self.clock())
        try:
            assets = self.enabled_assets()
        except Exception as e:
            # No partial asset list is trusted.
            summary.aborted = True
            summary.errors.append(f"asset_list: {getattr(e, 'reason', 'error')}: {e}")
            self._event("cycle_aborted", run_id=summary.run_id, error=str(e))
            print(f"[red]Cycle aborted[/red] cannot list enabled assets: {e}")
        else:
            open_ids = self.tracker.open_order_ids()
            self.tracker.reconcile_all(open_ids)
            for asset in assets:
                try:
                    self._run_asset(asset, summary)
                except Exception as e:
                    summary.errors.append(f"{asset.asset}: {e}")
                    self._event("asset_error", run_id=summary.run_id, asset=asset.asset, error=str(e))
        summary.ended_at = self.clock()
        self._persist(summary)
        return summary

    def _persist(self, summary: RunSummary) -> None:
        try:
            self.store.append_run(summary)
        except StoreError as e:
            self._event("store_error", op="append_run", run_id=summary.run_id, error=str(e))
            print(f"[red]STORE ERROR[/red] run summary {summary.run_id}: {e}")
        self._event("run_summary", **summary.model_dump(mode="json"))
        placed = sum(s.get("placed", 0) for s in summary.per_asset_stats.values())
        print(f"[bold]Cycle[/bold] {summary.run_id[:8]} assets={len(summary.per_asset_stats)} placed={placed} "
              f"skips={len(summary.skipped_reasons)} errors={len(summary.errors)}")

    def _run_asset(self, asset: AssetConfig, summary: RunSummary) -> None:
        stats = summary.per_asset_stats.setdefault(asset.asset, _new_stats())
        now = self.clock()
        market = self.resolver.resolve(asset, now)
        if market is None:
            summary.skipped_reasons.append(f"{asset.asset}:NO_MARKET")
            return
        stats["slug"] = market.slug
        fair = asset.fair_price if asset.fair_price is not None else self.cfg["quoting"].get("fair_price")

        for outcome, token_id in market.outcomes():
            stats["tokens"] += 1
            # Outcome prices of a binary market sum to one.
            token_fair = None if fair is None else (fair if outcome == "YES" else round(1.0 - float(fair), 6))
            try:
                self._run_token(market, outcome, token_id, token_fair, now, summary, stats)
            except Exception as e:
                summary.errors.append(f"{asset.asset}/{outcome}: {e}")
                self._event("token_error", run_id=summary.run_id, asset=asset.asset, token_id=token_id, error=str(e))

    def _skip(self, summary: RunSummary, stats: dict, market: Market, outcome: str, reason: str) -> None:
        stats["skips"] += 1
        summary.skipped_reasons.append(f"{market.asset}/{outcome}:{reason}")
        self._event("token_skip", run_id=summary.run_id, asset=market.asset, slug=market.slug, outcome=outcome,
                    reason=reason)

    def _fresh_book(self, token_id: str, tick_size: float) -> OrderBookSnapshot:
        snap = mark_stale(self.venue.fetch_order_book(token_id, tick_size), self.cfg)
        if snap.stale:
            raise StaleDataError(f"book {token_id} took {snap.fetch_latency_ms}ms")
        return snap

    def _run_token(self, market: Market, outcome: str, token_id: str, fair, now: datetime,
                   summary: RunSummary, stats: dict) -> None:
        with self.tracker.token_lock(token_id):
            for k, v in self.tracker.cancel_stale(token_id, now).items():
                stats[k] += v
            if in_closeout(market, now, self.cfg):
                for k, v in self.tracker.cancel_all(token_id, "closeout", side="BUY").items():
                    stats[k] += v
            pos = self.tracker.sync_position(market, token_id, outcome)

            try:
                snap = self._fresh_book(token_id, market.tick_size)
            except TransientFetchError as e:
                self._skip(summary, stats, market, outcome, e.reason)
                return

            view = classify(snap, self.cfg)
            exp = self.tracker.exposure(token_id)
            ctx = PlanContext(
                market=market, token_id=token_id, outcome=outcome, view=view, position=pos, now=now,
                fair_price=fair, active_buys=exp.active_buys, active_sells=exp.active_sells,
                resting_buy_usd=exp.resting_buy_usd, resting_sell_shares=exp.resting_sell_shares,
                total_exposure_usd=self.tracker.total_exposure_usd(),
            )
            plan = plan_token(ctx, self.cfg)
            stats["actions"][plan.action] = stats["actions"].get(plan.action, 0) + 1
            self._event("token_plan", run_id=summary.run_id, asset=market.asset, slug=market.slug, outcome=outcome,
                        book_state=view.state, bid=view.best_bid, ask=view.best_ask, spread_bps=view.spread_bps,
                        action=plan.action, reason=plan.reason, orders=[o.model_dump() for o in plan.orders])
            if plan.action == "SKIP":
                self._skip(summary, stats, market, outcome, plan.reason)
                return

            for res in self.tracker.execute(market, plan):
                if res.status in ("ACTIVE", "FILLED"):
                    stats["placed"] += 1
                    if res.status == "FILLED":
                        stats["exits"] += 1
                elif res.status == "FAILED":
                    stats["failed"] += 1
                    summary.errors.append(f"{market.asset}/{outcome}: {plan.action} {res.side} rejected")
                elif res.status in ("SKIPPED", "INVALID"):
                    summary.skipped_reasons.append(f"{market.asset}/{outcome}:{res.reason}")

    def run_forever(self, interval: float, stop: Optional[threading.Event] = None, max_cycles: Optional[int] = None) -> None:
        stop = stop or threading.Event()
        interval = max(0.01, float(interval))
        next_at = time.monotonic()
        cycles = 0
        while not stop.is_set():
            self.tick()
            cycles += 1
            if max_cycles is not None and cycles >= max_cycles:
                return
            next_at += interval
            now = time.monotonic()
            if now > next_at:
                # Ticks that came due while the cycle ran are dropped, not replayed.
                missed = int((now - next_at) // interval) + 1
                self.dropped_ticks += missed
                next_at += missed * interval
                self._event("tick_dropped", dropped_ticks=self.dropped_ticks, missed=missed)
            stop.wait(max(0.0, next_at - time.monotonic()))


@dataclass
class Runtime:
    cfg: dict
    store: StateStore
    venue: Venue
    tracker: OrderTracker
    resolver: MarketResolver
    scheduler: Scheduler

    def close(self) -> None:
        self.venue.close()


def build_runtime(cfg: dict, dry_run: Optional[bool] = None) -> Runtime:
    """Wire collaborators once. Raises FatalConfigError on bad config or credentials."""
    events_path = cfg["storage"].get("events_path")
    timeout = float(cfg.get("http", {}).get("timeout_seconds", 10.0))
    store = StateStore(cfg["storage"].get("state_path"), max_runs=int(cfg["storage"].get("max_runs", 500)))
    books = ClobAdapter(cfg["data"]["clob_rest_base"], timeout=timeout, depth_levels=int(cfg["book"].get("depth_levels", 1)))
    gamma = GammaAdapter(cfg["data"]["gamma_base"], timeout=timeout)

    if str(cfg["app"].get("mode", "paper")).lower() == "live":
        ctx = load_client_context(cfg)
        venue: Venue = LiveVenue.from_context(ctx, books, call_timeout=float(cfg["live"].get("call_timeout_seconds", 15.0)))
    else:
        venue = PaperVenue(books.fetch_book)

    dry = bool(cfg["app"].get("dry_run", False)) if dry_run is None else dry_run
    tracker = OrderTracker(venue, store, cfg, events_path=events_path, dry_run=dry)
    resolver = MarketResolver(gamma, cfg, events_path=events_path)
    scheduler = Scheduler(cfg, resolver, tracker, store, events_path=events_path)
    return Runtime(cfg=cfg, store=store, venue=venue, tracker=tracker, resolver=resolver, scheduler=scheduler)


def run_forever(config_path: str, dry_run: Optional[bool] = None):
    cfg = load_config(config_path)
    rt = build_runtime(cfg, dry_run=dry_run)
    interval = float(cfg.get("app", {}).get("loop_seconds", 15))
    print(f"[bold]polymarket-quoter[/bold] mode={cfg['app']['mode']} venue={rt.venue.name} interval={interval}s")
    try:
        rt.scheduler.run_forever(interval)
    except KeyboardInterrupt:
        print("[yellow]Stopped.[/yellow]")
    finally:
        rt.close()


if __name__ == "__main__":
    run_forever("config/default.yaml")
