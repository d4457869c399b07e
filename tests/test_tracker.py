import json
from datetime import timedelta

import pytest

from conftest import YES
from polymarket_quoter.execution.tracker import OrderTracker, validate_order
from polymarket_quoter.errors import ValidationError
from polymarket_quoter.models import PlannedOrder, Position, TokenPlan, utcnow


def _po(side="BUY", price=0.48, size=4.0, order_type="GTC"):
    return PlannedOrder(token_id=YES, outcome="YES", side=side, order_type=order_type, price=price, size=size,
                        tick_size=0.01)


def _events(path):
    return [json.loads(line) for line in path.read_text().splitlines()]


def test_validate_order_reason_codes():
    cases = [
        (("HOLD", 0.5, 1, "GTC", 0.01), "side_must_be_BUY_or_SELL"),
        (("BUY", 0.5, 1, "IOC", 0.01), "invalid_order_type"),
        (("BUY", 1.0, 1, "GTC", 0.01), "price_must_be_between_0_and_1"),
        (("BUY", 0.5, 0, "GTC", 0.01), "size_must_be_positive"),
        (("BUY", 0.455, 1, "GTC", 0.01), "price_not_tick_aligned"),
    ]
    for args, reason in cases:
        with pytest.raises(ValidationError) as ei:
            validate_order(*args)
        assert ei.value.reason == reason
    validate_order("SELL", 0.455, 1, "FOK", 0.001)


def test_place_gtc_records_active_order(tracker, venue, store, market):
    res = tracker.place(market, "MAKER_QUOTE", _po())
    assert res.status == "ACTIVE"
    assert res.order_id == "o-1"
    [rec] = store.list_orders(token_id=YES)
    assert (rec.status, rec.order_id, rec.action) == ("ACTIVE", "o-1", "MAKER_QUOTE")
    assert store.get_position(market.asset, market.slug, YES) is not None


def test_per_side_cap_is_enforced(tracker, venue, store, market):
    tracker.place(market, "MAKER_QUOTE", _po())
    res = tracker.place(market, "MAKER_QUOTE", _po(price=0.47))
    assert (res.status, res.reason) == ("SKIPPED", "ORDER_CAP")
    assert len(venue.placed) == 1
    assert store.count_active(YES, "BUY") == 1
    assert tracker.place(market, "MAKER_QUOTE", _po(side="SELL", price=0.55)).status == "ACTIVE"


def test_invalid_order_never_reaches_venue(tracker, venue, store, market):
    res = tracker.place(market, "MAKER_QUOTE", _po(price=0.455))
    assert (res.status, res.reason) == ("INVALID", "price_not_tick_aligned")
    assert venue.placed == []
    assert store.list_orders() == []


def test_venue_rejection_records_failed(tracker, venue, store, market):
    venue.reject_place = "not enough balance"
    res = tracker.place(market, "MAKER_QUOTE", _po())
    assert (res.status, res.reason) == ("FAILED", "VENUE_REJECTED")
    [rec] = store.list_orders()
    assert rec.status == "FAILED"
    assert rec.last_error == "not enough balance"
    assert store.count_active(YES, "BUY") == 0


def test_dry_run_validates_but_never_sends(venue, store, cfg, market):
    tracker = OrderTracker(venue, store, cfg, dry_run=True)
    res = tracker.place(market, "SEED", _po())
    assert res.status == "DRY_RUN"
    assert res.client_order_id
    assert venue.placed == []
    assert store.list_orders() == []


def test_cancel_stale_orders(tracker, venue, store, market):
    tracker.place(market, "MAKER_QUOTE", _po())
    assert tracker.cancel_stale(YES, utcnow()) == {"cancelled": 0, "cancel_failed": 0}
    out = tracker.cancel_stale(YES, utcnow() + timedelta(seconds=300))
    assert out == {"cancelled": 1, "cancel_failed": 0}
    assert venue.cancelled == ["o-1"]
    [rec] = store.list_orders()
    assert rec.status == "CANCELLED"


def test_failed_cancel_stays_active(tracker, venue, store, market):
    tracker.place(market, "MAKER_QUOTE", _po())
    venue.fail_cancel = True
    assert tracker.cancel_all(YES, "closeout") == {"cancelled": 0, "cancel_failed": 1}
    [rec] = store.list_orders()
    assert rec.status == "ACTIVE"
    assert rec.last_error.startswith("cancel_failed")


def test_reconcile_marks_vanished_orders_filled(tracker, venue, store, market):
    tracker.place(market, "MAKER_QUOTE", _po())
    tracker.place(market, "MAKER_QUOTE", _po(side="SELL", price=0.55))
    venue.open_ids.discard("o-1")
    assert tracker.reconcile_all(tracker.open_order_ids()) == 1
    statuses = {o.order_id: o.status for o in store.list_orders()}
    assert statuses == {"o-1": "FILLED", "o-2": "ACTIVE"}


def test_reconcile_skipped_when_open_orders_unavailable(tracker, venue, store, market):
    tracker.place(market, "MAKER_QUOTE", _po())
    venue.open_ids.clear()
    venue.fail_open_orders = True
    assert tracker.open_order_ids() is None
    assert tracker.reconcile_all(None) == 0
    assert store.list_orders()[0].status == "ACTIVE"


def test_profit_exit_closes_position(venue, store, cfg, market, tmp_path):
    events = tmp_path / "events.jsonl"
    tracker = OrderTracker(venue, store, cfg, events_path=str(events))
    store.upsert_position(Position(asset=market.asset, slug=market.slug, token_id=YES, outcome="YES",
                                   shares=10, avg_cost=0.40))
    tracker.place(market, "MAKER_QUOTE", _po(side="SELL", price=0.60, size=10))
    plan = TokenPlan(token_id=YES, outcome="YES", action="PROFIT_EXIT",
                     orders=[_po(side="SELL", price=0.55, size=10, order_type="FOK")])

    [res] = tracker.execute(market, plan)

    assert res.status == "FILLED"
    assert venue.cancelled == ["o-1"]
    pos = store.get_position(market.asset, market.slug, YES)
    assert (pos.shares, pos.avg_cost) == (0.0, 0.0)
    assert store.count_active(YES, "SELL") == 0
    kinds = [e["type"] for e in _events(events)]
    assert "exit_unverified" in kinds
    done = [e for e in _events(events) if e["type"] == "exit_done"][0]
    assert done["realized_pnl_usd"] == pytest.approx(1.5)


def test_exit_confirmed_by_balance(venue, store, cfg, market):
    cfg["exits"]["confirm_with_balance"] = True
    venue.balances[YES] = 2.0
    tracker = OrderTracker(venue, store, cfg)
    store.upsert_position(Position(asset=market.asset, slug=market.slug, token_id=YES, outcome="YES",
                                   shares=10, avg_cost=0.40))
    plan = TokenPlan(token_id=YES, outcome="YES", action="CLOSEOUT_EXIT",
                     orders=[_po(side="SELL", price=0.45, size=10, order_type="FOK")])
    tracker.execute(market, plan)
    pos = store.get_position(market.asset, market.slug, YES)
    assert pos.shares == 2.0
    assert pos.avg_cost == pytest.approx(0.40)


def test_sync_position_costs_new_shares_at_last_buy(venue, store, cfg, market):
    cfg["positions"]["sync_balances"] = True
    tracker = OrderTracker(venue, store, cfg)
    tracker.place(market, "MAKER_QUOTE", _po(price=0.45, size=4))
    venue.balances[YES] = 4.0
    pos = tracker.sync_position(market, YES, "YES")
    assert pos.shares == 4.0
    assert pos.avg_cost == pytest.approx(0.45)
    assert store.get_position(market.asset, market.slug, YES).shares == 4.0


def test_exposure_counts_resting_orders(tracker, store, market):
    tracker.place(market, "MAKER_QUOTE", _po(price=0.50, size=4))
    tracker.place(market, "MAKER_QUOTE", _po(side="SELL", price=0.55, size=3))
    exp = tracker.exposure(YES)
    assert (exp.active_buys, exp.active_sells) == (1, 1)
    assert exp.resting_buy_usd == pytest.approx(2.0)
    assert exp.resting_sell_shares == 3.0
    assert tracker.total_exposure_usd() == pytest.approx(2.0)


def test_reconciled_fills_update_position(tracker, venue, store, market):
    tracker.place(market, "MAKER_QUOTE", _po())
    venue.open_ids.discard("o-1")
    tracker.reconcile_all(tracker.open_order_ids())
    pos = store.get_position(market.asset, market.slug, YES)
    assert (pos.shares, pos.avg_cost) == (4.0, pytest.approx(0.48))

    tracker.place(market, "MAKER_QUOTE", _po(side="SELL", price=0.55, size=3))
    venue.open_ids.discard("o-2")
    tracker.reconcile_all(tracker.open_order_ids())
    pos = store.get_position(market.asset, market.slug, YES)
    assert pos.shares == 1.0
    assert pos.avg_cost == pytest.approx(0.48)


def test_fok_buy_fills_immediately(tracker, venue, store, market):
    res = tracker.place(market, "MANUAL", _po(price=0.50, size=4, order_type="FOK"))
    assert res.status == "FILLED"
    assert store.count_active(YES, "BUY") == 0
    assert store.list_orders()[0].status == "FILLED"
    pos = store.get_position(market.asset, market.slug, YES)
    assert (pos.shares, pos.avg_cost) == (4.0, pytest.approx(0.50))


def test_exit_survives_unwritable_event_log(venue, store, cfg, market, tmp_path):
    tracker = OrderTracker(venue, store, cfg, events_path=str(tmp_path))
    store.upsert_position(Position(asset=market.asset, slug=market.slug, token_id=YES, outcome="YES",
                                   shares=10, avg_cost=0.40))
    plan = TokenPlan(token_id=YES, outcome="YES", action="CLOSEOUT_EXIT",
                     orders=[_po(side="SELL", price=0.45, size=10, order_type="FOK")])
    [res] = tracker.execute(market, plan)
    assert res.status == "FILLED"
    assert store.list_orders()[0].status == "FILLED"
    assert store.get_position(market.asset, market.slug, YES).shares == 0.0
