import threading

import pytest

from polymarket_quoter.errors import TransientFetchError, VenueRejection
from polymarket_quoter.execution.live import LiveVenue


class _StubClient:
    def __init__(self, post_resp=None, cancel_resp=None, balance="2500000", block=None):
        self.post_resp = post_resp if post_resp is not None else {"success": True, "orderID": "0xabc"}
        self.cancel_resp = cancel_resp if cancel_resp is not None else {"canceled": ["0xabc"], "not_canceled": {}}
        self.balance = balance
        self.block = block
        self.created = []

    def create_order(self, args, opts):
        self.created.append((args, opts))
        return {"signed": args.token_id}

    def post_order(self, signed, order_type):
        if self.block is not None:
            self.block.wait(2)
        return self.post_resp

    def cancel(self, order_id):
        return self.cancel_resp

    def get_orders(self, params):
        return [{"id": "0xabc"}, "junk"]

    def get_balance_allowance(self, params):
        return {"balance": self.balance}


@pytest.fixture
def make_venue():
    made = []

    def _make(client, timeout=1.0):
        v = LiveVenue(books=None, client=client, call_timeout=timeout)
        made.append(v)
        return v

    yield _make
    for v in made:
        v.close()


def test_place_order_maps_success(make_venue):
    client = _StubClient()
    res = make_venue(client).place_order("tok", "buy", 0.45, 4, "GTC", 0.01, True)
    assert (res.ok, res.order_id) == (True, "0xabc")
    args, opts = client.created[0]
    assert (args.token_id, args.price, args.size, args.side) == ("tok", 0.45, 4.0, "BUY")
    assert (opts.tick_size, opts.neg_risk) == ("0.01", True)


def test_place_order_maps_rejection(make_venue):
    client = _StubClient(post_resp={"success": False, "errorMsg": "not enough balance / allowance"})
    res = make_venue(client).place_order("tok", "SELL", 0.55, 3, "FOK", 0.01, False)
    assert not res.ok
    assert res.error == "not enough balance / allowance"


def test_slow_sdk_call_times_out(make_venue):
    gate = threading.Event()
    try:
        res = make_venue(_StubClient(block=gate), timeout=0.05).place_order("tok", "BUY", 0.45, 4, "GTC", 0.01, False)
    finally:
        gate.set()
    assert not res.ok
    assert res.error == "venue_timeout"


def test_cancel_refused_raises(make_venue):
    v = make_venue(_StubClient(cancel_resp={"canceled": [], "not_canceled": {"0xabc": "order already matched"}}))
    with pytest.raises(VenueRejection) as ei:
        v.cancel_order("0xabc")
    assert ei.value.reason == "cancel_rejected"
    make_venue(_StubClient()).cancel_order("0xabc")


def test_open_orders_and_balance(make_venue):
    v = make_venue(_StubClient())
    assert v.list_open_orders() == [{"id": "0xabc"}]
    assert v.get_balance("tok") == pytest.approx(2.5)
    with pytest.raises(TransientFetchError):
        make_venue(_StubClient(balance="n/a")).get_balance("tok")


def test_closed_venue_refuses_new_calls(make_venue):
    v = make_venue(_StubClient())
    v.close()
    res = v.place_order("tok", "BUY", 0.45, 4, "GTC", 0.01, False)
    assert not res.ok
    assert res.error.startswith("post_order_failed")
    with pytest.raises(TransientFetchError):
        v.list_open_orders()
