from datetime import timedelta

import pytest

from polymarket_quoter.config import with_defaults
from polymarket_quoter.errors import TransientFetchError, VenueRejection
from polymarket_quoter.execution.live import LiveOrderResult, Venue
from polymarket_quoter.execution.tracker import OrderTracker
from polymarket_quoter.models import Market, OrderBookSnapshot, utcnow
from polymarket_quoter.utils.storage import StateStore

YES = "tok-yes"
NO = "tok-no"


def make_snap(token_id=YES, bid=0.48, ask=0.52, bid_usd=50.0, ask_usd=50.0, tick=0.01, latency_ms=10.0):
    return OrderBookSnapshot(
        token_id=token_id,
        best_bid=bid,
        best_ask=ask,
        bid_size=bid_usd / bid if bid > 0 else 0.0,
        ask_size=ask_usd / ask if ask < 1 else 0.0,
        bid_depth_usd=bid_usd,
        ask_depth_usd=ask_usd,
        tick_size=tick,
        fetch_latency_ms=latency_ms,
    )


def make_market(expires_in_s=600.0, asset="BTC", slug="btc-updown-15m-1"):
    return Market(
        asset=asset,
        slug=slug,
        yes_token_id=YES,
        no_token_id=NO,
        tick_size=0.01,
        expires_at=utcnow() + timedelta(seconds=expires_in_s),
    )


class FakeVenue(Venue):
    """In-memory venue: GTC orders stay open until cancelled, FOK orders fill."""

    name = "fake"

    def __init__(self, books=None, balances=None):
        self.books = dict(books or {})
        self.balances = dict(balances or {})
        self.placed = []
        self.cancelled = []
        self.open_ids = set()
        self.reject_place = None
        self.fail_cancel = False
        self.fail_open_orders = False
        self.closed = False
        self._n = 0

    def fetch_order_book(self, token_id, tick_size=0.01):
        book = self.books.get(token_id)
        if book is None:
            raise TransientFetchError(f"no book for {token_id}", reason="book_fetch_failed")
        if isinstance(book, Exception):
            raise book
        return book

    def place_order(self, token_id, side, price, size, order_type, tick_size, neg_risk):
        row = {"token_id": token_id, "side": side, "price": price, "size": size, "order_type": order_type, "id": None}
        self.placed.append(row)
        if self.reject_place:
            return LiveOrderResult(ok=False, error=self.reject_place)
        self._n += 1
        oid = row["id"] = f"o-{self._n}"
        if order_type == "GTC":
            self.open_ids.add(oid)
        return LiveOrderResult(ok=True, order_id=oid)

    def cancel_order(self, order_id):
        if self.fail_cancel:
            raise VenueRejection(f"cancel {order_id} refused", reason="cancel_rejected")
        self.cancelled.append(order_id)
        self.open_ids.discard(order_id)

    def list_open_orders(self):
        if self.fail_open_orders:
            raise TransientFetchError("open orders down", reason="open_orders_failed")
        return [{"id": oid} for oid in sorted(self.open_ids)]

    def get_balance(self, token_id):
        return float(self.balances.get(token_id, 0.0))

    def fill_resting(self, side):
        for row in self.placed:
            if row["side"] == side and row["id"] in self.open_ids:
                self.open_ids.discard(row["id"])

    def close(self):
        self.closed = True


@pytest.fixture
def cfg():
    return with_defaults({
        "storage": {"state_path": None, "events_path": None},
        "assets": [{"asset": "BTC", "mode": "explicit", "slug": "btc-updown-15m-1",
                    "yes_token_id": YES, "no_token_id": NO}],
    })


@pytest.fixture
def store():
    return StateStore()


@pytest.fixture
def venue():
    return FakeVenue(books={YES: make_snap(YES), NO: make_snap(NO)})


@pytest.fixture
def tracker(venue, store, cfg):
    return OrderTracker(venue, store, cfg)


@pytest.fixture
def market():
    return make_market()
