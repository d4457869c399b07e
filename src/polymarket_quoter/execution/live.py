from __future__ import annotations

import abc
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout
from dataclasses import dataclass
from typing import List, Optional

from py_clob_client.client import ClobClient
from py_clob_client.clob_types import (
    ApiCreds,
    AssetType,
    BalanceAllowanceParams,
    OpenOrderParams,
    OrderArgs,
    OrderType,
    PartialCreateOrderOptions,
)

from polymarket_quoter.adapters.clob import ClobAdapter
from polymarket_quoter.config import ClientContext
from polymarket_quoter.errors import FatalConfigError, TransientFetchError, VenueRejection
from polymarket_quoter.models import OrderBookSnapshot

# Conditional token balances are reported in 1e-6 units.
SHARE_UNITS = 1_000_000


@dataclass
class LiveOrderResult:
    ok: bool
    order_id: Optional[str] = None
    error: Optional[str] = None
    raw: Optional[dict] = None


class Venue(abc.ABC):
    """Everything the cycle needs from the trading venue.

    Subclasses must implement every operation, so a missing capability fails
    when the venue is constructed rather than on first use.
    """

    name = "venue"

    @abc.abstractmethod
    def fetch_order_book(self, token_id: str, tick_size: float = 0.01) -> OrderBookSnapshot:
        ...

    @abc.abstractmethod
    def place_order(self, token_id: str, side: str, price: float, size: float, order_type: str,
                    tick_size: float, neg_risk: bool) -> LiveOrderResult:
        ...

    @abc.abstractmethod
    def cancel_order(self, order_id: str) -> None:
        """Raise VenueRejection when the venue refuses the cancel."""

    @abc.abstractmethod
    def list_open_orders(self) -> List[dict]:
        ...

    @abc.abstractmethod
    def get_balance(self, token_id: str) -> float:
        ...

    def close(self) -> None:
        pass


def _tick_str(tick: float) -> str:
    return f"{float(tick):g}"


def build_clob_client(ctx: ClientContext) -> ClobClient:
    try:
        c = ClobClient(
            ctx.host,
            key=ctx.private_key,
            chain_id=ctx.chain_id,
            signature_type=ctx.signature_type,
            funder=ctx.funder or None,
        )
        if ctx.has_api_creds:
            c.set_api_creds(ApiCreds(api_key=ctx.api_key, api_secret=ctx.api_secret, api_passphrase=ctx.api_passphrase))
        else:
            c.set_api_creds(c.create_or_derive_api_creds())
        return c
    except Exception as e:
        raise FatalConfigError(f"clob_init_failed: {e}") from e


class LiveVenue(Venue):
    """Polymarket CLOB venue: httpx book reads plus py-clob-client trading.

    SDK calls run on a small worker pool so each one is bounded by
    `call_timeout`; a timeout surfaces as TransientFetchError.
    """

    name = "live"

    def __init__(self, books: ClobAdapter, client: ClobClient, call_timeout: float = 15.0):
        self.books = books
        self._client = client
        self.call_timeout = float(call_timeout)
        self._pool = ThreadPoolExecutor(max_workers=4, thread_name_prefix="clob")

    @classmethod
    def from_context(cls, ctx: ClientContext, books: ClobAdapter, call_timeout: float = 15.0) -> "LiveVenue":
        return cls(books, build_clob_client(ctx), call_timeout=call_timeout)

    def close(self) -> None:
        # Calls still stuck in the SDK finish on their own; nothing new is accepted.
        self._pool.shutdown(wait=False, cancel_futures=True)

    def _call(self, what: str, fn, *args, **kwargs):
        fut = self._pool.submit(fn, *args, **kwargs)
        try:
            return fut.result(timeout=self.call_timeout)
        except FuturesTimeout as e:
            fut.cancel()
            raise TransientFetchError(f"{what} timed out after {self.call_timeout}s", reason="venue_timeout") from e

    def fetch_order_book(self, token_id: str, tick_size: float = 0.01) -> OrderBookSnapshot:
        return self.books.fetch_book(token_id, tick_size)

    def place_order(self, token_id: str, side: str, price: float, size: float, order_type: str,
                    tick_size: float, neg_risk: bool) -> LiveOrderResult:
        args = OrderArgs(token_id=token_id, price=float(price), size=float(size), side=side.upper())
        opts = PartialCreateOrderOptions(tick_size=_tick_str(tick_size), neg_risk=bool(neg_risk))
        ot = OrderType.FOK if order_type == "FOK" else OrderType.GTC

        def _submit():
            signed = self._client.create_order(args, opts)
            return self._client.post_order(signed, ot)

        try:
            resp = self._call("post_order", _submit)
        except TransientFetchError as e:
            return LiveOrderResult(ok=False, error=e.reason)
        except Exception as e:
            return LiveOrderResult(ok=False, error=f"post_order_failed: {e}")

        if not isinstance(resp, dict):
            return LiveOrderResult(ok=False, error="post_order_unexpected_response", raw={"resp": str(resp)})
        oid = resp.get("orderID") or resp.get("id") or resp.get("order_id")
        if resp.get("success") is False or not oid:
            return LiveOrderResult(ok=False, order_id=oid, error=str(resp.get("errorMsg") or "no_order_id"), raw=resp)
        return LiveOrderResult(ok=True, order_id=str(oid), raw=resp)

    def cancel_order(self, order_id: str) -> None:
        try:
            resp = self._call("cancel", self._client.cancel, order_id)
        except TransientFetchError as e:
            raise VenueRejection(str(e), reason=e.reason) from e
        except Exception as e:
            raise VenueRejection(f"cancel {order_id}: {e}", reason="cancel_failed") from e
        not_canceled = (resp or {}).get("not_canceled") if isinstance(resp, dict) else None
        if not_canceled and order_id in not_canceled:
            raise VenueRejection(f"cancel {order_id}: {not_canceled[order_id]}", reason="cancel_rejected")

    def list_open_orders(self) -> List[dict]:
        try:
            rows = self._call("get_orders", self._client.get_orders, OpenOrderParams())
        except TransientFetchError:
            raise
        except Exception as e:
            raise TransientFetchError(f"get_orders: {e}", reason="open_orders_failed") from e
        return [r for r in (rows or []) if isinstance(r, dict)]

    def get_balance(self, token_id: str) -> float:
        params = BalanceAllowanceParams(asset_type=AssetType.CONDITIONAL, token_id=token_id)
        try:
            bal = self._call("get_balance_allowance", self._client.get_balance_allowance, params)
        except TransientFetchError:
            raise
        except Exception as e:
            raise TransientFetchError(f"balance {token_id}: {e}", reason="balance_failed") from e
        try:
            return float((bal or {}).get("balance") or 0.0) / SHARE_UNITS
        except (TypeError, ValueError) as e:
            raise TransientFetchError(f"balance {token_id}: bad payload", reason="balance_failed") from e
