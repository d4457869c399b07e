from __future__ import annotations

import copy
import os
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

from polymarket_quoter.errors import FatalConfigError

DEFAULTS = {
    "app": {"mode": "paper", "loop_seconds": 15, "dry_run": False},
    "http": {"timeout_seconds": 10.0},
    "data": {
        "gamma_base": "https://gamma-api.polymarket.com",
        "clob_rest_base": "https://clob.polymarket.com",
    },
    "live": {"chain_id": 137, "signature_type": 0, "call_timeout_seconds": 15.0},
    "storage": {"state_path": "data/state.json", "events_path": "data/events.jsonl", "max_runs": 500},
    "resolver": {
        "scan_limit": 200,
        "min_lead_seconds": 90,
        "short_duration_markers": ["15m", "5m", "up or down", "updown"],
        "slug_prefix_bucket_seconds": 900,
        "slug_prefix_windows": 2,
    },
    "book": {"depth_levels": 1, "min_top_sum_depth_usd": 20.0, "min_side_depth_usd": 1.0, "max_fetch_latency_ms": 2500},
    "gate": {
        "maker": {"min_bid": 0.02, "max_ask": 0.98, "max_spread_bps": 2000, "min_sum_depth_usd": 20.0,
                  "min_bid_depth_usd": 5.0, "min_ask_depth_usd": 5.0},
        "fok": {"min_bid": 0.02, "max_ask": 0.99, "max_spread_bps": 3000, "min_sum_depth_usd": 10.0,
                "min_bid_depth_usd": 5.0, "min_ask_depth_usd": 1.0,
                "fok_min_bid_depth_usd": 5.0, "fok_min_ask_depth_usd": 1.0},
    },
    "quoting": {
        "seed_enabled": True,
        "fair_price": 0.5,
        "half_spread_bps": 200,
        "seed_min_offset_ticks": 5,
        "target_notional_usd": 2.0,
        "min_order_size": 1.0,
        "tick_improve": 1,
        "max_improve_bps": 100,
    },
    "exits": {
        "closeout_seconds": 60,
        "min_profit_bps": 500,
        "min_profit_per_share_usd": 0.02,
        "min_profit_total_usd": 0.10,
        "confirm_with_balance": False,
    },
    "orders": {"max_orders_per_side": 1, "stale_after_seconds": 120},
    "risk": {"max_position_shares": 100.0, "max_position_usd": 25.0, "max_total_exposure_usd": 100.0},
    "positions": {"sync_balances": False},
    "assets": [],
}

REQUIRED_SECTIONS = ("app", "storage", "book", "gate", "quoting", "exits", "orders", "risk")


class AssetConfig(BaseModel):
    asset: str
    mode: Literal["explicit", "slug", "scan", "slug_prefix"] = "scan"
    enabled: bool = True
    slug: str = ""
    slug_prefix: str = ""
    keywords: List[str] = Field(default_factory=list)
    yes_token_id: str = ""
    no_token_id: str = ""
    tick_size: float = 0.01
    neg_risk: bool = False
    expires_at: Optional[datetime] = None
    fair_price: Optional[float] = Field(default=None, gt=0.0, lt=1.0)


@dataclass(frozen=True)
class ClientContext:
    """Venue credentials, read once at startup and passed to the venue client."""

    host: str
    chain_id: int
    signature_type: int
    private_key: str
    funder: str = ""
    api_key: str = ""
    api_secret: str = ""
    api_passphrase: str = ""

    @property
    def has_api_creds(self) -> bool:
        return bool(self.api_key and self.api_secret and self.api_passphrase)


def _merge(base: dict, override: dict) -> dict:
    out = copy.deepcopy(base)
    for k, v in (override or {}).items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _merge(out[k], v)
        else:
            out[k] = v
    return out


def with_defaults(raw: dict) -> dict:
    return _merge(DEFAULTS, raw or {})


def load_config(path: str) -> dict:
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(path)
    raw = yaml.safe_load(p.read_text()) or {}
    if not isinstance(raw, dict):
        raise FatalConfigError(f"{path}: top level must be a mapping")
    cfg = with_defaults(raw)
    validate_config(cfg)
    return cfg


def validate_config(cfg: dict) -> None:
    missing = [s for s in REQUIRED_SECTIONS if not isinstance(cfg.get(s), dict)]
    if missing:
        raise FatalConfigError(f"missing config sections: {', '.join(missing)}")
    mode = str(cfg["app"].get("mode", "paper")).lower()
    if mode not in {"paper", "live"}:
        raise FatalConfigError(f"app.mode must be paper or live, got {mode!r}")
    if int(cfg["orders"].get("max_orders_per_side", 0)) < 1:
        raise FatalConfigError("orders.max_orders_per_side must be >= 1")
    if not 0.0 < float(cfg["quoting"].get("fair_price", 0.5)) < 1.0:
        raise FatalConfigError("quoting.fair_price must be inside (0, 1)")
    parse_assets(cfg)


def parse_assets(cfg: dict) -> List[AssetConfig]:
    out: List[AssetConfig] = []
    for row in cfg.get("assets") or []:
        try:
            a = AssetConfig.model_validate(row)
        except PydanticValidationError as e:
            raise FatalConfigError(f"invalid asset entry {row!r}: {e}") from e
        if a.mode == "explicit" and not (a.yes_token_id and a.no_token_id):
            raise FatalConfigError(f"asset {a.asset}: explicit mode needs yes_token_id and no_token_id")
        if a.mode == "slug" and not a.slug:
            raise FatalConfigError(f"asset {a.asset}: slug mode needs slug")
        if a.mode == "slug_prefix" and not a.slug_prefix:
            raise FatalConfigError(f"asset {a.asset}: slug_prefix mode needs slug_prefix")
        out.append(a)
    return out


def load_client_context(cfg: dict) -> ClientContext:
    live = cfg.get("live", {})
    key = os.getenv("POLYMARKET_PRIVATE_KEY", "").strip()
    if not key:
        raise FatalConfigError("POLYMARKET_PRIVATE_KEY is missing")
    ctx = ClientContext(
        host=str(live.get("clob_host") or cfg.get("data", {}).get("clob_rest_base") or "https://clob.polymarket.com"),
        chain_id=int(live.get("chain_id", 137)),
        signature_type=int(live.get("signature_type", 0)),
        private_key=key,
        funder=os.getenv("POLYMARKET_FUNDER", "").strip(),
        api_key=os.getenv("POLYMARKET_API_KEY", "").strip(),
        api_secret=os.getenv("POLYMARKET_API_SECRET", "").strip(),
        api_passphrase=os.getenv("POLYMARKET_API_PASSPHRASE", "").strip(),
    )
    if bool(live.get("require_api_creds", True)) and not ctx.has_api_creds:
        raise FatalConfigError("one or more of POLYMARKET_API_KEY / POLYMARKET_API_SECRET / POLYMARKET_API_PASSPHRASE is missing")
    return ctx
