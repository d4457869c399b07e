from pathlib import Path

import pytest

from polymarket_quoter.config import load_client_context, load_config, parse_assets, validate_config, with_defaults
from polymarket_quoter.errors import FatalConfigError

REPO_CONFIG = Path(__file__).resolve().parents[1] / "config" / "default.yaml"
ENV_KEYS = ("POLYMARKET_PRIVATE_KEY", "POLYMARKET_API_KEY", "POLYMARKET_API_SECRET", "POLYMARKET_API_PASSPHRASE",
            "POLYMARKET_FUNDER")


def test_shipped_config_loads():
    cfg = load_config(str(REPO_CONFIG))
    assets = {a.asset: a for a in parse_assets(cfg)}
    assert assets["BTC"].mode == "slug_prefix"
    assert assets["ETH"].mode == "scan"
    assert cfg["orders"]["max_orders_per_side"] >= 1


def test_partial_file_is_merged_with_defaults(tmp_path):
    p = tmp_path / "c.yaml"
    p.write_text("quoting:\n  half_spread_bps: 300\n")
    cfg = load_config(str(p))
    assert cfg["quoting"]["half_spread_bps"] == 300
    assert cfg["quoting"]["target_notional_usd"] == 2.0
    assert cfg["app"]["mode"] == "paper"


@pytest.mark.parametrize("raw", [
    {"app": {"mode": "yolo"}},
    {"orders": {"max_orders_per_side": 0}},
    {"assets": [{"asset": "BTC", "mode": "explicit"}]},
    {"assets": [{"asset": "BTC", "mode": "slug_prefix"}]},
    {"assets": [{"asset": "BTC", "mode": "nope"}]},
    {"book": None},
])
def test_invalid_config_is_fatal(raw):
    with pytest.raises(FatalConfigError):
        validate_config(with_defaults(raw))


def test_client_context_from_env(monkeypatch):
    for k in ENV_KEYS:
        monkeypatch.delenv(k, raising=False)
    cfg = with_defaults({})
    with pytest.raises(FatalConfigError):
        load_client_context(cfg)

    monkeypatch.setenv("POLYMARKET_PRIVATE_KEY", "0xkey")
    with pytest.raises(FatalConfigError):
        load_client_context(cfg)

    cfg["live"]["require_api_creds"] = False
    ctx = load_client_context(cfg)
    assert ctx.private_key == "0xkey"
    assert not ctx.has_api_creds
    assert ctx.chain_id == 137

    for k in ENV_KEYS[1:4]:
        monkeypatch.setenv(k, "x")
    cfg["live"]["require_api_creds"] = True
    assert load_client_context(cfg).has_api_creds
