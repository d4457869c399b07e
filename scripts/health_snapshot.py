#!/usr/bin/env python3
"""Quick health snapshot of the quoting loop.

Reads the state file and prints compact, actionable status:
- freshness of the latest run summary
- per-asset actions / placements / skips of the latest runs
- most frequent skip reasons and errors
- resting orders per (token, side)
"""

from __future__ import annotations

import argparse
from collections import Counter
from datetime import datetime, timezone

from polymarket_quoter.config import load_config
from polymarket_quoter.utils.storage import StateStore


def age_s(ts: datetime | None) -> float | None:
    if not ts:
        return None
    return (datetime.now(timezone.utc) - ts.astimezone(timezone.utc)).total_seconds()


def fmt_age(v: float | None) -> str:
    if v is None:
        return "n/a"
    return f"{v:.1f}s"


def main() -> None:
    parser = argparse.ArgumentParser()
    parser.add_argument("--config", default="config/default.yaml")
    parser.add_argument("--runs", type=int, default=20)
    args = parser.parse_args()

    cfg = load_config(args.config)
    store = StateStore(cfg["storage"]["state_path"])
    runs = store.list_runs(limit=args.runs)

    print("=== QUOTER HEALTH SNAPSHOT ===")
    if not runs:
        print("no runs recorded")
        return
    last = runs[-1]
    print(f"last_run: {last.run_id[:8]} age={fmt_age(age_s(last.ended_at))} aborted={last.aborted}")
    for asset, st in sorted(last.per_asset_stats.items()):
        print(
            f"  {asset}: slug={st.get('slug')} actions={st.get('actions')}"
            f" placed={st.get('placed')} failed={st.get('failed')} exits={st.get('exits')}"
            f" cancelled={st.get('cancelled')} cancel_failed={st.get('cancel_failed')}"
        )

    skips = Counter(r.split(":", 1)[-1] for run in runs for r in run.skipped_reasons)
    errors = Counter(e for run in runs for e in run.errors)
    print(f"skip_reasons (last {len(runs)} runs): {dict(skips.most_common(8))}")
    print(f"errors (last {len(runs)} runs): {len(errors)} distinct")
    for e, n in errors.most_common(5):
        print(f"  {n}x {e}")

    resting = Counter((o.token_id[:12], o.side) for o in store.list_orders(status="ACTIVE"))
    print(f"resting_orders: {sum(resting.values())}")
    for (tok, side), n in sorted(resting.items()):
        print(f"  {tok}.. {side}: {n}")


if __name__ == "__main__":
    main()
