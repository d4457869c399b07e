from __future__ import annotations
import json
import threading
from pathlib import Path
from datetime import datetime, timezone
from typing import Dict, List, Optional

from rich import print

from polymarket_quoter.errors import StoreError, ValidationError
from polymarket_quoter.models import OrderRecord, OrderStatus, Position, RunSummary, StoreState


def append_event(path: Optional[str], event: dict) -> bool:
    """Append one JSONL event. A write failure is reported on the console and returns False."""
    if not path:
        return False
    p = Path(path)
    event = {"ts": datetime.now(timezone.utc).isoformat(), **event}
    try:
        p.parent.mkdir(parents=True, exist_ok=True)
        with p.open("a") as f:
            f.write(json.dumps(event, default=str) + "\n")
    except OSError as e:
        print(f"[red]EVENT LOG ERROR[/red] {path}: {e} (event {event.get('type')})")
        return False
    return True


class StateStore:
    """Positions, order history, run summaries and asset flags.

    Backed by one JSON file when `path` is set, otherwise kept in memory.
    Every mutation is written through immediately.
    """

    def __init__(self, path: Optional[str] = None, max_runs: int = 500):
        self.path = path
        self.max_runs = int(max_runs)
        self._lock = threading.RLock()
        self._state = self._load()

    def _load(self) -> StoreState:
        if not self.path:
            return StoreState()
        p = Path(self.path)
        if not p.exists():
            return StoreState()
        try:
            return StoreState.model_validate_json(p.read_text())
        except Exception as e:
            raise StoreError(f"cannot read state {self.path}: {e}") from e

    def _save(self) -> None:
        if not self.path:
            return
        p = Path(self.path)
        try:
            p.parent.mkdir(parents=True, exist_ok=True)
            tmp = p.with_suffix(p.suffix + ".tmp")
            tmp.write_text(self._state.model_dump_json(indent=2))
            tmp.replace(p)
        except OSError as e:
            raise StoreError(f"cannot write state {self.path}: {e}") from e

    # positions

    def get_position(self, asset: str, slug: str, token_id: str) -> Optional[Position]:
        with self._lock:
            pos = self._state.positions.get(f"{asset}|{slug}|{token_id}")
            return pos.model_copy() if pos else None

    def upsert_position(self, pos: Position) -> None:
        with self._lock:
            pos.updated_at = datetime.now(timezone.utc)
            self._state.positions[pos.key] = pos.model_copy()
            self._save()

    def list_positions(self) -> List[Position]:
        with self._lock:
            return [p.model_copy() for p in self._state.positions.values()]

    # orders

    def append_order(self, rec: OrderRecord) -> None:
        with self._lock:
            if any(o.client_order_id == rec.client_order_id for o in self._state.orders):
                raise ValidationError(f"duplicate client_order_id {rec.client_order_id}", reason="duplicate_client_order_id")
            self._state.orders.append(rec.model_copy())
            self._save()

    def update_order_status(self, client_order_id: str, status: OrderStatus, error: Optional[str] = None) -> OrderRecord:
        with self._lock:
            for o in self._state.orders:
                if o.client_order_id == client_order_id:
                    o.transition(status, error)
                    self._save()
                    return o.model_copy()
        raise StoreError(f"unknown order {client_order_id}", reason="unknown_order")

    def note_order_error(self, client_order_id: str, error: str) -> None:
        with self._lock:
            for o in self._state.orders:
                if o.client_order_id == client_order_id:
                    o.last_error = error
                    o.updated_at = datetime.now(timezone.utc)
                    self._save()
                    return

    def list_orders(self, token_id: Optional[str] = None, status: Optional[OrderStatus] = None) -> List[OrderRecord]:
        with self._lock:
            return [
                o.model_copy()
                for o in self._state.orders
                if (token_id is None or o.token_id == token_id) and (status is None or o.status == status)
            ]

    def count_active(self, token_id: str, side: str) -> int:
        with self._lock:
            return sum(1 for o in self._state.orders if o.token_id == token_id and o.side == side and o.status == "ACTIVE")

    # runs

    def append_run(self, summary: RunSummary) -> None:
        with self._lock:
            if any(r.run_id == summary.run_id for r in self._state.runs):
                raise StoreError(f"run {summary.run_id} already persisted", reason="duplicate_run")
            self._state.runs.append(summary.model_copy(deep=True))
            if self.max_runs > 0 and len(self._state.runs) > self.max_runs:
                self._state.runs = self._state.runs[-self.max_runs:]
            self._save()

    def list_runs(self, limit: int = 0) -> List[RunSummary]:
        with self._lock:
            runs = self._state.runs[-limit:] if limit > 0 else self._state.runs
            return [r.model_copy(deep=True) for r in runs]

    # assets

    def asset_flags(self) -> Dict[str, bool]:
        with self._lock:
            return dict(self._state.asset_flags)

    def set_asset_enabled(self, asset: str, enabled: bool) -> None:
        with self._lock:
            self._state.asset_flags[asset.upper()] = bool(enabled)
            self._save()
