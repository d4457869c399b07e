import argparse
import os
import sys

from rich import print, print_json

from polymarket_quoter.config import load_config
from polymarket_quoter.control import ControlService
from polymarket_quoter.errors import FatalConfigError, QuoterError
from polymarket_quoter.loop import build_runtime, run_forever


def run_once(cfg: dict, dry_run=None):
    rt = build_runtime(cfg, dry_run=dry_run)
    try:
        return rt.scheduler.tick()
    finally:
        rt.close()


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="polymarket-quoter")
    parser.add_argument("--config", required=True)
    parser.add_argument("--once", action="store_true", help="run a single cycle and exit")
    parser.add_argument("--dry-run", action="store_true", help="validate and log orders without sending them")
    parser.add_argument("--auth", default=os.getenv("QUOTER_CONTROL_TOKEN", ""),
                        help='bearer credential for control commands, e.g. "Bearer <secret>"')
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("health")
    sub.add_parser("orders")

    p = sub.add_parser("place")
    p.add_argument("--asset", default="MANUAL")
    p.add_argument("--token-id", required=True)
    p.add_argument("--side", required=True)
    p.add_argument("--price", type=float, required=True)
    p.add_argument("--size", type=float, required=True)
    p.add_argument("--order-type", default="GTC")
    p.add_argument("--tick-size", type=float, default=0.01)
    p.add_argument("--neg-risk", action="store_true")

    c = sub.add_parser("cancel")
    c.add_argument("--order-id", required=True)

    pos = sub.add_parser("positions")
    pos.add_argument("--token-id", required=True)

    for name in ("enable", "disable"):
        e = sub.add_parser(name)
        e.add_argument("asset")
    return parser


def _control(args, cfg: dict) -> dict:
    rt = build_runtime(cfg, dry_run=args.dry_run or None)
    try:
        return _dispatch(args, ControlService(rt))
    finally:
        rt.close()


def _dispatch(args, svc: ControlService) -> dict:
    if args.command != "health":
        svc.authorize(args.auth)
    if args.command == "health":
        return svc.health()
    if args.command == "orders":
        return svc.orders()
    if args.command == "place":
        return svc.place(args.asset, args.token_id, args.side, args.price, args.size, order_type=args.order_type,
                         tick_size=args.tick_size, neg_risk=args.neg_risk, dry_run=args.dry_run)
    if args.command == "cancel":
        return svc.cancel(args.order_id, dry_run=args.dry_run)
    if args.command == "positions":
        return svc.positions(args.token_id)
    return svc.set_asset_enabled(args.asset, args.command == "enable")


def main(argv=None):
    args = _build_parser().parse_args(argv)
    try:
        cfg = load_config(args.config)
        if args.command:
            print_json(data=_control(args, cfg), default=str)
            return 0
        if args.once:
            summary = run_once(cfg, dry_run=args.dry_run or None)
            if summary is not None:
                print_json(summary.model_dump_json())
            return 0
        run_forever(args.config, dry_run=args.dry_run or None)
        return 0
    except FatalConfigError as e:
        print(f"[red]Fatal config error:[/red] {e}")
        return 2
    except QuoterError as e:
        print_json(data={"success": False, "error": e.reason, "detail": str(e)})
        return 1


if __name__ == "__main__":
    sys.exit(main())
