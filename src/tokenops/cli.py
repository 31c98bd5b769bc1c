# src/tokenops/cli.py
from __future__ import annotations

import argparse
import json
import sys
from datetime import datetime
from typing import Any, Dict, List, Optional

from tokenops.config import TokenOpsConfig, load_config, with_asset_overrides
from tokenops.env import load_dotenv_if_present
from tokenops.errors import ConfigError, TransportError
from tokenops.observability.structured_logging import configure_structured_logging
from tokenops.policy.burn_model import burn_gate, clock_for_timezone, compute_burn
from tokenops.policy.fee_model import compute_fee, net_amount
from tokenops.runtime.balances import collect_balances
from tokenops.runtime.boot import build_dry_run_runtime, build_runtime, build_scheduler
from tokenops.util.amounts import format_amount

Json = Dict[str, Any]

EXIT_OK = 0
EXIT_RUN_FAILED = 1
EXIT_CONFIG = 2


def _emit(obj: Json) -> None:
    sys.stdout.write(json.dumps(obj, indent=2, sort_keys=True) + "\n")


def _parse_balances(items: List[str]) -> Dict[str, int]:
    out: Dict[str, int] = {}
    for item in items:
        addr, sep, raw = item.partition("=")
        if not sep or not addr.strip():
            raise ConfigError(reason="bad_balance_arg", details={"value": item})
        try:
            out[addr.strip()] = int(raw.strip().replace("_", ""))
        except ValueError:
            raise ConfigError(reason="bad_balance_arg", details={"value": item})
    return out


def _cmd_run(cfg: TokenOpsConfig, args: argparse.Namespace) -> int:
    balances = _parse_balances(args.balance or [])
    if balances and not args.dry_run:
        raise ConfigError(reason="balances_require_dry_run")

    runtime = build_dry_run_runtime(cfg, balances=balances) if args.dry_run else build_runtime(cfg)
    report = build_scheduler(cfg, runtime, stages=args.stage or None).run()
    _emit({**report.to_json(), "dry_run": runtime.dry_run})
    return EXIT_OK if report.ok else EXIT_RUN_FAILED


def _cmd_fee(cfg: TokenOpsConfig, args: argparse.Namespace) -> int:
    overrides: Json = {}
    if args.basis_points is not None:
        overrides["fee_basis_points"] = args.basis_points
    if args.cap is not None:
        overrides["fee_cap"] = args.cap
    asset = with_asset_overrides(cfg, **overrides).asset if overrides else cfg.asset

    try:
        fee = compute_fee(args.amount, asset.fee_basis_points, asset.fee_cap)
    except ValueError as e:
        raise ConfigError(reason="bad_amount", details={"error": str(e)})
    net = net_amount(args.amount, fee)
    _emit(
        {
            "amount": args.amount,
            "fee": fee,
            "net": net,
            "fee_basis_points": asset.fee_basis_points,
            "fee_cap": asset.fee_cap,
            "fee_ui": format_amount(fee, asset.decimals),
            "net_ui": format_amount(net, asset.decimals),
        }
    )
    return EXIT_OK


def _cmd_burn(cfg: TokenOpsConfig, args: argparse.Namespace) -> int:
    asset = with_asset_overrides(cfg, burn_rate=args.rate).asset if args.rate is not None else cfg.asset
    try:
        amount = compute_burn(args.balance, asset.burn_rate)
    except ValueError as e:
        raise ConfigError(reason="bad_balance", details={"error": str(e)})
    _emit(
        {
            "balance": args.balance,
            "burn_rate": asset.burn_rate,
            "burn": amount,
            "burn_ui": format_amount(amount, asset.decimals),
        }
    )
    return EXIT_OK


def _cmd_balance(cfg: TokenOpsConfig, args: argparse.Namespace) -> int:
    if cfg.plan is None:
        raise ConfigError(reason="plan_missing")
    balances = _parse_balances(args.balance or [])
    if balances and not args.dry_run:
        raise ConfigError(reason="balances_require_dry_run")

    runtime = build_dry_run_runtime(cfg, balances=balances) if args.dry_run else build_runtime(cfg)
    try:
        rows = collect_balances(
            runtime.gateway,
            cfg.plan,
            decimals=cfg.asset.decimals,
            timeout_s=cfg.runner.call_timeout_s,
        )
    except TransportError as e:
        _emit({"ok": False, "error": {"code": e.code, "reason": e.reason, "details": e.details}})
        return EXIT_RUN_FAILED

    _emit(
        {
            "ok": True,
            "mint": cfg.plan.mint.address,
            "dry_run": runtime.dry_run,
            "accounts": [b.to_json() for b in rows],
        }
    )
    return EXIT_OK


def _cmd_quarter(cfg: TokenOpsConfig, args: argparse.Namespace) -> int:
    if args.at:
        try:
            now = datetime.fromisoformat(args.at)
        except ValueError:
            raise ConfigError(reason="bad_timestamp", details={"value": args.at})
    else:
        now = clock_for_timezone(cfg.runner.quarter_timezone)()

    decision = burn_gate(now, cfg.asset.burn_start_quarter, cfg.asset.burn_start_year)
    _emit(
        {
            "at": now.isoformat(),
            "year": decision.year,
            "quarter": decision.quarter,
            "burn_eligible": decision.eligible,
            "reason": decision.reason,
        }
    )
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="tokenops", description="Fee-bearing token operations runner")
    p.add_argument("--config", default=None, help="JSON config file (default: $TOKENOPS_CONFIG_PATH)")
    p.add_argument("--log-level", default=None)
    sub = p.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="run the scheduler once")
    run.add_argument("--dry-run", action="store_true", help="use an in-memory ledger seeded from the plan")
    run.add_argument("--stage", action="append", help="run only this stage (repeatable)")
    run.add_argument("--balance", action="append", metavar="ADDRESS=AMOUNT", help="dry-run starting balance")
    run.set_defaults(handler=_cmd_run)

    fee = sub.add_parser("fee", help="quote the transfer fee for an amount")
    fee.add_argument("--amount", type=int, required=True)
    fee.add_argument("--basis-points", type=int, default=None)
    fee.add_argument("--cap", type=int, default=None)
    fee.set_defaults(handler=_cmd_fee)

    burn = sub.add_parser("burn", help="quote the periodic burn for a balance")
    burn.add_argument("--balance", type=int, required=True)
    burn.add_argument("--rate", type=float, default=None)
    burn.set_defaults(handler=_cmd_burn)

    balance = sub.add_parser("balance", help="show balances of every account the plan names")
    balance.add_argument("--dry-run", action="store_true", help="read from an in-memory ledger seeded from the plan")
    balance.add_argument("--balance", action="append", metavar="ADDRESS=AMOUNT", help="dry-run starting balance")
    balance.set_defaults(handler=_cmd_balance)

    quarter = sub.add_parser("quarter", help="show the calendar quarter and burn eligibility")
    quarter.add_argument("--at", default=None, help="ISO-8601 timestamp (default: now)")
    quarter.set_defaults(handler=_cmd_quarter)

    return p


def main(argv: Optional[list[str]] = None) -> int:
    load_dotenv_if_present()
    args = build_parser().parse_args(argv)

    try:
        cfg = load_config(config_path=args.config)
        configure_structured_logging(args.log_level or cfg.runner.log_level)
        return int(args.handler(cfg, args))
    except ConfigError as e:
        _emit({"ok": False, "error": {"code": e.code, "reason": e.reason, "details": e.details}})
        return EXIT_CONFIG


if __name__ == "__main__":
    raise SystemExit(main())
