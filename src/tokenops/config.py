# src/tokenops/config.py
from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

from tokenops.errors import ConfigError
from tokenops.ledger.types import EXPLORER_PLACEHOLDER, AccountRef, explorer_template_fields

Json = Dict[str, Any]

_ALLOWED_MODES = {"dev", "testnet", "prod"}
_ALLOWED_COMMITMENTS = {"processed", "confirmed", "finalized"}
_ALLOWED_QUARTER_TZ = {"utc", "local"}

ENV_PREFIX = "TOKENOPS_"


def _as_int(v: Any, default: Optional[int], name: str) -> Optional[int]:
    if v is None or (isinstance(v, str) and not v.strip()):
        return default
    if isinstance(v, bool):
        raise ConfigError(reason="bad_int", details={"key": name, "value": v})
    try:
        # ints may arrive as "20_000_000" from env files
        return int(str(v).strip().replace("_", ""))
    except (TypeError, ValueError):
        raise ConfigError(reason="bad_int", details={"key": name, "value": v})


def _as_float(v: Any, default: float, name: str) -> float:
    if v is None or (isinstance(v, str) and not v.strip()):
        return float(default)
    try:
        return float(v)
    except (TypeError, ValueError):
        raise ConfigError(reason="bad_float", details={"key": name, "value": v})


def _as_str(v: Any, default: str) -> str:
    if v is None:
        return str(default)
    s = str(v)
    return s if s.strip() else str(default)


def _as_account(v: Any) -> Optional[AccountRef]:
    if v is None:
        return None
    if isinstance(v, AccountRef):
        return v
    if isinstance(v, str):
        return AccountRef(address=v.strip()) if v.strip() else None
    if isinstance(v, dict):
        addr = str(v.get("address") or "").strip()
        if not addr:
            return None
        owner = v.get("owner")
        return AccountRef(address=addr, owner=str(owner).strip() if owner else None)
    raise ConfigError(reason="bad_account", details={"value": v})


def _as_accounts(v: Any) -> Tuple[AccountRef, ...]:
    if v is None:
        return ()
    if isinstance(v, str):
        v = [s for s in v.split(",")]
    if not isinstance(v, (list, tuple)):
        raise ConfigError(reason="bad_account_list", details={"value": v})
    out = []
    for item in v:
        acct = _as_account(item)
        if acct is not None:
            out.append(acct)
    return tuple(out)


@dataclass(frozen=True)
class AssetConfig:
    """Per-deployment asset policy. Amounts are in the asset's smallest unit."""

    decimals: int
    fee_basis_points: int
    fee_cap: int
    burn_rate: float
    burn_start_quarter: int
    transfer_amount: int
    mint_amount: int

    max_supply: Optional[int] = None
    burn_start_year: Optional[int] = None

    name: str = ""
    symbol: str = ""


@dataclass(frozen=True)
class RunnerConfig:
    cluster_endpoint: str
    commitment_level: str
    call_timeout_s: float

    # "utc" | "local": which calendar the burn quarter is read from
    quarter_timezone: str

    # Empty disables the persisted burn marker.
    state_db_path: str

    mode: str  # "dev" | "testnet" | "prod"
    log_level: str

    authority_key_path: str = ""
    explorer_url_template: str = ""


@dataclass(frozen=True)
class RunPlan:
    """Accounts touched by one run."""

    mint: AccountRef
    mint_target: Optional[AccountRef] = None
    transfer_source: Optional[AccountRef] = None
    transfer_destination: Optional[AccountRef] = None
    withdraw_candidates: Tuple[AccountRef, ...] = ()
    withdraw_destination: Optional[AccountRef] = None
    owner_program: str = ""
    fee_account: Optional[AccountRef] = None
    fee_account_space: int = 0
    payer: Optional[AccountRef] = None
    burn_accounts: Tuple[AccountRef, ...] = ()


@dataclass(frozen=True)
class TokenOpsConfig:
    asset: AssetConfig
    runner: RunnerConfig
    plan: Optional[RunPlan] = None
    raw: Json = field(default_factory=dict, compare=False, repr=False)


def validate_asset_config(cfg: AssetConfig) -> None:
    """Fail-fast validation of the asset policy.

    With a validated config the fee and burn models cannot fail, so every
    range check lives here.
    """

    if int(cfg.decimals) < 0:
        raise ConfigError(reason="decimals_negative", details={"decimals": cfg.decimals})

    if not 0 <= int(cfg.fee_basis_points) <= 10_000:
        raise ConfigError(reason="fee_basis_points_out_of_range", details={"fee_basis_points": cfg.fee_basis_points})

    if int(cfg.fee_cap) < 0:
        raise ConfigError(reason="fee_cap_negative", details={"fee_cap": cfg.fee_cap})

    rate = float(cfg.burn_rate)
    if not 0.0 <= rate < 1.0:
        raise ConfigError(reason="burn_rate_out_of_range", details={"burn_rate": cfg.burn_rate})

    if not 1 <= int(cfg.burn_start_quarter) <= 4:
        raise ConfigError(reason="burn_start_quarter_out_of_range", details={"burn_start_quarter": cfg.burn_start_quarter})

    if cfg.burn_start_year is not None and int(cfg.burn_start_year) < 1:
        raise ConfigError(reason="burn_start_year_out_of_range", details={"burn_start_year": cfg.burn_start_year})

    if int(cfg.transfer_amount) <= 0:
        raise ConfigError(reason="transfer_amount_not_positive", details={"transfer_amount": cfg.transfer_amount})

    if int(cfg.mint_amount) < 0:
        raise ConfigError(reason="mint_amount_negative", details={"mint_amount": cfg.mint_amount})

    if cfg.max_supply is not None:
        if int(cfg.max_supply) < 0:
            raise ConfigError(reason="max_supply_negative", details={"max_supply": cfg.max_supply})
        if int(cfg.mint_amount) > int(cfg.max_supply):
            raise ConfigError(
                reason="mint_amount_exceeds_max_supply",
                details={"mint_amount": cfg.mint_amount, "max_supply": cfg.max_supply},
            )


def validate_runner_config(cfg: RunnerConfig) -> None:
    endpoint = str(cfg.cluster_endpoint or "").strip()
    if not endpoint.startswith(("http://", "https://")):
        raise ConfigError(reason="cluster_endpoint_not_http", details={"cluster_endpoint": cfg.cluster_endpoint})

    if cfg.commitment_level not in _ALLOWED_COMMITMENTS:
        raise ConfigError(
            reason="bad_commitment_level",
            details={"commitment_level": cfg.commitment_level, "allowed": sorted(_ALLOWED_COMMITMENTS)},
        )

    if float(cfg.call_timeout_s) <= 0:
        raise ConfigError(reason="call_timeout_not_positive", details={"call_timeout_s": cfg.call_timeout_s})

    if cfg.quarter_timezone not in _ALLOWED_QUARTER_TZ:
        raise ConfigError(reason="bad_quarter_timezone", details={"quarter_timezone": cfg.quarter_timezone})

    if cfg.mode not in _ALLOWED_MODES:
        raise ConfigError(reason="bad_mode", details={"mode": cfg.mode})

    # Plain-http ledgers are for local validators only.
    if cfg.mode == "prod" and endpoint.startswith("http://"):
        raise ConfigError(reason="insecure_endpoint_in_prod", details={"cluster_endpoint": endpoint})

    if cfg.explorer_url_template:
        try:
            fields = explorer_template_fields(cfg.explorer_url_template)
        except ValueError as e:
            raise ConfigError(
                reason="bad_explorer_url_template",
                details={"explorer_url_template": cfg.explorer_url_template, "error": str(e)},
            )
        unknown = sorted(set(fields) - {EXPLORER_PLACEHOLDER})
        if unknown:
            raise ConfigError(
                reason="bad_explorer_url_template",
                details={"explorer_url_template": cfg.explorer_url_template, "unknown_fields": unknown},
            )

    if cfg.state_db_path:
        validate_state_db_path(cfg.state_db_path)


def validate_state_db_path(path: str) -> None:
    """The marker file must be creatable: it is opened only after a burn is confirmed."""
    p = Path(path)
    if p.exists() and not p.is_file():
        raise ConfigError(reason="state_db_path_not_a_file", details={"state_db_path": path})

    # Nearest existing ancestor decides whether the parent can be created.
    parent = p.parent
    while not parent.exists() and parent != parent.parent:
        parent = parent.parent
    if not parent.is_dir():
        raise ConfigError(reason="state_db_path_unusable", details={"state_db_path": path, "blocked_by": str(parent)})
    if not os.access(parent, os.W_OK | os.X_OK):
        raise ConfigError(reason="state_db_path_not_writable", details={"state_db_path": path, "directory": str(parent)})


def validate_run_plan(plan: RunPlan, asset: AssetConfig) -> None:
    if plan.mint is None or not plan.mint.address:
        raise ConfigError(reason="plan_missing_mint")

    required = {
        "transfer_source": plan.transfer_source,
        "transfer_destination": plan.transfer_destination,
        "withdraw_destination": plan.withdraw_destination,
    }
    if int(asset.mint_amount) > 0:
        required["mint_target"] = plan.mint_target
    missing = sorted(k for k, v in required.items() if v is None)
    if missing:
        raise ConfigError(reason="plan_missing_accounts", details={"missing": missing})

    # Reconciler filter and owner of any fee account the run has to create.
    if not plan.owner_program.strip():
        raise ConfigError(reason="plan_missing_owner_program")

    if int(plan.fee_account_space) < 0:
        raise ConfigError(reason="fee_account_space_negative", details={"fee_account_space": plan.fee_account_space})

    if plan.transfer_source.address == plan.transfer_destination.address:
        raise ConfigError(reason="transfer_source_is_destination", details={"account": plan.transfer_source.address})


def default_asset_config() -> AssetConfig:
    return AssetConfig(
        decimals=3,
        fee_basis_points=600,
        fee_cap=800,
        burn_rate=0.025,
        burn_start_quarter=3,
        transfer_amount=10_000,
        mint_amount=20_000_000_000_000,
        max_supply=20_000_000_000_000,
        burn_start_year=None,
        name="",
        symbol="",
    )


def default_runner_config() -> RunnerConfig:
    return RunnerConfig(
        cluster_endpoint="http://127.0.0.1:8899",
        commitment_level="confirmed",
        call_timeout_s=30.0,
        quarter_timezone="utc",
        state_db_path="",
        # Local-validator friendly; prod requires https.
        mode="dev",
        log_level="INFO",
        authority_key_path="",
        explorer_url_template="",
    )


def asset_config_from_obj(raw: Mapping[str, Any], base: Optional[AssetConfig] = None) -> AssetConfig:
    d = base or default_asset_config()
    max_supply = _as_int(raw.get("max_supply"), d.max_supply, "max_supply")
    burn_start_year = _as_int(raw.get("burn_start_year"), d.burn_start_year, "burn_start_year")
    return AssetConfig(
        decimals=int(_as_int(raw.get("decimals"), d.decimals, "decimals")),
        fee_basis_points=int(_as_int(raw.get("fee_basis_points"), d.fee_basis_points, "fee_basis_points")),
        fee_cap=int(_as_int(raw.get("fee_cap"), d.fee_cap, "fee_cap")),
        burn_rate=_as_float(raw.get("burn_rate"), d.burn_rate, "burn_rate"),
        burn_start_quarter=int(_as_int(raw.get("burn_start_quarter"), d.burn_start_quarter, "burn_start_quarter")),
        transfer_amount=int(_as_int(raw.get("transfer_amount"), d.transfer_amount, "transfer_amount")),
        mint_amount=int(_as_int(raw.get("mint_amount"), d.mint_amount, "mint_amount")),
        max_supply=max_supply,
        burn_start_year=burn_start_year,
        name=_as_str(raw.get("name"), d.name),
        symbol=_as_str(raw.get("symbol"), d.symbol),
    )


def runner_config_from_obj(raw: Mapping[str, Any], base: Optional[RunnerConfig] = None) -> RunnerConfig:
    d = base or default_runner_config()
    return RunnerConfig(
        cluster_endpoint=_as_str(raw.get("cluster_endpoint"), d.cluster_endpoint).strip().rstrip("/"),
        commitment_level=_as_str(raw.get("commitment_level"), d.commitment_level).strip().lower(),
        call_timeout_s=_as_float(raw.get("call_timeout_s"), d.call_timeout_s, "call_timeout_s"),
        quarter_timezone=_as_str(raw.get("quarter_timezone"), d.quarter_timezone).strip().lower(),
        state_db_path=str(raw.get("state_db_path", d.state_db_path) or "").strip(),
        mode=_as_str(raw.get("mode"), d.mode).strip().lower(),
        log_level=_as_str(raw.get("log_level"), d.log_level).strip().upper(),
        authority_key_path=str(raw.get("authority_key_path", d.authority_key_path) or "").strip(),
        explorer_url_template=str(raw.get("explorer_url_template", d.explorer_url_template) or "").strip(),
    )


def run_plan_from_obj(raw: Mapping[str, Any]) -> RunPlan:
    mint = _as_account(raw.get("mint"))
    if mint is None:
        raise ConfigError(reason="plan_missing_mint")
    return RunPlan(
        mint=mint,
        mint_target=_as_account(raw.get("mint_target")),
        transfer_source=_as_account(raw.get("transfer_source")),
        transfer_destination=_as_account(raw.get("transfer_destination")),
        withdraw_candidates=_as_accounts(raw.get("withdraw_candidates")),
        withdraw_destination=_as_account(raw.get("withdraw_destination")),
        owner_program=_as_str(raw.get("owner_program"), "").strip(),
        fee_account=_as_account(raw.get("fee_account")),
        fee_account_space=int(_as_int(raw.get("fee_account_space"), 0, "fee_account_space")),
        payer=_as_account(raw.get("payer")),
        burn_accounts=_as_accounts(raw.get("burn_accounts")),
    )


_ASSET_ENV_KEYS = (
    "decimals",
    "fee_basis_points",
    "fee_cap",
    "burn_rate",
    "burn_start_quarter",
    "burn_start_year",
    "transfer_amount",
    "mint_amount",
    "max_supply",
    "name",
    "symbol",
)

_RUNNER_ENV_KEYS = (
    "cluster_endpoint",
    "commitment_level",
    "call_timeout_s",
    "quarter_timezone",
    "state_db_path",
    "mode",
    "log_level",
    "authority_key_path",
    "explorer_url_template",
)


def _env_overrides(keys: Tuple[str, ...], environ: Mapping[str, str]) -> Json:
    out: Json = {}
    for k in keys:
        v = environ.get(ENV_PREFIX + k.upper())
        if v is not None and v.strip():
            out[k] = v
    return out


def read_config_file(path: str) -> Json:
    p = Path(path)
    try:
        raw = json.loads(p.read_text(encoding="utf-8"))
    except FileNotFoundError:
        raise ConfigError(reason="config_file_missing", details={"path": path})
    except json.JSONDecodeError as e:
        raise ConfigError(reason="config_file_not_json", details={"path": path, "error": str(e)})
    if not isinstance(raw, dict):
        raise ConfigError(reason="config_not_object", details={"path": path})
    return raw


def load_config(
    *,
    config_path: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> TokenOpsConfig:
    """Build the full config: defaults, then the JSON file, then TOKENOPS_* env.

    File shape:
      {"asset": {...}, "runner": {...}, "plan": {...}}

    Every section is validated before returning; ConfigError is raised on the
    first problem.
    """

    env = os.environ if environ is None else environ
    p = config_path or env.get(ENV_PREFIX + "CONFIG_PATH")
    raw: Json = read_config_file(p) if p else {}

    asset_raw = dict(raw.get("asset") or {})
    asset_raw.update(_env_overrides(_ASSET_ENV_KEYS, env))
    runner_raw = dict(raw.get("runner") or {})
    runner_raw.update(_env_overrides(_RUNNER_ENV_KEYS, env))

    asset = asset_config_from_obj(asset_raw)
    runner = runner_config_from_obj(runner_raw)
    validate_asset_config(asset)
    validate_runner_config(runner)

    plan: Optional[RunPlan] = None
    plan_raw = raw.get("plan")
    if isinstance(plan_raw, dict):
        plan = run_plan_from_obj(plan_raw)
        validate_run_plan(plan, asset)

    return TokenOpsConfig(asset=asset, runner=runner, plan=plan, raw=raw)


def with_asset_overrides(cfg: TokenOpsConfig, **overrides: Any) -> TokenOpsConfig:
    asset = replace(cfg.asset, **overrides)
    validate_asset_config(asset)
    return replace(cfg, asset=asset)


def public_config_view(cfg: TokenOpsConfig) -> Json:
    """Non-secret view for the HTTP surface and CLI."""

    a = cfg.asset
    r = cfg.runner
    return {
        "asset": {
            "name": a.name,
            "symbol": a.symbol,
            "decimals": a.decimals,
            "fee_basis_points": a.fee_basis_points,
            "fee_cap": a.fee_cap,
            "burn_rate": a.burn_rate,
            "burn_start_quarter": a.burn_start_quarter,
            "burn_start_year": a.burn_start_year,
            "transfer_amount": a.transfer_amount,
            "mint_amount": a.mint_amount,
            "max_supply": a.max_supply,
        },
        "runner": {
            "cluster_endpoint": r.cluster_endpoint,
            "commitment_level": r.commitment_level,
            "call_timeout_s": r.call_timeout_s,
            "quarter_timezone": r.quarter_timezone,
            "burn_marker_enabled": bool(r.state_db_path),
            "mode": r.mode,
        },
        "plan_loaded": cfg.plan is not None,
    }
