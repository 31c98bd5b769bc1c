# src/tokenops/runtime/boot.py

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional, Sequence

from tokenops.config import TokenOpsConfig
from tokenops.crypto.sig import Authorities, Signer, load_authorities
from tokenops.errors import ConfigError
from tokenops.ledger.gateway import LedgerGateway
from tokenops.ledger.memory import InMemoryLedger, seed_from_plan
from tokenops.ledger.rpc import RpcConfig, RpcLedgerGateway
from tokenops.policy.burn_model import clock_for_timezone
from tokenops.runtime.burn_marker import BurnMarkerStore
from tokenops.runtime.scheduler import OperationScheduler


@dataclass
class Runtime:
    gateway: LedgerGateway
    authorities: Authorities
    dry_run: bool = False


def build_gateway(cfg: TokenOpsConfig) -> LedgerGateway:
    r = cfg.runner
    return RpcLedgerGateway(
        RpcConfig(
            endpoint=r.cluster_endpoint,
            commitment=r.commitment_level,
            timeout_s=r.call_timeout_s,
            explorer_url_template=r.explorer_url_template,
        )
    )


def build_authorities(cfg: TokenOpsConfig) -> Authorities:
    path = cfg.runner.authority_key_path
    if not path:
        raise ConfigError(reason="authority_key_path_missing")
    return load_authorities(path)


def build_dry_run_runtime(cfg: TokenOpsConfig, *, balances: Optional[Dict[str, int]] = None) -> Runtime:
    """In-memory ledger seeded from the plan, signed by a throwaway key."""

    if cfg.plan is None:
        raise ConfigError(reason="plan_missing")
    authorities = Authorities.single(Signer.generate(label="dry-run"))
    ledger = InMemoryLedger(explorer_url_template=cfg.runner.explorer_url_template)
    seed_from_plan(ledger, plan=cfg.plan, asset=cfg.asset, authorities=authorities, balances=balances)
    return Runtime(gateway=ledger, authorities=authorities, dry_run=True)


def build_runtime(cfg: TokenOpsConfig, *, dry_run: bool = False) -> Runtime:
    if dry_run:
        return build_dry_run_runtime(cfg)
    return Runtime(gateway=build_gateway(cfg), authorities=build_authorities(cfg))


def build_scheduler(
    cfg: TokenOpsConfig,
    runtime: Runtime,
    *,
    stages: Optional[Sequence[str]] = None,
) -> OperationScheduler:
    if cfg.plan is None:
        raise ConfigError(reason="plan_missing")

    r = cfg.runner
    markers = BurnMarkerStore(path=r.state_db_path) if r.state_db_path and not runtime.dry_run else None
    return OperationScheduler(
        gateway=runtime.gateway,
        authorities=runtime.authorities,
        asset=cfg.asset,
        plan=cfg.plan,
        call_timeout_s=r.call_timeout_s,
        clock=clock_for_timezone(r.quarter_timezone),
        burn_markers=markers,
        stages=stages,
    )
