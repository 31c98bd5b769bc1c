# src/tokenops/api/routes_ops.py
from __future__ import annotations

import time
from typing import Any, Dict

from fastapi import APIRouter, Query, Request, Response

from tokenops.api.common import _cfg
from tokenops.api.errors import ApiError
from tokenops.api.schemas import BalancesResponse, FeeQuote
from tokenops.config import public_config_view
from tokenops.observability.metrics import format_prometheus
from tokenops.policy.fee_model import compute_fee, net_amount
from tokenops.runtime.balances import collect_balances
from tokenops.util.amounts import format_amount

router = APIRouter()


@router.get("/health")
def health(request: Request) -> Dict[str, Any]:
    cfg = getattr(request.app.state, "cfg", None)
    return {
        "ok": True,
        "ts_ms": int(time.time() * 1000),
        "runtime_attached": getattr(request.app.state, "runtime", None) is not None,
        "plan_loaded": bool(cfg is not None and cfg.plan is not None),
    }


@router.get("/config")
def config(request: Request) -> Dict[str, Any]:
    return {"ok": True, **public_config_view(_cfg(request))}


@router.get("/quote/fee", response_model=FeeQuote)
def quote_fee(request: Request, amount: int = Query(..., ge=0)) -> FeeQuote:
    asset = _cfg(request).asset
    fee = compute_fee(amount, asset.fee_basis_points, asset.fee_cap)
    net = net_amount(amount, fee)
    return FeeQuote(
        amount=amount,
        fee=fee,
        net=net,
        fee_basis_points=asset.fee_basis_points,
        fee_cap=asset.fee_cap,
        amount_ui=format_amount(amount, asset.decimals),
        fee_ui=format_amount(fee, asset.decimals),
        net_ui=format_amount(net, asset.decimals),
    )


@router.get("/balances", response_model=BalancesResponse)
def balances(request: Request) -> BalancesResponse:
    """Balances of every account the run plan names, read from the attached ledger."""
    cfg = _cfg(request)
    if cfg.plan is None:
        raise ApiError.conflict("plan_missing", "no run plan configured")
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise ApiError.unavailable("not_ready", "runtime not attached to app.state")

    rows = collect_balances(
        runtime.gateway,
        cfg.plan,
        decimals=cfg.asset.decimals,
        timeout_s=cfg.runner.call_timeout_s,
    )
    return BalancesResponse.model_validate(
        {
            "mint": cfg.plan.mint.address,
            "decimals": cfg.asset.decimals,
            "accounts": [b.to_json() for b in rows],
        }
    )


@router.get("/metrics")
def metrics() -> Response:
    """Prometheus-style metrics (stage outcomes, runs, HTTP requests)."""
    return Response(content=format_prometheus(), media_type="text/plain")
