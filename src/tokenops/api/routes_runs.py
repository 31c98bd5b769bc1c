# src/tokenops/api/routes_runs.py
from __future__ import annotations

import logging

from fastapi import APIRouter, Request

from tokenops.api.common import _cfg
from tokenops.api.errors import ApiError
from tokenops.api.schemas import RunReportModel, RunRequest
from tokenops.observability import metrics
from tokenops.observability.structured_logging import log_event
from tokenops.runtime.boot import build_dry_run_runtime, build_scheduler

router = APIRouter()

_log = logging.getLogger("tokenops.api")


@router.post("/runs", response_model=RunReportModel)
def start_run(req: RunRequest, request: Request) -> RunReportModel:
    """Run the scheduler once and return its report.

    A failed run is still a 200: the report carries ok=false and the failing
    stage. Only one run executes at a time; a concurrent request gets 409.
    """
    cfg = _cfg(request)
    if cfg.plan is None:
        raise ApiError.conflict("plan_missing", "no run plan configured")
    if req.balances and not req.dry_run:
        raise ApiError.bad_request("balances_require_dry_run", "balances can only seed a dry run")

    if req.dry_run:
        runtime = build_dry_run_runtime(cfg, balances=req.balances)
    else:
        runtime = getattr(request.app.state, "runtime", None)
        if runtime is None:
            raise ApiError.unavailable("not_ready", "runtime not attached to app.state")

    lock = request.app.state.run_lock
    if not lock.acquire(blocking=False):
        raise ApiError.conflict("run_in_progress", "another run is in progress")
    try:
        report = build_scheduler(cfg, runtime, stages=req.stages).run()
    finally:
        lock.release()

    body = {**report.to_json(), "dry_run": runtime.dry_run}
    request.app.state.last_report = body
    metrics.set_gauge("last_run_ok", 1 if report.ok else 0)
    metrics.set_gauge("last_run_finished_ms", int(report.finished_ms or 0))
    log_event(_log, "api_run", ok=report.ok, state=report.state, dry_run=runtime.dry_run)
    return RunReportModel.model_validate(body)


@router.get("/runs/last", response_model=RunReportModel)
def last_run(request: Request) -> RunReportModel:
    body = getattr(request.app.state, "last_report", None)
    if body is None:
        raise ApiError.not_found("no_runs", "no run has completed since startup")
    return RunReportModel.model_validate(body)
