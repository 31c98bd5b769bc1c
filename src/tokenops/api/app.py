# src/tokenops/api/app.py
from __future__ import annotations

import threading

from fastapi import APIRouter, FastAPI

from tokenops.api.errors import install_error_handlers
from tokenops.api.middleware import RequestLogMiddleware
from tokenops.api.routes_ops import router as ops_router
from tokenops.api.routes_runs import router as runs_router
from tokenops.config import TokenOpsConfig, load_config
from tokenops.runtime.boot import Runtime
from tokenops.runtime.boot import build_runtime as _build_runtime


def load_runtime_config() -> TokenOpsConfig:
    """Config for the API process (file from TOKENOPS_CONFIG_PATH, then env).

    Module-level so tests can monkeypatch `tokenops.api.app.load_runtime_config`.
    """
    return load_config()


def build_runtime(cfg: TokenOpsConfig) -> Runtime:
    """Gateway + authorities for live runs.

    This wrapper exists so tests can monkeypatch `tokenops.api.app.build_runtime`
    without reaching into runtime modules.
    """
    return _build_runtime(cfg)


def create_app(*, boot_runtime: bool = True) -> FastAPI:
    """Create the FastAPI application.

    boot_runtime:
      - True (default): build the RPC gateway and load authorities; a bad
        config or key file fails startup
      - False: config only; live runs answer 503, dry runs still work
    """
    cfg = load_runtime_config()

    if cfg.runner.mode == "prod":
        app = FastAPI(title="TokenOps API", docs_url=None, redoc_url=None, openapi_url=None)
    else:
        app = FastAPI(title="TokenOps API")

    app.state.cfg = cfg
    app.state.runtime = build_runtime(cfg) if boot_runtime else None
    app.state.last_report = None
    app.state.run_lock = threading.Lock()

    app.add_middleware(RequestLogMiddleware)
    install_error_handlers(app)

    v1 = APIRouter()
    v1.include_router(ops_router, tags=["ops"])
    v1.include_router(runs_router, tags=["runs"])
    app.include_router(v1, prefix="/v1")

    return app
