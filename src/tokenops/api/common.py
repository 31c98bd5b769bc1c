# src/tokenops/api/common.py
from __future__ import annotations

from fastapi import Request

from tokenops.api.errors import ApiError
from tokenops.config import TokenOpsConfig


def _cfg(request: Request) -> TokenOpsConfig:
    cfg = getattr(request.app.state, "cfg", None)
    if cfg is None:
        raise ApiError.unavailable("not_ready", "config not attached to app.state")
    return cfg
