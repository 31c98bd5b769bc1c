from __future__ import annotations

"""Pydantic request/response schemas for the ops API.

The scheduler's own types (StageOutcome, RunReport) are plain dataclasses;
these models only exist for HTTP input validation and response shape.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class RunRequest(BaseModel):
    stages: Optional[List[str]] = Field(default=None, description="Subset of stages to run, in any order")
    dry_run: bool = Field(default=False, description="Run against an in-memory ledger seeded from the plan")

    # Dry runs only: address -> starting balance in base units
    balances: Optional[Dict[str, int]] = Field(default=None)

    model_config = {"extra": "forbid"}


class StageOutcomeModel(BaseModel):
    stage: str
    status: str
    reason: str = ""
    code: str = ""
    operation: Optional[Dict[str, Any]] = None
    confirmation: Optional[Dict[str, Any]] = None
    details: Dict[str, Any] = Field(default_factory=dict)


class RunReportModel(BaseModel):
    ok: bool
    state: str
    dry_run: bool = False
    started_ms: int
    finished_ms: Optional[int] = None
    outcomes: List[StageOutcomeModel] = Field(default_factory=list)


class FeeQuote(BaseModel):
    ok: bool = True
    amount: int
    fee: int
    net: int
    fee_basis_points: int
    fee_cap: int
    amount_ui: str
    fee_ui: str
    net_ui: str


class AccountBalanceModel(BaseModel):
    address: str
    roles: List[str] = Field(default_factory=list)
    exists: bool
    balance: Optional[int] = None
    balance_ui: Optional[str] = None
    withheld: Optional[int] = None
    withheld_ui: Optional[str] = None


class BalancesResponse(BaseModel):
    ok: bool = True
    mint: str
    decimals: int
    accounts: List[AccountBalanceModel] = Field(default_factory=list)
