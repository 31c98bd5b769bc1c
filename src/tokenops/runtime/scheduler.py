# src/tokenops/runtime/scheduler.py
from __future__ import annotations

"""Operation scheduler: one run of the token operations policy.

State machine:

  idle -> minting -> transferring -> withdrawing -> harvesting -> burn_gate -> done
                 \\___________________ any stage ___________________/
                                        |
                                      failed

Stages run strictly in sequence because each reads ledger state written by
the previous one. Every stage ends in exactly one StageOutcome:

  - ok:      an operation was confirmed (or a fee account was created)
  - skipped: a logical no-op (precondition_failed or nothing_to_do); the run
             continues
  - failed:  transport/confirmation error, timeout, or a fatal precondition;
             the run halts and the report keeps every outcome produced so far

The scheduler never retries gateway calls. The only retry is the single
fresh-identifier retry when creating the fee account collides.
"""

import logging
import sqlite3
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from tokenops.config import AssetConfig, RunPlan, validate_asset_config, validate_run_plan
from tokenops.crypto.sig import Authorities, Signer
from tokenops.errors import AccountCollision, ConfigError, OpsError, PreconditionFailed, TransportError
from tokenops.ledger.gateway import LedgerGateway
from tokenops.ledger.types import AccountRef, Confirmation
from tokenops.observability import metrics
from tokenops.observability.structured_logging import log_event
from tokenops.policy.burn_model import BEFORE_BURN_WINDOW, burn_gate, clock_for_timezone, compute_burn
from tokenops.policy.fee_model import compute_fee, net_amount
from tokenops.policy.reconciler import select_withdrawable
from tokenops.runtime.burn_marker import BurnMarkerStore
from tokenops.runtime.operations import Burn, HarvestToMint, MintTo, ScheduledOperation, TransferWithFee, WithdrawWithheldFees
from tokenops.util.amounts import format_amount

Json = Dict[str, Any]

_log = logging.getLogger("tokenops.scheduler")

IDLE = "idle"
MINTING = "minting"
TRANSFERRING = "transferring"
WITHDRAWING = "withdrawing"
HARVESTING = "harvesting"
BURN_GATE = "burn_gate"
DONE = "done"
FAILED = "failed"

STAGES: Tuple[str, ...] = (MINTING, TRANSFERRING, WITHDRAWING, HARVESTING, BURN_GATE)

STATUS_OK = "ok"
STATUS_SKIPPED = "skipped"
STATUS_FAILED = "failed"

# Outcome codes for skipped stages.
CODE_PRECONDITION = "precondition_failed"
CODE_NOTHING_TO_DO = "nothing_to_do"

NOTHING_TO_MINT = "nothing to mint"
MAX_SUPPLY_REACHED = "max supply reached"
INSUFFICIENT_BALANCE = "insufficient balance"
TRANSFER_DESTINATION_MISSING = "transfer destination not found"
WITHDRAW_DESTINATION_MISSING = "withdraw destination not found"
NOTHING_TO_WITHDRAW = "nothing to withdraw"
FEE_ACCOUNT_CREATED = "fee account created"
NOTHING_TO_HARVEST = "nothing to harvest"
NOTHING_TO_BURN = "nothing to burn"
ALREADY_BURNED = "already burned this quarter"

NOTHING_TO_DO_REASONS = frozenset(
    {NOTHING_TO_MINT, NOTHING_TO_WITHDRAW, NOTHING_TO_HARVEST, NOTHING_TO_BURN, BEFORE_BURN_WINDOW, ALREADY_BURNED}
)


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class StageOutcome:
    stage: str
    status: str
    reason: str = ""
    code: str = ""
    operation: Optional[Json] = None
    confirmation: Optional[Json] = None
    details: Json = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status == STATUS_OK

    @property
    def skipped(self) -> bool:
        return self.status == STATUS_SKIPPED

    @property
    def failed(self) -> bool:
        return self.status == STATUS_FAILED

    def to_json(self) -> Json:
        return {
            "stage": self.stage,
            "status": self.status,
            "reason": self.reason,
            "code": self.code,
            "operation": self.operation,
            "confirmation": self.confirmation,
            "details": dict(self.details),
        }


def _ok(stage: str, op: Optional[ScheduledOperation], conf: Optional[Confirmation], reason: str = "", **details: Any) -> StageOutcome:
    return StageOutcome(
        stage=stage,
        status=STATUS_OK,
        reason=reason,
        operation=op.to_ledger_obj() if op is not None else None,
        confirmation=conf.to_json() if conf is not None else None,
        details=details,
    )


def _skip(stage: str, reason: str, **details: Any) -> StageOutcome:
    code = CODE_NOTHING_TO_DO if reason in NOTHING_TO_DO_REASONS else CODE_PRECONDITION
    return StageOutcome(stage=stage, status=STATUS_SKIPPED, reason=reason, code=code, details=details)


def _fail(stage: str, err: OpsError) -> StageOutcome:
    details = err.details if isinstance(err.details, dict) else ({"details": err.details} if err.details is not None else {})
    return StageOutcome(stage=stage, status=STATUS_FAILED, reason=err.reason, code=err.code, details=details)


def _split_burn(balances: Sequence[Tuple[AccountRef, int]], amount: int) -> List[Tuple[AccountRef, int]]:
    """Sources for a burn of `amount` taken from accounts holding `balances`.

    One account that covers the whole amount is preferred (single operation).
    Otherwise the amount is drawn from the accounts in plan order. The caller
    guarantees amount <= sum of balances.
    """
    for acct, bal in balances:
        if bal >= amount:
            return [(acct, amount)]

    parts: List[Tuple[AccountRef, int]] = []
    remaining = amount
    for acct, bal in balances:
        if remaining <= 0:
            break
        take = min(bal, remaining)
        if take > 0:
            parts.append((acct, take))
            remaining -= take
    return parts


@dataclass
class RunReport:
    started_ms: int
    outcomes: List[StageOutcome] = field(default_factory=list)
    state: str = IDLE
    finished_ms: Optional[int] = None

    @property
    def ok(self) -> bool:
        return not any(o.failed for o in self.outcomes)

    @property
    def failure(self) -> Optional[StageOutcome]:
        for o in self.outcomes:
            if o.failed:
                return o
        return None

    def outcome(self, stage: str) -> Optional[StageOutcome]:
        for o in self.outcomes:
            if o.stage == stage:
                return o
        return None

    def to_json(self) -> Json:
        return {
            "ok": self.ok,
            "state": self.state,
            "started_ms": self.started_ms,
            "finished_ms": self.finished_ms,
            "outcomes": [o.to_json() for o in self.outcomes],
        }


class OperationScheduler:
    """Drives one run of the policy against a LedgerGateway.

    All collaborators are injected; nothing is read from ambient globals.
    Construction validates config and authorities and raises ConfigError
    before any ledger call is made.
    """

    def __init__(
        self,
        *,
        gateway: LedgerGateway,
        authorities: Authorities,
        asset: AssetConfig,
        plan: RunPlan,
        call_timeout_s: float = 30.0,
        clock: Optional[Callable[[], datetime]] = None,
        burn_markers: Optional[BurnMarkerStore] = None,
        new_account_factory: Callable[[], Signer] = Signer.generate,
        stages: Optional[Sequence[str]] = None,
    ) -> None:
        validate_asset_config(asset)
        validate_run_plan(plan, asset)

        if not isinstance(authorities, Authorities):
            raise ConfigError(reason="authorities_missing")
        for role, signer in vars(authorities).items():
            if not isinstance(signer, Signer):
                raise ConfigError(reason="authority_invalid", details={"role": role})

        if float(call_timeout_s) <= 0:
            raise ConfigError(reason="call_timeout_not_positive", details={"call_timeout_s": call_timeout_s})

        selected = tuple(stages) if stages is not None else STAGES
        unknown = sorted(set(selected) - set(STAGES))
        if unknown:
            raise ConfigError(reason="unknown_stage", details={"stages": unknown, "allowed": list(STAGES)})

        self.gateway = gateway
        self.authorities = authorities
        self.asset = asset
        self.plan = plan
        self.call_timeout_s = float(call_timeout_s)
        self.clock = clock or clock_for_timezone("utc")
        self.burn_markers = burn_markers
        self.new_account_factory = new_account_factory
        self.stages = tuple(s for s in STAGES if s in selected)

        self.state = IDLE
        self._pool: Optional[ThreadPoolExecutor] = None

    # ------------------------------------------------------------------
    # gateway plumbing

    def _call(self, what: str, fn: Callable[..., Any], *args: Any) -> Any:
        """Run one gateway call bounded by call_timeout_s."""
        if self._pool is None:
            raise RuntimeError("gateway call outside of run()")
        fut = self._pool.submit(fn, *args)
        try:
            return fut.result(timeout=self.call_timeout_s)
        except FuturesTimeout:
            fut.cancel()
            raise TransportError(reason="timeout", details={"call": what, "timeout_s": self.call_timeout_s})

    def _exists(self, account: AccountRef) -> bool:
        return bool(self._call("account_exists", self.gateway.account_exists, account))

    def _signers_for(self, op: ScheduledOperation) -> List[Signer]:
        out = [getattr(self.authorities, op.authority_role), self.authorities.payer]
        seen: set[str] = set()
        uniq: List[Signer] = []
        for s in out:
            if s.pubkey in seen:
                continue
            seen.add(s.pubkey)
            uniq.append(s)
        return uniq

    def _submit(self, op: ScheduledOperation) -> Confirmation:
        conf = self._call(f"submit:{op.kind}", self.gateway.submit, op, self._signers_for(op))
        if not isinstance(conf, Confirmation):
            raise TransportError(reason="bad_confirmation", details={"kind": op.kind})
        if not conf.ok:
            raise OpsError(
                code="confirmation_failed",
                reason=conf.error or "not_confirmed",
                details={"kind": op.kind, "signature": conf.signature},
            )
        log_event(_log, "operation_confirmed", kind=op.kind, signature=conf.signature, explorer_url=conf.explorer_url)
        return conf

    # ------------------------------------------------------------------
    # stages

    def _stage_minting(self) -> StageOutcome:
        amount = int(self.asset.mint_amount)
        if amount <= 0:
            return _skip(MINTING, NOTHING_TO_MINT)

        mint = self.plan.mint
        target = self.plan.mint_target
        assert target is not None  # validate_run_plan requires it when amount > 0

        # Account creation is an external precondition; missing accounts are fatal.
        if not self._exists(mint):
            raise PreconditionFailed(reason="mint account not found", details={"account": mint.address})
        if not self._exists(target):
            raise PreconditionFailed(reason="mint target not found", details={"account": target.address})

        if self.asset.max_supply is not None:
            supply = self._call("get_supply", self.gateway.get_supply, mint)
            if supply is None:
                raise PreconditionFailed(reason="mint account not found", details={"account": mint.address})
            if int(supply) + amount > int(self.asset.max_supply):
                return _skip(MINTING, MAX_SUPPLY_REACHED, supply=int(supply), max_supply=int(self.asset.max_supply))

        op = MintTo(mint=mint, destination=target, amount=amount)
        conf = self._submit(op)
        return _ok(MINTING, op, conf, amount_ui=format_amount(amount, self.asset.decimals))

    def _stage_transferring(self) -> StageOutcome:
        source = self.plan.transfer_source
        destination = self.plan.transfer_destination
        assert source is not None and destination is not None

        amount = int(self.asset.transfer_amount)
        fee = compute_fee(amount, self.asset.fee_basis_points, self.asset.fee_cap)

        # Observed immediately before submitting; never reused across stages.
        balance = self._call("get_balance", self.gateway.get_balance, source)
        if balance is None or int(balance) < amount:
            return _skip(
                TRANSFERRING,
                INSUFFICIENT_BALANCE,
                account=source.address,
                balance=None if balance is None else int(balance),
                required=amount,
            )

        if not self._exists(destination):
            return _skip(TRANSFERRING, TRANSFER_DESTINATION_MISSING, account=destination.address)

        op = TransferWithFee(
            source=source,
            destination=destination,
            mint=self.plan.mint,
            amount=amount,
            fee=fee,
            decimals=int(self.asset.decimals),
        )
        conf = self._submit(op)
        return _ok(TRANSFERRING, op, conf, fee=fee, net=net_amount(amount, fee))

    def _stage_withdrawing(self) -> StageOutcome:
        destination = self.plan.withdraw_destination
        assert destination is not None

        if not self.plan.withdraw_candidates:
            return _skip(WITHDRAWING, NOTHING_TO_WITHDRAW, candidates=0)

        if not self._exists(destination):
            return _skip(WITHDRAWING, WITHDRAW_DESTINATION_MISSING, account=destination.address)

        eligible = select_withdrawable(
            self.plan.withdraw_candidates,
            self.plan.owner_program,
            self.gateway,
            timeout_s=self.call_timeout_s,
        )
        if not eligible:
            return _skip(WITHDRAWING, NOTHING_TO_WITHDRAW, candidates=len(self.plan.withdraw_candidates))

        op = WithdrawWithheldFees(mint=self.plan.mint, destination=destination, sources=tuple(eligible))
        conf = self._submit(op)
        return _ok(WITHDRAWING, op, conf, accounts=len(eligible))

    def _create_fee_account(self) -> AccountRef:
        """Create the fee-collection account; one retry with a fresh id on collision."""
        tried: List[str] = []
        for _attempt in range(2):
            new_account = self.new_account_factory()
            tried.append(new_account.pubkey)
            try:
                created = self._call(
                    "create_account",
                    self.gateway.create_account,
                    self.plan.owner_program,
                    int(self.plan.fee_account_space),
                    self.plan.payer,
                    new_account,
                )
            except AccountCollision:
                log_event(_log, "fee_account_collision", level=logging.WARNING, account=new_account.pubkey)
                continue
            log_event(_log, "fee_account_created", account=created.address)
            return created

        raise OpsError(code="account_collision", reason="fee account creation collided", details={"tried": tried})

    def _stage_harvesting(self) -> StageOutcome:
        fee_account = self.plan.fee_account

        if fee_account is None or not self._exists(fee_account):
            missing = fee_account.address if fee_account is not None else None
            created = self._create_fee_account()
            # A fresh account has nothing withheld yet.
            return _ok(HARVESTING, None, None, reason=FEE_ACCOUNT_CREATED, fee_account=created.address, replaced=missing)

        withheld = self._call("get_withheld_fee", self.gateway.get_withheld_fee, fee_account)
        if withheld is None or int(withheld) <= 0:
            return _skip(HARVESTING, NOTHING_TO_HARVEST, fee_account=fee_account.address)

        op = HarvestToMint(fee_account=fee_account, mint=self.plan.mint, amount=int(withheld))
        conf = self._submit(op)
        return _ok(HARVESTING, op, conf, amount_ui=format_amount(int(withheld), self.asset.decimals))

    def _stage_burn_gate(self) -> StageOutcome:
        decision = burn_gate(self.clock(), self.asset.burn_start_quarter, self.asset.burn_start_year)
        if not decision.eligible:
            return _skip(
                BURN_GATE,
                BEFORE_BURN_WINDOW,
                quarter=decision.quarter,
                year=decision.year,
                start_quarter=int(self.asset.burn_start_quarter),
                start_year=self.asset.burn_start_year,
            )

        mint_address = self.plan.mint.address
        if self.burn_markers is not None:
            try:
                last = self.burn_markers.last_burned(mint_address)
            except (sqlite3.Error, OSError) as e:
                raise OpsError(code="state_store_error", reason="burn marker read failed", details={"error": str(e)})
            if last == (decision.year, decision.quarter):
                return _skip(BURN_GATE, ALREADY_BURNED, year=decision.year, quarter=decision.quarter)

        if not self.plan.burn_accounts:
            return _skip(BURN_GATE, NOTHING_TO_BURN, accounts=0)

        balances: List[Tuple[AccountRef, int]] = []
        for acct in self.plan.burn_accounts:
            bal = self._call("get_balance", self.gateway.get_balance, acct)
            if bal is not None:
                balances.append((acct, int(bal)))

        total = sum(b for _, b in balances)
        amount = compute_burn(total, self.asset.burn_rate)
        if amount <= 0:
            return _skip(BURN_GATE, NOTHING_TO_BURN, total_balance=total)

        burns: List[Json] = []
        op: Optional[Burn] = None
        conf: Optional[Confirmation] = None
        for source, take in _split_burn(balances, amount):
            op = Burn(account=source, mint=self.plan.mint, amount=take)
            try:
                conf = self._submit(op)
            except OpsError as e:
                if not burns:
                    raise
                # Earlier parts are on the ledger; keep them visible in the failure.
                details = dict(e.details) if isinstance(e.details, dict) else {"details": e.details}
                details["burned"] = burns
                raise OpsError(code=e.code, reason=e.reason, details=details)
            burns.append({"account": source.address, "amount": take, "signature": conf.signature})

        assert op is not None and conf is not None

        if self.burn_markers is not None:
            try:
                self.burn_markers.record_burn(
                    mint_address, year=decision.year, quarter=decision.quarter, amount=amount, signature=conf.signature
                )
            except (sqlite3.Error, OSError) as e:
                # The burn is on the ledger; only the marker is missing.
                raise OpsError(
                    code="state_store_error",
                    reason="burn marker write failed",
                    details={"error": str(e), "burned": burns, "amount": amount},
                )

        return _ok(
            BURN_GATE,
            op,
            conf,
            total_balance=total,
            amount=amount,
            burns=burns,
            year=decision.year,
            quarter=decision.quarter,
            amount_ui=format_amount(amount, self.asset.decimals),
        )

    # ------------------------------------------------------------------

    def _handlers(self) -> Dict[str, Callable[[], StageOutcome]]:
        return {
            MINTING: self._stage_minting,
            TRANSFERRING: self._stage_transferring,
            WITHDRAWING: self._stage_withdrawing,
            HARVESTING: self._stage_harvesting,
            BURN_GATE: self._stage_burn_gate,
        }

    def _record(self, report: RunReport, outcome: StageOutcome) -> None:
        report.outcomes.append(outcome)
        metrics.inc_counter(f"stage_{outcome.status}_total")
        metrics.inc_counter(f"{outcome.stage}_{outcome.status}_total")
        level = logging.WARNING if outcome.failed else logging.INFO
        log_event(_log, "stage_outcome", level=level, **outcome.to_json())

    def run(self) -> RunReport:
        """Execute the selected stages in order and return every outcome."""

        report = RunReport(started_ms=_now_ms())
        handlers = self._handlers()
        self.state = IDLE
        self._pool = ThreadPoolExecutor(max_workers=2, thread_name_prefix="tokenops-gw")

        log_event(_log, "run_start", stages=list(self.stages), mint=self.plan.mint.address)
        try:
            for stage in self.stages:
                self.state = stage
                try:
                    outcome = handlers[stage]()
                except OpsError as e:
                    self._record(report, _fail(stage, e))
                    self.state = FAILED
                    break
                self._record(report, outcome)
            else:
                self.state = DONE
        finally:
            # Calls the gateway already accepted are not rolled back; just stop waiting.
            self._pool.shutdown(wait=False, cancel_futures=True)
            self._pool = None

        report.state = self.state
        report.finished_ms = _now_ms()
        metrics.inc_counter("runs_ok_total" if report.ok else "runs_failed_total")
        log_event(
            _log,
            "run_finished",
            level=logging.INFO if report.ok else logging.WARNING,
            ok=report.ok,
            state=report.state,
            elapsed_ms=report.finished_ms - report.started_ms,
        )
        return report
