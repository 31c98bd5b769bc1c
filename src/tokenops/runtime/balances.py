# src/tokenops/runtime/balances.py
from __future__ import annotations

import logging
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from tokenops.config import RunPlan
from tokenops.errors import TransportError
from tokenops.ledger.gateway import LedgerGateway
from tokenops.ledger.types import AccountRef
from tokenops.observability.structured_logging import log_event
from tokenops.util.amounts import format_amount

Json = Dict[str, Any]

_log = logging.getLogger("tokenops.balances")

MAX_FETCH_WORKERS = 8


@dataclass(frozen=True)
class AccountBalance:
    address: str
    roles: Tuple[str, ...]
    exists: bool
    balance: Optional[int]
    withheld: Optional[int]
    decimals: int

    def to_json(self) -> Json:
        return {
            "address": self.address,
            "roles": list(self.roles),
            "exists": self.exists,
            "balance": self.balance,
            "balance_ui": format_amount(self.balance, self.decimals) if self.balance is not None else None,
            "withheld": self.withheld,
            "withheld_ui": format_amount(self.withheld, self.decimals) if self.withheld is not None else None,
        }


def plan_accounts(plan: RunPlan) -> List[Tuple[AccountRef, Tuple[str, ...]]]:
    """Token accounts a plan names, in plan order, each with every role it plays."""

    named: List[Tuple[str, Optional[AccountRef]]] = [
        ("mint_target", plan.mint_target),
        ("transfer_source", plan.transfer_source),
        ("transfer_destination", plan.transfer_destination),
        *[("withdraw_candidate", a) for a in plan.withdraw_candidates],
        ("withdraw_destination", plan.withdraw_destination),
        ("fee_account", plan.fee_account),
        ("payer", plan.payer),
        *[("burn_account", a) for a in plan.burn_accounts],
    ]

    order: List[AccountRef] = []
    roles: Dict[str, List[str]] = {}
    for role, ref in named:
        if ref is None:
            continue
        if ref.address not in roles:
            order.append(ref)
            roles[ref.address] = []
        if role not in roles[ref.address]:
            roles[ref.address].append(role)
    return [(ref, tuple(roles[ref.address])) for ref in order]


def _fetch(ledger: LedgerGateway, account: AccountRef) -> Tuple[Optional[int], Optional[int]]:
    balance = ledger.get_balance(account)
    if balance is None:
        return None, None
    withheld = ledger.get_withheld_fee(account)
    return int(balance), (int(withheld) if withheld is not None else None)


def collect_balances(
    ledger: LedgerGateway,
    plan: RunPlan,
    *,
    decimals: int,
    timeout_s: float,
) -> List[AccountBalance]:
    """Balance and withheld amount of every plan account.

    Reads fan out concurrently and must all finish within `timeout_s`;
    otherwise TransportError(reason="timeout"). Accounts that do not resolve
    are reported with exists=False.
    """

    accounts = plan_accounts(plan)
    if not accounts:
        return []

    pool = ThreadPoolExecutor(max_workers=min(MAX_FETCH_WORKERS, len(accounts)), thread_name_prefix="tokenops-bal")
    try:
        futures = {pool.submit(_fetch, ledger, ref): ref for ref, _ in accounts}
        done, not_done = wait(futures, timeout=float(timeout_s), return_when=FIRST_EXCEPTION)

        for fut in done:
            exc = fut.exception()
            if exc is not None:
                raise exc

        if not_done:
            raise TransportError(
                reason="timeout",
                details={"stage": "balances", "pending": sorted(futures[f].address for f in not_done)},
            )

        fetched = {futures[f].address: f.result() for f in done}
    finally:
        pool.shutdown(wait=False, cancel_futures=True)

    out: List[AccountBalance] = []
    for ref, roles in accounts:
        balance, withheld = fetched[ref.address]
        out.append(
            AccountBalance(
                address=ref.address,
                roles=roles,
                exists=balance is not None,
                balance=balance,
                withheld=withheld,
                decimals=int(decimals),
            )
        )

    log_event(_log, "balances", accounts=len(out), missing=[b.address for b in out if not b.exists])
    return out
