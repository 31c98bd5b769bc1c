# src/tokenops/policy/reconciler.py
from __future__ import annotations

import logging
import time
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from typing import Dict, List, Optional, Sequence

from tokenops.errors import TransportError
from tokenops.ledger.gateway import LedgerGateway
from tokenops.ledger.types import AccountRef, WithheldFeeSnapshot
from tokenops.observability.structured_logging import log_event

_log = logging.getLogger("tokenops.reconciler")

# Upper bound on parallel snapshot reads against one cluster.
MAX_FETCH_WORKERS = 8


def _now_ms() -> int:
    return int(time.time() * 1000)


def _dedupe(candidates: Sequence[AccountRef]) -> List[AccountRef]:
    seen: set[str] = set()
    out: List[AccountRef] = []
    for acct in candidates:
        if acct.address in seen:
            continue
        seen.add(acct.address)
        out.append(acct)
    return out


def _fetch_snapshot(ledger: LedgerGateway, account: AccountRef, owner_filter: str) -> Optional[WithheldFeeSnapshot]:
    owner = ledger.get_account_owner(account)
    if owner is None:
        return None
    if owner != owner_filter:
        # Withheld amount is irrelevant for foreign-program accounts.
        return WithheldFeeSnapshot(account=account, owner_program=owner, withheld=0, observed_ms=_now_ms())
    withheld = ledger.get_withheld_fee(account)
    if withheld is None:
        return None
    return WithheldFeeSnapshot(account=account, owner_program=owner, withheld=int(withheld), observed_ms=_now_ms())


def collect_snapshots(
    candidates: Sequence[AccountRef],
    owner_filter: str,
    ledger: LedgerGateway,
    *,
    timeout_s: float,
) -> Dict[str, Optional[WithheldFeeSnapshot]]:
    """Fetch fresh snapshots for every candidate concurrently.

    Returns address -> snapshot (None for accounts that did not resolve).
    All fetches must finish within `timeout_s` (join barrier); otherwise
    TransportError(reason="timeout") is raised. Transport errors from any
    fetch propagate.
    """

    accounts = _dedupe(candidates)
    if not accounts:
        return {}

    pool = ThreadPoolExecutor(max_workers=min(MAX_FETCH_WORKERS, len(accounts)), thread_name_prefix="tokenops-recon")
    try:
        futures = {pool.submit(_fetch_snapshot, ledger, a, owner_filter): a for a in accounts}
        done, not_done = wait(futures, timeout=float(timeout_s), return_when=FIRST_EXCEPTION)

        # Surface the first failure before deciding about stragglers.
        for fut in done:
            exc = fut.exception()
            if exc is not None:
                raise exc

        if not_done:
            raise TransportError(
                reason="timeout",
                details={"stage": "reconcile", "pending": sorted(futures[f].address for f in not_done)},
            )

        return {futures[f].address: f.result() for f in done}
    finally:
        pool.shutdown(wait=False, cancel_futures=True)


def select_withdrawable(
    candidates: Sequence[AccountRef],
    owner_filter: str,
    ledger: LedgerGateway,
    *,
    timeout_s: float = 30.0,
) -> List[AccountRef]:
    """Accounts eligible for a withheld-fee withdrawal.

    An account qualifies iff it resolves, its owning program equals
    `owner_filter` and its withheld amount is strictly positive. Everything
    else is dropped without error. Output keeps candidate order.
    """

    snapshots = collect_snapshots(candidates, owner_filter, ledger, timeout_s=timeout_s)

    selected: List[AccountRef] = []
    for acct in _dedupe(candidates):
        snap = snapshots.get(acct.address)
        if snap is None:
            continue
        if snap.owner_program != owner_filter or snap.withheld <= 0:
            continue
        selected.append(acct)

    log_event(
        _log,
        "reconcile",
        candidates=len(snapshots),
        selected=[a.address for a in selected],
        withheld_total=sum(s.withheld for s in snapshots.values() if s is not None and s.owner_program == owner_filter),
    )
    return selected
