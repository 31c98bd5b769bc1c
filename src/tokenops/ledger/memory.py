# src/tokenops/ledger/memory.py
from __future__ import annotations

import hashlib
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Set

from tokenops.config import AssetConfig, RunPlan
from tokenops.crypto.sig import Authorities, Signer, canonical_operation_message, verify_ed25519_signature
from tokenops.errors import AccountCollision, TransportError
from tokenops.ledger.types import AccountRef, Confirmation, render_explorer_url
from tokenops.policy.fee_model import compute_fee
from tokenops.runtime.operations import Burn, HarvestToMint, MintTo, ScheduledOperation, TransferWithFee, WithdrawWithheldFees

Json = Dict[str, Any]


@dataclass
class MemAccount:
    owner: str
    mint: Optional[str] = None
    balance: int = 0
    withheld: int = 0
    space: int = 0


@dataclass
class MemMint:
    owner: str
    decimals: int
    fee_basis_points: int
    max_fee: int
    supply: int = 0
    withheld: int = 0
    # role -> pubkey hex; roles without an entry are not enforced
    authorities: Dict[str, str] = field(default_factory=dict)


class _Reject(Exception):
    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class InMemoryLedger:
    """
    Minimal in-process ledger implementing LedgerGateway.

    - Does not open sockets
    - Applies the same token semantics the remote program does: transfer fees
      are withheld in the destination, withdrawals move withheld amounts to a
      destination balance, harvests move them into the mint
    - Verifies that the operation's required authority signed it

    Fault injection for tests:
      fail_on:    operation kinds whose submit raises TransportError
      reject_on:  operation kind -> ledger error (Confirmation ok=False)
      delay_s:    method name -> seconds to sleep before answering
      collisions: addresses create_account must treat as taken
    """

    def __init__(self, *, explorer_url_template: str = "") -> None:
        self.accounts: Dict[str, MemAccount] = {}
        self.mints: Dict[str, MemMint] = {}
        self.explorer_url_template = explorer_url_template

        self.fail_on: Set[str] = set()
        self.reject_on: Dict[str, str] = {}
        self.delay_s: Dict[str, float] = {}
        self.collisions: Set[str] = set()
        self.unreachable = False

        self.submitted: List[Json] = []
        self.calls: List[str] = []

        self._lock = threading.Lock()
        self._seq = 0

    # ------------------------------------------------------------------
    # setup helpers

    def add_mint(
        self,
        address: str,
        *,
        owner: str,
        decimals: int,
        fee_basis_points: int,
        max_fee: int,
        supply: int = 0,
        withheld: int = 0,
        authorities: Optional[Authorities] = None,
    ) -> AccountRef:
        roles: Dict[str, str] = {}
        if authorities is not None:
            roles = {
                "mint_authority": authorities.mint_authority.pubkey,
                "withdraw_authority": authorities.withdraw_authority.pubkey,
                "burn_authority": authorities.burn_authority.pubkey,
            }
        self.mints[address] = MemMint(
            owner=owner,
            decimals=int(decimals),
            fee_basis_points=int(fee_basis_points),
            max_fee=int(max_fee),
            supply=int(supply),
            withheld=int(withheld),
            authorities=roles,
        )
        return AccountRef(address=address, owner=owner)

    def add_account(
        self,
        address: str,
        *,
        owner: str,
        mint: Optional[str] = None,
        balance: int = 0,
        withheld: int = 0,
    ) -> AccountRef:
        self.accounts[address] = MemAccount(owner=owner, mint=mint, balance=int(balance), withheld=int(withheld))
        return AccountRef(address=address, owner=owner)

    # ------------------------------------------------------------------
    # gateway surface

    def _enter(self, method: str) -> None:
        self.calls.append(method)
        delay = float(self.delay_s.get(method, 0.0))
        if delay > 0:
            time.sleep(delay)
        if self.unreachable:
            raise TransportError(reason="ledger_unreachable", details={"method": method})

    def get_balance(self, account: AccountRef) -> Optional[int]:
        self._enter("get_balance")
        with self._lock:
            acct = self.accounts.get(account.address)
            return None if acct is None else int(acct.balance)

    def get_withheld_fee(self, account: AccountRef) -> Optional[int]:
        self._enter("get_withheld_fee")
        with self._lock:
            acct = self.accounts.get(account.address)
            if acct is not None:
                return int(acct.withheld)
            mint = self.mints.get(account.address)
            return None if mint is None else int(mint.withheld)

    def get_account_owner(self, account: AccountRef) -> Optional[str]:
        self._enter("get_account_owner")
        with self._lock:
            acct = self.accounts.get(account.address)
            if acct is not None:
                return acct.owner
            mint = self.mints.get(account.address)
            return None if mint is None else mint.owner

    def get_supply(self, mint: AccountRef) -> Optional[int]:
        self._enter("get_supply")
        with self._lock:
            m = self.mints.get(mint.address)
            return None if m is None else int(m.supply)

    def account_exists(self, account: AccountRef) -> bool:
        self._enter("account_exists")
        with self._lock:
            return account.address in self.accounts or account.address in self.mints

    def create_account(
        self,
        owner: str,
        space: int,
        funding_source: Optional[AccountRef],
        new_account: Signer,
    ) -> AccountRef:
        self._enter("create_account")
        address = new_account.pubkey
        with self._lock:
            if address in self.accounts or address in self.mints or address in self.collisions:
                raise AccountCollision(details={"address": address})
            self.accounts[address] = MemAccount(owner=str(owner), space=int(space))
        return AccountRef(address=address, owner=str(owner))

    def submit(self, operation: ScheduledOperation, authorities: Sequence[Signer]) -> Confirmation:
        self._enter("submit")
        kind = operation.kind
        if kind in self.fail_on:
            raise TransportError(reason="submit_failed", details={"kind": kind})

        obj = operation.to_ledger_obj()
        msg = canonical_operation_message(obj)
        sigs = {s.pubkey: s.sign(msg) for s in authorities}

        with self._lock:
            self._seq += 1
            signature = hashlib.sha256(msg + str(self._seq).encode("ascii")).hexdigest()

            if kind in self.reject_on:
                return Confirmation(ok=False, signature=signature, error=self.reject_on[kind])

            try:
                self._check_signed(operation, msg, sigs)
                self._apply(operation)
            except _Reject as r:
                return Confirmation(ok=False, signature=signature, error=r.reason)

            self.submitted.append(obj)

        url = render_explorer_url(self.explorer_url_template, signature)
        return Confirmation(ok=True, signature=signature, explorer_url=url)

    # ------------------------------------------------------------------
    # program semantics (called with the lock held)

    def _mint(self, address: str) -> MemMint:
        m = self.mints.get(address)
        if m is None:
            raise _Reject("mint_not_found")
        return m

    def _account(self, address: str) -> MemAccount:
        a = self.accounts.get(address)
        if a is None:
            raise _Reject("account_not_found")
        return a

    def _check_signed(self, op: ScheduledOperation, msg: bytes, sigs: Dict[str, str]) -> None:
        mint = self._mint(op.mint.address)
        required = mint.authorities.get(op.authority_role)
        if not required:
            return
        sig = sigs.get(required)
        if sig is None or not verify_ed25519_signature(message=msg, sig=sig, pubkey=required):
            raise _Reject("missing_required_signature")

    def _apply(self, op: ScheduledOperation) -> None:
        if isinstance(op, MintTo):
            mint = self._mint(op.mint.address)
            dest = self._account(op.destination.address)
            dest.balance += int(op.amount)
            mint.supply += int(op.amount)
            return

        if isinstance(op, TransferWithFee):
            mint = self._mint(op.mint.address)
            src = self._account(op.source.address)
            dest = self._account(op.destination.address)
            if int(op.decimals) != mint.decimals:
                raise _Reject("decimals_mismatch")
            if int(op.fee) != compute_fee(op.amount, mint.fee_basis_points, mint.max_fee):
                raise _Reject("fee_mismatch")
            if src.balance < int(op.amount):
                raise _Reject("insufficient_funds")
            src.balance -= int(op.amount)
            dest.balance += int(op.amount) - int(op.fee)
            dest.withheld += int(op.fee)
            return

        if isinstance(op, WithdrawWithheldFees):
            self._mint(op.mint.address)
            dest = self._account(op.destination.address)
            sources = [self._account(a.address) for a in op.sources]
            moved = 0
            for src in sources:
                moved += src.withheld
                src.withheld = 0
            dest.balance += moved
            return

        if isinstance(op, HarvestToMint):
            mint = self._mint(op.mint.address)
            fee_acct = self._account(op.fee_account.address)
            if fee_acct.withheld < int(op.amount):
                raise _Reject("insufficient_withheld")
            fee_acct.withheld -= int(op.amount)
            mint.withheld += int(op.amount)
            return

        if isinstance(op, Burn):
            mint = self._mint(op.mint.address)
            acct = self._account(op.account.address)
            if acct.balance < int(op.amount):
                raise _Reject("insufficient_funds")
            acct.balance -= int(op.amount)
            mint.supply -= int(op.amount)
            return

        raise _Reject("unknown_operation")


def seed_from_plan(
    ledger: InMemoryLedger,
    *,
    plan: RunPlan,
    asset: AssetConfig,
    authorities: Authorities,
    balances: Optional[Dict[str, int]] = None,
) -> InMemoryLedger:
    """Create every account a RunPlan names (dry runs).

    `balances` maps address -> starting balance; unlisted accounts start empty.
    The fee account is left out when absent from the plan so the harvest stage
    exercises account creation.
    """

    bal = balances or {}
    owner = plan.owner_program
    ledger.add_mint(
        plan.mint.address,
        owner=owner,
        decimals=asset.decimals,
        fee_basis_points=asset.fee_basis_points,
        max_fee=asset.fee_cap,
        authorities=authorities,
    )

    accounts = [
        plan.mint_target,
        plan.transfer_source,
        plan.transfer_destination,
        plan.withdraw_destination,
        plan.fee_account,
        plan.payer,
        *plan.withdraw_candidates,
        *plan.burn_accounts,
    ]
    for ref in accounts:
        if ref is None or ref.address in ledger.accounts or ref.address == plan.mint.address:
            continue
        ledger.add_account(ref.address, owner=owner, mint=plan.mint.address, balance=int(bal.get(ref.address, 0)))
    return ledger
