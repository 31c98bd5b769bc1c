# src/tokenops/ledger/gateway.py
from __future__ import annotations

from typing import Optional, Protocol, Sequence, runtime_checkable

from tokenops.crypto.sig import Signer
from tokenops.ledger.types import AccountRef, Confirmation
from tokenops.runtime.operations import ScheduledOperation


@runtime_checkable
class LedgerGateway(Protocol):
    """Capability surface the scheduler needs from a ledger.

    Lookups return None when the account does not exist. Any transport
    problem (unreachable cluster, RPC error, malformed response) raises
    tokenops.errors.TransportError. Retries, if any, live inside the
    implementation; the scheduler never retries.
    """

    def get_balance(self, account: AccountRef) -> Optional[int]:
        ...

    def get_withheld_fee(self, account: AccountRef) -> Optional[int]:
        ...

    def get_account_owner(self, account: AccountRef) -> Optional[str]:
        ...

    def get_supply(self, mint: AccountRef) -> Optional[int]:
        ...

    def account_exists(self, account: AccountRef) -> bool:
        ...

    def submit(self, operation: ScheduledOperation, authorities: Sequence[Signer]) -> Confirmation:
        ...

    def create_account(
        self,
        owner: str,
        space: int,
        funding_source: Optional[AccountRef],
        new_account: Signer,
    ) -> AccountRef:
        """Create `new_account` owned by program `owner`.

        Raises AccountCollision if the identifier already exists and
        TransportError on delivery problems.
        """
        ...
