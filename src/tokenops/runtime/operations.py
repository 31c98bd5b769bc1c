# src/tokenops/runtime/operations.py
from __future__ import annotations

"""Ledger operations the scheduler issues.

Each operation is created by the scheduler, submitted exactly once through
the LedgerGateway and then dropped; nothing here is persisted.

`authority_role` names the Authorities field that must sign the operation.
`to_ledger_obj()` is the canonical wire/signing form (see
tokenops.crypto.sig.canonical_operation_message).
"""

from dataclasses import dataclass
from typing import Any, ClassVar, Dict, Tuple, Union

from tokenops.ledger.types import AccountRef

Json = Dict[str, Any]


@dataclass(frozen=True)
class MintTo:
    kind: ClassVar[str] = "MINT_TO"
    authority_role: ClassVar[str] = "mint_authority"

    mint: AccountRef
    destination: AccountRef
    amount: int

    def to_ledger_obj(self) -> Json:
        return {
            "kind": self.kind,
            "mint": self.mint.address,
            "destination": self.destination.address,
            "amount": int(self.amount),
        }


@dataclass(frozen=True)
class TransferWithFee:
    kind: ClassVar[str] = "TRANSFER_WITH_FEE"
    authority_role: ClassVar[str] = "payer"

    source: AccountRef
    destination: AccountRef
    mint: AccountRef
    amount: int
    fee: int
    decimals: int

    def to_ledger_obj(self) -> Json:
        return {
            "kind": self.kind,
            "source": self.source.address,
            "destination": self.destination.address,
            "mint": self.mint.address,
            "amount": int(self.amount),
            "fee": int(self.fee),
            "decimals": int(self.decimals),
        }


@dataclass(frozen=True)
class WithdrawWithheldFees:
    kind: ClassVar[str] = "WITHDRAW_WITHHELD_FEES"
    authority_role: ClassVar[str] = "withdraw_authority"

    mint: AccountRef
    destination: AccountRef
    sources: Tuple[AccountRef, ...]

    def to_ledger_obj(self) -> Json:
        return {
            "kind": self.kind,
            "mint": self.mint.address,
            "destination": self.destination.address,
            "sources": [a.address for a in self.sources],
        }


@dataclass(frozen=True)
class HarvestToMint:
    kind: ClassVar[str] = "HARVEST_TO_MINT"
    authority_role: ClassVar[str] = "withdraw_authority"

    fee_account: AccountRef
    mint: AccountRef
    amount: int

    def to_ledger_obj(self) -> Json:
        return {
            "kind": self.kind,
            "fee_account": self.fee_account.address,
            "mint": self.mint.address,
            "amount": int(self.amount),
        }


@dataclass(frozen=True)
class Burn:
    kind: ClassVar[str] = "BURN"
    authority_role: ClassVar[str] = "burn_authority"

    account: AccountRef
    mint: AccountRef
    amount: int

    def to_ledger_obj(self) -> Json:
        return {
            "kind": self.kind,
            "account": self.account.address,
            "mint": self.mint.address,
            "amount": int(self.amount),
        }


ScheduledOperation = Union[MintTo, TransferWithFee, WithdrawWithheldFees, HarvestToMint, Burn]
