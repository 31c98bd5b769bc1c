# src/tokenops/ledger/types.py
from __future__ import annotations

import string
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

Json = Dict[str, Any]

EXPLORER_PLACEHOLDER = "signature"


def explorer_template_fields(template: str) -> List[str]:
    """Replacement fields used by an explorer URL template.

    Raises ValueError when the template is not valid format syntax.
    """
    return [name for _, name, _, _ in string.Formatter().parse(template) if name is not None]


def render_explorer_url(template: str, signature: str) -> str:
    if not template or not signature:
        return ""
    return template.replace("{" + EXPLORER_PLACEHOLDER + "}", signature)


@dataclass(frozen=True)
class AccountRef:
    """Ledger account address plus its owning authority.

    The owner is a lookup key, not a resource the engine manages.
    """

    address: str
    owner: Optional[str] = None

    def __str__(self) -> str:
        return self.address

    def to_json(self) -> Json:
        out: Json = {"address": self.address}
        if self.owner is not None:
            out["owner"] = self.owner
        return out


@dataclass(frozen=True)
class WithheldFeeSnapshot:
    account: AccountRef
    owner_program: str
    withheld: int
    observed_ms: int

    def to_json(self) -> Json:
        return {
            "account": self.account.address,
            "owner_program": self.owner_program,
            "withheld": int(self.withheld),
            "observed_ms": int(self.observed_ms),
        }


@dataclass(frozen=True)
class Confirmation:
    """Result of LedgerGateway.submit.

    ok=False means the ledger rejected or never confirmed the operation;
    `error` carries the ledger's reason.
    """

    ok: bool
    signature: str = ""
    error: str = ""
    explorer_url: str = ""

    def to_json(self) -> Json:
        out: Json = {"ok": bool(self.ok), "signature": self.signature}
        if self.error:
            out["error"] = self.error
        if self.explorer_url:
            out["explorer_url"] = self.explorer_url
        return out
