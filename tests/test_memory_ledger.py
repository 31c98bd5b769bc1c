from __future__ import annotations

import pytest

from tokenops.config import AssetConfig, RunPlan
from tokenops.crypto.sig import Authorities, Signer
from tokenops.errors import AccountCollision, TransportError
from tokenops.ledger.memory import InMemoryLedger, seed_from_plan
from tokenops.ledger.types import AccountRef
from tokenops.runtime.operations import Burn, TransferWithFee


def _transfer(amount: int, fee: int, decimals: int = 3) -> TransferWithFee:
    return TransferWithFee(
        source=AccountRef("Treasury"),
        destination=AccountRef("Alice"),
        mint=AccountRef("Mint1"),
        amount=amount,
        fee=fee,
        decimals=decimals,
    )


def test_transfer_withholds_fee_in_destination(ledger: InMemoryLedger, authorities: Authorities) -> None:
    conf = ledger.submit(_transfer(10_000, 500), [authorities.payer])
    assert conf.ok and conf.signature
    assert ledger.accounts["Treasury"].balance == 90_000
    assert ledger.accounts["Alice"].balance == 9_500
    assert ledger.accounts["Alice"].withheld == 500


@pytest.mark.parametrize(
    "op,error",
    [
        (_transfer(10_000, 499), "fee_mismatch"),
        (_transfer(10_000, 500, decimals=6), "decimals_mismatch"),
        (_transfer(1_000_000, 800), "insufficient_funds"),
    ],
)
def test_transfer_rejections(ledger: InMemoryLedger, authorities: Authorities, op, error: str) -> None:
    conf = ledger.submit(op, [authorities.payer])
    assert not conf.ok
    assert conf.error == error
    assert ledger.accounts["Treasury"].balance == 100_000
    assert ledger.submitted == []


def test_burn_requires_burn_authority_signature(ledger: InMemoryLedger) -> None:
    op = Burn(account=AccountRef("Treasury"), mint=AccountRef("Mint1"), amount=10)
    conf = ledger.submit(op, [Signer.generate()])
    assert not conf.ok
    assert conf.error == "missing_required_signature"


def test_fault_injection(ledger: InMemoryLedger, authorities: Authorities) -> None:
    ledger.unreachable = True
    with pytest.raises(TransportError):
        ledger.get_balance(AccountRef("Treasury"))

    ledger.unreachable = False
    ledger.fail_on.add("BURN")
    with pytest.raises(TransportError):
        ledger.submit(Burn(account=AccountRef("Treasury"), mint=AccountRef("Mint1"), amount=1), [authorities.burn_authority])


def test_create_account_collision(ledger: InMemoryLedger) -> None:
    s = Signer.generate()
    ref = ledger.create_account("Prog", 10, None, s)
    assert ref.address == s.pubkey
    with pytest.raises(AccountCollision):
        ledger.create_account("Prog", 10, None, s)


def test_lookups_on_missing_accounts(ledger: InMemoryLedger) -> None:
    ghost = AccountRef("Ghost")
    assert ledger.get_balance(ghost) is None
    assert ledger.get_withheld_fee(ghost) is None
    assert ledger.get_account_owner(ghost) is None
    assert ledger.get_supply(ghost) is None
    assert ledger.account_exists(ghost) is False
    assert ledger.get_supply(AccountRef("Mint1")) == 100_000


def test_explorer_url_template() -> None:
    led = InMemoryLedger(explorer_url_template="https://explorer.example/tx/{signature}")
    s = Signer.generate()
    led.add_mint("M", owner="P", decimals=0, fee_basis_points=0, max_fee=0)
    led.add_account("A", owner="P", balance=5)
    conf = led.submit(Burn(account=AccountRef("A"), mint=AccountRef("M"), amount=1), [s])
    assert conf.explorer_url == f"https://explorer.example/tx/{conf.signature}"


def test_seed_from_plan(asset: AssetConfig, plan: RunPlan, authorities: Authorities) -> None:
    led = seed_from_plan(InMemoryLedger(), plan=plan, asset=asset, authorities=authorities, balances={"Treasury": 7})
    assert led.mints["Mint1"].fee_basis_points == asset.fee_basis_points
    assert led.accounts["Treasury"].balance == 7
    assert set(led.accounts) == {"Treasury", "Alice", "Bob", "Foreign", "FeeVault", "FeeAcct"}


def test_explorer_url_leaves_other_braces_alone() -> None:
    led = InMemoryLedger(explorer_url_template="https://solana.fm/tx/{signature}?cluster={cluster}")
    s = Signer.generate()
    led.add_mint("M", owner="P", decimals=0, fee_basis_points=0, max_fee=0)
    led.add_account("A", owner="P", balance=5)
    conf = led.submit(Burn(account=AccountRef("A"), mint=AccountRef("M"), amount=1), [s])
    assert conf.ok
    assert conf.explorer_url == f"https://solana.fm/tx/{conf.signature}?cluster={{cluster}}"
