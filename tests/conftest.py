from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

# Ensure local "src/" takes precedence over any globally-installed "tokenops" package.
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

src_str = str(SRC)
if src_str not in sys.path:
    sys.path.insert(0, src_str)

from tokenops.config import AssetConfig, RunPlan  # noqa: E402
from tokenops.crypto.sig import Authorities, Signer  # noqa: E402
from tokenops.ledger.memory import InMemoryLedger  # noqa: E402
from tokenops.ledger.types import AccountRef  # noqa: E402
from tokenops.observability import metrics  # noqa: E402

PROGRAM = "TokenProgram2022"


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    # Host TOKENOPS_* vars must not leak into config tests.
    for k in list(os.environ):
        if k.startswith("TOKENOPS_"):
            monkeypatch.delenv(k, raising=False)
    metrics.reset()


@pytest.fixture
def authorities() -> Authorities:
    return Authorities.single(Signer.generate(label="test"))


@pytest.fixture
def asset() -> AssetConfig:
    return AssetConfig(
        decimals=3,
        fee_basis_points=500,
        fee_cap=800,
        burn_rate=0.025,
        burn_start_quarter=3,
        transfer_amount=10_000,
        mint_amount=0,
    )


@pytest.fixture
def plan() -> RunPlan:
    return RunPlan(
        mint=AccountRef("Mint1"),
        mint_target=AccountRef("Treasury"),
        transfer_source=AccountRef("Treasury"),
        transfer_destination=AccountRef("Alice"),
        withdraw_candidates=(AccountRef("Alice"), AccountRef("Bob"), AccountRef("Foreign")),
        withdraw_destination=AccountRef("FeeVault"),
        owner_program=PROGRAM,
        fee_account=AccountRef("FeeAcct"),
        fee_account_space=165,
        payer=AccountRef("Treasury"),
        burn_accounts=(AccountRef("Treasury"),),
    )


@pytest.fixture
def ledger(authorities: Authorities, asset: AssetConfig) -> InMemoryLedger:
    """Every plan account exists; Treasury holds 100,000 base units."""

    led = InMemoryLedger()
    led.add_mint(
        "Mint1",
        owner=PROGRAM,
        decimals=asset.decimals,
        fee_basis_points=asset.fee_basis_points,
        max_fee=asset.fee_cap,
        supply=100_000,
        authorities=authorities,
    )
    led.add_account("Treasury", owner=PROGRAM, mint="Mint1", balance=100_000)
    led.add_account("Alice", owner=PROGRAM, mint="Mint1")
    led.add_account("Bob", owner=PROGRAM, mint="Mint1")
    led.add_account("Foreign", owner="SomeOtherProgram", withheld=50)
    led.add_account("FeeVault", owner=PROGRAM, mint="Mint1")
    led.add_account("FeeAcct", owner=PROGRAM, mint="Mint1")
    return led
