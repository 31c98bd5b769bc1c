from __future__ import annotations

from typing import Optional

import pytest
from fastapi.testclient import TestClient

from tokenops.config import TokenOpsConfig, default_runner_config
from tokenops.runtime.boot import Runtime


@pytest.fixture
def cfg(asset, plan) -> TokenOpsConfig:
    return TokenOpsConfig(asset=asset, runner=default_runner_config(), plan=plan)


@pytest.fixture
def make_client(monkeypatch: pytest.MonkeyPatch, cfg, ledger, authorities):
    from tokenops.api import app as api_app

    def _make(*, boot_runtime: bool = True, config: Optional[TokenOpsConfig] = None) -> TestClient:
        monkeypatch.setattr(api_app, "load_runtime_config", lambda: config or cfg)
        monkeypatch.setattr(api_app, "build_runtime", lambda _cfg: Runtime(gateway=ledger, authorities=authorities))
        return TestClient(api_app.create_app(boot_runtime=boot_runtime))

    return _make


def test_health_without_runtime(make_client) -> None:
    c = make_client(boot_runtime=False)
    r = c.get("/v1/health")
    assert r.status_code == 200
    j = r.json()
    assert j["ok"] is True
    assert j["runtime_attached"] is False
    assert j["plan_loaded"] is True
    assert r.headers.get("x-request-id")


def test_request_id_is_echoed(make_client) -> None:
    r = make_client().get("/v1/health", headers={"x-request-id": "abc123"})
    assert r.headers["x-request-id"] == "abc123"


def test_config_view(make_client) -> None:
    j = make_client().get("/v1/config").json()
    assert j["ok"] is True
    assert j["asset"]["fee_basis_points"] == 500
    assert j["runner"]["burn_marker_enabled"] is False


def test_fee_quote(make_client) -> None:
    j = make_client().get("/v1/quote/fee", params={"amount": 10_000}).json()
    assert j == {
        "ok": True,
        "amount": 10_000,
        "fee": 500,
        "net": 9_500,
        "fee_basis_points": 500,
        "fee_cap": 800,
        "amount_ui": "10",
        "fee_ui": "0.5",
        "net_ui": "9.5",
    }


def test_fee_quote_validation_error_shape(make_client) -> None:
    r = make_client().get("/v1/quote/fee", params={"amount": -5})
    assert r.status_code == 422
    j = r.json()
    assert j["ok"] is False
    assert j["error"]["code"] == "invalid_request"


def test_run_then_last(make_client, ledger) -> None:
    c = make_client()
    assert c.get("/v1/runs/last").status_code == 404

    r = c.post("/v1/runs", json={"stages": ["transferring", "withdrawing"]})
    assert r.status_code == 200
    j = r.json()
    assert j["ok"] is True
    assert j["state"] == "done"
    assert j["dry_run"] is False
    assert [o["stage"] for o in j["outcomes"]] == ["transferring", "withdrawing"]
    assert j["outcomes"][0]["details"]["fee"] == 500
    assert ledger.accounts["FeeVault"].balance == 500

    last = c.get("/v1/runs/last").json()
    assert last == j


def test_failed_run_is_still_a_report(make_client, ledger) -> None:
    ledger.fail_on.add("TRANSFER_WITH_FEE")
    r = make_client().post("/v1/runs", json={"stages": ["transferring", "withdrawing"]})
    assert r.status_code == 200
    j = r.json()
    assert j["ok"] is False
    assert j["state"] == "failed"
    assert len(j["outcomes"]) == 1
    assert j["outcomes"][0]["status"] == "failed"


def test_unknown_stage_is_a_config_error(make_client) -> None:
    r = make_client().post("/v1/runs", json={"stages": ["teleporting"]})
    assert r.status_code == 400
    err = r.json()["error"]
    assert err["code"] == "config_error"
    assert err["message"] == "unknown_stage"


def test_live_run_needs_runtime(make_client) -> None:
    r = make_client(boot_runtime=False).post("/v1/runs", json={})
    assert r.status_code == 503
    assert r.json()["error"]["code"] == "not_ready"


def test_dry_run_uses_in_memory_ledger(make_client, ledger) -> None:
    c = make_client(boot_runtime=False)
    r = c.post("/v1/runs", json={"dry_run": True, "balances": {"Treasury": 50_000}, "stages": ["transferring"]})
    assert r.status_code == 200
    j = r.json()
    assert j["dry_run"] is True
    assert j["outcomes"][0]["status"] == "ok"
    # The configured ledger was never touched.
    assert ledger.submitted == []


def test_balances_require_dry_run(make_client) -> None:
    r = make_client().post("/v1/runs", json={"balances": {"Treasury": 1}})
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "balances_require_dry_run"


def test_unknown_request_fields_are_rejected(make_client) -> None:
    r = make_client().post("/v1/runs", json={"stage": "minting"})
    assert r.status_code == 422


def test_run_without_plan(make_client, cfg) -> None:
    c = make_client(boot_runtime=False, config=TokenOpsConfig(asset=cfg.asset, runner=cfg.runner, plan=None))
    r = c.post("/v1/runs", json={"dry_run": True})
    assert r.status_code == 409
    assert r.json()["error"]["code"] == "plan_missing"


def test_metrics_after_run(make_client) -> None:
    c = make_client()
    c.post("/v1/runs", json={"stages": ["transferring"]})
    r = c.get("/v1/metrics")
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/plain")
    assert "tokenops_runs_ok_total 1" in r.text
    assert "tokenops_last_run_ok 1" in r.text


def test_balances_over_plan_accounts(make_client, ledger) -> None:
    ledger.accounts["Alice"].balance = 9_500
    ledger.accounts["Alice"].withheld = 500

    r = make_client().get("/v1/balances")
    assert r.status_code == 200
    j = r.json()
    assert j["ok"] is True
    assert j["mint"] == "Mint1"
    assert j["decimals"] == 3

    rows = {a["address"]: a for a in j["accounts"]}
    assert [a["address"] for a in j["accounts"]] == ["Treasury", "Alice", "Bob", "Foreign", "FeeVault", "FeeAcct"]
    assert rows["Treasury"]["roles"] == ["mint_target", "transfer_source", "payer", "burn_account"]
    assert rows["Treasury"]["balance"] == 100_000
    assert rows["Treasury"]["balance_ui"] == "100"
    assert rows["Alice"]["balance_ui"] == "9.5"
    assert rows["Alice"]["withheld"] == 500
    assert rows["Alice"]["withheld_ui"] == "0.5"


def test_balances_report_missing_accounts(make_client, ledger) -> None:
    del ledger.accounts["Bob"]
    rows = {a["address"]: a for a in make_client().get("/v1/balances").json()["accounts"]}
    assert rows["Bob"]["exists"] is False
    assert rows["Bob"]["balance"] is None
    assert rows["Bob"]["balance_ui"] is None


def test_balances_need_runtime(make_client) -> None:
    r = make_client(boot_runtime=False).get("/v1/balances")
    assert r.status_code == 503
    assert r.json()["error"]["code"] == "not_ready"


def test_balances_unreachable_ledger(make_client, ledger) -> None:
    ledger.unreachable = True
    r = make_client().get("/v1/balances")
    assert r.status_code == 502
    err = r.json()["error"]
    assert err["code"] == "transport_error"
    assert err["message"] == "ledger_unreachable"
