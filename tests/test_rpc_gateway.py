from __future__ import annotations

import json
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Dict, List

import pytest

from tokenops.crypto.sig import Signer, canonical_operation_message, verify_ed25519_signature
from tokenops.errors import AccountCollision, TransportError
from tokenops.ledger.rpc import ERR_ACCOUNT_EXISTS, RpcConfig, RpcLedgerGateway
from tokenops.ledger.types import AccountRef
from tokenops.runtime.operations import Burn

Json = Dict[str, Any]


class _Cluster:
    """JSON-RPC stand-in: method -> handler(params) returning a full response body."""

    def __init__(self) -> None:
        self.handlers: Dict[str, Callable[[Json], Any]] = {}
        self.requests: List[Json] = []
        self.status = 200
        self.delay_s = 0.0
        self.endpoint = ""


@pytest.fixture
def cluster():
    state = _Cluster()

    class Handler(BaseHTTPRequestHandler):
        def do_POST(self) -> None:  # noqa: N802
            body = json.loads(self.rfile.read(int(self.headers["Content-Length"])))
            state.requests.append(body)
            if state.delay_s:
                time.sleep(state.delay_s)
            fn = state.handlers.get(body["method"])
            resp = fn(body["params"]) if fn else {"error": {"code": -32601, "message": "method not found"}}
            raw = resp if isinstance(resp, bytes) else json.dumps({"jsonrpc": "2.0", "id": body["id"], **resp}).encode()
            self.send_response(state.status)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(raw)))
            self.end_headers()
            self.wfile.write(raw)

        def log_message(self, *args: Any) -> None:
            pass

    server = ThreadingHTTPServer(("127.0.0.1", 0), Handler)
    t = threading.Thread(target=server.serve_forever, daemon=True)
    t.start()
    state.endpoint = f"http://127.0.0.1:{server.server_address[1]}/rpc"
    try:
        yield state
    finally:
        server.shutdown()
        server.server_close()


def _gateway(cluster, **kw) -> RpcLedgerGateway:
    return RpcLedgerGateway(RpcConfig(endpoint=cluster.endpoint, **kw))


def test_lookups(cluster) -> None:
    cluster.handlers["getBalance"] = lambda p: {"result": "1500" if p["address"] == "A" else None}
    cluster.handlers["getAccountOwner"] = lambda p: {"result": "Prog"}
    cluster.handlers["getAccountInfo"] = lambda p: {"result": None}

    gw = _gateway(cluster, commitment="finalized")
    assert gw.get_balance(AccountRef("A")) == 1500
    assert gw.get_balance(AccountRef("B")) is None
    assert gw.get_account_owner(AccountRef("A")) == "Prog"
    assert gw.account_exists(AccountRef("A")) is False

    first = cluster.requests[0]
    assert first["jsonrpc"] == "2.0"
    assert first["params"] == {"address": "A", "commitment": "finalized"}


def test_submit_sends_verifiable_signatures(cluster) -> None:
    cluster.handlers["sendOperation"] = lambda p: {"result": {"signature": "5ig", "confirmed": True, "err": None}}
    signer = Signer.generate()
    op = Burn(account=AccountRef("A"), mint=AccountRef("M"), amount=3)

    gw = _gateway(cluster, explorer_url_template="https://explorer.example/tx/{signature}")
    conf = gw.submit(op, [signer])

    assert conf.ok
    assert conf.signature == "5ig"
    assert conf.explorer_url == "https://explorer.example/tx/5ig"

    params = cluster.requests[-1]["params"]
    assert params["operation"] == op.to_ledger_obj()
    sig = params["signatures"][0]
    assert sig["pubkey"] == signer.pubkey
    assert verify_ed25519_signature(message=canonical_operation_message(op.to_ledger_obj()), sig=sig["sig"], pubkey=signer.pubkey)


def test_submit_explorer_url_with_extra_placeholder(cluster) -> None:
    cluster.handlers["sendOperation"] = lambda p: {"result": {"signature": "5ig", "confirmed": True, "err": None}}
    gw = _gateway(cluster, explorer_url_template="https://solana.fm/tx/{signature}?cluster={cluster}")

    conf = gw.submit(Burn(account=AccountRef("A"), mint=AccountRef("M"), amount=3), [Signer.generate()])

    assert conf.ok
    assert conf.explorer_url == "https://solana.fm/tx/5ig?cluster={cluster}"


def test_submit_ledger_error_is_a_failed_confirmation(cluster) -> None:
    cluster.handlers["sendOperation"] = lambda p: {"result": {"signature": "x", "confirmed": False, "err": "insufficient_funds"}}
    conf = _gateway(cluster).submit(Burn(account=AccountRef("A"), mint=AccountRef("M"), amount=3), [Signer.generate()])
    assert not conf.ok
    assert conf.error == "insufficient_funds"


def test_create_account_collision_maps_to_account_collision(cluster) -> None:
    cluster.handlers["createAccount"] = lambda p: {"error": {"code": ERR_ACCOUNT_EXISTS, "message": "in use"}}
    with pytest.raises(AccountCollision):
        _gateway(cluster).create_account("Prog", 165, AccountRef("Payer"), Signer.generate())


def test_create_account_returns_new_ref(cluster) -> None:
    cluster.handlers["createAccount"] = lambda p: {"result": {"address": p["address"]}}
    s = Signer.generate()
    ref = _gateway(cluster).create_account("Prog", 165, None, s)
    assert ref == AccountRef(address=s.pubkey, owner="Prog")
    assert cluster.requests[-1]["params"]["funding_source"] is None


def test_rpc_error(cluster) -> None:
    with pytest.raises(TransportError) as ei:
        _gateway(cluster).get_supply(AccountRef("M"))
    assert ei.value.reason == "rpc_error"
    assert ei.value.details["code"] == -32601


def test_http_status_error(cluster) -> None:
    cluster.status = 503
    cluster.handlers["getSupply"] = lambda p: {"result": 1}
    with pytest.raises(TransportError) as ei:
        _gateway(cluster).get_supply(AccountRef("M"))
    assert ei.value.reason == "http_503"


def test_bad_json_response(cluster) -> None:
    cluster.handlers["getBalance"] = lambda p: b"<html>"
    with pytest.raises(TransportError) as ei:
        _gateway(cluster).get_balance(AccountRef("A"))
    assert ei.value.reason == "bad_response"


def test_socket_timeout(cluster) -> None:
    cluster.delay_s = 0.5
    cluster.handlers["getBalance"] = lambda p: {"result": 1}
    with pytest.raises(TransportError) as ei:
        _gateway(cluster, timeout_s=0.05).get_balance(AccountRef("A"))
    assert ei.value.reason == "timeout"


def test_unreachable_endpoint() -> None:
    gw = RpcLedgerGateway(RpcConfig(endpoint="http://127.0.0.1:1/rpc", timeout_s=1.0))
    with pytest.raises(TransportError) as ei:
        gw.get_balance(AccountRef("A"))
    assert ei.value.reason == "ledger_unreachable"
