# src/tokenops/ledger/rpc.py
from __future__ import annotations

import http.client
import itertools
import json
import logging
import socket
import urllib.parse
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from tokenops.crypto.sig import Signer, canonical_operation_message
from tokenops.errors import AccountCollision, TransportError
from tokenops.ledger.types import AccountRef, Confirmation, render_explorer_url
from tokenops.observability.structured_logging import log_event
from tokenops.runtime.operations import ScheduledOperation

Json = Dict[str, Any]

_log = logging.getLogger("tokenops.gateway")

# JSON-RPC error code the cluster uses for "address already in use".
ERR_ACCOUNT_EXISTS = -32010


@dataclass(frozen=True)
class RpcConfig:
    endpoint: str
    commitment: str = "confirmed"
    timeout_s: float = 30.0
    explorer_url_template: str = ""


def _parse_endpoint(endpoint: str) -> tuple[str, str, int, str]:
    u = urllib.parse.urlparse(endpoint)
    scheme = (u.scheme or "http").lower()
    if scheme not in {"http", "https"}:
        raise ValueError(f"unsupported scheme: {scheme!r}")
    host = u.hostname or "127.0.0.1"
    port = int(u.port or (443 if scheme == "https" else 80))
    path = u.path or "/"
    return scheme, host, port, path


class RpcLedgerGateway:
    """LedgerGateway over JSON-RPC 2.0 / HTTP.

    Methods called on the cluster (params are JSON objects):
      getBalance, getWithheldFee, getAccountOwner, getSupply, getAccountInfo
        -> result null when the account does not exist
      sendOperation {operation, signatures, commitment}
        -> {"signature": str, "confirmed": bool, "err": str|null}
      createAccount {address, owner, space, funding_source, signatures}
        -> {"address": str}; error ERR_ACCOUNT_EXISTS on collision

    Every transport-level problem (socket error, timeout, non-2xx, invalid
    JSON, JSON-RPC error) raises TransportError. No retries here.
    """

    def __init__(self, cfg: RpcConfig) -> None:
        self.cfg = cfg
        self._scheme, self._host, self._port, self._path = _parse_endpoint(cfg.endpoint)
        self._ids = itertools.count(1)

    def _connection(self) -> http.client.HTTPConnection:
        if self._scheme == "https":
            return http.client.HTTPSConnection(self._host, self._port, timeout=self.cfg.timeout_s)
        return http.client.HTTPConnection(self._host, self._port, timeout=self.cfg.timeout_s)

    def _rpc(self, method: str, params: Json) -> Any:
        req_id = next(self._ids)
        body = json.dumps(
            {"jsonrpc": "2.0", "id": req_id, "method": method, "params": params},
            sort_keys=True,
            separators=(",", ":"),
        ).encode("utf-8")

        conn = self._connection()
        try:
            conn.request("POST", self._path, body=body, headers={"Content-Type": "application/json"})
            resp = conn.getresponse()
            raw = resp.read()
        except socket.timeout:
            raise TransportError(reason="timeout", details={"method": method})
        except (OSError, http.client.HTTPException) as e:
            raise TransportError(reason="ledger_unreachable", details={"method": method, "error": str(e)})
        finally:
            conn.close()

        if resp.status < 200 or resp.status >= 300:
            msg = raw.decode("utf-8", errors="replace").strip()
            raise TransportError(reason=f"http_{resp.status}", details={"method": method, "body": msg[:300]})

        try:
            obj = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise TransportError(reason="bad_response", details={"method": method})
        if not isinstance(obj, dict):
            raise TransportError(reason="bad_response", details={"method": method})

        err = obj.get("error")
        if err is not None:
            code = err.get("code") if isinstance(err, dict) else None
            message = err.get("message") if isinstance(err, dict) else str(err)
            if code == ERR_ACCOUNT_EXISTS:
                raise AccountCollision(details={"method": method, "message": message})
            raise TransportError(reason="rpc_error", details={"method": method, "code": code, "message": message})

        return obj.get("result")

    def _lookup(self, method: str, account: AccountRef) -> Any:
        return self._rpc(method, {"address": account.address, "commitment": self.cfg.commitment})

    @staticmethod
    def _as_amount(method: str, v: Any) -> Optional[int]:
        if v is None:
            return None
        if isinstance(v, bool):
            raise TransportError(reason="bad_response", details={"method": method, "result": v})
        try:
            return int(v)
        except (TypeError, ValueError):
            raise TransportError(reason="bad_response", details={"method": method, "result": v})

    def get_balance(self, account: AccountRef) -> Optional[int]:
        return self._as_amount("getBalance", self._lookup("getBalance", account))

    def get_withheld_fee(self, account: AccountRef) -> Optional[int]:
        return self._as_amount("getWithheldFee", self._lookup("getWithheldFee", account))

    def get_supply(self, mint: AccountRef) -> Optional[int]:
        return self._as_amount("getSupply", self._lookup("getSupply", mint))

    def get_account_owner(self, account: AccountRef) -> Optional[str]:
        v = self._lookup("getAccountOwner", account)
        return None if v is None else str(v)

    def account_exists(self, account: AccountRef) -> bool:
        return self._lookup("getAccountInfo", account) is not None

    @staticmethod
    def _signatures(message: bytes, signers: Sequence[Signer]) -> List[Json]:
        return [{"pubkey": s.pubkey, "sig": s.sign(message)} for s in signers]

    def submit(self, operation: ScheduledOperation, authorities: Sequence[Signer]) -> Confirmation:
        obj = operation.to_ledger_obj()
        msg = canonical_operation_message(obj)
        result = self._rpc(
            "sendOperation",
            {"operation": obj, "signatures": self._signatures(msg, authorities), "commitment": self.cfg.commitment},
        )
        if not isinstance(result, dict):
            raise TransportError(reason="bad_response", details={"method": "sendOperation"})

        signature = str(result.get("signature") or "")
        confirmed = bool(result.get("confirmed", False))
        err = str(result.get("err") or "")
        url = render_explorer_url(self.cfg.explorer_url_template, signature)

        log_event(_log, "rpc_submit", kind=operation.kind, signature=signature, confirmed=confirmed, err=err or None)
        return Confirmation(ok=confirmed and not err, signature=signature, error=err or ("" if confirmed else "not_confirmed"), explorer_url=url)

    def create_account(
        self,
        owner: str,
        space: int,
        funding_source: Optional[AccountRef],
        new_account: Signer,
    ) -> AccountRef:
        obj: Json = {
            "address": new_account.pubkey,
            "owner": str(owner),
            "space": int(space),
            "funding_source": funding_source.address if funding_source is not None else None,
        }
        # The new account's key proves ownership of the address being claimed.
        msg = canonical_operation_message(obj)
        result = self._rpc("createAccount", {**obj, "signatures": self._signatures(msg, [new_account])})
        address = str(result.get("address") or "") if isinstance(result, dict) else ""
        if not address:
            raise TransportError(reason="bad_response", details={"method": "createAccount"})
        return AccountRef(address=address, owner=str(owner))
