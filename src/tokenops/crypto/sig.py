# src/tokenops/crypto/sig.py
from __future__ import annotations

import base64
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from tokenops.errors import ConfigError

Json = Dict[str, Any]


def _decode_bytes(s: str) -> bytes:
    s = s.strip()
    if not s:
        raise ValueError("empty string")
    # hex
    try:
        return bytes.fromhex(s)
    except ValueError:
        pass
    # base64 / base64url
    try:
        padding = "=" * (-len(s) % 4)
        s2 = (s + padding).replace("-", "+").replace("_", "/")
        return base64.b64decode(s2, validate=True)
    except ValueError as e:
        raise ValueError("not hex or base64") from e


def canonical_operation_message(obj: Json) -> bytes:
    """Bytes every authority signs: sorted-key compact JSON, UTF-8."""

    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def verify_ed25519_signature(*, message: bytes, sig: str, pubkey: str) -> bool:
    try:
        sig_b = _decode_bytes(sig)
        pk_b = _decode_bytes(pubkey)
        key = Ed25519PublicKey.from_public_bytes(pk_b)
        key.verify(sig_b, message)
        return True
    except (InvalidSignature, ValueError):
        return False


class Signer:
    """An Ed25519 authority.

    `pubkey` (hex) doubles as the account identifier when a Signer is used to
    name a freshly created account.
    """

    def __init__(self, private_key: Ed25519PrivateKey, *, label: str = "") -> None:
        self._sk = private_key
        self.label = label
        self.pubkey = private_key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw).hex()

    def __repr__(self) -> str:
        return f"Signer(label={self.label!r}, pubkey={self.pubkey[:12]}...)"

    @classmethod
    def generate(cls, *, label: str = "") -> "Signer":
        return cls(Ed25519PrivateKey.generate(), label=label)

    @classmethod
    def from_seed(cls, seed: str, *, label: str = "") -> "Signer":
        """seed: hex or base64 string of a 32-byte seed (or 64-byte expanded key)."""

        sk_b = _decode_bytes(seed)
        if len(sk_b) == 64:
            # Expanded keypair files keep the seed in the first half.
            sk_b = sk_b[:32]
        if len(sk_b) != 32:
            raise ValueError("ed25519 seed must be 32 bytes (or 64-byte expanded key)")
        return cls(Ed25519PrivateKey.from_private_bytes(sk_b), label=label)

    def sign(self, message: bytes) -> str:
        return self._sk.sign(message).hex()


@dataclass(frozen=True)
class Authorities:
    """The signer set a run needs. Roles may share one key."""

    payer: Signer
    mint_authority: Signer
    withdraw_authority: Signer
    burn_authority: Signer

    @classmethod
    def single(cls, signer: Signer) -> "Authorities":
        return cls(payer=signer, mint_authority=signer, withdraw_authority=signer, burn_authority=signer)

    def pubkeys(self) -> Json:
        return {
            "payer": self.payer.pubkey,
            "mint_authority": self.mint_authority.pubkey,
            "withdraw_authority": self.withdraw_authority.pubkey,
            "burn_authority": self.burn_authority.pubkey,
        }


_ROLES = ("payer", "mint_authority", "withdraw_authority", "burn_authority")


def load_authorities(path: str) -> Authorities:
    """Load authorities from a key file.

    Accepted shapes:
      - a bare seed string (hex or base64): one key for every role
      - {"payer": seed, "mint_authority": seed, ...}: missing roles fall back
        to "payer"
    """

    p = Path(path)
    if not p.is_file():
        raise ConfigError(reason="authority_key_missing", details={"path": path})

    text = p.read_text(encoding="utf-8").strip()
    try:
        obj: Optional[Any] = json.loads(text)
    except json.JSONDecodeError:
        obj = None

    try:
        if isinstance(obj, dict):
            payer_seed = str(obj.get("payer") or "").strip()
            if not payer_seed:
                raise ConfigError(reason="authority_payer_missing", details={"path": path})
            signers = {
                role: Signer.from_seed(str(obj.get(role) or payer_seed), label=role) for role in _ROLES
            }
            return Authorities(**signers)

        seed = obj if isinstance(obj, str) else text
        return Authorities.single(Signer.from_seed(seed, label="authority"))
    except ValueError as e:
        raise ConfigError(reason="authority_key_invalid", details={"path": path, "error": str(e)})
