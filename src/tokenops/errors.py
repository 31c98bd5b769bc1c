# src/tokenops/errors.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass
class OpsError(Exception):
    """Canonical error type for gateway, config and precondition failures."""

    code: str
    reason: str
    details: Any | None = None

    def __str__(self) -> str:  # pragma: no cover
        if self.details is None:
            return f"{self.code}:{self.reason}"
        return f"{self.code}:{self.reason}:{self.details}"


@dataclass
class TransportError(OpsError):
    """Ledger unreachable, RPC error or timeout. Fatal to the run, never retried here."""

    code: str = "transport_error"
    reason: str = "ledger_unreachable"
    details: Any | None = None


@dataclass
class PreconditionFailed(OpsError):
    """Insufficient balance or a missing account, observed against fresh state."""

    code: str = "precondition_failed"
    reason: str = "precondition_failed"
    details: Any | None = None


@dataclass
class ConfigError(OpsError):
    """Invalid authority or malformed configuration. Raised before any stage runs."""

    code: str = "config_error"
    reason: str = "invalid_config"
    details: Any | None = None


@dataclass
class AccountCollision(OpsError):
    """create_account was handed an identifier that already exists on the ledger."""

    code: str = "account_collision"
    reason: str = "account_exists"
    details: Any | None = None
