# src/tokenops/ledger/__init__.py
"""
Ledger access for tokenops.

  - types: account references, withheld-fee snapshots, confirmations
  - gateway: the LedgerGateway protocol the scheduler drives
  - memory: in-process ledger used by tests and dry runs
  - rpc: JSON-RPC over HTTP gateway for a remote cluster

The policy and runtime layers only depend on `gateway` and `types`.
"""
