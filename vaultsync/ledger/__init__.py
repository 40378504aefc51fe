"""
Ledger package.

This package replays vault and cross-chain event logs and reconciles them
into per-chain balances that sum to the authoritative vault total.
Modules are imported directly; the ABI helpers here are shared with the RPC client.
"""
