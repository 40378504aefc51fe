"""Cross-chain balance reconciliation and rebalancing controller for a multi-chain vault."""

__version__ = "0.1.0"
