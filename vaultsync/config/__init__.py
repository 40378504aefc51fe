"""
Configuration package.

This package contains environment settings, startup validation and per-chain overrides.
"""

from vaultsync.config.chain_overrides import ChainOverride, load_chain_overrides
from vaultsync.config.config import Settings
from vaultsync.config.config_validator import ConfigValidator, validate_and_log

__all__ = [
    "Settings",
    "ConfigValidator",
    "validate_and_log",
    "ChainOverride",
    "load_chain_overrides",
]
