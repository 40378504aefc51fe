"""
Environment-driven configuration with validation.

All variables use the VS_ prefix; a local .env file is honoured.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from typing import Tuple

from dotenv import load_dotenv

load_dotenv()

log = logging.getLogger("vaultsync")

DEFAULT_VAULT = "0xDf9053726a2217326bFEadc0c3480c5De7107B8f"
DEFAULT_ORACLE = "0xd8A5E7ACa9A2B61d223Ea993749B5F6576aa503f"
DEFAULT_CROSS_CHAIN = "0x7A612459095bBe3F579068CDE982aa91C57919A6"
DEFAULT_CHAINS = "Arc,Ethereum,Arbitrum,Base,Optimism"


def env_bool(key: str, default: bool) -> bool:
    val = os.getenv(key)
    if val is None or val == "":
        return default
    return val.lower() in {"1", "true", "yes", "y"}


def _int_env(key: str, default: int) -> int:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    return int(raw)


def _float_env(key: str, default: float) -> float:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    return float(raw)


def _list_env(key: str, default: str) -> Tuple[str, ...]:
    raw = os.getenv(key) or default
    return tuple(c.strip() for c in raw.split(",") if c.strip())


@dataclass(frozen=True)
class Settings:
    rpc_url: str
    chain_id: int
    private_key: str | None
    user_address: str | None
    vault_address: str
    oracle_address: str
    cross_chain_address: str
    fallback_chains: Tuple[str, ...]
    # read path
    log_window_blocks: int
    mode_lookback_blocks: int
    inter_query_pause_sec: float
    retry_max_attempts: int
    retry_base_delay_ms: float
    http_timeout: float
    # loops
    reconcile_interval_sec: float
    rebalance_interval_sec: float
    best_chain_interval_sec: float
    mode_interval_sec: float
    oracle_sync_interval_sec: float
    initial_delay_sec: float
    poll_jitter_sec: float
    # controllers
    rebalance_cooldown_sec: float
    switch_cooldown_sec: float
    confirmation_timeout_sec: float
    auto_switch: bool
    auto_rebalance: bool
    oracle_sync: bool
    switch_revert_backoff_sec: float
    default_sync_price: float
    dedup_window_sec: float
    mode_context_max_age_sec: float
    # observability
    metrics_port: int
    metrics_token: str | None
    log_file: str | None
    log_level: str
    alert_webhook_url: str | None
    alert_webhook_type: str  # generic, slack, discord
    alert_enabled: bool
    chain_config_path: str

    def dump(self) -> dict:
        """Settings as a dict with secrets masked."""
        data = self.__dict__.copy()
        for key in ("private_key", "metrics_token"):
            if data.get(key):
                data[key] = "***"
        return data

    @property
    def can_sign(self) -> bool:
        return bool(self.private_key)

    @classmethod
    def load(cls) -> "Settings":
        cfg = cls(
            rpc_url=os.getenv("VS_RPC_URL", "https://rpc.testnet.arc.network"),
            chain_id=_int_env("VS_CHAIN_ID", 0),
            private_key=os.getenv("VS_PRIVATE_KEY") or None,
            user_address=os.getenv("VS_USER_ADDRESS") or None,
            vault_address=os.getenv("VS_VAULT_ADDRESS", DEFAULT_VAULT),
            oracle_address=os.getenv("VS_ORACLE_ADDRESS", DEFAULT_ORACLE),
            cross_chain_address=os.getenv("VS_CROSS_CHAIN_ADDRESS", DEFAULT_CROSS_CHAIN),
            fallback_chains=_list_env("VS_FALLBACK_CHAINS", DEFAULT_CHAINS),
            log_window_blocks=_int_env("VS_LOG_WINDOW_BLOCKS", 2000),
            mode_lookback_blocks=_int_env("VS_MODE_LOOKBACK_BLOCKS", 100),
            inter_query_pause_sec=_float_env("VS_INTER_QUERY_PAUSE_SEC", 0.5),
            retry_max_attempts=_int_env("VS_RETRY_MAX_ATTEMPTS", 5),
            retry_base_delay_ms=_float_env("VS_RETRY_BASE_DELAY_MS", 2000),
            http_timeout=_float_env("VS_HTTP_TIMEOUT", 10.0),
            reconcile_interval_sec=_float_env("VS_RECONCILE_INTERVAL_SEC", 30.0),
            rebalance_interval_sec=_float_env("VS_REBALANCE_INTERVAL_SEC", 20.0),
            best_chain_interval_sec=_float_env("VS_BEST_CHAIN_INTERVAL_SEC", 30.0),
            mode_interval_sec=_float_env("VS_MODE_INTERVAL_SEC", 30.0),
            oracle_sync_interval_sec=_float_env("VS_ORACLE_SYNC_INTERVAL_SEC", 30.0),
            initial_delay_sec=_float_env("VS_INITIAL_DELAY_SEC", 2.0),
            poll_jitter_sec=_float_env("VS_POLL_JITTER_SEC", 1.0),
            rebalance_cooldown_sec=_float_env("VS_REBALANCE_COOLDOWN_SEC", 5.0),
            switch_cooldown_sec=_float_env("VS_SWITCH_COOLDOWN_SEC", 30.0),
            confirmation_timeout_sec=_float_env("VS_CONFIRMATION_TIMEOUT_SEC", 120.0),
            auto_switch=env_bool("VS_AUTO_SWITCH", True),
            auto_rebalance=env_bool("VS_AUTO_REBALANCE", True),
            oracle_sync=env_bool("VS_ORACLE_SYNC", True),
            switch_revert_backoff_sec=_float_env("VS_SWITCH_REVERT_BACKOFF_SEC", 300.0),
            default_sync_price=_float_env("VS_DEFAULT_SYNC_PRICE", 1.0),
            dedup_window_sec=_float_env("VS_DEDUP_WINDOW_SEC", 300.0),
            mode_context_max_age_sec=_float_env("VS_MODE_CONTEXT_MAX_AGE_SEC", 300.0),
            metrics_port=_int_env("VS_METRICS_PORT", 9108),
            metrics_token=os.getenv("VS_METRICS_TOKEN") or None,
            log_file=os.getenv("VS_LOG_FILE", "vaultsync.log") or None,
            log_level=os.getenv("VS_LOG_LEVEL", "INFO").upper(),
            alert_webhook_url=os.getenv("VS_ALERT_WEBHOOK_URL") or None,
            alert_webhook_type=os.getenv("VS_ALERT_WEBHOOK_TYPE", "generic"),
            alert_enabled=env_bool("VS_ALERT_ENABLED", True),
            chain_config_path=os.getenv("VS_CHAIN_CONFIG", "configs/chains.yaml"),
        )
        cfg._validate()
        _sanity_check(cfg)
        return cfg

    def resolve_account(self) -> str:
        """Address whose risk profile and deposits are watched."""
        if self.user_address:
            return self.user_address
        if self.private_key:
            from eth_account import Account

            return Account.from_key(self.private_key).address
        raise RuntimeError("Missing VS_USER_ADDRESS or VS_PRIVATE_KEY")

    def resolve_signer(self):
        from eth_account import Account

        if self.private_key:
            return Account.from_key(self.private_key)
        raise RuntimeError("Missing credentials: set VS_PRIVATE_KEY to submit actions")

    def _validate(self) -> None:
        if not self.rpc_url:
            raise ValueError("VS_RPC_URL must be set")
        if self.log_window_blocks <= 0:
            raise ValueError("VS_LOG_WINDOW_BLOCKS must be > 0")
        if self.mode_lookback_blocks <= 0:
            raise ValueError("VS_MODE_LOOKBACK_BLOCKS must be > 0")
        if self.retry_max_attempts < 1:
            raise ValueError("VS_RETRY_MAX_ATTEMPTS must be >= 1")
        if self.retry_base_delay_ms < 0 or self.inter_query_pause_sec < 0:
            raise ValueError("Delays must be >= 0")
        for name in (
            "reconcile_interval_sec",
            "rebalance_interval_sec",
            "best_chain_interval_sec",
            "mode_interval_sec",
            "oracle_sync_interval_sec",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"VS_{name.upper()} must be > 0")
        if self.confirmation_timeout_sec <= 0:
            raise ValueError("VS_CONFIRMATION_TIMEOUT_SEC must be > 0 (confirmation waits are bounded)")
        if self.default_sync_price <= 0:
            raise ValueError("VS_DEFAULT_SYNC_PRICE must be > 0")
        if not self.fallback_chains:
            raise ValueError("VS_FALLBACK_CHAINS must name at least one chain")


def _sanity_check(cfg: Settings) -> None:
    """Log the settings that shape load on the RPC provider once at startup."""
    payload = {
        "event": "config_loaded",
        "rpc_url": cfg.rpc_url,
        "log_window_blocks": cfg.log_window_blocks,
        "retry_max_attempts": cfg.retry_max_attempts,
        "reconcile_interval_sec": cfg.reconcile_interval_sec,
        "auto_switch": cfg.auto_switch,
        "can_sign": cfg.can_sign,
    }
    log.info(json.dumps(payload))
