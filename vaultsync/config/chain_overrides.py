"""Load per-chain overrides from YAML.

Optional file path via env `VS_CHAIN_CONFIG`, default `configs/chains.yaml`.
Top-level keys are chain names; recognised per-chain keys:

    default_sync_price: float   price pushed to the oracle when chainPrices() is unavailable
    enabled: bool               false excludes the chain from the tracked set
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

log = logging.getLogger("vaultsync")


@dataclass(frozen=True)
class ChainOverride:
    default_sync_price: Optional[float] = None
    enabled: bool = True


def load_chain_overrides(path: str | None = None) -> Dict[str, ChainOverride]:
    if path is None:
        path = os.getenv("VS_CHAIN_CONFIG", "configs/chains.yaml")
    p = Path(path)
    if not p.exists():
        return {}
    try:
        with p.open("r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
    except (OSError, yaml.YAMLError) as exc:
        log.warning(json.dumps({"event": "chain_config_unreadable", "path": str(p), "err": str(exc)}))
        return {}
    if not isinstance(data, dict):
        return {}
    return {str(chain): _parse(chain, raw) for chain, raw in data.items() if isinstance(raw, dict)}


def _parse(chain: Any, raw: Dict[str, Any]) -> ChainOverride:
    price = raw.get("default_sync_price")
    if price is not None:
        price = float(price)
        if price <= 0:
            raise ValueError(f"{chain}: default_sync_price must be > 0")
    return ChainOverride(default_sync_price=price, enabled=bool(raw.get("enabled", True)))
