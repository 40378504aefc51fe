"""
Pytest configuration and shared fixtures.
"""

from typing import Any, Dict, List

import pytest
from eth_abi import encode
from eth_utils import encode_hex

from vaultsync.ledger.abi import address_topic, event_topic
from vaultsync.ledger.events import EventSchema

VAULT = "0xDf9053726a2217326bFEadc0c3480c5De7107B8f"
ORACLE = "0xd8A5E7ACa9A2B61d223Ea993749B5F6576aa503f"
CROSS_CHAIN = "0x7A612459095bBe3F579068CDE982aa91C57919A6"
USER = "0x000000000000000000000000000000000000dEaD"


def make_log(schema: EventSchema, values: Dict[str, Any], block: int = 100, tx_hash: str = "0xabc") -> Dict[str, Any]:
    """Encode ``values`` into a raw eth_getLogs entry for ``schema``."""
    topics: List[str] = [event_topic(schema.signature)]
    plain_types, plain_values = [], []
    for inp in schema.inputs:
        if inp.indexed:
            if inp.abi_type == "address":
                topics.append(address_topic(values[inp.name]))
            else:
                topics.append(encode_hex(encode([inp.abi_type], [values[inp.name]])))
        else:
            plain_types.append(inp.abi_type)
            plain_values.append(values[inp.name])
    return {
        "address": schema.address,
        "topics": topics,
        "data": encode_hex(encode(plain_types, plain_values)),
        "blockNumber": hex(block),
        "transactionHash": tx_hash,
    }


@pytest.fixture
def log_builder():
    return make_log


@pytest.fixture
def events_log():
    """Collects (event, fields) pairs from components that accept a log_event callback."""
    calls: List[tuple] = []

    def _log(event: str, **kwargs: Any) -> None:
        calls.append((event, kwargs))

    _log.calls = calls
    _log.names = lambda: [c[0] for c in calls]
    return _log


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()
